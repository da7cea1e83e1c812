import matplotlib
matplotlib.use("Agg")

import numpy as np
import pytest

from geospatial_origin import CalibrationConfig, CalibrationPhase
from simulate_session import (
    GeospatialNoiseConfig,
    SimulatedEarth,
    run_paint_demo,
    run_simulation,
)


@pytest.fixture
def site():
    return CalibrationConfig(latitude=35.681236, longitude=139.767125, altitude=40.0,
                             scan_time=3.0, site_name="test site")


def test_perfect_provider_calibrates_after_window(site):
    run = run_simulation(site, GeospatialNoiseConfig.perfect(), duration_s=5.0, fps=4.0,
                         verbose=False)
    phases = [r['phase'] for r in run['results']]
    first = phases.index(CalibrationPhase.CALIBRATED.name)

    assert run['results'][first]['t'] == pytest.approx(3.0)
    assert run['calibrator'].is_complete
    assert run['results'][first]['pos_err'] < 1e-6
    assert run['results'][first]['rot_err'] < 1e-6


def test_anchor_failures_delay_the_window(site):
    noise = GeospatialNoiseConfig.perfect()
    noise.anchor_failures = 2
    run = run_simulation(site, noise, duration_s=6.0, fps=4.0, verbose=False)

    calibrator = run['calibrator']
    assert calibrator.anchor_attempts == 3
    assert len(run['earth'].anchors) == 1
    first = [r['t'] for r in run['results'] if r['phase'] == 'CALIBRATED'][0]
    assert first == pytest.approx(3.5)


def test_poor_provider_never_anchors_before_accuracy_converges(site):
    noise = GeospatialNoiseConfig.poor(seed=3)
    noise.dropout_rate = 0.0
    noise.tracking_loss_rate = 0.0
    run = run_simulation(site, noise, duration_s=2.0, fps=10.0, verbose=False)

    # Accuracy is still far above 15 m on both axes for the first seconds
    assert all(row['phase'] == 'IDLE' for row in run['results'])
    assert run['calibrator'].anchor is None
    assert run['calibrator'].status.name == 'LOW_ACCURACY'


def test_geodetic_target_maps_into_session_space():
    earth = SimulatedEarth(GeospatialNoiseConfig.perfect(), 35.0, 139.0, 10.0,
                           session_heading_deg=0.0)
    north = earth.geodetic_to_session(35.0 + 10.0 / 111320.0, 139.0, 12.0)
    np.testing.assert_allclose(north, [0.0, 2.0, 10.0], atol=1e-6)


def test_paint_demo_reaches_remote_participant(site):
    run = run_simulation(site, GeospatialNoiseConfig.perfect(), duration_s=4.0, fps=4.0,
                         verbose=False)
    assert run_paint_demo(run['calibrator'], run['earth'], n_points=5) == 5
