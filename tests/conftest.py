import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from geospatial_origin import (
    CalibrationConfig,
    FeatureSupport,
    FrameCalibrator,
    GeospatialAnchor,
    PoseQualitySample,
    SceneNode,
    SessionState,
    TrackingSnapshot,
)

DT = 0.25  # exact in binary, keeps window arithmetic free of rounding


def good(t: float) -> TrackingSnapshot:
    """Tracking, supported, both axes well inside a 15 m gate."""
    return TrackingSnapshot(
        timestamp=t,
        session_state=SessionState.TRACKING,
        geospatial_support=FeatureSupport.SUPPORTED,
        quality=PoseQualitySample(2.0, 3.0, True),
    )


def low_accuracy(t: float) -> TrackingSnapshot:
    """Tracking, but both axes exceed a 15 m gate."""
    return TrackingSnapshot(
        timestamp=t,
        session_state=SessionState.TRACKING,
        geospatial_support=FeatureSupport.SUPPORTED,
        quality=PoseQualitySample(40.0, 40.0, True),
    )


def not_ready(t: float) -> TrackingSnapshot:
    return TrackingSnapshot(
        timestamp=t,
        session_state=SessionState.NOT_READY,
        quality=PoseQualitySample(float("inf"), float("inf"), False),
    )


class FakeEarth:
    """
    Anchor factory over a small session scene.

        XR Origin
        ├── Main Camera
        └── Trackables
    """

    def __init__(self, failures: int = 0,
                 anchor_position=(3.0, -0.5, 12.0),
                 anchor_yaw_deg: float = 30.0,
                 anchor_parent: str = "trackables"):
        self.failures = failures
        self.anchor_position = np.asarray(anchor_position, dtype=np.float64)
        self.anchor_yaw_deg = anchor_yaw_deg
        self.anchor_parent = anchor_parent

        self.xr_origin = SceneNode("XR Origin")
        self.camera = SceneNode("Main Camera", position=(0.0, 1.5, 0.0), parent=self.xr_origin)
        self.trackables = SceneNode("Trackables", parent=self.xr_origin)

        self.calls = []
        self.created = []

    def add_anchor(self, lat, lon, alt, rotation_offset):
        self.calls.append((lat, lon, alt, rotation_offset))
        if len(self.calls) <= self.failures:
            return None

        parent = self.trackables if self.anchor_parent == "trackables" else None
        rotation = Rotation.from_euler("y", self.anchor_yaw_deg, degrees=True) * rotation_offset
        node = SceneNode("Geospatial Anchor", position=self.anchor_position,
                         rotation=rotation, parent=parent)
        anchor = GeospatialAnchor(lat, lon, alt, rotation_offset, node)
        self.created.append(anchor)
        return anchor


class StatusRecorder:
    def __init__(self):
        self.history = []

    def __call__(self, status):
        self.history.append(status)


@pytest.fixture
def earth():
    return FakeEarth()


@pytest.fixture
def status_recorder():
    return StatusRecorder()


@pytest.fixture
def config():
    return CalibrationConfig(latitude=35.681236, longitude=139.767125, altitude=40.0,
                             scan_time=3.0)


@pytest.fixture
def make_calibrator(config, status_recorder):
    """Build a calibrator over a FakeEarth scene."""

    def _make(earth: FakeEarth, cfg: CalibrationConfig = None, origin: SceneNode = None):
        return FrameCalibrator(
            cfg or config,
            earth.xr_origin,
            origin or SceneNode("Drawing Origin"),
            earth.add_anchor,
            status_sink=status_recorder,
        )

    return _make


@pytest.fixture
def calibrated(earth, make_calibrator):
    """A calibrator driven to completion with a 1 s window."""
    cfg = CalibrationConfig(latitude=35.0, longitude=139.0, altitude=10.0, scan_time=1.0)
    calibrator = make_calibrator(earth, cfg)
    t = 0.0
    while not calibrator.is_complete:
        calibrator.update(good(t))
        t += DT
        assert t < 10.0
    return calibrator
