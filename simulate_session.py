#!/usr/bin/env python3
"""
Simulated AR session for geospatial_origin.py.

Drives a FrameCalibrator with a synthetic geospatial pose provider whose
accuracy converges over time, with optional dropouts and tracking loss.

Usage:
    python simulate_session.py
    python simulate_session.py --noise urban --seed 7 --scan-time 3 --plot
    python simulate_session.py --config configs/tokyo_station.yaml --paint
"""

import argparse
import logging
import time
import numpy as np
import matplotlib.pyplot as plt
from pathlib import Path
from dataclasses import dataclass
from typing import List, Dict, Optional
from scipy.spatial.transform import Rotation

from geospatial_origin import (
    CalibrationConfig, CalibrationPhase, FeatureSupport, FrameCalibrator,
    GeospatialAnchor, PoseQualitySample, SceneNode, SessionState,
    TrackingSnapshot, yaw_rotation,
)
from shared_paint import (
    Camera, CameraIntrinsics, NetworkClient, PaintOverlay, RoomHub,
    SessionConnector, Touch, TouchPhase,
)


LOG = logging.getLogger(__name__)

METERS_PER_DEG_LAT = 111320.0


@dataclass
class GeospatialNoiseConfig:
    """
    Behaviour of the simulated geospatial pose provider.

    Accuracy decays exponentially from `initial_accuracy_m` towards
    `final_accuracy_m` as the device localizes against imagery.
    """
    # Accuracy convergence (meters, seconds)
    initial_accuracy_m: float = 60.0
    final_accuracy_m: float = 3.0
    convergence_time_s: float = 4.0
    accuracy_noise_m: float = 0.5

    # Occasional degradations (probability per tick)
    dropout_rate: float = 0.0
    dropout_accuracy_m: float = 40.0
    tracking_loss_rate: float = 0.0

    # Live anchor pose refinement noise
    anchor_jitter_m: float = 0.0
    anchor_yaw_jitter_deg: float = 0.0

    # Session start-up
    session_warmup_s: float = 0.5
    anchor_failures: int = 0  # add_anchor returns None this many times first

    seed: Optional[int] = None

    @classmethod
    def perfect(cls) -> 'GeospatialNoiseConfig':
        """Instant, exact localization."""
        return cls(initial_accuracy_m=1.0, final_accuracy_m=1.0, accuracy_noise_m=0.0,
                   session_warmup_s=0.0)

    @classmethod
    def urban(cls, seed: Optional[int] = None) -> 'GeospatialNoiseConfig':
        """Street-level imagery available, occasional occlusions."""
        return cls(initial_accuracy_m=50.0, final_accuracy_m=4.0, convergence_time_s=3.0,
                   accuracy_noise_m=1.0, dropout_rate=0.01, tracking_loss_rate=0.002,
                   anchor_jitter_m=0.05, anchor_yaw_jitter_deg=0.5, anchor_failures=2,
                   seed=seed)

    @classmethod
    def poor(cls, seed: Optional[int] = None) -> 'GeospatialNoiseConfig':
        """Sparse imagery, frequent dropouts."""
        return cls(initial_accuracy_m=80.0, final_accuracy_m=12.0, convergence_time_s=8.0,
                   accuracy_noise_m=3.0, dropout_rate=0.05, tracking_loss_rate=0.01,
                   anchor_jitter_m=0.3, anchor_yaw_jitter_deg=2.0, anchor_failures=5,
                   seed=seed)


class SimulatedEarth:
    """
    Stand-in for the session, geospatial provider and anchor factory.

    Scene layout:
        XR Origin
        ├── Main Camera
        └── Trackables   (anchors live here, in session space)
    """

    def __init__(self, config: GeospatialNoiseConfig,
                 device_latitude: float, device_longitude: float, device_altitude: float,
                 session_heading_deg: float = 0.0):
        self.cfg = config
        self.rng = np.random.default_rng(config.seed)

        self.lat0 = device_latitude
        self.lon0 = device_longitude
        self.alt0 = device_altitude
        self.heading = session_heading_deg

        self.xr_origin = SceneNode("XR Origin")
        self.camera_node = SceneNode("Main Camera", position=(0.0, 1.5, 0.0), parent=self.xr_origin)
        self.trackables = SceneNode("Trackables", parent=self.xr_origin)

        self.anchors: List[GeospatialAnchor] = []
        self._anchor_true_pose: Dict[int, tuple] = {}
        self._anchor_calls = 0
        self._last_snapshot: Optional[TrackingSnapshot] = None

    def geodetic_to_session(self, lat: float, lon: float, alt: float) -> np.ndarray:
        """Local tangent-plane approximation; fine over a few hundred meters."""
        north = (lat - self.lat0) * METERS_PER_DEG_LAT
        east = (lon - self.lon0) * METERS_PER_DEG_LAT * np.cos(np.deg2rad(self.lat0))
        up = alt - self.alt0
        # x = east, y = up, z = north, then the session's arbitrary heading
        return yaw_rotation(self.heading).apply([east, up, north])

    def accuracy_at(self, t: float) -> float:
        c = self.cfg
        decay = np.exp(-t / c.convergence_time_s) if c.convergence_time_s > 0 else 0.0
        acc = c.final_accuracy_m + (c.initial_accuracy_m - c.final_accuracy_m) * decay
        if c.accuracy_noise_m > 0:
            acc += abs(self.rng.normal(0, c.accuracy_noise_m))
        return float(acc)

    def step(self, t: float) -> TrackingSnapshot:
        """Advance the simulated providers to time t and poll them."""
        c = self.cfg

        if t < c.session_warmup_s:
            session = SessionState.NOT_READY if t < c.session_warmup_s / 2 else SessionState.INITIALIZING
        elif c.tracking_loss_rate > 0 and self.rng.random() < c.tracking_loss_rate:
            session = SessionState.INITIALIZING
        else:
            session = SessionState.TRACKING

        v_acc = self.accuracy_at(t)
        h_acc = self.accuracy_at(t)
        if c.dropout_rate > 0 and self.rng.random() < c.dropout_rate:
            v_acc = max(v_acc, c.dropout_accuracy_m)
            h_acc = max(h_acc, c.dropout_accuracy_m)

        quality = PoseQualitySample(
            vertical_accuracy=v_acc,
            horizontal_accuracy=h_acc,
            tracking_available=session == SessionState.TRACKING,
        )
        self._refine_anchors(h_acc)

        snapshot = TrackingSnapshot(
            timestamp=t,
            session_state=session,
            geospatial_support=FeatureSupport.SUPPORTED,
            quality=quality,
        )
        self._last_snapshot = snapshot
        return snapshot

    def add_anchor(self, lat: float, lon: float, alt: float,
                   rotation_offset: Rotation) -> Optional[GeospatialAnchor]:
        self._anchor_calls += 1
        if self._anchor_calls <= self.cfg.anchor_failures:
            return None

        position = self.geodetic_to_session(lat, lon, alt)
        rotation = yaw_rotation(self.heading) * rotation_offset
        node = SceneNode(f"Geospatial Anchor {len(self.anchors)}", position=position,
                         rotation=rotation, parent=self.trackables)
        anchor = GeospatialAnchor(lat, lon, alt, rotation_offset, node)
        self._anchor_true_pose[id(anchor)] = (position, rotation)
        self.anchors.append(anchor)
        return anchor

    def _refine_anchors(self, accuracy_m: float) -> None:
        """Tracking keeps re-estimating each anchor's session-space pose."""
        c = self.cfg
        scale = accuracy_m / max(c.final_accuracy_m, 1e-6)
        for anchor in self.anchors:
            position, rotation = self._anchor_true_pose[id(anchor)]
            if c.anchor_jitter_m > 0:
                position = position + self.rng.normal(0, c.anchor_jitter_m * scale, 3)
            if c.anchor_yaw_jitter_deg > 0:
                rotation = yaw_rotation(self.rng.normal(0, c.anchor_yaw_jitter_deg * scale)) * rotation
            anchor.node.local_position = np.asarray(position, dtype=np.float64)
            anchor.node.local_rotation = rotation


def anchor_registration_error(anchor: Optional[GeospatialAnchor]) -> tuple:
    """(position error m, rotation error deg) of the anchor w.r.t. the world origin."""
    if anchor is None:
        return float('nan'), float('nan')
    pos_err = float(np.linalg.norm(anchor.position))
    rot_err = float(np.rad2deg(anchor.rotation.magnitude()))
    return pos_err, rot_err


def run_simulation(
    config: CalibrationConfig,
    noise_config: Optional[GeospatialNoiseConfig] = None,
    duration_s: float = 15.0,
    fps: float = 30.0,
    anchor_distance_m: float = 20.0,
    session_heading_deg: float = 37.0,
    verbose: bool = True
) -> Dict:
    """
    Run one simulated session.

    Args:
        config: Calibrator configuration (anchor target, gate, window)
        noise_config: Pose provider behaviour (None = perfect)
        duration_s: Simulated seconds
        fps: Tick rate
        anchor_distance_m: Device start distance north of the anchor
        session_heading_deg: Arbitrary yaw of the session frame
        verbose: Print the per-tick table

    Returns:
        Dict with 'results' (per-tick rows), 'calibrator', 'earth'
    """
    if fps <= 0:
        raise ValueError(f"fps must be > 0, got {fps}")
    if duration_s <= 0:
        raise ValueError(f"duration_s must be > 0, got {duration_s}")

    if noise_config is None:
        noise_config = GeospatialNoiseConfig.perfect()

    device_lat = config.latitude + anchor_distance_m / METERS_PER_DEG_LAT
    earth = SimulatedEarth(noise_config, device_lat, config.longitude, config.altitude - 1.5,
                           session_heading_deg=session_heading_deg)
    drawing_origin = SceneNode("Drawing Origin")
    calibrator = FrameCalibrator(config, earth.xr_origin, drawing_origin, earth.add_anchor)

    print(f"\n{'='*60}")
    print(f"GEOSPATIAL CALIBRATION - {config.site_name or 'unnamed site'}")
    print(f"{'='*60}\n")
    print(f"Anchor: lat={config.latitude:.6f}, lon={config.longitude:.6f}, alt={config.altitude:.1f}")
    print(f"Gate: vertical<={config.vertical_threshold}m or horizontal<={config.horizontal_threshold}m")
    print(f"Stability window: {config.scan_time:.1f}s, ticks at {fps:.0f} Hz\n")

    print(f"{'Tick':<8} {'t (s)':<8} {'Phase':<11} {'V acc':<8} {'H acc':<8} "
          f"{'Pos err':<9} {'Rot err':<9} Status")
    print("-" * 90)

    results = []
    n_ticks = int(duration_s * fps)
    start = time.perf_counter()

    for i in range(n_ticks):
        t = i / fps
        snapshot = earth.step(t)
        phase = calibrator.update(snapshot)
        pos_err, rot_err = anchor_registration_error(calibrator.anchor)

        row = {
            'tick': i,
            't': t,
            'phase': phase.name,
            'v_acc': snapshot.quality.vertical_accuracy,
            'h_acc': snapshot.quality.horizontal_accuracy,
            'pos_err': pos_err,
            'rot_err': rot_err,
            'status': calibrator.status.value if calibrator.status else '',
        }
        results.append(row)

        if verbose and (i < 10 or i % int(fps) == 0 or i == n_ticks - 1):
            print(f"{i:<8} {t:<8.2f} {phase.name:<11} {row['v_acc']:<8.1f} {row['h_acc']:<8.1f} "
                  f"{pos_err:<9.3f} {rot_err:<9.2f} {row['status']}")

    elapsed_ms = (time.perf_counter() - start) * 1000

    print(f"\n{'='*60}")
    print("SUMMARY")
    print(f"{'='*60}")
    status = calibrator.get_status()
    for key, val in status.items():
        print(f"  {key}: {val}")

    complete_rows = [r for r in results if r['phase'] == CalibrationPhase.CALIBRATED.name]
    if complete_rows:
        first = complete_rows[0]
        print(f"\nCalibrated at t={first['t']:.2f}s")
        print(f"  Anchor position error: {first['pos_err']:.3f} m")
        print(f"  Anchor rotation error: {first['rot_err']:.2f} deg")
    else:
        print("\nCalibration did not complete")

    print(f"\nPerformance: {elapsed_ms:.1f} ms for {n_ticks} ticks "
          f"({elapsed_ms / max(n_ticks, 1):.3f} ms/tick)")

    return {'results': results, 'calibrator': calibrator, 'earth': earth}


def run_paint_demo(calibrator: FrameCalibrator, earth: SimulatedEarth, n_points: int = 5) -> int:
    """
    Two participants join the room; the local one draws a short stroke.

    Returns the number of stroke points the remote participant received.
    """
    hub = RoomHub()
    camera = Camera(earth.camera_node, CameraIntrinsics.from_fov(1080, 2340))
    ink_parents = {'local': SceneNode("Ink (local)"), 'remote': SceneNode("Ink (remote)")}

    def player_factory(view):
        return PaintOverlay(view, calibrator, camera, ink_parents[view.client.name])

    local = NetworkClient('local')
    remote = NetworkClient('remote')
    SessionConnector(hub, remote, player_factory).start()
    view = SessionConnector(hub, local, player_factory).start()
    overlay = view.component

    for k in range(n_points):
        phase = TouchPhase.BEGAN if k == 0 else TouchPhase.MOVED
        overlay.update([Touch((540.0 + 20.0 * k, 1170.0), phase)])

    remote_view = remote.views[view.view_id]
    strokes = remote_view.component.strokes
    received = len(strokes[-1].trail) if strokes else 0
    print(f"\nPaint demo: remote participant received {len(strokes)} stroke(s), "
          f"{received} point(s) in the last one")
    return received


def visualize_results(results: List[dict], scan_time: float, save_path: Optional[Path] = None):
    """Plot accuracy, phase and anchor registration error over time."""
    t = [r['t'] for r in results]
    v_acc = [r['v_acc'] for r in results]
    h_acc = [r['h_acc'] for r in results]
    pos_err = [r['pos_err'] for r in results]
    phase_level = {'IDLE': 0, 'SCANNING': 1, 'CALIBRATED': 2}
    phases = [phase_level[r['phase']] for r in results]

    fig, axes = plt.subplots(3, 1, figsize=(12, 9), sharex=True)
    fig.suptitle('Geospatial Origin Calibration', fontsize=14, fontweight='bold')

    ax1 = axes[0]
    ax1.plot(t, v_acc, 'b-', linewidth=1.5, label='Vertical accuracy', alpha=0.8)
    ax1.plot(t, h_acc, 'r--', linewidth=1.5, label='Horizontal accuracy', alpha=0.8)
    ax1.set_ylabel('Accuracy (m)', fontsize=11)
    ax1.legend(loc='upper right', fontsize=10)
    ax1.grid(True, alpha=0.3)

    ax2 = axes[1]
    ax2.step(t, phases, 'g-', where='post', linewidth=2)
    ax2.set_yticks([0, 1, 2])
    ax2.set_yticklabels(['IDLE', 'SCANNING', 'CALIBRATED'])
    ax2.grid(True, alpha=0.3)
    ax2.set_title(f'Phase (stability window {scan_time:.1f}s)')

    ax3 = axes[2]
    ax3.plot(t, pos_err, 'm-', linewidth=1.5, alpha=0.8)
    ax3.set_xlabel('Time (s)', fontsize=11)
    ax3.set_ylabel('Anchor offset (m)', fontsize=11)
    ax3.grid(True, alpha=0.3)
    ax3.set_title('Anchor distance from world origin')

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"\nPlot saved to: {save_path}")

    plt.show()


def main() -> int:
    """Main entry point for the session simulator."""
    parser = argparse.ArgumentParser(
        description='Simulate geospatial origin calibration',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument('--config', type=str, default=None,
                        help='Calibration YAML (see configs/)')
    parser.add_argument('--latitude', type=float, default=35.681236)
    parser.add_argument('--longitude', type=float, default=139.767125)
    parser.add_argument('--altitude', type=float, default=40.0)
    parser.add_argument('--scan-time', type=float, default=3.0,
                        help='Stability window in seconds')
    parser.add_argument('--threshold', type=float, default=15.0,
                        help='Vertical and horizontal accuracy threshold (m)')
    parser.add_argument('--continuous', action='store_true',
                        help='Keep correcting forever instead of freezing')
    parser.add_argument('--duration', type=float, default=15.0,
                        help='Simulated seconds')
    parser.add_argument('--fps', type=float, default=30.0)
    parser.add_argument('--noise', type=str, default='urban',
                        choices=['off', 'urban', 'poor'],
                        help='Pose provider preset')
    parser.add_argument('--seed', type=int, default=None,
                        help='Random seed (for reproducibility)')
    parser.add_argument('--paint', action='store_true',
                        help='Run a two-participant paint demo after calibration')
    parser.add_argument('--quiet', action='store_true',
                        help='Reduce output verbosity')
    parser.add_argument('--plot', action='store_true',
                        help='Show visualization plot')
    parser.add_argument('--save-plot', type=str, default=None,
                        help='Save plot to file (e.g., session.png)')
    args = parser.parse_args()

    if args.config:
        config_path = Path(args.config)
        if not config_path.exists():
            LOG.error(f"Config not found: {config_path}")
            return 1
        config = CalibrationConfig.load(str(config_path))
    elif args.continuous:
        config = CalibrationConfig.continuous(
            latitude=args.latitude, longitude=args.longitude, altitude=args.altitude,
            scan_time=args.scan_time,
        )
    else:
        config = CalibrationConfig(
            latitude=args.latitude, longitude=args.longitude, altitude=args.altitude,
            vertical_threshold=args.threshold, horizontal_threshold=args.threshold,
            scan_time=args.scan_time,
        )

    noise_config = None
    if args.noise == 'urban':
        noise_config = GeospatialNoiseConfig.urban(seed=args.seed)
    elif args.noise == 'poor':
        noise_config = GeospatialNoiseConfig.poor(seed=args.seed)

    run = run_simulation(config, noise_config, duration_s=args.duration, fps=args.fps,
                         verbose=not args.quiet)

    if args.paint:
        if run['calibrator'].is_complete:
            run_paint_demo(run['calibrator'], run['earth'])
        else:
            print("\nPaint demo skipped: calibration did not complete")

    if args.plot or args.save_plot:
        save_path = Path(args.save_plot) if args.save_plot else None
        visualize_results(run['results'], config.scan_time, save_path=save_path)

    return 0


if __name__ == '__main__':
    exit(main())
