#!/usr/bin/env python3
"""
Geospatial Origin Calibration for Shared AR Content
===================================================

Aligns the local tracking frame of an AR session to a geospatial anchor so that
content placed by several participants stays registered to the real world.

PRIMARY PATH:
- Per-tick precondition chain (editor / session / support / accuracy)
- Single geospatial anchor acquired once, reused for the session
- Rigid correction of a content-offset frame every good tick
- Stability window: calibration is declared complete only after the pose
  quality has stayed acceptable for `scan_time` seconds without interruption

VARIANTS:
- Continuous mode (freeze_when_stable=False): corrects every good tick forever
- AnchorFollower: pins a content node to the anchor's live pose

Coordinate Frames:
- World W: engine world, Y up
- Session S: tracking space under the session origin node
- Offset O: "Content Placement Offset", parent of all session content

Quaternions are scipy Rotation objects; `a * b` applies b first, then a.
"""

import numpy as np
import logging
import yaml
from dataclasses import dataclass, field
from typing import Optional, Tuple, List, Callable, Any
from enum import Enum, auto
from scipy.spatial.transform import Rotation

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)s | %(message)s'
)
LOG = logging.getLogger(__name__)


OFFSET_FRAME_NAME = "Content Placement Offset"

# Anchors face the opposite way from the content they carry
ANCHOR_YAW_OFFSET_DEG = 180.0


def _vec3(v: Any) -> np.ndarray:
    """Coerce to a float64 3-vector."""
    arr = np.asarray(v, dtype=np.float64).reshape(-1)
    if arr.shape != (3,):
        raise ValueError(f"Expected a 3-vector, got shape {arr.shape}")
    return arr.copy()


def yaw_rotation(angle_deg: float) -> Rotation:
    """Rotation about the world up (Y) axis."""
    return Rotation.from_euler('y', angle_deg, degrees=True)


# --- Scene Graph ---

class SceneNode:
    """
    Rigid scene-graph node (no scale).

    Local pose is relative to the parent; world pose is composed on demand:
        R_world = R_parent * R_local
        p_world = p_parent + R_parent.apply(p_local)
    """

    def __init__(self, name: str,
                 position: Any = (0.0, 0.0, 0.0),
                 rotation: Optional[Rotation] = None,
                 parent: Optional['SceneNode'] = None):
        self.name = name
        self.local_position = _vec3(position)
        self.local_rotation = rotation if rotation is not None else Rotation.identity()
        self.parent: Optional['SceneNode'] = None
        self.children: List['SceneNode'] = []
        if parent is not None:
            self.set_parent(parent, world_position_stays=False)

    def __repr__(self):
        return f"SceneNode({self.name!r}, pos={np.round(self.position, 3).tolist()})"

    @property
    def child_count(self) -> int:
        return len(self.children)

    def get_child(self, index: int) -> 'SceneNode':
        return self.children[index]

    @property
    def rotation(self) -> Rotation:
        """World rotation."""
        if self.parent is None:
            return self.local_rotation
        return self.parent.rotation * self.local_rotation

    @property
    def position(self) -> np.ndarray:
        """World position."""
        if self.parent is None:
            return self.local_position.copy()
        return self.parent.position + self.parent.rotation.apply(self.local_position)

    def set_world_pose(self, position: Any, rotation: Rotation) -> None:
        """Write world position and rotation in one step."""
        position = _vec3(position)
        if self.parent is None:
            self.local_position = position
            self.local_rotation = rotation
            return
        parent_rot_inv = self.parent.rotation.inv()
        self.local_rotation = parent_rot_inv * rotation
        self.local_position = parent_rot_inv.apply(position - self.parent.position)

    def set_parent(self, parent: Optional['SceneNode'], world_position_stays: bool = True) -> None:
        """
        Attach under a new parent.

        With world_position_stays the world pose is kept and the local pose is
        re-derived, so the node does not visibly move. Otherwise the local pose
        is kept and the node moves with its new parent.
        """
        if parent is self:
            raise ValueError(f"{self.name} cannot be its own parent")
        ancestor = parent
        while ancestor is not None:
            if ancestor is self:
                raise ValueError(f"Cycle: {parent.name} is a descendant of {self.name}")
            ancestor = ancestor.parent

        world_pos, world_rot = self.position, self.rotation

        if self.parent is not None:
            self.parent.children.remove(self)
        self.parent = parent
        if parent is not None:
            parent.children.append(self)

        if world_position_stays:
            self.set_world_pose(world_pos, world_rot)

    def transform_point(self, point: Any) -> np.ndarray:
        """Local point -> world point."""
        return self.position + self.rotation.apply(_vec3(point))

    def inverse_transform_point(self, point: Any) -> np.ndarray:
        """World point -> local point."""
        return self.rotation.inv().apply(_vec3(point) - self.position)

    def transform_direction(self, direction: Any) -> np.ndarray:
        """Local direction -> world direction (rotation only)."""
        return self.rotation.apply(_vec3(direction))

    def inverse_transform_direction(self, direction: Any) -> np.ndarray:
        """World direction -> local direction (rotation only)."""
        return self.rotation.inv().apply(_vec3(direction))

    def walk(self):
        """Depth-first iteration over this node and its descendants."""
        yield self
        for child in self.children:
            yield from child.walk()


def insert_offset_frame(attachment: SceneNode, name: str = OFFSET_FRAME_NAME) -> SceneNode:
    """
    Insert a synthetic parent between `attachment` and all of its children.

    The new node sits at the attachment's own origin. Existing children are
    re-parented under it with their world poses preserved.
    """
    offset = SceneNode(name)
    offset.set_parent(attachment, world_position_stays=False)

    for child in list(attachment.children):
        if child is not offset:
            child.set_parent(offset, world_position_stays=True)

    LOG.info(f"Inserted '{name}' under '{attachment.name}', "
             f"adopted {offset.child_count} children")
    return offset


# --- Tracking Inputs ---

class SessionState(Enum):
    """Tracking-session readiness as polled once per tick."""
    NOT_READY = auto()
    INITIALIZING = auto()
    TRACKING = auto()


class FeatureSupport(Enum):
    """Geospatial capability of the device/mode."""
    UNSUPPORTED = auto()
    UNKNOWN = auto()    # Still being checked; not treated as a failure
    SUPPORTED = auto()


@dataclass
class PoseQualitySample:
    """Accuracy of the camera's geospatial pose (meters, 1-sigma)."""
    vertical_accuracy: float
    horizontal_accuracy: float
    tracking_available: bool = True


@dataclass
class TrackingSnapshot:
    """Everything the calibrator polls in one tick."""
    timestamp: float  # seconds
    session_state: SessionState = SessionState.TRACKING
    geospatial_support: FeatureSupport = FeatureSupport.SUPPORTED
    quality: PoseQualitySample = field(
        default_factory=lambda: PoseQualitySample(float('inf'), float('inf'), False)
    )
    is_editor: bool = False


def is_acceptable(sample: PoseQualitySample,
                  vertical_threshold: float,
                  horizontal_threshold: float) -> bool:
    """
    Quality gate for a geospatial pose sample.

    Rejects only when tracking is unavailable, or when BOTH the vertical and
    the horizontal accuracy exceed their thresholds. One good axis is enough.
    """
    if not sample.tracking_available:
        return False

    if (sample.vertical_accuracy > vertical_threshold
            and sample.horizontal_accuracy > horizontal_threshold):
        return False

    return True


# --- Status ---

class CalibrationStatus(Enum):
    """Human-readable status published every tick (diagnostics only)."""
    EDITOR = "On Editor."
    NOT_READY = "Session is not tracking yet."
    UNSUPPORTED = "This device does not support geospatial tracking."
    LOW_ACCURACY = "Accuracy is low."
    HIGH_ACCURACY = "Accuracy is high."
    ADJUSTING = "Adjusting position and rotation."
    COMPLETE = "Adjust complete."


def check_preconditions(snapshot: TrackingSnapshot,
                        vertical_threshold: float,
                        horizontal_threshold: float) -> CalibrationStatus:
    """Run the precondition chain; the first failing check decides the status."""
    if snapshot.is_editor:
        return CalibrationStatus.EDITOR

    if snapshot.session_state != SessionState.TRACKING:
        return CalibrationStatus.NOT_READY

    if snapshot.geospatial_support == FeatureSupport.UNSUPPORTED:
        return CalibrationStatus.UNSUPPORTED

    if not is_acceptable(snapshot.quality, vertical_threshold, horizontal_threshold):
        return CalibrationStatus.LOW_ACCURACY

    return CalibrationStatus.HIGH_ACCURACY


# --- Configuration ---

@dataclass
class CalibrationConfig:
    """
    Anchor target and tuning for one calibrator.
    """
    # --- Anchor target (WGS84) ---
    latitude: float = 0.0
    longitude: float = 0.0
    altitude: float = 0.0  # meters above the WGS84 ellipsoid

    # --- Quality gate (meters) ---
    vertical_threshold: float = 15.0
    horizontal_threshold: float = 15.0

    # --- Stability window ---
    scan_time: float = 3.0  # seconds of uninterrupted good quality
    freeze_when_stable: bool = True  # False: keep correcting forever

    # --- Metadata ---
    site_name: str = ""
    notes: str = ""

    @classmethod
    def continuous(cls, **kwargs) -> 'CalibrationConfig':
        """Settings used by the continuous-correction variant."""
        params = dict(vertical_threshold=25.0, horizontal_threshold=25.0,
                      freeze_when_stable=False)
        params.update(kwargs)
        return cls(**params)

    def validate(self) -> None:
        """Raise ValueError on values the calibrator cannot work with."""
        if self.scan_time < 0:
            raise ValueError(f"scan_time must be >= 0, got {self.scan_time}")
        if self.vertical_threshold <= 0 or self.horizontal_threshold <= 0:
            raise ValueError(
                f"Accuracy thresholds must be > 0, got "
                f"vertical={self.vertical_threshold}, horizontal={self.horizontal_threshold}"
            )
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")
        if not 1.0 <= self.scan_time <= 10.0:
            LOG.warning(f"scan_time={self.scan_time}s is outside the usual 1-10s range")

    def save(self, path: str) -> None:
        """Save configuration to YAML file."""
        data = {
            'anchor': {
                'latitude': self.latitude,
                'longitude': self.longitude,
                'altitude': self.altitude,
            },
            'quality_gate': {
                'vertical_threshold': self.vertical_threshold,
                'horizontal_threshold': self.horizontal_threshold,
            },
            'stability': {
                'scan_time': self.scan_time,
                'freeze_when_stable': self.freeze_when_stable,
            },
            'metadata': {
                'site_name': self.site_name,
                'notes': self.notes,
            }
        }
        with open(path, 'w') as f:
            yaml.dump(data, f, default_flow_style=False)
        LOG.info(f"Saved calibration config to {path}")

    @classmethod
    def load(cls, path: str) -> 'CalibrationConfig':
        """Load configuration from YAML file."""
        with open(path, 'r') as f:
            data = yaml.safe_load(f)

        gate = data.get('quality_gate', {})
        stability = data.get('stability', {})
        metadata = data.get('metadata', {})

        return cls(
            latitude=float(data['anchor']['latitude']),
            longitude=float(data['anchor']['longitude']),
            altitude=float(data['anchor']['altitude']),
            vertical_threshold=float(gate.get('vertical_threshold', 15.0)),
            horizontal_threshold=float(gate.get('horizontal_threshold', 15.0)),
            scan_time=float(stability.get('scan_time', 3.0)),
            freeze_when_stable=bool(stability.get('freeze_when_stable', True)),
            site_name=metadata.get('site_name', ''),
            notes=metadata.get('notes', ''),
        )


# --- Anchor ---

@dataclass
class GeospatialAnchor:
    """
    Anchor bound to a fixed geodetic target.

    `node` carries the live pose. The tracking subsystem keeps refining it
    after creation; the calibrator only reads it.
    """
    latitude: float
    longitude: float
    altitude: float
    rotation_offset: Rotation
    node: SceneNode

    @property
    def position(self) -> np.ndarray:
        return self.node.position

    @property
    def rotation(self) -> Rotation:
        return self.node.rotation


# add_anchor(lat, lon, alt, rotation_offset) -> anchor or None while unavailable
AnchorFactory = Callable[[float, float, float, Rotation], Optional[GeospatialAnchor]]
StatusSink = Callable[[CalibrationStatus], None]


# --- Calibration State Machine ---

class CalibrationPhase(Enum):
    """Operating phase of the calibrator."""
    IDLE = auto()        # No anchor yet, or preconditions failing
    SCANNING = auto()    # Anchor held, stability window running
    CALIBRATED = auto()  # Terminal


class WindowAction(Enum):
    """Side effect requested by a transition."""
    NONE = auto()
    ADJUST = auto()      # Apply the rigid correction this tick
    RESTART = auto()     # Quality dropped: window restarts, no correction
    COMPLETE = auto()    # Freeze and publish completion


@dataclass(frozen=True)
class CalibrationState:
    """Phase plus the start of the current stability window."""
    phase: CalibrationPhase = CalibrationPhase.IDLE
    scan_start: Optional[float] = None

    @classmethod
    def idle(cls) -> 'CalibrationState':
        return cls(CalibrationPhase.IDLE)

    @classmethod
    def scanning(cls, start: float) -> 'CalibrationState':
        return cls(CalibrationPhase.SCANNING, start)

    @classmethod
    def calibrated(cls) -> 'CalibrationState':
        return cls(CalibrationPhase.CALIBRATED)

    def elapsed(self, now: float) -> float:
        """Seconds since the window opened (0 outside SCANNING)."""
        if self.scan_start is None:
            return 0.0
        return now - self.scan_start


def advance(state: CalibrationState,
            now: float,
            status: CalibrationStatus,
            pose_good: bool,
            anchor_ready: bool,
            scan_time: float) -> Tuple[CalibrationState, WindowAction]:
    """
    Pure transition function of the stability-window state machine.

    Args:
        state: State before this tick
        now: Tick timestamp (seconds)
        status: Result of the precondition chain for this tick
        pose_good: Session tracking AND quality gate accepted
        anchor_ready: Anchor exists after this tick's acquisition attempt
        scan_time: Required uninterrupted good duration

    Returns:
        (new_state, action)
    """
    if state.phase == CalibrationPhase.CALIBRATED:
        return state, WindowAction.NONE

    if state.phase == CalibrationPhase.IDLE:
        if status == CalibrationStatus.HIGH_ACCURACY and anchor_ready:
            return CalibrationState.scanning(now), WindowAction.ADJUST
        return state, WindowAction.NONE

    # SCANNING: the window is checked before this tick's correction
    if state.elapsed(now) >= scan_time:
        return CalibrationState.calibrated(), WindowAction.COMPLETE

    if pose_good:
        return state, WindowAction.ADJUST

    return CalibrationState.scanning(now), WindowAction.RESTART


def compute_correction(anchor_position: Any, anchor_rotation: Rotation,
                       frame_position: Any, frame_rotation: Rotation) -> Tuple[np.ndarray, Rotation]:
    """
    Rigid correction that moves the offset frame so the anchor becomes the origin.

        rotation = inverse(Ra) * Rf
        position = Pf - Pa

    With the anchor already at the origin (Pa = 0, Ra = I) this is a no-op.
    """
    rotation = anchor_rotation.inv() * frame_rotation
    position = _vec3(frame_position) - _vec3(anchor_position)
    return position, rotation


# --- Core Modules ---

class GeospatialAnchorBehaviour:
    """
    Shared plumbing: precondition chain, status publishing, one-shot anchor.
    """

    def __init__(self, config: CalibrationConfig,
                 anchor_factory: AnchorFactory,
                 status_sink: Optional[StatusSink] = None):
        if anchor_factory is None:
            raise ValueError("anchor_factory is required")
        config.validate()

        self.cfg = config
        self._anchor_factory = anchor_factory
        self._status_sink = status_sink

        self.anchor: Optional[GeospatialAnchor] = None
        self.anchor_attempts = 0
        self.status: Optional[CalibrationStatus] = None
        self.tick_count = 0

    def _set_status(self, status: CalibrationStatus) -> None:
        if status != self.status:
            LOG.info(f"[{type(self).__name__}] {status.value}")
        self.status = status
        if self._status_sink is not None:
            self._status_sink(status)

    def _check(self, snapshot: TrackingSnapshot) -> CalibrationStatus:
        return check_preconditions(snapshot, self.cfg.vertical_threshold,
                                   self.cfg.horizontal_threshold)

    def _pose_good(self, snapshot: TrackingSnapshot) -> bool:
        return (snapshot.session_state == SessionState.TRACKING
                and is_acceptable(snapshot.quality, self.cfg.vertical_threshold,
                                  self.cfg.horizontal_threshold))

    def ensure_anchor(self, snapshot: TrackingSnapshot) -> bool:
        """
        Return True when the anchor exists, creating it on first success.

        Creation needs geospatial tracking; a None result is retried on the
        next tick that gets here.
        """
        if not snapshot.quality.tracking_available:
            return False

        if self.anchor is None:
            self.anchor_attempts += 1
            offset_rotation = yaw_rotation(ANCHOR_YAW_OFFSET_DEG)
            self.anchor = self._anchor_factory(
                self.cfg.latitude, self.cfg.longitude, self.cfg.altitude, offset_rotation
            )
            if self.anchor is None:
                LOG.debug(f"Anchor creation returned None (attempt {self.anchor_attempts})")
            else:
                LOG.info(f"Anchor created at lat={self.cfg.latitude:.6f}, "
                         f"lon={self.cfg.longitude:.6f}, alt={self.cfg.altitude:.1f} "
                         f"after {self.anchor_attempts} attempt(s)")

        return self.anchor is not None


class FrameCalibrator(GeospatialAnchorBehaviour):
    """
    Keeps the anchor at the origin of the content-offset frame until the pose
    has been stable for `scan_time`, then freezes.

    Usage:
        calibrator = FrameCalibrator(config, session_origin, origin, factory)
        for snapshot in snapshots:
            calibrator.update(snapshot)
        if calibrator.is_complete:
            local = calibrator.world_to_local(direction)
    """

    def __init__(self, config: CalibrationConfig,
                 attachment: SceneNode,
                 origin: SceneNode,
                 anchor_factory: AnchorFactory,
                 status_sink: Optional[StatusSink] = None):
        if attachment is None:
            raise ValueError("attachment node is required")
        if origin is None:
            raise ValueError("origin node is required")
        super().__init__(config, anchor_factory, status_sink)

        self.attachment = attachment
        self.origin = origin
        self.state = CalibrationState.idle()
        self.adjust_count = 0
        self.window_restarts = 0
        self._offset_frame: Optional[SceneNode] = None

    @property
    def content_offset(self) -> SceneNode:
        """Offset frame, inserted under the attachment on first access."""
        if self._offset_frame is None:
            self._offset_frame = insert_offset_frame(self.attachment)
        return self._offset_frame

    @property
    def is_complete(self) -> bool:
        return self.state.phase == CalibrationPhase.CALIBRATED

    @property
    def phase(self) -> CalibrationPhase:
        return self.state.phase

    def update(self, snapshot: TrackingSnapshot) -> CalibrationPhase:
        """Run one tick. Returns the phase after the tick."""
        if self.is_complete:
            return self.state.phase

        self.tick_count += 1
        now = snapshot.timestamp

        status = self._check(snapshot)
        anchor_ready = self.anchor is not None
        if status == CalibrationStatus.HIGH_ACCURACY:
            anchor_ready = self.ensure_anchor(snapshot)
        self._set_status(CalibrationStatus.ADJUSTING
                         if status == CalibrationStatus.HIGH_ACCURACY and anchor_ready else status)

        if not self.cfg.freeze_when_stable:
            # Continuous variant: correct on every fully-passing tick
            if status == CalibrationStatus.HIGH_ACCURACY and anchor_ready:
                if self.state.phase == CalibrationPhase.IDLE:
                    self.state = CalibrationState.scanning(now)
                self.adjust()
            return self.state.phase

        previous = self.state.phase
        self.state, action = advance(
            self.state, now, status, self._pose_good(snapshot), anchor_ready, self.cfg.scan_time
        )

        if action == WindowAction.ADJUST:
            if previous == CalibrationPhase.IDLE:
                LOG.info(f"Stability window opened at t={now:.2f}s")
            self.adjust()
        elif action == WindowAction.RESTART:
            self.window_restarts += 1
            LOG.info(f"Quality dropped at t={now:.2f}s, restarting stability window")
        elif action == WindowAction.COMPLETE:
            self._complete(now)

        return self.state.phase

    def adjust(self) -> None:
        """Apply the rigid correction that maps the offset frame onto the anchor."""
        offset = self.content_offset
        position, rotation = compute_correction(
            self.anchor.position, self.anchor.rotation, offset.position, offset.rotation
        )
        offset.set_world_pose(position, rotation)
        self.adjust_count += 1

    def _complete(self, now: float) -> None:
        self._set_status(CalibrationStatus.COMPLETE)
        offset = self.content_offset
        LOG.info(f"Calibration complete at t={now:.2f}s after {self.adjust_count} corrections, "
                 f"{self.window_restarts} window restarts; offset frozen at "
                 f"{np.round(offset.position, 3).tolist()}")

    def world_to_local(self, world_direction: Any) -> np.ndarray:
        """
        World direction -> direction in the origin node's frame.

        Meaningful only once `is_complete` is True.
        """
        return self.origin.inverse_transform_direction(world_direction)

    def get_status(self) -> dict:
        """Current calibrator status for debugging."""
        return {
            'phase': self.state.phase.name,
            'scan_start': self.state.scan_start,
            'status': self.status.value if self.status else None,
            'complete': self.is_complete,
            'anchor': self.anchor is not None,
            'anchor_attempts': self.anchor_attempts,
            'adjust_count': self.adjust_count,
            'window_restarts': self.window_restarts,
            'tick_count': self.tick_count,
        }


class AnchorFollower(GeospatialAnchorBehaviour):
    """Places a content node at the anchor's live pose on every passing tick."""

    def __init__(self, config: CalibrationConfig,
                 target: SceneNode,
                 anchor_factory: AnchorFactory,
                 status_sink: Optional[StatusSink] = None):
        if target is None:
            raise ValueError("target node is required")
        super().__init__(config, anchor_factory, status_sink)
        self.target = target

    def update(self, snapshot: TrackingSnapshot) -> bool:
        self.tick_count += 1
        status = self._check(snapshot)
        if status != CalibrationStatus.HIGH_ACCURACY or not self.ensure_anchor(snapshot):
            self._set_status(status)
            return False

        self._set_status(CalibrationStatus.ADJUSTING)
        self.target.set_world_pose(self.anchor.position, self.anchor.rotation)
        return True


# --- Production API ---

def create_calibrator(
    latitude: float,
    longitude: float,
    altitude: float,
    session_origin: SceneNode,
    origin: SceneNode,
    anchor_factory: AnchorFactory,
    scan_time: float = 3.0,
    vertical_threshold: float = 15.0,
    horizontal_threshold: float = 15.0,
    status_sink: Optional[StatusSink] = None
) -> FrameCalibrator:
    """
    Convenience function to create a FrameCalibrator.

    Args:
        latitude, longitude, altitude: Anchor target (WGS84, meters)
        session_origin: Node whose children are re-parented under the offset frame
        origin: Reference node for world_to_local()
        anchor_factory: add_anchor(lat, lon, alt, rotation_offset) -> anchor or None
        scan_time: Seconds of uninterrupted good quality before completion
        vertical_threshold, horizontal_threshold: Quality gate (meters)
        status_sink: Optional callback receiving each published status

    Returns:
        Configured FrameCalibrator instance

    Example:
        ```python
        calibrator = create_calibrator(
            35.681236, 139.767125, 40.0,
            session_origin=xr_origin, origin=drawing_origin,
            anchor_factory=earth.add_anchor,
        )
        ```
    """
    config = CalibrationConfig(
        latitude=latitude,
        longitude=longitude,
        altitude=altitude,
        vertical_threshold=vertical_threshold,
        horizontal_threshold=horizontal_threshold,
        scan_time=scan_time,
    )
    return FrameCalibrator(config, session_origin, origin, anchor_factory, status_sink)


if __name__ == '__main__':
    print("Use FrameCalibrator or create_calibrator() from your frame loop.")
    print("See simulate_session.py for a runnable example.")
