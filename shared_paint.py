#!/usr/bin/env python3
"""
Shared Paint Overlay
====================

Consumers of the calibrated origin:
- Camera: touch point -> world point (pinhole + lens model)
- Loopback room layer: join-or-create room, networked objects, fire-and-forget RPC
- PaintOverlay: draws strokes once calibration is complete and replicates each
  point to every participant as one 3-vector

Screen convention: pixels, origin bottom-left (as touch input reports it).
Camera convention: x right, y up, looks down +z.
"""

import numpy as np
import cv2
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple, List, Dict, Callable, Any
from enum import Enum, auto
from scipy.spatial.transform import Rotation

from geospatial_origin import SceneNode, FrameCalibrator

LOG = logging.getLogger(__name__)


DEFAULT_ROOM_NAME = "TestRoom"


# --- Camera ---

@dataclass
class CameraIntrinsics:
    """
    Camera intrinsic parameters from calibration.
    """
    fx: float  # Focal length x (pixels)
    fy: float  # Focal length y (pixels)
    cx: float  # Principal point x (pixels)
    cy: float  # Principal point y (pixels)

    # Distortion coefficients (OpenCV model: k1, k2, p1, p2, k3)
    dist_coeffs: np.ndarray = field(default_factory=lambda: np.zeros(5))

    # Image dimensions
    width: int = 1080
    height: int = 2340

    @classmethod
    def from_fov(cls, width: int, height: int, vertical_fov_deg: float = 60.0) -> 'CameraIntrinsics':
        """Distortion-free intrinsics from a vertical field of view."""
        fy = (height / 2.0) / np.tan(np.deg2rad(vertical_fov_deg) / 2.0)
        return cls(fx=fy, fy=fy, cx=width / 2.0, cy=height / 2.0,
                   width=width, height=height)

    @property
    def K(self) -> np.ndarray:
        """Camera matrix."""
        return np.array([
            [self.fx, 0, self.cx],
            [0, self.fy, self.cy],
            [0, 0, 1]
        ], dtype=np.float64)

    @property
    def K_inv(self) -> np.ndarray:
        """Inverse camera matrix."""
        return np.linalg.inv(self.K)

    def undistort_points(self, pts: np.ndarray) -> np.ndarray:
        """Undistort 2D points (image convention, y down)."""
        if pts.size == 0:
            return pts
        if not np.any(self.dist_coeffs):
            return pts.reshape(-1, 2).astype(np.float64)
        pts_reshaped = pts.reshape(-1, 1, 2).astype(np.float32)
        undist = cv2.undistortPoints(pts_reshaped, self.K, self.dist_coeffs, P=self.K)
        return undist.reshape(-1, 2).astype(np.float64)


class Camera:
    """Device camera: a scene node plus intrinsics."""

    def __init__(self, node: SceneNode, intrinsics: CameraIntrinsics):
        self.node = node
        self.intrinsics = intrinsics

    def screen_to_world_point(self, screen: Tuple[float, float, float]) -> np.ndarray:
        """
        Screen point (x, y, depth) -> world point.

        `depth` is the distance along the camera's forward axis.
        """
        x, y, depth = screen
        intr = self.intrinsics

        # Touch origin is bottom-left; OpenCV pixels start top-left
        pix = np.array([[x, intr.height - y]], dtype=np.float64)
        u, v = intr.undistort_points(pix)[0]

        ray = intr.K_inv @ np.array([u, v, 1.0])
        # OpenCV camera (y down) -> engine camera (y up)
        local = np.array([ray[0], -ray[1], 1.0]) * depth
        return self.node.transform_point(local)


# --- Touch Input ---

class TouchPhase(Enum):
    BEGAN = auto()
    MOVED = auto()
    STATIONARY = auto()
    ENDED = auto()
    CANCELED = auto()


@dataclass
class Touch:
    """Single touch sample for one frame."""
    position: Tuple[float, float]  # pixels, origin bottom-left
    phase: TouchPhase
    finger_id: int = 0


# --- Room Layer ---

class RpcTarget(Enum):
    ALL = auto()     # Every participant, sender included
    OTHERS = auto()  # Every participant except the sender


def rpc_method(func):
    """Mark a component method as remotely callable."""
    func.is_rpc = True
    return func


class NetworkClient:
    """One participant; owns its local copies of networked objects."""

    def __init__(self, name: str):
        self.name = name
        self.connected = False
        self.room: Optional['Room'] = None
        self.views: Dict[int, 'NetworkView'] = {}

    def __repr__(self):
        return f"NetworkClient({self.name!r})"

    def connect(self) -> None:
        self.connected = True
        LOG.info(f"{self.name} connected to master")


class NetworkView:
    """Local copy of a networked object on one client."""

    def __init__(self, view_id: int, owner: NetworkClient, client: NetworkClient, room: 'Room'):
        self.view_id = view_id
        self.owner = owner
        self.client = client
        self.room = room
        self.component: Any = None

    @property
    def is_mine(self) -> bool:
        return self.owner is self.client

    def rpc(self, method: str, target: RpcTarget, *args) -> None:
        """Fire-and-forget call of `method` on this object's copies."""
        payload = tuple(np.asarray(a, dtype=np.float64).reshape(3).copy() for a in args)
        self.room.deliver(self, method, target, payload)

    def receive(self, method: str, payload: tuple) -> None:
        handler = getattr(self.component, method, None)
        if handler is None or not getattr(handler, 'is_rpc', False):
            raise AttributeError(
                f"{type(self.component).__name__} has no RPC method '{method}'"
            )
        handler(*payload)


# (view) -> component attached to that view
ComponentFactory = Callable[[NetworkView], Any]


@dataclass
class _Instantiation:
    view_id: int
    owner: NetworkClient
    factory: ComponentFactory
    position: np.ndarray
    rotation: Rotation


class Room:
    """In-process room: participants in join order, synchronous delivery."""

    def __init__(self, name: str):
        self.name = name
        self.participants: List[NetworkClient] = []
        self._instantiations: List[_Instantiation] = []
        self._next_view_id = 1001

    def join(self, client: NetworkClient) -> None:
        if client in self.participants:
            return
        self.participants.append(client)
        client.room = self
        LOG.info(f"{client.name} joined room '{self.name}' ({len(self.participants)} participants)")

        # Late joiners get copies of objects created before them
        for record in self._instantiations:
            self._spawn(record, client)

    def leave(self, client: NetworkClient) -> None:
        if client not in self.participants:
            return
        self.participants.remove(client)
        client.room = None
        client.views.clear()
        self._instantiations = [r for r in self._instantiations if r.owner is not client]
        for other in self.participants:
            for view_id in [v for v, view in other.views.items() if view.owner is client]:
                del other.views[view_id]
        LOG.info(f"{client.name} left room '{self.name}'")

    def instantiate(self, owner: NetworkClient, factory: ComponentFactory,
                    position: Any = (0.0, 0.0, 0.0),
                    rotation: Optional[Rotation] = None) -> NetworkView:
        """Create a networked object on every participant. Returns the owner's view."""
        if owner not in self.participants:
            raise ValueError(f"{owner.name} is not in room '{self.name}'")

        record = _Instantiation(
            view_id=self._next_view_id,
            owner=owner,
            factory=factory,
            position=np.asarray(position, dtype=np.float64),
            rotation=rotation if rotation is not None else Rotation.identity(),
        )
        self._next_view_id += 1
        self._instantiations.append(record)

        for client in self.participants:
            self._spawn(record, client)
        return owner.views[record.view_id]

    def _spawn(self, record: _Instantiation, client: NetworkClient) -> None:
        view = NetworkView(record.view_id, record.owner, client, self)
        view.component = record.factory(view)
        client.views[record.view_id] = view

    def deliver(self, sender: NetworkView, method: str, target: RpcTarget, payload: tuple) -> None:
        for client in list(self.participants):
            if target == RpcTarget.OTHERS and client is sender.client:
                continue
            view = client.views.get(sender.view_id)
            if view is None:
                continue
            view.receive(method, payload)


class RoomHub:
    """Name -> room registry standing in for the matchmaking server."""

    def __init__(self):
        self.rooms: Dict[str, Room] = {}

    def join_or_create(self, name: str, client: NetworkClient) -> Room:
        if not client.connected:
            raise RuntimeError(f"{client.name} must connect before joining a room")
        room = self.rooms.get(name)
        if room is None:
            room = Room(name)
            self.rooms[name] = room
            LOG.info(f"Created room '{name}'")
        room.join(client)
        return room


class SessionConnector:
    """Connect, join the shared room, then spawn this client's player object."""

    def __init__(self, hub: RoomHub, client: NetworkClient,
                 player_factory: ComponentFactory,
                 room_name: str = DEFAULT_ROOM_NAME):
        if player_factory is None:
            raise ValueError("player_factory is required")
        self.hub = hub
        self.client = client
        self.player_factory = player_factory
        self.room_name = room_name
        self.player_view: Optional[NetworkView] = None

    def start(self) -> NetworkView:
        self.client.connect()
        room = self.hub.join_or_create(self.room_name, self.client)
        self.player_view = room.instantiate(
            self.client, self.player_factory, np.zeros(3), Rotation.identity()
        )
        return self.player_view


# --- Paint ---

class InkStroke(SceneNode):
    """Node moved along the stroke; `trail` keeps every world position visited."""

    def __init__(self, name: str, parent: SceneNode, position: Any):
        super().__init__(name)
        self.set_parent(parent, world_position_stays=False)
        self.set_world_pose(position, Rotation.identity())
        self.trail: List[np.ndarray] = [self.position]

    def move_to(self, local_position: Any) -> None:
        self.local_position = np.asarray(local_position, dtype=np.float64).reshape(3).copy()
        self.trail.append(self.position)


class PaintOverlay:
    """
    Touch drawing replicated to every participant.

    Input is ignored until the calibrator reports completion, so every
    replicated point is expressed relative to the same geospatial origin.
    """

    def __init__(self, view: NetworkView,
                 calibrator: FrameCalibrator,
                 camera: Camera,
                 ink_parent: SceneNode,
                 paint_depth: float = 0.5):
        if calibrator is None:
            raise ValueError("PaintOverlay requires a FrameCalibrator; none was provided")
        if camera is None or ink_parent is None:
            raise ValueError("PaintOverlay requires a camera and an ink parent node")
        self.view = view
        self.calibrator = calibrator
        self.camera = camera
        self.ink_parent = ink_parent
        self.paint_depth = paint_depth
        self.strokes: List[InkStroke] = []
        self.dropped_touches = 0

    def update(self, touches: List[Touch]) -> Optional[np.ndarray]:
        """
        Handle this frame's touches. Returns the replicated point, if any.
        """
        if not self.view.is_mine:
            return None
        if not touches:
            return None
        if not self.calibrator.is_complete:
            self.dropped_touches += 1
            return None

        touch = touches[0]
        x, y = touch.position
        world = self.camera.screen_to_world_point((x, y, self.paint_depth))
        point = self.calibrator.world_to_local(world)

        if touch.phase == TouchPhase.BEGAN:
            self.view.rpc('paint_start', RpcTarget.ALL, point)
        elif touch.phase in (TouchPhase.MOVED, TouchPhase.STATIONARY):
            self.view.rpc('painting', RpcTarget.ALL, point)
        else:
            return None
        return point

    @rpc_method
    def paint_start(self, ink_position: np.ndarray) -> None:
        stroke = InkStroke(f"Ink {len(self.strokes)}", self.ink_parent, ink_position)
        self.strokes.append(stroke)

    @rpc_method
    def painting(self, ink_position: np.ndarray) -> None:
        if self.ink_parent.child_count > 0:
            last = self.ink_parent.get_child(self.ink_parent.child_count - 1)
            if isinstance(last, InkStroke):
                last.move_to(ink_position)
            else:
                last.local_position = ink_position.copy()
