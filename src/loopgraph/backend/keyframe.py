"""Keyframe entity and the keyframe registry.

A keyframe is a frame retained for place recognition. Full keyframes carry
the features tracked by the estimator (the "window" observations, with
their triangulated landmarks) and an independently detected feature set
used when the keyframe is a loop candidate. Pose-only keyframes carry only
their pose and covisibility row.

Identity (index, timestamp, sequence) is immutable. Poses are mutated by
pose-graph correction. Loop state is mutated only through ``set_loop`` and
``update_loop``.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from ..features.extractor import FeatureSet
from ..features.vocabulary import AppearanceVector, VisualVocabulary
from ..geometry import SE3
from ..geometry.rotation import quaternion_to_rotation
from .covisibility import DEFAULT_MIN_WEIGHT, build_connections, landmark_keys

if TYPE_CHECKING:
    from ..config import Parameters
    from ..features.brisk import BriskExtractor
    from ..features.extractor import FeatureExtractor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoopInfo:
    """Relative pose between a keyframe and its loop target.

    Attributes:
        relative_t: (3,) translation of the current keyframe in the old frame
        relative_q: (4,) rotation quaternion (w, x, y, z)
        relative_yaw: Yaw difference in degrees, within (-180, 180]
    """

    relative_t: np.ndarray
    relative_q: np.ndarray
    relative_yaw: float

    def __post_init__(self) -> None:
        t = np.asarray(self.relative_t, dtype=np.float64).flatten()
        q = np.asarray(self.relative_q, dtype=np.float64).flatten()
        if t.shape != (3,) or q.shape != (4,):
            raise ValueError(f"LoopInfo expects (3,) translation and (4,) quaternion, got {t.shape}, {q.shape}")
        t.flags.writeable = False
        q.flags.writeable = False
        object.__setattr__(self, "relative_t", t)
        object.__setattr__(self, "relative_q", q)
        object.__setattr__(self, "relative_yaw", float(self.relative_yaw))

    @classmethod
    def zero(cls) -> LoopInfo:
        """Identity relative pose with zero yaw (the state before any loop)."""
        return cls(relative_t=np.zeros(3), relative_q=np.array([1.0, 0.0, 0.0, 0.0]), relative_yaw=0.0)

    @classmethod
    def from_array(cls, values: np.ndarray) -> LoopInfo:
        """Build from the packed layout [tx, ty, tz, qw, qx, qy, qz, yaw]."""
        values = np.asarray(values, dtype=np.float64).flatten()
        if values.shape != (8,):
            raise ValueError(f"Packed loop info must have 8 values, got {values.shape}")
        return cls(relative_t=values[:3], relative_q=values[3:7], relative_yaw=values[7])

    def to_array(self) -> np.ndarray:
        """Pack as [tx, ty, tz, qw, qx, qy, qz, yaw]."""
        return np.concatenate([self.relative_t, self.relative_q, [self.relative_yaw]])

    @property
    def translation_norm(self) -> float:
        """Euclidean norm of the relative translation."""
        return float(np.linalg.norm(self.relative_t))

    def within(self, max_yaw: float, max_translation: float) -> bool:
        """Check |yaw| < max_yaw and ||t|| < max_translation."""
        return abs(self.relative_yaw) < max_yaw and self.translation_norm < max_translation


@dataclass(frozen=True)
class LoopConstraint:
    """Loop constraint record consumed by the pose-graph optimizer."""

    current_index: int
    old_index: int
    relative_t: np.ndarray  # (3,)
    relative_q: np.ndarray  # (4,) w, x, y, z
    relative_yaw: float  # degrees

    def relative_pose(self) -> SE3:
        """Return the relative transform as an SE3."""
        return SE3(rotation=quaternion_to_rotation(self.relative_q), translation=self.relative_t)


@dataclass
class BriskFeatures:
    """Secondary (BRISK) descriptor family of a keyframe.

    Attributes:
        keypoints: (N, 2) independently detected BRISK keypoints
        descriptors: (N, 64) their descriptors
        window_descriptors: (M, 64) descriptors of the window keypoints that
            BRISK could describe
        window_indices: (M,) indices of those keypoints in the window arrays
    """

    keypoints: np.ndarray
    descriptors: np.ndarray
    window_descriptors: np.ndarray
    window_indices: np.ndarray

    def __post_init__(self) -> None:
        if len(self.keypoints) != len(self.descriptors):
            raise ValueError("BRISK keypoints and descriptors must be index-aligned")
        if len(self.window_descriptors) != len(self.window_indices):
            raise ValueError("BRISK window descriptors and indices must be index-aligned")


_IMMUTABLE_FIELDS = ("index", "timestamp_ns", "sequence")


@dataclass(eq=False)
class Keyframe:
    """A keyframe retained for place recognition and loop closure.

    Window arrays (``window``, ``points_3d``, ``point_ids``) are always
    index-aligned. ``pose_vio`` is the estimator pose (T_world_camera),
    ``pose_current`` the pose after global correction and ``origin_pose``
    the untouched capture pose that loop closure works with.
    """

    index: int
    timestamp_ns: int
    pose_vio: SE3
    sequence: int = 0
    is_keyframe: bool = True
    window: FeatureSet | None = None  # Estimator-tracked keypoints + descriptors
    points_3d: np.ndarray | None = None  # (N, 3) landmark positions in world
    point_ids: np.ndarray | None = None  # (N, ...) opaque landmark identifiers
    features: FeatureSet | None = None  # Independently detected keypoints
    bow_vector: AppearanceVector = field(default_factory=dict)
    brisk: BriskFeatures | None = None
    image: np.ndarray | None = None  # Kept only in debug mode

    pose_current: SE3 = field(init=False)
    origin_pose: SE3 = field(init=False)
    connections: dict[int, int] = field(init=False, default_factory=dict)
    has_loop: bool = field(init=False, default=False)
    loop_index: int | None = field(init=False, default=None)
    loop_info: LoopInfo = field(init=False, default_factory=LoopInfo.zero)

    def __post_init__(self) -> None:
        self._check_pose(self.pose_vio)
        self.pose_vio = self.pose_vio.copy()
        self.pose_current = self.pose_vio.copy()
        self.origin_pose = self.pose_vio.copy()

        if self.window is None:
            self.window = FeatureSet.empty()
        if self.features is None:
            self.features = FeatureSet.empty()

        n = len(self.window)
        if self.points_3d is not None:
            points = np.array(self.points_3d, dtype=np.float64).reshape(-1, 3)
            if len(points) != n:
                raise ValueError(f"points_3d has {len(points)} rows for {n} window keypoints")
            points.flags.writeable = False
            self.points_3d = points
        if self.point_ids is not None:
            ids = np.array(self.point_ids)
            if len(ids) != n:
                raise ValueError(f"point_ids has {len(ids)} rows for {n} window keypoints")
            ids.flags.writeable = False
            self.point_ids = ids

    def __setattr__(self, name: str, value: object) -> None:
        if name in _IMMUTABLE_FIELDS and name in self.__dict__:
            raise AttributeError(f"Keyframe.{name} is immutable")
        super().__setattr__(name, value)

    @classmethod
    def from_image(
        cls,
        index: int,
        timestamp_ns: int,
        pose: SE3,
        image: np.ndarray,
        keypoints: np.ndarray,
        points_3d: np.ndarray | None,
        point_ids: np.ndarray | None,
        observation_counts: Mapping[int, int],
        params: Parameters,
        extractor: FeatureExtractor,
        vocabulary: VisualVocabulary | None = None,
        brisk_extractor: BriskExtractor | None = None,
        sequence: int = 0,
        is_keyframe: bool = True,
    ) -> Keyframe:
        """Create a keyframe from an image and the estimator's observations.

        Args:
            index: Unique keyframe index
            timestamp_ns: Capture time (nanoseconds)
            pose: Estimator pose T_world_camera
            image: Grayscale image
            keypoints: (N, 2) keypoints tracked by the estimator
            points_3d: (N, 3) landmark positions aligned with keypoints
            point_ids: (N, ...) landmark identifiers aligned with keypoints
            observation_counts: Neighbor keyframe index -> shared landmarks
            params: Configuration
            extractor: Window/seeded descriptor capability (BRIEF)
            vocabulary: Appearance vocabulary (appearance vector left empty if None)
            brisk_extractor: Secondary descriptor family (optional)
            sequence: Trajectory segment id
            is_keyframe: Full (feature-bearing) keyframe if True

        Returns:
            New Keyframe
        """
        camera = params.camera

        window = None
        if is_keyframe:
            keypoints = np.asarray(keypoints, dtype=np.float32).reshape(-1, 2)
            window = FeatureSet(
                keypoints=keypoints,
                keypoints_norm=camera.normalize(keypoints),
                descriptors=extractor.describe(image, keypoints),
            )
        else:
            points_3d = None
            point_ids = None

        detected = extractor.detect(image)
        features = FeatureSet(
            keypoints=detected,
            keypoints_norm=camera.normalize(detected),
            descriptors=extractor.describe(image, detected),
        )

        keyframe = cls(
            index=index,
            timestamp_ns=timestamp_ns,
            pose_vio=pose,
            sequence=sequence,
            is_keyframe=is_keyframe,
            window=window,
            points_3d=points_3d,
            point_ids=point_ids,
            features=features,
            image=image.copy() if params.debug_mode else None,
        )

        if vocabulary is not None:
            keyframe.compute_bow(vocabulary)
        if brisk_extractor is not None:
            keyframe.compute_brisk_points(image, brisk_extractor)
        keyframe.update_connections(
            observation_counts, params.loop_closure.covisibility_min_weight
        )
        return keyframe

    @classmethod
    def pose_only(
        cls,
        index: int,
        timestamp_ns: int,
        pose: SE3,
        observation_counts: Mapping[int, int] | None = None,
        sequence: int = 0,
        is_keyframe: bool = False,
        min_weight: int = DEFAULT_MIN_WEIGHT,
    ) -> Keyframe:
        """Create a lightweight pose-only node."""
        keyframe = cls(
            index=index,
            timestamp_ns=timestamp_ns,
            pose_vio=pose,
            sequence=sequence,
            is_keyframe=is_keyframe,
        )
        keyframe.update_connections(observation_counts or {}, min_weight)
        return keyframe

    # Features

    def compute_bow(self, vocabulary: VisualVocabulary) -> None:
        """Compute the appearance vector from the detected descriptors, once."""
        if not self.bow_vector:
            self.bow_vector = vocabulary.transform(self.features.descriptors)

    def compute_brisk_points(self, image: np.ndarray, brisk_extractor: BriskExtractor) -> None:
        """Compute the secondary BRISK family for independent and window keypoints."""
        keypoints, descriptors = brisk_extractor.detect_and_compute(image)
        if len(self.window) == 0:
            logger.warning("Window keypoints are empty for keyframe %d", self.index)
        window_descriptors, window_indices = brisk_extractor.compute(image, self.window.keypoints)
        self.brisk = BriskFeatures(
            keypoints=keypoints,
            descriptors=descriptors,
            window_descriptors=window_descriptors,
            window_indices=window_indices,
        )
        logger.debug("Keyframe %d: %d BRISK keypoints", self.index, len(keypoints))

    def landmark_keys(self) -> list[Hashable]:
        """Return hashable landmark keys for the window observations."""
        return landmark_keys(self.point_ids)

    @property
    def has_3d_points(self) -> bool:
        """True if the window observations carry triangulated landmarks."""
        return self.points_3d is not None and len(self.points_3d) > 0

    # Covisibility

    def update_connections(
        self,
        observation_counts: Mapping[int, int],
        min_weight: int = DEFAULT_MIN_WEIGHT,
    ) -> bool:
        """Rebuild the covisibility row from the current observation snapshot.

        Args:
            observation_counts: Neighbor keyframe index -> shared landmark count
            min_weight: Edges need strictly more shared landmarks than this

        Returns:
            False if the update was skipped (full keyframe with no
            observation counts), True otherwise
        """
        if not observation_counts and self.is_keyframe:
            logger.warning(
                "Observation counts are empty for keyframe %d; covisibility row left unchanged",
                self.index,
            )
            return False

        self.connections = build_connections(observation_counts, min_weight, self.index)
        return True

    def connected_keyframes(self, min_weight: int = 0) -> list[tuple[int, int]]:
        """Return (neighbor index, weight) pairs sorted by weight descending."""
        connections = [
            (other, weight) for other, weight in self.connections.items() if weight >= min_weight
        ]
        return sorted(connections, key=lambda x: x[1], reverse=True)

    def covisibility_weight(self, other_index: int) -> int:
        """Shared landmark count with another keyframe (0 if not connected)."""
        return self.connections.get(other_index, 0)

    # Poses

    @staticmethod
    def _check_pose(pose: SE3) -> None:
        if not pose.is_valid():
            raise ValueError(f"Pose is not a valid rigid transform: {pose!r}")

    def get_pose(self) -> SE3:
        """Return the current (corrected) pose."""
        return self.pose_current.copy()

    def get_vio_pose(self) -> SE3:
        """Return the estimator pose."""
        return self.pose_vio.copy()

    def update_pose(self, pose: SE3) -> None:
        """Set the corrected pose (after pose-graph optimization)."""
        self._check_pose(pose)
        self.pose_current = pose.copy()

    def update_vio_pose(self, pose: SE3) -> None:
        """Shift the estimator pose; the corrected pose follows it."""
        self._check_pose(pose)
        self.pose_vio = pose.copy()
        self.pose_current = pose.copy()

    # Loop state

    def set_loop(self, old_index: int, loop_info: LoopInfo) -> None:
        """Commit a verified loop to ``old_index``.

        Raises:
            ValueError: If ``old_index`` refers to this keyframe
        """
        if old_index == self.index:
            raise ValueError(f"Keyframe {self.index} cannot close a loop with itself")
        self.loop_index = int(old_index)
        self.loop_info = loop_info
        self.has_loop = True

    def update_loop(
        self,
        loop_info: LoopInfo,
        max_yaw: float = 30.0,
        max_translation: float = 20.0,
    ) -> bool:
        """Revise the stored loop constraint if the new one passes the sanity gate.

        Returns:
            True if ``loop_info`` replaced the stored constraint
        """
        if not loop_info.within(max_yaw, max_translation):
            logger.debug(
                "Keyframe %d: loop update rejected (yaw=%.2f, |t|=%.2f)",
                self.index,
                loop_info.relative_yaw,
                loop_info.translation_norm,
            )
            return False
        self.loop_info = loop_info
        return True

    def get_loop_relative_t(self) -> np.ndarray:
        return self.loop_info.relative_t.copy()

    def get_loop_relative_q(self) -> np.ndarray:
        return self.loop_info.relative_q.copy()

    def get_loop_relative_yaw(self) -> float:
        return self.loop_info.relative_yaw

    def loop_constraint(self) -> LoopConstraint | None:
        """Return the loop constraint record, or None without a loop."""
        if not self.has_loop or self.loop_index is None:
            return None
        return LoopConstraint(
            current_index=self.index,
            old_index=self.loop_index,
            relative_t=self.loop_info.relative_t,
            relative_q=self.loop_info.relative_q,
            relative_yaw=self.loop_info.relative_yaw,
        )

    def release_image(self) -> None:
        """Drop the retained image."""
        self.image = None

    def __repr__(self) -> str:
        return (
            f"Keyframe(index={self.index}, sequence={self.sequence}, "
            f"is_keyframe={self.is_keyframe}, window={len(self.window)}, "
            f"features={len(self.features)}, has_loop={self.has_loop})"
        )


class KeyframeRegistry:
    """Arena of keyframes keyed by their stable integer index.

    Covisibility rows store neighbor indices; the registry resolves them.
    """

    def __init__(self) -> None:
        self._keyframes: dict[int, Keyframe] = {}  # index -> Keyframe
        self._last: Keyframe | None = None

    def add(self, keyframe: Keyframe) -> None:
        """Add a keyframe.

        Raises:
            ValueError: If a keyframe with the same index exists
        """
        if keyframe.index in self._keyframes:
            raise ValueError(f"Keyframe {keyframe.index} is already registered")
        self._keyframes[keyframe.index] = keyframe
        self._last = keyframe

    def get(self, index: int) -> Keyframe | None:
        """Get a keyframe by index, or None."""
        return self._keyframes.get(index)

    def __getitem__(self, index: int) -> Keyframe:
        return self._keyframes[index]

    def __contains__(self, index: object) -> bool:
        return index in self._keyframes

    def __len__(self) -> int:
        return len(self._keyframes)

    def __iter__(self) -> Iterator[Keyframe]:
        return iter(list(self._keyframes.values()))

    @property
    def last(self) -> Keyframe | None:
        """The most recently added keyframe."""
        return self._last

    def neighbors(self, index: int, min_weight: int = 0) -> list[tuple[Keyframe, int]]:
        """Resolve a keyframe's covisibility row to (keyframe, weight) pairs.

        Neighbors no longer in the registry are skipped.
        """
        keyframe = self._keyframes[index]
        return [
            (self._keyframes[other], weight)
            for other, weight in keyframe.connected_keyframes(min_weight)
            if other in self._keyframes
        ]

    def loop_constraints(self) -> list[LoopConstraint]:
        """All committed loop constraints, in keyframe insertion order."""
        constraints = []
        for keyframe in self._keyframes.values():
            constraint = keyframe.loop_constraint()
            if constraint is not None:
                constraints.append(constraint)
        return constraints
