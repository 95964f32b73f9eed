"""Message types for loop closure inter-process communication.

These messages are sent from the estimator to the loop closure process,
and from loop closure back to the estimator and the pose-graph optimizer.
They carry primitive arrays so they pickle cheaply across processes.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from ..backend.keyframe import LoopConstraint, LoopInfo
from ..geometry import SE3

__all__ = [
    "LoopCandidateMessage",
    "LoopClosureShutdownMessage",
    "LoopConstraint",
    "LoopConstraintMessage",
    "LoopInfo",
    "LoopKeyframeData",
    "LoopKeyframeMessage",
    "PoseCorrectionMessage",
    "RelocalizationMessage",
    "RelocalizationPointCloud",
]


@dataclass
class LoopKeyframeData:
    """Keyframe snapshot for the loop closure process.

    Attributes:
        index: Keyframe index (unique, stable)
        timestamp_ns: Capture time in nanoseconds
        pose_rotation: 3x3 rotation of T_world_camera
        pose_translation: (3,) translation of T_world_camera
        keypoints: (N, 2) keypoints tracked by the estimator
        points_3d: (N, 3) landmarks aligned with keypoints
        point_ids: (N, ...) landmark identifiers aligned with keypoints
        image: Grayscale image (None for pose-only keyframes)
        observation_counts: Neighbor index -> shared landmarks. If None the
            loop closure process derives it from ``point_ids``.
        sequence: Trajectory segment id
        is_keyframe: Full (feature-bearing) keyframe if True
    """

    index: int
    timestamp_ns: int
    pose_rotation: np.ndarray  # (3, 3)
    pose_translation: np.ndarray  # (3,)
    keypoints: np.ndarray = field(default_factory=lambda: np.empty((0, 2), dtype=np.float32))
    points_3d: np.ndarray | None = None
    point_ids: np.ndarray | None = None
    image: np.ndarray | None = None
    observation_counts: dict[int, int] | None = None
    sequence: int = 0
    is_keyframe: bool = True

    @property
    def pose(self) -> SE3:
        return SE3(rotation=self.pose_rotation, translation=self.pose_translation)


@dataclass
class LoopKeyframeMessage:
    """New keyframe for the loop closure process."""

    keyframe: LoopKeyframeData


@dataclass
class LoopCandidateMessage:
    """Loop candidates retrieved for a keyframe by the appearance database.

    Candidates are tried in order; the first accepted one wins.
    """

    current_index: int
    candidate_indices: list[int]


@dataclass
class LoopConstraintMessage:
    """Accepted loop constraint for the pose-graph optimizer."""

    constraint: LoopConstraint
    num_inliers: int = 0


@dataclass
class RelocalizationPointCloud:
    """Matched landmarks handed to the estimator on loop acceptance.

    Attributes:
        current_index: Keyframe that closed the loop
        old_index: Keyframe it was matched to
        timestamp_ns: Capture time of the current keyframe
        points_3d: (N, 3) matched landmarks (world frame)
        point_ids: (N, ...) their identifiers
        points_2d_old_norm: (N, 2) normalized keypoints in the old keyframe
    """

    current_index: int
    old_index: int
    timestamp_ns: int
    points_3d: np.ndarray
    point_ids: np.ndarray
    points_2d_old_norm: np.ndarray

    def __len__(self) -> int:
        return len(self.points_3d)


@dataclass
class RelocalizationMessage:
    """Transport wrapper for a relocalization point cloud."""

    point_cloud: RelocalizationPointCloud


@dataclass
class PoseCorrectionMessage:
    """Optimized poses from the pose-graph optimizer.

    Attributes:
        pose_corrections: Keyframe index -> 4x4 T_world_camera
    """

    pose_corrections: dict[int, np.ndarray]  # kf_index -> 4x4 homogeneous matrix


@dataclass
class LoopClosureShutdownMessage:
    """Signal to stop the loop closure process."""

    pass
