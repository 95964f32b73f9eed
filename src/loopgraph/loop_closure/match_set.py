"""Parallel correspondence arrays carried through loop verification."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass
class MatchSet:
    """Correspondences between a current keyframe's window and an old keyframe.

    Row i of every array describes the same correspondence. Filtering goes
    through ``reduce`` so the arrays can never fall out of step.

    Attributes:
        points_2d_cur: (N, 2) window keypoints of the current keyframe
        points_2d_old: (N, 2) matched keypoints in the old keyframe
        points_2d_old_norm: (N, 2) matched keypoints, normalized
        points_3d: (N, 3) landmarks of the current keyframe (world frame)
        point_ids: (N, ...) landmark identifiers
    """

    points_2d_cur: np.ndarray
    points_2d_old: np.ndarray
    points_2d_old_norm: np.ndarray
    points_3d: np.ndarray
    point_ids: np.ndarray

    def __post_init__(self) -> None:
        self.points_2d_cur = np.asarray(self.points_2d_cur, dtype=np.float64).reshape(-1, 2)
        self.points_2d_old = np.asarray(self.points_2d_old, dtype=np.float64).reshape(-1, 2)
        self.points_2d_old_norm = np.asarray(self.points_2d_old_norm, dtype=np.float64).reshape(-1, 2)
        self.points_3d = np.asarray(self.points_3d, dtype=np.float64).reshape(-1, 3)
        self.point_ids = np.asarray(self.point_ids)

        n = len(self.points_2d_cur)
        lengths = [len(a) for a in self._arrays()]
        if any(length != n for length in lengths):
            raise ValueError(f"Match set arrays must have equal length, got {lengths}")

    def _arrays(self) -> tuple[np.ndarray, ...]:
        return (
            self.points_2d_cur,
            self.points_2d_old,
            self.points_2d_old_norm,
            self.points_3d,
            self.point_ids,
        )

    def reduce(self, mask: np.ndarray) -> MatchSet:
        """Keep the rows where ``mask`` is true, preserving their order.

        Args:
            mask: Boolean array with one entry per correspondence

        Returns:
            New MatchSet with the surviving rows

        Raises:
            ValueError: If the mask length differs from the match count
        """
        mask = np.asarray(mask, dtype=bool).flatten()
        if len(mask) != len(self):
            raise ValueError(f"Mask has {len(mask)} entries for {len(self)} correspondences")
        return MatchSet(
            points_2d_cur=self.points_2d_cur[mask],
            points_2d_old=self.points_2d_old[mask],
            points_2d_old_norm=self.points_2d_old_norm[mask],
            points_3d=self.points_3d[mask],
            point_ids=self.point_ids[mask],
        )

    @classmethod
    def empty(cls) -> MatchSet:
        return cls(
            points_2d_cur=np.empty((0, 2)),
            points_2d_old=np.empty((0, 2)),
            points_2d_old_norm=np.empty((0, 2)),
            points_3d=np.empty((0, 3)),
            point_ids=np.empty(0, dtype=np.int64),
        )

    def __len__(self) -> int:
        return len(self.points_2d_cur)
