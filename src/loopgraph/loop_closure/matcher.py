"""Brute-force binary descriptor matching between keyframes.

For every window descriptor of the current keyframe the matcher scans all
descriptors of the old keyframe's independent feature set, keeps the one
at minimum Hamming distance (the first one on ties), and accepts it if the
distance is below the family threshold.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from ..config import LoopClosureParams


def _popcount_rows(xor: np.ndarray) -> np.ndarray:
    """Number of set bits along the last axis of a uint8 array."""
    return np.unpackbits(xor, axis=-1).sum(axis=-1, dtype=np.int64)


def hamming_distance(a: np.ndarray, b: np.ndarray) -> int:
    """Hamming distance between two binary descriptors (popcount of XOR)."""
    a = np.asarray(a, dtype=np.uint8).flatten()
    b = np.asarray(b, dtype=np.uint8).flatten()
    if a.shape != b.shape:
        raise ValueError(f"Descriptor shapes differ: {a.shape} vs {b.shape}")
    return int(_popcount_rows(np.bitwise_xor(a, b)))


def brisk_distance(a: np.ndarray, b: np.ndarray, n_bytes: int = 48) -> float:
    """Hamming distance over the first ``n_bytes`` bytes of BRISK descriptors."""
    a = np.asarray(a, dtype=np.uint8).flatten()[:n_bytes]
    b = np.asarray(b, dtype=np.uint8).flatten()[:n_bytes]
    if a.shape != b.shape:
        raise ValueError(f"Descriptor shapes differ: {a.shape} vs {b.shape}")
    return float(_popcount_rows(np.bitwise_xor(a, b)))


def _distances_to(query: np.ndarray, descriptors: np.ndarray, n_bytes: int | None = None) -> np.ndarray:
    """Hamming distances from one descriptor to each row of ``descriptors``."""
    query = np.asarray(query, dtype=np.uint8).flatten()
    descriptors = np.asarray(descriptors, dtype=np.uint8)
    if n_bytes is not None:
        query = query[:n_bytes]
        descriptors = descriptors[:, :n_bytes]
    if descriptors.shape[1] != query.shape[0]:
        raise ValueError(
            f"Descriptor width {query.shape[0]} does not match candidates width {descriptors.shape[1]}"
        )
    return _popcount_rows(np.bitwise_xor(descriptors, query[np.newaxis, :]))


@dataclass
class MatchCandidate:
    """Best match of one query descriptor in the old keyframe."""

    index: int  # Row in the old keyframe's feature set
    distance: float
    point: np.ndarray  # (2,) pixel coordinates
    point_norm: np.ndarray  # (2,) normalized coordinates


@dataclass
class DescriptorMatches:
    """Batch match result, one row per query descriptor in input order.

    Rows with ``status`` false carry a (0, 0) placeholder point.
    """

    points_old: np.ndarray  # (N, 2)
    points_old_norm: np.ndarray  # (N, 2)
    status: np.ndarray  # (N,) bool
    distances: np.ndarray  # (N,) accepted distance, -1 where unmatched

    @property
    def num_matches(self) -> int:
        return int(np.count_nonzero(self.status))

    def __len__(self) -> int:
        return len(self.status)


class DescriptorMatcher:
    """Thresholded nearest-neighbor search for BRIEF and BRISK descriptors."""

    def __init__(self, params: LoopClosureParams | None = None) -> None:
        """Initialize matcher.

        Args:
            params: Loop closure thresholds (defaults if None)
        """
        self._params = params or LoopClosureParams()

    def _best(
        self,
        distances: np.ndarray,
        threshold: float,
        keypoints_old: np.ndarray,
        keypoints_old_norm: np.ndarray | None,
    ) -> MatchCandidate | None:
        if len(distances) == 0:
            return None
        best_index = int(np.argmin(distances))  # First minimum wins
        best_distance = float(distances[best_index])
        if best_distance >= threshold:
            return None
        point = np.asarray(keypoints_old[best_index], dtype=np.float64).copy()
        if keypoints_old_norm is None:
            point_norm = np.zeros(2)
        else:
            point_norm = np.asarray(keypoints_old_norm[best_index], dtype=np.float64).copy()
        return MatchCandidate(index=best_index, distance=best_distance, point=point, point_norm=point_norm)

    def search_in_area(
        self,
        query: np.ndarray,
        descriptors_old: np.ndarray,
        keypoints_old: np.ndarray,
        keypoints_old_norm: np.ndarray,
    ) -> MatchCandidate | None:
        """Find the best BRIEF match of ``query`` among the old descriptors.

        Args:
            query: (32,) descriptor
            descriptors_old: (M, 32) descriptors of the old keyframe
            keypoints_old: (M, 2) keypoints of the old keyframe
            keypoints_old_norm: (M, 2) normalized keypoints of the old keyframe

        Returns:
            The match, or None if no candidate is closer than the threshold
        """
        if len(descriptors_old) == 0:
            return None
        distances = _distances_to(query, descriptors_old)
        return self._best(distances, self._params.hamming_threshold, keypoints_old, keypoints_old_norm)

    def search_by_descriptor(
        self,
        window_descriptors: np.ndarray,
        descriptors_old: np.ndarray,
        keypoints_old: np.ndarray,
        keypoints_old_norm: np.ndarray,
    ) -> DescriptorMatches:
        """Match every window descriptor against the old keyframe (BRIEF).

        Returns:
            DescriptorMatches aligned with ``window_descriptors``
        """
        candidates = [
            self.search_in_area(query, descriptors_old, keypoints_old, keypoints_old_norm)
            for query in np.asarray(window_descriptors, dtype=np.uint8)
        ]
        return self._collect(candidates)

    def match_brisk(
        self,
        query: np.ndarray,
        descriptors_old: np.ndarray,
        keypoints_old: np.ndarray,
        keypoints_old_norm: np.ndarray | None = None,
    ) -> MatchCandidate | None:
        """Find the best BRISK match of ``query`` among the old descriptors."""
        if len(descriptors_old) == 0:
            return None
        distances = _distances_to(query, descriptors_old, self._params.brisk_descriptor_bytes)
        return self._best(
            distances, self._params.brisk_matching_threshold, keypoints_old, keypoints_old_norm
        )

    def search_by_brisk_descriptor(
        self,
        window_descriptors: np.ndarray,
        descriptors_old: np.ndarray,
        keypoints_old: np.ndarray,
        keypoints_old_norm: np.ndarray | None = None,
    ) -> DescriptorMatches:
        """Match every window BRISK descriptor against the old keyframe."""
        candidates = [
            self.match_brisk(query, descriptors_old, keypoints_old, keypoints_old_norm)
            for query in np.asarray(window_descriptors, dtype=np.uint8)
        ]
        return self._collect(candidates)

    @staticmethod
    def _collect(candidates: list[MatchCandidate | None]) -> DescriptorMatches:
        n = len(candidates)
        points_old = np.zeros((n, 2), dtype=np.float64)
        points_old_norm = np.zeros((n, 2), dtype=np.float64)
        status = np.zeros(n, dtype=bool)
        distances = np.full(n, -1.0)
        for i, candidate in enumerate(candidates):
            if candidate is None:
                continue
            points_old[i] = candidate.point
            points_old_norm[i] = candidate.point_norm
            status[i] = True
            distances[i] = candidate.distance
        return DescriptorMatches(
            points_old=points_old,
            points_old_norm=points_old_norm,
            status=status,
            distances=distances,
        )
