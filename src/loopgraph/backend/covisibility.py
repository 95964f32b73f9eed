"""Covisibility between keyframes based on shared landmark observations.

The covisibility graph is a weighted undirected graph where:
- Nodes are keyframes (by stable integer index)
- Edges connect keyframes that observe the same landmarks
- Edge weights are the number of shared landmarks

There is no global graph object. Each keyframe owns its adjacency row and
rebuilds it from the latest observation snapshot (see
``Keyframe.update_connections``). ``ObservationIndex`` produces that
snapshot from landmark ids.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Hashable, Iterable, Mapping

import numpy as np

DEFAULT_MIN_WEIGHT = 20


def build_connections(
    observation_counts: Mapping[int, int],
    min_weight: int = DEFAULT_MIN_WEIGHT,
    self_index: int | None = None,
) -> dict[int, int]:
    """Build a covisibility row from shared-landmark counts.

    Args:
        observation_counts: Neighbor keyframe index -> shared landmark count
        min_weight: Edges need strictly more shared landmarks than this
        self_index: Index of the owning keyframe, never included

    Returns:
        Neighbor keyframe index -> weight, only for weights > min_weight
    """
    return {
        int(other): int(count)
        for other, count in observation_counts.items()
        if count > min_weight and other != self_index
    }


def landmark_keys(point_ids: np.ndarray | None) -> list[Hashable]:
    """Turn a landmark id array into hashable keys (one per row)."""
    if point_ids is None:
        return []
    point_ids = np.asarray(point_ids)
    if point_ids.ndim == 1:
        return [item.item() for item in point_ids]
    return [tuple(row.tolist()) for row in point_ids]


class ObservationIndex:
    """Inverted index from landmark key to the keyframes observing it.

    Produces, for a keyframe, the count of landmarks shared with every other
    indexed keyframe. That map is the input of the covisibility row update.
    """

    def __init__(self) -> None:
        # Inverted index: landmark key -> set of keyframe indices observing it
        self._landmark_to_keyframes: dict[Hashable, set[int]] = defaultdict(set)

        # Keyframe data: index -> set of observed landmark keys
        self._keyframe_observations: dict[int, set[Hashable]] = {}

    def shared_counts(
        self,
        landmark_keys: Iterable[Hashable],
        kf_index: int | None = None,
    ) -> dict[int, int]:
        """Count landmarks shared with indexed keyframes without indexing.

        Args:
            landmark_keys: Landmarks observed by a keyframe
            kf_index: Index to leave out of the counts (the keyframe itself)

        Returns:
            Other keyframe index -> number of shared landmarks
        """
        counts: dict[int, int] = defaultdict(int)
        for key in set(landmark_keys):
            for other in self._landmark_to_keyframes.get(key, ()):
                if other != kf_index:
                    counts[other] += 1
        return dict(counts)

    def add_keyframe(
        self,
        kf_index: int,
        landmark_keys: Iterable[Hashable],
    ) -> dict[int, int]:
        """Index a keyframe and return its shared-landmark counts.

        Args:
            kf_index: Keyframe index
            landmark_keys: Landmarks observed by the keyframe

        Returns:
            Other keyframe index -> number of shared landmarks
        """
        observed = set(landmark_keys)
        shared = self.shared_counts(observed, kf_index)

        self._keyframe_observations[kf_index] = observed
        for key in observed:
            self._landmark_to_keyframes[key].add(kf_index)
        return shared

    def observation_counts(self, kf_index: int) -> dict[int, int]:
        """Recompute shared-landmark counts for an indexed keyframe.

        Raises:
            KeyError: If the keyframe is not indexed
        """
        observed = self._keyframe_observations[kf_index]
        return self.shared_counts(observed, kf_index)

    def keyframes_observing(self, landmark_key: Hashable) -> set[int]:
        """Return the keyframes observing a landmark."""
        return set(self._landmark_to_keyframes.get(landmark_key, set()))

    def remove_keyframe(self, kf_index: int) -> None:
        """Drop a keyframe from the index (eviction is an external policy)."""
        observed = self._keyframe_observations.pop(kf_index, set())
        for key in observed:
            keyframes = self._landmark_to_keyframes.get(key)
            if keyframes is None:
                continue
            keyframes.discard(kf_index)
            if not keyframes:
                del self._landmark_to_keyframes[key]

    def __contains__(self, kf_index: int) -> bool:
        return kf_index in self._keyframe_observations

    @property
    def num_keyframes(self) -> int:
        """Number of indexed keyframes."""
        return len(self._keyframe_observations)

    @property
    def num_landmarks(self) -> int:
        """Number of distinct landmarks seen by indexed keyframes."""
        return len(self._landmark_to_keyframes)
