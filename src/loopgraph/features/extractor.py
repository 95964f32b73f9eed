"""Feature containers and the extractor capability consumed by keyframes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import cv2
import numpy as np


class FeatureExtractor(Protocol):
    """Capability: detect keypoints and describe them with binary descriptors.

    ``describe`` must return exactly one descriptor row per input keypoint so
    that window observations (2D, 3D, ids) stay index-aligned.
    """

    def detect(self, image: np.ndarray) -> np.ndarray:
        """Return Nx2 float32 keypoint coordinates."""
        ...

    def describe(self, image: np.ndarray, keypoints: np.ndarray) -> np.ndarray:
        """Return NxB uint8 descriptors aligned with ``keypoints``."""
        ...


@dataclass
class FeatureSet:
    """Index-aligned keypoints, normalized keypoints and descriptors.

    Attributes:
        keypoints: (N, 2) pixel coordinates
        keypoints_norm: (N, 2) normalized (undistorted, z=1) coordinates
        descriptors: (N, B) uint8 binary descriptors
    """

    keypoints: np.ndarray
    keypoints_norm: np.ndarray
    descriptors: np.ndarray

    def __post_init__(self) -> None:
        self.keypoints = np.array(self.keypoints, dtype=np.float32).reshape(-1, 2)
        self.keypoints_norm = np.array(self.keypoints_norm, dtype=np.float32).reshape(-1, 2)
        self.descriptors = np.array(self.descriptors, dtype=np.uint8)
        if self.descriptors.ndim != 2:
            if self.descriptors.size == 0:
                self.descriptors = np.empty((0, 32), dtype=np.uint8)
            else:
                self.descriptors = self.descriptors.reshape(len(self.keypoints), -1)

        n = len(self.keypoints)
        if len(self.keypoints_norm) != n or len(self.descriptors) != n:
            raise ValueError(
                "Feature arrays must be index-aligned: "
                f"{n} keypoints, {len(self.keypoints_norm)} normalized, "
                f"{len(self.descriptors)} descriptors"
            )

        for arr in (self.keypoints, self.keypoints_norm, self.descriptors):
            arr.flags.writeable = False

    @classmethod
    def empty(cls, descriptor_bytes: int = 32) -> FeatureSet:
        """Return an empty feature set."""
        return cls(
            keypoints=np.empty((0, 2), dtype=np.float32),
            keypoints_norm=np.empty((0, 2), dtype=np.float32),
            descriptors=np.empty((0, descriptor_bytes), dtype=np.uint8),
        )

    def __len__(self) -> int:
        return len(self.keypoints)


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Return a single-channel uint8 view of ``image``."""
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    return image


def keypoints_to_array(keypoints: list[cv2.KeyPoint] | tuple[cv2.KeyPoint, ...]) -> np.ndarray:
    """Return Nx2 array of keypoint (x, y) coordinates."""
    if len(keypoints) == 0:
        return np.empty((0, 2), dtype=np.float32)
    return np.array([kp.pt for kp in keypoints], dtype=np.float32)
