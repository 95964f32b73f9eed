"""BRISK features for the secondary descriptor family."""

from __future__ import annotations

import cv2
import numpy as np

from .extractor import keypoints_to_array, to_grayscale

BRISK_DESCRIPTOR_BYTES = 64
_SEED_KEYPOINT_SIZE = 12.0


class BriskExtractor:
    """OpenCV BRISK detector and descriptor.

    Unlike BRIEF, BRISK drops keypoints too close to the image border when
    describing them, so ``compute`` also reports which input keypoints
    survived.
    """

    def __init__(
        self,
        threshold: float = 40.0,
        octaves: int = 0,
        max_keypoints: int = 300,
    ) -> None:
        """Initialize BRISK.

        Args:
            threshold: AGAST detection threshold
            octaves: Number of detection octaves (0 = single scale)
            max_keypoints: Keep only the strongest N detections
        """
        self._brisk = cv2.BRISK_create(thresh=int(threshold), octaves=octaves)
        self._max_keypoints = max_keypoints

    def detect_and_compute(self, image: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Detect BRISK keypoints and describe them.

        Returns:
            Tuple of (Nx2 keypoints, Nx64 uint8 descriptors)
        """
        gray = to_grayscale(image)
        keypoints = self._brisk.detect(gray, None)
        keypoints = sorted(keypoints, key=lambda kp: kp.response, reverse=True)
        keypoints = keypoints[: self._max_keypoints]

        keypoints, descriptors = self._brisk.compute(gray, keypoints)
        if descriptors is None or len(keypoints) == 0:
            return (
                np.empty((0, 2), dtype=np.float32),
                np.empty((0, BRISK_DESCRIPTOR_BYTES), dtype=np.uint8),
            )
        return keypoints_to_array(keypoints), descriptors

    def compute(
        self,
        image: np.ndarray,
        keypoints: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray]:
        """Describe externally provided keypoints.

        Args:
            image: Grayscale (or BGR) uint8 image
            keypoints: Nx2 keypoint coordinates

        Returns:
            Tuple of (Mx64 uint8 descriptors, (M,) indices into ``keypoints``
            of the keypoints that were described)
        """
        keypoints = np.asarray(keypoints, dtype=np.float32).reshape(-1, 2)
        seeds = [
            cv2.KeyPoint(float(x), float(y), _SEED_KEYPOINT_SIZE, -1, 0, 0, i)
            for i, (x, y) in enumerate(keypoints)
        ]
        if not seeds:
            return np.empty((0, BRISK_DESCRIPTOR_BYTES), dtype=np.uint8), np.empty(0, dtype=np.int64)

        described, descriptors = self._brisk.compute(to_grayscale(image), seeds)
        if descriptors is None or len(described) == 0:
            return np.empty((0, BRISK_DESCRIPTOR_BYTES), dtype=np.uint8), np.empty(0, dtype=np.int64)

        indices = np.array([kp.class_id for kp in described], dtype=np.int64)
        return descriptors, indices
