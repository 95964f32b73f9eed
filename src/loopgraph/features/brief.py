"""FAST detection + BRIEF-256 description with a fixed test pattern.

The BRIEF test pairs must be the ones the appearance vocabulary was built
with, otherwise descriptors are not comparable with the vocabulary words.
The pattern is loaded from an OpenCV FileStorage file holding the integer
sequences ``x1``, ``y1``, ``x2``, ``y2`` (offsets from the keypoint center).
"""

from __future__ import annotations

import logging
from pathlib import Path

import cv2
import numpy as np

from .extractor import keypoints_to_array, to_grayscale

logger = logging.getLogger(__name__)

DESCRIPTOR_BITS = 256
DEFAULT_PATCH_SIZE = 48


def load_brief_pattern(pattern_file: str | Path) -> np.ndarray:
    """Load BRIEF test pairs from an OpenCV FileStorage file.

    Args:
        pattern_file: Path to a .yml/.xml file with x1, y1, x2, y2 sequences

    Returns:
        (256, 4) int32 array of [x1, y1, x2, y2] offsets

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file can't be parsed or the pattern is malformed
    """
    path = Path(pattern_file)
    if not path.exists():
        raise FileNotFoundError(f"Could not open file {pattern_file}")

    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    if not fs.isOpened():
        raise ValueError(f"Could not parse BRIEF pattern file {pattern_file}")

    try:
        columns = [_read_int_sequence(fs, key, pattern_file) for key in ("x1", "y1", "x2", "y2")]
    finally:
        fs.release()

    lengths = {len(c) for c in columns}
    if lengths != {DESCRIPTOR_BITS}:
        raise ValueError(
            f"BRIEF pattern in {pattern_file} must have {DESCRIPTOR_BITS} pairs, "
            f"got lengths {sorted(len(c) for c in columns)}"
        )
    return np.stack(columns, axis=1).astype(np.int32)


def _read_int_sequence(fs: cv2.FileStorage, key: str, pattern_file: str | Path) -> np.ndarray:
    node = fs.getNode(key)
    if node.empty():
        raise ValueError(f"BRIEF pattern file {pattern_file} has no '{key}' entry")
    if node.isSeq():
        return np.array([int(node.at(i).real()) for i in range(node.size())], dtype=np.int32)
    mat = node.mat()
    if mat is None:
        raise ValueError(f"BRIEF pattern entry '{key}' in {pattern_file} is not a sequence")
    return np.asarray(mat, dtype=np.int32).flatten()


def random_brief_pattern(
    patch_size: int = DEFAULT_PATCH_SIZE,
    seed: int = 0,
) -> np.ndarray:
    """Generate an isotropic Gaussian BRIEF pattern (sigma = patch_size / 5).

    Deterministic for a given seed, so two extractors built with the same
    arguments produce comparable descriptors.
    """
    rng = np.random.default_rng(seed)
    half = patch_size // 2
    samples = rng.normal(0.0, patch_size / 5.0, size=(DESCRIPTOR_BITS, 4))
    return np.clip(np.rint(samples), -half, half).astype(np.int32)


def save_brief_pattern(pattern: np.ndarray, pattern_file: str | Path) -> None:
    """Write a (256, 4) pattern in the FileStorage layout read by ``load_brief_pattern``."""
    path = Path(pattern_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
    try:
        for col, key in enumerate(("x1", "y1", "x2", "y2")):
            fs.write(key, np.ascontiguousarray(pattern[:, col], dtype=np.int32).reshape(-1, 1))
    finally:
        fs.release()


class BriefExtractor:
    """FAST corners described with BRIEF-256 binary descriptors.

    Descriptors are 32 bytes (256 bits). Each bit compares the smoothed
    intensity at two offsets around the keypoint. Offsets falling outside the
    image are clamped to the border, so every input keypoint gets a
    descriptor and window arrays stay aligned.
    """

    def __init__(
        self,
        pattern_file: str | Path | None = None,
        fast_threshold: int = 20,
    ) -> None:
        """Initialize the extractor.

        Args:
            pattern_file: OpenCV FileStorage file with the test pairs. If None,
                a seeded random pattern is used.
            fast_threshold: FAST corner detector response threshold

        Raises:
            FileNotFoundError: If pattern_file doesn't exist
            ValueError: If pattern_file is malformed
        """
        if pattern_file is not None:
            self._pattern = load_brief_pattern(pattern_file)
        else:
            self._pattern = random_brief_pattern()
        self._fast = cv2.FastFeatureDetector_create(
            threshold=fast_threshold,
            nonmaxSuppression=True,
        )

    def detect(self, image: np.ndarray) -> np.ndarray:
        """Detect FAST corners.

        Args:
            image: Grayscale (or BGR) uint8 image

        Returns:
            Nx2 float32 keypoint coordinates
        """
        keypoints = self._fast.detect(to_grayscale(image), None)
        return keypoints_to_array(keypoints)

    def describe(self, image: np.ndarray, keypoints: np.ndarray) -> np.ndarray:
        """Compute BRIEF descriptors for the given keypoints.

        Args:
            image: Grayscale (or BGR) uint8 image
            keypoints: Nx2 keypoint coordinates

        Returns:
            Nx32 uint8 descriptors, one per keypoint
        """
        keypoints = np.asarray(keypoints, dtype=np.float64).reshape(-1, 2)
        if len(keypoints) == 0:
            return np.empty((0, DESCRIPTOR_BITS // 8), dtype=np.uint8)

        gray = to_grayscale(image)
        smoothed = cv2.GaussianBlur(gray, (9, 9), 2, 2)
        h, w = smoothed.shape[:2]

        centers = np.rint(keypoints).astype(np.int64)
        cx = centers[:, 0:1]
        cy = centers[:, 1:2]
        x1, y1, x2, y2 = (self._pattern[:, i][np.newaxis, :] for i in range(4))

        xa = np.clip(cx + x1, 0, w - 1)
        ya = np.clip(cy + y1, 0, h - 1)
        xb = np.clip(cx + x2, 0, w - 1)
        yb = np.clip(cy + y2, 0, h - 1)

        bits = smoothed[ya, xa] < smoothed[yb, xb]  # (N, 256)
        return np.packbits(bits, axis=1)

    @property
    def pattern(self) -> np.ndarray:
        """Return the (256, 4) test pattern."""
        return self._pattern.copy()
