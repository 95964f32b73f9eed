"""Configuration for the loop closure core.

All tunables (camera calibration, matching and gating thresholds, feature
extraction settings, debug toggles) live in frozen dataclasses that are
passed to the components at construction time. Values are validated
eagerly: a bad configuration is fatal at initialization, since nothing
downstream can recover from it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import cv2
import numpy as np
import yaml

DESCRIPTOR_FAMILIES = ("brief", "brisk")


@dataclass(frozen=True)
class CameraParams:
    """Pinhole intrinsics with radial-tangential distortion."""

    fx: float  # Focal length x (pixels)
    fy: float  # Focal length y (pixels)
    cx: float  # Principal point x (pixels)
    cy: float  # Principal point y (pixels)
    distortion: tuple[float, ...] = (0.0, 0.0, 0.0, 0.0)  # k1, k2, p1, p2[, k3]

    def __post_init__(self) -> None:
        if self.fx <= 0 or self.fy <= 0:
            raise ValueError(
                f"Focal lengths must be positive, got fx={self.fx}, fy={self.fy}"
            )
        object.__setattr__(self, "distortion", tuple(float(d) for d in self.distortion))
        if len(self.distortion) not in (4, 5, 8):
            raise ValueError(
                f"Distortion must have 4, 5 or 8 coefficients, got {len(self.distortion)}"
            )

    def camera_matrix(self) -> np.ndarray:
        """Return 3x3 camera intrinsic matrix K."""
        return np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def distortion_array(self) -> np.ndarray:
        """Return distortion coefficients as an array for OpenCV."""
        return np.asarray(self.distortion, dtype=np.float64)

    def normalize(self, points: np.ndarray) -> np.ndarray:
        """Map pixel coordinates to normalized, undistorted image coordinates.

        Args:
            points: Nx2 array of pixel coordinates

        Returns:
            Nx2 array of coordinates on the z=1 plane
        """
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if len(points) == 0:
            return np.empty((0, 2), dtype=np.float64)
        undistorted = cv2.undistortPoints(
            points.reshape(-1, 1, 2),
            self.camera_matrix(),
            self.distortion_array(),
        )
        return undistorted.reshape(-1, 2)


@dataclass(frozen=True)
class LoopClosureParams:
    """Thresholds for matching, verification and loop acceptance."""

    min_correspondences: int = 25  # Minimum matches / inliers to keep going
    pnp_ransac_iterations: int = 100
    pnp_reprojection_thresh: float = 8.0  # pixels
    pnp_confidence: float = 0.99
    hamming_threshold: int = 80  # BRIEF-256, bits
    brisk_matching_threshold: float = 80.0
    brisk_descriptor_bytes: int = 48  # Three 128-bit words
    covisibility_min_weight: int = 20  # Shared landmarks
    accept_max_yaw: float = 25.0  # degrees
    accept_max_translation: float = 15.0  # map units
    update_max_yaw: float = 30.0  # degrees
    update_max_translation: float = 20.0  # map units
    descriptor_family: str = "brief"

    def __post_init__(self) -> None:
        if self.min_correspondences < 0:
            raise ValueError("min_correspondences must be non-negative")
        if self.pnp_ransac_iterations <= 0:
            raise ValueError("pnp_ransac_iterations must be positive")
        if self.pnp_reprojection_thresh <= 0:
            raise ValueError("pnp_reprojection_thresh must be positive")
        if not 0.0 < self.pnp_confidence < 1.0:
            raise ValueError("pnp_confidence must be in (0, 1)")
        if not 0 < self.hamming_threshold <= 256:
            raise ValueError("hamming_threshold must be in (0, 256]")
        if self.brisk_descriptor_bytes <= 0:
            raise ValueError("brisk_descriptor_bytes must be positive")
        if self.covisibility_min_weight < 0:
            raise ValueError("covisibility_min_weight must be non-negative")
        if self.accept_max_yaw <= 0 or self.update_max_yaw <= 0:
            raise ValueError("yaw gates must be positive")
        if self.accept_max_translation <= 0 or self.update_max_translation <= 0:
            raise ValueError("translation gates must be positive")
        if self.descriptor_family not in DESCRIPTOR_FAMILIES:
            raise ValueError(
                f"descriptor_family must be one of {DESCRIPTOR_FAMILIES}, "
                f"got {self.descriptor_family!r}"
            )


@dataclass(frozen=True)
class FeatureParams:
    """Feature extraction settings for both descriptor families."""

    fast_threshold: int = 20  # FAST corner response threshold
    brief_pattern_file: str | None = None
    brisk_detection_threshold: float = 40.0
    brisk_octaves: int = 0
    brisk_max_keypoints: int = 300
    compute_brisk: bool = False

    def __post_init__(self) -> None:
        if self.fast_threshold <= 0:
            raise ValueError("fast_threshold must be positive")
        if self.brisk_octaves < 0:
            raise ValueError("brisk_octaves must be non-negative")
        if self.brisk_max_keypoints <= 0:
            raise ValueError("brisk_max_keypoints must be positive")


@dataclass(frozen=True)
class Parameters:
    """Top-level configuration consumed by the loop closure core."""

    camera: CameraParams
    loop_closure: LoopClosureParams = field(default_factory=LoopClosureParams)
    features: FeatureParams = field(default_factory=FeatureParams)
    debug_mode: bool = False
    debug_output_path: str | None = None

    def __post_init__(self) -> None:
        if self.debug_mode and not self.debug_output_path:
            raise ValueError("debug_output_path is required when debug_mode is enabled")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Parameters:
        """Build parameters from a nested dictionary.

        Expected layout::

            camera: {fx, fy, cx, cy, distortion}
            loop_closure: {...}      # optional, LoopClosureParams fields
            features: {...}          # optional, FeatureParams fields
            debug_mode: false
            debug_output_path: null

        Raises:
            ValueError: If a section is missing, malformed or has unknown keys
        """
        if not isinstance(data, dict):
            raise ValueError("Configuration must be a mapping")
        camera = data.get("camera")
        if not isinstance(camera, dict):
            raise ValueError("Configuration is missing the 'camera' section")

        try:
            camera_params = CameraParams(**camera)
            loop_params = LoopClosureParams(**(data.get("loop_closure") or {}))
            feature_params = FeatureParams(**(data.get("features") or {}))
        except TypeError as e:
            raise ValueError(f"Invalid configuration: {e}") from e

        return cls(
            camera=camera_params,
            loop_closure=loop_params,
            features=feature_params,
            debug_mode=bool(data.get("debug_mode", False)),
            debug_output_path=data.get("debug_output_path"),
        )

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> Parameters:
        """Load parameters from a YAML file.

        Args:
            yaml_path: Path to the configuration file

        Raises:
            FileNotFoundError: If the file doesn't exist
            ValueError: If the file content is invalid
        """
        path = Path(yaml_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f)

        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Return a plain dictionary (YAML serializable)."""
        data = asdict(self)
        data["camera"]["distortion"] = list(self.camera.distortion)
        return data
