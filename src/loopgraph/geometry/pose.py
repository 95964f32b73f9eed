"""Rigid transforms in SE(3) used for keyframe poses and loop constraints."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from .rotation import is_rotation_matrix, quaternion_to_rotation, rotation_to_quaternion


@dataclass
class SE3:
    """Rotation plus translation.

    Keyframe poses are stored as T_world_camera, mapping camera-frame
    points into the world:

        x_world = rotation @ x_camera + translation

    Attributes:
        rotation: (3, 3) proper rotation
        translation: (3,) translation
    """

    rotation: np.ndarray
    translation: np.ndarray

    def __post_init__(self) -> None:
        self.rotation = np.asarray(self.rotation, dtype=np.float64)
        self.translation = np.asarray(self.translation, dtype=np.float64).reshape(-1)

        if self.rotation.shape != (3, 3):
            raise ValueError(f"SE3 rotation must have shape (3, 3), got {self.rotation.shape}")
        if self.translation.shape != (3,):
            raise ValueError(f"SE3 translation must have shape (3,), got {self.translation.shape}")

    @classmethod
    def identity(cls) -> SE3:
        return cls(rotation=np.eye(3), translation=np.zeros(3))

    @classmethod
    def from_matrix(cls, matrix: np.ndarray) -> SE3:
        """Build from a homogeneous 4x4 matrix [[R, t], [0, 1]]."""
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.shape != (4, 4):
            raise ValueError(f"Homogeneous matrix must have shape (4, 4), got {matrix.shape}")
        return cls(rotation=matrix[:3, :3], translation=matrix[:3, 3])

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> SE3:
        """Build from an OpenCV Rodrigues vector and translation.

        OpenCV's PnP solvers return T_camera_world, so callers usually
        invert the result.
        """
        rotation, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
        return cls(rotation=rotation, translation=tvec)

    @classmethod
    def from_quaternion(cls, q: np.ndarray, translation: np.ndarray) -> SE3:
        """Build from a (w, x, y, z) quaternion and a translation."""
        return cls(rotation=quaternion_to_rotation(q), translation=translation)

    def to_matrix(self) -> np.ndarray:
        matrix = np.eye(4)
        matrix[:3, :3] = self.rotation
        matrix[:3, 3] = self.translation
        return matrix

    def to_rvec_tvec(self) -> tuple[np.ndarray, np.ndarray]:
        """Return (rvec, tvec) as flat float64 arrays for OpenCV."""
        rvec, _ = cv2.Rodrigues(self.rotation)
        return rvec.reshape(3), self.translation.copy()

    def to_quaternion(self) -> np.ndarray:
        """Rotation as a (w, x, y, z) quaternion with w >= 0."""
        return rotation_to_quaternion(self.rotation)

    def inverse(self) -> SE3:
        rotation_t = self.rotation.T
        return SE3(rotation=rotation_t, translation=-(rotation_t @ self.translation))

    def compose(self, other: SE3) -> SE3:
        """Return self * other.

        With self = T_a_b and other = T_b_c the result is T_a_c.
        """
        return SE3(
            rotation=self.rotation @ other.rotation,
            translation=self.translation + self.rotation @ other.translation,
        )

    def relative_to(self, reference: SE3) -> SE3:
        """Express this pose in the frame of ``reference`` (reference^-1 * self)."""
        rotation_t = reference.rotation.T
        return SE3(
            rotation=rotation_t @ self.rotation,
            translation=rotation_t @ (self.translation - reference.translation),
        )

    def transform_points(self, points: np.ndarray) -> np.ndarray:
        """Map (N, 3) local points into the parent frame."""
        points = np.atleast_2d(np.asarray(points, dtype=np.float64))
        if points.shape[-1] != 3:
            raise ValueError(f"Expected (N, 3) points, got {points.shape}")
        return points @ self.rotation.T + self.translation

    def is_valid(self, atol: float = 1e-6) -> bool:
        """True if the rotation is orthonormal and the translation finite."""
        return is_rotation_matrix(self.rotation, atol) and bool(np.all(np.isfinite(self.translation)))

    def copy(self) -> SE3:
        return SE3(rotation=self.rotation.copy(), translation=self.translation.copy())

    @property
    def position(self) -> np.ndarray:
        """Camera center in the world frame (copy)."""
        return self.translation.copy()

    def __repr__(self) -> str:
        x, y, z = self.translation
        return f"SE3(t=[{x:.3f}, {y:.3f}, {z:.3f}])"

    def __matmul__(self, other: SE3) -> SE3:
        return self.compose(other)
