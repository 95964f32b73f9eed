"""Rigid transforms and rotation utilities."""

from .pose import SE3
from .rotation import (
    g2r,
    is_rotation_matrix,
    normalize_angle,
    quaternion_to_rotation,
    r2ypr,
    rotation_to_quaternion,
    yaw_of,
    ypr2r,
)

__all__ = [
    "SE3",
    "g2r",
    "is_rotation_matrix",
    "normalize_angle",
    "quaternion_to_rotation",
    "r2ypr",
    "rotation_to_quaternion",
    "yaw_of",
    "ypr2r",
]
