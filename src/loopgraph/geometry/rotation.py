"""Rotation helpers: yaw-pitch-roll, angle wrapping and quaternions.

Euler angles follow the yaw-pitch-roll (Z-Y-X) decomposition with yaw
about the vertical (z) axis, expressed in degrees:

    R = Rz(yaw) @ Ry(pitch) @ Rx(roll)

Quaternions are exchanged as (w, x, y, z), the Hamilton convention used by
EuRoC ground truth and by the loop constraint records.
"""

from __future__ import annotations

import numpy as np
from scipy.spatial.transform import Rotation


def normalize_angle(angle_deg: float) -> float:
    """Wrap an angle in degrees into (-180, 180].

    Idempotent: normalize_angle(normalize_angle(a)) == normalize_angle(a).
    """
    wrapped = float(np.fmod(angle_deg, 360.0))
    if wrapped > 180.0:
        wrapped -= 360.0
    elif wrapped <= -180.0:
        wrapped += 360.0
    return wrapped


def r2ypr(R: np.ndarray) -> np.ndarray:
    """Extract (yaw, pitch, roll) in degrees from a rotation matrix.

    Args:
        R: 3x3 rotation matrix

    Returns:
        (3,) array [yaw, pitch, roll] in degrees
    """
    R = np.asarray(R, dtype=np.float64)
    n = R[:, 0]
    o = R[:, 1]
    a = R[:, 2]

    yaw = np.arctan2(n[1], n[0])
    pitch = np.arctan2(-n[2], n[0] * np.cos(yaw) + n[1] * np.sin(yaw))
    roll = np.arctan2(
        a[0] * np.sin(yaw) - a[1] * np.cos(yaw),
        -o[0] * np.sin(yaw) + o[1] * np.cos(yaw),
    )
    return np.degrees(np.array([yaw, pitch, roll]))


def ypr2r(ypr: np.ndarray) -> np.ndarray:
    """Build a rotation matrix from (yaw, pitch, roll) in degrees."""
    y, p, r = np.radians(np.asarray(ypr, dtype=np.float64).flatten())

    Rz = np.array(
        [[np.cos(y), -np.sin(y), 0.0], [np.sin(y), np.cos(y), 0.0], [0.0, 0.0, 1.0]]
    )
    Ry = np.array(
        [[np.cos(p), 0.0, np.sin(p)], [0.0, 1.0, 0.0], [-np.sin(p), 0.0, np.cos(p)]]
    )
    Rx = np.array(
        [[1.0, 0.0, 0.0], [0.0, np.cos(r), -np.sin(r)], [0.0, np.sin(r), np.cos(r)]]
    )
    return Rz @ Ry @ Rx


def yaw_of(R: np.ndarray) -> float:
    """Return the yaw angle (degrees) of a rotation matrix."""
    return float(r2ypr(R)[0])


def g2r(g: np.ndarray) -> np.ndarray:
    """Rotation aligning a measured gravity direction with +z, with zero yaw.

    Used to level the first keyframe of a sequence from an accelerometer
    reading.

    Args:
        g: Gravity (or specific force) vector in the body frame

    Returns:
        3x3 rotation matrix
    """
    g = np.asarray(g, dtype=np.float64).flatten()
    ng1 = g / np.linalg.norm(g)
    ng2 = np.array([0.0, 0.0, 1.0])

    axis = np.cross(ng1, ng2)
    sin_angle = np.linalg.norm(axis)
    cos_angle = float(np.dot(ng1, ng2))
    if sin_angle < 1e-12:
        # Parallel or anti-parallel to +z
        R0 = np.eye(3) if cos_angle > 0 else np.diag([1.0, -1.0, -1.0])
    else:
        rotvec = axis / sin_angle * np.arctan2(sin_angle, cos_angle)
        R0 = Rotation.from_rotvec(rotvec).as_matrix()

    yaw = yaw_of(R0)
    return ypr2r([-yaw, 0.0, 0.0]) @ R0


def rotation_to_quaternion(R: np.ndarray) -> np.ndarray:
    """Convert a rotation matrix to a (w, x, y, z) unit quaternion with w >= 0."""
    x, y, z, w = Rotation.from_matrix(np.asarray(R, dtype=np.float64)).as_quat()
    q = np.array([w, x, y, z], dtype=np.float64)
    if q[0] < 0:
        q = -q
    return q


def quaternion_to_rotation(q: np.ndarray) -> np.ndarray:
    """Convert a (w, x, y, z) quaternion (normalized internally) to a matrix."""
    w, x, y, z = np.asarray(q, dtype=np.float64).flatten()
    return Rotation.from_quat([x, y, z, w]).as_matrix()


def is_rotation_matrix(R: np.ndarray, atol: float = 1e-6) -> bool:
    """Check that R is orthonormal with determinant +1."""
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3) or not np.isfinite(R).all():
        return False
    return bool(
        np.allclose(R.T @ R, np.eye(3), atol=atol)
        and abs(np.linalg.det(R) - 1.0) < atol
    )
