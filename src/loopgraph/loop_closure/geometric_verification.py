"""Geometric verification for loop closure candidates.

After descriptor matching pairs the current keyframe's landmarks with
keypoints of an old keyframe, geometric verification confirms the match by
solving PnP + RANSAC for the old camera pose in the current keyframe's
world frame.

This eliminates false positives from perceptual aliasing (different
places that look similar).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from ..config import CameraParams, LoopClosureParams
from ..geometry import SE3

logger = logging.getLogger(__name__)

MIN_PNP_POINTS = 4


@dataclass
class VerificationResult:
    """Result of geometric verification.

    Attributes:
        success: Whether the solver produced a pose
        inliers: Boolean mask over the input correspondences
        pose: Old camera pose T_world_camera (None on failure)
    """

    success: bool
    inliers: np.ndarray
    pose: SE3 | None = None

    @property
    def num_inliers(self) -> int:
        """Number of RANSAC inliers."""
        return int(np.count_nonzero(self.inliers))

    @classmethod
    def failure(cls, n: int) -> VerificationResult:
        return cls(success=False, inliers=np.zeros(n, dtype=bool), pose=None)


class GeometricVerifier:
    """Estimates the old camera pose from 3D-2D correspondences.

    The current keyframe contributes landmarks (world frame), the old
    keyframe the matched 2D keypoints. Uses ``cv2.solvePnPRansac`` with a
    fixed iteration budget and pixel reprojection threshold.
    """

    def __init__(
        self,
        camera: CameraParams,
        params: LoopClosureParams | None = None,
    ) -> None:
        """Initialize geometric verifier.

        Args:
            camera: Camera calibration
            params: RANSAC settings (defaults if None)
        """
        self._camera_matrix = camera.camera_matrix()
        self._dist_coeffs = camera.distortion_array()
        self._params = params or LoopClosureParams()

    def estimate_relative_pose(
        self,
        points_2d_old: np.ndarray,
        points_3d: np.ndarray,
        initial_pose: SE3,
    ) -> VerificationResult:
        """Solve PnP + RANSAC for the old camera pose.

        Args:
            points_2d_old: (N, 2) matched keypoints in the old keyframe (pixels)
            points_3d: (N, 3) landmarks of the current keyframe (world)
            initial_pose: Pose used to seed the solver (T_world_camera)

        Returns:
            VerificationResult. On failure the mask is all false and
            ``pose`` is None.
        """
        points_2d_old = np.asarray(points_2d_old, dtype=np.float64).reshape(-1, 2)
        points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
        n = len(points_3d)
        if len(points_2d_old) != n:
            raise ValueError(f"Got {len(points_2d_old)} 2D points for {n} 3D points")

        if n < MIN_PNP_POINTS:
            logger.debug("PnP skipped: %d correspondences", n)
            return VerificationResult.failure(n)

        # Seed is camera-from-world: R^-1, -R^-1 t
        seed = initial_pose.inverse()
        rvec_init, tvec_init = seed.to_rvec_tvec()

        try:
            success, rvec, tvec, inliers = cv2.solvePnPRansac(
                objectPoints=points_3d,
                imagePoints=points_2d_old,
                cameraMatrix=self._camera_matrix,
                distCoeffs=self._dist_coeffs,
                rvec=rvec_init.reshape(3, 1).copy(),
                tvec=tvec_init.reshape(3, 1).copy(),
                useExtrinsicGuess=True,
                iterationsCount=self._params.pnp_ransac_iterations,
                reprojectionError=self._params.pnp_reprojection_thresh,
                confidence=self._params.pnp_confidence,
                flags=cv2.SOLVEPNP_ITERATIVE,
            )
        except cv2.error as e:
            logger.debug("PnP RANSAC raised: %s", e)
            return VerificationResult.failure(n)

        if not success or inliers is None or rvec is None or tvec is None:
            logger.debug("PnP RANSAC found no solution for %d correspondences", n)
            return VerificationResult.failure(n)

        if not (np.isfinite(rvec).all() and np.isfinite(tvec).all()):
            logger.debug("PnP RANSAC returned a non-finite pose")
            return VerificationResult.failure(n)

        mask = np.zeros(n, dtype=bool)
        mask[np.asarray(inliers, dtype=np.int64).flatten()] = True

        # PnP returns T_camera_world; the old camera pose is its inverse
        pose = SE3.from_rvec_tvec(rvec, tvec).inverse()

        return VerificationResult(success=True, inliers=mask, pose=pose)
