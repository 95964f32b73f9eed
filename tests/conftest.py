"""Shared fixtures: camera, configuration and a synthetic loop scene."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pytest

from loopgraph.backend.keyframe import Keyframe
from loopgraph.config import CameraParams, LoopClosureParams, Parameters
from loopgraph.features.extractor import FeatureSet
from loopgraph.geometry import SE3, ypr2r

IMAGE_HEIGHT = 480
IMAGE_WIDTH = 752
NUM_LANDMARKS = 40


def make_pose(yaw_deg: float = 0.0, translation=(0.0, 0.0, 0.0)) -> SE3:
    """Camera pose rotated by ``yaw_deg`` about z and shifted by ``translation``."""
    return SE3(rotation=ypr2r([yaw_deg, 0.0, 0.0]), translation=np.asarray(translation, dtype=np.float64))


def flip_bits(descriptor: np.ndarray, n_bits: int, rng: np.random.Generator) -> np.ndarray:
    """Return a copy of ``descriptor`` with exactly ``n_bits`` distinct bits flipped."""
    bits = np.unpackbits(descriptor.astype(np.uint8))
    positions = rng.choice(len(bits), size=n_bits, replace=False)
    bits[positions] ^= 1
    return np.packbits(bits)


@dataclass
class SyntheticScene:
    """Landmarks in front of an identity camera with one descriptor each."""

    camera: CameraParams
    points_3d: np.ndarray  # (N, 3) world frame
    descriptors: np.ndarray  # (N, 32)

    def project(self, pose: SE3) -> np.ndarray:
        """Project the landmarks into a camera at ``pose`` (T_world_camera)."""
        points_cam = pose.inverse().transform_points(self.points_3d)
        K = self.camera.camera_matrix()
        uv = (K @ (points_cam / points_cam[:, 2:3]).T).T
        return uv[:, :2]

    def feature_set(self, pose: SE3, descriptors: np.ndarray | None = None) -> FeatureSet:
        keypoints = self.project(pose)
        return FeatureSet(
            keypoints=keypoints,
            keypoints_norm=self.camera.normalize(keypoints),
            descriptors=self.descriptors if descriptors is None else descriptors,
        )

    def make_old_keyframe(
        self,
        index: int = 0,
        pose: SE3 | None = None,
        image: np.ndarray | None = None,
    ) -> Keyframe:
        """Full keyframe whose independent features see every landmark."""
        pose = pose or SE3.identity()
        features = self.feature_set(pose)
        return Keyframe(
            index=index,
            timestamp_ns=1_000_000_000 + index,
            pose_vio=pose,
            window=features,
            points_3d=self.points_3d,
            point_ids=np.arange(len(self.points_3d)),
            features=features,
            image=image,
        )

    def make_current_keyframe(
        self,
        index: int = 1,
        pose: SE3 | None = None,
        descriptors: np.ndarray | None = None,
        image: np.ndarray | None = None,
    ) -> Keyframe:
        """Full keyframe whose window tracks every landmark."""
        pose = pose or make_pose(10.0, (2.0, 0.0, 0.0))
        window = self.feature_set(pose, descriptors)
        return Keyframe(
            index=index,
            timestamp_ns=2_000_000_000 + index,
            pose_vio=pose,
            window=window,
            points_3d=self.points_3d,
            point_ids=np.arange(len(self.points_3d)),
            features=window,
            image=image,
        )


@pytest.fixture
def camera() -> CameraParams:
    """EuRoC-like pinhole camera without distortion."""
    return CameraParams(fx=460.0, fy=460.0, cx=376.0, cy=240.0)


@pytest.fixture
def params(camera: CameraParams) -> Parameters:
    """Default parameters."""
    return Parameters(camera=camera, loop_closure=LoopClosureParams())


@pytest.fixture
def scene(camera: CameraParams) -> SyntheticScene:
    """Synthetic scene with distinct random descriptors."""
    rng = np.random.default_rng(42)
    points = np.column_stack(
        [
            rng.uniform(-3.0, 3.0, NUM_LANDMARKS),
            rng.uniform(-3.0, 3.0, NUM_LANDMARKS),
            rng.uniform(8.0, 12.0, NUM_LANDMARKS),
        ]
    )
    descriptors = rng.integers(0, 256, size=(NUM_LANDMARKS, 32), dtype=np.uint8)
    return SyntheticScene(camera=camera, points_3d=points, descriptors=descriptors)
