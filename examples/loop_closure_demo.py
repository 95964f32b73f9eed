#!/usr/bin/env python3
"""Demo script for loop closure on a synthetic planar scene.

A camera looks at a textured wall, moves sideways and comes back close to
where it started. The estimator poses drift a little on every keyframe.
When the camera returns, the loop closure worker matches the latest
keyframe against the first ones, verifies the match with PnP RANSAC and
emits a loop constraint that measures the accumulated drift.

Usage:
    uv run python examples/loop_closure_demo.py
"""

import logging

import cv2
import numpy as np

from loopgraph import CameraParams, LoopClosureParams, LoopClosureWorker, Parameters, RerunVisualizer, SE3
from loopgraph.features import BriefExtractor
from loopgraph.geometry import ypr2r
from loopgraph.loop_closure.messages import (
    LoopCandidateMessage,
    LoopConstraintMessage,
    LoopKeyframeData,
    LoopKeyframeMessage,
    RelocalizationMessage,
)

logger = logging.getLogger(__name__)

IMAGE_SIZE = (752, 480)
WALL_DEPTH = 10.0  # Wall is the plane z = WALL_DEPTH in world
TEXTURE_SCALE = 0.01  # Meters per texture pixel
LANDMARK_GRID = 0.05  # Meters per landmark id cell


def make_texture(seed: int = 7) -> np.ndarray:
    """Blocky random texture with plenty of FAST corners."""
    rng = np.random.default_rng(seed)
    blocks = rng.integers(0, 256, (60, 120), dtype=np.uint8)
    texture = np.kron(blocks, np.ones((20, 20), dtype=np.uint8))
    return cv2.GaussianBlur(texture, (3, 3), 0)


def render(texture: np.ndarray, pose: SE3, K: np.ndarray) -> np.ndarray:
    """Render the wall as seen from a camera at ``pose`` (T_world_camera)."""
    h, w = texture.shape
    texture_to_wall = np.array(
        [
            [TEXTURE_SCALE, 0.0, -0.5 * w * TEXTURE_SCALE],
            [0.0, TEXTURE_SCALE, -0.5 * h * TEXTURE_SCALE],
            [0.0, 0.0, WALL_DEPTH],
        ]
    )
    texture_to_wall[:, 2] -= pose.translation
    H = K @ pose.rotation.T @ texture_to_wall
    return cv2.warpPerspective(texture, H, IMAGE_SIZE)


def back_project(keypoints: np.ndarray, pose: SE3, K: np.ndarray) -> np.ndarray:
    """Intersect keypoint rays with the wall."""
    rays = np.linalg.inv(K) @ np.column_stack([keypoints, np.ones(len(keypoints))]).T
    rays_world = (pose.rotation @ rays).T
    scale = (WALL_DEPTH - pose.translation[2]) / rays_world[:, 2]
    return pose.translation + scale[:, None] * rays_world


def make_trajectory(n_keyframes: int = 24) -> list[SE3]:
    """Out and back along x with a slow yaw oscillation."""
    half = n_keyframes // 2
    xs = np.concatenate([np.linspace(0.0, 2.4, half), np.linspace(2.3, 0.1, n_keyframes - half)])
    poses = []
    for i, x in enumerate(xs):
        yaw = 2.0 * np.sin(i / 4.0)
        poses.append(SE3(rotation=ypr2r([yaw, 0.0, 0.0]), translation=np.array([x, 0.2 * np.sin(i / 6.0), 0.0])))
    return poses


def main() -> None:
    """Run the loop closure demo."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    # Configuration
    spawn_viewer = True
    drift_per_keyframe = np.array([0.01, -0.005, 0.0])
    min_loop_gap = 10  # Keyframes between a candidate and the current keyframe

    params = Parameters(
        camera=CameraParams(fx=460.0, fy=460.0, cx=376.0, cy=240.0),
        loop_closure=LoopClosureParams(),
    )
    K = params.camera.camera_matrix()
    texture = make_texture()
    extractor = BriefExtractor(fast_threshold=params.features.fast_threshold)
    worker = LoopClosureWorker(params, extractor=extractor)
    visualizer = RerunVisualizer("loopgraph-demo", spawn=spawn_viewer)

    for index, true_pose in enumerate(make_trajectory()):
        image = render(texture, true_pose, K)
        keypoints = extractor.detect(image)
        points_3d = back_project(keypoints, true_pose, K)
        point_ids = np.round(points_3d[:, :2] / LANDMARK_GRID).astype(np.int64)

        pose_vio = SE3(rotation=true_pose.rotation, translation=true_pose.translation + index * drift_per_keyframe)
        worker.handle(
            LoopKeyframeMessage(
                keyframe=LoopKeyframeData(
                    index=index,
                    timestamp_ns=index * 100_000_000,
                    pose_rotation=pose_vio.rotation,
                    pose_translation=pose_vio.translation,
                    keypoints=keypoints,
                    points_3d=points_3d,
                    point_ids=point_ids,
                    image=image,
                )
            )
        )
        visualizer.log_keyframe(worker.registry[index])

        if index < min_loop_gap:
            continue

        candidates = list(range(index - min_loop_gap + 1))
        for output in worker.handle(LoopCandidateMessage(current_index=index, candidate_indices=candidates)):
            if isinstance(output, LoopConstraintMessage):
                constraint = output.constraint
                logger.info(
                    "Loop KF %d -> KF %d: t=%s yaw=%.2f deg (%d inliers)",
                    constraint.current_index,
                    constraint.old_index,
                    np.array2string(constraint.relative_t, precision=3),
                    constraint.relative_yaw,
                    output.num_inliers,
                )
            elif isinstance(output, RelocalizationMessage):
                logger.info("Relocalization cloud with %d points", len(output.point_cloud))

    registry = worker.registry
    visualizer.log_registry_trajectories(registry)
    visualizer.log_covisibility(registry, params.loop_closure.covisibility_min_weight)
    visualizer.log_loop_constraints(registry)

    loops = registry.loop_constraints()
    logger.info("%d keyframes, %d loop constraints", len(registry), len(loops))


if __name__ == "__main__":
    main()
