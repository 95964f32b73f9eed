"""Rerun-based visualization for keyframes, covisibility and loop closures."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import rerun as rr
import rerun.blueprint as rrb

from ..loop_closure.debug import draw_side_by_side

if TYPE_CHECKING:
    from ..backend.keyframe import Keyframe, KeyframeRegistry
    from ..geometry import SE3
    from ..loop_closure.match_set import MatchSet


class RerunVisualizer:
    """Rerun-based visualization of the loop closure state.

    Entity hierarchy:
        world/
            keyframes/<index>   - Keyframe pose (corrected)
            landmarks           - Window landmarks of the latest keyframe
            trajectory          - Corrected keyframe trajectory (yellow)
            vio_trajectory      - Estimator trajectory (grey)
            covisibility        - Covisibility edges (blue)
            loop_closures       - Loop closure edges (red)
        matches/
            image               - Current | old keyframe side by side
            lines               - Surviving correspondences
    """

    def __init__(self, app_name: str = "loopgraph", spawn: bool = True) -> None:
        """Initialize Rerun visualization.

        Args:
            app_name: Name for the Rerun application window
            spawn: If True, automatically spawn the Rerun viewer
        """
        rr.init(app_name, spawn=spawn)
        self._setup_coordinate_system()
        self._setup_layout()

    def _setup_coordinate_system(self) -> None:
        """Configure the 3D coordinate system (X-right, Y-down, Z-forward)."""
        rr.log("world", rr.ViewCoordinates.RDF, static=True)

    def _setup_layout(self) -> None:
        """Configure the viewer layout"""
        blueprint = rrb.Blueprint(
            rrb.Vertical(
                contents=[
                    rrb.Spatial3DView(name="Keyframe Graph", origin="world"),
                    rrb.Spatial2DView(name="Loop Matches", origin="matches"),
                ]
            )
        )
        rr.send_blueprint(blueprint)

    def log_keyframe(self, keyframe: Keyframe) -> None:
        """Log a keyframe pose and its window landmarks.

        Args:
            keyframe: Keyframe to log
        """
        rr.set_time("timestamp", duration=keyframe.timestamp_ns / 1e9)

        pose = keyframe.get_pose()
        self.log_camera_pose(
            position=pose.position,
            rotation=pose.rotation,
            entity_path=f"world/keyframes/{keyframe.index}",
        )

        if keyframe.has_3d_points:
            self.log_landmarks(keyframe.points_3d)

    def log_camera_pose(
        self,
        position: np.ndarray,
        rotation: np.ndarray,
        entity_path: str = "world/camera",
    ) -> None:
        """Log camera pose as a 3D transform.

        Args:
            position: 3D position [x, y, z]
            rotation: 3x3 rotation matrix
            entity_path: Rerun entity path for the camera
        """
        rr.log(
            entity_path,
            rr.Transform3D(
                translation=position,
                mat3x3=rotation,
            ),
        )

    def log_landmarks(
        self,
        positions: np.ndarray,
        entity_path: str = "world/landmarks",
    ) -> None:
        """Log landmarks, skipping non-finite ones."""
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
        valid_positions = positions[np.isfinite(positions).all(axis=1)]
        if len(valid_positions) == 0:
            return

        rr.log(
            entity_path,
            rr.Points3D(valid_positions, colors=[[200, 0, 200]], radii=0.03),
        )

    def log_trajectory(
        self,
        positions: np.ndarray,
        entity_path: str = "world/trajectory",
        color: tuple[int, int, int] = (255, 255, 0),
    ) -> None:
        """Log camera trajectory as a 3D line strip.

        Args:
            positions: Nx3 array of camera positions in world frame
            entity_path: Rerun entity path for the trajectory
            color: RGB line color
        """
        if len(positions) < 2:
            return

        rr.log(
            entity_path,
            rr.LineStrips3D(
                [positions],
                colors=[list(color)],
                radii=0.01,
            ),
        )

        # Current position (cyan)
        rr.log(
            f"{entity_path}/current",
            rr.Points3D(
                [positions[-1]],
                colors=[[0, 255, 255]],
                radii=0.05,
            ),
        )

    def log_trajectory_from_poses(
        self,
        trajectory: list[SE3],
        entity_path: str = "world/trajectory",
    ) -> None:
        """Log camera trajectory from list of SE3 poses."""
        if len(trajectory) == 0:
            return

        positions = np.array([pose.position for pose in trajectory], dtype=np.float64)
        self.log_trajectory(positions, entity_path)

    def log_registry_trajectories(self, registry: KeyframeRegistry) -> None:
        """Log both the corrected and the estimator trajectory of all keyframes."""
        keyframes = list(registry)
        if len(keyframes) < 2:
            return

        corrected = np.array([kf.get_pose().position for kf in keyframes])
        vio = np.array([kf.get_vio_pose().position for kf in keyframes])
        self.log_trajectory(corrected, "world/trajectory")
        self.log_trajectory(vio, "world/vio_trajectory", color=(128, 128, 128))

    def log_covisibility(
        self,
        registry: KeyframeRegistry,
        min_weight: int = 0,
        entity_path: str = "world/covisibility",
    ) -> None:
        """Log covisibility edges between keyframe positions.

        Each undirected edge is drawn once.
        """
        segments = []
        seen = set()
        for keyframe in registry:
            for neighbor, _ in registry.neighbors(keyframe.index, min_weight):
                edge = (min(keyframe.index, neighbor.index), max(keyframe.index, neighbor.index))
                if edge in seen:
                    continue
                seen.add(edge)
                segments.append([keyframe.get_pose().position, neighbor.get_pose().position])

        if not segments:
            return

        rr.log(
            entity_path,
            rr.LineStrips3D(segments, colors=[[0, 128, 255]], radii=0.005),
        )

    def log_loop_closure(
        self,
        from_position: np.ndarray,
        to_position: np.ndarray,
        entity_path: str = "world/loop_closures",
    ) -> None:
        """Log a loop closure edge as a line connecting two poses.

        Args:
            from_position: 3D position of the current keyframe
            to_position: 3D position of the old keyframe
            entity_path: Rerun entity path for loop closures
        """
        rr.log(
            entity_path,
            rr.LineStrips3D(
                [[from_position, to_position]],
                colors=[[255, 0, 0]],
                radii=0.02,
            ),
        )

        # Endpoint markers (magenta)
        rr.log(
            f"{entity_path}/endpoints",
            rr.Points3D(
                [from_position, to_position],
                colors=[[255, 0, 255]],
                radii=0.08,
            ),
        )

    def log_loop_constraints(
        self,
        registry: KeyframeRegistry,
        entity_path: str = "world/loop_closures",
    ) -> None:
        """Log every committed loop of the registry."""
        segments = []
        for constraint in registry.loop_constraints():
            if constraint.old_index not in registry:
                continue
            current = registry[constraint.current_index].get_pose().position
            old = registry[constraint.old_index].get_pose().position
            segments.append([current, old])

        if not segments:
            return

        rr.log(
            entity_path,
            rr.LineStrips3D(segments, colors=[[255, 0, 0]], radii=0.02),
        )

    def log_matches(
        self,
        image_cur: np.ndarray,
        image_old: np.ndarray,
        match_set: MatchSet,
        entity_path: str = "matches",
    ) -> None:
        """Log a side-by-side match image with correspondence lines.

        Args:
            image_cur: Current keyframe image (left)
            image_old: Old keyframe image (right)
            match_set: Correspondences to draw
            entity_path: Rerun entity path for the match view
        """
        canvas = draw_side_by_side(image_cur, image_old, draw_lines=False)
        rr.log(f"{entity_path}/image", rr.Image(canvas))

        if len(match_set) == 0:
            return

        offset = np.array([image_cur.shape[1], 0.0])
        points_old = match_set.points_2d_old + offset
        strips = np.stack([match_set.points_2d_cur, points_old], axis=1)
        rr.log(
            f"{entity_path}/lines",
            rr.LineStrips2D(strips, colors=[[0, 255, 0]], radii=1.0),
        )
        rr.log(
            f"{entity_path}/points",
            rr.Points2D(
                np.vstack([match_set.points_2d_cur, points_old]),
                colors=[[255, 0, 0]],
                radii=3.0,
            ),
        )
