"""Debug artifacts written while deciding loop closures.

Each stage of a loop attempt can be dumped as a side-by-side PNG of the
current and old keyframe images with the surviving matches drawn between
them. Accepted loops are also appended to ``loop_closure.txt``.
"""

from __future__ import annotations

import logging
from pathlib import Path

import cv2
import numpy as np

from ..backend.keyframe import Keyframe, LoopInfo
from ..geometry import quaternion_to_rotation, r2ypr

logger = logging.getLogger(__name__)

STAGE_DIRECTORIES = {
    "loop_candidate": "loop_candidates",
    "descriptor_match": "descriptor_matched",
    "pnp_verified": "pnp_verified",
    "loop_closure": "loop_closure",
}
LOOP_RECORD_FILE = "loop_closure.txt"

_BANNER_HEIGHT = 50


def _to_bgr(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    return image.copy()


def _pad_to_height(image: np.ndarray, height: int) -> np.ndarray:
    if image.shape[0] == height:
        return image
    pad = np.zeros((height - image.shape[0], image.shape[1], 3), dtype=image.dtype)
    return np.vstack([image, pad])


def draw_side_by_side(
    image_cur: np.ndarray,
    image_old: np.ndarray,
    points_cur: np.ndarray | None = None,
    points_old: np.ndarray | None = None,
    draw_lines: bool = True,
) -> np.ndarray:
    """Concatenate two images horizontally and draw keypoints and matches.

    Args:
        image_cur: Current keyframe image (left)
        image_old: Old keyframe image (right)
        points_cur: (N, 2) keypoints on the current image
        points_old: (M, 2) keypoints on the old image
        draw_lines: Connect row i of both point sets (requires N == M)

    Returns:
        BGR image
    """
    left = _to_bgr(image_cur)
    right = _to_bgr(image_old)
    height = max(left.shape[0], right.shape[0])
    canvas = np.hstack([_pad_to_height(left, height), _pad_to_height(right, height)])
    offset = left.shape[1]

    points_cur = np.empty((0, 2)) if points_cur is None else np.asarray(points_cur).reshape(-1, 2)
    points_old = np.empty((0, 2)) if points_old is None else np.asarray(points_old).reshape(-1, 2)

    for x, y in points_cur:
        cv2.circle(canvas, (int(round(x)), int(round(y))), 2, (0, 255, 0), 2)
    for x, y in points_old:
        cv2.circle(canvas, (int(round(x)) + offset, int(round(y))), 2, (0, 255, 0), 2)

    if draw_lines and len(points_cur) == len(points_old):
        for (x1, y1), (x2, y2) in zip(points_cur, points_old):
            cv2.line(
                canvas,
                (int(round(x1)), int(round(y1))),
                (int(round(x2)) + offset, int(round(y2))),
                (0, 255, 0),
                1,
                cv2.LINE_AA,
            )

    return canvas


def add_banner(image: np.ndarray, left_text: str, right_text: str) -> np.ndarray:
    """Stack a white annotation banner on top of ``image``."""
    banner = np.full((_BANNER_HEIGHT, image.shape[1], 3), 255, dtype=np.uint8)
    cv2.putText(banner, left_text, (20, 30), cv2.FONT_HERSHEY_SIMPLEX, 1, (255, 0, 0), 3)
    cv2.putText(
        banner, right_text, (20 + image.shape[1] // 2, 30), cv2.FONT_HERSHEY_SIMPLEX, 1, (255, 0, 0), 3
    )
    return np.vstack([banner, image])


class LoopClosureDebugWriter:
    """Writes per-stage match images and the accepted-loop log."""

    def __init__(self, output_path: str | Path) -> None:
        """Initialize writer and create the stage directories.

        Args:
            output_path: Root directory for debug output
        """
        self._root = Path(output_path)
        for directory in STAGE_DIRECTORIES.values():
            (self._root / directory).mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def stage_path(self, stage: str, current_index: int, old_index: int) -> Path:
        """Return ``<root>/<stage dir>/<stage>_<cur>_<old>.png``."""
        if stage not in STAGE_DIRECTORIES:
            raise ValueError(f"Unknown debug stage {stage!r}")
        return self._root / STAGE_DIRECTORIES[stage] / f"{stage}_{current_index}_{old_index}.png"

    def write_stage(
        self,
        stage: str,
        current: Keyframe,
        old: Keyframe,
        points_cur: np.ndarray | None = None,
        points_old: np.ndarray | None = None,
        banner: tuple[str, str] | None = None,
    ) -> Path | None:
        """Write the image of one stage.

        Returns:
            Written path, or None if either keyframe kept no image
        """
        if current.image is None or old.image is None:
            logger.debug(
                "No image retained for keyframes %d/%d; skipping %s", current.index, old.index, stage
            )
            return None

        # Candidates show all keypoints, later stages show matches
        draw_lines = stage != "loop_candidate"
        image = draw_side_by_side(current.image, old.image, points_cur, points_old, draw_lines)
        if banner is not None:
            image = add_banner(image, *banner)

        path = self.stage_path(stage, current.index, old.index)
        cv2.imwrite(str(path), image)
        return path

    def append_loop_record(self, current: Keyframe, old: Keyframe, loop_info: LoopInfo) -> None:
        """Append ``cur ts old old_ts tx ty tz yaw pitch roll`` to the loop log."""
        ypr = r2ypr(quaternion_to_rotation(loop_info.relative_q))
        values = [*loop_info.relative_t, *ypr]
        line = " ".join(
            [str(current.index), str(current.timestamp_ns), str(old.index), str(old.timestamp_ns)]
            + [f"{v:.9f}" for v in values]
        )
        with open(self._root / LOOP_RECORD_FILE, "a") as f:
            f.write(line + "\n")
