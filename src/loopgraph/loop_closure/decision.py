"""Loop closure decision between a current keyframe and one old candidate.

Candidate retrieval happens upstream (appearance database). For a single
(current, old) pair the decision runs a fixed sequence of gates:

1. Descriptor matching: the current keyframe's window descriptors against
   the old keyframe's independently detected features
2. Geometric verification: PnP + RANSAC for the old camera pose
3. Acceptance: relative yaw and translation must be plausible

Each gate shrinks the match set; the loop is committed to the current
keyframe only when every gate passes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from ..backend.keyframe import Keyframe, LoopInfo
from ..config import Parameters
from ..geometry import SE3, normalize_angle, rotation_to_quaternion, yaw_of
from .debug import LoopClosureDebugWriter
from .geometric_verification import GeometricVerifier, VerificationResult
from .match_set import MatchSet
from .matcher import DescriptorMatcher, DescriptorMatches

logger = logging.getLogger(__name__)


class LoopState(Enum):
    """Progress of a loop attempt."""

    START = "start"
    DESCRIPTOR_MATCHED = "descriptor_matched"
    GEOMETRICALLY_VERIFIED = "geometrically_verified"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass
class LoopAttempt:
    """Outcome of ``LoopClosureDecision.find_connection``.

    Attributes:
        current_index: Index of the current keyframe
        old_index: Index of the candidate keyframe
        state: Final state (ACCEPTED or REJECTED)
        rejected_at: Stage whose gate failed (None if accepted)
        reason: Human readable rejection reason
        num_matches: Correspondences after descriptor matching
        num_inliers: Correspondences after geometric verification
        loop_info: Relative pose (set once verification succeeded)
        old_pose: PnP estimate of the old camera pose
        match_set: Surviving correspondences
    """

    current_index: int
    old_index: int
    state: LoopState = LoopState.START
    rejected_at: LoopState | None = None
    reason: str = ""
    num_matches: int = 0
    num_inliers: int = 0
    loop_info: LoopInfo | None = None
    old_pose: SE3 | None = None
    match_set: MatchSet = field(default_factory=MatchSet.empty)

    @property
    def accepted(self) -> bool:
        return self.state == LoopState.ACCEPTED

    def reject(self, stage: LoopState, reason: str) -> LoopAttempt:
        self.rejected_at = stage
        self.reason = reason
        self.state = LoopState.REJECTED
        return self


def relative_motion(current_pose: SE3, old_pose: SE3) -> LoopInfo:
    """Relative pose of the current camera expressed in the old camera frame.

    t = R_old^T (t_cur - t_old), R = R_old^T R_cur and the yaw difference
    yaw(R_cur) - yaw(R_old) wrapped into (-180, 180].

    Args:
        current_pose: Current keyframe capture pose (T_world_camera)
        old_pose: Old camera pose from geometric verification

    Returns:
        LoopInfo with translation, (w, x, y, z) quaternion and yaw in degrees
    """
    relative = current_pose.relative_to(old_pose)
    yaw = normalize_angle(yaw_of(current_pose.rotation) - yaw_of(old_pose.rotation))
    return LoopInfo(
        relative_t=relative.translation,
        relative_q=rotation_to_quaternion(relative.rotation),
        relative_yaw=yaw,
    )


class LoopClosureDecision:
    """Decides whether a (current, old) keyframe pair closes a loop."""

    def __init__(
        self,
        params: Parameters,
        verifier: GeometricVerifier | None = None,
        debug: LoopClosureDebugWriter | None = None,
    ) -> None:
        """Initialize decision.

        Args:
            params: Configuration (camera and loop closure thresholds)
            verifier: Geometric verifier (built from ``params`` if None)
            debug: Debug artifact writer (no artifacts if None)
        """
        self._params = params
        self._loop_params = params.loop_closure
        self._matcher = DescriptorMatcher(params.loop_closure)
        self._verifier = verifier or GeometricVerifier(params.camera, params.loop_closure)
        self._debug = debug

    @property
    def params(self) -> Parameters:
        return self._params

    def find_connection(self, current: Keyframe, old: Keyframe) -> LoopAttempt:
        """Try to close a loop between ``current`` and ``old``.

        On acceptance the loop is committed with ``current.set_loop``.
        Nothing is mutated otherwise.

        Args:
            current: Keyframe being inserted (provides window + 3D points)
            old: Candidate keyframe (provides independent features)

        Returns:
            LoopAttempt describing how far the pair got
        """
        attempt = LoopAttempt(current_index=current.index, old_index=old.index)
        min_count = self._loop_params.min_correspondences

        if not old.is_keyframe:
            logger.info("Keyframe %d is not a full keyframe; not a loop candidate", old.index)
            return attempt.reject(LoopState.START, "old keyframe is not a full keyframe")
        if not current.has_3d_points or len(current.window) == 0:
            logger.warning("Keyframe %d has no window landmarks; cannot verify loop", current.index)
            return attempt.reject(LoopState.START, "current keyframe has no 3D points")

        if self._debug is not None:
            self._debug.write_stage(
                "loop_candidate", current, old, current.window.keypoints, old.features.keypoints
            )

        # Descriptor matching
        match_set, status = self._match(current, old)
        match_set = match_set.reduce(status)
        attempt.match_set = match_set
        attempt.num_matches = len(match_set)

        if self._debug is not None:
            self._debug.write_stage(
                "descriptor_match", current, old, match_set.points_2d_cur, match_set.points_2d_old
            )

        if len(match_set) < min_count:
            logger.debug(
                "Loop %d -> %d: %d descriptor matches (< %d)",
                current.index, old.index, len(match_set), min_count,
            )
            return attempt.reject(LoopState.DESCRIPTOR_MATCHED, "not enough descriptor matches")
        attempt.state = LoopState.DESCRIPTOR_MATCHED

        # Geometric verification
        verification: VerificationResult = self._verifier.estimate_relative_pose(
            match_set.points_2d_old, match_set.points_3d, old.origin_pose
        )
        if not verification.success:
            return attempt.reject(LoopState.GEOMETRICALLY_VERIFIED, "PnP RANSAC failed")

        match_set = match_set.reduce(verification.inliers)
        attempt.match_set = match_set
        attempt.num_inliers = len(match_set)
        attempt.old_pose = verification.pose

        if self._debug is not None:
            self._debug.write_stage(
                "pnp_verified", current, old, match_set.points_2d_cur, match_set.points_2d_old,
                banner=(f"current frame: {current.index}", f"previous frame: {old.index}"),
            )

        if len(match_set) < min_count:
            logger.debug(
                "Loop %d -> %d: %d PnP inliers (< %d)",
                current.index, old.index, len(match_set), min_count,
            )
            return attempt.reject(LoopState.GEOMETRICALLY_VERIFIED, "not enough PnP inliers")
        attempt.state = LoopState.GEOMETRICALLY_VERIFIED

        # Acceptance
        loop_info = relative_motion(current.origin_pose, verification.pose)
        attempt.loop_info = loop_info
        if not loop_info.within(self._loop_params.accept_max_yaw, self._loop_params.accept_max_translation):
            logger.debug(
                "Loop %d -> %d rejected: yaw=%.2f deg, |t|=%.2f",
                current.index, old.index, loop_info.relative_yaw, loop_info.translation_norm,
            )
            return attempt.reject(LoopState.ACCEPTED, "relative motion too large")

        if self._debug is not None:
            self._debug.write_stage(
                "loop_closure", current, old, match_set.points_2d_cur, match_set.points_2d_old,
                banner=(
                    f"current frame: {current.index}",
                    f"previous frame: {old.index} matches: {len(match_set)}",
                ),
            )
            self._debug.append_loop_record(current, old, loop_info)

        current.set_loop(old.index, loop_info)
        attempt.state = LoopState.ACCEPTED
        logger.info(
            "Loop accepted: %d -> %d (%d inliers, yaw=%.2f deg, |t|=%.2f)",
            current.index, old.index, attempt.num_inliers,
            loop_info.relative_yaw, loop_info.translation_norm,
        )
        return attempt

    def _match(self, current: Keyframe, old: Keyframe) -> tuple[MatchSet, np.ndarray]:
        """Build the full candidate match set and its status mask."""
        window = current.window
        point_ids = current.point_ids
        if point_ids is None:
            point_ids = np.arange(len(window))

        if self._loop_params.descriptor_family == "brisk":
            if current.brisk is None or old.brisk is None:
                logger.warning(
                    "BRISK features missing for keyframes %d/%d", current.index, old.index
                )
                return MatchSet.empty(), np.zeros(0, dtype=bool)
            rows = current.brisk.window_indices
            matches: DescriptorMatches = self._matcher.search_by_brisk_descriptor(
                current.brisk.window_descriptors,
                old.brisk.descriptors,
                old.brisk.keypoints,
                self._params.camera.normalize(old.brisk.keypoints),
            )
        else:
            rows = np.arange(len(window))
            matches = self._matcher.search_by_descriptor(
                window.descriptors,
                old.features.descriptors,
                old.features.keypoints,
                old.features.keypoints_norm,
            )

        match_set = MatchSet(
            points_2d_cur=window.keypoints[rows],
            points_2d_old=matches.points_old,
            points_2d_old_norm=matches.points_old_norm,
            points_3d=current.points_3d[rows],
            point_ids=point_ids[rows],
        )
        return match_set, matches.status
