"""Loop closure verification for keyframe SLAM.

Given a current keyframe and a loop candidate retrieved by appearance,
this module decides whether the pair really closes a loop and, if so,
produces the relative-pose constraint and the relocalization point cloud.

Key components:
- DescriptorMatcher: Thresholded Hamming matching (BRIEF / BRISK)
- MatchSet: Parallel correspondence arrays filtered in lockstep
- GeometricVerifier: PnP + RANSAC for the old camera pose
- LoopClosureDecision: Gated matching -> verification -> acceptance
- LoopClosureWorker / LoopClosureProcess: Message handling, in-process or
  in a separate process
"""

from .debug import LoopClosureDebugWriter
from .decision import LoopAttempt, LoopClosureDecision, LoopState, relative_motion
from .geometric_verification import GeometricVerifier, VerificationResult
from .loop_closure_process import LoopClosureProcess, LoopClosureWorker, RelocalizationObserver
from .match_set import MatchSet
from .matcher import (
    DescriptorMatcher,
    DescriptorMatches,
    MatchCandidate,
    brisk_distance,
    hamming_distance,
)
from .messages import (
    LoopCandidateMessage,
    LoopClosureShutdownMessage,
    LoopConstraint,
    LoopConstraintMessage,
    LoopInfo,
    LoopKeyframeData,
    LoopKeyframeMessage,
    PoseCorrectionMessage,
    RelocalizationMessage,
    RelocalizationPointCloud,
)

__all__ = [
    # Matching
    "DescriptorMatcher",
    "DescriptorMatches",
    "MatchCandidate",
    "MatchSet",
    "brisk_distance",
    "hamming_distance",
    # Geometric Verification
    "GeometricVerifier",
    "VerificationResult",
    # Decision
    "LoopAttempt",
    "LoopClosureDecision",
    "LoopState",
    "relative_motion",
    "LoopClosureDebugWriter",
    # Process
    "LoopClosureProcess",
    "LoopClosureWorker",
    "RelocalizationObserver",
    # Messages
    "LoopCandidateMessage",
    "LoopClosureShutdownMessage",
    "LoopConstraint",
    "LoopConstraintMessage",
    "LoopInfo",
    "LoopKeyframeData",
    "LoopKeyframeMessage",
    "PoseCorrectionMessage",
    "RelocalizationMessage",
    "RelocalizationPointCloud",
]
