"""loopgraph - Loop closure and covisibility core for keyframe visual SLAM."""

__version__ = "0.1.0"

# Re-export main classes for convenient imports
from .config import CameraParams, FeatureParams, LoopClosureParams, Parameters
from .geometry import SE3
from .features import (
    BriefExtractor,
    BriskExtractor,
    FeatureSet,
    VisualVocabulary,
)
from .backend import (
    Keyframe,
    KeyframeRegistry,
    LoopConstraint,
    LoopInfo,
    ObservationIndex,
)
from .loop_closure import (
    DescriptorMatcher,
    GeometricVerifier,
    LoopAttempt,
    LoopClosureDecision,
    LoopClosureProcess,
    LoopClosureWorker,
    LoopState,
    MatchSet,
)
from .visualization import RerunVisualizer

__all__ = [
    "__version__",
    # Configuration
    "Parameters",
    "CameraParams",
    "LoopClosureParams",
    "FeatureParams",
    # Pose
    "SE3",
    # Features
    "BriefExtractor",
    "BriskExtractor",
    "FeatureSet",
    "VisualVocabulary",
    # Keyframes / Covisibility
    "Keyframe",
    "KeyframeRegistry",
    "LoopInfo",
    "LoopConstraint",
    "ObservationIndex",
    # Loop Closure
    "DescriptorMatcher",
    "MatchSet",
    "GeometricVerifier",
    "LoopClosureDecision",
    "LoopAttempt",
    "LoopState",
    "LoopClosureWorker",
    "LoopClosureProcess",
    # Visualization
    "RerunVisualizer",
]
