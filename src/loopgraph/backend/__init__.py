"""Keyframe storage and covisibility."""

from .covisibility import DEFAULT_MIN_WEIGHT, ObservationIndex, build_connections, landmark_keys
from .keyframe import BriskFeatures, Keyframe, KeyframeRegistry, LoopConstraint, LoopInfo

__all__ = [
    # Keyframe
    "Keyframe",
    "KeyframeRegistry",
    "BriskFeatures",
    "LoopInfo",
    "LoopConstraint",
    # Covisibility
    "DEFAULT_MIN_WEIGHT",
    "ObservationIndex",
    "build_connections",
    "landmark_keys",
]
