"""Feature extraction and appearance vectors consumed by the loop closure core."""

from .brief import BriefExtractor, load_brief_pattern, random_brief_pattern, save_brief_pattern
from .brisk import BriskExtractor
from .extractor import FeatureExtractor, FeatureSet
from .vocabulary import AppearanceVector, VisualVocabulary

__all__ = [
    "AppearanceVector",
    "BriefExtractor",
    "BriskExtractor",
    "FeatureExtractor",
    "FeatureSet",
    "VisualVocabulary",
    "load_brief_pattern",
    "random_brief_pattern",
    "save_brief_pattern",
]
