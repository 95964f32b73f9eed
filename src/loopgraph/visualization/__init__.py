"""Visualization of the keyframe graph."""

from .rerun_visualizer import RerunVisualizer

__all__ = ["RerunVisualizer"]
