"""
Medication Detector - Overlay Module

Maps normalized detections into view pixels and draws them.
"""

from .renderer import OverlayRenderer, ViewRect

__all__ = ['OverlayRenderer', 'ViewRect']
