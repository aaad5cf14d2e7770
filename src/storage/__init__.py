"""
Medication Detector - Storage Module

Persists detection sessions and their detected items.
"""

from .database import DetectionStore, EXPECTED_SCHEMA_VERSION

__all__ = ['DetectionStore', 'EXPECTED_SCHEMA_VERSION']
