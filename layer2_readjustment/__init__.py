"""
Layer 2 — Image Readjustment
Perspective correction and refinement of the frozen capture.
"""
from .processor import DocumentProcessor

__all__ = ['DocumentProcessor']
