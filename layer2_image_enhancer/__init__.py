"""
Layer 2 — Image Enhancer
Background enhancement of the corrected capture: CLAHE contrast,
unsharp-mask sharpening, optional denoise, upscale and binarisation.
"""
from .bridge import ImageBridge, EnhancementConfig

__all__ = ['ImageBridge', 'EnhancementConfig']
