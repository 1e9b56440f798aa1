"""
Layer 3 — Static Image Validation
Quality checks, crop box and rotation suggestion for selected images
"""
from .validator import (
    ContentBox,
    Finding,
    StaticImageValidator,
    ValidationConfig,
    ValidationResult,
    crop_to_content,
)

__all__ = [
    'ContentBox',
    'Finding',
    'StaticImageValidator',
    'ValidationConfig',
    'ValidationResult',
    'crop_to_content',
]
