"""
Layer 2 — Image Bridge
Post-capture enhancement of the corrected document image.

Runs in the background after capture; the reviewer already has the
corrected image, so any failure here leaves that image in place.

Enhancement Options:
- High-resolution upscaling using INTER_LANCZOS4
- CLAHE contrast enhancement on the L channel
- Non-local means noise reduction
- Subtle sharpening with unsharp mask
- Adaptive-threshold binarisation ("scanned paper" look)
"""
import cv2
import numpy as np
import logging
from collections import Counter
from typing import Optional, Dict, Tuple
from dataclasses import dataclass

from error_handlers import EnhancementError

logger = logging.getLogger(__name__)


@dataclass
class EnhancementConfig:
    """Configuration for image enhancements."""
    # Upscaling
    enable_upscaling: bool = False
    target_width: int = 1800        # Target width for upscaling
    upscale_method: int = cv2.INTER_LANCZOS4  # Best quality interpolation

    # Sharpening
    enable_sharpening: bool = True
    sharpen_amount: float = 0.3     # Subtle sharpening (0.0 - 1.0)
    sharpen_radius: float = 1.0     # Gaussian blur radius for unsharp mask

    # Contrast enhancement
    enable_contrast: bool = True
    clahe_clip_limit: float = 2.0   # CLAHE clip limit
    clahe_grid_size: Tuple[int, int] = (8, 8)

    # Denoising
    enable_denoise: bool = False
    denoise_strength: int = 10      # fastNlMeans h parameter

    # Binarisation
    enable_binarize: bool = False
    binarize_block_size: int = 11   # Odd neighbourhood size
    binarize_offset: int = 2        # Constant subtracted from the local mean


class ImageBridge:
    """
    Enhancement step between perspective correction and the final result.

    Contrast and sharpening are on by default; every step preserves the
    input's channel count except binarisation, which returns a 3-channel
    black-and-white image so downstream encoding is unchanged.
    """

    def __init__(self, config: Optional[EnhancementConfig] = None):
        """
        Initialize image bridge.

        Args:
            config: Enhancement configuration (defaults if None)
        """
        self.config = config or EnhancementConfig()
        self._enhancement_stats = {
            'images_processed': 0,
            'failures': 0,
            'enhancements_applied': Counter()
        }

        logger.info("ImageBridge initialized")
        logger.debug(f"Enhancements enabled: upscale={self.config.enable_upscaling}, "
                     f"sharpen={self.config.enable_sharpening}, "
                     f"contrast={self.config.enable_contrast}, "
                     f"denoise={self.config.enable_denoise}, "
                     f"binarize={self.config.enable_binarize}")

    def process(self, image: np.ndarray) -> np.ndarray:
        """
        Process image through the bridge.

        Args:
            image: Corrected BGR (or grayscale) document image

        Returns:
            Enhanced image

        Raises:
            EnhancementError: If the image is missing or any step fails
        """
        if image is None or image.size == 0:
            self._enhancement_stats['failures'] += 1
            raise EnhancementError("no image to enhance")

        result = image.copy()
        applied = []

        cfg = self.config

        try:
            # Step 1: Upscaling (if enabled and needed)
            if cfg.enable_upscaling:
                result = self._upscale(result)
                applied.append('upscale')

            # Step 2: Contrast enhancement
            if cfg.enable_contrast:
                result = self._enhance_contrast(result)
                applied.append('contrast')

            # Step 3: Denoising
            if cfg.enable_denoise:
                result = self._denoise(result)
                applied.append('denoise')

            # Step 4: Sharpening
            if cfg.enable_sharpening:
                result = self._sharpen(result)
                applied.append('sharpen')

            # Step 5: Binarisation (always last)
            if cfg.enable_binarize:
                result = self._binarize(result)
                applied.append('binarize')

        except cv2.error as e:
            self._enhancement_stats['failures'] += 1
            raise EnhancementError(e)

        # Track statistics
        self._enhancement_stats['images_processed'] += 1
        if applied:
            self._enhancement_stats['enhancements_applied'].update(applied)
            logger.debug(f"Applied enhancements: {applied}")

        return result

    def _upscale(self, image: np.ndarray) -> np.ndarray:
        """
        Upscale image to target width using high-quality interpolation.
        Preserves aspect ratio.
        """
        h, w = image.shape[:2]

        if w >= self.config.target_width:
            return image

        scale = self.config.target_width / w
        new_h = int(h * scale)
        new_w = self.config.target_width

        upscaled = cv2.resize(
            image,
            (new_w, new_h),
            interpolation=self.config.upscale_method
        )

        logger.debug(f"Upscaled: {w}x{h} -> {new_w}x{new_h}")
        return upscaled

    def _sharpen(self, image: np.ndarray) -> np.ndarray:
        """
        Apply subtle unsharp mask sharpening.
        Enhances handwriting and table rules without ringing.
        """
        cfg = self.config

        blur = cv2.GaussianBlur(image, (0, 0), cfg.sharpen_radius)

        # Unsharp mask: original + amount * (original - blur)
        return cv2.addWeighted(
            image, 1.0 + cfg.sharpen_amount,
            blur, -cfg.sharpen_amount,
            0
        )

    def _enhance_contrast(self, image: np.ndarray) -> np.ndarray:
        """
        Apply CLAHE (Contrast Limited Adaptive Histogram Equalization).
        Grayscale input is equalised directly.
        """
        cfg = self.config
        clahe = cv2.createCLAHE(
            clipLimit=cfg.clahe_clip_limit,
            tileGridSize=cfg.clahe_grid_size
        )

        if image.ndim == 2:
            return clahe.apply(image)

        lab = cv2.cvtColor(image, cv2.COLOR_BGR2LAB)
        l, a, b = cv2.split(lab)
        l_enhanced = clahe.apply(l)

        lab_enhanced = cv2.merge([l_enhanced, a, b])
        return cv2.cvtColor(lab_enhanced, cv2.COLOR_LAB2BGR)

    def _denoise(self, image: np.ndarray) -> np.ndarray:
        """
        Apply fast non-local means denoising.
        Reduces sensor noise while preserving edges.
        """
        if image.ndim == 2:
            return cv2.fastNlMeansDenoising(
                image, None,
                h=self.config.denoise_strength,
                templateWindowSize=7,
                searchWindowSize=21
            )

        return cv2.fastNlMeansDenoisingColored(
            src=image,
            dst=None,
            h=self.config.denoise_strength,
            hColor=self.config.denoise_strength,
            templateWindowSize=7,
            searchWindowSize=21
        )

    def _binarize(self, image: np.ndarray) -> np.ndarray:
        """
        Mean adaptive threshold for a clean black-on-white page.
        """
        cfg = self.config
        gray = image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        binary = cv2.adaptiveThreshold(
            gray, 255,
            cv2.ADAPTIVE_THRESH_MEAN_C,
            cv2.THRESH_BINARY,
            cfg.binarize_block_size,
            cfg.binarize_offset
        )
        return cv2.cvtColor(binary, cv2.COLOR_GRAY2BGR)

    def get_stats(self) -> Dict:
        """Get processing statistics."""
        return {
            'images_processed': self._enhancement_stats['images_processed'],
            'failures': self._enhancement_stats['failures'],
            'enhancements_applied': dict(self._enhancement_stats['enhancements_applied']),
        }
