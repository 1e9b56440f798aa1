"""
Layer 2 – Image Readjustment
Responsibility: Perspective correction of the frozen capture and a second
detection pass on the corrected output to tighten the crop
Output: Flattened, deskewed document image
"""
import numpy as np
import logging
from typing import Dict, Optional, Tuple

from error_handlers import PerspectiveError
from image_ops import perspective_warp, quad_area

logger = logging.getLogger(__name__)


class DocumentProcessor:
    """
    Perspective correction for captured document frames
    """

    def __init__(self,
                 evaluator,
                 min_refine_coverage=0.6):
        """
        Initialize document processor

        Args:
            evaluator: Frame evaluator whose static detector is reused for re-detection
            min_refine_coverage: Minimum fraction of the corrected image a
                re-detected quad must cover before it is applied
        """
        self.evaluator = evaluator
        self.min_refine_coverage = min_refine_coverage

        logger.info("DocumentProcessor initialized")
        logger.debug(f"  Min refine coverage: {min_refine_coverage}")

    def correct(self, frame: np.ndarray, quad: Optional[np.ndarray]) -> Tuple[np.ndarray, bool]:
        """
        Warp the frame to a flat rectangle bounded by quad

        Args:
            frame: Frozen capture frame
            quad: Padded, frame-clamped corner points (or None)

        Returns:
            tuple: (image, warped) - the unwarped frame when no usable quad
        """
        if quad is None:
            logger.warning("No quadrilateral recorded, using full frame")
            return frame, False

        try:
            return perspective_warp(frame, quad), True
        except PerspectiveError as e:
            logger.warning(f"{e.message}, using full frame")
            return frame, False

    def detect(self, image: np.ndarray) -> Tuple[Optional[np.ndarray], float]:
        """
        Run the static document detector on a single image

        Returns:
            tuple: (ordered quad or None, contour area)
        """
        return self.evaluator.detect(image)

    def refine(self, corrected: np.ndarray) -> Tuple[np.ndarray, bool]:
        """
        Re-detect the page on the corrected output and warp again

        Trims residual border left by warping a post-shutter frame with a
        pre-shutter quadrilateral. Small detections (a table or photo on
        the page rather than the page itself) are ignored.

        Returns:
            tuple: (image, refined)
        """
        quad, _ = self.detect(corrected)
        if quad is None:
            logger.debug("Refinement: no document in corrected image")
            return corrected, False

        h, w = corrected.shape[:2]
        coverage = quad_area(quad) / float(w * h)
        if coverage < self.min_refine_coverage:
            logger.debug(f"Refinement skipped: quad covers {coverage:.0%} of image")
            return corrected, False

        refined, warped = self.correct(corrected, quad)
        if warped:
            logger.debug(f"Refinement applied: {w}x{h} -> {refined.shape[1]}x{refined.shape[0]}")
        return refined, warped

    def process(self, frame: np.ndarray) -> Tuple[np.ndarray, Dict]:
        """
        Full single-image pipeline for the gallery fallback

        Pipeline:
        1. Document detection (static thresholds)
        2. Perspective correction
        3. Refinement pass on the corrected output

        Returns:
            tuple: (image, info) - info records which steps applied
        """
        logger.info("Starting document processing pipeline")

        quad, area = self.detect(frame)
        info = {
            "detected": quad is not None,
            "area": int(area),
            "quad": quad.tolist() if quad is not None else None,
            "warped": False,
            "refined": False,
        }

        if quad is None:
            logger.warning("Document detection failed, using full frame")
            return frame, info

        corrected, info["warped"] = self.correct(frame, quad)
        if info["warped"]:
            corrected, info["refined"] = self.refine(corrected)

        logger.info("Document processing completed")
        logger.debug(f"  Output shape: {corrected.shape}")
        return corrected, info
