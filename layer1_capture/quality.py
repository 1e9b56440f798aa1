"""
Layer 1 — Frame Quality Evaluation
Per-frame analysis for the live scanner: sharpness, lighting, document
boundary detection, region-of-interest shadow/blur checks, tilt and cutoff.
Produces one QualityReport with a single user-facing guidance message.
"""
import cv2
import numpy as np
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from image_ops import (
    VisionEngine,
    approximate_polygon,
    canny_edges,
    dilate,
    edge_lengths,
    find_external_contours,
    gaussian_blur,
    iter_tiles,
    laplacian_variance,
    order_corners,
    quad_area,
    quad_bounds,
    to_gray,
)

logger = logging.getLogger(__name__)

LIVE = "live"
STATIC = "static"


class QualityIssue(str, Enum):
    NONE = "none"
    DARK = "dark"
    OVEREXPOSED = "overexposed"
    NO_DOCUMENT = "no_document"
    CUTOFF = "cutoff"
    TILT = "tilt"
    BLUR = "blur"
    PARTIAL_BLUR = "partial_blur"
    SHADOW = "shadow"


class Severity(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


MESSAGES = {
    QualityIssue.DARK: ("Too Dark - Add More Light", Severity.ERROR),
    QualityIssue.OVEREXPOSED: ("Too Bright - Avoid Glare", Severity.ERROR),
    QualityIssue.NO_DOCUMENT: ("Searching for Document...", Severity.INFO),
    QualityIssue.CUTOFF: ("Move Back - Document Cut Off", Severity.ERROR),
    QualityIssue.TILT: ("Hold Phone Parallel to Paper", Severity.WARNING),
    QualityIssue.BLUR: ("Hold Steady - Image Blurry", Severity.WARNING),
    QualityIssue.PARTIAL_BLUR: ("Hold Steady - Part of Page Blurry", Severity.WARNING),
    QualityIssue.SHADOW: ("Avoid Shadows on Paper", Severity.WARNING),
    QualityIssue.NONE: ("Perfect - Hold Still", Severity.SUCCESS),
}


@dataclass
class EvaluatorConfig:
    """Thresholds for frame evaluation."""
    # Sharpness (variance of the Laplacian on 8-bit grayscale)
    live_blur_threshold: float = 150.0
    static_blur_threshold: float = 110.0

    # Lighting
    dark_threshold: float = 50.0          # Mean luminance below => too dark
    overexposed_threshold: float = 220.0  # Mean luminance above ...
    overexposed_contrast: float = 18.0    # ... with std dev below => washed out

    # Document boundary
    live_canny: Tuple[int, int] = (30, 100)
    static_canny: Tuple[int, int] = (75, 200)
    dilate_kernel: int = 3
    dilate_iterations: int = 1
    min_contour_area: float = 10000.0     # Noise floor (px^2)
    approx_epsilon: float = 0.02          # Fraction of perimeter
    portrait_aspect: Tuple[float, float] = (0.35, 0.95)
    landscape_aspect: Tuple[float, float] = (1.05, 2.8)
    continuity_bonus: float = 3.0
    continuity_tolerance: float = 0.20    # Area within 20% of previous

    # Region-of-interest checks
    shadow_grid: Tuple[int, int] = (4, 4)
    shadow_threshold: float = 60.0        # Max-min tile brightness
    sharpness_grid: Tuple[int, int] = (3, 3)
    regional_blur_threshold: float = 250.0

    # Geometry
    tilt_limit: float = 1.15
    cutoff_margin: int = 20


@dataclass(frozen=True)
class TiltRatios:
    """Ratios of opposing quad sides (always >= 1.0)."""
    width_ratio: float = 1.0
    height_ratio: float = 1.0

    def exceeds(self, limit: float) -> bool:
        return self.width_ratio > limit or self.height_ratio > limit


@dataclass(frozen=True, eq=False)
class QualityReport:
    """Result of evaluating one frame. Replaced every tick, never mutated."""
    blur_score: float
    brightness: float
    contrast: float
    shadow_delta: float
    tilt: TiltRatios
    cutoff: bool
    regional_blur: bool
    is_valid: bool
    issue: QualityIssue
    message: str
    severity: Severity
    quad: Optional[np.ndarray] = None
    area: float = 0.0
    min_tile_sharpness: Optional[float] = None

    @property
    def detected(self) -> bool:
        return self.quad is not None

    def to_dict(self) -> Dict:
        """Convert to dictionary for API responses."""
        return {
            'blur_score': round(self.blur_score, 2),
            'brightness': round(self.brightness, 2),
            'contrast': round(self.contrast, 2),
            'shadow_delta': round(self.shadow_delta, 2),
            'tilt': {
                'width_ratio': round(self.tilt.width_ratio, 3),
                'height_ratio': round(self.tilt.height_ratio, 3),
            },
            'cutoff': self.cutoff,
            'regional_blur': self.regional_blur,
            'is_valid': self.is_valid,
            'issue': self.issue.value,
            'message': self.message,
            'severity': self.severity.value,
            'detected': self.detected,
            'area': round(self.area, 1),
            'quad': self.quad.tolist() if self.quad is not None else None,
        }


def measure_tilt(quad) -> TiltRatios:
    """Compare opposing sides: top vs bottom width, left vs right height."""
    top, right, bottom, left = edge_lengths(order_corners(quad))
    width_ratio = max(top, bottom) / max(min(top, bottom), 1e-6)
    height_ratio = max(left, right) / max(min(left, right), 1e-6)
    return TiltRatios(width_ratio=width_ratio, height_ratio=height_ratio)


class FrameQualityEvaluator:
    """
    Evaluates a single frame for capture readiness.

    The vision engine is injected rather than imported as ambient state;
    evaluate() refuses to run until the engine has loaded.
    """

    def __init__(self, engine: VisionEngine, config: Optional[EvaluatorConfig] = None):
        self.engine = engine
        self.config = config or EvaluatorConfig()
        logger.debug("FrameQualityEvaluator initialized")

    def evaluate(self, frame: np.ndarray, previous_quad: Optional[np.ndarray] = None,
                 mode: str = LIVE) -> QualityReport:
        """
        Evaluate one frame.

        Args:
            frame: BGR or grayscale image
            previous_quad: Quad accepted on the previous tick (for continuity scoring)
            mode: LIVE for video frames, STATIC for single-shot analysis

        Returns:
            QualityReport: Metrics, detected quad and the single guidance message
        """
        self.engine.require_ready()
        cfg = self.config

        gray = to_gray(frame)
        h, w = gray.shape[:2]

        brightness = float(gray.mean())
        contrast = float(gray.std())
        blur_score = laplacian_variance(gray)

        previous_area = quad_area(previous_quad) if previous_quad is not None else None
        quad, area = self.detect_document(gray, mode=mode, previous_area=previous_area)

        shadow_delta = 0.0
        min_tile = None
        regional_blur = False
        tilt = TiltRatios()
        cutoff = False

        if quad is not None:
            x0, y0, x1, y1 = quad_bounds(quad, w, h)
            roi = gray[y0:y1, x0:x1]
            shadow_delta = self.shadow_delta(roi)
            min_tile = self.min_tile_sharpness(roi)
            regional_blur = min_tile < cfg.regional_blur_threshold
            tilt = measure_tilt(quad)
            cutoff = self.is_cut_off(quad, w, h)

        blur_threshold = cfg.live_blur_threshold if mode == LIVE else cfg.static_blur_threshold

        issue = self._prioritise(
            lighting=self.lighting_issue(brightness, contrast),
            detected=quad is not None,
            cutoff=cutoff,
            tilted=tilt.exceeds(cfg.tilt_limit),
            blurry=blur_score < blur_threshold,
            regional_blur=regional_blur,
            shadow=shadow_delta > cfg.shadow_threshold,
        )
        message, severity = MESSAGES[issue]

        logger.debug(f"Frame evaluated: issue={issue.value} blur={blur_score:.1f} "
                     f"brightness={brightness:.1f} area={area:.0f}")

        return QualityReport(
            blur_score=blur_score,
            brightness=brightness,
            contrast=contrast,
            shadow_delta=shadow_delta,
            tilt=tilt,
            cutoff=cutoff,
            regional_blur=regional_blur,
            is_valid=issue is QualityIssue.NONE,
            issue=issue,
            message=message,
            severity=severity,
            quad=quad,
            area=area,
            min_tile_sharpness=min_tile,
        )

    @staticmethod
    def _prioritise(lighting, detected, cutoff, tilted, blurry, regional_blur, shadow) -> QualityIssue:
        # Only one message is surfaced; order matters for deterministic guidance.
        if lighting is not None:
            return lighting
        if not detected:
            return QualityIssue.NO_DOCUMENT
        if cutoff:
            return QualityIssue.CUTOFF
        if tilted:
            return QualityIssue.TILT
        if blurry:
            return QualityIssue.BLUR
        if regional_blur:
            return QualityIssue.PARTIAL_BLUR
        if shadow:
            return QualityIssue.SHADOW
        return QualityIssue.NONE

    def detect(self, image: np.ndarray, mode: str = STATIC) -> Tuple[Optional[np.ndarray], float]:
        """Document detection on its own, for single images (defaults to static thresholds)."""
        self.engine.require_ready()
        return self.detect_document(to_gray(image), mode=mode)

    def lighting_issue(self, brightness: float, contrast: float) -> Optional[QualityIssue]:
        cfg = self.config
        if brightness < cfg.dark_threshold:
            return QualityIssue.DARK
        if brightness > cfg.overexposed_threshold and contrast < cfg.overexposed_contrast:
            return QualityIssue.OVEREXPOSED
        return None

    def detect_document(self, gray: np.ndarray, mode: str = LIVE,
                        previous_area: Optional[float] = None) -> Tuple[Optional[np.ndarray], float]:
        """
        Find the most likely document quadrilateral.

        Candidates are 4-vertex approximations of external contours whose
        bounding box has a portrait or landscape document aspect. Each is
        scored by area, tripled when its area is close to the previous
        frame's accepted quad to avoid flicker between competing contours.

        Returns:
            Tuple of (ordered quad or None, contour area)
        """
        cfg = self.config
        low, high = cfg.live_canny if mode == LIVE else cfg.static_canny

        edges = canny_edges(gaussian_blur(gray, 5), low, high)
        edges = dilate(edges, cfg.dilate_kernel, cfg.dilate_iterations)

        best = None
        best_area = 0.0
        best_score = 0.0

        for contour in find_external_contours(edges):
            area = float(cv2.contourArea(contour))
            if area < cfg.min_contour_area:
                continue

            approx = approximate_polygon(contour, cfg.approx_epsilon)
            if len(approx) != 4:
                continue

            _, _, bw, bh = cv2.boundingRect(approx)
            if bh == 0 or not self._document_aspect(bw / float(bh)):
                continue

            score = area
            if previous_area and abs(area - previous_area) <= cfg.continuity_tolerance * previous_area:
                score *= cfg.continuity_bonus

            if score > best_score:
                best, best_area, best_score = approx, area, score

        if best is None:
            return None, 0.0
        return order_corners(best), best_area

    def _document_aspect(self, ratio: float) -> bool:
        lo_p, hi_p = self.config.portrait_aspect
        lo_l, hi_l = self.config.landscape_aspect
        return lo_p <= ratio <= hi_p or lo_l <= ratio <= hi_l

    def shadow_delta(self, roi: np.ndarray) -> float:
        """Brightest minus darkest tile mean over the shadow grid."""
        if roi.size == 0:
            return 0.0
        rows, cols = self.config.shadow_grid
        means = [float(tile.mean()) for _, _, tile in iter_tiles(roi, rows, cols) if tile.size]
        return max(means) - min(means) if means else 0.0

    def min_tile_sharpness(self, roi: np.ndarray) -> float:
        """Lowest Laplacian variance over the sharpness grid."""
        if roi.size == 0:
            return 0.0
        rows, cols = self.config.sharpness_grid
        scores = [laplacian_variance(tile) for _, _, tile in iter_tiles(roi, rows, cols) if tile.size]
        return min(scores) if scores else 0.0

    def is_cut_off(self, quad: np.ndarray, width: int, height: int) -> bool:
        """True if any corner lies within the margin of the frame edge."""
        margin = self.config.cutoff_margin
        for x, y in np.asarray(quad).reshape(4, 2):
            if x < margin or x > width - margin or y < margin or y > height - margin:
                return True
        return False
