"""
Layer 3 — Static Image Validation
Component: Single-shot validator for already-selected images
Responsibility: Run the live quality checks once on a gallery/uploaded
image, add checks that only make sense for a still (screenshot, table
structure, text presence) and suggest a crop box and rotation
"""
import cv2
import numpy as np
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from error_handlers import PerspectiveError, ScannerError
from image_ops import (
    ImageSource,
    find_external_contours,
    laplacian_variance,
    load_image,
    perspective_warp,
    quad_bounds,
    resize_max_dim,
    to_gray,
)
from layer1_capture.quality import STATIC, FrameQualityEvaluator, QualityIssue, measure_tilt

logger = logging.getLogger(__name__)


# Blocking issues
DARK = "dark"
OVEREXPOSED = "overexposed"
LOW_CONTRAST = "low_contrast"
BLURRY = "blurry"
SCREENSHOT = "screenshot"
NO_DOCUMENT = "no_document"
CUTOFF = "cutoff"
SHADOW = "shadow"
TILT = "tilt"
NO_TABLE = "no_table"
TABLE_CUTOFF = "table_cutoff"

# Warnings
SPARSE_TEXT = "sparse_text"

FINDING_MESSAGES = {
    DARK: "Image is too dark. Please use flash or find better lighting and capture again.",
    OVEREXPOSED: "Image is overexposed. Avoid glare and capture again.",
    LOW_CONTRAST: "Low contrast image. Capture in better lighting.",
    BLURRY: "Image is blurry. Please capture again with a steady hand.",
    SCREENSHOT: "Screenshots are not allowed. Please photograph the paper record.",
    NO_DOCUMENT: "Document edges not detected. Please capture the full page.",
    CUTOFF: "Document edges not fully visible. Ensure all four edges are in the frame.",
    SHADOW: "Shadow detected. Ensure even lighting and capture again.",
    TILT: "Document looks tilted. Hold the phone parallel to the paper.",
    NO_TABLE: "No table detected in the image. Please capture an image with a table.",
    TABLE_CUTOFF: "Table is cut off. Ensure all table borders are visible.",
    SPARSE_TEXT: "Text not detected. Please capture clearly with visible text.",
}


@dataclass
class ValidationConfig:
    """Thresholds for static image validation."""
    max_dimension: int = 1000          # Working resolution (longest side)
    min_dynamic_range: float = 50.0

    # Screenshot: phone/screen aspect and very high Laplacian std dev
    screenshot_ratios: Tuple[float, ...] = (9 / 16, 16 / 9, 20 / 9)
    screenshot_ratio_tolerance: float = 0.02
    screenshot_sharpness: float = 260.0

    # Whole-image 2x2 quadrant shadow check
    shadow_quadrant_delta: float = 80.0
    shadow_min_brightness: float = 60.0

    # Content box / orientation
    edge_sample_step: int = 2
    edge_gradient: int = 20            # Per-axis gradient counted as edge energy
    edge_strength: int = 40            # dx + dy counted as a content pixel
    content_padding: float = 0.05
    vertical_edge_ratio: float = 1.2   # dx/dy energy above => rotate 90
    density_ratio: float = 1.5         # Content weight ratio for 180/270
    landscape_margin: float = 1.1      # Height over width above => still portrait

    # Table structure
    table_block_size: int = 15
    table_offset: int = 10
    table_kernel_divisor: int = 25
    table_min_crossings: int = 4       # Ruling line intersections that make a table
    table_border_span: float = 0.6     # Outer borders span at least this much of the page
    table_margin: int = 20             # Border closer than this to the page edge => cut off
    page_inset: float = 0.02           # Trimmed from the flattened page before table checks

    # Text presence
    text_dark: int = 100
    text_light: int = 200
    min_text_density: float = 0.05


@dataclass(frozen=True)
class Finding:
    code: str
    message: str

    @classmethod
    def of(cls, code: str) -> "Finding":
        return cls(code=code, message=FINDING_MESSAGES[code])

    def to_dict(self) -> Dict:
        return {'code': self.code, 'message': self.message}


@dataclass(frozen=True)
class ContentBox:
    """Axis-aligned crop rectangle in image pixels."""
    x: float
    y: float
    width: float
    height: float

    def scaled(self, factor: float) -> "ContentBox":
        return ContentBox(self.x * factor, self.y * factor, self.width * factor, self.height * factor)

    def to_dict(self) -> Dict:
        return {
            'x': round(self.x, 1),
            'y': round(self.y, 1),
            'width': round(self.width, 1),
            'height': round(self.height, 1),
        }


@dataclass
class ValidationResult:
    """Outcome of validating one image. Warnings are empty whenever issues exist."""
    is_valid: bool
    issues: List[Finding] = field(default_factory=list)
    warnings: List[Finding] = field(default_factory=list)
    suggested_rotation: int = 0
    content_box: Optional[ContentBox] = None
    blur_score: float = 0.0
    brightness: float = 0.0
    contrast: float = 0.0
    dynamic_range: float = 0.0
    quad: Optional[np.ndarray] = None

    @classmethod
    def build(cls, issues: List[Finding], warnings: List[Finding], **metrics) -> "ValidationResult":
        if issues and warnings:
            logger.debug(f"Suppressing {len(warnings)} warning(s) behind {len(issues)} issue(s)")
            warnings = []
        return cls(is_valid=not issues, issues=list(issues), warnings=list(warnings), **metrics)

    @property
    def issue_codes(self) -> List[str]:
        return [f.code for f in self.issues]

    @property
    def warning_codes(self) -> List[str]:
        return [f.code for f in self.warnings]

    def to_dict(self) -> Dict:
        """Convert to dictionary for API responses."""
        return {
            'is_valid': self.is_valid,
            'issues': [f.to_dict() for f in self.issues],
            'warnings': [f.to_dict() for f in self.warnings],
            'suggested_rotation': self.suggested_rotation,
            'content_box': self.content_box.to_dict() if self.content_box else None,
            'blur_score': round(self.blur_score, 2),
            'brightness': round(self.brightness, 2),
            'contrast': round(self.contrast, 2),
            'dynamic_range': round(self.dynamic_range, 2),
            'quad': self.quad.tolist() if self.quad is not None else None,
        }


class StaticImageValidator:
    """
    Validates a pre-selected image before it is accepted for upload.

    Works on a copy downscaled to ValidationConfig.max_dimension; the
    content box and quad are reported in the original image's pixels.
    """

    def __init__(self, evaluator: FrameQualityEvaluator, config: Optional[ValidationConfig] = None):
        self.evaluator = evaluator
        self.config = config or ValidationConfig()
        logger.info("StaticImageValidator initialized")

    def validate(self, source: ImageSource) -> ValidationResult:
        """
        Validate one image.

        Args:
            source: File path, encoded bytes or BGR array

        Returns:
            ValidationResult

        Raises:
            InvalidImageError: If the input cannot be decoded
        """
        image = load_image(source)

        try:
            return self._validate(image)
        except ScannerError:
            raise
        except Exception as e:
            # Analysis must never block the user from proceeding
            logger.error(f"Image analysis failed, allowing image: {e}")
            logger.exception("Full traceback:")
            return ValidationResult(is_valid=True)

    def _validate(self, image: np.ndarray) -> ValidationResult:
        cfg = self.config
        original_h, original_w = image.shape[:2]

        working, scale = resize_max_dim(image, cfg.max_dimension)
        gray = to_gray(working)
        h, w = gray.shape[:2]

        brightness = float(gray.mean())
        contrast = float(gray.std())
        dynamic_range = float(int(gray.max()) - int(gray.min()))
        blur_score = laplacian_variance(gray)

        issues: List[Finding] = []
        warnings: List[Finding] = []

        lighting = self.evaluator.lighting_issue(brightness, contrast)
        if lighting is QualityIssue.DARK:
            issues.append(Finding.of(DARK))
        elif lighting is QualityIssue.OVEREXPOSED:
            issues.append(Finding.of(OVEREXPOSED))

        if dynamic_range < cfg.min_dynamic_range:
            issues.append(Finding.of(LOW_CONTRAST))

        if blur_score < self.evaluator.config.static_blur_threshold:
            issues.append(Finding.of(BLURRY))

        if self.is_screenshot(gray, original_w, original_h):
            issues.append(Finding.of(SCREENSHOT))

        shadowed = self.quadrant_shadow(gray, brightness)
        quad, _ = self.evaluator.detect(gray, mode=STATIC)
        if quad is None:
            issues.append(Finding.of(NO_DOCUMENT))
        else:
            if self.evaluator.is_cut_off(quad, w, h):
                issues.append(Finding.of(CUTOFF))
            if measure_tilt(quad).exceeds(self.evaluator.config.tilt_limit):
                issues.append(Finding.of(TILT))
            x0, y0, x1, y1 = quad_bounds(quad, w, h)
            roi_delta = self.evaluator.shadow_delta(gray[y0:y1, x0:x1])
            shadowed = shadowed or roi_delta > self.evaluator.config.shadow_threshold

        if shadowed:
            issues.append(Finding.of(SHADOW))

        page = self.page_region(gray, quad)
        if not self.has_table(page):
            issues.append(Finding.of(NO_TABLE))
        elif self.table_cut_off(page):
            issues.append(Finding.of(TABLE_CUTOFF))

        if self.text_density(gray) < cfg.min_text_density:
            warnings.append(Finding.of(SPARSE_TEXT))

        box, rotation = self.content_box_and_rotation(gray)

        result = ValidationResult.build(
            issues,
            warnings,
            suggested_rotation=rotation,
            content_box=box.scaled(1.0 / scale),
            blur_score=blur_score,
            brightness=brightness,
            contrast=contrast,
            dynamic_range=dynamic_range,
            quad=quad / scale if quad is not None else None,
        )
        logger.info(f"Validation: valid={result.is_valid} issues={result.issue_codes} "
                    f"warnings={result.warning_codes} rotation={rotation}")
        return result

    def is_screenshot(self, gray: np.ndarray, width: int, height: int) -> bool:
        """Screen-shaped and sharper than any camera photo of paper."""
        cfg = self.config
        ratio = width / float(height)
        if not any(abs(r - ratio) < cfg.screenshot_ratio_tolerance for r in cfg.screenshot_ratios):
            return False
        sharpness = float(np.sqrt(laplacian_variance(gray)))
        return sharpness > cfg.screenshot_sharpness

    def quadrant_shadow(self, gray: np.ndarray, brightness: float) -> bool:
        """Brightest vs darkest image quadrant, ignored on dark images."""
        cfg = self.config
        h, w = gray.shape[:2]
        half_h, half_w = h // 2, w // 2
        quadrants = [
            gray[:half_h, :half_w], gray[:half_h, half_w:],
            gray[half_h:, :half_w], gray[half_h:, half_w:],
        ]
        means = [float(q.mean()) for q in quadrants if q.size]
        if not means:
            return False
        return max(means) - min(means) > cfg.shadow_quadrant_delta and brightness > cfg.shadow_min_brightness

    def page_region(self, gray: np.ndarray, quad: Optional[np.ndarray]) -> np.ndarray:
        """Flattened page with its border trimmed, or the whole image without a quad."""
        if quad is None:
            return gray
        try:
            page = perspective_warp(gray, quad)
        except PerspectiveError as e:
            logger.debug(f"Page flattening skipped: {e.message}")
            return gray
        h, w = page.shape[:2]
        dy = int(h * self.config.page_inset)
        dx = int(w * self.config.page_inset)
        return page[dy:h - dy, dx:w - dx]

    def _ruling_masks(self, gray: np.ndarray, h_len: int, v_len: int) -> Tuple[np.ndarray, np.ndarray]:
        """Horizontal and vertical line masks at least h_len / v_len pixels long."""
        cfg = self.config
        binary = cv2.adaptiveThreshold(
            gray, 255,
            cv2.ADAPTIVE_THRESH_MEAN_C,
            cv2.THRESH_BINARY_INV,
            cfg.table_block_size,
            cfg.table_offset
        )

        h_kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (max(1, h_len), 1))
        v_kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (1, max(1, v_len)))
        horizontal = cv2.morphologyEx(binary, cv2.MORPH_OPEN, h_kernel)
        vertical = cv2.morphologyEx(binary, cv2.MORPH_OPEN, v_kernel)
        return horizontal, vertical

    def has_table(self, gray: np.ndarray) -> bool:
        """Horizontal and vertical ruling lines crossing at enough points."""
        cfg = self.config
        h, w = gray.shape[:2]
        horizontal, vertical = self._ruling_masks(
            gray, w // cfg.table_kernel_divisor, h // cfg.table_kernel_divisor
        )
        count, _ = cv2.connectedComponents(cv2.bitwise_and(horizontal, vertical))
        # Label 0 is background
        return count - 1 >= cfg.table_min_crossings

    def table_cut_off(self, gray: np.ndarray) -> bool:
        """
        Outer table border running into the page edge.

        Only lines spanning table_border_span of the page count as borders;
        their bounding box must keep table_margin pixels from every edge.
        """
        cfg = self.config
        h, w = gray.shape[:2]
        horizontal, vertical = self._ruling_masks(
            gray, int(w * cfg.table_border_span), int(h * cfg.table_border_span)
        )
        contours = find_external_contours(cv2.add(horizontal, vertical))
        if not contours:
            return False

        x, y, bw, bh = cv2.boundingRect(max(contours, key=cv2.contourArea))
        margin = cfg.table_margin
        return x < margin or y < margin or x + bw > w - margin or y + bh > h - margin

    def text_density(self, gray: np.ndarray) -> float:
        """Fraction of pixels that are clearly ink or clearly paper."""
        cfg = self.config
        if gray.size == 0:
            return 0.0
        mask = (gray < cfg.text_dark) | (gray > cfg.text_light)
        return float(np.count_nonzero(mask)) / gray.size

    def content_box_and_rotation(self, gray: np.ndarray) -> Tuple[ContentBox, int]:
        """
        Bounding box of edge pixels (padded) and a clockwise rotation suggestion.

        SHG registers are landscape tables: dominant vertical edge energy
        means the page is on its side, content weight decides between the
        two directions, and a box that would still be portrait gets a
        further quarter turn.
        """
        cfg = self.config
        h, w = gray.shape[:2]
        step = cfg.edge_sample_step

        ys = np.arange(step, h - step, step)
        xs = np.arange(step, w - step, step)
        if ys.size == 0 or xs.size == 0:
            return ContentBox(0.0, 0.0, float(w), float(h)), 0

        g = gray.astype(np.int16)
        dx = np.abs(g[np.ix_(ys, xs + 1)] - g[np.ix_(ys, xs - 1)])
        dy = np.abs(g[np.ix_(ys + 1, xs)] - g[np.ix_(ys - 1, xs)])

        dx_sum = float(dx[dx > cfg.edge_gradient].sum())
        dy_sum = float(dy[dy > cfg.edge_gradient].sum())

        rows, cols = np.nonzero((dx + dy) > cfg.edge_strength)
        if rows.size == 0:
            return ContentBox(0.0, 0.0, float(w), float(h)), 0

        py = ys[rows]
        px = xs[cols]
        min_x, max_x = int(px.min()), int(px.max())
        min_y, max_y = int(py.min()), int(py.max())

        top_weight = int(np.count_nonzero(py < h * 0.25))
        bottom_weight = int(np.count_nonzero(py > h * 0.75))
        left_weight = int(np.count_nonzero(px < w * 0.25))
        right_weight = int(np.count_nonzero(px > w * 0.75))

        pad_w = w * cfg.content_padding
        pad_h = h * cfg.content_padding
        x0 = max(0.0, min_x - pad_w)
        y0 = max(0.0, min_y - pad_h)
        box = ContentBox(
            x=x0,
            y=y0,
            width=min(float(w), max_x + pad_w) - x0,
            height=min(float(h), max_y + pad_h) - y0,
        )

        rotation = 0
        if dx_sum / (dy_sum or 1.0) > cfg.vertical_edge_ratio:
            rotation = 90

        if rotation == 0:
            if bottom_weight > top_weight * cfg.density_ratio:
                rotation = 180
        elif right_weight > left_weight * cfg.density_ratio:
            rotation = 270

        content_w = max_x - min_x
        content_h = max_y - min_y
        if rotation in (90, 270):
            content_w, content_h = content_h, content_w
        if content_h > content_w * cfg.landscape_margin:
            rotation = (rotation + 90) % 360

        return box, rotation


def crop_to_content(image: np.ndarray, box: Optional[ContentBox]) -> np.ndarray:
    """Apply a content box crop, clamped to the image. No box returns the image."""
    if box is None:
        return image
    h, w = image.shape[:2]
    x0 = int(max(0, np.floor(box.x)))
    y0 = int(max(0, np.floor(box.y)))
    x1 = int(min(w, np.ceil(box.x + box.width)))
    y1 = int(min(h, np.ceil(box.y + box.height)))
    if x1 <= x0 or y1 <= y0:
        logger.warning("Empty content box, skipping crop")
        return image
    return image[y0:y1, x0:x1]
