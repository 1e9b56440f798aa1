"""
Tests for Layer 3: static image validation.
"""
import cv2
import numpy as np
import pytest

from conftest import DOC_CORNERS
from error_handlers import InvalidImageError, VisionEngineNotReadyError
from image_ops import VisionEngine
from layer1_capture import FrameQualityEvaluator
from layer3_validation import (
    ContentBox,
    Finding,
    StaticImageValidator,
    ValidationConfig,
    ValidationResult,
    crop_to_content,
)


@pytest.fixture
def validator(evaluator):
    return StaticImageValidator(evaluator)


@pytest.fixture
def table_image():
    """Ruled register page filling the frame."""
    image = np.full((480, 640), 220, dtype=np.uint8)
    for y in range(20, 480, 40):
        cv2.line(image, (0, y), (639, y), 0, 2)
    for x in range(20, 640, 80):
        cv2.line(image, (x, 0), (x, 479), 0, 2)
    return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)


def ruled_page(x_start, x_end):
    """Flattened 300x400 page with horizontal rules from x_start to x_end."""
    page = np.full((400, 300), 220, dtype=np.uint8)
    for y in range(40, 361, 40):
        cv2.line(page, (x_start, y), (x_end, y), 0, 2)
    for x in range(40, 261, 55):
        cv2.line(page, (x, 40), (x, 360), 0, 2)
    return page


class TestValidationResult:
    """Test result assembly."""

    def test_warnings_suppressed_behind_issues(self):
        result = ValidationResult.build([Finding.of("blurry")], [Finding.of("sparse_text")])
        assert not result.is_valid
        assert result.issue_codes == ["blurry"]
        assert result.warnings == []

    def test_warnings_kept_without_issues(self):
        result = ValidationResult.build([], [Finding.of("sparse_text")])
        assert result.is_valid
        assert result.warning_codes == ["sparse_text"]

    def test_to_dict(self):
        result = ValidationResult.build([], [], content_box=ContentBox(1.0, 2.0, 3.0, 4.0))
        data = result.to_dict()
        assert data['content_box'] == {'x': 1.0, 'y': 2.0, 'width': 3.0, 'height': 4.0}
        assert data['quad'] is None


class TestStaticImageValidator:
    """Test issue and warning detection on whole images."""

    def test_valid_register_page(self, validator, register_frame):
        result = validator.validate(register_frame)
        assert result.is_valid
        assert result.issues == []
        assert result.quad is not None

    def test_page_without_table(self, validator, document_frame):
        result = validator.validate(document_frame)
        assert not result.is_valid
        assert result.issue_codes == ["no_table"]

    def test_shadow_blocks(self, validator, shadow_frame):
        result = validator.validate(shadow_frame)
        assert not result.is_valid
        assert "shadow" in result.issue_codes

    def test_tilt_blocks(self, validator, tilted_frame):
        result = validator.validate(tilted_frame)
        assert not result.is_valid
        assert "tilt" in result.issue_codes

    def test_table_running_off_frame(self, validator, table_image):
        result = validator.validate(table_image)
        assert not result.is_valid
        assert "table_cutoff" in result.issue_codes

    def test_dark_image(self, validator, dark_frame):
        result = validator.validate(dark_frame)
        assert not result.is_valid
        assert "dark" in result.issue_codes
        assert "low_contrast" in result.issue_codes
        assert "no_document" in result.issue_codes
        assert result.warnings == []

    def test_blurred_image(self, validator, blurred_frame):
        result = validator.validate(blurred_frame)
        assert "blurry" in result.issue_codes

    def test_screenshot(self, validator):
        """Phone-shaped image with pixel-perfect detail is rejected."""
        cells = (np.indices((960, 540)) // 2).sum(axis=0) % 2
        gray = (cells * 255).astype(np.uint8)
        result = validator.validate(cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR))
        assert "screenshot" in result.issue_codes

    def test_cutoff_document(self, validator, cutoff_frame):
        result = validator.validate(cutoff_frame)
        assert "cutoff" in result.issue_codes

    def test_accepts_encoded_bytes(self, validator, register_png):
        result = validator.validate(register_png)
        assert result.is_valid

    def test_invalid_bytes(self, validator):
        with pytest.raises(InvalidImageError):
            validator.validate(b"not an image")

    def test_engine_not_ready(self, document_frame):
        validator = StaticImageValidator(FrameQualityEvaluator(VisionEngine()))
        with pytest.raises(VisionEngineNotReadyError):
            validator.validate(document_frame)

    def test_analysis_failure_allows_image(self, validator, document_frame, monkeypatch):
        def broken(image, mode=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(validator.evaluator, 'detect', broken)
        result = validator.validate(document_frame)
        assert result.is_valid
        assert result.issues == []


class TestStructureChecks:
    """Test table, text and shadow heuristics."""

    def test_table_detected(self, validator, table_image):
        assert validator.has_table(cv2.cvtColor(table_image, cv2.COLOR_BGR2GRAY))

    def test_blank_page_has_no_table(self, validator):
        assert not validator.has_table(np.full((480, 640), 200, dtype=np.uint8))

    def test_plain_page_has_no_table(self, validator, document_frame):
        gray = cv2.cvtColor(document_frame, cv2.COLOR_BGR2GRAY)
        page = validator.page_region(gray, np.array(DOC_CORNERS, dtype=np.float32))
        assert page.shape[:2] == (366, 288)
        assert not validator.has_table(page)

    def test_table_inside_page(self, validator):
        page = ruled_page(x_start=40, x_end=260)
        assert validator.has_table(page)
        assert not validator.table_cut_off(page)

    def test_table_past_page_edge(self, validator):
        page = ruled_page(x_start=0, x_end=299)
        assert validator.has_table(page)
        assert validator.table_cut_off(page)

    def test_no_borders_is_not_cut_off(self, validator):
        assert not validator.table_cut_off(np.full((400, 300), 220, dtype=np.uint8))

    def test_text_density(self, validator):
        mid_gray = np.full((100, 100), 150, dtype=np.uint8)
        assert validator.text_density(mid_gray) == 0.0
        mid_gray[:50] = 0
        assert validator.text_density(mid_gray) == pytest.approx(0.5)

    def test_quadrant_shadow(self, validator):
        gray = np.full((480, 640), 200, dtype=np.uint8)
        assert not validator.quadrant_shadow(gray, 200.0)
        gray[240:, 320:] = 60
        assert validator.quadrant_shadow(gray, float(gray.mean()))

    def test_quadrant_shadow_ignored_when_dark(self, validator):
        gray = np.full((480, 640), 10, dtype=np.uint8)
        gray[:240, :320] = 120
        assert not validator.quadrant_shadow(gray, float(gray.mean()))


class TestContentBox:
    """Test crop box and rotation suggestions."""

    def test_landscape_box(self, validator, clean_landscape_frame):
        gray = cv2.cvtColor(clean_landscape_frame, cv2.COLOR_BGR2GRAY)
        box, rotation = validator.content_box_and_rotation(gray)
        assert rotation == 0
        assert (box.x, box.y, box.width, box.height) == (48.0, 76.0, 544.0, 328.0)

    def test_portrait_page_rotated(self, validator, clean_portrait_frame):
        gray = cv2.cvtColor(clean_portrait_frame, cv2.COLOR_BGR2GRAY)
        _, rotation = validator.content_box_and_rotation(gray)
        assert rotation == 90

    def test_blank_image_full_box(self, validator):
        gray = np.full((100, 200), 128, dtype=np.uint8)
        box, rotation = validator.content_box_and_rotation(gray)
        assert (box.x, box.y, box.width, box.height) == (0.0, 0.0, 200.0, 100.0)
        assert rotation == 0

    def test_box_in_original_pixels(self, evaluator, clean_landscape_frame):
        """Downscaled analysis reports the box at full resolution."""
        large = cv2.resize(clean_landscape_frame, (1280, 960), interpolation=cv2.INTER_NEAREST)
        validator = StaticImageValidator(evaluator, ValidationConfig(max_dimension=640))
        box = validator.validate(large).content_box
        assert box.x == pytest.approx(96.0)
        assert box.y == pytest.approx(152.0)
        assert box.width == pytest.approx(1088.0)
        assert box.height == pytest.approx(656.0)


class TestCropToContent:
    """Test applying the suggested crop."""

    def test_crop(self, document_frame):
        cropped = crop_to_content(document_frame, ContentBox(10.2, 20.0, 100.0, 50.5))
        assert cropped.shape[:2] == (51, 101)

    def test_crop_clamped(self, document_frame):
        cropped = crop_to_content(document_frame, ContentBox(600.0, 400.0, 200.0, 200.0))
        assert cropped.shape[:2] == (80, 40)

    def test_no_box(self, document_frame):
        assert crop_to_content(document_frame, None) is document_frame

    def test_empty_box(self, document_frame):
        assert crop_to_content(document_frame, ContentBox(700.0, 0.0, 10.0, 10.0)) is document_frame
