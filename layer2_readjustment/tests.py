"""
Tests for Layer 2: perspective correction and refinement.
"""
import numpy as np
import pytest

from conftest import make_document_frame
from layer2_readjustment import DocumentProcessor


@pytest.fixture
def processor(evaluator):
    return DocumentProcessor(evaluator)


class TestCorrect:
    """Test the warp step and its fallbacks."""

    def test_missing_quad_returns_frame(self, processor, document_frame):
        image, warped = processor.correct(document_frame, None)
        assert image is document_frame
        assert not warped

    def test_degenerate_quad_returns_frame(self, processor, document_frame):
        """Collinear corners fall back to the unwarped frame."""
        line = np.array([(10, 10), (200, 10), (400, 10), (600, 10)], dtype=np.float32)
        image, warped = processor.correct(document_frame, line)
        assert image is document_frame
        assert not warped

    def test_warp_to_page_size(self, processor, document_frame):
        quad = np.array([(170, 50), (470, 50), (470, 430), (170, 430)], dtype=np.float32)
        image, warped = processor.correct(document_frame, quad)
        assert warped
        assert image.shape[:2] == (380, 300)
        # Output is all paper
        assert image.mean() > 150


class TestRefine:
    """Test the second detection pass."""

    def test_refine_trims_border(self, processor, document_frame):
        """A loose crop around the page is tightened to the page."""
        loose = np.array([(140, 20), (500, 20), (500, 460), (140, 460)], dtype=np.float32)
        corrected, _ = processor.correct(document_frame, loose)
        refined, applied = processor.refine(corrected)
        assert applied
        assert refined.shape[0] < corrected.shape[0]
        assert refined.shape[1] < corrected.shape[1]
        assert refined.mean() > corrected.mean()

    def test_refine_without_document(self, processor):
        blank = np.full((300, 200, 3), 180, dtype=np.uint8)
        refined, applied = processor.refine(blank)
        assert refined is blank
        assert not applied

    def test_refine_ignores_small_detections(self, evaluator):
        """A quad covering little of the image is not treated as the page."""
        frame = make_document_frame([(250, 150), (390, 150), (390, 330), (250, 330)])
        processor = DocumentProcessor(evaluator, min_refine_coverage=0.6)
        refined, applied = processor.refine(frame)
        assert refined is frame
        assert not applied


class TestProcess:
    """Test the single-image pipeline."""

    def test_process_document(self, processor, document_frame):
        image, info = processor.process(document_frame)
        assert info['detected']
        assert info['warped']
        assert image.shape[0] > image.shape[1]
        assert len(info['quad']) == 4

    def test_process_without_document(self, processor, dark_frame):
        image, info = processor.process(dark_frame)
        assert image is dark_frame
        assert not info['detected']
        assert not info['warped']
