"""
Tests for Layer 2 image enhancement bridge.
"""
import numpy as np
import pytest

from error_handlers import EnhancementError
from layer2_image_enhancer import EnhancementConfig, ImageBridge


class TestImageBridge:
    """Test enhancement steps and failure reporting."""

    def test_defaults_apply_contrast_and_sharpen(self, document_frame):
        bridge = ImageBridge()
        result = bridge.process(document_frame)
        assert result.shape == document_frame.shape
        assert bridge.get_stats()['enhancements_applied'] == {'contrast': 1, 'sharpen': 1}

    def test_stats_are_per_step_counts(self, document_frame):
        """Stats stay bounded no matter how many images pass through."""
        bridge = ImageBridge()
        for _ in range(3):
            bridge.process(document_frame)
        stats = bridge.get_stats()
        assert stats['images_processed'] == 3
        assert stats['enhancements_applied'] == {'contrast': 3, 'sharpen': 3}

    def test_input_not_modified(self, document_frame):
        original = document_frame.copy()
        ImageBridge().process(document_frame)
        assert np.array_equal(document_frame, original)

    def test_passthrough_when_disabled(self, document_frame):
        bridge = ImageBridge(EnhancementConfig(enable_contrast=False, enable_sharpening=False))
        result = bridge.process(document_frame)
        assert np.array_equal(result, document_frame)
        assert bridge.get_stats()['images_processed'] == 1

    def test_binarize_produces_black_and_white(self, document_frame):
        bridge = ImageBridge(EnhancementConfig(enable_binarize=True))
        result = bridge.process(document_frame)
        assert result.shape == document_frame.shape
        assert set(np.unique(result)) <= {0, 255}

    def test_upscale_to_target_width(self, document_frame):
        config = EnhancementConfig(enable_upscaling=True, enable_contrast=False,
                                   enable_sharpening=False, target_width=1280)
        result = ImageBridge(config).process(document_frame)
        assert result.shape[:2] == (960, 1280)

    def test_grayscale_input(self):
        gray = np.random.default_rng(0).integers(0, 255, (120, 160), dtype=np.uint8)
        result = ImageBridge().process(gray)
        assert result.shape == gray.shape

    def test_missing_image_raises(self):
        bridge = ImageBridge()
        with pytest.raises(EnhancementError):
            bridge.process(None)
        assert bridge.get_stats()['failures'] == 1

    def test_opencv_failure_wrapped(self):
        """Images OpenCV cannot convert surface as EnhancementError."""
        bad = np.zeros((10, 10, 2), dtype=np.uint8)
        with pytest.raises(EnhancementError):
            ImageBridge().process(bad)
