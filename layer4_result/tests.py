"""
Tests for Layer 4: ScanResult packaging and upload hand-off.
"""
import os

import cv2
import numpy as np

from layer4_result import ScanResult, hand_off


class TestScanResult:
    """Test encoding and file views."""

    def test_from_image(self, document_frame):
        result = ScanResult.from_image(document_frame, rotation=450, metadata={'source': 'camera'})
        assert result.width == 640
        assert result.height == 480
        assert result.rotation == 90
        assert result.filename == "scanned_doc.jpg"
        assert result.image_bytes[:2] == b'\xff\xd8'
        assert result.metadata == {'source': 'camera'}

    def test_to_file_is_named(self, document_frame):
        result = ScanResult.from_image(document_frame)
        file = result.to_file()
        assert file.name == "scanned_doc.jpg"
        decoded = cv2.imdecode(np.frombuffer(file.read(), np.uint8), cv2.IMREAD_COLOR)
        assert decoded.shape == document_frame.shape

    def test_to_dict_omits_bytes(self, document_frame):
        data = ScanResult.from_image(document_frame).to_dict()
        assert 'image_bytes' not in data
        assert data['size_bytes'] > 0

    def test_save(self, document_frame, tmp_path):
        result = ScanResult.from_image(document_frame, filename="record.jpg")
        path = result.save(str(tmp_path / "scans"))
        assert os.path.basename(path) == "record.jpg"
        with open(path, 'rb') as f:
            assert f.read() == result.image_bytes


class TestHandOff:
    """Test the upload collaborator contract."""

    def test_uploader_receives_file_and_metadata(self, document_frame):
        received = []
        result = ScanResult.from_image(document_frame, metadata={'shg_id': 'SHG-42'})
        assert hand_off(result, lambda file, metadata: received.append((file.name, metadata)))
        name, metadata = received[0]
        assert name == "scanned_doc.jpg"
        assert metadata['shg_id'] == 'SHG-42'
        assert metadata['filename'] == "scanned_doc.jpg"

    def test_uploader_failure_is_contained(self, document_frame):
        def failing(file, metadata):
            raise ConnectionError("offline")

        result = ScanResult.from_image(document_frame)
        assert hand_off(result, failing) is False

    def test_no_uploader(self, document_frame):
        assert hand_off(ScanResult.from_image(document_frame), None) is False
