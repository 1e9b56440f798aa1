"""
Tests for the SHG document scanner service and shared image operations.
"""
import io
import json

import cv2
import numpy as np
import pytest

from error_handlers import (
    CameraInitError,
    InvalidImageError,
    PerspectiveError,
    VisionEngineNotReadyError,
    handle_error,
)
from image_ops import (
    VisionEngine,
    decode_image,
    iter_tiles,
    laplacian_variance,
    order_corners,
    perspective_warp,
    resize_max_dim,
    rotate_right_angle,
)


def upload(data, filename='doc.png', **fields):
    fields['image'] = (io.BytesIO(data), filename)
    return fields


class TestVisionEngine:
    """Test the vision runtime handle."""

    def test_require_ready_before_load(self):
        engine = VisionEngine()
        assert not engine.is_ready
        with pytest.raises(VisionEngineNotReadyError):
            engine.require_ready()

    def test_load_is_idempotent(self):
        engine = VisionEngine()
        assert engine.load()
        assert engine.load()
        assert engine.wait(timeout=0)
        assert engine.version == cv2.__version__


class TestGeometry:
    """Test corner ordering and perspective warp."""

    def test_order_corners_any_input_order(self):
        expected = np.array([(10, 20), (110, 25), (105, 200), (5, 190)], dtype=np.float32)
        rng = np.random.default_rng(3)
        for _ in range(10):
            shuffled = expected[rng.permutation(4)]
            assert np.array_equal(order_corners(shuffled), expected)

    def test_warp_of_flat_page_is_identity(self, clean_portrait_frame):
        """Warping an already-flat full frame returns (nearly) the same pixels."""
        h, w = clean_portrait_frame.shape[:2]
        quad = [(0, 0), (w, 0), (w, h), (0, h)]
        warped = perspective_warp(clean_portrait_frame, quad)
        assert warped.shape == clean_portrait_frame.shape
        diff = np.abs(warped.astype(np.int16) - clean_portrait_frame.astype(np.int16))
        assert np.mean(diff > 2) < 0.02

    def test_warp_output_size(self, document_frame):
        quad = [(100, 100), (400, 120), (420, 400), (90, 380)]
        warped = perspective_warp(document_frame, quad)
        top, bottom = np.hypot(300, 20), np.hypot(330, 20)
        left, right = np.hypot(10, 280), np.hypot(20, 280)
        assert warped.shape[1] == int(round(max(top, bottom)))
        assert warped.shape[0] == int(round(max(left, right)))

    def test_degenerate_quad(self, document_frame):
        with pytest.raises(PerspectiveError):
            perspective_warp(document_frame, [(5, 5), (5, 5), (5, 5), (5, 5)])


class TestPixelOps:
    """Test shared pixel helpers."""

    def test_rotate_shapes(self, document_frame):
        assert rotate_right_angle(document_frame, 0) is document_frame
        assert rotate_right_angle(document_frame, 90).shape[:2] == (640, 480)
        assert rotate_right_angle(document_frame, 180).shape[:2] == (480, 640)
        assert rotate_right_angle(document_frame, -90).shape[:2] == (640, 480)

    def test_rotate_direction(self):
        image = np.zeros((2, 3), dtype=np.uint8)
        image[0, 0] = 255
        # Clockwise: top-left moves to top-right
        assert rotate_right_angle(image, 90)[0, -1] == 255

    def test_rotate_rejects_odd_angles(self, document_frame):
        with pytest.raises(ValueError):
            rotate_right_angle(document_frame, 45)

    def test_laplacian_of_flat_image(self):
        assert laplacian_variance(np.full((50, 50), 128, dtype=np.uint8)) == 0.0

    def test_iter_tiles_covers_image(self):
        image = np.arange(100 * 90, dtype=np.int32).reshape(100, 90)
        tiles = list(iter_tiles(image, 4, 4))
        assert len(tiles) == 16
        assert sum(tile.size for _, _, tile in tiles) == image.size

    def test_resize_max_dim(self):
        image = np.zeros((500, 2000, 3), dtype=np.uint8)
        resized, scale = resize_max_dim(image, 1000)
        assert resized.shape[:2] == (250, 1000)
        assert scale == 0.5
        same, scale = resize_max_dim(resized, 1000)
        assert same is resized
        assert scale == 1.0

    def test_decode_invalid(self):
        with pytest.raises(InvalidImageError):
            decode_image(b"\x00\x01garbage")
        with pytest.raises(InvalidImageError):
            decode_image(b"")


class TestErrorHandling:
    """Test error payloads."""

    def test_scanner_error_payload(self):
        payload = handle_error(CameraInitError(0, "busy"))
        assert payload['success'] is False
        assert payload['error_code'] == 'CAMERA_INIT_FAILED'

    def test_unexpected_error_payload(self):
        payload = handle_error(RuntimeError("boom"))
        assert payload['error_code'] == 'UNEXPECTED_ERROR'


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_ok(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'
        assert data['service'] == 'shg-doc-scanner'

    def test_status_lists_endpoints(self, client):
        data = json.loads(client.get('/api/status').data)
        assert data['engine_ready']
        assert data['endpoints']['scan'] == '/api/scan'


class TestValidateEndpoint:
    """Test static validation endpoint."""

    def test_requires_image(self, client):
        response = client.post('/api/validate', data={}, content_type='multipart/form-data')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'NO_IMAGE'

    def test_rejects_undecodable_image(self, client):
        response = client.post('/api/validate', data=upload(b"not an image"),
                               content_type='multipart/form-data')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_IMAGE'

    def test_validates_register_page(self, client, register_png):
        response = client.post('/api/validate', data=upload(register_png),
                               content_type='multipart/form-data')
        assert response.status_code == 200
        validation = json.loads(response.data)['validation']
        assert validation['is_valid']
        assert validation['issues'] == []
        assert validation['suggested_rotation'] in (0, 90, 180, 270)

    def test_plain_page_rejected(self, client, document_png):
        response = client.post('/api/validate', data=upload(document_png),
                               content_type='multipart/form-data')
        validation = json.loads(response.data)['validation']
        assert not validation['is_valid']
        assert [issue['code'] for issue in validation['issues']] == ['no_table']


class TestEvaluateEndpoint:
    """Test single-frame quality endpoint."""

    def test_returns_guidance(self, client, document_png):
        response = client.post('/api/evaluate', data=upload(document_png),
                               content_type='multipart/form-data')
        assert response.status_code == 200
        quality = json.loads(response.data)['quality']
        assert quality['detected']
        assert quality['message']

    def test_rejects_unknown_mode(self, client, document_png):
        response = client.post('/api/evaluate', data=upload(document_png, mode='video'),
                               content_type='multipart/form-data')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_MODE'


class TestScanEndpoint:
    """Test the single-image scan pipeline endpoint."""

    def test_returns_jpeg(self, client, document_png):
        response = client.post('/api/scan', data=upload(document_png),
                               content_type='multipart/form-data')
        assert response.status_code == 200
        assert response.mimetype == 'image/jpeg'
        assert 'scanned_doc.jpg' in response.headers['Content-Disposition']
        assert response.data[:2] == b'\xff\xd8'

    def test_rotation_applied(self, client, document_png):
        response = client.post('/api/scan', data=upload(document_png, rotation='90'),
                               content_type='multipart/form-data')
        image = cv2.imdecode(np.frombuffer(response.data, np.uint8), cv2.IMREAD_COLOR)
        # Portrait page on its side
        assert image.shape[1] > image.shape[0]

    def test_rejects_bad_rotation(self, client, document_png):
        response = client.post('/api/scan', data=upload(document_png, rotation='45'),
                               content_type='multipart/form-data')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_ROTATION'
