"""
SHG Document Scanner Service
Thin coordinator exposing the single-image pipeline over HTTP.

Provides REST API for:
- Static validation of a selected/uploaded record photo
- Single-frame live quality evaluation (guidance message + quad)
- Gallery fallback scan: detect, correct, refine, enhance, return JPEG
"""
from flask import Flask, jsonify, request, send_file
from flask_cors import CORS
import logging
import os

# Import layers
from image_ops import VisionEngine, decode_image, rotate_right_angle
from layer1_capture import LIVE, STATIC, EvaluatorConfig, FrameQualityEvaluator
from layer2_readjustment import DocumentProcessor
from layer2_image_enhancer import ImageBridge, EnhancementConfig
from layer3_validation import StaticImageValidator, ValidationConfig
from layer4_result import ScanResult

# Import error handling
from error_handlers import (
    EnhancementError,
    InvalidImageError,
    ScannerError,
    handle_error
)

# Setup logging
logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'DEBUG').upper(),
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Enable CORS for the field app's web client
CORS(app, origins=["*"])

# Configuration
JPEG_QUALITY = int(os.environ.get('JPEG_QUALITY', 95))
SCANNER_PORT = int(os.environ.get('SCANNER_PORT', 5000))
MAX_DIMENSION = int(os.environ.get('VALIDATION_MAX_DIMENSION', 1000))


class ScannerCoordinator:
    """
    Coordinates the single-image pipeline across layers
    Thin wrapper that delegates to layer-specific components
    """

    def __init__(self, jpeg_quality, max_dimension):
        logger.info("Initializing ScannerCoordinator")

        self.jpeg_quality = jpeg_quality

        # Vision runtime handle shared by every layer
        self.engine = VisionEngine()
        self.engine_ready = self.engine.load()

        # Layer 1: Frame evaluation
        self.evaluator = FrameQualityEvaluator(self.engine, EvaluatorConfig())

        # Layer 2: Perspective correction + enhancement
        self.processor = DocumentProcessor(self.evaluator)
        self.enhancer = ImageBridge(EnhancementConfig())

        # Layer 3: Static validation
        self.validator = StaticImageValidator(
            self.evaluator,
            ValidationConfig(max_dimension=max_dimension)
        )

        logger.info(f"ScannerCoordinator initialized (engine ready: {self.engine_ready})")

    def scan(self, frame, rotation=0):
        """
        Gallery fallback pipeline:
        Layer 2 (detect -> correct -> refine) -> enhance -> rotate -> Layer 4

        Returns:
            ScanResult
        """
        logger.info("=" * 60)
        logger.info("Starting single-image scan pipeline")

        logger.info("[Layer 2] Correcting perspective...")
        corrected, info = self.processor.process(frame)
        logger.info(f"[Layer 2] Detected={info['detected']} warped={info['warped']} refined={info['refined']}")

        enhanced = True
        try:
            logger.info("[Layer 2] Enhancing...")
            image = self.enhancer.process(corrected)
        except EnhancementError as e:
            logger.warning(f"[Layer 2] {e.message}, using corrected image")
            image = corrected
            enhanced = False

        image = rotate_right_angle(image, rotation)

        result = ScanResult.from_image(
            image,
            rotation=rotation,
            quality=self.jpeg_quality,
            enhanced=enhanced,
            metadata={'source': 'gallery', **info},
        )
        logger.info("[Pipeline] Success!")
        logger.info("=" * 60)
        return result


# Initialize scanner coordinator
logger.info("Starting application initialization")

scanner = ScannerCoordinator(
    jpeg_quality=JPEG_QUALITY,
    max_dimension=MAX_DIMENSION
)


def _read_upload():
    """
    Decode the multipart 'image' field.

    Returns:
        tuple: (frame, None) or (None, error response)
    """
    if 'image' not in request.files:
        return None, (jsonify({
            "success": False,
            "error": "No image file provided",
            "error_code": "NO_IMAGE"
        }), 400)

    image_file = request.files['image']

    if image_file.filename == '':
        return None, (jsonify({
            "success": False,
            "error": "Empty filename",
            "error_code": "EMPTY_FILENAME"
        }), 400)

    try:
        return decode_image(image_file.read()), None
    except InvalidImageError as e:
        return None, (jsonify(handle_error(e)), 400)


# ============================================================================
# API Endpoints
# ============================================================================

@app.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint for service discovery and load balancers"""
    return jsonify({
        "status": "healthy" if scanner.engine.is_ready else "loading",
        "service": "shg-doc-scanner",
        "version": "1.0.0"
    })


@app.route("/api/status", methods=["GET"])
def api_status():
    """Get service status and capabilities"""
    return jsonify({
        "success": True,
        "engine_ready": scanner.engine.is_ready,
        "opencv_version": scanner.engine.version,
        "jpeg_quality": scanner.jpeg_quality,
        "enhancer": scanner.enhancer.get_stats(),
        "endpoints": {
            "health": "/health",
            "validate": "/api/validate",
            "evaluate": "/api/evaluate",
            "scan": "/api/scan"
        }
    })


@app.route("/api/validate", methods=["POST"])
def api_validate():
    """
    Validate a selected image before upload.

    Request:
        - multipart/form-data with 'image' field

    Response:
        {
            "success": true,
            "validation": { "is_valid": ..., "issues": [...], "warnings": [...],
                            "suggested_rotation": 0, "content_box": {...} }
        }
    """
    logger.info("API validate request received")

    frame, error = _read_upload()
    if error:
        return error

    try:
        result = scanner.validator.validate(frame)
        return jsonify({"success": True, "validation": result.to_dict()})

    except ScannerError as e:
        return jsonify(handle_error(e)), 422

    except Exception as e:
        return jsonify(handle_error(e)), 500


@app.route("/api/evaluate", methods=["POST"])
def api_evaluate():
    """
    Evaluate one frame with the live-capture checks.

    Request:
        - multipart/form-data with 'image' field
        - optional 'mode' field: 'live' (default) or 'static'
    """
    frame, error = _read_upload()
    if error:
        return error

    mode = request.form.get('mode', LIVE)
    if mode not in (LIVE, STATIC):
        return jsonify({
            "success": False,
            "error": f"Unknown mode: {mode}",
            "error_code": "INVALID_MODE"
        }), 400

    try:
        report = scanner.evaluator.evaluate(frame, mode=mode)
        return jsonify({"success": True, "quality": report.to_dict()})

    except ScannerError as e:
        return jsonify(handle_error(e)), 422

    except Exception as e:
        return jsonify(handle_error(e)), 500


@app.route("/api/scan", methods=["POST"])
def api_scan():
    """
    Gallery fallback: turn a selected photo into the final scanned JPEG.

    Request:
        - multipart/form-data with 'image' field
        - optional 'rotation' field (0/90/180/270, clockwise)

    Response:
        image/jpeg attachment named scanned_doc.jpg
    """
    logger.info("API scan request received")

    frame, error = _read_upload()
    if error:
        return error

    try:
        rotation = int(request.form.get('rotation', 0))
        if rotation % 90:
            raise ValueError(rotation)
    except ValueError:
        return jsonify({
            "success": False,
            "error": "Rotation must be a multiple of 90",
            "error_code": "INVALID_ROTATION"
        }), 400

    try:
        result = scanner.scan(frame, rotation=rotation)
        return send_file(
            result.to_file(),
            mimetype='image/jpeg',
            as_attachment=True,
            download_name=result.filename
        )

    except ScannerError as e:
        return jsonify(handle_error(e)), 422

    except Exception as e:
        return jsonify(handle_error(e)), 500


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == '__main__':
    logger.info(f"Flask server starting on port {SCANNER_PORT}")
    app.run(host='0.0.0.0', port=SCANNER_PORT, debug=False, threaded=True)
