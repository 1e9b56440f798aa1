"""
Error Handling System
Provides consistent error responses across all scanning layers
"""
import logging

logger = logging.getLogger(__name__)


class ScannerError(Exception):
    """Base exception for scanner errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Layer 1 Errors - Camera acquisition (fatal to a session, never retried)
class CameraError(ScannerError):
    """Camera-related errors"""
    pass


class CameraNotFoundError(CameraError):
    """Camera device not found"""
    def __init__(self, camera_index):
        super().__init__(
            message=f"Camera not found at index {camera_index}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "camera_index": camera_index,
                "suggestion": "Check camera connection and device index"
            }
        )


class CameraInitError(CameraError):
    """Camera initialization failed"""
    def __init__(self, camera_index, reason=None):
        super().__init__(
            message=f"Failed to initialize camera at index {camera_index}",
            error_code="CAMERA_INIT_FAILED",
            details={
                "camera_index": camera_index,
                "reason": reason,
                "suggestion": "Close the scanner and reopen it once no other app is using the camera"
            }
        )


class CameraPermissionError(CameraError):
    """Camera access refused by the platform"""
    def __init__(self, reason=None):
        super().__init__(
            message="Unable to access camera. Please check permissions and try again.",
            error_code="CAMERA_PERMISSION_DENIED",
            details={
                "reason": reason,
                "suggestion": "Grant camera permission, then close and reopen the scanner"
            }
        )


class CameraNotInitializedError(CameraError):
    """Attempting to use camera before initialization"""
    def __init__(self):
        super().__init__(
            message="Camera not initialized. Please open the scanner first.",
            error_code="CAMERA_NOT_INITIALIZED",
            details={
                "suggestion": "Open a capture session before reading frames"
            }
        )


class FrameCaptureError(CameraError):
    """Failed to capture frame"""
    def __init__(self):
        super().__init__(
            message="Failed to capture frame from camera",
            error_code="FRAME_CAPTURE_FAILED",
            details={
                "suggestion": "Check camera connection or reopen the scanner"
            }
        )


# Layer 2 Errors - Image Processing
class ProcessingError(ScannerError):
    """Image processing errors"""
    pass


class PerspectiveError(ProcessingError):
    """Perspective correction could not be applied"""
    def __init__(self, reason):
        super().__init__(
            message=f"Perspective correction failed: {reason}",
            error_code="PERSPECTIVE_FAILED",
            details={"reason": str(reason)}
        )


class EnhancementError(ProcessingError):
    """Post-capture enhancement failed"""
    def __init__(self, reason):
        super().__init__(
            message=f"Image enhancement failed: {reason}",
            error_code="ENHANCEMENT_FAILED",
            details={"reason": str(reason)}
        )


class InvalidImageError(ProcessingError):
    """Input could not be decoded as an image"""
    def __init__(self, reason="Could not read image data"):
        super().__init__(
            message=reason,
            error_code="INVALID_IMAGE",
            details={
                "suggestion": "Select a JPG or PNG photo of the document"
            }
        )


# Session Errors - Capture state machine
class SessionError(ScannerError):
    """Capture session errors"""
    pass


class InvalidTransitionError(SessionError):
    """Operation not allowed in the current session state"""
    def __init__(self, operation, state):
        super().__init__(
            message=f"Cannot {operation} while session is {state}",
            error_code="INVALID_TRANSITION",
            details={"operation": operation, "state": str(state)}
        )


class VisionEngineNotReadyError(SessionError):
    """Vision library used before it finished loading"""
    def __init__(self):
        super().__init__(
            message="Scanner engine is still loading",
            error_code="VISION_ENGINE_NOT_READY",
            details={
                "suggestion": "Wait for the scanner engine to load before analysing frames"
            }
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, ScannerError):
        # Known scanner error
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        # Unexpected error
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }
