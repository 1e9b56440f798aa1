"""
Pytest configuration and fixtures for the SHG document scanner tests.
"""
import pytest
import cv2
import numpy as np
import os
import sys

# Add the project root to the path
sys.path.insert(0, os.path.dirname(__file__))

from error_handlers import CameraPermissionError
from image_ops import VisionEngine, order_corners, quad_area
from layer1_capture.camera import StaticFrameSource
from layer1_capture.quality import (
    LIVE,
    MESSAGES,
    FrameQualityEvaluator,
    QualityIssue,
    QualityReport,
    TiltRatios,
)

FRAME_SIZE = (480, 640)  # (height, width)

# Portrait page, well inside the frame
DOC_CORNERS = [(170, 50), (470, 50), (470, 430), (170, 430)]

# Top edge 200 px, bottom edge 260 px: width ratio 1.3
TILTED_CORNERS = [(230, 60), (430, 60), (450, 420), (190, 420)]

# Left edge 5 px from the frame border
CUTOFF_CORNERS = [(5, 50), (305, 50), (305, 430), (5, 430)]

# Landscape page for orientation / content box checks
LANDSCAPE_CORNERS = [(80, 100), (560, 100), (560, 380), (80, 380)]

# Ruled table inside DOC_CORNERS, 40 px clear of the page border
REGISTER_COLUMNS = range(210, 431, 44)
REGISTER_ROWS = range(90, 371, 40)


def make_document_frame(corners, size=FRAME_SIZE, background=40, paper=200, noise=10, seed=0):
    """
    Synthetic BGR frame: a bright page polygon on a dark desk.

    Gaussian noise stands in for sensor noise and paper texture so the
    Laplacian variance of a sharp frame sits well above the blur thresholds.
    """
    gray = np.full(size, background, dtype=np.float32)
    cv2.fillPoly(gray, [np.array(corners, dtype=np.int32)], float(paper))
    if noise:
        rng = np.random.default_rng(seed)
        gray += rng.normal(0.0, noise, size)
    gray = np.clip(gray, 0, 255).astype(np.uint8)
    return cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)


def make_register_frame(**kwargs):
    """Portrait page carrying a ruled table, as a record book page photographs."""
    frame = make_document_frame(DOC_CORNERS, **kwargs)
    left, right = REGISTER_COLUMNS[0], REGISTER_COLUMNS[-1]
    top, bottom = REGISTER_ROWS[0], REGISTER_ROWS[-1]
    for y in REGISTER_ROWS:
        cv2.line(frame, (left, y), (right, y), (0, 0, 0), 2)
    for x in REGISTER_COLUMNS:
        cv2.line(frame, (x, top), (x, bottom), (0, 0, 0), 2)
    return frame


def make_report(issue=QualityIssue.NONE, quad=DOC_CORNERS, area=None, blur_score=500.0):
    """QualityReport for scripted sessions and tracker tests."""
    message, severity = MESSAGES[issue]
    if issue is QualityIssue.NO_DOCUMENT or quad is None:
        quad = None
    else:
        quad = order_corners(quad)
    if area is None:
        area = quad_area(quad) if quad is not None else 0.0
    return QualityReport(
        blur_score=blur_score,
        brightness=120.0,
        contrast=60.0,
        shadow_delta=5.0,
        tilt=TiltRatios(1.3, 1.0) if issue is QualityIssue.TILT else TiltRatios(),
        cutoff=issue is QualityIssue.CUTOFF,
        regional_blur=issue is QualityIssue.PARTIAL_BLUR,
        is_valid=issue is QualityIssue.NONE,
        issue=issue,
        message=message,
        severity=severity,
        quad=quad,
        area=area,
    )


class ScriptedEvaluator(FrameQualityEvaluator):
    """Evaluator that replays a list of reports (the last one repeats)."""

    def __init__(self, engine, script):
        super().__init__(engine)
        self.script = list(script)
        self.calls = 0

    def evaluate(self, frame, previous_quad=None, mode=LIVE):
        self.engine.require_ready()
        report = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        return report


class DeniedCamera:
    """Camera whose acquisition is refused by the platform."""

    def __init__(self):
        self.release_count = 0

    def initialize(self):
        raise CameraPermissionError("NotAllowedError")

    def get_frame(self):
        raise AssertionError("get_frame called on a camera that never opened")

    def is_opened(self):
        return False

    def release(self):
        self.release_count += 1


class CountingFrameSource(StaticFrameSource):
    """StaticFrameSource that counts releases of an open source."""

    def __init__(self, frames, loop=True):
        super().__init__(frames, loop=loop)
        self.release_count = 0

    def release(self):
        if self.is_opened():
            self.release_count += 1
        super().release()


@pytest.fixture
def engine():
    """Loaded vision engine."""
    vision = VisionEngine()
    assert vision.load()
    return vision


@pytest.fixture
def evaluator(engine):
    return FrameQualityEvaluator(engine)


@pytest.fixture
def document_frame():
    return make_document_frame(DOC_CORNERS)


@pytest.fixture
def register_frame():
    return make_register_frame()


@pytest.fixture
def tilted_frame():
    return make_document_frame(TILTED_CORNERS)


@pytest.fixture
def cutoff_frame():
    return make_document_frame(CUTOFF_CORNERS)


@pytest.fixture
def shadow_frame():
    """Valid page with its right half darkened by 90 levels."""
    frame = make_document_frame(DOC_CORNERS).astype(np.int16)
    frame[50:431, 320:471] -= 90
    return np.clip(frame, 0, 255).astype(np.uint8)


@pytest.fixture
def blurred_frame():
    return cv2.GaussianBlur(make_document_frame(DOC_CORNERS), (0, 0), 3)


@pytest.fixture
def dark_frame():
    return np.full(FRAME_SIZE + (3,), 20, dtype=np.uint8)


@pytest.fixture
def bright_frame():
    return np.full(FRAME_SIZE + (3,), 235, dtype=np.uint8)


@pytest.fixture
def clean_portrait_frame():
    return make_document_frame(DOC_CORNERS, noise=0)


@pytest.fixture
def clean_landscape_frame():
    return make_document_frame(LANDSCAPE_CORNERS, noise=0)


@pytest.fixture
def report_factory():
    return make_report


@pytest.fixture
def scripted_evaluator(engine):
    def factory(script):
        return ScriptedEvaluator(engine, script)
    return factory


@pytest.fixture
def denied_camera():
    return DeniedCamera()


@pytest.fixture
def app():
    """Create Flask test application."""
    from app import app as flask_app
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()


@pytest.fixture
def document_png(document_frame):
    ok, buffer = cv2.imencode('.png', document_frame)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def register_png(register_frame):
    ok, buffer = cv2.imencode('.png', register_frame)
    assert ok
    return buffer.tobytes()
