"""
Layer 1 — Capture Session
Drives one document scan from live preview to a confirmed ScanResult.

Features:
- Awaits the vision engine before searching
- Throttled analysis loop (skip-if-busy) feeding a single-slot cell
- Fast tracking loop that only smooths corners for the overlay
- Auto-capture once the document has been steady for enough ticks
- Best-frame freeze, perspective correction and a refinement pass
- Background enhancement that never blocks review or confirm
- One idempotent teardown shared by every exit path
"""
import asyncio
import cv2
import numpy as np
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

from error_handlers import (
    CameraError,
    InvalidTransitionError,
    ScannerError,
    VisionEngineNotReadyError,
)
from image_ops import rotate_right_angle
from layer2_image_enhancer import ImageBridge
from layer2_readjustment import DocumentProcessor
from layer4_result import ScanResult, hand_off

from .quality import LIVE, FrameQualityEvaluator, QualityReport, Severity
from .tracker import LatestValue, QuadTracker

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    CAPTURING = "capturing"
    REVIEWING = "reviewing"
    ENHANCING = "enhancing"
    CLOSED = "closed"
    FAILED = "failed"


REVIEW_STATES = (SessionState.REVIEWING, SessionState.ENHANCING)


@dataclass
class CaptureConfig:
    """Configuration for a capture session."""
    # Loop timing
    analysis_interval_ms: int = 60    # ~15 fps of CV analysis
    tracking_fps: int = 60            # Overlay interpolation rate

    # Behaviour
    auto_capture: bool = True         # Capture when steadiness threshold is reached
    refine: bool = True               # Second detection pass on the corrected output
    enhance: bool = True              # Background enhancement after capture

    # Output settings
    jpeg_quality: int = 95
    output_filename: str = "scanned_doc.jpg"


OverlayCallback = Callable[[Optional[np.ndarray], Optional[np.ndarray], Optional[QualityReport], float], None]


def _cancel_task(task: Optional[asyncio.Task]):
    """Cancel a task unless it is finished or is the caller itself."""
    if task is None or task.done():
        return
    try:
        current = asyncio.current_task()
    except RuntimeError:
        current = None
    if task is not current:
        task.cancel()


class CaptureSession:
    """
    State machine for a single scan.

    IDLE -> SEARCHING -> CAPTURING -> REVIEWING (<-> ENHANCING) -> CLOSED,
    with retake returning from review to SEARCHING and acquisition errors
    ending in FAILED until close().
    """

    def __init__(self,
                 camera,
                 evaluator: FrameQualityEvaluator,
                 tracker: Optional[QuadTracker] = None,
                 processor: Optional[DocumentProcessor] = None,
                 enhancer: Optional[ImageBridge] = None,
                 config: Optional[CaptureConfig] = None,
                 on_overlay: Optional[OverlayCallback] = None,
                 on_result: Optional[Callable] = None):
        """
        Initialize capture session.

        Args:
            camera: CameraHandler or any object with initialize/get_frame/release
            evaluator: Frame quality evaluator (carries the vision engine)
            tracker: Corner tracker (new one if not provided)
            processor: Perspective correction (built on evaluator if not provided)
            enhancer: Enhancement bridge (defaults if not provided)
            config: Session configuration
            on_overlay: Called each tracking tick with (frame, smoothed points, report, progress)
            on_result: Upload collaborator, called with (file, metadata) on confirm
        """
        self.camera = camera
        self.evaluator = evaluator
        self.engine = evaluator.engine
        self.tracker = tracker or QuadTracker()
        self.processor = processor or DocumentProcessor(evaluator)
        self.enhancer = enhancer or ImageBridge()
        self.config = config or CaptureConfig()
        self.on_overlay = on_overlay
        self.on_result = on_result

        self.state = SessionState.IDLE
        self.transitions: List[SessionState] = [SessionState.IDLE]
        self.error: Optional[ScannerError] = None
        self.report: Optional[QualityReport] = None
        self.guidance: Optional[str] = None
        self.result: Optional[ScanResult] = None

        # Analysis -> tracking hand-off: (padded points, report)
        self.detection_cell = LatestValue()

        self._analysis_task: Optional[asyncio.Task] = None
        self._tracking_task: Optional[asyncio.Task] = None
        self._capture_task: Optional[asyncio.Task] = None
        self._enhance_task: Optional[asyncio.Task] = None
        self._review_ready: Optional[asyncio.Event] = None
        self._busy = False

        self._last_detection: Optional[np.ndarray] = None
        self._latest_frame: Optional[np.ndarray] = None
        self._frozen_frame: Optional[np.ndarray] = None
        self._frozen_points: Optional[np.ndarray] = None
        self._capture_report: Optional[QualityReport] = None
        self._corrected: Optional[np.ndarray] = None
        self._enhanced: Optional[np.ndarray] = None
        self._device_rotation = 0
        self._manual_rotation = 0

        logger.info("CaptureSession created")
        logger.debug(f"Config: {self.config}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self, start_loops: bool = True) -> bool:
        """
        Load the vision engine, acquire the camera and start searching.

        Args:
            start_loops: Schedule the analysis and tracking loops

        Returns:
            bool: True if the session is searching, False if it failed
        """
        if self.state is not SessionState.IDLE:
            raise InvalidTransitionError("open", self.state.value)

        self._review_ready = asyncio.Event()

        loaded = await asyncio.to_thread(self.engine.load)
        if not loaded:
            self._fail(VisionEngineNotReadyError())
            return False

        if self.state is not SessionState.IDLE:
            # Closed while the engine was loading
            return False

        try:
            self.camera.initialize()
        except CameraError as e:
            self._fail(e)
            return False

        self._enter_searching(start_loops)
        return True

    def close(self):
        """Release everything and enter CLOSED (safe to call repeatedly)."""
        if self.state is SessionState.CLOSED:
            return
        self._teardown()
        self._set_state(SessionState.CLOSED)
        logger.info("CaptureSession closed")

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _set_state(self, state: SessionState):
        if state is self.state:
            return
        logger.info(f"Session state: {self.state.value} -> {state.value}")
        self.state = state
        self.transitions.append(state)

    def _enter_searching(self, start_loops: bool):
        self._set_state(SessionState.SEARCHING)
        self.guidance = None
        if start_loops:
            self._analysis_task = asyncio.create_task(self._analysis_loop())
            self._tracking_task = asyncio.create_task(self._tracking_loop())

    def _stop_loops(self):
        _cancel_task(self._analysis_task)
        _cancel_task(self._tracking_task)
        self._analysis_task = None
        self._tracking_task = None

    def _fail(self, error: ScannerError):
        """Terminal acquisition failure: no retry, only close() is allowed."""
        self.error = error
        logger.error(f"Capture session failed: {error.error_code}: {error.message}")
        self._stop_loops()
        self.camera.release()
        self._set_state(SessionState.FAILED)
        if self._review_ready is not None:
            self._review_ready.set()

    def _teardown(self):
        self._stop_loops()
        _cancel_task(self._capture_task)
        _cancel_task(self._enhance_task)
        self._capture_task = None
        self._enhance_task = None

        self.camera.release()
        self.tracker.reset()
        self.detection_cell.clear()
        self._clear_frames()

        if self._review_ready is not None:
            self._review_ready.set()

    def _clear_frames(self):
        self._last_detection = None
        self._latest_frame = None
        self._frozen_frame = None
        self._frozen_points = None
        self._capture_report = None
        self._corrected = None
        self._enhanced = None
        self._manual_rotation = 0

    # ------------------------------------------------------------------
    # Searching
    # ------------------------------------------------------------------

    async def _analysis_loop(self):
        interval = self.config.analysis_interval_ms / 1000.0
        loop = asyncio.get_running_loop()
        try:
            while self.state is SessionState.SEARCHING:
                started = loop.time()
                await self.analysis_tick()
                await asyncio.sleep(max(0.0, interval - (loop.time() - started)))
        except asyncio.CancelledError:
            logger.debug("Analysis loop cancelled")
            raise

    async def _tracking_loop(self):
        interval = 1.0 / self.config.tracking_fps
        try:
            while self.state is SessionState.SEARCHING:
                try:
                    self.tracking_tick()
                except Exception as e:
                    logger.warning(f"Tracking tick skipped: {e}")
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.debug("Tracking loop cancelled")
            raise

    async def analysis_tick(self) -> Optional[QualityReport]:
        """
        Read and evaluate one frame.

        Skipped while a previous tick is still evaluating. Per-frame
        failures are logged and the tick is dropped.

        Returns:
            QualityReport, or None if the tick was skipped or discarded
        """
        if self.state is not SessionState.SEARCHING or self._busy:
            return None

        self._busy = True
        try:
            frame = await asyncio.to_thread(self.camera.get_frame)
            report = await asyncio.to_thread(
                self.evaluator.evaluate, frame, self._last_detection, LIVE
            )
        except Exception as e:
            logger.warning(f"Analysis tick skipped: {e}")
            return None
        finally:
            self._busy = False

        if self.state is not SessionState.SEARCHING:
            logger.debug("Discarding analysis result, session left searching")
            return None

        self._ingest(frame, report)
        return report

    def _ingest(self, frame: np.ndarray, report: QualityReport):
        points = self.tracker.prepare(report.quad, frame.shape) if report.detected else None

        self.report = report
        self.guidance = report.message
        self._latest_frame = frame
        self._last_detection = report.quad

        self.detection_cell.put((points, report))
        steady = self.tracker.observe(report, frame, points)
        self.tracker.refresh_stable(time.monotonic())

        if steady and self.config.auto_capture:
            logger.info("Document steady, auto-capturing")
            if self._begin_capture():
                self._capture_task = asyncio.create_task(self._finish_capture())

    def tracking_tick(self) -> Optional[np.ndarray]:
        """Smooth the latest detection toward its raw corners and emit the overlay."""
        value = self.detection_cell.get()
        points, report = value if value is not None else (None, None)

        smoothed = self.tracker.update(points)
        if self.on_overlay is not None:
            self.on_overlay(self._latest_frame, smoothed, report, self.tracker.steady_progress)
        return smoothed

    # ------------------------------------------------------------------
    # Capturing
    # ------------------------------------------------------------------

    async def capture(self) -> Optional[np.ndarray]:
        """
        User-triggered capture.

        Returns:
            The review image, or None if the session failed
        """
        if self.state is not SessionState.SEARCHING:
            raise InvalidTransitionError("capture", self.state.value)

        if not self._begin_capture():
            return None

        self._capture_task = asyncio.create_task(self._finish_capture())
        await asyncio.wait({self._capture_task})
        return self.review_image

    def _begin_capture(self) -> bool:
        """
        Synchronous half of capture: stop both loops before any image work,
        freeze the source frame and release the camera.
        """
        self._set_state(SessionState.CAPTURING)
        self._stop_loops()

        state = self.tracker.state
        if state.best_frame is not None:
            frame, points = state.best_frame, state.best_points
            logger.info(f"Freezing best frame (score={state.best_score:.0f})")
        elif self._latest_frame is not None:
            frame, points = self._latest_frame.copy(), state.raw_points
            logger.info("No best frame recorded, freezing latest live frame")
        else:
            try:
                frame, points = self.camera.get_frame().copy(), None
            except ScannerError as e:
                self._fail(e)
                return False
            logger.info("No analysed frame yet, freezing a fresh camera frame")

        self._frozen_frame = frame
        self._frozen_points = points
        self._capture_report = self.report
        self.camera.release()
        return True

    async def _finish_capture(self):
        frame = self._frozen_frame
        try:
            corrected, warped = await asyncio.to_thread(
                self.processor.correct, frame, self._frozen_points
            )
            if warped and self.config.refine:
                corrected, _ = await asyncio.to_thread(self.processor.refine, corrected)
            if self._device_rotation:
                corrected = rotate_right_angle(corrected, self._device_rotation)
        except Exception as e:
            logger.error(f"Correction failed, using frozen frame: {e}")
            logger.exception("Full traceback:")
            corrected = rotate_right_angle(frame, self._device_rotation)

        if self.state is not SessionState.CAPTURING:
            return

        self._corrected = corrected
        self._enhanced = None
        self._manual_rotation = 0
        self._set_state(SessionState.REVIEWING)
        self._review_ready.set()

        if self.config.enhance:
            self._set_state(SessionState.ENHANCING)
            self._enhance_task = asyncio.create_task(self._enhance(corrected))

    async def _enhance(self, image: np.ndarray):
        try:
            enhanced = await asyncio.to_thread(self.enhancer.process, image)
        except Exception as e:
            logger.warning(f"Enhancement failed, keeping corrected image: {e}")
            enhanced = None

        if self.state is not SessionState.ENHANCING:
            return

        self._enhanced = enhanced
        self._set_state(SessionState.REVIEWING)

    async def wait_for_review(self, timeout: Optional[float] = None) -> Optional[np.ndarray]:
        """Wait until the corrected image is reviewable (or the session ended)."""
        if self._review_ready is None:
            raise InvalidTransitionError("wait for review", self.state.value)
        await asyncio.wait_for(self._review_ready.wait(), timeout)
        return self.review_image

    async def wait_for_enhancement(self):
        """Wait for any background enhancement to finish or be cancelled."""
        task = self._enhance_task
        if task is not None:
            await asyncio.wait({task})

    # ------------------------------------------------------------------
    # Reviewing
    # ------------------------------------------------------------------

    @property
    def review_image(self) -> Optional[np.ndarray]:
        """Enhanced image once ready, else the corrected one, with manual rotation."""
        base = self._enhanced if self._enhanced is not None else self._corrected
        if base is None:
            return None
        return rotate_right_angle(base, self._manual_rotation)

    @property
    def rotation(self) -> int:
        return (self._device_rotation + self._manual_rotation) % 360

    def set_device_orientation(self, angle: int):
        """
        Record the hardware orientation; applied once, at capture.

        Args:
            angle: Clockwise rotation (0/90/180/270) that makes the frame upright
        """
        if int(angle) % 90:
            raise ValueError(f"Device orientation must be a multiple of 90, got {angle}")
        self._device_rotation = int(angle) % 360
        logger.debug(f"Device orientation set to {self._device_rotation}")

    def rotate(self, step: int = 90) -> int:
        """Manual rotation during review. Returns the accumulated manual angle."""
        if self.state not in REVIEW_STATES:
            raise InvalidTransitionError("rotate", self.state.value)
        if int(step) % 90:
            raise ValueError(f"Rotation step must be a multiple of 90, got {step}")
        self._manual_rotation = (self._manual_rotation + int(step)) % 360
        logger.debug(f"Manual rotation: {self._manual_rotation}")
        return self._manual_rotation

    async def retake(self, start_loops: bool = True) -> bool:
        """
        Discard the capture and search again with all tracking state cleared.

        Returns:
            bool: True if searching again, False if the camera could not be reacquired
        """
        if self.state not in REVIEW_STATES:
            raise InvalidTransitionError("retake", self.state.value)

        _cancel_task(self._enhance_task)
        self._enhance_task = None
        self._capture_task = None

        self.tracker.reset()
        self.detection_cell.clear()
        self._clear_frames()
        self.report = None
        self._review_ready.clear()
        logger.info("Retake requested")

        try:
            self.camera.initialize()
        except CameraError as e:
            self._fail(e)
            return False

        self._enter_searching(start_loops)
        return True

    def confirm(self) -> ScanResult:
        """
        Package the review image, close the session and hand the result
        to the upload collaborator. Pending enhancement is abandoned.
        """
        if self.state not in REVIEW_STATES:
            raise InvalidTransitionError("confirm", self.state.value)

        image = self.review_image
        metadata = {
            'device_rotation': self._device_rotation,
            'manual_rotation': self._manual_rotation,
        }
        if self._capture_report is not None:
            metadata['quality'] = self._capture_report.to_dict()

        result = ScanResult.from_image(
            image,
            rotation=self.rotation,
            quality=self.config.jpeg_quality,
            filename=self.config.output_filename,
            enhanced=self._enhanced is not None,
            metadata=metadata,
        )
        self.result = result

        self.close()
        hand_off(result, self.on_result)
        return result

    def to_dict(self) -> Dict:
        """Session status for logging and API responses."""
        return {
            'state': self.state.value,
            'guidance': self.guidance,
            'steady_count': self.tracker.state.steady_count,
            'steady_required': self.tracker.config.steady_threshold,
            'rotation': self.rotation,
            'error': self.error.to_dict() if self.error else None,
        }


# ============================================================================
# Live overlay
# ============================================================================

SEVERITY_COLORS = {
    Severity.SUCCESS: (0, 255, 0),
    Severity.INFO: (200, 200, 200),
    Severity.WARNING: (0, 165, 255),
    Severity.ERROR: (0, 0, 255),
}


def render_overlay(frame: np.ndarray, points: Optional[np.ndarray],
                   report: Optional[QualityReport], progress: float = 0.0) -> np.ndarray:
    """
    Draw the live guidance overlay on a copy of the frame.

    Args:
        frame: Live BGR frame
        points: Smoothed corner points (or None)
        report: Latest quality report (or None before the first tick)
        progress: Steadiness progress 0.0-1.0

    Returns:
        numpy.ndarray: Annotated frame
    """
    display = frame.copy()
    h, w = display.shape[:2]
    severity = report.severity if report is not None else Severity.INFO
    color = SEVERITY_COLORS[severity]

    if points is not None:
        pts = np.asarray(points, dtype=np.int32).reshape(-1, 2)
        cv2.polylines(display, [pts], True, color, 2, cv2.LINE_AA)
        for pt in pts:
            cv2.circle(display, tuple(int(v) for v in pt), 6, color, -1)

    # Progress bar while stabilizing
    if 0.0 < progress < 1.0:
        bar_w, bar_h = 200, 8
        bar_x = (w - bar_w) // 2
        bar_y = h - 40
        cv2.rectangle(display, (bar_x, bar_y), (bar_x + bar_w, bar_y + bar_h), (100, 100, 100), -1)
        cv2.rectangle(display, (bar_x, bar_y), (bar_x + int(bar_w * progress), bar_y + bar_h), color, -1)

    message = report.message if report is not None else "Searching for Document..."
    text_size = cv2.getTextSize(message, cv2.FONT_HERSHEY_SIMPLEX, 0.8, 2)[0]
    cv2.rectangle(display, (10, 10), (text_size[0] + 30, 55), (50, 50, 50), -1)
    cv2.rectangle(display, (10, 10), (text_size[0] + 30, 55), color, 2)
    cv2.putText(display, message, (20, 40), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (255, 255, 255), 2)

    return display
