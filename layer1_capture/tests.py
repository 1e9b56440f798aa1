"""
Tests for Layer 1: frame quality evaluation, corner tracking, frame
sources and the capture session state machine.
"""
import asyncio
import threading
import time

import cv2
import numpy as np
import pytest

from conftest import (
    DOC_CORNERS,
    LANDSCAPE_CORNERS,
    CountingFrameSource,
    ScriptedEvaluator,
    make_document_frame,
)
from error_handlers import (
    CameraInitError,
    CameraNotInitializedError,
    EnhancementError,
    FrameCaptureError,
    InvalidTransitionError,
    VisionEngineNotReadyError,
)
from image_ops import VisionEngine
from layer1_capture import (
    STATIC,
    CaptureConfig,
    CaptureSession,
    FrameQualityEvaluator,
    LatestValue,
    QualityIssue,
    QuadTracker,
    SessionState,
    Severity,
    StaticFrameSource,
    render_overlay,
)
from layer1_capture.quality import measure_tilt


def run(coro):
    return asyncio.run(coro)


class FailingEnhancer:
    """Enhancer that always fails."""

    def process(self, image):
        raise EnhancementError("synthetic failure")


class SlowFrameSource(StaticFrameSource):
    """Replay source whose reads block like a real camera driver."""

    def __init__(self, frames, delay):
        super().__init__(frames)
        self.delay = delay

    def get_frame(self):
        time.sleep(self.delay)
        return super().get_frame()


class FlakyEvaluator(ScriptedEvaluator):
    """Scripted evaluator whose first evaluation raises."""

    def evaluate(self, frame, previous_quad=None, mode=None):
        if self.calls == 0:
            self.calls += 1
            raise RuntimeError("transient failure")
        return super().evaluate(frame, previous_quad)


class GatedEvaluator(ScriptedEvaluator):
    """Scripted evaluator that holds each result until the gate opens."""

    def __init__(self, engine, script):
        super().__init__(engine, script)
        self.gate = threading.Event()

    def evaluate(self, frame, previous_quad=None, mode=None):
        self.gate.wait(timeout=5)
        return super().evaluate(frame, previous_quad)


class TestFrameQualityEvaluator:
    """Test per-frame evaluation and message priority."""

    def test_valid_document(self, evaluator, document_frame):
        """A sharp, flat, well-lit page is valid."""
        report = evaluator.evaluate(document_frame)
        assert report.detected
        assert report.issue is QualityIssue.NONE
        assert report.is_valid
        assert report.message == "Perfect - Hold Still"
        assert report.severity is Severity.SUCCESS

    def test_detected_quad_matches_page(self, evaluator, document_frame):
        """Corners land within a few pixels of the drawn page."""
        report = evaluator.evaluate(document_frame)
        expected = np.array([(170, 50), (470, 50), (470, 430), (170, 430)], dtype=np.float32)
        assert np.abs(report.quad - expected).max() <= 6

    def test_uniform_dark_frame(self, evaluator, dark_frame):
        """Brightness 20 reports a dark error."""
        report = evaluator.evaluate(dark_frame)
        assert report.issue is QualityIssue.DARK
        assert report.severity is Severity.ERROR
        assert report.message == "Too Dark - Add More Light"
        assert not report.is_valid

    def test_uniform_bright_frame(self, evaluator, bright_frame):
        """Brightness 235 with no contrast reports overexposure."""
        report = evaluator.evaluate(bright_frame)
        assert report.issue is QualityIssue.OVEREXPOSED
        assert report.message == "Too Bright - Avoid Glare"

    def test_tilted_document(self, evaluator, tilted_frame):
        """Width ratio 1.3 asks the user to hold the phone parallel."""
        report = evaluator.evaluate(tilted_frame)
        assert report.detected
        assert report.issue is QualityIssue.TILT
        assert report.message == "Hold Phone Parallel to Paper"
        assert report.tilt.width_ratio > 1.15

    def test_cut_off_document(self, evaluator, cutoff_frame):
        """A corner within the margin reports cutoff."""
        report = evaluator.evaluate(cutoff_frame)
        assert report.issue is QualityIssue.CUTOFF
        assert report.message == "Move Back - Document Cut Off"

    def test_blurred_document(self, evaluator, blurred_frame):
        """A detected but blurry page asks the user to hold steady."""
        report = evaluator.evaluate(blurred_frame)
        assert report.detected
        assert report.issue is QualityIssue.BLUR
        assert report.blur_score < evaluator.config.live_blur_threshold

    def test_shadowed_document(self, evaluator, shadow_frame):
        """Half-darkened page reports a shadow."""
        report = evaluator.evaluate(shadow_frame)
        assert report.issue is QualityIssue.SHADOW
        assert report.shadow_delta > evaluator.config.shadow_threshold

    def test_partially_blurred_document(self, evaluator, document_frame):
        """A soft patch in the middle of an otherwise sharp page."""
        region = document_frame[160:320, 250:390]
        document_frame[160:320, 250:390] = cv2.GaussianBlur(region, (0, 0), 3)
        report = evaluator.evaluate(document_frame)
        assert report.detected
        assert report.blur_score >= evaluator.config.live_blur_threshold
        assert report.regional_blur
        assert report.issue is QualityIssue.PARTIAL_BLUR
        assert not report.is_valid

    def test_no_document(self, evaluator):
        """Plain textured desk has no document."""
        rng = np.random.default_rng(1)
        frame = np.clip(rng.normal(120, 10, (480, 640, 3)), 0, 255).astype(np.uint8)
        report = evaluator.evaluate(frame)
        assert not report.detected
        assert report.issue is QualityIssue.NO_DOCUMENT
        assert report.message == "Searching for Document..."

    def test_lighting_outranks_detection(self, evaluator):
        """Dark frames say 'too dark' even without a document."""
        assert evaluator._prioritise(QualityIssue.DARK, False, True, True, True, True, True) is QualityIssue.DARK

    def test_priority_order(self, evaluator):
        """Cutoff > tilt > blur > partial blur > shadow."""
        p = evaluator._prioritise
        assert p(None, True, True, True, True, True, True) is QualityIssue.CUTOFF
        assert p(None, True, False, True, True, True, True) is QualityIssue.TILT
        assert p(None, True, False, False, True, True, True) is QualityIssue.BLUR
        assert p(None, True, False, False, False, True, True) is QualityIssue.PARTIAL_BLUR
        assert p(None, True, False, False, False, False, True) is QualityIssue.SHADOW
        assert p(None, True, False, False, False, False, False) is QualityIssue.NONE

    def test_requires_loaded_engine(self, document_frame):
        """Evaluation before the engine loads is refused."""
        evaluator = FrameQualityEvaluator(VisionEngine())
        with pytest.raises(VisionEngineNotReadyError):
            evaluator.evaluate(document_frame)

    def test_continuity_bonus_prefers_previous_area(self, evaluator):
        """A smaller quad close to last tick's area beats a larger newcomer."""
        frame = make_document_frame([(40, 40), (240, 40), (240, 300), (40, 300)])
        gray = frame[:, :, 0].copy()
        big = [(330, 30), (610, 30), (610, 450), (330, 450)]
        cv2.fillPoly(gray, [np.array(big, dtype=np.int32)], 200)

        quad, area = evaluator.detect_document(gray)
        assert quad[0][0] > 300

        small_area = 200 * 260
        quad, area = evaluator.detect_document(gray, previous_area=small_area)
        assert quad[0][0] < 100

    def test_static_detection(self, evaluator, document_frame):
        """Static thresholds also find a clean page."""
        quad, area = evaluator.detect(document_frame, mode=STATIC)
        assert quad is not None
        assert area > 100000

    def test_measure_tilt_rectangle(self):
        tilt = measure_tilt([(0, 0), (100, 0), (100, 50), (0, 50)])
        assert tilt.width_ratio == pytest.approx(1.0)
        assert tilt.height_ratio == pytest.approx(1.0)

    def test_report_to_dict(self, evaluator, document_frame):
        data = evaluator.evaluate(document_frame).to_dict()
        assert data['issue'] == 'none'
        assert data['detected'] is True
        assert len(data['quad']) == 4


class TestQuadTracker:
    """Test smoothing, padding, steadiness and best-frame selection."""

    def test_prepare_pads_portrait_long_axis(self):
        """Portrait quads get 3% at top/bottom and 1.5% at the sides."""
        tracker = QuadTracker()
        points = tracker.prepare(np.array([(170, 50), (470, 50), (470, 430), (170, 430)]), (480, 640))
        tl, tr, br, bl = points
        assert tl[0] == pytest.approx(170 - 300 * 0.015)
        assert tl[1] == pytest.approx(50 - 380 * 0.03)
        assert br[0] == pytest.approx(470 + 300 * 0.015)
        assert br[1] == pytest.approx(430 + 380 * 0.03)

    def test_prepare_keeps_stable_orientation(self, report_factory, document_frame):
        """After a landscape snapshot, a taller quad is still padded as landscape."""
        tracker = QuadTracker()
        landscape = report_factory(quad=LANDSCAPE_CORNERS)
        tracker.observe(landscape, document_frame, landscape.quad)
        assert tracker.refresh_stable(0.0)
        assert tracker.state.orientation == "landscape"

        tl, tr, br, bl = tracker.prepare(np.array(DOC_CORNERS), (480, 640))
        assert tl[0] == pytest.approx(170 - 300 * 0.03)
        assert tl[1] == pytest.approx(50 - 380 * 0.015)
        assert br[0] == pytest.approx(470 + 300 * 0.03)
        assert br[1] == pytest.approx(430 + 380 * 0.015)

    def test_prepare_clamps_to_frame(self):
        tracker = QuadTracker()
        points = tracker.prepare(np.array([(1, 1), (300, 1), (300, 479), (1, 479)]), (480, 640))
        assert points[:, 0].min() >= 0
        assert points[:, 1].min() >= 0
        assert points[:, 1].max() <= 479

    def test_update_interpolates(self):
        """Each corner moves 45% of the way toward the new detection."""
        tracker = QuadTracker()
        start = np.zeros((4, 2), dtype=np.float32)
        target = np.full((4, 2), 100.0, dtype=np.float32)
        tracker.update(start)
        smoothed = tracker.update(target)
        assert np.allclose(smoothed, 45.0)

    def test_update_none_clears(self):
        tracker = QuadTracker()
        tracker.update(np.ones((4, 2)))
        assert tracker.update(None) is None
        assert tracker.state.smoothed_points is None

    def test_steadiness_fires_exactly_at_threshold(self, report_factory, document_frame):
        """Counter increments per valid tick and fires on the 5th only."""
        tracker = QuadTracker()
        report = report_factory()
        fired = [tracker.observe(report, document_frame, report.quad) for _ in range(7)]
        assert fired == [False, False, False, False, True, False, False]
        assert tracker.state.steady_count == 7

    def test_tilt_resets_steadiness(self, report_factory, document_frame):
        tracker = QuadTracker()
        valid = report_factory()
        for _ in range(3):
            tracker.observe(valid, document_frame, valid.quad)
        tilted = report_factory(QualityIssue.TILT)
        assert not tracker.observe(tilted, document_frame, tilted.quad)
        assert tracker.state.steady_count == 0

    def test_lost_detection_resets_steadiness(self, report_factory, document_frame):
        tracker = QuadTracker()
        valid = report_factory()
        tracker.observe(valid, document_frame, valid.quad)
        tracker.observe(report_factory(QualityIssue.NO_DOCUMENT), document_frame, None)
        assert tracker.state.steady_count == 0
        assert tracker.state.raw_points is None

    def test_best_frame_score_never_decreases(self, report_factory, document_frame):
        """A lower-scoring later frame never replaces the best one."""
        tracker = QuadTracker()
        sharp = report_factory(blur_score=900.0)
        soft = report_factory(blur_score=300.0)
        sharper = report_factory(blur_score=1200.0)

        tracker.observe(sharp, document_frame, sharp.quad)
        best = tracker.state.best_score
        tracker.observe(soft, document_frame, soft.quad)
        assert tracker.state.best_score == best
        tracker.observe(sharper, document_frame, sharper.quad)
        assert tracker.state.best_score > best

    def test_best_frame_is_a_copy(self, report_factory, document_frame):
        tracker = QuadTracker()
        report = report_factory()
        tracker.observe(report, document_frame, report.quad)
        document_frame[:] = 0
        assert tracker.state.best_frame.max() > 0

    def test_invalid_ticks_never_become_best(self, report_factory, document_frame):
        tracker = QuadTracker()
        blurry = report_factory(QualityIssue.BLUR)
        tracker.observe(blurry, document_frame, blurry.quad)
        assert tracker.state.best_frame is None

    def test_stable_snapshot_cadence(self, report_factory, document_frame):
        """Stable points refresh at most every 200 ms."""
        tracker = QuadTracker()
        report = report_factory()
        tracker.observe(report, document_frame, report.quad)
        assert tracker.refresh_stable(10.0)
        assert tracker.state.orientation == "portrait"
        assert not tracker.refresh_stable(10.1)
        assert tracker.refresh_stable(10.25)

    def test_reset_clears_state(self, report_factory, document_frame):
        tracker = QuadTracker()
        report = report_factory()
        tracker.observe(report, document_frame, report.quad)
        tracker.update(report.quad)
        tracker.reset()
        state = tracker.state
        assert state.raw_points is None
        assert state.smoothed_points is None
        assert state.steady_count == 0
        assert state.best_frame is None

    def test_latest_value_last_write_wins(self):
        cell = LatestValue()
        cell.put(1)
        cell.put(2)
        assert cell.get() == 2
        cell.clear()
        assert cell.get() is None


class TestStaticFrameSource:
    """Test the replay frame source."""

    def test_requires_initialize(self, document_frame):
        source = StaticFrameSource([document_frame])
        with pytest.raises(CameraNotInitializedError):
            source.get_frame()

    def test_empty_source_fails_to_open(self):
        with pytest.raises(CameraInitError):
            StaticFrameSource([]).initialize()

    def test_loops_and_copies(self, document_frame, dark_frame):
        source = StaticFrameSource([document_frame, dark_frame])
        source.initialize()
        first = source.get_frame()
        second = source.get_frame()
        third = source.get_frame()
        assert np.array_equal(first, third)
        assert not np.array_equal(first, second)
        first[:] = 0
        assert source.get_frame().max() > 0

    def test_exhausted_without_loop(self, document_frame):
        source = StaticFrameSource([document_frame], loop=False)
        source.initialize()
        source.get_frame()
        with pytest.raises(FrameCaptureError):
            source.get_frame()

    def test_unreadable_sources_fail_to_open(self):
        for source in (b"not an image", "/nonexistent/missing.jpg"):
            with pytest.raises(CameraInitError):
                StaticFrameSource([source]).initialize()

    def test_release_idempotent(self, document_frame):
        source = CountingFrameSource([document_frame])
        source.initialize()
        source.release()
        source.release()
        assert source.release_count == 1
        assert not source.is_opened()


class TestCaptureSession:
    """Test the capture state machine end to end."""

    def _session(self, document_frame, evaluator, **kwargs):
        config = kwargs.pop('config', CaptureConfig(enhance=False))
        camera = kwargs.pop('camera', StaticFrameSource([document_frame]))
        return CaptureSession(camera, evaluator, config=config, **kwargs)

    def test_auto_capture_on_fifth_valid_tick(self, document_frame, scripted_evaluator, report_factory):
        """Four valid ticks keep searching; the fifth captures and reaches review."""
        session = self._session(document_frame, scripted_evaluator([report_factory()]))

        async def scenario():
            assert await session.open(start_loops=False)
            for _ in range(4):
                await session.analysis_tick()
                assert session.state is SessionState.SEARCHING
            await session.analysis_tick()
            assert session.state is SessionState.CAPTURING
            return await session.wait_for_review(timeout=5)

        image = run(scenario())
        assert image is not None
        assert session.state is SessionState.REVIEWING
        assert session.transitions == [
            SessionState.IDLE,
            SessionState.SEARCHING,
            SessionState.CAPTURING,
            SessionState.REVIEWING,
        ]
        # Camera released on capture
        assert not session.camera.is_opened()
        # Warped to the page: portrait and smaller than the frame
        assert image.shape[0] > image.shape[1]
        assert image.shape[0] < document_frame.shape[0]
        session.close()

    def test_tilt_resets_before_capture(self, document_frame, scripted_evaluator, report_factory):
        """A tilted tick in the middle delays auto-capture."""
        valid = report_factory()
        script = [valid, valid, valid, report_factory(QualityIssue.TILT)] + [valid] * 5
        session = self._session(document_frame, scripted_evaluator(script))

        async def scenario():
            await session.open(start_loops=False)
            for _ in range(4):
                await session.analysis_tick()
            assert session.tracker.state.steady_count == 0
            for _ in range(4):
                await session.analysis_tick()
            assert session.state is SessionState.SEARCHING
            await session.analysis_tick()
            assert session.state is SessionState.CAPTURING
            await session.wait_for_review(timeout=5)

        run(scenario())
        session.close()

    def test_loops_auto_capture(self, document_frame, scripted_evaluator, report_factory):
        """With both loops running the session captures on its own."""
        overlays = []
        session = self._session(
            document_frame,
            scripted_evaluator([report_factory()]),
            config=CaptureConfig(analysis_interval_ms=10, tracking_fps=200, enhance=False),
            on_overlay=lambda frame, points, report, progress: overlays.append(progress),
        )

        async def scenario():
            assert await session.open()
            await session.wait_for_review(timeout=5)

        run(scenario())
        assert session.state is SessionState.REVIEWING
        assert overlays
        assert session._analysis_task is None
        assert session._tracking_task is None
        session.close()

    def test_slow_camera_does_not_stall_tracking(self, document_frame, scripted_evaluator, report_factory):
        """Blocking frame reads run off the event loop; the overlay keeps its rate."""
        ticks = []
        session = self._session(
            document_frame,
            scripted_evaluator([report_factory(QualityIssue.NO_DOCUMENT)]),
            camera=SlowFrameSource([document_frame], delay=0.2),
            config=CaptureConfig(analysis_interval_ms=10, tracking_fps=100, enhance=False),
            on_overlay=lambda frame, points, report, progress: ticks.append(progress),
        )

        async def scenario():
            assert await session.open()
            await asyncio.sleep(0.5)
            session.close()

        run(scenario())
        # A blocked loop would manage only a handful of ticks
        assert len(ticks) > 15

    def test_transient_tick_error_keeps_searching(self, engine, document_frame, report_factory):
        evaluator = FlakyEvaluator(engine, [report_factory()])
        session = self._session(document_frame, evaluator)

        async def scenario():
            await session.open(start_loops=False)
            assert await session.analysis_tick() is None
            assert session.state is SessionState.SEARCHING
            assert session.report is None
            return await session.analysis_tick()

        report = run(scenario())
        assert report is not None and report.is_valid
        assert session.tracker.state.steady_count == 1
        session.close()

    def test_late_result_discarded_after_capture(self, engine, document_frame, report_factory):
        """A tick that finishes after a manual capture leaves review untouched."""
        evaluator = GatedEvaluator(engine, [report_factory()])
        session = self._session(document_frame, evaluator)

        async def scenario():
            await session.open(start_loops=False)
            tick = asyncio.create_task(session.analysis_tick())
            await asyncio.sleep(0.05)
            try:
                await session.capture()
            finally:
                evaluator.gate.set()
            return await tick

        assert run(scenario()) is None
        assert session.state is SessionState.REVIEWING
        assert session.report is None
        assert session.tracker.state.steady_count == 0
        assert session.detection_cell.get() is None
        session.close()

    def test_manual_capture_without_detection(self, document_frame, scripted_evaluator, report_factory):
        """No best frame: the latest live frame is used unwarped."""
        session = self._session(document_frame, scripted_evaluator([report_factory(QualityIssue.NO_DOCUMENT)]))

        async def scenario():
            await session.open(start_loops=False)
            await session.analysis_tick()
            return await session.capture()

        image = run(scenario())
        assert image.shape == document_frame.shape
        assert session.state is SessionState.REVIEWING
        session.close()

    def test_device_orientation_applied_at_capture(self, document_frame, scripted_evaluator, report_factory):
        session = self._session(document_frame, scripted_evaluator([report_factory(QualityIssue.NO_DOCUMENT)]))
        session.set_device_orientation(90)

        async def scenario():
            await session.open(start_loops=False)
            await session.analysis_tick()
            return await session.capture()

        image = run(scenario())
        assert image.shape[:2] == (document_frame.shape[1], document_frame.shape[0])
        session.close()

    def test_manual_rotation_in_review(self, document_frame, scripted_evaluator, report_factory):
        session = self._session(document_frame, scripted_evaluator([report_factory(QualityIssue.NO_DOCUMENT)]))

        async def scenario():
            await session.open(start_loops=False)
            await session.analysis_tick()
            await session.capture()

        run(scenario())
        assert session.rotate() == 90
        assert session.review_image.shape[:2] == (document_frame.shape[1], document_frame.shape[0])
        assert session.rotate(270) == 0
        session.close()

    def test_retake_clears_tracker_state(self, document_frame, scripted_evaluator, report_factory):
        """Retake from review resets tracking before searching again."""
        session = self._session(document_frame, scripted_evaluator([report_factory()]))

        async def scenario():
            await session.open(start_loops=False)
            for _ in range(5):
                await session.analysis_tick()
            await session.wait_for_review(timeout=5)
            assert await session.retake(start_loops=False)

        run(scenario())
        state = session.tracker.state
        assert session.state is SessionState.SEARCHING
        assert state.raw_points is None
        assert state.smoothed_points is None
        assert state.steady_count == 0
        assert state.best_frame is None
        assert session.review_image is None
        assert session.camera.is_opened()
        session.close()

    def test_enhancement_runs_in_background(self, document_frame, scripted_evaluator, report_factory):
        session = self._session(
            document_frame,
            scripted_evaluator([report_factory()]),
            config=CaptureConfig(enhance=True),
        )

        async def scenario():
            await session.open(start_loops=False)
            for _ in range(5):
                await session.analysis_tick()
            await session.wait_for_review(timeout=5)
            await session.wait_for_enhancement()

        run(scenario())
        assert SessionState.ENHANCING in session.transitions
        assert session.state is SessionState.REVIEWING
        result = session.confirm()
        assert result.enhanced

    def test_enhancement_failure_keeps_corrected_image(self, document_frame, scripted_evaluator, report_factory):
        """A failing enhancer leaves the corrected image and confirm still works."""
        session = self._session(
            document_frame,
            scripted_evaluator([report_factory()]),
            config=CaptureConfig(enhance=True),
            enhancer=FailingEnhancer(),
        )

        async def scenario():
            await session.open(start_loops=False)
            for _ in range(5):
                await session.analysis_tick()
            corrected = await session.wait_for_review(timeout=5)
            await session.wait_for_enhancement()
            return corrected

        corrected = run(scenario())
        assert session.state is SessionState.REVIEWING
        assert np.array_equal(session.review_image, corrected)
        result = session.confirm()
        assert not result.enhanced
        assert session.state is SessionState.CLOSED

    def test_confirm_hands_off_result(self, document_frame, scripted_evaluator, report_factory):
        uploads = []
        session = self._session(
            document_frame,
            scripted_evaluator([report_factory()]),
            on_result=lambda file, metadata: uploads.append((file, metadata)),
        )

        async def scenario():
            await session.open(start_loops=False)
            for _ in range(5):
                await session.analysis_tick()
            await session.wait_for_review(timeout=5)

        run(scenario())
        result = session.confirm()
        assert session.state is SessionState.CLOSED
        assert len(uploads) == 1
        file, metadata = uploads[0]
        assert file.name == "scanned_doc.jpg"
        assert file.read(2) == b'\xff\xd8'
        assert metadata['width'] == result.width
        assert metadata['quality']['issue'] == 'none'

    def test_camera_failure_is_terminal(self, document_frame, scripted_evaluator, report_factory, denied_camera):
        """Acquisition failure puts the session in FAILED without retrying."""
        session = self._session(document_frame, scripted_evaluator([report_factory()]), camera=denied_camera)

        assert run(session.open()) is False
        assert session.state is SessionState.FAILED
        assert session.error.error_code == "CAMERA_PERMISSION_DENIED"
        with pytest.raises(InvalidTransitionError):
            run(session.capture())
        session.close()
        assert session.state is SessionState.CLOSED
        assert denied_camera.release_count >= 1

    def test_undecodable_replay_source_fails_session(self, document_frame, scripted_evaluator, report_factory):
        camera = StaticFrameSource([b"not an image"])
        session = self._session(document_frame, scripted_evaluator([report_factory()]), camera=camera)

        assert run(session.open()) is False
        assert session.state is SessionState.FAILED
        assert session.error.error_code == "CAMERA_INIT_FAILED"
        session.close()
        assert session.state is SessionState.CLOSED

    def test_close_is_idempotent(self, document_frame, scripted_evaluator, report_factory):
        camera = CountingFrameSource([document_frame])
        session = self._session(document_frame, scripted_evaluator([report_factory()]), camera=camera)

        async def scenario():
            await session.open()
            await asyncio.sleep(0.05)
            session.close()
            session.close()

        run(scenario())
        assert session.transitions.count(SessionState.CLOSED) == 1
        assert camera.release_count == 1
        assert session.tracker.state.steady_count == 0
        assert session.detection_cell.get() is None

    def test_confirm_requires_review(self, document_frame, scripted_evaluator, report_factory):
        session = self._session(document_frame, scripted_evaluator([report_factory()]))

        async def scenario():
            await session.open(start_loops=False)
            with pytest.raises(InvalidTransitionError):
                session.confirm()

        run(scenario())
        session.close()

    def test_async_context_manager_closes(self, document_frame, scripted_evaluator, report_factory):
        session = self._session(document_frame, scripted_evaluator([report_factory(QualityIssue.NO_DOCUMENT)]))

        async def scenario():
            async with session:
                assert session.state is SessionState.SEARCHING

        run(scenario())
        assert session.state is SessionState.CLOSED

    def test_invalid_device_orientation(self, document_frame, scripted_evaluator, report_factory):
        session = self._session(document_frame, scripted_evaluator([report_factory()]))
        with pytest.raises(ValueError):
            session.set_device_orientation(45)


class TestOverlay:
    """Test live overlay rendering."""

    def test_overlay_draws_on_copy(self, document_frame, report_factory):
        report = report_factory()
        display = render_overlay(document_frame, report.quad, report, 0.4)
        assert display.shape == document_frame.shape
        assert not np.array_equal(display, document_frame)

    def test_overlay_without_report(self, document_frame):
        display = render_overlay(document_frame, None, None)
        assert display.shape == document_frame.shape
