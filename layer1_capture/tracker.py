"""
Layer 1 — Quadrilateral Tracking & Stabilization
Smooths detected document corners across frames, pads them for cropping,
counts consecutive valid frames to gate auto-capture, and keeps the best
frame seen so far as the capture candidate.
"""
import numpy as np
import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional, Tuple

from image_ops import clamp_points, edge_lengths, order_corners, quad_centroid

logger = logging.getLogger(__name__)

PORTRAIT = "portrait"
LANDSCAPE = "landscape"


@dataclass
class TrackerConfig:
    """Configuration for corner smoothing and steadiness."""
    blend_factor: float = 0.45        # Per-corner interpolation weight of the new detection
    stable_interval_ms: int = 200     # Cadence of the stable geometry snapshot
    long_axis_padding: float = 0.03   # Fraction of quad extent added at long-axis ends
    short_axis_padding: float = 0.015
    steady_threshold: int = 5         # Consecutive valid ticks before auto-capture


@dataclass
class TrackerState:
    """Mutable per-session tracking state. Cleared on retake and close."""
    raw_points: Optional[np.ndarray] = None
    smoothed_points: Optional[np.ndarray] = None
    stable_points: Optional[np.ndarray] = None
    orientation: Optional[str] = None
    steady_count: int = 0
    best_frame: Optional[np.ndarray] = None
    best_score: float = 0.0
    best_points: Optional[np.ndarray] = None
    last_stable_at: Optional[float] = None


class LatestValue:
    """
    Single-slot shared cell. Writers overwrite, readers always get the
    freshest value; there is no history to drain.
    """

    def __init__(self):
        self._value: Any = None
        self._lock = threading.Lock()

    def put(self, value: Any):
        with self._lock:
            self._value = value

    def get(self) -> Any:
        with self._lock:
            return self._value

    def clear(self):
        self.put(None)


class QuadTracker:
    """
    Tracks the document quadrilateral for one capture session.

    update() runs on every render tick and only interpolates; observe()
    runs on every analysis tick and does the steadiness and best-frame
    bookkeeping.
    """

    def __init__(self, config: Optional[TrackerConfig] = None):
        self.config = config or TrackerConfig()
        self.state = TrackerState()
        logger.debug(f"QuadTracker initialized: {self.config}")

    @property
    def steady_progress(self) -> float:
        return min(1.0, self.state.steady_count / float(self.config.steady_threshold))

    def prepare(self, quad: np.ndarray, frame_shape: Tuple[int, ...]) -> np.ndarray:
        """
        Order corners and pad the quad outward from its centroid.

        Portrait documents get the larger margin at top and bottom,
        landscape documents at the sides. Orientation is taken from the
        stable snapshot once one exists. Points are clamped to the frame.
        """
        h, w = frame_shape[:2]
        cfg = self.config

        rect = order_corners(quad)
        top, right, bottom, left = edge_lengths(rect)
        quad_w = max(top, bottom)
        quad_h = max(left, right)

        orientation = self.state.orientation
        if orientation is None:
            orientation = PORTRAIT if quad_h >= quad_w else LANDSCAPE

        if orientation == PORTRAIT:
            pad_x = quad_w * cfg.short_axis_padding
            pad_y = quad_h * cfg.long_axis_padding
        else:
            pad_x = quad_w * cfg.long_axis_padding
            pad_y = quad_h * cfg.short_axis_padding

        direction = np.sign(rect - quad_centroid(rect))
        padded = rect + direction * np.array([pad_x, pad_y], dtype=np.float32)
        return clamp_points(padded, w, h)

    def update(self, raw: Optional[np.ndarray]) -> Optional[np.ndarray]:
        """
        Blend the latest raw detection into the smoothed estimate.

        Each corner is interpolated independently. Losing the detection
        clears the smoothed estimate.
        """
        if raw is None:
            self.state.smoothed_points = None
            return None

        raw = np.asarray(raw, dtype=np.float32).reshape(4, 2)
        previous = self.state.smoothed_points

        if previous is None:
            smoothed = raw.copy()
        else:
            smoothed = previous + (raw - previous) * self.config.blend_factor

        self.state.smoothed_points = smoothed
        return smoothed

    def refresh_stable(self, now: float) -> bool:
        """
        Take the slow-cadence geometry snapshot if the interval has elapsed.

        Args:
            now: Monotonic time in seconds

        Returns:
            bool: True if a new snapshot was taken
        """
        state = self.state
        if state.raw_points is None:
            return False

        interval = self.config.stable_interval_ms / 1000.0
        if state.last_stable_at is not None and now - state.last_stable_at < interval:
            return False

        state.stable_points = state.raw_points.copy()
        top, right, bottom, left = edge_lengths(state.stable_points)
        state.orientation = PORTRAIT if max(left, right) >= max(top, bottom) else LANDSCAPE
        state.last_stable_at = now
        return True

    def observe(self, report, frame: Optional[np.ndarray] = None,
                points: Optional[np.ndarray] = None) -> bool:
        """
        Record one analysis tick.

        Args:
            report: QualityReport for the tick
            frame: The analysed frame (copied if it becomes the best frame)
            points: Prepared (ordered, padded) quad for the tick, if detected

        Returns:
            bool: True exactly on the tick the steadiness threshold is first reached
        """
        state = self.state
        state.raw_points = points if report.detected else None

        if not report.is_valid or points is None:
            if state.steady_count:
                logger.debug(f"Steadiness reset after {state.steady_count} ticks ({report.issue.value})")
            state.steady_count = 0
            return False

        state.steady_count += 1

        score = report.area * report.blur_score
        if frame is not None and score > state.best_score:
            state.best_score = score
            state.best_frame = frame.copy()
            state.best_points = np.asarray(points, dtype=np.float32).copy()
            logger.debug(f"New best frame: score={score:.0f}")

        return state.steady_count == self.config.steady_threshold

    def reset(self):
        """Clear all tracking state."""
        self.state = TrackerState()
