"""
Layer 1 — Capture
Live document capture: camera acquisition, per-frame quality evaluation,
corner tracking and the capture session state machine.
"""
from .auto_capture import CaptureConfig, CaptureSession, SessionState, render_overlay
from .camera import CameraHandler, StaticFrameSource
from .quality import (
    LIVE,
    STATIC,
    EvaluatorConfig,
    FrameQualityEvaluator,
    QualityIssue,
    QualityReport,
    Severity,
)
from .tracker import LatestValue, QuadTracker, TrackerConfig, TrackerState

__all__ = [
    'CaptureConfig',
    'CaptureSession',
    'SessionState',
    'render_overlay',
    'CameraHandler',
    'StaticFrameSource',
    'LIVE',
    'STATIC',
    'EvaluatorConfig',
    'FrameQualityEvaluator',
    'QualityIssue',
    'QualityReport',
    'Severity',
    'LatestValue',
    'QuadTracker',
    'TrackerConfig',
    'TrackerState',
]
