"""Anomaly detection: five independent detectors fused into one verdict."""

from .baseline import (
    BaselineLearner,
    BaselineStore,
    BehavioralBaseline,
    BehaviorSnapshot,
    BehaviorTracker,
)
from .context import flatten_context, shannon_entropy
from .detectors import (
    BehavioralDetector,
    CorrelationDetector,
    DetectionRequest,
    EntropyDetector,
    FrequencyDetector,
    PatternDetector,
    decode_payload,
)
from .engine import AnomalyDetectionEngine
from .models import AnomalyVerdict, DetectionResult, DetectorName, Evidence

__all__ = [
    "AnomalyDetectionEngine",
    "AnomalyVerdict",
    "BaselineLearner",
    "BaselineStore",
    "BehaviorSnapshot",
    "BehaviorTracker",
    "BehavioralBaseline",
    "BehavioralDetector",
    "CorrelationDetector",
    "DetectionRequest",
    "DetectionResult",
    "DetectorName",
    "EntropyDetector",
    "Evidence",
    "FrequencyDetector",
    "PatternDetector",
    "decode_payload",
    "flatten_context",
    "shannon_entropy",
]
