"""Data models for the anomaly detection engine."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from tableguard.severity import Severity


class DetectorName(StrEnum):
    """The five independent detectors."""

    PATTERN = "pattern"
    BEHAVIORAL = "behavioral"
    FREQUENCY = "frequency"
    ENTROPY = "entropy"
    CORRELATION = "correlation"


class Evidence(BaseModel):
    """One piece of evidence behind a detector's confidence."""

    indicator: str  # rule or metric name
    field: str | None = None  # dotted context path
    matched: str | None = None  # truncated matched text or metric value
    weight: float = Field(ge=0.0, le=1.0)
    family: str | None = None


class DetectionResult(BaseModel):
    """Output of a single detector."""

    detector: DetectorName
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    evidence: list[Evidence] = Field(default_factory=list)
    degraded: bool = False
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def degraded_result(cls, detector: DetectorName, reason: str) -> "DetectionResult":
        """Zero-confidence result for a detector that could not complete."""
        return cls(detector=detector, degraded=True, details={"error": reason})


class AnomalyVerdict(BaseModel):
    """Combined verdict of all detectors for one event."""

    event_type: str
    timestamp: datetime
    results: dict[DetectorName, DetectionResult]
    weighted_sum: float = Field(ge=0.0, le=1.0)
    fused_confidence: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    severity: Severity | None = None
    is_anomaly: bool = False
    boosted: bool = False
    signature_override: bool = False
    matched_patterns: list[str] = Field(default_factory=list)
    recommended_actions: list[str] = Field(default_factory=list)

    def confidences(self) -> dict[str, float]:
        """Per-detector confidences keyed by detector name."""
        return {name.value: result.confidence for name, result in self.results.items()}

    @property
    def degraded_detectors(self) -> list[str]:
        return [name.value for name, result in self.results.items() if result.degraded]

    def summary(self) -> dict[str, Any]:
        """Compact description suitable for event context."""
        return {
            "confidence": round(self.confidence, 4),
            "fused_confidence": round(self.fused_confidence, 4),
            "severity": self.severity.value if self.severity else None,
            "detectors": {k: round(v, 4) for k, v in self.confidences().items()},
            "boosted": self.boosted,
            "signature_override": self.signature_override,
            "degraded": self.degraded_detectors,
            "matched_patterns": self.matched_patterns,
            "recommended_actions": self.recommended_actions,
        }
