"""Anomaly detection engine.

Runs the five detectors against a security context and fuses their
confidences into one verdict:

1. Weighted sum of detector confidences (weights sum to 1.0)
2. Multiplicative boost, capped at 1.0, when enough detectors independently
   exceed the indicator threshold
3. A near-certain signature match sets the verdict on its own when it is
   higher than the fused score
4. Severity bucket from the configured per-severity thresholds

The pattern and entropy detectors scan size-capped fields inline. The
detectors backed by the event store or counter store run time-boxed in a
worker pool. A detector that raises or times out contributes zero confidence
and is marked degraded; analysis itself never raises.
"""

import logging
import threading
import time
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime
from typing import Any

from tableguard.clock import Clock, utcnow
from tableguard.config.schema import AlertThreshold, DetectionConfig
from tableguard.severity import Severity

from ..counters import CounterStore, InMemoryCounterStore
from ..event_store import EventStore
from ..exceptions import DetectorDegraded
from ..patterns import SCORED_RULES, RuleSet, ThreatFamily
from .baseline import BaselineStore, BehaviorTracker
from .context import flatten_context
from .detectors import (
    BehavioralDetector,
    CorrelationDetector,
    DetectionRequest,
    EntropyDetector,
    FrequencyDetector,
    PatternDetector,
)
from .models import AnomalyVerdict, DetectionResult, DetectorName

logger = logging.getLogger(__name__)

# CPU-bound over capped fields; never time-boxed
INLINE_DETECTORS = frozenset({DetectorName.PATTERN, DetectorName.ENTROPY})

_FAMILY_ACTIONS = {
    ThreatFamily.SQL_INJECTION.value: "Audit query construction on the affected fields for parameter binding",
    ThreatFamily.XSS.value: "Verify output encoding of the affected fields",
    ThreatFamily.PATH_TRAVERSAL.value: "Review file path handling for the affected fields",
    ThreatFamily.COMMAND_INJECTION.value: "Review shell and process invocation paths",
}


class AnomalyDetectionEngine:
    """Multi-signal anomaly scorer.

    Usage:
        engine = AnomalyDetectionEngine(event_store=store, counters=counters)

        if engine.detect_anomaly("xss_attempt", {"ip_address": ip, "comment": text}):
            details = engine.get_last_anomaly_details()
            score = engine.get_confidence_score()

        # Or, without per-thread state:
        verdict = engine.analyze("xss_attempt", context)
    """

    def __init__(
        self,
        config: DetectionConfig | None = None,
        event_store: EventStore | None = None,
        counters: CounterStore | None = None,
        alert_thresholds: dict[Severity, AlertThreshold] | None = None,
        severity_overrides: dict[str, Severity] | None = None,
        rules: RuleSet = SCORED_RULES,
        tracker: BehaviorTracker | None = None,
        clock: Clock = utcnow,
    ):
        """Initialize engine.

        Args:
            config: Detection configuration (weights, thresholds, cost bounds)
            event_store: Event history for frequency and correlation analysis
            counters: Counter store holding behavior data and the baseline
            alert_thresholds: Per-severity alert thresholds (frequency analysis)
            severity_overrides: Per-event-type severity overrides
            rules: Scored signature rules
            tracker: Behavior tracker (built over ``counters`` if None)
            clock: Source of the current naive UTC time
        """
        self.config = config or DetectionConfig()
        self.counters = counters if counters is not None else InMemoryCounterStore()
        self._clock = clock

        self.tracker = tracker or BehaviorTracker(self.counters, clock=clock)
        # Loaded once per engine; staleness until rebuild is accepted
        self.baseline = BaselineStore(self.counters).load()

        self.detectors = {
            DetectorName.PATTERN: PatternDetector(rules),
            DetectorName.BEHAVIORAL: BehavioralDetector(self.tracker, self.baseline, self.config),
            DetectorName.FREQUENCY: FrequencyDetector(
                event_store, self.config, alert_thresholds, severity_overrides
            ),
            DetectorName.ENTROPY: EntropyDetector(self.config),
            DetectorName.CORRELATION: CorrelationDetector(
                event_store, self.config, severity_overrides
            ),
        }
        self.weights = {DetectorName(k): v for k, v in self.config.weights.as_dict().items()}

        self._executor = ThreadPoolExecutor(
            max_workers=len(self.detectors) - len(INLINE_DETECTORS), thread_name_prefix="tableguard-detector"
        )
        self._local = threading.local()
        self._stats_lock = threading.Lock()
        self.stats: dict[str, Any] = {
            "analyses": 0,
            "anomalies": 0,
            "degraded_results": 0,
        }

    # -- public API ------------------------------------------------------

    def detect_anomaly(self, event_type: str, context: Mapping[str, Any]) -> bool:
        """Analyze an event and remember the verdict for this thread.

        Returns:
            True if the verdict confidence reaches the anomaly threshold
        """
        verdict = self.analyze(event_type, context)
        self._local.verdict = verdict
        return verdict.is_anomaly

    def get_last_anomaly_details(self) -> dict[str, Any] | None:
        """Full verdict of this thread's last :meth:`detect_anomaly` call."""
        verdict = getattr(self._local, "verdict", None)
        return verdict.model_dump(mode="json") if verdict else None

    def get_confidence_score(self) -> float:
        """Confidence of this thread's last :meth:`detect_anomaly` call."""
        verdict = getattr(self._local, "verdict", None)
        return verdict.confidence if verdict else 0.0

    def analyze(self, event_type: str, context: Mapping[str, Any]) -> AnomalyVerdict:
        """Run all detectors and fuse their results.

        Pure per call and safe to use from several threads.
        """
        request = self._build_request(event_type, context)
        results = self._run_detectors(request)
        verdict = self.combine(event_type, results, request.now)

        with self._stats_lock:
            self.stats["analyses"] += 1
            self.stats["anomalies"] += int(verdict.is_anomaly)
            self.stats["degraded_results"] += len(verdict.degraded_detectors)

        if verdict.is_anomaly:
            logger.info(
                "Anomaly detected for %s: confidence=%.2f severity=%s",
                event_type,
                verdict.confidence,
                verdict.severity,
            )
        return verdict

    def combine(
        self,
        event_type: str,
        results: dict[DetectorName, DetectionResult],
        now: datetime | None = None,
    ) -> AnomalyVerdict:
        """Fuse detector results into a verdict.

        Monotonic: raising any single detector's confidence never lowers
        the verdict confidence.
        """
        weighted = sum(
            self.weights[name] * results[name].confidence for name in self.weights
        )
        weighted = min(weighted, 1.0)

        strong = sum(
            1
            for result in results.values()
            if result.confidence > self.config.boost_indicator_threshold
        )
        boosted = strong >= self.config.boost_min_detectors
        fused = min(weighted * self.config.boost_factor, 1.0) if boosted else weighted

        pattern_confidence = results[DetectorName.PATTERN].confidence
        override_at = self.config.signature_override_threshold
        override = (
            override_at is not None
            and pattern_confidence >= override_at
            and pattern_confidence > fused
        )
        confidence = pattern_confidence if override else fused

        severity = self.severity_for(confidence)
        matched = sorted(
            {
                e.indicator
                for e in results[DetectorName.PATTERN].evidence
                if e.indicator not in ("sql_heuristics",)
            }
        )

        verdict = AnomalyVerdict(
            event_type=event_type,
            timestamp=now or self._clock(),
            results=results,
            weighted_sum=weighted,
            fused_confidence=fused,
            confidence=confidence,
            severity=severity,
            is_anomaly=confidence >= self.config.anomaly_threshold,
            boosted=boosted,
            signature_override=override,
            matched_patterns=matched,
        )
        verdict.recommended_actions = self.recommended_actions(verdict)
        return verdict

    def severity_for(self, confidence: float) -> Severity | None:
        """Severity bucket of a confidence score (None below the lowest)."""
        ordered = sorted(
            self.config.severity_thresholds.items(), key=lambda item: item[1], reverse=True
        )
        for severity, threshold in ordered:
            if confidence >= threshold:
                return severity
        return None

    def record_request(self, context: Mapping[str, Any]) -> None:
        """Feed request activity to the behavior tracker."""
        self.tracker.record_request(context)

    def get_stats(self) -> dict[str, Any]:
        with self._stats_lock:
            return dict(self.stats)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # -- internals -------------------------------------------------------

    def _build_request(self, event_type: str, context: Mapping[str, Any]) -> DetectionRequest:
        fields = flatten_context(
            context,
            max_depth=self.config.max_context_depth,
            max_fields=self.config.max_context_fields,
            max_field_chars=self.config.max_field_chars,
        )
        ip = context.get("ip_address")
        return DetectionRequest(
            event_type=event_type,
            context=context,
            fields=fields,
            now=self._clock(),
            ip_address=str(ip) if ip else None,
            user_id=context.get("user_id"),
        )

    def _run_detectors(self, request: DetectionRequest) -> dict[DetectorName, DetectionResult]:
        futures: dict[DetectorName, Future] = {
            name: self._executor.submit(detector.detect, request)
            for name, detector in self.detectors.items()
            if name not in INLINE_DETECTORS
        }

        results: dict[DetectorName, DetectionResult] = {}
        for name in INLINE_DETECTORS:
            try:
                results[name] = self.detectors[name].detect(request)
            except Exception as e:
                results[name] = self._degraded(name, e)

        deadline = time.monotonic() + self.config.detector_timeout_seconds
        for name, future in futures.items():
            try:
                results[name] = future.result(timeout=max(0.0, deadline - time.monotonic()))
            except FutureTimeout:
                future.cancel()
                logger.warning("Detector %s timed out", name)
                results[name] = DetectionResult.degraded_result(name, "timeout")
            except Exception as e:
                results[name] = self._degraded(name, e)
        return {name: results[name] for name in self.detectors}

    @staticmethod
    def _degraded(name: DetectorName, error: Exception) -> DetectionResult:
        if isinstance(error, DetectorDegraded):
            logger.warning("%s", error)
            return DetectionResult.degraded_result(name, error.reason)
        logger.error("Detector %s failed", name, exc_info=error)
        return DetectionResult.degraded_result(name, f"{type(error).__name__}: {error}")

    @staticmethod
    def recommended_actions(verdict: AnomalyVerdict) -> list[str]:
        """Operator actions suggested by a verdict."""
        actions: list[str] = []
        if verdict.severity is Severity.CRITICAL:
            actions.append("Block the source IP address immediately")
        if verdict.severity in (Severity.CRITICAL, Severity.HIGH):
            actions.append("Review all recent activity from the source")

        families = verdict.results[DetectorName.PATTERN].details.get("families", {})
        for family in sorted(families):
            if family in _FAMILY_ACTIONS:
                actions.append(_FAMILY_ACTIONS[family])

        if verdict.results[DetectorName.BEHAVIORAL].confidence >= 0.6:
            actions.append("Apply rate limiting to the source")
        if verdict.results[DetectorName.CORRELATION].confidence > 0:
            actions.append("Investigate related activity across sources")
        if verdict.degraded_detectors:
            actions.append("Check detector dependencies: " + ", ".join(verdict.degraded_detectors))
        return actions
