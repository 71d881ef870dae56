"""The five anomaly detectors.

Each detector is independent and returns a :class:`DetectionResult` with a
confidence in [0, 1]. A detector whose cache is unavailable raises
:class:`DetectorDegraded`; the engine turns that, or any other failure, into
a degraded zero-confidence result.
"""

import base64
import binascii
import html
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, ClassVar
from urllib.parse import unquote

from tableguard.config.schema import AlertThreshold, DetectionConfig, default_alert_thresholds
from tableguard.severity import Severity, resolve_severity

from ..event_store import EventStore
from ..exceptions import CounterStoreError, DetectorDegraded
from ..patterns import FAMILY_EVENT_TYPES, SCORED_RULES, RuleSet, ThreatFamily
from .baseline import BehavioralBaseline, BehaviorTracker
from .context import shannon_entropy
from .models import DetectionResult, DetectorName, Evidence

logger = logging.getLogger(__name__)

EVIDENCE_VALUE_CHARS = 100
MAX_EVIDENCE = 50


@dataclass(frozen=True)
class DetectionRequest:
    """Inputs shared by all detectors for one analysis."""

    event_type: str
    context: Mapping[str, Any]
    fields: dict[str, str]
    now: datetime
    ip_address: str | None = None
    user_id: Any = None
    extra: dict[str, Any] = field(default_factory=dict)


def _clip(value: str) -> str:
    return value[:EVIDENCE_VALUE_CHARS]


class PatternDetector:
    """Signature matching over every flattened context field.

    The maximum confidence across fields and families wins. Two heuristics
    can raise it further: co-occurring SQL injection indicators and payloads
    that reveal an XSS signature once decoded.
    """

    name = DetectorName.PATTERN

    SQL_INDICATORS: ClassVar[dict[str, re.Pattern]] = {
        "comment_markers": re.compile(r"--|/\*|\*/"),
        "union_variation": re.compile(r"union\s*(all\s*)?select", re.IGNORECASE),
        "boolean_logic": re.compile(r"\b(and|or)\s+\d+\s*[=<>]", re.IGNORECASE),
        "string_function": re.compile(r"\b(concat|char|ascii|substring|length)\s*\(", re.IGNORECASE),
    }
    SQL_INDICATOR_WEIGHT = 0.15
    SQL_HEURISTIC_CAP = 0.75

    ENCODING_INDICATORS: ClassVar[dict[str, re.Pattern]] = {
        "url_encoding": re.compile(r"%[0-9a-f]{2}", re.IGNORECASE),
        "html_entity": re.compile(r"&(#\d+|#x[0-9a-f]+|\w+);", re.IGNORECASE),
        "unicode_escape": re.compile(r"\\u[0-9a-f]{4}", re.IGNORECASE),
        "hex_encoding": re.compile(r"0x[0-9a-f]{2,}|\\x[0-9a-f]{2}", re.IGNORECASE),
        "base64_like": re.compile(r"[A-Za-z0-9+/]{20,}={0,2}"),
    }
    ENCODED_XSS_CONFIDENCE = 0.80
    # Bare markup characters are too common to count after decoding
    DECODED_XSS_MIN_CONFIDENCE = 0.70

    def __init__(self, rules: RuleSet = SCORED_RULES):
        self.rules = rules
        self._xss_rules = RuleSet(
            [
                r
                for r in rules.only(ThreatFamily.XSS).rules
                if r.confidence >= self.DECODED_XSS_MIN_CONFIDENCE
            ]
        )

    def detect(self, request: DetectionRequest) -> DetectionResult:
        confidence = 0.0
        evidence: list[Evidence] = []
        families: dict[str, float] = {}
        sql_score = 0.0
        xss_score = 0.0

        for path, value in request.fields.items():
            for match in self.rules.match(value):
                confidence = max(confidence, match.confidence)
                family = match.family.value
                families[family] = max(families.get(family, 0.0), match.confidence)
                if len(evidence) < MAX_EVIDENCE:
                    evidence.append(
                        Evidence(
                            indicator=match.rule.name,
                            field=path,
                            matched=_clip(match.matched),
                            weight=match.confidence,
                            family=family,
                        )
                    )

            heuristic = self.sql_heuristic_score(value)
            if heuristic > sql_score:
                sql_score = heuristic
                evidence.append(
                    Evidence(
                        indicator="sql_heuristics",
                        field=path,
                        matched=_clip(value),
                        weight=heuristic,
                        family=ThreatFamily.SQL_INJECTION.value,
                    )
                )

            if not xss_score and self.encoded_xss(value):
                xss_score = self.ENCODED_XSS_CONFIDENCE
                evidence.append(
                    Evidence(
                        indicator="encoded_xss",
                        field=path,
                        matched=_clip(value),
                        weight=xss_score,
                        family=ThreatFamily.XSS.value,
                    )
                )

        confidence = max(confidence, sql_score, xss_score)
        return DetectionResult(
            detector=self.name,
            confidence=confidence,
            evidence=evidence,
            details={
                "fields_scanned": len(request.fields),
                "families": families,
                "sql_heuristic": sql_score,
                "encoded_xss": xss_score,
            },
        )

    @classmethod
    def sql_heuristic_score(cls, value: str) -> float:
        """Score co-occurring SQL injection indicators in one value."""
        count = sum(1 for pattern in cls.SQL_INDICATORS.values() if pattern.search(value))
        if len(re.findall(r"['\"]", value)) > 2:
            count += 1
        return min(count * cls.SQL_INDICATOR_WEIGHT, cls.SQL_HEURISTIC_CAP)

    def encoded_xss(self, value: str) -> bool:
        """Whether an encoded value decodes to an XSS payload."""
        if not any(p.search(value) for p in self.ENCODING_INDICATORS.values()):
            return False
        decoded = decode_payload(value)
        return decoded != value and self._xss_rules.matches_any(decoded)


_UNICODE_ESCAPE = re.compile(r"\\u([0-9a-fA-F]{4})")
_HEX_ESCAPE = re.compile(r"\\x([0-9a-fA-F]{2})")
_HEX_LITERAL = re.compile(r"0x((?:[0-9a-fA-F]{2})+)")
_BASE64_RUN = re.compile(r"[A-Za-z0-9+/]{20,}={0,2}")


def _decode_base64_runs(value: str) -> str:
    def replace(match: re.Match) -> str:
        token = match.group(0)
        try:
            raw = base64.b64decode(token + "=" * (-len(token) % 4), validate=True)
        except (binascii.Error, ValueError):
            return token
        text = raw.decode("utf-8", errors="ignore")
        return text if text.isprintable() else token

    return _BASE64_RUN.sub(replace, value)


def _decode_hex_literal(match: re.Match) -> str:
    text = bytes.fromhex(match.group(1)).decode("utf-8", errors="ignore")
    return text if text.isprintable() else match.group(0)


def decode_payload(value: str, rounds: int = 2) -> str:
    """Undo URL, HTML entity, unicode, hex and base64 encodings.

    Applied ``rounds`` times so double-encoded payloads are unwrapped.
    """
    decoded = value
    for _ in range(rounds):
        previous = decoded
        decoded = unquote(decoded)
        decoded = html.unescape(decoded)
        decoded = _UNICODE_ESCAPE.sub(lambda m: chr(int(m.group(1), 16)), decoded)
        decoded = _HEX_ESCAPE.sub(lambda m: chr(int(m.group(1), 16)), decoded)
        decoded = _HEX_LITERAL.sub(_decode_hex_literal, decoded)
        decoded = _decode_base64_runs(decoded)
        if decoded == previous:
            break
    return decoded


class BehavioralDetector:
    """Deviation of a requester's behavior from the baseline."""

    name = DetectorName.BEHAVIORAL

    BOT_TIMING_CONFIDENCE = 0.65
    BOT_TIMING_MIN_SAMPLES = 5
    USER_AGENT_CONFIDENCE = 0.6
    LONG_SESSION_CONFIDENCE = 0.7

    def __init__(
        self,
        tracker: BehaviorTracker,
        baseline: BehavioralBaseline,
        config: DetectionConfig | None = None,
    ):
        self.tracker = tracker
        self.baseline = baseline
        self.config = config or DetectionConfig()

    def detect(self, request: DetectionRequest) -> DetectionResult:
        if not request.ip_address:
            return DetectionResult(detector=self.name, details={"skipped": "no ip_address"})

        try:
            snapshot = self.tracker.snapshot(request.ip_address, request.user_id)
        except CounterStoreError as e:
            raise DetectorDegraded(self.name, f"counter store unavailable: {e}") from e

        evidence: list[Evidence] = []

        deviations = []
        for metric, observed in snapshot.baseline_metrics().items():
            reference = getattr(self.baseline, metric)
            deviation = min(max(0.0, observed - reference) / reference, 1.0)
            deviations.append(deviation)
            if deviation > 0:
                evidence.append(
                    Evidence(indicator=metric, matched=f"{observed:g}", weight=deviation)
                )
        score = min(sum(deviations) / len(deviations), 1.0) if deviations else 0.0

        if (
            snapshot.timing_samples >= self.BOT_TIMING_MIN_SAMPLES
            and snapshot.timing_variance is not None
            and snapshot.timing_variance < self.config.timing_variance_threshold
        ):
            score = max(score, self.BOT_TIMING_CONFIDENCE)
            evidence.append(
                Evidence(
                    indicator="bot_like_timing",
                    matched=f"{snapshot.timing_variance:.4f}",
                    weight=self.BOT_TIMING_CONFIDENCE,
                )
            )

        if snapshot.user_agent_count > self.config.user_agent_limit:
            score = max(score, self.USER_AGENT_CONFIDENCE)
            evidence.append(
                Evidence(
                    indicator="user_agent_switching",
                    matched=str(snapshot.user_agent_count),
                    weight=self.USER_AGENT_CONFIDENCE,
                )
            )

        if snapshot.session_duration > self.config.session_duration_threshold:
            score = max(score, self.LONG_SESSION_CONFIDENCE)
            evidence.append(
                Evidence(
                    indicator="long_session",
                    matched=f"{snapshot.session_duration:.0f}",
                    weight=self.LONG_SESSION_CONFIDENCE,
                )
            )

        return DetectionResult(
            detector=self.name,
            confidence=score,
            evidence=evidence,
            details=snapshot.model_dump(),
        )


class FrequencyDetector:
    """Share of an event type among a source's recent events."""

    name = DetectorName.FREQUENCY

    FLOOD_CONFIDENCE = 0.8

    def __init__(
        self,
        store: EventStore | None,
        config: DetectionConfig | None = None,
        alert_thresholds: dict[Severity, AlertThreshold] | None = None,
        severity_overrides: dict[str, Severity] | None = None,
    ):
        self.store = store
        self.config = config or DetectionConfig()
        self.alert_thresholds = alert_thresholds or default_alert_thresholds()
        self.severity_overrides = severity_overrides or {}

    def detect(self, request: DetectionRequest) -> DetectionResult:
        if self.store is None or not request.ip_address:
            return DetectionResult(
                detector=self.name, details={"skipped": "no event store or ip_address"}
            )

        since = request.now - timedelta(seconds=self.config.frequency_window_seconds)
        counts = self.store.count_by_type(since, ip_address=request.ip_address)
        total = sum(counts.values())
        type_count = counts.get(request.event_type, 0)

        severity = resolve_severity(request.event_type, self.severity_overrides)
        threshold = self.alert_thresholds[severity].count_threshold

        score = 0.0
        evidence: list[Evidence] = []
        if type_count and total:
            pressure = type_count / threshold
            share = type_count / total
            if pressure >= 1.0:
                score = min(1.0, 0.5 + 0.5 * share)
            else:
                score = 0.5 * pressure * share
            evidence.append(
                Evidence(
                    indicator="event_type_share",
                    matched=f"{type_count}/{total}",
                    weight=score,
                )
            )

        if total > self.config.request_frequency_threshold:
            score = max(score, self.FLOOD_CONFIDENCE)
            evidence.append(
                Evidence(indicator="flooding", matched=str(total), weight=self.FLOOD_CONFIDENCE)
            )

        return DetectionResult(
            detector=self.name,
            confidence=score,
            evidence=evidence,
            details={
                "window_seconds": self.config.frequency_window_seconds,
                "events_in_window": total,
                "event_type_count": type_count,
                "severity": severity.value,
                "threshold": threshold,
            },
        )


class EntropyDetector:
    """High-entropy strings suggest encoded or smuggled payloads."""

    name = DetectorName.ENTROPY

    def __init__(self, config: DetectionConfig | None = None):
        self.config = config or DetectionConfig()

    def detect(self, request: DetectionRequest) -> DetectionResult:
        max_entropy = 0.0
        max_field = None
        for path, value in request.fields.items():
            entropy = shannon_entropy(value)
            if entropy > max_entropy:
                max_entropy, max_field = entropy, path

        score = 0.0
        evidence: list[Evidence] = []
        if max_entropy > self.config.entropy_threshold:
            score = min(max_entropy / 8.0, self.config.entropy_max_confidence)
            evidence.append(
                Evidence(
                    indicator="high_entropy",
                    field=max_field,
                    matched=f"{max_entropy:.3f}",
                    weight=score,
                )
            )

        return DetectionResult(
            detector=self.name,
            confidence=score,
            evidence=evidence,
            details={"max_entropy": round(max_entropy, 4), "field": max_field},
        )


class CorrelationDetector:
    """Attack chains from one source and coordinated attacks across sources.

    Only violation types count: the attack event types plus any type whose
    severity is medium or above. Routine low-severity traffic never forms a
    chain.
    """

    name = DetectorName.CORRELATION

    # Synthetic events would otherwise make every chain look longer
    IGNORED_EVENT_TYPES = frozenset({"anomaly_detected"})

    def __init__(
        self,
        store: EventStore | None,
        config: DetectionConfig | None = None,
        severity_overrides: dict[str, Severity] | None = None,
    ):
        self.store = store
        self.config = config or DetectionConfig()
        self.severity_overrides = severity_overrides or {}

    def is_violation(self, event_type: str) -> bool:
        if event_type in self.IGNORED_EVENT_TYPES:
            return False
        if event_type in FAMILY_EVENT_TYPES.values():
            return True
        severity = resolve_severity(event_type, self.severity_overrides)
        return severity.rank >= Severity.MEDIUM.rank

    def detect(self, request: DetectionRequest) -> DetectionResult:
        if self.store is None:
            return DetectionResult(detector=self.name, details={"skipped": "no event store"})

        evidence: list[Evidence] = []
        chain_score = 0.0
        coordinated_score = 0.0
        chain_types: set[str] = set()
        source_ips: set[str] = set()

        if request.ip_address:
            since = request.now - timedelta(seconds=self.config.correlation_window_seconds)
            chain_types = self.store.distinct_values(
                "event_type", since, ip_address=request.ip_address
            )
            chain_types.add(request.event_type)
            chain_types = {t for t in chain_types if self.is_violation(t)}
            if len(chain_types) >= 2:
                chain_score = min(0.4 + 0.15 * (len(chain_types) - 1), 0.9)
                evidence.append(
                    Evidence(
                        indicator="attack_chain",
                        matched=",".join(sorted(chain_types)),
                        weight=chain_score,
                    )
                )

        if self.is_violation(request.event_type):
            since = request.now - timedelta(seconds=self.config.coordinated_window_seconds)
            source_ips = self.store.distinct_values(
                "ip_address", since, event_type=request.event_type
            )
            if request.ip_address:
                source_ips.add(request.ip_address)
            if len(source_ips) >= self.config.coordinated_min_ips:
                extra = len(source_ips) - self.config.coordinated_min_ips
                coordinated_score = min(0.5 + 0.05 * extra, 0.9)
                evidence.append(
                    Evidence(
                        indicator="coordinated_attack",
                        matched=str(len(source_ips)),
                        weight=coordinated_score,
                    )
                )

        return DetectionResult(
            detector=self.name,
            confidence=max(chain_score, coordinated_score),
            evidence=evidence,
            details={
                "chain_event_types": sorted(chain_types),
                "coordinated_ips": len(source_ips),
            },
        )
