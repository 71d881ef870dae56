"""Tests for the five anomaly detectors."""

import base64
import math
from datetime import timedelta

import pytest

from tableguard.config.schema import DetectionConfig
from tableguard.security.detection.baseline import BehavioralBaseline, BehaviorTracker
from tableguard.security.detection.context import flatten_context
from tableguard.security.detection.detectors import (
    BehavioralDetector,
    CorrelationDetector,
    DetectionRequest,
    EntropyDetector,
    FrequencyDetector,
    PatternDetector,
    decode_payload,
)
from tableguard.security.exceptions import CounterStoreTimeout, DetectorDegraded
from tableguard.severity import Severity


@pytest.fixture
def request_for(clock):
    def build(context, event_type="malicious_pattern_detected"):
        return DetectionRequest(
            event_type=event_type,
            context=context,
            fields=flatten_context(context),
            now=clock(),
            ip_address=context.get("ip_address"),
            user_id=context.get("user_id"),
        )

    return build


class TestPatternDetector:
    def test_drop_table_payload(self, request_for):
        result = PatternDetector().detect(request_for({"notes": "'; DROP TABLE users; --"}))

        assert result.confidence >= 0.95
        rules = {(e.indicator, e.field) for e in result.evidence}
        assert ("destructive_statement", "notes") in rules

    def test_maximum_across_fields_and_families(self, request_for):
        result = PatternDetector().detect(
            request_for({"a": "a < b", "b": "1 UNION SELECT x"})
        )

        assert result.confidence == 0.95
        assert result.details["families"] == {"xss": 0.50, "sql_injection": 0.95}

    def test_clean_values(self, request_for):
        result = PatternDetector().detect(request_for({"name": "Widget", "qty": 3}))

        assert result.confidence == 0.0
        assert result.evidence == []
        assert result.details["fields_scanned"] == 1

    def test_repeated_character(self, request_for):
        assert PatternDetector().detect(request_for({"comment": "a" * 300})).confidence == 0.0

    def test_base64_encoded_xss(self, request_for):
        payload = base64.b64encode(b"<script>alert(1)</script>").decode()

        result = PatternDetector().detect(request_for({"q": payload}))

        assert result.confidence == 0.80
        assert result.details["encoded_xss"] == 0.80
        assert any(e.indicator == "encoded_xss" for e in result.evidence)

    def test_evidence_values_are_clipped(self, request_for):
        result = PatternDetector().detect(request_for({"q": "<script>" + "x" * 500 + "</script>"}))
        assert all(len(e.matched) <= 100 for e in result.evidence)


class TestSqlHeuristics:
    def test_two_indicators(self):
        assert PatternDetector.sql_heuristic_score("admin' or 1=1 -- ") == pytest.approx(0.30)

    def test_capped(self):
        value = "' or 1=1 union select concat('a','b') --"
        assert PatternDetector.sql_heuristic_score(value) == pytest.approx(0.75)

    def test_clean(self):
        assert PatternDetector.sql_heuristic_score("just words") == 0.0


class TestDecodePayload:
    def test_double_url_encoding(self):
        assert decode_payload("%253Cb%253E") == "<b>"

    def test_html_entities(self):
        assert decode_payload("&lt;i&gt;") == "<i>"

    def test_unicode_escape(self):
        assert decode_payload("\\u003cscript\\u003e") == "<script>"

    def test_hex_literal(self):
        assert decode_payload("0x3c62") == "<b"

    def test_plain_text_unchanged(self):
        assert decode_payload("hello world") == "hello world"


class TestBehavioralDetector:
    @pytest.fixture
    def tracker(self, counters, clock):
        return BehaviorTracker(counters, clock=clock)

    def detector(self, tracker, baseline=None):
        return BehavioralDetector(tracker, baseline or BehavioralBaseline(), DetectionConfig())

    def test_no_ip_skipped(self, tracker, request_for):
        result = self.detector(tracker).detect(request_for({"q": "x"}))

        assert result.confidence == 0.0
        assert "skipped" in result.details

    def test_unavailable_cache_raises_degraded(self, clock, request_for):
        class UnavailableCounters:
            def get(self, key, default=None):
                raise CounterStoreTimeout("cache down")

        detector = self.detector(BehaviorTracker(UnavailableCounters(), clock=clock))

        with pytest.raises(DetectorDegraded):
            detector.detect(request_for({"ip_address": "10.0.0.1"}))

    def test_quiet_requester(self, tracker, request_for):
        tracker.record_request({"ip_address": "10.0.0.1"})

        result = self.detector(tracker).detect(request_for({"ip_address": "10.0.0.1"}))

        assert result.confidence == 0.0

    def test_burst_with_machine_timing(self, tracker, request_for):
        for _ in range(30):
            tracker.record_request({"ip_address": "10.0.0.1"})

        result = self.detector(tracker).detect(request_for({"ip_address": "10.0.0.1"}))

        assert result.confidence == 0.65
        indicators = {e.indicator for e in result.evidence}
        assert {"avg_request_frequency", "bot_like_timing"} <= indicators

    def test_learned_baseline_raises_reference(self, tracker, clock, request_for):
        # 15 requests in one minute with irregular (human) spacing
        for i in range(15):
            tracker.record_request({"ip_address": "10.0.0.1"})
            clock.advance(seconds=1 if i % 2 else 3)
        request = request_for({"ip_address": "10.0.0.1"})

        default = self.detector(tracker).detect(request)
        learned = self.detector(tracker, BehavioralBaseline(avg_request_frequency=100.0)).detect(
            request
        )

        assert default.confidence == pytest.approx(0.125)
        assert learned.confidence == 0.0

    def test_user_agent_switching(self, tracker, clock, request_for):
        for agent in ("curl/8.0", "Mozilla/5.0", "python-httpx/0.27", "Wget/1.21"):
            tracker.record_request({"ip_address": "10.0.0.1", "user_agent": agent})
            clock.advance(seconds=13)

        result = self.detector(tracker).detect(request_for({"ip_address": "10.0.0.1"}))

        assert result.confidence == 0.6
        assert any(e.indicator == "user_agent_switching" for e in result.evidence)

    def test_long_session(self, tracker, clock, request_for):
        tracker.record_request({"ip_address": "10.0.0.1", "user_id": 7})
        clock.advance(hours=3)

        result = self.detector(tracker).detect(request_for({"ip_address": "10.0.0.1", "user_id": 7}))

        assert result.confidence == 0.7
        assert any(e.indicator == "long_session" for e in result.evidence)


class TestFrequencyDetector:
    def test_type_over_threshold(self, event_store, make_event, clock, request_for):
        for i in range(4):
            event_store.append(
                make_event(f"x{i}", clock.now - timedelta(seconds=30 * i), ip_address="10.0.0.1")
            )
        event_store.append(
            make_event("a1", clock.now, "authentication_failure", Severity.MEDIUM, "10.0.0.1")
        )

        result = FrequencyDetector(event_store).detect(
            request_for({"ip_address": "10.0.0.1"}, event_type="xss_attempt")
        )

        # 4 events against a high threshold of 3, 4 of 5 events are this type
        assert result.confidence == pytest.approx(0.9)
        assert result.details["threshold"] == 3

    def test_below_threshold(self, event_store, make_event, clock, request_for):
        event_store.append(make_event("x0", clock.now, ip_address="10.0.0.1"))

        result = FrequencyDetector(event_store).detect(
            request_for({"ip_address": "10.0.0.1"}, event_type="xss_attempt")
        )

        assert result.confidence == pytest.approx(0.5 / 3)

    def test_window(self, event_store, make_event, clock, request_for):
        event_store.append(make_event("old", clock.now - timedelta(minutes=6), ip_address="10.0.0.1"))

        result = FrequencyDetector(event_store).detect(
            request_for({"ip_address": "10.0.0.1"}, event_type="xss_attempt")
        )

        assert result.confidence == 0.0

    def test_flooding(self, event_store, make_event, clock, request_for):
        for i in range(101):
            event_store.append(
                make_event(f"p{i}", clock.now, "page_view", Severity.LOW, "10.0.0.1")
            )

        result = FrequencyDetector(event_store).detect(
            request_for({"ip_address": "10.0.0.1"}, event_type="xss_attempt")
        )

        assert result.confidence == 0.8
        assert any(e.indicator == "flooding" for e in result.evidence)

    def test_skipped_without_store(self, request_for):
        result = FrequencyDetector(None).detect(request_for({"ip_address": "10.0.0.1"}))
        assert result.confidence == 0.0
        assert "skipped" in result.details


class TestEntropyDetector:
    def test_high_entropy(self, request_for):
        value = "".join(chr(0x100 + i) for i in range(200))

        result = EntropyDetector().detect(request_for({"blob": value}))

        assert result.confidence == 0.85
        assert result.evidence[0].field == "blob"

    def test_uncapped(self, request_for):
        value = "".join(chr(0x100 + i) for i in range(200))
        config = DetectionConfig(entropy_max_confidence=1.0)

        result = EntropyDetector(config).detect(request_for({"blob": value}))

        assert result.confidence == pytest.approx(math.log2(200) / 8)

    def test_repeated_character(self, request_for):
        result = EntropyDetector().detect(request_for({"comment": "a" * 300}))

        assert result.confidence == 0.0
        assert result.details["max_entropy"] == 0.0

    def test_normal_text(self, request_for):
        result = EntropyDetector().detect(request_for({"comment": "The quick brown fox"}))
        assert result.confidence == 0.0


class TestCorrelationDetector:
    def test_attack_chain(self, event_store, make_event, clock, request_for):
        event_store.append(
            make_event("s1", clock.now - timedelta(minutes=20), "sql_injection_attempt",
                       Severity.CRITICAL, "10.0.0.1")
        )
        event_store.append(make_event("x1", clock.now - timedelta(minutes=10), ip_address="10.0.0.1"))

        result = CorrelationDetector(event_store).detect(
            request_for({"ip_address": "10.0.0.1"}, event_type="path_traversal_attempt")
        )

        assert result.confidence == pytest.approx(0.7)
        assert result.details["chain_event_types"] == [
            "path_traversal_attempt",
            "sql_injection_attempt",
            "xss_attempt",
        ]

    def test_synthetic_anomalies_ignored(self, event_store, make_event, clock, request_for):
        event_store.append(
            make_event("a1", clock.now, "anomaly_detected", Severity.MEDIUM, "10.0.0.1")
        )

        result = CorrelationDetector(event_store).detect(
            request_for({"ip_address": "10.0.0.1"}, event_type="xss_attempt")
        )

        assert result.confidence == 0.0

    def test_routine_traffic_does_not_chain(self, event_store, make_event, clock, request_for):
        event_store.append(
            make_event("p1", clock.now - timedelta(minutes=5), "page_view", Severity.LOW, "10.0.0.1")
        )

        result = CorrelationDetector(event_store).detect(
            request_for({"ip_address": "10.0.0.1"}, event_type="authentication_failure")
        )

        assert result.confidence == 0.0
        assert result.details["chain_event_types"] == ["authentication_failure"]

    def test_severity_override_makes_violation(self, event_store, make_event, clock, request_for):
        event_store.append(
            make_event("p1", clock.now - timedelta(minutes=5), "page_view", Severity.HIGH, "10.0.0.1")
        )
        detector = CorrelationDetector(event_store, severity_overrides={"page_view": Severity.HIGH})

        result = detector.detect(
            request_for({"ip_address": "10.0.0.1"}, event_type="authentication_failure")
        )

        assert result.confidence == pytest.approx(0.55)

    def test_low_severity_type_is_not_coordinated(self, event_store, make_event, clock, request_for):
        for i in range(6):
            event_store.append(
                make_event(f"v{i}", clock.now, "page_view", Severity.LOW, f"10.0.1.{i}")
            )

        result = CorrelationDetector(event_store).detect(
            request_for({"ip_address": "10.0.2.1"}, event_type="page_view")
        )

        assert result.confidence == 0.0

    def test_coordinated_attack(self, event_store, make_event, clock, request_for):
        for i in range(6):
            event_store.append(
                make_event(f"c{i}", clock.now - timedelta(minutes=i), ip_address=f"10.0.1.{i}")
            )

        result = CorrelationDetector(event_store).detect(
            request_for({"ip_address": "10.0.2.1"}, event_type="xss_attempt")
        )

        # 7 sources against a minimum of 5
        assert result.confidence == pytest.approx(0.6)
        assert result.details["coordinated_ips"] == 7

    def test_skipped_without_store(self, request_for):
        result = CorrelationDetector(None).detect(request_for({"ip_address": "10.0.0.1"}))
        assert result.confidence == 0.0
