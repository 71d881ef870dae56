"""Behavioral tracking and baselines.

The tracker records per-IP request activity into the counter store; the
behavioral detector reads it back as a :class:`BehaviorSnapshot` and compares
it with the system-wide :class:`BehavioralBaseline`.

The baseline is loaded once per engine and may go stale until the engine is
rebuilt. It is a comparison reference, never ground truth.
"""

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

import numpy as np
from pydantic import BaseModel, Field

from tableguard.clock import Clock, to_epoch, utcnow

from ..counters import CounterStore
from ..exceptions import CounterStoreError

logger = logging.getLogger(__name__)

BASELINE_KEY = "security:behavioral_baseline"

USER_AGENT_HISTORY = 10
TIMESTAMP_HISTORY = 20
HOURLY_SET_LIMIT = 500


class BehavioralBaseline(BaseModel):
    """System-wide reference values for request behavior."""

    avg_request_frequency: float = Field(default=10.0, gt=0.0, description="Requests per minute")
    avg_endpoint_diversity: float = Field(default=5.0, gt=0.0, description="Endpoints per hour")
    avg_parameter_variations: float = Field(
        default=3.0, gt=0.0, description="Parameter signatures per hour"
    )
    avg_session_duration: float = Field(default=1800.0, gt=0.0, description="Seconds")
    learned_at: datetime | None = None
    sample_count: int = 0


class BehaviorSnapshot(BaseModel):
    """Observed behavior of one requester."""

    ip_address: str
    request_frequency: int = 0
    endpoint_diversity: int = 0
    parameter_variations: int = 0
    session_duration: float = 0.0
    user_agent_count: int = 0
    timing_samples: int = 0
    timing_variance: float | None = None

    def baseline_metrics(self) -> dict[str, float]:
        """Metrics compared against a baseline, keyed by baseline field."""
        return {
            "avg_request_frequency": float(self.request_frequency),
            "avg_endpoint_diversity": float(self.endpoint_diversity),
            "avg_parameter_variations": float(self.parameter_variations),
            "avg_session_duration": float(self.session_duration),
        }


def _keys(ip: str, epoch: float) -> dict[str, str]:
    minute = int(epoch // 60)
    hour = int(epoch // 3600)
    return {
        "requests": f"behavior:requests:{ip}:{minute}",
        "endpoints": f"behavior:endpoints:{ip}:{hour}",
        "params": f"behavior:params:{ip}:{hour}",
        "user_agents": f"behavior:user_agents:{ip}",
        "timestamps": f"behavior:timestamps:{ip}",
    }


def _session_key(user_id: Any) -> str:
    return f"behavior:session_start:{user_id}"


def _parameter_signature(context: Mapping[str, Any]) -> str | None:
    params = context.get("parameters") or context.get("params")
    if isinstance(params, Mapping) and params:
        return ",".join(sorted(str(k) for k in params))
    return None


class BehaviorTracker:
    """Records request activity per IP address.

    Usage:
        tracker = BehaviorTracker(counters)
        tracker.record_request({"ip_address": "10.0.0.1", "endpoint": "/admin/users",
                                "user_agent": "Mozilla/5.0", "user_id": 7})
        snapshot = tracker.snapshot("10.0.0.1", user_id=7)
    """

    def __init__(self, counters: CounterStore, clock: Clock = utcnow):
        self.counters = counters
        self._clock = clock

    def record_request(self, context: Mapping[str, Any]) -> BehaviorSnapshot | None:
        """Record one request.

        Returns:
            Snapshot after recording, or None when the context has no IP
        """
        ip = context.get("ip_address")
        if not ip:
            return None

        epoch = to_epoch(self._clock())
        keys = _keys(str(ip), epoch)

        self.counters.increment(keys["requests"], ttl=120)

        endpoint = context.get("endpoint") or context.get("url")
        if endpoint:
            self.counters.append(keys["endpoints"], str(endpoint), HOURLY_SET_LIMIT, ttl=3600)

        signature = _parameter_signature(context)
        if signature is not None:
            self.counters.append(keys["params"], signature, HOURLY_SET_LIMIT, ttl=3600)

        user_agent = context.get("user_agent")
        if user_agent:
            self.counters.append(keys["user_agents"], str(user_agent), USER_AGENT_HISTORY, ttl=3600)

        self.counters.append(keys["timestamps"], epoch, TIMESTAMP_HISTORY, ttl=3600)

        user_id = context.get("user_id")
        if user_id is not None:
            self.counters.add_if_absent(_session_key(user_id), epoch, ttl=86400)

        return self.snapshot(str(ip), user_id)

    def snapshot(self, ip_address: str, user_id: Any = None) -> BehaviorSnapshot:
        """Read current behavior metrics for an IP (and user session)."""
        epoch = to_epoch(self._clock())
        keys = _keys(ip_address, epoch)

        timestamps = [float(t) for t in self.counters.get(keys["timestamps"], [])]
        variance = None
        if len(timestamps) >= 2:
            variance = float(np.var(np.diff(sorted(timestamps))))

        session_duration = 0.0
        if user_id is not None:
            started = self.counters.get(_session_key(user_id))
            if started is not None:
                session_duration = max(0.0, epoch - float(started))

        return BehaviorSnapshot(
            ip_address=ip_address,
            request_frequency=int(self.counters.get(keys["requests"], 0)),
            endpoint_diversity=len(set(self.counters.get(keys["endpoints"], []))),
            parameter_variations=len(set(self.counters.get(keys["params"], []))),
            session_duration=session_duration,
            user_agent_count=len(set(self.counters.get(keys["user_agents"], []))),
            timing_samples=len(timestamps),
            timing_variance=variance,
        )


class BaselineStore:
    """Loads and publishes the behavioral baseline through the counter store."""

    def __init__(self, counters: CounterStore):
        self.counters = counters

    def load(self) -> BehavioralBaseline:
        """Current baseline, or defaults when absent or unreadable."""
        try:
            raw = self.counters.get(BASELINE_KEY)
        except CounterStoreError as e:
            logger.warning("Behavioral baseline unavailable, using defaults: %s", e)
            return BehavioralBaseline()

        if raw is None:
            return BehavioralBaseline()
        if isinstance(raw, BehavioralBaseline):
            return raw
        try:
            return BehavioralBaseline.model_validate(raw)
        except ValueError as e:
            logger.warning("Invalid behavioral baseline in cache, using defaults: %s", e)
            return BehavioralBaseline()

    def publish(self, baseline: BehavioralBaseline) -> None:
        self.counters.set(BASELINE_KEY, baseline.model_dump(mode="json"))


class BaselineLearner:
    """Learns a system-wide baseline from observed snapshots."""

    def __init__(self, min_samples: int = 50, max_samples: int = 10000, clock: Clock = utcnow):
        """Initialize baseline learner.

        Args:
            min_samples: Minimum snapshots needed to establish a baseline
            max_samples: Oldest snapshots are dropped beyond this
        """
        self.min_samples = min_samples
        self.max_samples = max_samples
        self._clock = clock
        self._samples: list[BehaviorSnapshot] = []

    def observe(self, snapshot: BehaviorSnapshot) -> None:
        self._samples.append(snapshot)
        if len(self._samples) > self.max_samples:
            self._samples = self._samples[-self.max_samples :]

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    def compute(self) -> BehavioralBaseline | None:
        """Compute a baseline from the observed snapshots.

        Returns:
            New baseline, or None if there are too few samples
        """
        if len(self._samples) < self.min_samples:
            logger.info(
                "Insufficient samples for baseline: %d/%d", len(self._samples), self.min_samples
            )
            return None

        defaults = BehavioralBaseline()
        values: dict[str, float] = {}
        for name in self._samples[0].baseline_metrics():
            column = np.array([s.baseline_metrics()[name] for s in self._samples], dtype=float)
            observed = column[column > 0]
            # Metrics never observed keep their default
            values[name] = float(np.mean(observed)) if observed.size else getattr(defaults, name)

        return BehavioralBaseline(
            **values,
            learned_at=self._clock(),
            sample_count=len(self._samples),
        )

    def learn(self, store: BaselineStore) -> BehavioralBaseline | None:
        """Compute and publish a baseline."""
        baseline = self.compute()
        if baseline is not None:
            store.publish(baseline)
            logger.info("Published behavioral baseline from %d samples", baseline.sample_count)
        return baseline
