"""
Metrics and observability for EchoVault.

Structured logging and in-process counters for gateway traffic.
"""

import json
import logging
import statistics
from collections import defaultdict
from dataclasses import dataclass, asdict
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Optional


@dataclass
class MetricEvent:
    """A single metric event."""
    timestamp: str
    event_type: str  # request, cache_hit, call, escalation, denial, error
    fingerprint: str
    user_id: str
    data: dict[str, Any]


class MetricsCollector:
    """
    Collects gateway events and aggregates them into counters, gauges and histograms.
    """

    def __init__(
        self,
        metrics_file: Optional[Path] = None,
        enable_logging: bool = True,
    ):
        """
        Initialize metrics collector.

        Args:
            metrics_file: Optional file to write metrics to (JSONL format)
            enable_logging: Whether to emit events through the logger
        """
        self.metrics_file = Path(metrics_file) if metrics_file else None
        self.enable_logging = enable_logging

        # Configure logger
        self.logger = logging.getLogger("echovault.metrics")
        if enable_logging and not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
                )
            )
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

        self._events: list[MetricEvent] = []
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, list[float]] = defaultdict(list)

    def record_request(self, fingerprint: str, user_id: str, operation: str, **extra: Any) -> None:
        self._record_event("request", fingerprint, user_id, {"operation": operation, **extra})
        self._counters["requests_total"] += 1
        self._counters[f"requests_by_operation_{operation}"] += 1

    def record_cache_hit(self, fingerprint: str, user_id: str, **extra: Any) -> None:
        self._record_event("cache_hit", fingerprint, user_id, dict(extra))
        self._counters["cache_hits"] += 1

    def record_call(
        self,
        fingerprint: str,
        user_id: str,
        model: str,
        cost_usd: float,
        latency_ms: int,
        **extra: Any,
    ) -> None:
        """
        Record a completed remote call.

        Args:
            fingerprint: Request fingerprint
            user_id: Ledger owner
            model: Model that answered
            cost_usd: Realized cost in USD
            latency_ms: Wall time of the call
            **extra: Additional fields
        """
        self._record_event(
            "call",
            fingerprint,
            user_id,
            {"model": model, "cost_usd": cost_usd, "latency_ms": latency_ms, **extra},
        )
        self._counters["calls_total"] += 1
        self._counters[f"calls_by_model_{model}"] += 1
        self._histograms["cost_usd"].append(cost_usd)
        self._histograms["latency_ms"].append(latency_ms)

    def set_gauge(self, name: str, value: float) -> None:
        """Set a point-in-time value, such as a user's remaining budget."""
        self._gauges[name] = value

    def record_escalation(self, fingerprint: str, user_id: str, from_model: str, to_model: str) -> None:
        self._record_event(
            "escalation", fingerprint, user_id, {"from_model": from_model, "to_model": to_model},
        )
        self._counters["escalations"] += 1

    def record_denial(self, fingerprint: str, user_id: str, action: str, reason: str) -> None:
        self._record_event("denial", fingerprint, user_id, {"action": action, "reason": reason})
        self._counters["denials"] += 1
        self._counters[f"denials_{action}"] += 1

    def record_error(self, fingerprint: str, user_id: str, error_type: str, error_message: str) -> None:
        self._record_event(
            "error",
            fingerprint,
            user_id,
            {"error_type": error_type, "error_message": error_message},
        )
        self._counters["errors_total"] += 1
        self._counters[f"errors_{error_type}"] += 1

        if self.enable_logging:
            self.logger.error(
                f"Error in request {fingerprint[:12]}: {error_type} - {error_message}"
            )

    def _record_event(self, event_type: str, fingerprint: str, user_id: str, data: dict) -> None:
        event = MetricEvent(
            timestamp=datetime.now(UTC).isoformat(),
            event_type=event_type,
            fingerprint=fingerprint,
            user_id=user_id,
            data=data,
        )
        self._events.append(event)

        if self.metrics_file:
            with open(self.metrics_file, "a") as f:
                f.write(json.dumps(asdict(event)) + "\n")

        if self.enable_logging:
            self.logger.info(
                f"{event_type.upper()}: fingerprint={fingerprint[:12]}, "
                f"user_id={user_id}, data={data}"
            )

    def get_stats(self) -> dict:
        """
        Get aggregated statistics.

        Returns:
            Dictionary with counters, cost and latency summaries, and cache hit rate
        """
        cost_values = self._histograms.get("cost_usd", [])
        latency_values = self._histograms.get("latency_ms", [])
        requests = self._counters.get("requests_total", 0)

        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "cache_hit_rate": self._counters.get("cache_hits", 0) / requests if requests else 0.0,
            "cost": {
                "total_usd": sum(cost_values),
                "avg_usd": statistics.mean(cost_values) if cost_values else 0,
            },
            "latency": {
                "avg_ms": statistics.mean(latency_values) if latency_values else 0,
                "p50_ms": statistics.median(latency_values) if latency_values else 0,
                "p95_ms": (
                    statistics.quantiles(latency_values, n=20)[18]
                    if len(latency_values) >= 20
                    else (max(latency_values) if latency_values else 0)
                ),
            },
            "total_events": len(self._events),
        }

    def reset(self) -> None:
        """Reset all metrics."""
        self._events.clear()
        self._counters.clear()
        self._gauges.clear()
        self._histograms.clear()
