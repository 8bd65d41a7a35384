from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from app.config import Settings, settings

try:  # pragma: no cover - optional dependency
    from statsd import StatsClient
except ImportError:  # pragma: no cover - optional dependency guard
    StatsClient = None  # type: ignore[assignment]

logger = logging.getLogger("app.metrics")


def _connect_statsd(config: Settings) -> StatsClient | None:
    if config.metrics_disable or (config.metrics_backend or "stdout").lower() != "statsd":
        return None
    if StatsClient is None:
        logger.warning("statsd backend requested but statsd package is not installed.")
        return None
    try:
        return StatsClient(
            host=config.metrics_statsd_host, port=config.metrics_statsd_port, prefix=""
        )
    except OSError as exc:  # pragma: no cover - unresolvable host
        logger.warning("metrics.statsd_unavailable", extra={"error": type(exc).__name__})
        return None


class MetricsReporter:
    """Billing counters, latencies and alerts.

    Every data point is logged on the ``app.metrics`` logger with the payload
    under ``record.metrics``; when the StatsD backend is configured the same
    point is mirrored there. Alerts are never sampled.
    """

    def __init__(self, config: Settings | None = None) -> None:
        config = config or settings
        self._disabled = config.metrics_disable
        self._prefix = (config.metrics_namespace or "billing").strip(".")
        self._sample_rate = max(0.0, min(config.metrics_sample_rate, 1.0))
        self._schema_version = config.metrics_schema_version
        self._statsd = _connect_statsd(config)

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self._record("counter", metric, value, tags)

    def timing(self, metric: str, value_ms: float, *, tags: dict[str, Any] | None = None) -> None:
        self._record("timing", metric, value_ms, tags)

    @contextmanager
    def timer(self, metric: str, *, tags: dict[str, Any] | None = None) -> Iterator[None]:
        """Record the wall time of the block in milliseconds, tagged with its outcome."""
        started = time.perf_counter()
        outcome = "ok"
        try:
            yield
        except BaseException:
            outcome = "error"
            raise
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            self.timing(metric, elapsed_ms, tags={**(tags or {}), "outcome": outcome})

    def alert(
        self,
        metric: str,
        *,
        severity: str,
        value: float = 1.0,
        tags: dict[str, Any] | None = None,
    ) -> None:
        """Raise an operator-facing alert, e.g. a paid checkout that could not be persisted."""
        if self._disabled:
            return
        name = self._qualified(metric)
        logger.error(
            "billing.alert",
            extra={
                "metrics": {
                    "metric": name,
                    "value": round(float(value), 4),
                    "severity": severity,
                    "schema_version": self._schema_version,
                    "tags": tags or {},
                }
            },
        )
        self._mirror("counter", f"{name}.alert.{severity}", value, 1.0)

    def _record(
        self, kind: str, metric: str, value: float, tags: dict[str, Any] | None
    ) -> None:
        if self._disabled or value is None or not self._sampled():
            return
        name = self._qualified(metric)
        payload: dict[str, Any] = {
            "metric": name,
            "value": round(float(value), 4),
            "type": kind,
            "tags": tags or {},
        }
        if self._sample_rate < 1.0:
            payload["sample_rate"] = round(self._sample_rate, 4)
        logger.info("billing.metric", extra={"metrics": payload})
        self._mirror(kind, name, value, self._sample_rate)

    def _sampled(self) -> bool:
        if self._sample_rate >= 1.0:
            return True
        return secrets.randbelow(1_000_000) / 1_000_000 < self._sample_rate

    def _mirror(self, kind: str, name: str, value: float, rate: float) -> None:
        if self._statsd is None:
            return
        try:
            if kind == "timing":
                self._statsd.timing(name, value, rate=rate)
            else:
                self._statsd.incr(name, value, rate=rate)
        except OSError as exc:  # pragma: no cover - UDP send failure
            logger.warning(
                "metrics.backend_error", extra={"metric": name, "error": type(exc).__name__}
            )

    def _qualified(self, metric: str) -> str:
        name = (metric or "").strip()
        if not name:
            return self._prefix
        if name == self._prefix or name.startswith(f"{self._prefix}."):
            return name
        return f"{self._prefix}.{name}"


metrics = MetricsReporter()
