from __future__ import annotations

import logging
import secrets
from typing import Any

from statsd import StatsClient

from app.config import Settings, settings

logger = logging.getLogger("app.metrics")

# Tags folded into StatsD metric names, which carry no tags of their own.
STATSD_NAME_TAGS = ("pass", "outcome", "mode")


class MetricsReporter:
    """Pipeline metrics sink: a structured log event per sample, optionally mirrored to StatsD."""

    def __init__(
        self,
        *,
        namespace: str = "prospect_pipeline",
        sample_rate: float = 1.0,
        disabled: bool = False,
        statsd_client: StatsClient | None = None,
    ) -> None:
        self._namespace = namespace.strip(".") or "prospect_pipeline"
        self._sample_rate = max(0.0, min(sample_rate, 1.0))
        self._disabled = disabled
        self._statsd = statsd_client

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> MetricsReporter:
        config = config or settings
        client: StatsClient | None = None
        if config.metrics_backend.lower() == "statsd" and not config.metrics_disable:
            try:
                client = StatsClient(host=config.metrics_statsd_host, port=config.metrics_statsd_port)
            except OSError as exc:  # pragma: no cover - socket setup failure
                logger.warning(
                    "metrics.backend_error",
                    extra={"metric": "statsd.init", "error": type(exc).__name__},
                )
        return cls(
            namespace=config.metrics_namespace,
            sample_rate=config.metrics_sample_rate,
            disabled=config.metrics_disable,
            statsd_client=client,
        )

    def timing(self, metric: str, value_ms: float, *, tags: dict[str, Any] | None = None) -> None:
        self._emit("timing", metric, value_ms, tags)

    def gauge(self, metric: str, value: float, *, tags: dict[str, Any] | None = None) -> None:
        self._emit("gauge", metric, value, tags)

    def increment(
        self, metric: str, value: float = 1.0, *, tags: dict[str, Any] | None = None
    ) -> None:
        self._emit("counter", metric, value, tags)

    def _emit(self, kind: str, metric: str, value: float, tags: dict[str, Any] | None) -> None:
        if self._disabled or value is None:
            return
        # Gauges are last-value-wins and never sampled.
        rate = 1.0 if kind == "gauge" else self._sample_rate
        if rate < 1.0 and secrets.randbelow(1_000_000) / 1_000_000 >= rate:
            return
        name = f"{self._namespace}.{metric.strip('.')}"
        normalized_tags = {key: _tag_value(item) for key, item in (tags or {}).items()}
        logger.debug(
            "prospect_pipeline.metric",
            extra={
                "metrics": {
                    "metric": name,
                    "type": kind,
                    "value": round(float(value), 4),
                    "tags": normalized_tags,
                    "sample_rate": rate,
                }
            },
        )
        if self._statsd is None:
            return
        statsd_name = _statsd_name(name, normalized_tags)
        try:
            if kind == "timing":
                self._statsd.timing(statsd_name, value, rate=rate)
            elif kind == "gauge":
                self._statsd.gauge(statsd_name, value)
            else:
                self._statsd.incr(statsd_name, value, rate=rate)
        except OSError as exc:  # pragma: no cover - network failure
            logger.warning(
                "metrics.backend_error",
                extra={"metric": statsd_name, "error": type(exc).__name__},
            )


def _tag_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _statsd_name(name: str, tags: dict[str, str]) -> str:
    suffix = [tags[key].replace(".", "_") for key in STATSD_NAME_TAGS if key in tags]
    return ".".join([name, *suffix])


metrics = MetricsReporter.from_settings()
