"""
Logging, correlation IDs, timing and in-process counters for the sync core.

Every poll cycle, realtime notification and API request runs under its own
correlation ID so one refresh can be followed across the reconciler, the
backend client and the event bus.

Usage:
    from iskomarket.observability import setup_logging, get_logger, correlation_context

    setup_logging(level="DEBUG", json_format=True)
    logger = get_logger(__name__)

    with correlation_context():
        logger.info("Refreshing listings", extra={"trigger": "poll"})
"""
import json
import logging
import time
import uuid
from collections import Counter, deque
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterator, Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# LogRecord attributes that are not user-supplied extras
_RESERVED = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

NOISY_LOGGERS = ("httpx", "httpcore", "websockets", "apscheduler", "uvicorn.access")


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Run a block under a correlation ID (a fresh 8-char one by default)."""
    token = _correlation_id.set(correlation_id or uuid.uuid4().hex[:8])
    try:
        yield _correlation_id.get()
    finally:
        _correlation_id.reset(token)


class SyncLogFormatter(logging.Formatter):
    """
    One formatter, two renderings.

    JSON: one object per line with extras merged at top level.
    Text: TIMESTAMP - LEVEL - LOGGER [CORRELATION_ID] - MESSAGE | extras
    """

    def __init__(self, json_format: bool = False):
        super().__init__()
        self.json_format = json_format

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        correlation_id = get_correlation_id()
        extras = {
            key: value for key, value in vars(record).items()
            if key not in _RESERVED and not key.startswith("_")
        }
        exception = self.formatException(record.exc_info) if record.exc_info else None

        if self.json_format:
            entry: Dict[str, Any] = {
                "timestamp": now.isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }
            if correlation_id:
                entry["correlation_id"] = correlation_id
            entry.update(extras)
            if exception:
                entry["exception"] = exception
            return json.dumps(entry, default=str)

        tag = f" [{correlation_id}]" if correlation_id else ""
        line = (
            f"{now:%Y-%m-%d %H:%M:%S} - {record.levelname:8} - "
            f"{record.name}{tag} - {record.getMessage()}"
        )
        if extras:
            line += f" | {extras}"
        if exception:
            line += f"\n{exception}"
        return line


def setup_logging(level: str = "INFO", json_format: bool = False, include_libs: bool = False) -> None:
    """Install a single stderr handler on the root logger."""
    handler = logging.StreamHandler()
    handler.setFormatter(SyncLogFormatter(json_format=json_format))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not include_libs:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


# ═══════════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Times a block, records the sample, and logs slow ones as warnings.

    Usage:
        with Timer("fetch_primary", logger):
            rows = await backend.fetch_listings()
    """

    def __init__(self, name: str, logger: Optional[logging.Logger] = None,
                 warn_threshold_ms: float = 1000):
        self.name = name
        self.logger = logger
        self.warn_threshold_ms = warn_threshold_ms
        self.elapsed_ms: float = 0
        self._started: float = 0

    def __enter__(self) -> "Timer":
        self._started = time.perf_counter()
        return self

    def __exit__(self, *exc_info) -> None:
        self.elapsed_ms = (time.perf_counter() - self._started) * 1000
        metrics.record_timing(self.name, self.elapsed_ms)
        if self.logger is None:
            return
        slow = self.elapsed_ms > self.warn_threshold_ms
        self.logger.log(
            logging.WARNING if slow else logging.DEBUG,
            f"{self.name} took {self.elapsed_ms:.0f}ms" if slow else f"{self.name} completed",
            extra={"duration_ms": round(self.elapsed_ms, 2)},
        )


# ═══════════════════════════════════════════════════════════════════════════════
# COUNTERS
# ═══════════════════════════════════════════════════════════════════════════════

class MetricsCollector:
    """
    Process-local counters and timing samples.

    Counters used by the sync core: fetches, fetch_failures, merges_applied,
    merges_skipped, realtime_events, backend_retries, circuit_<state>.
    """

    def __init__(self, max_samples: int = 100):
        self._max_samples = max_samples
        self._counters: Counter = Counter()
        self._timings: Dict[str, Deque[float]] = {}

    def increment(self, name: str, amount: int = 1) -> None:
        self._counters[name] += amount

    def get(self, name: str) -> int:
        return self._counters[name]

    def record_timing(self, operation: str, duration_ms: float) -> None:
        if operation not in self._timings:
            self._timings[operation] = deque(maxlen=self._max_samples)
        self._timings[operation].append(duration_ms)

    def get_stats(self) -> Dict[str, Any]:
        timing = {}
        for operation, samples in self._timings.items():
            if not samples:
                continue
            ordered = sorted(samples)
            timing[operation] = {
                "count": len(ordered),
                "avg_ms": round(sum(ordered) / len(ordered), 2),
                "max_ms": round(ordered[-1], 2),
                "p50_ms": round(ordered[len(ordered) // 2], 2),
            }
        return {"counters": dict(self._counters), "timing": timing}

    def reset(self) -> None:
        self._counters.clear()
        self._timings.clear()


metrics = MetricsCollector()
