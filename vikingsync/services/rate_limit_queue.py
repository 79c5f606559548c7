from __future__ import annotations

import asyncio
import itertools
import logging
import math
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable

from vikingsync.core.config import Settings
from vikingsync.core.errors import QueueCleared, RateLimited, RequestTimeout
from vikingsync.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

ApiCall = Callable[[], Awaitable[Any]]
StatusListener = Callable[["QueueStatus"], None]

_WAIT_SECONDS_RE = re.compile(r"wait (\d+) seconds?", re.IGNORECASE)


@dataclass(frozen=True)
class QueueConfig:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    timeout_ms: int = 300000
    success_gap_ms: int = 50
    resume_padding_ms: int = 100

    @classmethod
    def from_settings(cls, settings: Settings) -> "QueueConfig":
        return cls(
            max_retries=settings.queue_max_retries,
            base_delay_ms=settings.queue_base_delay_ms,
            max_delay_ms=settings.queue_max_delay_ms,
            timeout_ms=settings.queue_timeout_ms,
            success_gap_ms=settings.queue_success_gap_ms,
            resume_padding_ms=settings.queue_resume_padding_ms,
        )


@dataclass
class QueueEntry:
    id: int
    api_call: ApiCall
    priority: int
    future: asyncio.Future
    created_at: float
    deadline: float
    attempts: int = 0
    timeout_handle: asyncio.TimerHandle | None = field(default=None, repr=False)


@dataclass(frozen=True)
class QueueStatus:
    queue_length: int
    processing: bool
    rate_limited: bool
    seconds_until_resume: int
    total_requests: int
    retry_count: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, RateLimited):
        return True
    if getattr(exc, "status_code", None) == 429 or getattr(exc, "status", None) == 429:
        return True
    if getattr(exc, "retry_after_seconds", None) is not None:
        return True
    return "rate limit" in str(exc).lower()


def retry_after_ms(exc: BaseException, config: QueueConfig) -> int:
    # An explicit retry-after on the error wins over a "wait N seconds" message.
    server_ms: float | None = None
    explicit = getattr(exc, "retry_after_seconds", None)
    if isinstance(explicit, (int, float)) and explicit > 0:
        server_ms = float(explicit) * 1000.0
    else:
        match = _WAIT_SECONDS_RE.search(str(exc))
        if match:
            server_ms = int(match.group(1)) * 1000.0
    delay = config.base_delay_ms if server_ms is None else server_ms
    return int(min(max(delay, config.base_delay_ms), config.max_delay_ms))


class RateLimitQueue:
    """Priority FIFO executing one upstream call at a time and honouring server back-off."""

    def __init__(self, config: QueueConfig | None = None, *, time_source: Callable[[], float] | None = None) -> None:
        self._config = config or QueueConfig()
        self._time = time_source or time.monotonic
        self._entries: list[QueueEntry] = []
        self._ids = itertools.count(1)
        self._processing = False
        self._task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._resume_handle: asyncio.TimerHandle | None = None
        self._rate_limited_until = 0.0
        self._listeners: list[StatusListener] = []
        self._total_requests = 0
        self._retry_count = 0
        self._completed = 0
        self._failed = 0
        self._in_flight = 0
        self._max_in_flight = 0

    @property
    def config(self) -> QueueConfig:
        return self._config

    @property
    def max_in_flight(self) -> int:
        return self._max_in_flight

    def enqueue(self, api_call: ApiCall, *, priority: int = 0, timeout_ms: int | None = None) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        self._loop = loop
        now = self._time()
        timeout_s = (timeout_ms if timeout_ms is not None else self._config.timeout_ms) / 1000.0
        entry = QueueEntry(
            id=next(self._ids),
            api_call=api_call,
            priority=priority,
            future=loop.create_future(),
            created_at=now,
            deadline=now + timeout_s,
        )
        entry.timeout_handle = loop.call_later(timeout_s, self._expire, entry)
        self._insert(entry)
        self._total_requests += 1
        increment_counter("rate_limit_queue_enqueued_total")
        self._notify()
        self._kick()
        return entry.future

    async def submit(self, api_call: ApiCall, *, priority: int = 0, timeout_ms: int | None = None) -> Any:
        return await self.enqueue(api_call, priority=priority, timeout_ms=timeout_ms)

    def _insert(self, entry: QueueEntry) -> None:
        # Insert before the first strictly lower priority so equal priorities stay FIFO.
        index = next(
            (i for i, queued in enumerate(self._entries) if queued.priority < entry.priority),
            len(self._entries),
        )
        self._entries.insert(index, entry)

    def _kick(self) -> None:
        if self._processing or not self._entries or self._loop is None:
            return
        self._processing = True
        self._task = self._loop.create_task(self._process())

    async def _process(self) -> None:
        current: QueueEntry | None = None
        self._notify()
        try:
            while self._entries:
                wait_s = self._rate_limited_until - self._time()
                if wait_s > 0:
                    await asyncio.sleep(wait_s)
                    continue
                current = self._entries.pop(0)
                if current.future.done():
                    self._release(current)
                    current = None
                    continue
                self._in_flight += 1
                self._max_in_flight = max(self._max_in_flight, self._in_flight)
                self._notify()
                try:
                    result = await current.api_call()
                except Exception as exc:  # noqa: BLE001 - classified below and surfaced to the caller
                    self._in_flight -= 1
                    current.attempts += 1
                    if is_rate_limit_error(exc) and current.attempts < self._config.max_retries:
                        self._handle_rate_limit(current, exc)
                        current = None
                        break
                    self._failed += 1
                    self._settle(current, exc=exc)
                    current = None
                    continue
                self._in_flight -= 1
                self._completed += 1
                self._settle(current, result=result)
                current = None
                if self._entries:
                    await asyncio.sleep(self._config.success_gap_ms / 1000.0)
        except asyncio.CancelledError:
            if current is not None:
                self._in_flight = max(0, self._in_flight - 1)
                self._settle(current, exc=QueueCleared("Queue processing cancelled"))
            raise
        finally:
            self._processing = False
            self._task = None
            self._notify()

    def _handle_rate_limit(self, entry: QueueEntry, exc: BaseException) -> None:
        delay_ms = retry_after_ms(exc, self._config)
        self._rate_limited_until = self._time() + delay_ms / 1000.0
        # Progressive boost so retried work is not starved by newer traffic.
        entry.priority += 1
        self._retry_count += 1
        self._insert(entry)
        increment_counter("rate_limit_queue_retries_total")
        logger.warning(
            "rate_limit_retry_scheduled id=%s attempt=%s retry_after_ms=%s priority=%s",
            entry.id,
            entry.attempts,
            delay_ms,
            entry.priority,
        )
        self._schedule_resume(delay_ms + self._config.resume_padding_ms)

    def _schedule_resume(self, delay_ms: int) -> None:
        if self._loop is None:
            return
        if self._resume_handle is not None:
            self._resume_handle.cancel()
        self._resume_handle = self._loop.call_later(delay_ms / 1000.0, self._resume)

    def _resume(self) -> None:
        self._resume_handle = None
        self._notify()
        self._kick()

    def _expire(self, entry: QueueEntry) -> None:
        entry.timeout_handle = None
        if entry not in self._entries:
            return
        self._entries.remove(entry)
        self._failed += 1
        increment_counter("rate_limit_queue_timeouts_total")
        logger.warning("rate_limit_queue_timeout id=%s attempts=%s", entry.id, entry.attempts)
        self._settle(entry, exc=RequestTimeout(f"Request {entry.id} timed out after waiting in queue"))
        self._notify()

    def _release(self, entry: QueueEntry) -> None:
        if entry.timeout_handle is not None:
            entry.timeout_handle.cancel()
            entry.timeout_handle = None

    def _settle(self, entry: QueueEntry, *, result: Any = None, exc: BaseException | None = None) -> None:
        self._release(entry)
        if entry.future.done():
            return
        if exc is not None:
            entry.future.set_exception(exc)
        else:
            entry.future.set_result(result)

    def clear(self, reason: str = "manual") -> int:
        pending = list(self._entries)
        self._entries.clear()
        for entry in pending:
            self._settle(entry, exc=QueueCleared(f"Queue cleared: {reason}"))
        self._rate_limited_until = 0.0
        if self._resume_handle is not None:
            self._resume_handle.cancel()
            self._resume_handle = None
        if pending:
            logger.info("rate_limit_queue_cleared reason=%s dropped=%s", reason, len(pending))
        self._notify()
        return len(pending)

    def status(self) -> QueueStatus:
        remaining = self._rate_limited_until - self._time()
        return QueueStatus(
            queue_length=len(self._entries),
            processing=self._processing,
            rate_limited=remaining > 0,
            seconds_until_resume=max(0, math.ceil(remaining)),
            total_requests=self._total_requests,
            retry_count=self._retry_count,
        )

    def detailed_stats(self) -> dict[str, Any]:
        now = self._time()
        return {
            **self.status().as_dict(),
            "completed": self._completed,
            "failed": self._failed,
            "max_in_flight": self._max_in_flight,
            "entries": [
                {
                    "id": entry.id,
                    "priority": entry.priority,
                    "attempts": entry.attempts,
                    "age_s": round(now - entry.created_at, 3),
                    "deadline_in_s": round(entry.deadline - now, 3),
                }
                for entry in self._entries
            ],
            "config": asdict(self._config),
        }

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)
        self._call_listener(listener, self.status())

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        status = self.status()
        set_gauge("rate_limit_queue_length", float(status.queue_length))
        for listener in list(self._listeners):
            self._call_listener(listener, status)

    def _call_listener(self, listener: StatusListener, status: QueueStatus) -> None:
        try:
            listener(status)
        except Exception:  # noqa: BLE001 - status observers are UI hooks and must not stall the queue
            logger.exception("rate_limit_queue_listener_failed")
