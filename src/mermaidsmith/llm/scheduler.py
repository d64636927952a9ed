"""Rate-limited FIFO scheduler for model provider calls.

All provider calls in a process go through one ``RateLimitedScheduler``.
Callers submit a job (a zero-argument callable returning a ``Completion``)
together with its estimated token cost and get back a ``Future``. A single
drain thread pops jobs strictly in submission order, sleeping whenever the
rolling per-window token or request budget would be exceeded, and pausing
globally when the provider says its budget is exhausted.

The drain thread is the only writer of ``RateLimitState``; the queue itself
is shared with producer threads and guarded by a lock.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field

from mermaidsmith import config
from mermaidsmith.errors import ThrottleSignal
from mermaidsmith.llm.provider import Completion

logger = logging.getLogger(__name__)


@dataclass
class RateLimitState:
    token_count: int = 0
    request_count: int = 0
    window_start: float = 0.0
    token_reset_at: float | None = None
    paused: bool = False


@dataclass
class QueueJob:
    fn: Callable[[], Completion]
    estimated_tokens: int
    future: Future = field(default_factory=Future)


def backoff_delay(
    attempt: int,
    throttle: ThrottleSignal | None = None,
    initial: float | None = None,
    minimum: float | None = None,
    maximum: float | None = None,
    jitter: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff for the attempt layer, in seconds.

    Uses the provider-supplied delay when there is one, otherwise
    ``initial * 2**attempt``. Clamped to [minimum, maximum] plus up to one
    second of jitter.
    """
    initial = config.INITIAL_BACKOFF_SECS if initial is None else initial
    minimum = config.MIN_DELAY_SECS if minimum is None else minimum
    maximum = config.MAX_DELAY_SECS if maximum is None else maximum

    delay = throttle.delay if throttle is not None else None
    if delay is None:
        delay = initial * (2 ** attempt)
    delay = min(max(delay, minimum), maximum)
    return delay + jitter()


class RateLimitedScheduler:
    """Serializes provider calls against a rolling token/request budget."""

    def __init__(
        self,
        tokens_per_minute: int | None = None,
        requests_per_minute: int | None = None,
        window: float | None = None,
        min_delay: float | None = None,
        pause_buffer: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        autostart: bool = True,
    ) -> None:
        self._tokens_per_minute = tokens_per_minute or config.TOKENS_PER_MINUTE
        self._requests_per_minute = requests_per_minute or config.REQUESTS_PER_MINUTE
        self._window = window or config.RATE_WINDOW_SECS
        self._min_delay = config.MIN_DELAY_SECS if min_delay is None else min_delay
        self._buffer = config.PAUSE_BUFFER_SECS if pause_buffer is None else pause_buffer
        self._clock = clock
        self._sleep = sleep
        # When False, jobs wait until drain() is called (deterministic tests)
        self._autostart = autostart

        self._queue: deque[QueueJob] = deque()
        self._lock = threading.Lock()
        self._draining = False
        self._state = RateLimitState(window_start=clock())

    # ── Producer side ──

    def submit(self, fn: Callable[[], Completion], estimated_tokens: int = 1000) -> Future:
        """Queue a job and return the Future that receives its Completion."""
        if estimated_tokens > self._tokens_per_minute / 2:
            logger.info("Large request (%d tokens) queued", estimated_tokens)

        job = QueueJob(fn=fn, estimated_tokens=estimated_tokens)
        with self._lock:
            self._queue.append(job)
            start = self._autostart and not self._draining
            if start:
                self._draining = True
            queued = len(self._queue)
        logger.debug("Job queued (%d tokens, queue length %d)", estimated_tokens, queued)

        if start:
            threading.Thread(target=self._drain_loop, name="scheduler-drain", daemon=True).start()
        return job.future

    def call(self, fn: Callable[[], Completion], estimated_tokens: int = 1000) -> Completion:
        """Submit a job and block until it has run."""
        return self.submit(fn, estimated_tokens).result()

    def drain(self) -> None:
        """Run the drain loop on the calling thread until the queue is empty.

        No-op if another drain is already active.
        """
        with self._lock:
            if self._draining:
                return
            self._draining = True
        self._drain_loop()

    def stats(self) -> dict:
        with self._lock:
            queued = len(self._queue)
        s = self._state
        return {
            "queue_length": queued,
            "token_count": s.token_count,
            "request_count": s.request_count,
            "paused": s.paused,
        }

    # ── Drain side (single thread) ──

    def _drain_loop(self) -> None:
        logger.debug("Queue processing started")
        try:
            while True:
                with self._lock:
                    if not self._queue:
                        self._draining = False
                        logger.debug("Queue processing completed")
                        return
                    job = self._queue[0]
    
                wait = self._wait_time(job.estimated_tokens)
                if wait > self._min_delay:
                    logger.info("Waiting %.1fs before next request due to rate limits", wait)
                    self._sleep(wait)
                    continue
    
                with self._lock:
                    self._queue.popleft()
                self._execute(job)
        except Exception as e:
            logger.exception("Queue processing aborted")
            self._abort(e)

    def _abort(self, error: Exception) -> None:
        """Fail every queued job and release the drain flag so the next submit restarts."""
        with self._lock:
            stranded = list(self._queue)
            self._queue.clear()
            self._draining = False
        for job in stranded:
            if job.future.set_running_or_notify_cancel():
                job.future.set_exception(error)

    def _execute(self, job: QueueJob) -> None:
        if not job.future.set_running_or_notify_cancel():
            return
        try:
            outcome = job.fn()
        except Exception as e:
            logger.exception("Queued job raised")
            job.future.set_exception(e)
            self._sleep(self._min_delay)
            return

        if not isinstance(outcome, Completion):
            logger.error("Queued job returned %s, not a Completion", type(outcome).__name__)
            job.future.set_exception(
                TypeError(f"Queued job returned {type(outcome).__name__}, not a Completion")
            )
            self._sleep(self._min_delay)
            return

        job.future.set_result(outcome)
        s = self._state
        if outcome.ok:
            s.token_count += job.estimated_tokens
            s.request_count += 1
            logger.debug(
                "Request completed: %d tokens, %d requests in window",
                s.token_count, s.request_count,
            )
            self._sleep(self._min_delay)
        elif outcome.throttle is not None and outcome.throttle.delay is not None:
            self._pause(outcome.throttle.delay)
        else:
            logger.debug("Request failed: %s", outcome.error)
            self._sleep(self._min_delay)

    def _pause(self, delay: float) -> None:
        """Halt draining until the provider's reset deadline plus the buffer."""
        s = self._state
        s.token_reset_at = self._clock() + delay
        s.paused = True
        wait = self._wait_time(0)
        logger.warning("Provider budget exhausted; queue paused for %.1fs", wait)
        self._sleep(wait)
        s.paused = False
        s.token_reset_at = None
        s.token_count = 0
        s.request_count = 0
        s.window_start = self._clock()

    def _wait_time(self, estimated_tokens: int) -> float:
        """Seconds to wait before the head job may run."""
        now = self._clock()
        s = self._state

        if s.paused and s.token_reset_at is not None:
            return max(s.token_reset_at - now, 0.0) + self._buffer

        elapsed = now - s.window_start
        if elapsed >= self._window:
            logger.debug(
                "Resetting rate limits (previous: %d tokens, %d requests)",
                s.token_count, s.request_count,
            )
            s.token_count = 0
            s.request_count = 0
            s.window_start = now
            elapsed = 0.0

        remaining = self._window - elapsed
        # A job bigger than the whole budget runs alone in a fresh window
        over_tokens = s.token_count + estimated_tokens > self._tokens_per_minute and s.token_count > 0
        if over_tokens or s.request_count >= self._requests_per_minute:
            return remaining + self._buffer

        return self._min_delay
