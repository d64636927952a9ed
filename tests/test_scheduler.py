"""Tests for the rate-limited provider call scheduler."""

from __future__ import annotations

import pytest

from mermaidsmith.errors import ThrottleSignal
from mermaidsmith.llm.provider import Completion
from mermaidsmith.llm.scheduler import RateLimitedScheduler, backoff_delay
from tests.helpers import ManualClock


def _scheduler(clock: ManualClock, **kwargs) -> RateLimitedScheduler:
    opts = dict(
        tokens_per_minute=1000,
        requests_per_minute=100,
        window=60,
        min_delay=0,
        pause_buffer=1,
    )
    opts.update(kwargs)
    return RateLimitedScheduler(clock=clock, sleep=clock.sleep, autostart=False, **opts)


def _recording_job(clock: ManualClock, log: list, label, result: Completion | None = None):
    def job():
        log.append((label, clock.now))
        return result or Completion.success(f"ok {label}")
    return job


# ── Ordering ──


class TestOrdering:
    def test_jobs_run_in_submission_order(self, clock):
        sched = _scheduler(clock)
        log: list = []
        futures = [sched.submit(_recording_job(clock, log, i), 10) for i in range(5)]
        sched.drain()
        assert [label for label, _ in log] == [0, 1, 2, 3, 4]
        assert [f.result().text for f in futures] == [f"ok {i}" for i in range(5)]

    def test_nothing_runs_before_drain(self, clock):
        sched = _scheduler(clock)
        log: list = []
        future = sched.submit(_recording_job(clock, log, "a"), 10)
        assert log == []
        assert not future.done()
        assert sched.stats()["queue_length"] == 1

    def test_waiting_head_blocks_smaller_jobs_behind_it(self, clock):
        sched = _scheduler(clock)
        log: list = []
        sched.submit(_recording_job(clock, log, "big-1"), 600)
        sched.submit(_recording_job(clock, log, "big-2"), 600)
        sched.submit(_recording_job(clock, log, "small"), 10)
        sched.drain()
        # small would fit next to big-1 but must not overtake big-2
        assert [label for label, _ in log] == ["big-1", "big-2", "small"]


# ── Budget ──


class TestBudget:
    def test_token_cap_delays_until_next_window(self, clock):
        sched = _scheduler(clock)
        log: list = []
        sched.submit(_recording_job(clock, log, "a"), 600)
        sched.submit(_recording_job(clock, log, "b"), 600)
        sched.drain()
        (_, t_a), (_, t_b) = log
        assert t_a == 0
        assert t_b >= 60
        assert 61 in clock.sleeps

    def test_jobs_within_budget_do_not_wait(self, clock):
        sched = _scheduler(clock)
        log: list = []
        sched.submit(_recording_job(clock, log, "a"), 400)
        sched.submit(_recording_job(clock, log, "b"), 400)
        sched.drain()
        assert [t for _, t in log] == [0, 0]

    def test_request_cap_delays_until_next_window(self, clock):
        sched = _scheduler(clock, requests_per_minute=2)
        log: list = []
        for label in "abc":
            sched.submit(_recording_job(clock, log, label), 1)
        sched.drain()
        times = [t for _, t in log]
        assert times[:2] == [0, 0]
        assert times[2] >= 60

    def test_oversized_job_runs_alone_in_fresh_window(self, clock):
        sched = _scheduler(clock)
        log: list = []
        sched.submit(_recording_job(clock, log, "huge"), 5000)
        sched.drain()
        assert log == [("huge", 0)]

    def test_min_delay_spaces_requests(self, clock):
        sched = _scheduler(clock, min_delay=1.0)
        log: list = []
        sched.submit(_recording_job(clock, log, "a"), 10)
        sched.submit(_recording_job(clock, log, "b"), 10)
        sched.drain()
        (_, t_a), (_, t_b) = log
        assert t_b - t_a >= 1.0

    def test_failed_call_does_not_consume_budget(self, clock):
        sched = _scheduler(clock)
        log: list = []
        sched.submit(_recording_job(clock, log, "a", Completion.failure("boom")), 600)
        sched.submit(_recording_job(clock, log, "b"), 600)
        sched.drain()
        assert [t for _, t in log] == [0, 0]
        assert sched.stats()["token_count"] == 600
        assert sched.stats()["request_count"] == 1


# ── Throttle ──


class TestThrottle:
    def test_throttle_pauses_whole_queue(self, clock):
        sched = _scheduler(clock)
        log: list = []
        throttled = Completion.failure("429", ThrottleSignal(reset_tokens_after=10))
        first = sched.submit(_recording_job(clock, log, "a", throttled), 10)
        sched.submit(_recording_job(clock, log, "b"), 10)
        sched.drain()

        assert first.result() is throttled
        (_, t_a), (_, t_b) = log
        assert t_a == 0
        # reset deadline plus the buffer
        assert t_b >= 11
        stats = sched.stats()
        assert stats["paused"] is False
        assert stats["token_count"] == 10
        assert stats["request_count"] == 1

    def test_throttle_without_delay_does_not_pause(self, clock):
        sched = _scheduler(clock)
        log: list = []
        sched.submit(_recording_job(clock, log, "a", Completion.failure("429", ThrottleSignal())), 10)
        sched.submit(_recording_job(clock, log, "b"), 10)
        sched.drain()
        assert [t for _, t in log] == [0, 0]

    def test_token_reset_preferred_over_retry_after(self):
        assert ThrottleSignal(retry_after=5, reset_tokens_after=20).delay == 20
        assert ThrottleSignal(retry_after=5).delay == 5
        assert ThrottleSignal().delay is None


# ── Failures ──


class TestJobFailures:
    def test_raising_job_fails_its_future_only(self, clock):
        sched = _scheduler(clock)
        log: list = []

        def explode():
            raise RuntimeError("kaput")

        bad = sched.submit(explode, 10)
        good = sched.submit(_recording_job(clock, log, "after"), 10)
        sched.drain()

        with pytest.raises(RuntimeError, match="kaput"):
            bad.result()
        assert good.result().ok
        assert sched.stats()["queue_length"] == 0

    def test_non_completion_result_fails_its_future_only(self, clock):
        sched = _scheduler(clock)
        log: list = []

        bad = sched.submit(lambda: None, 10)
        good = sched.submit(_recording_job(clock, log, "after"), 10)
        sched.drain()

        with pytest.raises(TypeError, match="NoneType"):
            bad.result()
        assert good.result().text == "ok after"
        assert sched.stats()["token_count"] == 10

    def test_aborted_drain_fails_queued_jobs_and_restarts(self, clock):
        calls = {"n": 0}

        def flaky_sleep(seconds):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("sleep broke")
            clock.sleep(seconds)

        sched = RateLimitedScheduler(
            tokens_per_minute=1000, requests_per_minute=100, min_delay=0,
            clock=clock, sleep=flaky_sleep, autostart=False,
        )
        first = sched.submit(lambda: Completion.success("one"), 10)
        stranded = sched.submit(lambda: Completion.success("two"), 10)
        sched.drain()

        assert first.result().text == "one"
        with pytest.raises(RuntimeError, match="sleep broke"):
            stranded.result()
        assert sched.stats()["queue_length"] == 0

        later = sched.submit(lambda: Completion.success("three"), 10)
        sched.drain()
        assert later.result().text == "three"

    def test_background_drain_survives_bad_job(self):
        sched = RateLimitedScheduler(
            tokens_per_minute=10_000, requests_per_minute=100, min_delay=0, sleep=lambda _s: None,
        )
        bad = sched.submit(lambda: "not a completion", 1)
        with pytest.raises(TypeError):
            bad.result(timeout=5)
        assert sched.call(lambda: Completion.success("still alive"), 1).text == "still alive"


# ── Background drain ──


class TestAutostart:
    def test_call_blocks_until_job_ran(self):
        sched = RateLimitedScheduler(
            tokens_per_minute=10_000, requests_per_minute=100, min_delay=0, sleep=lambda _s: None,
        )
        result = sched.call(lambda: Completion.success("done"), 10)
        assert result.text == "done"

    def test_many_submissions_all_complete(self):
        sched = RateLimitedScheduler(
            tokens_per_minute=10_000, requests_per_minute=1000, min_delay=0, sleep=lambda _s: None,
        )
        futures = [sched.submit(lambda i=i: Completion.success(str(i)), 1) for i in range(20)]
        assert [f.result(timeout=5).text for f in futures] == [str(i) for i in range(20)]


# ── Backoff ──


class TestBackoffDelay:
    def _delay(self, attempt, throttle=None):
        return backoff_delay(attempt, throttle, initial=2, minimum=1, maximum=30, jitter=lambda: 0.0)

    def test_exponential_without_hint(self):
        assert [self._delay(i) for i in range(4)] == [2, 4, 8, 16]

    def test_capped_at_maximum(self):
        assert self._delay(10) == 30

    def test_provider_hint_wins(self):
        assert self._delay(3, ThrottleSignal(retry_after=5)) == 5

    def test_hint_clamped_to_minimum(self):
        assert self._delay(0, ThrottleSignal(retry_after=0.1)) == 1

    def test_jitter_added(self):
        assert backoff_delay(0, None, initial=2, minimum=1, maximum=30, jitter=lambda: 0.5) == 2.5
