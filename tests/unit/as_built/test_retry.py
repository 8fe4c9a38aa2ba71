from __future__ import annotations

import asyncio

import pytest

from as_built.config import LlmProvider
from as_built.exceptions import DeadlineExceededError
from as_built.llm import LlmError, LlmErrorCode
from as_built.retry import Deadline, backoff_delay, deadline_message, with_retry


class Recorder:
    """Collects progress lines and sleeps instead of waiting."""

    def __init__(self) -> None:
        self.lines: list[str] = []
        self.sleeps: list[float] = []

    async def log(self, line: str) -> None:
        self.lines.append(line)

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)


def _failing(errors: list[Exception], result: str = "ok"):  # noqa: ANN202
    calls = {"n": 0}

    async def operation() -> str:
        calls["n"] += 1
        if errors:
            raise errors.pop(0)
        return result

    return operation, calls


def _timeout() -> LlmError:
    return LlmError(LlmErrorCode.TIMEOUT, LlmProvider.GEMINI, "timed out")


@pytest.mark.unit
def test_backoff_delay_doubles() -> None:
    assert [backoff_delay(n) for n in range(3)] == [2.0, 4.0, 8.0]


@pytest.mark.unit
def test_two_timeouts_then_success() -> None:
    rec = Recorder()
    operation, calls = _failing([_timeout(), _timeout()])

    result = asyncio.run(with_retry(operation, label="LLM call", log=rec.log, sleep=rec.sleep))

    assert result == "ok"
    assert calls["n"] == 3
    assert rec.sleeps == [2.0, 4.0]
    assert rec.lines == [
        "⚠ LLM call attempt 1/3 failed (TIMEOUT). Retrying in 2s...",
        "⚠ LLM call attempt 2/3 failed (TIMEOUT). Retrying in 4s...",
    ]


@pytest.mark.unit
def test_exhausted_retries_reraise_last_error() -> None:
    rec = Recorder()
    last = LlmError(LlmErrorCode.SERVER_ERROR, LlmProvider.CLAUDE, "down", 503)
    operation, calls = _failing([_timeout(), _timeout(), last])

    with pytest.raises(LlmError) as exc_info:
        asyncio.run(with_retry(operation, label="LLM call", log=rec.log, sleep=rec.sleep))

    assert exc_info.value is last
    assert calls["n"] == 3
    assert len(rec.lines) == 2


@pytest.mark.unit
def test_non_retryable_error_fails_immediately() -> None:
    rec = Recorder()
    auth = LlmError(LlmErrorCode.AUTH_ERROR, LlmProvider.OPENAI, "bad key", 401)
    operation, calls = _failing([auth])

    with pytest.raises(LlmError):
        asyncio.run(with_retry(operation, label="LLM call", log=rec.log, sleep=rec.sleep))

    assert calls["n"] == 1
    assert rec.sleeps == []
    assert not any(line.startswith("⚠") for line in rec.lines)
    assert rec.lines == ["✗ LLM call failed (AUTH_ERROR): bad key"]


@pytest.mark.unit
def test_unclassified_exceptions_are_retried_as_unknown() -> None:
    rec = Recorder()
    operation, _ = _failing([RuntimeError("boom")])

    result = asyncio.run(with_retry(operation, label="Drift analysis", log=rec.log, sleep=rec.sleep))

    assert result == "ok"
    assert rec.lines == ["⚠ Drift analysis attempt 1/3 failed (UNKNOWN). Retrying in 2s..."]


@pytest.mark.unit
def test_retry_that_would_outlive_the_deadline_raises() -> None:
    rec = Recorder()
    now = {"t": 0.0}
    deadline = Deadline(3.0, clock=lambda: now["t"])
    operation, calls = _failing([_timeout(), _timeout()])

    async def sleep(delay: float) -> None:
        rec.sleeps.append(delay)
        now["t"] += delay

    with pytest.raises(DeadlineExceededError) as exc_info:
        asyncio.run(with_retry(operation, label="LLM call", log=rec.log, sleep=sleep, deadline=deadline))

    # first wait (2s) fits in 3s, the second (4s) does not
    assert rec.sleeps == [2.0]
    assert calls["n"] == 2
    assert str(exc_info.value) == "Scan exceeded its 3-second execution deadline."


@pytest.mark.unit
def test_deadline_remaining_never_negative() -> None:
    now = {"t": 100.0}
    deadline = Deadline(10, clock=lambda: now["t"])

    now["t"] = 104.0
    assert deadline.remaining() == pytest.approx(6.0)
    assert deadline.expired is False
    now["t"] = 200.0
    assert deadline.remaining() == 0.0
    assert deadline.expired is True


@pytest.mark.unit
def test_deadline_message_formats_whole_seconds() -> None:
    assert deadline_message(300) == "Scan exceeded its 300-second execution deadline."
    assert deadline_message(2.5) == "Scan exceeded its 2.5-second execution deadline."
