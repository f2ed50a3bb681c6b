"""Shared helpers for worker job handlers."""

from __future__ import annotations


class JobRetry(Exception):
    """Attempt failed; try again after the given delay (or default backoff)."""

    def __init__(self, message: str, *, delay_seconds: float | None = None):
        super().__init__(message)
        self.delay_seconds = delay_seconds


class JobFailed(Exception):
    """Attempt failed and another attempt would fail the same way."""


def is_final_attempt(job) -> bool:
    return job.attempt_count >= job.max_attempts
