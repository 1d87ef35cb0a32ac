from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Optional

from .errors import CrawlError, Namespace
from .logs import CrawlLogger

# Largest timeout the browser driver accepts, in milliseconds (signed 32-bit).
MAX_TIMEOUT_MS = 0x7FFFFFFF
MIN_PAGE_TIMEOUT_SECS = 600

SESSION_NAMESPACES = frozenset(
    {Namespace.CAPTCHA, Namespace.LOGIN, Namespace.INTERNAL, Namespace.MOBILE_META, Namespace.THRESHOLD}
)


@dataclass(frozen=True)
class Decision:
    retire_session: bool
    retry: bool
    level: int


class RetryPolicy:
    """Maps a task failure to its session impact, retry eligibility and log level.

    Backoff between redeliveries is exponential with jitter:
    base * 2^(attempt-1) plus up to 10% jitter, capped at max_seconds.
    """

    def __init__(self, max_retries: int = 10, base_seconds: float = 0.5, max_seconds: float = 10.0) -> None:
        self.max_retries = max_retries
        self._base = base_seconds
        self._max = max_seconds

    def decide(self, exc: BaseException) -> Decision:
        if isinstance(exc, CrawlError):
            if exc.namespace in SESSION_NAMESPACES:
                return Decision(retire_session=True, retry=True, level=logging.WARNING)
            if exc.namespace == Namespace.NOT_FOUND:
                return Decision(retire_session=False, retry=False, level=logging.WARNING)
            if exc.namespace == Namespace.CLASSIFICATION:
                return Decision(retire_session=False, retry=False, level=logging.WARNING)
        return Decision(retire_session=False, retry=True, level=logging.ERROR)

    def should_retry(self, exc: BaseException, retry_count: int) -> bool:
        """True while the task still has retry budget and the failure is retryable."""
        return self.decide(exc).retry and retry_count < self.max_retries

    def backoff(self, attempt: int) -> float:
        exp = min(self._max, self._base * (2 ** max(attempt - 1, 0)))
        return exp + random.uniform(0, exp * 0.1)


def page_timeout_secs(max_post_comments: int, max_posts: int, logger: Optional[CrawlLogger] = None) -> int:
    """Per-task time budget derived from the requested item volume.

    More comments and posts mean longer tasks; the result never drops below
    MIN_PAGE_TIMEOUT_SECS and is clamped to what the driver can represent.
    """
    volume = (max_post_comments or 0) + (max_posts or 0)
    secs = round(60 * ((volume or 10) * 0.08)) + MIN_PAGE_TIMEOUT_SECS

    if secs * 1000 >= MAX_TIMEOUT_MS:
        if logger is not None:
            logger.warning_once(
                "page-timeout-clamp",
                "max_posts + max_post_comments is too high; loading might never finish",
                max_post_comments=max_post_comments,
                max_posts=max_posts,
                page_timeout_secs=secs,
            )
        secs = MAX_TIMEOUT_MS // 1000

    return secs
