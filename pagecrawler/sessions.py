from __future__ import annotations

import itertools
import random
import threading
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .logs import CrawlLogger


@dataclass
class Session:
    """One proxy identity. Retired sessions are never handed out again."""

    proxy_url: Optional[str] = None
    country: Optional[str] = None
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    usage_count: int = 0
    retired: bool = False

    @property
    def usable(self) -> bool:
        return not self.retired


class SessionPool:
    """Rotating pool of sessions; new sessions take proxies round-robin.

    A session is retired when the site flags the identity (captcha, forced
    login, broken layout); the next ``acquire`` then creates a fresh one.
    """

    def __init__(
        self,
        proxy_urls: Sequence[str] = (),
        max_pool_size: int = 100,
        max_usage_count: int = 50,
        logger: Optional[CrawlLogger] = None,
    ) -> None:
        self._proxies = itertools.cycle(list(proxy_urls)) if proxy_urls else None
        self._max_pool_size = max(1, max_pool_size)
        self._max_usage_count = max(1, max_usage_count)
        self._logger = logger or CrawlLogger()
        self._sessions: List[Session] = []
        self._lock = threading.Lock()
        self._retired = 0

    def acquire(self, country: Optional[str] = None) -> Session:
        with self._lock:
            self._sessions = [s for s in self._sessions if s.usable]
            candidates = [s for s in self._sessions if s.country == country]

            if len(self._sessions) < self._max_pool_size or not candidates:
                session = Session(proxy_url=next(self._proxies) if self._proxies else None, country=country)
                self._sessions.append(session)
            else:
                session = random.choice(candidates)

            session.usage_count += 1
            if session.usage_count >= self._max_usage_count:
                # used up: handed out one last time, then dropped
                session.retired = True
            return session

    def retire(self, session: Session) -> None:
        with self._lock:
            if not session.retired:
                session.retired = True
            self._retired += 1
        self._logger.debug("Session retired", session=session.session_id, proxy=session.proxy_url)

    @property
    def retired_count(self) -> int:
        with self._lock:
            return self._retired

    def __len__(self) -> int:
        with self._lock:
            return len([s for s in self._sessions if s.usable])
