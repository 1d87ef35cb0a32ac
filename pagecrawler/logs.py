from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

LOGGER_NAME = "pagecrawler"

# (level, message, context) -> True to drop the record
SuppressPredicate = Callable[[int, str, dict], bool]


def configure_logging(debug: bool = False) -> None:
    """Install the root handler once; level follows the debug flag."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger(LOGGER_NAME).setLevel(logging.DEBUG if debug else logging.INFO)


def suppress_task_exceptions(level: int, message: str, context: dict) -> bool:
    """Drop the generic "task handler failed" exception noise; keeps everything else."""
    return level >= logging.ERROR and "handle_task" in message


class CrawlLogger:
    """Structured logger passed by reference to every component of a run.

    Context keyword arguments are rendered as a trailing JSON object. A
    suppression predicate can veto records before they reach ``logging``.
    """

    def __init__(
        self,
        name: str = LOGGER_NAME,
        suppress: Optional[SuppressPredicate] = None,
    ) -> None:
        self._logger = logging.getLogger(name)
        self._suppress = suppress
        self._warned_once: set[str] = set()

    @property
    def is_debug(self) -> bool:
        return self._logger.isEnabledFor(logging.DEBUG)

    def child(self, suffix: str) -> "CrawlLogger":
        return CrawlLogger(f"{self._logger.name}.{suffix}", suppress=self._suppress)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, context)

    def warning_once(self, key: str, message: str, **context: Any) -> None:
        if key in self._warned_once:
            return
        self._warned_once.add(key)
        self._log(logging.WARNING, message, context)

    def error(self, message: str, **context: Any) -> None:
        self._log(logging.ERROR, message, context)

    def exception(self, message: str, **context: Any) -> None:
        self._log(logging.ERROR, message, context, exc_info=True)

    def log(self, level: int, message: str, **context: Any) -> None:
        self._log(level, message, context)

    def _log(self, level: int, message: str, context: dict, exc_info: bool = False) -> None:
        if self._suppress is not None and self._suppress(level, message, context):
            return
        if not self._logger.isEnabledFor(level):
            return
        if context:
            message = f"{message} {json.dumps(context, ensure_ascii=False, default=str)}"
        self._logger.log(level, message, exc_info=exc_info)
