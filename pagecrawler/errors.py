from __future__ import annotations

from typing import Any, Dict, Optional


class Namespace:
    """Closed set of failure namespaces carried by CrawlError."""

    CAPTCHA = "captcha"
    LOGIN = "login"
    INTERNAL = "internal"
    MOBILE_META = "mobile-meta"
    THRESHOLD = "threshold"
    NOT_FOUND = "not-found"
    CLASSIFICATION = "classification"

    ALL = frozenset({CAPTCHA, LOGIN, INTERNAL, MOBILE_META, THRESHOLD, NOT_FOUND, CLASSIFICATION})


class ConfigurationError(Exception):
    """Invalid run configuration. Fatal: raised before any task is dispatched."""


class CrawlError(Exception):
    """A typed task failure with a namespace and contextual metadata.

    ``to_dict()`` is the ErrorRecord consumed by the retry policy and the
    logger: ``{message, namespace, url, context}``.
    """

    def __init__(self, message: str, namespace: str, url: Optional[str] = None, **meta: Any) -> None:
        super().__init__(message)
        if namespace not in Namespace.ALL:
            raise ValueError(f"Unknown error namespace: {namespace}")
        self.message = message
        self.namespace = namespace
        self.url = url
        self.meta: Dict[str, Any] = dict(meta)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "namespace": self.namespace,
            "url": self.url,
            "context": dict(self.meta),
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, namespace={self.namespace!r}, url={self.url!r})"


class ClassificationError(CrawlError):
    """URL does not belong to the target site or matches no known shape."""

    def __init__(self, message: str, url: Optional[str] = None, **meta: Any) -> None:
        super().__init__(message, Namespace.CLASSIFICATION, url, **meta)


class NotFoundError(CrawlError):
    """Page or section does not exist; never retried."""

    def __init__(self, message: str, url: Optional[str] = None, **meta: Any) -> None:
        super().__init__(message, Namespace.NOT_FOUND, url, **meta)
