from __future__ import annotations

import base64
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Pattern, Sequence, Union

from .logs import CrawlLogger

ROUTE_PATTERN = "**/*"

# fonts, video, map tiles and analytics beacons never reach the network
BLOCKED_RESOURCES = (
    ".woff",
    ".woff2",
    ".ttf",
    ".webp",
    ".mov",
    ".mpeg",
    ".mpg",
    ".mp4",
    ".ico",
    "static_map.php",
    "ajax/bz",
)

CACHEABLE_TYPES = ("script", "stylesheet")
VOLATILE_HEADERS = ("date", "expires", "last-modified", "content-length")

# 1x1 images so onload handlers still fire
IMAGE_STUBS = {
    "png": ("image/png", base64.b64decode(
        "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAAAAAA6fptVAAAACklEQVQYV2P4DwABAQEAWk1v8QAAAABJRU5ErkJggg=="
    )),
    "gif": ("image/gif", base64.b64decode("R0lGODlhAQABAIAAAP///wAAACwAAAAAAQABAAACAkQBADs=")),
    "jpg": ("image/jpeg", base64.b64decode(
        "/9j/4AAQSkZJRgABAQEASABIAAD/2wBDAP////////////////////////////////////////////////////////"
        "//////////////////////////////wgALCAABAAEBAREA/8QAFBABAAAAAAAAAAAAAAAAAAAAAP/aAAgBAQABPxA="
    )),
}


def _image_stub(url: str) -> Optional[tuple]:
    if ".jpg" in url or ".jpeg" in url:
        return IMAGE_STUBS["jpg"]
    if ".png" in url:
        return IMAGE_STUBS["png"]
    if ".gif" in url:
        return IMAGE_STUBS["gif"]
    return None


@dataclass
class CacheEntry:
    loaded: bool = False
    content_type: Optional[str] = None
    body: Optional[bytes] = None
    headers: Dict[str, str] = field(default_factory=dict)


class ResourceCache:
    """Per-run cache and blocklist for page sub-resources, shared by every task.

    Script and stylesheet URLs matching one of ``paths`` are fetched from the
    network once and then fulfilled locally. Entries live for the whole run.
    """

    def __init__(
        self,
        paths: Iterable[Union[str, Pattern[str]]] = (r"rsrc\.php",),
        blocklist: Sequence[str] = BLOCKED_RESOURCES,
        logger: Optional[CrawlLogger] = None,
    ) -> None:
        self._paths = [re.compile(p) if isinstance(p, str) else p for p in paths]
        self._blocklist = tuple(blocklist)
        self._logger = logger or CrawlLogger()
        self.entries: Dict[str, CacheEntry] = {}
        self.hits = 0

    def is_blocked(self, url: str) -> bool:
        return any(resource in url for resource in self._blocklist)

    def is_cacheable(self, url: str, resource_type: str) -> bool:
        return resource_type in CACHEABLE_TYPES and any(path.search(url) for path in self._paths)

    def install(self, page: Any) -> "Interception":
        """Hook the page's requests and responses. Call before navigation."""
        interception = Interception(self, page, self._logger)
        page.route(ROUTE_PATTERN, interception.handle_route)
        page.on("response", interception.handle_response)
        return interception

    def __len__(self) -> int:
        return len(self.entries)


class Interception:
    """Request/response hooks of one page; ``teardown`` is idempotent and never raises."""

    def __init__(self, cache: ResourceCache, page: Any, logger: CrawlLogger) -> None:
        self._cache = cache
        self._page = page
        self._logger = logger
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def handle_route(self, route: Any) -> None:
        if self._page.is_closed():
            self.teardown()
            return

        request = route.request
        url = request.url
        cache = self._cache

        try:
            if cache.is_blocked(url):
                route.abort()
                return

            if request.resource_type == "image":
                stub = _image_stub(url)
                if stub is not None:
                    content_type, body = stub
                    route.fulfill(status=200, content_type=content_type, body=body)
                    return
            elif cache.is_cacheable(url, request.resource_type):
                entry = cache.entries.get(url)
                if entry is not None and entry.loaded:
                    cache.hits += 1
                    route.fulfill(
                        status=200,
                        body=entry.body,
                        content_type=entry.content_type,
                        headers=entry.headers,
                    )
                    return
                cache.entries[url] = CacheEntry(loaded=False)

            route.continue_()
        except Exception as exc:  # noqa: BLE001
            self._logger.debug("Resource cache route error", url=url, error=str(exc))
            self.teardown()

    def handle_response(self, response: Any) -> None:
        try:
            if self._page.is_closed():
                self.teardown()
                return

            if response.request.resource_type not in CACHEABLE_TYPES:
                return

            url = response.url
            entry = self._cache.entries.get(url)
            if entry is None or entry.loaded:
                return

            body = response.body()
            raw_headers = dict(response.headers)
            headers = {k: v for k, v in raw_headers.items() if k.lower() not in VOLATILE_HEADERS}
            self._cache.entries[url] = CacheEntry(
                loaded=len(body) > 0,
                content_type=raw_headers.get("content-type"),
                body=body,
                headers=headers,
            )
        except Exception as exc:  # noqa: BLE001
            self._logger.debug("Resource cache response error", error=str(exc))
            self.teardown()

    def teardown(self) -> None:
        if not self._active:
            return
        self._active = False
        try:
            self._page.unroute(ROUTE_PATTERN, self.handle_route)
            self._page.remove_listener("response", self.handle_response)
        except Exception as exc:  # noqa: BLE001
            self._logger.debug("Resource cache teardown", error=str(exc))
