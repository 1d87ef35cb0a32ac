from __future__ import annotations

import dataclasses
import json
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .dates import DateLike, DateWindow
from .errors import ConfigurationError
from .models import Section
from .urls import DEFAULT_HOSTS, SiteHosts

SUPPORTED_LANGUAGES = {
    "cs-CZ": "Čeština",
    "de-DE": "Deutsch",
    "en-GB": "English (UK)",
    "en-US": "English (US)",
    "es-ES": "Español (España)",
    "es-LA": "Español",
    "fr-FR": "Français (France)",
    "it-IT": "Italiano",
    "ja-JP": "日本語",
    "nl-NL": "Nederlands",
    "pl-PL": "Polski",
    "pt-BR": "Português (Brasil)",
    "pt-PT": "Português (Portugal)",
    "sk-SK": "Slovenčina",
}

COMMENTS_MODES = ("RANKED_THREADED", "RECENT_ACTIVITY", "RANKED_UNFILTERED")

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


@dataclass(frozen=True)
class StartUrl:
    url: str
    override: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Windows:
    posts: DateWindow
    comments: DateWindow
    reviews: DateWindow


@dataclass(frozen=True)
class CrawlConfig:
    start_urls: Tuple[StartUrl, ...] = ()
    search_pages: Tuple[str, ...] = ()
    search_limit: int = 10

    max_posts: Optional[int] = 3
    min_posts: Optional[int] = None
    min_post_date: DateLike = None
    max_post_date: DateLike = None

    max_post_comments: Optional[int] = 15
    min_post_comments: Optional[int] = None
    min_comment_date: DateLike = None
    max_comment_date: DateLike = None
    comments_mode: str = "RANKED_THREADED"

    max_reviews: Optional[int] = 3
    min_review_date: DateLike = None
    max_review_date: DateLike = None

    scrape_about: bool = False
    scrape_posts: bool = True
    scrape_reviews: bool = True
    scrape_services: bool = True

    language: str = "en-US"
    country_code: bool = False
    max_concurrency: int = 20
    max_request_retries: int = 10
    proxy_urls: Tuple[str, ...] = ()
    headless: bool = True
    debug_log: bool = False

    extend_output_function: Optional[str] = None
    extend_scraper_function: Optional[str] = None
    custom_data: Dict[str, Any] = field(default_factory=dict)

    site: SiteHosts = DEFAULT_HOSTS

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "CrawlConfig":
        """Build from user input; camelCase keys are accepted, unknown keys are ignored."""
        if not isinstance(raw, Mapping):
            raise ConfigurationError("Missing input")
        return cls(**_coerce(raw))

    @classmethod
    def from_file(cls, path: str) -> "CrawlConfig":
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Input file not found: {path}") from None
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Input file {path} is not valid JSON: {exc}") from exc
        return cls.from_dict(raw)

    def with_override(self, override: Optional[Mapping[str, Any]]) -> "CrawlConfig":
        """Per-task settings: ``override`` replaces the matching fields."""
        if not override:
            return self
        return dataclasses.replace(self, **_coerce(override))

    def validate(self) -> Windows:
        """Raise ConfigurationError on any fatal problem; returns the resolved date windows."""
        if not self.start_urls and not self.search_pages:
            raise ConfigurationError('You must provide the "start_urls" input')

        if self.max_post_comments is not None and not (
            isinstance(self.max_post_comments, int) and math.isfinite(self.max_post_comments)
        ):
            raise ConfigurationError('You must provide a finite number for "max_post_comments" input')

        for name in ("max_posts", "min_posts", "max_post_comments", "min_post_comments", "max_reviews", "search_limit"):
            value = getattr(self, name)
            if value is not None and (not isinstance(value, int) or value < 0):
                raise ConfigurationError(f'"{name}" must be a non-negative integer, got {value!r}')

        if not isinstance(self.max_concurrency, int) or self.max_concurrency < 1:
            raise ConfigurationError(
                f'"max_concurrency" must be an integer of at least 1, got {self.max_concurrency!r}'
            )

        if self.language not in SUPPORTED_LANGUAGES:
            raise ConfigurationError(f'Selected language "{self.language}" isn\'t supported')

        if self.comments_mode not in COMMENTS_MODES:
            raise ConfigurationError(f'"comments_mode" must be one of {", ".join(COMMENTS_MODES)}')

        return self.windows()

    def windows(self, now: Optional[datetime] = None) -> Windows:
        return Windows(
            posts=DateWindow.from_bounds(self.min_post_date, self.max_post_date, now),
            comments=DateWindow.from_bounds(self.min_comment_date, self.max_comment_date, now),
            reviews=DateWindow.from_bounds(self.min_review_date, self.max_review_date, now),
        )

    def sections(self) -> List[Section]:
        sections = []
        if self.scrape_posts:
            sections.append(Section.POSTS)
        if self.scrape_about:
            sections.append(Section.ABOUT)
        if self.scrape_reviews:
            sections.append(Section.REVIEWS)
        if self.scrape_services:
            sections.append(Section.SERVICES)
        return sections

    @property
    def country(self) -> Optional[str]:
        """Proxy country derived from the language region when country_code is set."""
        if not self.country_code:
            return None
        parts = self.language.split("-")
        return parts[1] if len(parts) > 1 else "US"


_FIELDS = {f.name for f in dataclasses.fields(CrawlConfig)}
_SITE_FIELDS = {f.name for f in dataclasses.fields(SiteHosts)}


def _start_url(value: Any) -> StartUrl:
    if isinstance(value, StartUrl):
        return value
    if isinstance(value, str):
        return StartUrl(url=value)
    if isinstance(value, Mapping) and value.get("url"):
        override = value.get("override") or (value.get("userData") or {}).get("override")
        return StartUrl(url=value["url"], override=dict(override) if override else None)
    raise ConfigurationError(f"Invalid start url entry: {value!r}")


def _coerce(raw: Mapping[str, Any]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for key, value in raw.items():
        name = _snake(key)
        if name == "proxy_configuration" and isinstance(value, Mapping):
            name, value = "proxy_urls", value.get("proxyUrls") or value.get("proxy_urls") or ()
        if name not in _FIELDS:
            continue

        if name == "start_urls":
            value = tuple(_start_url(v) for v in (value or ()))
        elif name in ("search_pages", "proxy_urls"):
            value = tuple(value or ())
        elif name == "site" and isinstance(value, Mapping):
            hosts = {_snake(k): v for k, v in value.items()}
            unknown = sorted(set(hosts) - _SITE_FIELDS)
            if unknown:
                raise ConfigurationError(f'Unknown "site" keys: {", ".join(unknown)}')
            value = SiteHosts(**hosts)
        elif name == "custom_data":
            value = dict(value or {})
        values[name] = value
    return values
