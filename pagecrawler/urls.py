"""URL classification, normalization and section fan-out planning.

All functions are pure: they only look at the URL string and the configured
site hosts. The label of a URL is never stored, it is always recomputed
from its shape.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Union
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from .errors import ClassificationError
from .models import DEFAULT_SECTIONS, DeviceMode, Label, Section, SubpageTask

_SEARCH_RE = re.compile(r"^/(?:public|search)(?:/|$)")
_PHOTO_RE = re.compile(r"/photos/a\.(\d+)")
_POST_RE = re.compile(r"/posts/\d+")
_PAGE_RE = re.compile(r"^/(?:pg/)?[a-z0-9.\-%_]+(?:/|$)", re.IGNORECASE)

# query parameters that identify a story on non-permalink paths
_STORY_PARAMS = ("story_fbid", "id", "substory_index", "type")


@dataclass(frozen=True)
class SiteHosts:
    domain: str = "site.example"
    browsing_host: str = "m.site.example"
    content_host: str = "www.site.example"
    browsing_prefix: str = "/pg"

    @property
    def content_address(self) -> str:
        return f"https://{self.content_host}"


DEFAULT_HOSTS = SiteHosts()


@dataclass(frozen=True)
class SearchTarget:
    url: str
    term: str


def _on_domain(host: str, hosts: SiteHosts) -> bool:
    return host == hosts.domain or host.endswith("." + hosts.domain)


def classify(url: str, hosts: SiteHosts = DEFAULT_HOSTS) -> Label:
    """Detect the label of a URL from its host and path shape.

    Raises ClassificationError for empty URLs, foreign hosts and unknown shapes.
    """
    if not url:
        raise ClassificationError("Invalid url provided", url=url)

    parts = urlsplit(url)
    host = (parts.hostname or "").lower()

    if parts.scheme in ("http", "https") and _on_domain(host, hosts):
        path = parts.path or "/"

        if path.startswith("/biz/"):
            return Label.LISTING
        if _SEARCH_RE.match(path):
            return Label.SEARCH
        if _PHOTO_RE.search(path):
            return Label.PHOTO
        if _POST_RE.search(path):
            return Label.POST
        if _PAGE_RE.match(path):
            return Label.PAGE

    raise ClassificationError("Invalid url provided or its type could not be determined", url=url)


def extract_handle(url: str, hosts: SiteHosts = DEFAULT_HOSTS) -> str:
    """Return the entity handle (the first path segment after the optional prefix)."""
    if not url:
        raise ClassificationError("Empty url", url=url)

    prefix = re.escape(hosts.browsing_prefix)
    matches = re.search(re.escape(hosts.domain) + f"(?:{prefix})?/([^/?#]+)", url)
    if not matches:
        raise ClassificationError("Couldn't match handle in url", url=url)
    return matches.group(1)


def _strip_params(query: str, keep: Iterable[str]) -> str:
    keep = set(keep)
    return urlencode([(k, v) for k, v in parse_qsl(query, keep_blank_values=True) if k in keep])


def canonical_post_url(
    url: Optional[str],
    post_id: Optional[str] = None,
    handle: Optional[str] = None,
    hosts: SiteHosts = DEFAULT_HOSTS,
) -> Optional[str]:
    """Turn a story/photo/post URL into a clean permalink on the content host."""
    if not url:
        return None

    parts = urlsplit(urljoin(hosts.content_address, url))
    path = parts.path
    params = dict(parse_qsl(parts.query, keep_blank_values=True))

    if not post_id:
        if "story_fbid" in params and "id" in params and "/photos" not in path and "/video" not in path:
            path = "/permalink.php"
    else:
        owner = handle or path.split("/", 2)[1]
        path = f"/{owner}/posts/{post_id}"

    keep = () if "/posts" in path else _STORY_PARAMS
    return urlunsplit(("https", hosts.content_host, path, _strip_params(parts.query, keep), ""))


def canonicalize_photo(url: str, hosts: SiteHosts = DEFAULT_HOSTS) -> str:
    """Rewrite a photo URL into the equivalent post URL; unchanged when no album id is found."""
    matches = _PHOTO_RE.search(url or "")
    if matches:
        return canonical_post_url(url, post_id=matches.group(1), hosts=hosts) or url
    return url


def _has_prefix(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


def normalize_for_browsing(
    url: str,
    keep_params: Sequence[str] = (),
    hosts: SiteHosts = DEFAULT_HOSTS,
) -> str:
    """Force the browsing host and path prefix; drop every query param not in keep_params.

    Forcing the prefix makes the site error out on anything that isn't an
    entity page, so bad URLs fail fast.
    """
    parts = urlsplit(url)
    path = parts.path

    if not _has_prefix(path, hosts.browsing_prefix):
        path = hosts.browsing_prefix + "/" + "/".join(s for s in path.split("/") if s)

    return urlunsplit(
        (parts.scheme or "https", hosts.browsing_host, path, _strip_params(parts.query, keep_params), "")
    )


def normalize_for_output(url: str, hosts: SiteHosts = DEFAULT_HOSTS) -> str:
    """The persisted form of an entity URL: https, content host, no query, no browsing prefix."""
    parts = urlsplit(url)
    path = parts.path
    prefix = hosts.browsing_prefix

    if path == prefix:
        path = "/"
    elif path.startswith(prefix + "/"):
        path = path[len(prefix):]

    return urlunsplit(("https", hosts.content_host, path, "", ""))


def plan_fanout(
    page_url: str,
    sections: Iterable[Union[Section, str]] = DEFAULT_SECTIONS,
    hosts: SiteHosts = DEFAULT_HOSTS,
) -> List[SubpageTask]:
    """One "home" sub-task plus one per section, all on the browsing host."""
    parts = urlsplit(normalize_for_browsing(page_url, hosts=hosts))
    # only <prefix>/<handle> is kept, section paths are rebuilt below
    segments = [s for s in parts.path.split("/") if s][:2]
    base = urlunsplit((parts.scheme, hosts.browsing_host, "/" + "/".join(segments), "", ""))

    subpages = [SubpageTask(url=base, section=Section.HOME, device_mode=DeviceMode.MOBILE)]
    for section in sections:
        section = Section(section)
        subpages.append(SubpageTask(url=f"{base}/{section.value}", section=section, device_mode=DeviceMode.MOBILE))
    return subpages


def build_search(term_or_url: Optional[str], hosts: SiteHosts = DEFAULT_HOSTS) -> Optional[SearchTarget]:
    """Search URL for a free-text term, or for the query of an existing search URL."""
    if not term_or_url:
        return None

    if hosts.domain not in term_or_url:
        query: Optional[str] = term_or_url
    else:
        query = dict(parse_qsl(urlsplit(term_or_url).query)).get("query")

    if not query:
        return None

    params = urlencode({"type": "pages", "init": "dir", "nomc": "0", "query": query})
    return SearchTarget(url=urlunsplit(("https", hosts.content_host, "/public", params, "")), term=query)
