from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from .models import DeviceMode


class SiteExtractor(ABC):
    """Abstract base class for the site-specific half of the crawler.

    The crawler owns navigation, retries, scrolling and state; an extractor
    only answers questions about the page it is handed. Every ``collect_*``
    method returns what is rendered right now and is called again after
    each scroll step, so it must be cheap and side-effect free.

    Items returned by ``collect_posts`` carry ``url`` and ``date``; reviews
    and comments carry ``date`` and, when available, ``url``.
    """

    # end-of-feed markers: once one is inside the viewport scrolling stops
    posts_end_selectors: Sequence[str] = ()
    reviews_end_selectors: Sequence[str] = ()
    comments_end_selectors: Sequence[str] = ()

    # any of these must show up on a content-optimized (mobile) page
    content_layout_selectors: Sequence[str] = ()
    captcha_selectors: Dict[DeviceMode, str] = {}

    # runs before any page script, e.g. to dismiss consent banners
    init_script: Optional[str] = None

    layout_timeout_ms: int = 15000

    def is_captcha(self, page: Any, device_mode: DeviceMode) -> bool:
        selector = self.captcha_selectors.get(device_mode)
        return bool(selector) and page.query_selector(selector) is not None

    def has_content_layout(self, page: Any) -> bool:
        """Wait for the content-optimized layout; False when it never appears."""
        if not self.content_layout_selectors:
            return True
        try:
            page.wait_for_selector(", ".join(self.content_layout_selectors), timeout=self.layout_timeout_ms)
        except PlaywrightTimeoutError:
            return False
        return True

    def is_error_page(self, page: Any) -> bool:
        """True when the site served its generic internal-error page."""
        return False

    @abstractmethod
    def is_not_found(self, page: Any) -> bool:
        """True when the page does not exist (deleted, renamed, private)."""
        raise NotImplementedError

    @abstractmethod
    def page_info(self, page: Any) -> Dict[str, Any]:
        """Profile fields from the landing section (title, likes, address...)."""
        raise NotImplementedError

    def about_fields(self, page: Any) -> Dict[str, Any]:
        return {}

    def services(self, page: Any) -> List[Dict[str, Any]]:
        return []

    def reviews_summary(self, page: Any) -> Tuple[Optional[float], Optional[int]]:
        """(average rating, review count)."""
        return None, None

    def collect_reviews(self, page: Any) -> List[Dict[str, Any]]:
        return []

    @abstractmethod
    def collect_posts(self, page: Any) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def post_content(self, page: Any) -> Dict[str, Any]:
        """Fields of a single post; ``postUrl`` is filled in by the crawler when missing."""
        raise NotImplementedError

    def post_stats(self, page: Any) -> Dict[str, Any]:
        return {}

    @abstractmethod
    def collect_comments(self, page: Any, mode: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def comment_count(self, page: Any) -> Optional[int]:
        """Total comments the post advertises, when the page shows it."""
        return None

    def pages_from_listing(self, page: Any) -> List[str]:
        return []

    def pages_from_search(self, page: Any, limit: int) -> List[str]:
        return []
