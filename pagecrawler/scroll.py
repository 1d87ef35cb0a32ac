"""Infinite-scroll driver with an adaptive, statistics-based stop condition.

Feeds are not strictly chronological (pinned posts, partial loads), so a
single out-of-range item never stops a harvest. ScrollSample keeps a running
tally of every item examined and declares the feed exhausted only when a
large majority of the sample says so.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence

from .dates import DateLike, DateWindow, to_datetime
from .errors import ConfigurationError
from .logs import CrawlLogger

SCROLL_BY_JS = "() => window.scrollBy({ top: Math.round(window.innerHeight / 1.15) || 100 })"
SCROLL_Y_JS = "() => window.scrollY"
BODY_HEIGHT_JS = "() => document.body.scrollHeight"
SELECTORS_IN_VIEW_JS = """(selectors) => selectors.some((sel) => {
    return [...document.querySelectorAll(sel)].some((el) => window.innerHeight - el.getBoundingClientRect().top > 0);
})"""


class ChangeTracker:
    """History of one scroll signal (offset or content height).

    A value counts as changed only when the history grew since the previous
    check and the value was never seen before, so oscillating between a few
    values near the end of a feed does not look like progress.
    """

    def __init__(self) -> None:
        self._history: set = set()
        self._last_size = 0

    def observe(self, value: Optional[float]) -> bool:
        changed = False
        if value is not None and len(self._history) > self._last_size:
            self._last_size = len(self._history)
            changed = value not in self._history
        if value:
            self._history.add(value)
        return changed

    @property
    def distinct(self) -> int:
        return len(self._history)


@dataclass(frozen=True)
class ScrollProgress:
    step_count: int
    scroll_changed: bool
    body_changed: bool
    distinct_scroll_values: int
    distinct_height_values: int


@dataclass
class ScrollOptions:
    selectors: Sequence[str] = ()
    # returning True means stop
    maybe_stop: Optional[Callable[[ScrollProgress], bool]] = None
    sleep_secs: float = 1.0
    scroll: Optional[Callable[[Any], None]] = None


class ScrollEngine:
    """Scrolls a live page one increment at a time until a stop condition matches.

    Stop conditions, first match wins: the page is closed, a terminal selector
    is inside the viewport, or ``maybe_stop`` returns True. Without any of
    them the loop never ends.
    """

    def __init__(self, logger: Optional[CrawlLogger] = None, sleep: Callable[[float], None] = time.sleep) -> None:
        self._logger = logger or CrawlLogger()
        self._sleep = sleep

    def run(self, page: Any, options: ScrollOptions) -> ScrollProgress:
        scrolls = ChangeTracker()
        heights = ChangeTracker()
        count = 0
        url = page.url
        progress = ScrollProgress(0, False, False, 0, 0)

        self._logger.debug("Scrolling page", url=url, selectors=list(options.selectors))

        while True:
            if page.is_closed():
                break

            if options.scroll is not None:
                options.scroll(page)
            else:
                page.evaluate(SCROLL_BY_JS)

            self._sleep(options.sleep_secs)

            if page.is_closed():
                break

            last_scroll = page.evaluate(SCROLL_Y_JS)
            scroll_changed = scrolls.observe(last_scroll)
            body_height = page.evaluate(BODY_HEIGHT_JS)
            body_changed = heights.observe(body_height)

            progress = ScrollProgress(
                step_count=count,
                scroll_changed=scroll_changed,
                body_changed=body_changed,
                distinct_scroll_values=scrolls.distinct,
                distinct_height_values=heights.distinct,
            )
            self._logger.debug(
                "Scroll data",
                url=url,
                last_scroll=last_scroll,
                body_height=body_height,
                scroll_changed=scroll_changed,
                body_changed=body_changed,
                count=count,
            )

            if self._should_stop(page, options, progress):
                break

            count += 1

        self._logger.debug("Stopped scrolling", url=url, steps=count)
        return progress

    def _should_stop(self, page: Any, options: ScrollOptions, progress: ScrollProgress) -> bool:
        if page.is_closed():
            return True

        if options.selectors and page.evaluate(SELECTORS_IN_VIEW_JS, list(options.selectors)):
            self._logger.debug("Found selectors", url=page.url, selectors=list(options.selectors))
            return True

        if options.maybe_stop is not None and options.maybe_stop(progress):
            return True

        return False


class ScrollSample:
    """Running tally of items examined during one scroll session. Never persisted."""

    def __init__(
        self,
        window: DateWindow,
        total: int = 0,
        in_range: int = 0,
        out_of_range: int = 0,
        empty: int = 0,
    ) -> None:
        self.window = window
        self.total = total
        self.in_range = in_range
        self.out_of_range = out_of_range
        self.empty = empty
        self.calls = 0
        self.older_than_max = 0
        self.newer_than_max = 0
        self.older_than_min = 0
        self.newer_than_min = 0

    def add(self, count: int) -> None:
        """Count the items examined in one step."""
        self.calls += 1
        self.total += count

    def mark_empty(self, predicate: bool) -> None:
        """Count a step that yielded no new items."""
        self.calls += 1
        if predicate:
            self.empty += 1

    def time(self, value: DateLike) -> bool:
        """Classify one item timestamp against the window; returns whether it is in range."""
        in_range = self.window.compare(value)
        if in_range:
            self.in_range += 1
            return True

        self.out_of_range += 1
        try:
            moment = to_datetime(value)
        except ConfigurationError:
            moment = None
        if moment is None:
            return False

        upper, lower = self.window.max_bound, self.window.min_bound
        if upper is not None:
            if moment < upper:
                self.older_than_max += 1
            elif moment > upper:
                self.newer_than_max += 1
        if lower is not None:
            if moment > lower:
                self.newer_than_min += 1
            elif moment < lower:
                self.older_than_min += 1
        return False

    def is_over(self) -> bool:
        if self.total <= 0:
            return False
        # nothing in range yet means the window may still be further down the feed
        if self.window.is_bounded and self.in_range > 0 and (self.out_of_range + self.in_range) / self.total > 0.95:
            return True
        return self.empty / self.total > 0.8

    def stats(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "in_range": self.in_range,
            "out_of_range": self.out_of_range,
            "empty": self.empty,
            "calls": self.calls,
            "max": {"older": self.older_than_max, "newer": self.newer_than_max},
            "min": {"older": self.older_than_min, "newer": self.newer_than_min},
        }


@dataclass
class HarvestResult:
    items: List[Any] = field(default_factory=list)
    examined: int = 0
    sample: Optional[ScrollSample] = None


def harvest_feed(
    page: Any,
    engine: ScrollEngine,
    collect: Callable[[Any], Iterable[Any]],
    window: DateWindow,
    max_items: Optional[int],
    key: Callable[[Any], Hashable] = lambda item: item["url"],
    timestamp: Callable[[Any], DateLike] = lambda item: item.get("date"),
    selectors: Sequence[str] = (),
    deadline: Optional[float] = None,
    on_item: Optional[Callable[[Any], None]] = None,
    sleep_secs: float = 1.0,
) -> HarvestResult:
    """Scroll a feed, keeping up to max_items items whose timestamp is inside window.

    ``collect(page)`` returns the items currently rendered; already seen keys
    are ignored. ``deadline`` is a ``time.monotonic()`` value.
    """
    result = HarvestResult(sample=ScrollSample(window))
    sample = result.sample
    seen: set = set()

    if max_items is not None and max_items <= 0:
        return result

    def full() -> bool:
        return max_items is not None and len(result.items) >= max_items

    def take(batch: Iterable[Any]) -> None:
        batch = list(batch)
        fresh = []
        for item in batch:
            item_key = key(item)
            if item_key not in seen:
                seen.add(item_key)
                fresh.append(item)

        # re-rendered items count as examined, except on a step that brought nothing new
        sample.add(len(batch) if fresh else 0)
        sample.mark_empty(not fresh)
        result.examined += len(fresh)

        for item in fresh:
            if sample.time(timestamp(item)) and not full():
                result.items.append(item)
                if on_item is not None:
                    on_item(item)

    collected_at = [-1]

    def maybe_stop(progress: ScrollProgress) -> bool:
        if page.is_closed():
            return True
        collected_at[0] = progress.step_count
        take(collect(page))
        return full() or sample.is_over() or (deadline is not None and time.monotonic() >= deadline)

    take(collect(page))
    if not full():
        progress = engine.run(page, ScrollOptions(selectors=selectors, maybe_stop=maybe_stop, sleep_secs=sleep_secs))
        # a terminal selector ends the loop before the last step was collected
        if progress.step_count != collected_at[0] and not page.is_closed() and not full():
            take(collect(page))
    return result
