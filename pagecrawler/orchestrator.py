"""Crawl orchestration: seeding, per-task handling, and the end-of-run output.

Task lifecycle::

    pending -> running -> fanned-out | harvested
                       -> failed-retryable -> pending (redelivered)
                       -> failed-terminal
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

from .config import CrawlConfig, Windows
from .controller import CrawlController
from .errors import ClassificationError, ConfigurationError, CrawlError, Namespace, NotFoundError
from .extractor import SiteExtractor
from .logs import CrawlLogger, suppress_task_exceptions
from .metrics import MetricsCollector, RunSnapshot
from .models import CrawlTask, DeviceMode, Label, Section, SubpageTask, TaskOutcome, TaskState
from .pipeline import ExtensionRegistry, build_pipeline
from .policy import RetryPolicy, page_timeout_secs
from .records import (
    add_comment,
    add_post,
    add_reviews,
    add_services,
    find_post,
    finalize,
    init_entity,
    merge_profile,
    set_comment_count,
)
from .resources import ResourceCache
from .scroll import ScrollEngine, harvest_feed
from .sessions import SessionPool
from .state import KeyValueStore, StateStore
from .storage import MemoryStorage, StorageBase
from .urls import (
    build_search,
    canonical_post_url,
    canonicalize_photo,
    classify,
    extract_handle,
    normalize_for_output,
    plan_fanout,
)

NAVIGATION_TIMEOUT_MS = 60000
AUTOPERSIST_SECS = 60.0


class Crawler:
    """Runs one crawl from configuration to output records.

    ``driver`` opens pages (see ``browser.PlaywrightDriver``); when omitted a
    Playwright driver is created lazily. Everything else defaults to an
    in-process implementation so tests can swap any collaborator.
    """

    def __init__(
        self,
        config: CrawlConfig,
        extractor: SiteExtractor,
        driver: Any = None,
        storage: Optional[StorageBase] = None,
        kv_store: Optional[KeyValueStore] = None,
        registry: Optional[ExtensionRegistry] = None,
        sessions: Optional[SessionPool] = None,
        logger: Optional[CrawlLogger] = None,
        scroll_sleep_secs: float = 1.0,
    ) -> None:
        self.logger = logger or CrawlLogger(suppress=None if config.debug_log else suppress_task_exceptions)
        # fatal problems surface here, before any browser exists
        self.windows: Windows = config.validate()
        self.config = config
        self.extractor = extractor
        self.hosts = config.site

        self.registry = registry or ExtensionRegistry()
        output_transform = self.registry.resolve(config.extend_output_function)
        scraper_transform = self.registry.resolve(config.extend_scraper_function)

        self.policy = RetryPolicy(max_retries=config.max_request_retries)
        self.page_timeout_secs = page_timeout_secs(config.max_post_comments, config.max_posts, self.logger)
        self.store = StateStore(kv_store, logger=self.logger.child("state"))
        self.cache = ResourceCache(logger=self.logger.child("cache"))
        self.sessions = sessions or SessionPool(config.proxy_urls, logger=self.logger.child("sessions"))
        self.controller = CrawlController(config.max_concurrency, self.policy, self.logger.child("controller"))
        self.engine = ScrollEngine(self.logger.child("scroll"))
        self.metrics = MetricsCollector()
        self.storage = storage if storage is not None else MemoryStorage()
        self.scroll_sleep_secs = scroll_sleep_secs
        self._driver = driver

        context = {"state": self.store, "custom_data": dict(config.custom_data), "windows": self.windows}
        self.output_pipeline = build_pipeline(output_transform, output_fn=self._write, base_context=context)
        self.hooks = build_pipeline(scraper_transform, base_context=context)

    @property
    def driver(self) -> Any:
        if self._driver is None:
            from .browser import PlaywrightDriver

            self._driver = PlaywrightDriver(
                headless=self.config.headless,
                language=self.config.language,
                logger=self.logger.child("browser"),
            )
        return self._driver

    # -- setup ---------------------------------------------------------------

    def run(self) -> RunSnapshot:
        restored = self.store.load()
        if restored:
            self.logger.info("Resuming from stored state", entities=restored)

        self.seed()
        self.hooks(None, {"label": "SETUP", "crawler": self})
        self.logger.info(
            "Starting crawl",
            tasks=self.controller.pending,
            max_concurrency=self.controller.limit,
            page_timeout_secs=self.page_timeout_secs,
            posts=self.windows.posts.describe(),
            comments=self.windows.comments.describe(),
            reviews=self.windows.reviews.describe(),
        )

        autopersist = self.store.autopersist(AUTOPERSIST_SECS).start()
        try:
            self.controller.run(self.handle_task, self.handle_failed, on_exit=self._release_thread)
        finally:
            autopersist.stop()

        self.hooks(None, {"label": "FINISH", "crawler": self})
        self.store.persist()
        self.emit()

        snapshot = self.metrics.snapshot()
        self.logger.info(
            "Crawl finished",
            entities=len(self.store),
            tasks=snapshot.total_tasks,
            harvested=snapshot.harvested,
            fanned_out=snapshot.fanned_out,
            retried=snapshot.retried,
            failed=snapshot.failed,
            by_namespace=snapshot.by_namespace,
            elapsed_secs=round(snapshot.elapsed_secs, 1),
        )
        return snapshot

    def seed(self) -> int:
        """Enqueue the start URLs and searches; returns how many were accepted."""
        accepted = 0
        for term in self.config.search_pages:
            if self.add_search(term, None):
                accepted += 1

        for start in self.config.start_urls:
            if start.override:
                # a broken override is a configuration error, not a task failure
                self.config.with_override(start.override).validate()
            try:
                self.plan_start_url(start.url, start.override)
                accepted += 1
            except ClassificationError as exc:
                self.logger.warning("Skipping start url", error=exc.to_dict())

        if not accepted:
            raise ConfigurationError("No requests were loaded from start_urls")
        return accepted

    def plan_start_url(self, url: str, override: Optional[Mapping[str, Any]] = None, ref: Optional[str] = None) -> Label:
        label = classify(url, self.hosts)
        override = dict(override) if override else None

        if label == Label.PAGE:
            sections = self.config.with_override(override).sections()
            for subpage in plan_fanout(url, sections, self.hosts):
                self.add_subpage(subpage, ref or url, override)
        elif label == Label.SEARCH:
            self.add_search(url, override)
        elif label == Label.LISTING:
            self.controller.enqueue(
                CrawlTask(url, Label.LISTING, parent_ref=ref or url, device_mode=DeviceMode.DESKTOP, override=override)
            )
        else:
            if label == Label.PHOTO:
                url = canonicalize_photo(url, self.hosts)
            handle = extract_handle(url, self.hosts)
            post_url = canonical_post_url(url, handle=handle, hosts=self.hosts)
            self.controller.enqueue(
                CrawlTask(
                    post_url,
                    Label.POST,
                    parent_ref=ref or url,
                    device_mode=DeviceMode.DESKTOP,
                    override=override,
                    meta={"handle": handle},
                ),
                forefront=True,
            )
            home = plan_fanout(post_url, (), self.hosts)[0]
            self.add_subpage(home, ref or url, override)

        self.logger.debug("Planned start url", url=url, label=label.value)
        return label

    def add_subpage(self, subpage: SubpageTask, ref: Optional[str], override: Optional[Dict[str, Any]]) -> None:
        if subpage.section == Section.HOME:
            handle = extract_handle(subpage.url, self.hosts)
            page_url = normalize_for_output(subpage.url, self.hosts)
            self.store.append(handle, lambda current: init_entity(current, page_url, subpage.url, ref))

        self.controller.enqueue(
            CrawlTask(
                subpage.url,
                Label.PAGE,
                section=subpage.section,
                parent_ref=ref,
                device_mode=subpage.device_mode,
                override=override,
            ),
            forefront=True,
        )

    def add_search(self, term_or_url: str, override: Optional[Dict[str, Any]]) -> bool:
        target = build_search(term_or_url, self.hosts)
        if target is None:
            return False
        return self.controller.enqueue(
            CrawlTask(
                target.url,
                Label.SEARCH,
                device_mode=DeviceMode.DESKTOP,
                override=override,
                meta={"term": target.term},
            )
        )

    # -- per task ------------------------------------------------------------

    def handle_task(self, task: CrawlTask, retry_count: int) -> None:
        settings = self.config.with_override(task.override)
        windows = settings.windows() if task.override else self.windows
        started = time.monotonic()
        deadline = started + self.page_timeout_secs

        session = self.sessions.acquire(settings.country)
        page = None
        interception = None

        self.logger.debug("Handling task", url=task.url, label=task.label.value, retry_count=retry_count)
        try:
            page = self.driver.open_page(session, task.device_mode)
            if self.extractor.init_script:
                page.add_init_script(self.extractor.init_script)
            interception = self.cache.install(page)
            self.driver.set_language_cookie(page, settings.language, self.hosts.domain)

            wait_until = "load" if task.label == Label.POST or task.section == Section.POSTS else "domcontentloaded"
            response = page.goto(task.url, wait_until=wait_until, timeout=NAVIGATION_TIMEOUT_MS)
            self.check_page(page, task, response)

            state = self.dispatch(page, task, settings, windows, deadline)
            self._record(task, state, retry_count, started)
        except Exception as exc:
            decision = self.policy.decide(exc)
            if decision.retire_session:
                self.sessions.retire(session)

            if isinstance(exc, CrawlError):
                self.logger.log(decision.level, exc.message, error=exc.to_dict(), retry_count=retry_count)
            else:
                self.logger.exception("Error in handle_task", url=task.url, retry_count=retry_count)

            if self.policy.should_retry(exc, retry_count):
                self._record(task, TaskState.FAILED_RETRYABLE, retry_count, started, exc)
            raise
        finally:
            try:
                self.hooks(None, {"label": "HANDLE", "task": task, "page": page, "session": session})
            except Exception:  # noqa: BLE001
                self.logger.exception("HANDLE hook failed", url=task.url)
            finally:
                if interception is not None:
                    interception.teardown()
                self.driver.close_page(page)

    def handle_failed(self, task: CrawlTask, exc: BaseException, retry_count: int) -> None:
        """Terminal failure: retries exhausted or the failure is never retried."""
        if self.policy.decide(exc).retry:
            self.logger.error(
                f"Task failed after {retry_count} retries",
                url=task.url,
                label=task.label.value,
                error=exc.to_dict() if isinstance(exc, CrawlError) else repr(exc),
            )
        self._record(task, TaskState.FAILED_TERMINAL, retry_count, None, exc)

    def check_page(self, page: Any, task: CrawlTask, response: Any) -> None:
        url = task.url
        extractor = self.extractor

        if "?next=" in page.url or "/login" in page.url:
            raise CrawlError("Content needs login to work, retrying", Namespace.LOGIN, url)

        if extractor.is_captcha(page, task.device_mode):
            raise CrawlError("Captcha found, retrying", Namespace.CAPTCHA, url)

        if task.device_mode == DeviceMode.MOBILE:
            if not extractor.has_content_layout(page):
                raise CrawlError("Content-optimized layout not found, retrying", Namespace.MOBILE_META, url)
        elif self.hosts.browsing_host in page.url:
            raise CrawlError("Got the browsing layout on a full-site request, retrying", Namespace.INTERNAL, url)

        status = response.status if response is not None else None
        if extractor.is_error_page(page) or (status is not None and status >= 500):
            raise CrawlError("Site served an error page, retrying", Namespace.INTERNAL, url, status=status)

        if task.label == Label.PAGE and task.section != Section.POSTS and extractor.is_not_found(page):
            raise NotFoundError("Page not found or unavailable", url, section=task.section.value)

    def dispatch(self, page: Any, task: CrawlTask, settings: CrawlConfig, windows: Windows, deadline: float) -> str:
        if task.label == Label.LISTING:
            self.fan_out(self.extractor.pages_from_listing(page), task)
            return TaskState.FANNED_OUT

        if task.label == Label.SEARCH:
            found = self.extractor.pages_from_search(page, settings.search_limit)
            self.fan_out(list(found)[: settings.search_limit], task)
            return TaskState.FANNED_OUT

        if task.label == Label.POST:
            self.harvest_post(page, task, settings, windows, deadline)
            return TaskState.HARVESTED

        handle = extract_handle(task.url, self.hosts)
        section = task.section or Section.HOME

        if section == Section.HOME:
            info = self.extractor.page_info(page)
            self.store.append(handle, lambda current: merge_profile(current, info))
        elif section == Section.ABOUT:
            fields = self.extractor.about_fields(page)
            self.store.append(handle, lambda current: merge_profile(current, fields))
        elif section == Section.SERVICES:
            self.harvest_services(page, handle)
        elif section == Section.REVIEWS:
            self.harvest_reviews(page, handle, settings, windows, deadline)
        elif section == Section.POSTS:
            self.harvest_posts(page, task, handle, settings, windows, deadline)
        return TaskState.HARVESTED

    def fan_out(self, urls: Iterable[str], parent: CrawlTask) -> int:
        count = 0
        for url in urls:
            try:
                self.plan_start_url(url, parent.override, ref=parent.url)
                count += 1
            except ClassificationError as exc:
                self.logger.debug("Ignoring discovered url", error=exc.to_dict())
        self.logger.info("Discovered pages", url=parent.url, count=count, term=parent.meta.get("term"))
        return count

    # -- sections ------------------------------------------------------------

    def harvest_services(self, page: Any, handle: str) -> None:
        try:
            services = self.extractor.services(page)
        except Exception as exc:  # noqa: BLE001
            self.logger.debug("Services unavailable", handle=handle, error=repr(exc))
            return
        if services:
            self.store.append(handle, lambda current: add_services(current, services))

    def harvest_reviews(self, page: Any, handle: str, settings: CrawlConfig, windows: Windows, deadline: float) -> None:
        try:
            average, count = self.extractor.reviews_summary(page)
            result = harvest_feed(
                page,
                self.engine,
                self.extractor.collect_reviews,
                windows.reviews,
                settings.max_reviews,
                key=_review_key,
                selectors=self.extractor.reviews_end_selectors,
                deadline=deadline,
                sleep_secs=self.scroll_sleep_secs,
            )
        except Exception as exc:  # noqa: BLE001
            self.logger.debug("Reviews unavailable", handle=handle, error=repr(exc))
            return
        self.store.append(handle, lambda current: add_reviews(current, average, count, result.items))

    def harvest_posts(
        self,
        page: Any,
        task: CrawlTask,
        handle: str,
        settings: CrawlConfig,
        windows: Windows,
        deadline: float,
    ) -> None:
        def enqueue(item: Dict[str, Any]) -> None:
            post_url = canonical_post_url(item["url"], handle=handle, hosts=self.hosts)
            self.controller.enqueue(
                CrawlTask(
                    post_url,
                    Label.POST,
                    parent_ref=task.url,
                    device_mode=DeviceMode.DESKTOP,
                    override=task.override,
                    meta={"handle": handle, "isPinned": bool(item.get("isPinned"))},
                ),
                forefront=True,
            )

        result = harvest_feed(
            page,
            self.engine,
            self.extractor.collect_posts,
            windows.posts,
            settings.max_posts,
            selectors=self.extractor.posts_end_selectors,
            deadline=deadline,
            on_item=enqueue,
            sleep_secs=self.scroll_sleep_secs,
        )
        self.logger.info("Collected post urls", handle=handle, posts=len(result.items), **result.sample.stats())

        if settings.max_posts and settings.min_posts and len(result.items) < settings.min_posts:
            raise CrawlError(
                f"Expected at least {settings.min_posts} posts, got {len(result.items)}",
                Namespace.THRESHOLD,
                task.url,
                collected=len(result.items),
            )

    def harvest_post(self, page: Any, task: CrawlTask, settings: CrawlConfig, windows: Windows, deadline: float) -> None:
        handle = task.meta.get("handle") or extract_handle(task.url, self.hosts)
        content = dict(self.extractor.post_content(page))
        post_url = content.get("postUrl") or task.url
        content["postUrl"] = post_url
        mode = settings.comments_mode

        if find_post(self.store.read(handle), post_url) is None:
            post = {
                **content,
                "isPinned": task.meta.get("isPinned", False),
                "postStats": self.extractor.post_stats(page),
                "postComments": {"count": 0, "mode": mode, "comments": []},
            }
            self.store.append(handle, lambda current: add_post(current, post))

        def keep(comment: Dict[str, Any]) -> None:
            self.store.append(handle, lambda current: add_comment(current, post_url, comment))

        result = harvest_feed(
            page,
            self.engine,
            lambda p: self.extractor.collect_comments(p, mode),
            windows.comments,
            settings.max_post_comments,
            key=_comment_key,
            selectors=self.extractor.comments_end_selectors,
            deadline=deadline,
            on_item=keep,
            sleep_secs=self.scroll_sleep_secs,
        )

        advertised = self.extractor.comment_count(page)
        total = max(advertised or 0, result.examined)
        record = self.store.append(handle, lambda current: set_comment_count(current, post_url, total))

        stored = find_post(record, post_url) or {}
        collected = len((stored.get("postComments") or {}).get("comments") or [])
        self.logger.debug("Collected comments", url=post_url, collected=collected, total=total)

        if settings.max_post_comments and settings.min_post_comments and collected < settings.min_post_comments:
            raise CrawlError(
                f"Expected at least {settings.min_post_comments} comments, got {collected}",
                Namespace.THRESHOLD,
                task.url,
                collected=collected,
            )

    # -- output --------------------------------------------------------------

    def emit(self) -> int:
        """Push every entity record through the output pipeline."""
        count = 0
        for record in self.store.values():
            self.output_pipeline(record)
            count += 1
        return count

    def _write(self, record: Any, context: Dict[str, Any]) -> None:
        self.storage.write(finalize(record, datetime.now(timezone.utc).isoformat()))

    def _record(
        self,
        task: CrawlTask,
        state: str,
        retry_count: int,
        started: Optional[float],
        exc: Optional[BaseException] = None,
    ) -> None:
        latency = int((time.monotonic() - started) * 1000) if started is not None else 0
        self.metrics.record(
            TaskOutcome(
                task_id=task.task_id,
                url=task.url,
                label=task.label,
                state=state,
                namespace=exc.namespace if isinstance(exc, CrawlError) else None,
                retry_count=retry_count,
                latency_ms=latency,
            )
        )

    def _release_thread(self) -> None:
        release = getattr(self._driver, "release_thread", None)
        if release is not None:
            release()


def _review_key(review: Dict[str, Any]) -> Any:
    return review.get("url") or (review.get("date"), review.get("text"))


def _comment_key(comment: Dict[str, Any]) -> Any:
    return comment.get("url") or (comment.get("date"), comment.get("name"), comment.get("text"))

