"""End-to-end tests for the Crawler with a fake browser driver and extractor."""

import unittest
from datetime import datetime, timedelta, timezone

from pagecrawler.config import CrawlConfig
from pagecrawler.errors import ConfigurationError, Namespace
from pagecrawler.extractor import SiteExtractor
from pagecrawler.models import Section
from pagecrawler.orchestrator import Crawler
from pagecrawler.pipeline import ExtensionRegistry
from pagecrawler.scroll import BODY_HEIGHT_JS, SCROLL_BY_JS, SCROLL_Y_JS, SELECTORS_IN_VIEW_JS
from pagecrawler.storage import MemoryStorage


class FakeResponse:
    def __init__(self, status=200):
        self.status = status


class FakeSitePage:
    """Minimal page: navigation, scrolling and the hooks the resource cache installs."""

    def __init__(self, device_mode):
        self.device_mode = device_mode
        self.url = "about:blank"
        self.step = 0
        self.closed = False

    def goto(self, url, wait_until=None, timeout=None):
        self.url = url
        return FakeResponse(200)

    def evaluate(self, script, arg=None):
        if script == SCROLL_BY_JS:
            self.step += 1
            return None
        if script in (SCROLL_Y_JS, BODY_HEIGHT_JS):
            return 100 * (self.step + 1)
        if script == SELECTORS_IN_VIEW_JS:
            return bool(arg) and self.step >= 2
        raise AssertionError(f"unexpected script {script!r}")

    def route(self, pattern, handler):
        pass

    def unroute(self, pattern, handler):
        pass

    def on(self, event, handler):
        pass

    def remove_listener(self, event, handler):
        pass

    def add_init_script(self, script):
        pass

    def is_closed(self):
        return self.closed


class FakeDriver:
    def __init__(self):
        self.pages = []
        self.cookies = []
        self.released = 0

    def open_page(self, session, device_mode):
        page = FakeSitePage(device_mode)
        self.pages.append(page)
        return page

    def set_language_cookie(self, page, language, domain):
        self.cookies.append((language, domain))

    def close_page(self, page):
        if page is not None:
            page.closed = True

    def release_thread(self):
        self.released += 1


def _ago(**kwargs):
    return (datetime.now(timezone.utc) - timedelta(**kwargs)).isoformat()


class FakeExtractor(SiteExtractor):
    """Serves a small site: one page whose feed has five posts of decreasing age."""

    posts_end_selectors = ("#feed-end",)
    reviews_end_selectors = ("#reviews-end",)
    comments_end_selectors = ("#comments-end",)

    def __init__(self):
        self.feed = [
            {"url": "https://www.site.example/owner/posts/1?ref=feed", "date": _ago(hours=1)},
            {"url": "https://www.site.example/owner/posts/2", "date": _ago(days=1)},
            {"url": "https://www.site.example/owner/posts/3", "date": _ago(days=3)},
            {"url": "https://www.site.example/owner/posts/4", "date": _ago(days=4)},
            {"url": "https://www.site.example/owner/posts/5", "date": _ago(days=5)},
        ]
        self.captcha_once = set()
        self.not_found = set()
        self.search_results = []
        self.services_error = None

    def is_captcha(self, page, device_mode):
        if page.url in self.captcha_once:
            self.captcha_once.discard(page.url)
            return True
        return False

    def is_not_found(self, page):
        return page.url in self.not_found

    def page_info(self, page):
        handle = page.url.rstrip("/").rsplit("/", 1)[-1]
        return {"title": handle.title(), "likes": 10, "address": {"lat": 1.5}}

    def services(self, page):
        if self.services_error is not None:
            raise self.services_error
        return [{"title": "Delivery"}]

    def reviews_summary(self, page):
        return 4.5, 2

    def collect_reviews(self, page):
        return [{"text": "good", "date": _ago(hours=2)}, {"text": "fine", "date": _ago(days=1)}]

    def collect_posts(self, page):
        return self.feed[: 3 * (page.step + 1)]

    def post_content(self, page):
        return {"postText": f"text of {page.url}"}

    def collect_comments(self, page, mode):
        return [
            {"url": f"{page.url}#c1", "text": "first", "date": _ago(hours=1)},
            {"url": f"{page.url}#c2", "text": "second", "date": _ago(hours=2)},
        ]

    def pages_from_search(self, page, limit):
        return list(self.search_results)


def _crawler(raw, extractor=None, registry=None):
    config = CrawlConfig.from_dict({"maxConcurrency": 2, **raw})
    driver = FakeDriver()
    storage = MemoryStorage()
    crawler = Crawler(
        config,
        extractor or FakeExtractor(),
        driver=driver,
        storage=storage,
        registry=registry,
        scroll_sleep_secs=0,
    )
    return crawler, driver, storage


class TestEndToEnd(unittest.TestCase):
    """A page start URL fans out into sections and posts and yields one record."""

    def test_posts_newer_than_two_days(self):
        crawler, driver, storage = _crawler(
            {
                "startUrls": ["https://site.example/owner"],
                "maxPosts": 2,
                "minPostDate": "2 days",
                "scrapeReviews": False,
                "scrapeServices": False,
            }
        )
        snapshot = crawler.run()

        visited = [page.url for page in driver.pages]
        self.assertIn("https://m.site.example/pg/owner", visited)
        self.assertIn("https://m.site.example/pg/owner/posts", visited)
        self.assertIn("https://www.site.example/owner/posts/1", visited)
        self.assertIn("https://www.site.example/owner/posts/2", visited)
        self.assertEqual(len(visited), 4)

        self.assertEqual(len(storage.records), 1)
        record = storage.records[0]
        self.assertEqual(record["pageUrl"], "https://www.site.example/owner")
        self.assertEqual(record["title"], "Owner")
        self.assertEqual(record["address"], {"lat": 1.5, "lng": None})
        self.assertLessEqual(len(record["posts"]), 2)
        self.assertEqual(
            sorted(p["postUrl"] for p in record["posts"]),
            ["https://www.site.example/owner/posts/1", "https://www.site.example/owner/posts/2"],
        )
        self.assertEqual(record["#version"], 4)
        self.assertIn("#finishedAt", record)

        comments = record["posts"][0]["postComments"]
        self.assertEqual(comments["count"], 2)
        self.assertEqual(comments["mode"], "RANKED_THREADED")
        self.assertEqual(len(comments["comments"]), 2)

        self.assertEqual(snapshot.harvested, 4)
        self.assertEqual(snapshot.failed, 0)
        self.assertEqual(driver.released, 2)
        self.assertTrue(all(page.closed for page in driver.pages))
        self.assertIn(("en-US", "site.example"), driver.cookies)

    def test_sections_and_recoverable_failures(self):
        extractor = FakeExtractor()
        extractor.services_error = RuntimeError("services layout changed")
        crawler, driver, storage = _crawler(
            {"startUrls": ["https://site.example/owner"], "maxPosts": 0, "scrapeAbout": True},
            extractor,
        )
        snapshot = crawler.run()

        record = storage.records[0]
        self.assertNotIn("services", record)
        self.assertEqual(record["reviews"]["average"], 4.5)
        self.assertEqual(len(record["reviews"]["reviews"]), 2)
        self.assertEqual(record["posts"], [])
        # home, posts, about, reviews, services
        self.assertEqual(snapshot.harvested, 5)

    def test_post_start_url(self):
        crawler, driver, storage = _crawler(
            {
                "startUrls": ["https://site.example/owner/posts/2?ref=share"],
                "scrapePosts": False,
                "scrapeReviews": False,
                "scrapeServices": False,
            }
        )
        crawler.run()
        visited = [page.url for page in driver.pages]
        self.assertEqual(sorted(visited), ["https://m.site.example/pg/owner", "https://www.site.example/owner/posts/2"])
        self.assertEqual(storage.records[0]["posts"][0]["postUrl"], "https://www.site.example/owner/posts/2")


class TestFailures(unittest.TestCase):
    """Verify session-impacting retries and terminal failures."""

    def test_captcha_is_retried(self):
        extractor = FakeExtractor()
        extractor.captcha_once.add("https://m.site.example/pg/owner")
        crawler, driver, storage = _crawler(
            {"startUrls": ["https://site.example/owner"], "scrapePosts": False, "scrapeReviews": False, "scrapeServices": False},
            extractor,
        )
        snapshot = crawler.run()

        self.assertEqual(snapshot.retried, 1)
        self.assertEqual(snapshot.by_namespace, {Namespace.CAPTCHA: 1})
        self.assertEqual(crawler.sessions.retired_count, 1)
        self.assertEqual(storage.records[0]["title"], "Owner")

    def test_not_found_is_terminal(self):
        extractor = FakeExtractor()
        extractor.not_found.add("https://m.site.example/pg/owner")
        crawler, driver, storage = _crawler(
            {"startUrls": ["https://site.example/owner"], "scrapePosts": False, "scrapeReviews": False, "scrapeServices": False},
            extractor,
        )
        snapshot = crawler.run()

        self.assertEqual(len(driver.pages), 1)
        self.assertEqual(snapshot.failed, 1)
        self.assertEqual(snapshot.by_namespace, {Namespace.NOT_FOUND: 1})
        # the seeded record is still emitted
        self.assertEqual(storage.records[0]["pageUrl"], "https://www.site.example/owner")
        self.assertIsNone(storage.records[0]["title"])

    def test_min_posts_threshold(self):
        crawler, driver, storage = _crawler(
            {
                "startUrls": ["https://site.example/owner"],
                "maxPosts": 5,
                "minPosts": 5,
                "minPostDate": "2 days",
                "maxPostComments": 0,
                "maxRequestRetries": 1,
                "scrapeReviews": False,
                "scrapeServices": False,
            }
        )
        snapshot = crawler.run()
        self.assertEqual(snapshot.by_namespace.get(Namespace.THRESHOLD), 2)
        self.assertEqual(snapshot.failed, 1)


class TestSetup(unittest.TestCase):
    """Verify configuration errors, seeding and extensions."""

    def test_invalid_configuration_before_any_page(self):
        driver = FakeDriver()
        with self.assertRaises(ConfigurationError):
            Crawler(
                CrawlConfig.from_dict({"startUrls": ["https://site.example/owner"], "language": "xx-XX"}),
                FakeExtractor(),
                driver=driver,
            )
        self.assertEqual(driver.pages, [])

    def test_unknown_extension_is_fatal(self):
        with self.assertRaises(ConfigurationError):
            _crawler({"startUrls": ["https://site.example/owner"], "extendOutputFunction": "missing"})

    def test_invalid_start_urls_are_skipped(self):
        crawler, driver, storage = _crawler(
            {"startUrls": ["https://elsewhere.example/x", "https://site.example/owner"], "scrapePosts": False}
        )
        self.assertEqual(crawler.seed(), 1)

    def test_no_valid_start_urls(self):
        crawler, driver, storage = _crawler({"startUrls": ["https://elsewhere.example/x"]})
        with self.assertRaises(ConfigurationError):
            crawler.seed()

    def test_overrides_apply_to_fanned_out_tasks(self):
        crawler, driver, storage = _crawler(
            {
                "startUrls": [{"url": "https://site.example/owner", "override": {"scrapeReviews": False, "scrapeServices": False}}],
            }
        )
        crawler.seed()
        tasks = []
        crawler.controller.run(lambda task, retry: tasks.append(task))

        self.assertEqual(sorted(t.section.value for t in tasks), [Section.HOME.value, Section.POSTS.value])
        for task in tasks:
            self.assertEqual(task.override, {"scrapeReviews": False, "scrapeServices": False})

    def test_search_fans_out(self):
        extractor = FakeExtractor()
        extractor.search_results = [
            "https://site.example/alpha",
            "https://site.example/beta",
            "https://elsewhere.example/x",
        ]
        crawler, driver, storage = _crawler(
            {"searchPages": ["coffee"], "scrapePosts": False, "scrapeReviews": False, "scrapeServices": False},
            extractor,
        )
        snapshot = crawler.run()
        self.assertEqual(sorted(r["title"] for r in storage.records), ["Alpha", "Beta"])
        self.assertEqual(snapshot.fanned_out, 1)

    def test_extensions(self):
        registry = ExtensionRegistry()
        labels = []

        @registry.register("titles_only")
        def titles_only(params):
            return {"title": params["item"]["title"], "custom": params["custom_data"].get("tag")}

        @registry.register("hooks")
        def hooks(params):
            labels.append(params["label"])

        crawler, driver, storage = _crawler(
            {
                "startUrls": ["https://site.example/owner"],
                "scrapePosts": False,
                "scrapeReviews": False,
                "scrapeServices": False,
                "extendOutputFunction": "titles_only",
                "extendScraperFunction": "hooks",
                "customData": {"tag": "x"},
            },
            registry=registry,
        )
        crawler.run()

        self.assertEqual(len(storage.records), 1)
        self.assertEqual(storage.records[0]["title"], "Owner")
        self.assertEqual(storage.records[0]["custom"], "x")
        self.assertEqual(storage.records[0]["#version"], 4)
        self.assertNotIn("posts", storage.records[0])
        self.assertEqual(labels, ["SETUP", "HANDLE", "FINISH"])
        self.assertEqual(crawler.controller.pending, 0)

    def test_failing_handle_hook_still_closes_the_page(self):
        registry = ExtensionRegistry()

        @registry.register("broken")
        def broken(params):
            if params["label"] == "HANDLE":
                raise RuntimeError("hook failed")

        crawler, driver, storage = _crawler(
            {
                "startUrls": ["https://site.example/owner"],
                "scrapePosts": False,
                "scrapeReviews": False,
                "scrapeServices": False,
                "extendScraperFunction": "broken",
            },
            registry=registry,
        )
        snapshot = crawler.run()

        self.assertEqual(len(driver.pages), 1)
        self.assertTrue(all(page.closed for page in driver.pages))
        self.assertEqual(snapshot.failed, 0)
        self.assertEqual(snapshot.harvested, 1)
        self.assertEqual(storage.records[0]["title"], "Owner")


if __name__ == "__main__":
    unittest.main()
