"""Tests for CrawlConfig parsing and validation."""

import json
import os
import tempfile
import unittest

from pagecrawler.config import CrawlConfig, StartUrl
from pagecrawler.errors import ConfigurationError
from pagecrawler.models import Section


class TestFromDict(unittest.TestCase):
    """Verify input coercion."""

    def test_camel_case_and_defaults(self):
        config = CrawlConfig.from_dict({"startUrls": ["https://site.example/owner"], "maxPosts": 5, "unknown": 1})
        self.assertEqual(config.start_urls, (StartUrl("https://site.example/owner"),))
        self.assertEqual(config.max_posts, 5)
        self.assertEqual(config.max_post_comments, 15)
        self.assertEqual(config.language, "en-US")

    def test_start_url_objects_and_overrides(self):
        config = CrawlConfig.from_dict(
            {
                "startUrls": [
                    {"url": "https://site.example/a", "userData": {"override": {"maxPosts": 1}}},
                    {"url": "https://site.example/b", "override": {"maxPosts": 2}},
                ]
            }
        )
        self.assertEqual(config.start_urls[0].override, {"maxPosts": 1})
        self.assertEqual(config.with_override(config.start_urls[1].override).max_posts, 2)

    def test_proxy_configuration(self):
        config = CrawlConfig.from_dict({"startUrls": ["x"], "proxyConfiguration": {"proxyUrls": ["http://p:1"]}})
        self.assertEqual(config.proxy_urls, ("http://p:1",))

    def test_unknown_site_key(self):
        with self.assertRaises(ConfigurationError):
            CrawlConfig.from_dict({"startUrls": ["x"], "site": {"domain": "a.example", "cdnHost": "c.example"}})

    def test_site_hosts(self):
        config = CrawlConfig.from_dict({"startUrls": ["x"], "site": {"domain": "a.example", "browsingHost": "m.a.example"}})
        self.assertEqual(config.site.browsing_host, "m.a.example")

    def test_invalid_start_url_entry(self):
        with self.assertRaises(ConfigurationError):
            CrawlConfig.from_dict({"startUrls": [42]})

    def test_from_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "input.json")
            with open(path, "w", encoding="utf-8") as f:
                json.dump({"startUrls": ["https://site.example/owner"]}, f)
            self.assertEqual(len(CrawlConfig.from_file(path).start_urls), 1)

            with self.assertRaises(ConfigurationError):
                CrawlConfig.from_file(os.path.join(tmp, "missing.json"))


class TestValidate(unittest.TestCase):
    """Verify that fatal configuration problems raise before any task runs."""

    def _config(self, **kwargs):
        return CrawlConfig(start_urls=(StartUrl("https://site.example/owner"),), **kwargs)

    def test_valid(self):
        windows = self._config(min_post_date="2 days").validate()
        self.assertIsNotNone(windows.posts.min_bound)
        self.assertIsNone(windows.comments.min_bound)

    def test_missing_start_urls(self):
        with self.assertRaises(ConfigurationError):
            CrawlConfig().validate()

    def test_search_only_is_fine(self):
        CrawlConfig(search_pages=("coffee",)).validate()

    def test_infinite_comments(self):
        with self.assertRaises(ConfigurationError):
            self._config(max_post_comments=float("inf")).validate()

    def test_negative_limits(self):
        with self.assertRaises(ConfigurationError):
            self._config(max_posts=-1).validate()

    def test_non_integer_concurrency(self):
        with self.assertRaises(ConfigurationError):
            self._config(max_concurrency="4").validate()

    def test_language(self):
        with self.assertRaises(ConfigurationError):
            self._config(language="xx-XX").validate()

    def test_comments_mode(self):
        with self.assertRaises(ConfigurationError):
            self._config(comments_mode="LOUDEST").validate()

    def test_inverted_dates(self):
        with self.assertRaises(ConfigurationError):
            self._config(min_post_date="2024-02-01", max_post_date="2024-01-01").validate()


class TestDerived(unittest.TestCase):
    """Verify sections and proxy country."""

    def test_sections(self):
        config = CrawlConfig(scrape_about=True, scrape_services=False)
        self.assertEqual(config.sections(), [Section.POSTS, Section.ABOUT, Section.REVIEWS])

    def test_country(self):
        self.assertIsNone(CrawlConfig(language="de-DE").country)
        self.assertEqual(CrawlConfig(language="de-DE", country_code=True).country, "DE")


if __name__ == "__main__":
    unittest.main()
