"""Tests for the additive EntityRecord merge helpers."""

import unittest

from pagecrawler.records import (
    SCHEMA_VERSION,
    add_comment,
    add_post,
    add_reviews,
    add_services,
    empty_entity,
    finalize,
    find_post,
    init_entity,
    merge_profile,
    merge_unique,
    set_comment_count,
)


def _post(url="https://www.site.example/owner/posts/1"):
    return {"postUrl": url, "postText": "hello", "postComments": {"count": 0, "mode": "RANKED_THREADED", "comments": []}}


class TestInitAndProfile(unittest.TestCase):
    """Verify seeding and profile merges."""

    def test_init_on_empty_record(self):
        record = init_entity(empty_entity(), "https://www.site.example/owner", "https://m.site.example/pg/owner", "ref")
        self.assertEqual(record["pageUrl"], "https://www.site.example/owner")
        self.assertEqual(record["#url"], "https://m.site.example/pg/owner")
        self.assertEqual(record["#ref"], "ref")
        self.assertEqual(record["posts"], [])

    def test_init_keeps_collected_data(self):
        current = {**empty_entity(), "title": "Owner", "posts": [_post()]}
        record = init_entity(current, "https://www.site.example/owner", "u", None)
        self.assertEqual(record["title"], "Owner")
        self.assertEqual(len(record["posts"]), 1)

    def test_merge_profile_ignores_nulls(self):
        current = {**empty_entity(), "title": "Owner", "address": {"lat": 1.0, "lng": None}}
        record = merge_profile(current, {"title": None, "likes": 10, "address": {"lng": 2.0}})
        self.assertEqual(record["title"], "Owner")
        self.assertEqual(record["likes"], 10)
        self.assertEqual(record["address"], {"lat": 1.0, "lng": 2.0})

    def test_helpers_do_not_mutate(self):
        current = empty_entity()
        merge_profile(current, {"title": "x"})
        add_post(current, _post())
        self.assertIsNone(current["title"])
        self.assertEqual(current["posts"], [])


class TestCollections(unittest.TestCase):
    """Verify that nested collections only ever grow."""

    def test_merge_unique(self):
        self.assertEqual(merge_unique([1, {"a": 1}], [{"a": 1}, 2]), [1, {"a": 1}, 2])

    def test_services(self):
        record = add_services(empty_entity(), [{"title": "Delivery"}])
        record = add_services(record, [{"title": "Delivery"}, {"title": "Catering"}])
        self.assertEqual([s["title"] for s in record["services"]], ["Delivery", "Catering"])

    def test_reviews(self):
        record = add_reviews(empty_entity(), 4.5, 10, [{"text": "good"}])
        record = add_reviews(record, 4.6, 11, [{"text": "great"}])
        self.assertEqual(record["reviews"]["average"], 4.6)
        self.assertEqual(record["reviews"]["count"], 11)
        self.assertEqual(len(record["reviews"]["reviews"]), 2)

    def test_missing_review_summary_keeps_known_values(self):
        record = add_reviews(empty_entity(), 4.5, 10, [{"text": "good"}])
        record = add_reviews(record, None, None, [{"text": "great"}])
        self.assertEqual(record["reviews"]["average"], 4.5)
        self.assertEqual(record["reviews"]["count"], 10)
        self.assertEqual(len(record["reviews"]["reviews"]), 2)

    def test_add_post_is_idempotent(self):
        record = add_post(empty_entity(), _post())
        again = add_post(record, _post())
        self.assertEqual(len(again["posts"]), 1)

    def test_newer_posts_are_prepended(self):
        record = add_post(empty_entity(), _post("a"))
        record = add_post(record, _post("b"))
        self.assertEqual([p["postUrl"] for p in record["posts"]], ["b", "a"])

    def test_comments_and_count(self):
        url = "https://www.site.example/owner/posts/1"
        record = add_post(empty_entity(), _post(url))
        record = add_comment(record, url, {"text": "first"})
        record = add_comment(record, url, {"text": "first"})
        record = add_comment(record, url, {"text": "second"})
        record = set_comment_count(record, url, 5)
        record = set_comment_count(record, url, 3)

        thread = find_post(record, url)["postComments"]
        self.assertEqual([c["text"] for c in thread["comments"]], ["first", "second"])
        self.assertEqual(thread["count"], 5)

    def test_comment_for_unknown_post(self):
        record = add_comment(empty_entity(), "missing", {"text": "x"})
        self.assertEqual(record["posts"], [])


class TestFinalize(unittest.TestCase):
    """Verify output tagging."""

    def test_version_and_timestamp(self):
        record = finalize(empty_entity(), "2024-01-01T00:00:00+00:00")
        self.assertEqual(record["#version"], SCHEMA_VERSION)
        self.assertEqual(record["#finishedAt"], "2024-01-01T00:00:00+00:00")


if __name__ == "__main__":
    unittest.main()
