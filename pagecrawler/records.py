"""EntityRecord shape and the additive merge helpers used as StateStore updates.

Every helper returns a new record and never mutates its argument: the store
replaces whole snapshots, and a reader may still hold the previous one.
Helpers only ever add nested data (posts, comments, reviews, services), so
retried tasks can re-apply them without losing what was collected before.
"""
from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional

SCHEMA_VERSION = 4

EntityRecord = Dict[str, Any]


def empty_entity() -> EntityRecord:
    return {
        "pageUrl": None,
        "#url": None,
        "#ref": None,
        "title": None,
        "likes": None,
        "messenger": None,
        "verified": None,
        "address": {"lat": None, "lng": None},
        "posts": [],
    }


def _identity(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def merge_unique(first: Iterable[Any], second: Iterable[Any]) -> List[Any]:
    """Concatenate two lists, dropping later duplicates."""
    merged: List[Any] = []
    seen = set()
    for value in list(first) + list(second):
        key = _identity(value)
        if key not in seen:
            seen.add(key)
            merged.append(value)
    return merged


def init_entity(current: Optional[EntityRecord], page_url: str, browsing_url: str, ref: Optional[str]) -> EntityRecord:
    """Seed a record; values already collected win over the defaults."""
    return {
        **empty_entity(),
        "pageUrl": page_url,
        "#url": browsing_url,
        "#ref": ref,
        **{k: v for k, v in (current or {}).items() if v is not None},
    }


def merge_profile(current: EntityRecord, fields: Dict[str, Any]) -> EntityRecord:
    """Overwrite scalar profile fields with freshly extracted non-null values."""
    fields = dict(fields)
    address = fields.pop("address", None) or {}
    merged = {**current, **{k: v for k, v in fields.items() if v is not None}}
    merged["address"] = {
        **(current.get("address") or {}),
        **{k: v for k, v in address.items() if v is not None},
    }
    return merged


def add_services(current: EntityRecord, services: List[Any]) -> EntityRecord:
    return {**current, "services": merge_unique(current.get("services") or [], services)}


def add_reviews(current: EntityRecord, average: Any, count: Any, reviews: List[Any]) -> EntityRecord:
    previous = current.get("reviews") or {}
    return {
        **current,
        "reviews": {
            **previous,
            "average": previous.get("average") if average is None else average,
            "count": previous.get("count") if count is None else count,
            "reviews": merge_unique(reviews, previous.get("reviews") or []),
        },
    }


def find_post(current: Optional[EntityRecord], post_url: str) -> Optional[Dict[str, Any]]:
    for post in (current or {}).get("posts") or []:
        if post.get("postUrl") == post_url:
            return post
    return None


def add_post(current: EntityRecord, post: Dict[str, Any]) -> EntityRecord:
    """Prepend a post unless one with the same postUrl is already there."""
    if find_post(current, post.get("postUrl")) is not None:
        return current
    return {**current, "posts": [post, *(current.get("posts") or [])]}


def _update_post(current: EntityRecord, post_url: str, update) -> EntityRecord:
    posts = []
    for post in current.get("posts") or []:
        if post.get("postUrl") == post_url:
            thread = dict(post.get("postComments") or {"count": 0, "mode": None, "comments": []})
            post = {**post, "postComments": update(thread)}
        posts.append(post)
    return {**current, "posts": posts}


def add_comment(current: EntityRecord, post_url: str, comment: Dict[str, Any]) -> EntityRecord:
    def update(thread: Dict[str, Any]) -> Dict[str, Any]:
        thread["comments"] = merge_unique(thread.get("comments") or [], [comment])
        return thread

    return _update_post(current, post_url, update)


def set_comment_count(current: EntityRecord, post_url: str, count: int) -> EntityRecord:
    def update(thread: Dict[str, Any]) -> Dict[str, Any]:
        thread["count"] = max(count, thread.get("count") or 0)
        return thread

    return _update_post(current, post_url, update)


def finalize(record: EntityRecord, finished_at: str) -> EntityRecord:
    return {**record, "#version": SCHEMA_VERSION, "#finishedAt": finished_at}
