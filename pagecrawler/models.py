from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class Label(str, Enum):
    PAGE = "PAGE"
    POST = "POST"
    PHOTO = "PHOTO"
    LISTING = "LISTING"
    SEARCH = "SEARCH"


class Section(str, Enum):
    HOME = "home"
    ABOUT = "about"
    POSTS = "posts"
    REVIEWS = "reviews"
    SERVICES = "services"


class DeviceMode(str, Enum):
    MOBILE = "mobile"  # content-optimized layout
    DESKTOP = "desktop"


DEFAULT_SECTIONS = (Section.POSTS, Section.ABOUT, Section.REVIEWS, Section.SERVICES)


@dataclass(frozen=True)
class SubpageTask:
    url: str
    section: Section
    device_mode: DeviceMode = DeviceMode.MOBILE


@dataclass(frozen=True)
class CrawlTask:
    url: str
    label: Label
    section: Optional[Section] = None
    parent_ref: Optional[str] = None
    device_mode: DeviceMode = DeviceMode.MOBILE
    override: Optional[Dict[str, Any]] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    task_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def unique_key(self) -> str:
        """Dedup key: the same URL may be enqueued once per section."""
        return f"{self.label.value}:{self.section.value if self.section else ''}:{self.url}"


@dataclass(frozen=True)
class TaskOutcome:
    task_id: str
    url: str
    label: Label
    state: str
    namespace: Optional[str] = None
    retry_count: int = 0
    latency_ms: int = 0


class TaskState:
    PENDING = "pending"
    RUNNING = "running"
    FANNED_OUT = "fanned-out"
    HARVESTED = "harvested"
    FAILED_RETRYABLE = "failed-retryable"
    FAILED_TERMINAL = "failed-terminal"
