from __future__ import annotations

import argparse
import importlib
import sys
from typing import Optional, Sequence

from pagecrawler.config import CrawlConfig
from pagecrawler.errors import ConfigurationError
from pagecrawler.extractor import SiteExtractor
from pagecrawler.logs import CrawlLogger, configure_logging, suppress_task_exceptions
from pagecrawler.orchestrator import Crawler
from pagecrawler.pipeline import ExtensionRegistry
from pagecrawler.state import HttpKeyValueStore, KeyValueStore, LocalKeyValueStore
from pagecrawler.storage import JsonlStorage

DEFAULT_INPUT_PATH = "input.json"
DEFAULT_STORAGE_DIR = "storage"


def _load_object(path: str, what: str):
    """Import ``package.module:Name``."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f'{what} must look like "package.module:Name", got "{path}"')
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"Cannot import {what} module {module_name}: {exc}") from exc
    try:
        return getattr(module, attr)
    except AttributeError:
        raise ConfigurationError(f"{module_name} has no attribute {attr}") from None


def _load_extractor(path: str) -> SiteExtractor:
    cls = _load_object(path, "Extractor")
    extractor = cls()
    if not isinstance(extractor, SiteExtractor):
        raise ConfigurationError(f"{path} is not a SiteExtractor")
    return extractor


def _load_plugins(modules: Sequence[str]) -> ExtensionRegistry:
    """Each plugin module exposes ``register(registry)``."""
    registry = ExtensionRegistry()
    for name in modules:
        register = _load_object(f"{name}:register", "Plugin")
        register(registry)
    return registry


def _kv_store(args: argparse.Namespace) -> KeyValueStore:
    if args.state_url:
        return HttpKeyValueStore(args.state_url, token=args.state_token)
    return LocalKeyValueStore(args.storage_dir)


def run(args: argparse.Namespace) -> int:
    config = CrawlConfig.from_file(args.input)
    if args.debug:
        config = config.with_override({"debug_log": True})
    config.validate()
    configure_logging(config.debug_log)
    logger = CrawlLogger(suppress=None if config.debug_log else suppress_task_exceptions)

    extractor = _load_extractor(args.extractor)
    registry = _load_plugins(args.plugin)
    storage = JsonlStorage(args.results)

    try:
        crawler = Crawler(
            config,
            extractor,
            storage=storage,
            kv_store=_kv_store(args),
            registry=registry,
            logger=logger,
        )
        snapshot = crawler.run()
    finally:
        storage.close()

    print(
        f"\nDONE: harvested={snapshot.harvested} fanned_out={snapshot.fanned_out} "
        f"retried={snapshot.retried} failed={snapshot.failed} total={snapshot.total_tasks}"
    )
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Crawl public organization pages into JSON records")
    parser.add_argument("--input", default=DEFAULT_INPUT_PATH, help="Path to the JSON run configuration")
    parser.add_argument("--extractor", required=True, help="SiteExtractor class, as package.module:Class")
    parser.add_argument("--plugin", action="append", default=[], help="Module exposing register(registry); repeatable")
    parser.add_argument("--results", default="results.jsonl", help="Output JSONL file path")

    parser.add_argument("--storage-dir", default=DEFAULT_STORAGE_DIR, help="Directory for the resumable crawl state")
    parser.add_argument("--state-url", default=None, help="Remote key-value store base URL (overrides --storage-dir)")
    parser.add_argument("--state-token", default=None, help="Bearer token for --state-url")

    parser.add_argument("--debug", action="store_true", help="Verbose logging, including task exceptions")

    args = parser.parse_args(argv)

    try:
        return run(args)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
