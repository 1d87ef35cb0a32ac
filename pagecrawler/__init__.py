"""Browser-driven crawler for public organization pages.

Key modules:
    orchestrator -- Crawler: seeding, task handling, end-of-run output
    controller   -- CrawlController worker pool with forefront queue and redelivery
    urls         -- URL classification, normalization and fan-out planning
    state        -- StateStore keyed accumulator and key-value persistence
    scroll       -- ScrollEngine and the statistics-based feed harvester
    dates        -- DateWindow and relative date parsing
    resources    -- ResourceCache request interception
    policy       -- RetryPolicy and the per-task time budget
    pipeline     -- ExtensionRegistry and the map/filter/transform/output pipeline
    records      -- EntityRecord shape and additive merge helpers
    extractor    -- SiteExtractor abstract class for site-specific parsing
    browser      -- PlaywrightDriver (sync API)
    sessions     -- SessionPool of proxy identities
    config       -- CrawlConfig input and validation
    storage      -- StorageBase and JsonlStorage output sinks
    metrics      -- MetricsCollector run statistics
    logs         -- CrawlLogger structured logging
"""
