"""
crawlstream - checkpointed crawl streaming for search connectors.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .engine import CrawlEngine
from .service import ConnectorService, CrawlRequest, IncrementalCrawlRequest

__all__ = ["__version__", "Config", "ConnectorService", "CrawlEngine", "CrawlRequest", "IncrementalCrawlRequest"]
