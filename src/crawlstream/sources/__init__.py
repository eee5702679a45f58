"""Datasource plug-ins and their registry."""

from __future__ import annotations

from typing import Callable, Dict

from crawlstream.config.config import SourceConfig
from crawlstream.sources.base import CrawlSource
from crawlstream.sources.csv_parts import AppliancePartsCsvSource
from crawlstream.sources.github import GitHubIssuesSource

SOURCES: Dict[str, Callable[[SourceConfig], CrawlSource]] = {
    GitHubIssuesSource.name: GitHubIssuesSource,
    AppliancePartsCsvSource.name: AppliancePartsCsvSource,
}


def get_source(name: str, config: SourceConfig) -> CrawlSource:
    """Instantiate the registered source called ``name``."""
    try:
        factory = SOURCES[name.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown source '{name}'. Available: {', '.join(sorted(SOURCES))}") from None
    return factory(config)


__all__ = ["SOURCES", "AppliancePartsCsvSource", "CrawlSource", "GitHubIssuesSource", "get_source"]
