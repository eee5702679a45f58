"""Base class for datasource plug-ins."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from crawlstream.config.config import CrawlConfig, SourceConfig
from crawlstream.engine import CrawlMode, PageCursorMode, WatermarkMode
from crawlstream.normalizer import RecordNormalizer
from crawlstream.protocols import AuthenticationData, DataSourceSchema, PageFetcher


class CrawlSource:
    """
    Bundles what the engine needs from one kind of datasource.

    The engine only ever sees ``fetcher`` and ``normalizer``; the source also
    picks the crawl mode matching its pagination style.
    """

    name: str = ""
    supports_incremental: bool = False

    def __init__(self, config: SourceConfig, fetcher: PageFetcher, normalizer: RecordNormalizer) -> None:
        self.config = config
        self.fetcher = fetcher
        self.normalizer = normalizer

    @property
    def schema(self) -> DataSourceSchema:
        return self.normalizer.schema

    def default_auth(self) -> AuthenticationData:
        """Authentication data built from configuration, for local runs."""
        token = self.config.access_token.get_secret_value() if self.config.access_token else None
        return AuthenticationData(datasource_url=self.config.datasource_url, access_token=token)

    def full_crawl_mode(self, crawl_config: CrawlConfig) -> CrawlMode:
        return PageCursorMode(crawl_config.checkpoint_position)

    def incremental_crawl_mode(self, previous_crawl_start: Optional[datetime]) -> CrawlMode:
        if not self.supports_incremental:
            raise NotImplementedError(f"Source '{self.name}' does not support incremental crawls")
        return WatermarkMode(previous_crawl_start)

    async def validate_authentication(self, auth: AuthenticationData) -> None:
        """Raise ``AuthenticationError`` when ``auth`` cannot reach the datasource."""

    async def close(self) -> None:
        pass

    async def __aenter__(self) -> CrawlSource:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
