"""
GitHub issues datasource.

Pages through ``GET <datasource_url>?page=N&per_page=M&direction=asc&sort=updated``
with a bearer token. Incremental crawls add ``since=<watermark>``, which
GitHub applies to ``updated_at``.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

import aiohttp
import structlog

from crawlstream.checkpoint import encode_watermark
from crawlstream.config.config import SourceConfig
from crawlstream.errors import AuthenticationError, SourceError, TokenExpiredError
from crawlstream.normalizer import RecordNormalizer, parse_datetime
from crawlstream.protocols import (
    AccessEntry,
    AuthenticationData,
    Content,
    DataSourceSchema,
    Page,
    PageRequest,
    PropertyDefinition,
    PropertyType,
)
from crawlstream.retry import raise_for_status
from crawlstream.sources.base import CrawlSource

logger = structlog.get_logger(__name__)

GITHUB_MEDIA_TYPE = "application/vnd.github+json"

# Set by the fetcher; custom query parameters cannot override them.
RESERVED_PARAMS = frozenset({"page", "per_page", "since", "sort", "direction"})

GITHUB_ISSUES_SCHEMA = DataSourceSchema(
    properties=(
        PropertyDefinition("Id", PropertyType.INT64, queryable=True),
        PropertyDefinition("Url", PropertyType.STRING, searchable=False),
        PropertyDefinition("NodeId", PropertyType.STRING, searchable=False),
        PropertyDefinition("Title", PropertyType.STRING),
        PropertyDefinition("State", PropertyType.STRING, queryable=True),
        PropertyDefinition("Locked", PropertyType.BOOLEAN, searchable=False),
        PropertyDefinition("Body", PropertyType.STRING, nullable=True),
        PropertyDefinition("Comments", PropertyType.INT64, searchable=False),
        PropertyDefinition("Labels", PropertyType.STRING_COLLECTION, queryable=True),
        PropertyDefinition("CreatedAt", PropertyType.DATETIME, searchable=False, queryable=True),
        PropertyDefinition("UpdatedAt", PropertyType.DATETIME, searchable=False, queryable=True),
        PropertyDefinition("ClosedAt", PropertyType.DATETIME, nullable=True, searchable=False),
    )
)


class GitHubIssueNormalizer(RecordNormalizer):
    """Maps a GitHub issue JSON object onto the issues schema. Issues are public to everyone."""

    schema = GITHUB_ISSUES_SCHEMA

    def item_id(self, record: Mapping[str, Any]) -> str:
        return str(record["id"])

    def property_values(self, record: Mapping[str, Any]) -> Mapping[str, Any]:
        return {
            "Id": record["id"],
            "Url": record["url"],
            "NodeId": record["node_id"],
            "Title": record["title"],
            "State": record["state"],
            "Locked": record["locked"],
            "Body": record.get("body"),
            "Comments": record["comments"],
            "Labels": self._label_names(record.get("labels") or []),
            "CreatedAt": record["created_at"],
            "UpdatedAt": record["updated_at"],
            "ClosedAt": record.get("closed_at"),
        }

    def access_control(self, record: Mapping[str, Any]) -> Sequence[AccessEntry]:
        return (AccessEntry.grant_everyone(),)

    def content(self, record: Mapping[str, Any]) -> Optional[Content]:
        body = record.get("body")
        if isinstance(body, str) and body:
            return Content(text=body)
        return None

    def modified_at(self, record: Mapping[str, Any]) -> Optional[datetime]:
        updated_at = record.get("updated_at")
        if updated_at is None:
            return None
        return parse_datetime(updated_at, field="updated_at")

    @staticmethod
    def _label_names(labels: List[Any]) -> List[Any]:
        return [label.get("name") if isinstance(label, Mapping) else label for label in labels]


class GitHubIssuesFetcher:
    """aiohttp-based page fetcher for the GitHub issues REST endpoint."""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        user_agent: str = "crawlstream/0.1.0",
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.timeout = timeout
        self.user_agent = user_agent
        self.session = session
        self._owns_session = session is None

    async def initialize(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self.session

    async def close(self) -> None:
        if self.session is not None and self._owns_session and not self.session.closed:
            await self.session.close()
        self.session = None

    def _headers(self, auth: AuthenticationData) -> Dict[str, str]:
        headers = {"Accept": GITHUB_MEDIA_TYPE, "User-Agent": self.user_agent}
        if auth.access_token:
            headers["Authorization"] = f"Bearer {auth.access_token}"
        return headers

    @staticmethod
    def build_params(request: PageRequest) -> Dict[str, str]:
        params = {str(k): str(v) for k, v in request.query_params.items() if k not in RESERVED_PARAMS}
        params.update(
            {
                "page": str(request.cursor or 1),
                "per_page": str(request.page_size),
                "direction": "asc",
                "sort": "updated",
            }
        )
        if request.since is not None:
            params["since"] = encode_watermark(request.since)
        return params

    async def fetch(self, request: PageRequest) -> Page:
        if not request.auth.datasource_url:
            raise SourceError("No datasource URL supplied")
        session = await self.initialize()

        params = self.build_params(request)
        try:
            async with session.get(
                request.auth.datasource_url, params=params, headers=self._headers(request.auth)
            ) as response:
                raise_for_status(response.status, response.reason or "")
                try:
                    payload = await response.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError) as e:
                    raise SourceError(f"Malformed JSON from datasource: {e}", status=response.status) from e
                has_next_link = 'rel="next"' in response.headers.get("Link", "")
                link_present = "Link" in response.headers
        except aiohttp.ClientError as e:
            raise SourceError(f"Request to datasource failed: {e}") from e
        except asyncio.TimeoutError as e:
            raise SourceError(f"Request to datasource timed out after {self.timeout}s") from e

        if not isinstance(payload, list):
            raise SourceError("Expected a JSON array of issues")

        has_more = has_next_link if link_present else len(payload) >= request.page_size
        logger.debug("Fetched page", page=params["page"], records=len(payload), has_more=has_more)
        return Page(records=payload, has_more=has_more)


class GitHubIssuesSource(CrawlSource):
    name = "github"
    supports_incremental = True

    def __init__(self, config: SourceConfig, session: Optional[aiohttp.ClientSession] = None) -> None:
        fetcher = GitHubIssuesFetcher(timeout=config.request_timeout, user_agent=config.user_agent, session=session)
        super().__init__(config, fetcher, GitHubIssueNormalizer())
        self.github_fetcher = fetcher

    async def validate_authentication(self, auth: AuthenticationData) -> None:
        """
        Read a one-item page with the supplied credentials.

        Only a rejection of the credentials is an ``AuthenticationError``.
        Transient failures surface as ``SourceError`` and are retried by the caller.
        """
        if not auth.datasource_url:
            raise AuthenticationError("Authentication failed: no datasource URL supplied")
        check = PageRequest(auth=auth, cursor=1, page_size=1)
        try:
            await self.github_fetcher.fetch(check)
        except TokenExpiredError as e:
            raise AuthenticationError("Authentication failed: credentials were rejected") from e

    async def close(self) -> None:
        await self.github_fetcher.close()
