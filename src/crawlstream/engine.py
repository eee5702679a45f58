"""
The crawl streaming engine.

One ``CrawlEngine`` drives every crawl. How the source is paginated and what
the checkpoint means are delegated to a ``CrawlMode``:

- ``PageCursorMode``: full crawl over a page-numbered source
- ``KeysetCursorMode``: full crawl where the last emitted id is the cursor
- ``WatermarkMode``: incremental crawl over records modified since a timestamp

Pages are fetched strictly in sequence. Each record is normalized and emitted
together with the checkpoint that resumes the crawl at or before it. Faults
end the stream with a terminal status bit rather than an exception.
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping, Optional

import structlog

from crawlstream.checkpoint import (
    FIRST_PAGE,
    as_utc,
    decode_keyset,
    decode_page,
    decode_watermark,
    encode_keyset,
    encode_page,
    encode_watermark,
)
from crawlstream.config.config import CheckpointPosition
from crawlstream.errors import AuthenticationError, CheckpointError, CrawlFault, NormalizationError
from crawlstream.normalizer import RecordNormalizer
from crawlstream.observability import bind_crawl_context, increment
from crawlstream.protocols import (
    AuthenticationData,
    AuthenticationValidator,
    CrawlItem,
    CrawlOutcome,
    Page,
    PageFetcher,
    PageRequest,
    StreamBit,
    StreamSink,
)
from crawlstream.retry import RetryPolicy, fetch_with_retry

logger = structlog.get_logger(__name__)


# ============================================================================
# Crawl modes
# ============================================================================


class CrawlMode(ABC):
    """
    Pagination strategy for one crawl.

    A mode instance owns the cursor and the checkpoint for a single run and
    must not be shared between crawls.
    """

    name: str = "full"

    def __init__(self) -> None:
        self.checkpoint: Optional[str] = None

    @abstractmethod
    def start(self, checkpoint: Optional[str]) -> None:
        """Position the cursor from a caller-supplied checkpoint."""

    @abstractmethod
    def request(self, auth: AuthenticationData, query_params: Mapping[str, Any], page_size: int) -> PageRequest:
        """Build the request for the page at the current cursor."""

    @abstractmethod
    def record_emitted(self, item: CrawlItem, modified_at: Optional[datetime]) -> Optional[str]:
        """Advance past an emitted item and return the checkpoint it carries."""

    @abstractmethod
    def advance_page(self, page: Page) -> None:
        """Move the cursor to the page after ``page``."""

    def final_checkpoint(self) -> Optional[str]:
        return self.checkpoint

    def _fallback(self, checkpoint: Optional[str], error: CheckpointError) -> None:
        if checkpoint:
            logger.warning(
                "Unparseable checkpoint, starting from default", mode=self.name, checkpoint=checkpoint, error=str(error)
            )


class PageCursorMode(CrawlMode):
    """Full crawl over a source addressed by page number, starting at page 1."""

    name = "full"

    def __init__(self, position: CheckpointPosition = CheckpointPosition.CURRENT_PAGE) -> None:
        super().__init__()
        self.position = CheckpointPosition(position)
        self.page = FIRST_PAGE

    def start(self, checkpoint: Optional[str]) -> None:
        try:
            self.page = decode_page(checkpoint)
        except CheckpointError as e:
            self._fallback(checkpoint, e)
            self.page = FIRST_PAGE
        self.checkpoint = encode_page(self.page)

    def request(self, auth: AuthenticationData, query_params: Mapping[str, Any], page_size: int) -> PageRequest:
        return PageRequest(auth=auth, query_params=query_params, cursor=self.page, page_size=page_size)

    def record_emitted(self, item: CrawlItem, modified_at: Optional[datetime]) -> Optional[str]:
        if self.position is CheckpointPosition.NEXT_PAGE:
            self.checkpoint = encode_page(self.page + 1)
        else:
            self.checkpoint = encode_page(self.page)
        return self.checkpoint

    def advance_page(self, page: Page) -> None:
        self.page += 1

    def final_checkpoint(self) -> Optional[str]:
        return encode_page(self.page)


class KeysetCursorMode(CrawlMode):
    """Full crawl where the id of the last emitted item is the resume cursor."""

    name = "full"

    def __init__(self) -> None:
        super().__init__()
        self.cursor: Optional[str] = None

    def start(self, checkpoint: Optional[str]) -> None:
        try:
            self.cursor = decode_keyset(checkpoint)
        except CheckpointError as e:
            self._fallback(checkpoint, e)
            self.cursor = None
        self.checkpoint = self.cursor

    def request(self, auth: AuthenticationData, query_params: Mapping[str, Any], page_size: int) -> PageRequest:
        return PageRequest(auth=auth, query_params=query_params, cursor=self.cursor, page_size=page_size)

    def record_emitted(self, item: CrawlItem, modified_at: Optional[datetime]) -> Optional[str]:
        self.checkpoint = encode_keyset(item.item_id)
        self.cursor = self.checkpoint
        return self.checkpoint

    def advance_page(self, page: Page) -> None:
        if page.next_cursor is not None:
            self.cursor = str(page.next_cursor)


class WatermarkMode(CrawlMode):
    """
    Incremental crawl over records modified at or after a watermark.

    ``since`` is frozen for the whole scan so that page numbers keep pointing
    at the same result set; only the reported watermark moves, and only
    forward.
    """

    name = "incremental"

    def __init__(self, previous_crawl_start: Optional[datetime] = None) -> None:
        super().__init__()
        self.previous_crawl_start = as_utc(previous_crawl_start) if previous_crawl_start else None
        self.watermark: Optional[datetime] = None
        self.since: Optional[datetime] = None
        self.page = FIRST_PAGE

    def start(self, checkpoint: Optional[str]) -> None:
        try:
            self.watermark = decode_watermark(checkpoint)
        except CheckpointError as e:
            self._fallback(checkpoint, e)
            self.watermark = self.previous_crawl_start
        self.since = self.watermark
        self.page = FIRST_PAGE
        self.checkpoint = encode_watermark(self.watermark) if self.watermark else None

    def request(self, auth: AuthenticationData, query_params: Mapping[str, Any], page_size: int) -> PageRequest:
        return PageRequest(
            auth=auth, query_params=query_params, cursor=self.page, since=self.since, page_size=page_size
        )

    def record_emitted(self, item: CrawlItem, modified_at: Optional[datetime]) -> Optional[str]:
        if modified_at is not None:
            modified_at = as_utc(modified_at)
            if self.watermark is None or modified_at > self.watermark:
                self.watermark = modified_at
        if self.watermark is not None:
            self.checkpoint = encode_watermark(self.watermark)
        return self.checkpoint

    def advance_page(self, page: Page) -> None:
        self.page += 1


# ============================================================================
# Engine
# ============================================================================


@dataclass
class CrawlStats:
    items: int = 0
    validation_faults: int = 0
    pages: int = 0
    last_item_id: Optional[str] = None


class CrawlEngine:
    """
    Drives one crawl from a starting checkpoint to a terminal status.

    The engine knows nothing about the datasource: it talks to a
    ``PageFetcher``, a ``RecordNormalizer`` and a ``StreamSink``. Awaiting
    ``sink.emit`` is the only buffering; a slow consumer slows the crawl.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        normalizer: RecordNormalizer,
        sink: StreamSink,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        page_size: int = 100,
        authenticator: Optional[AuthenticationValidator] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.fetcher = fetcher
        self.normalizer = normalizer
        self.sink = sink
        self.retry_policy = retry_policy or RetryPolicy()
        self.page_size = page_size
        self.authenticator = authenticator
        self._sleep = sleep
        self.stats = CrawlStats()
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def run(
        self,
        mode: CrawlMode,
        auth: AuthenticationData,
        query_params: Optional[Mapping[str, Any]] = None,
        checkpoint: Optional[str] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        crawl_id: Optional[str] = None,
    ) -> Optional[CrawlOutcome]:
        """
        Run the crawl to completion.

        Returns the terminal outcome that was emitted, or None when the crawl
        was cancelled through ``cancel_event`` (nothing is emitted then).
        Task cancellation propagates as ``asyncio.CancelledError``.
        """
        crawl_id = crawl_id or uuid.uuid4().hex
        self.stats = CrawlStats()
        with bind_crawl_context(crawl_id, mode.name):
            self.logger.info("Crawl started", checkpoint=checkpoint, page_size=self.page_size)
            outcome = await self._crawl(mode, auth, dict(query_params or {}), checkpoint, cancel_event)
            if outcome is None:
                self.logger.info("Crawl cancelled", items=self.stats.items, last_item_id=self.stats.last_item_id)
            else:
                increment("crawls", labels={"mode": mode.name, "result": outcome.result.value})
                self.logger.info(
                    "Crawl finished",
                    result=outcome.result.value,
                    items=self.stats.items,
                    validation_faults=self.stats.validation_faults,
                    pages=self.stats.pages,
                    last_item_id=self.stats.last_item_id,
                )
            return outcome

    async def _crawl(
        self,
        mode: CrawlMode,
        auth: AuthenticationData,
        query_params: Mapping[str, Any],
        checkpoint: Optional[str],
        cancel_event: Optional[asyncio.Event],
    ) -> Optional[CrawlOutcome]:
        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        if self.authenticator is not None:
            rejected = await self._preflight(self.authenticator, auth)
            if rejected is not None:
                return await self._close(rejected, checkpoint, cancelled)

        mode.start(checkpoint)

        while True:
            if cancelled():
                return None

            request = mode.request(auth, query_params, self.page_size)
            try:
                page = await fetch_with_retry(lambda: self.fetcher.fetch(request), self.retry_policy, sleep=self._sleep)
            except CrawlFault as e:
                return await self._close(e.to_outcome(), mode.checkpoint, cancelled)

            self.stats.pages += 1
            if page.is_empty:
                return await self._close(CrawlOutcome.success(), mode.final_checkpoint(), cancelled)

            for record in page.records:
                if cancelled():
                    return None
                await self.sink.emit(self._process_record(mode, record))

            mode.advance_page(page)
            if not page.has_more:
                return await self._close(CrawlOutcome.success(), mode.final_checkpoint(), cancelled)

    async def _preflight(
        self, authenticator: AuthenticationValidator, auth: AuthenticationData
    ) -> Optional[CrawlOutcome]:
        """Outcome that ends the crawl before the first fetch, or None when the credentials are usable."""
        try:
            await fetch_with_retry(
                lambda: authenticator.validate_authentication(auth), self.retry_policy, sleep=self._sleep
            )
        except AuthenticationError as e:
            self.logger.warning("Authentication rejected before crawl", error=e.message)
            return e.to_outcome()
        except CrawlFault as e:
            self.logger.warning("Authentication check failed", error=e.message, result=e.result.value)
            return e.to_outcome()
        return None

    def _process_record(self, mode: CrawlMode, record: Mapping[str, Any]) -> StreamBit:
        try:
            item = self.normalizer.normalize(record)
            modified_at = self.normalizer.modified_at(record)
        except NormalizationError as e:
            return self._validation_fault(mode, e)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            return self._validation_fault(mode, NormalizationError(f"Malformed record: {e}"))

        checkpoint = mode.record_emitted(item, modified_at)
        self.stats.items += 1
        self.stats.last_item_id = item.item_id
        increment("items_emitted", labels={"mode": mode.name, "result": "success"})
        return StreamBit(status=CrawlOutcome.success(), item=item, checkpoint=checkpoint)

    def _validation_fault(self, mode: CrawlMode, error: NormalizationError) -> StreamBit:
        self.stats.validation_faults += 1
        increment("items_emitted", labels={"mode": mode.name, "result": error.result.value})
        self.logger.warning(
            "Record failed normalization",
            error=error.message,
            field=error.field,
            after_item_id=self.stats.last_item_id,
        )
        return StreamBit(status=error.to_outcome(), item=None, checkpoint=mode.checkpoint)

    async def _close(
        self, outcome: CrawlOutcome, checkpoint: Optional[str], cancelled: Callable[[], bool]
    ) -> Optional[CrawlOutcome]:
        if cancelled():
            return None
        if not outcome.is_success:
            self.logger.error(
                "Crawl ended with fault",
                result=outcome.result.value,
                message=outcome.message,
                retry=outcome.retry.type.value,
            )
        await self.sink.emit(StreamBit(status=outcome, item=None, checkpoint=checkpoint))
        return outcome
