"""
Orchestrator-facing connector service.

``ConnectorService`` is what a transport layer (gRPC, HTTP, the CLI) calls.
Crawl operations are async iterators of ``StreamBit``; the engine runs in its
own task and hands bits over a bounded queue, so the consumer's pace
throttles the crawl. Closing the iterator early cancels the crawl.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from crawlstream import __version__
from crawlstream.config.config import Config, settings
from crawlstream.engine import CrawlEngine, CrawlMode
from crawlstream.errors import ConfigurationError, CrawlFault
from crawlstream.protocols import (
    AuthenticationData,
    CrawlOutcome,
    DataSourceSchema,
    OperationResult,
    RetryDetails,
    RetryType,
    StreamBit,
)
from crawlstream.retry import RetryPolicy, fetch_with_retry
from crawlstream.sinks import QueueSink
from crawlstream.sources.base import CrawlSource

logger = structlog.get_logger(__name__)


# --- Requests ---


@dataclass(frozen=True)
class CrawlRequest:
    auth: AuthenticationData
    custom_configuration: str = ""
    checkpoint: Optional[str] = None


@dataclass(frozen=True)
class IncrementalCrawlRequest(CrawlRequest):
    previous_crawl_start: Optional[datetime] = None


# --- Custom configuration ---


class AdditionalParameters(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query_parameters: Dict[str, Any] = Field(default_factory=dict, alias="QueryParameters")


class CustomConfiguration(BaseModel):
    """``{"AdditionalParameters": {"QueryParameters": {...}}}`` as entered when the connection is created."""

    model_config = ConfigDict(populate_by_name=True)

    additional_parameters: AdditionalParameters = Field(
        default_factory=AdditionalParameters, alias="AdditionalParameters"
    )


def parse_query_parameters(raw: Optional[str]) -> Dict[str, Any]:
    """Extract the query parameters from a custom configuration JSON string."""
    if raw is None or not raw.strip():
        return {}
    try:
        parsed = CustomConfiguration.model_validate_json(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid custom configuration: {e.errors()[0]['msg']}") from e
    return dict(parsed.additional_parameters.query_parameters)


# --- Service ---


class ConnectorService:
    """Connection management and crawl operations for one datasource."""

    def __init__(
        self,
        source: CrawlSource,
        config: Optional[Config] = None,
        *,
        queue_size: int = 1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.source = source
        self.config = config if config is not None else settings
        self.queue_size = queue_size
        self._sleep = sleep
        self.logger = structlog.get_logger(self.__class__.__name__)

    # --- Connection management ---

    async def validate_authentication(self, auth: AuthenticationData) -> CrawlOutcome:
        self.logger.info("Validating authentication", source=self.source.name)
        try:
            await fetch_with_retry(
                lambda: self.source.validate_authentication(auth), self.retry_policy(), sleep=self._sleep
            )
        except CrawlFault as e:
            self.logger.warning("Authentication validation failed", error=e.message, result=e.result.value)
            return e.to_outcome()
        return CrawlOutcome.success()

    def validate_custom_configuration(self, raw_json: Optional[str]) -> CrawlOutcome:
        self.logger.info("Validating custom configuration")
        try:
            parse_query_parameters(raw_json)
        except ConfigurationError as e:
            return CrawlOutcome(OperationResult.VALIDATION_FAULT, e.message)
        return CrawlOutcome.success()

    def get_datasource_schema(self) -> DataSourceSchema:
        return self.source.schema

    def get_basic_connector_info(self) -> Dict[str, Any]:
        return {
            "connector_id": self.config.connector.connector_id,
            "connector_version": self.config.connector.connector_version,
            "package_version": __version__,
            "source": self.source.name,
            "supports_incremental": self.source.supports_incremental,
        }

    def health_check(self) -> CrawlOutcome:
        return CrawlOutcome.success("healthy")

    # --- Crawls ---

    def start_full_crawl(
        self, request: CrawlRequest, *, cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[StreamBit]:
        return self._stream(request, lambda: self.source.full_crawl_mode(self.config.crawl), cancel_event)

    def start_incremental_crawl(
        self, request: IncrementalCrawlRequest, *, cancel_event: Optional[asyncio.Event] = None
    ) -> AsyncIterator[StreamBit]:
        return self._stream(
            request, lambda: self.source.incremental_crawl_mode(request.previous_crawl_start), cancel_event
        )

    def retry_policy(self) -> RetryPolicy:
        crawl = self.config.crawl
        return RetryPolicy(max_attempts=crawl.max_attempts, delay_seconds=crawl.retry_delay_seconds)

    def build_engine(self, sink: QueueSink) -> CrawlEngine:
        crawl = self.config.crawl
        return CrawlEngine(
            self.source.fetcher,
            self.source.normalizer,
            sink,
            retry_policy=self.retry_policy(),
            page_size=crawl.page_size,
            authenticator=self.source if crawl.preflight_auth else None,
            sleep=self._sleep,
        )

    async def _stream(
        self,
        request: CrawlRequest,
        make_mode: Callable[[], CrawlMode],
        cancel_event: Optional[asyncio.Event],
    ) -> AsyncIterator[StreamBit]:
        try:
            query_params = parse_query_parameters(request.custom_configuration)
            mode = make_mode()
        except ConfigurationError as e:
            self.logger.error("Rejected crawl request", error=e.message)
            yield StreamBit(status=e.to_outcome(), checkpoint=request.checkpoint)
            return
        except NotImplementedError as e:
            self.logger.error("Rejected crawl request", error=str(e))
            outcome = CrawlOutcome(OperationResult.SOURCE_FAULT, str(e), RetryDetails(RetryType.NO_RETRY))
            yield StreamBit(status=outcome, checkpoint=request.checkpoint)
            return

        sink = QueueSink(self.queue_size)
        engine = self.build_engine(sink)
        crawl_task = asyncio.create_task(
            engine.run(mode, request.auth, query_params, request.checkpoint, cancel_event=cancel_event)
        )
        next_bit: Optional[asyncio.Future] = None
        try:
            while True:
                next_bit = asyncio.ensure_future(sink.queue.get())
                done, _ = await asyncio.wait({next_bit, crawl_task}, return_when=asyncio.FIRST_COMPLETED)
                if next_bit in done:
                    yield next_bit.result()
                    continue
                next_bit.cancel()
                while not sink.queue.empty():
                    yield sink.queue.get_nowait()
                crawl_task.result()
                return
        finally:
            if next_bit is not None and not next_bit.done():
                next_bit.cancel()
            if not crawl_task.done():
                crawl_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await crawl_task
