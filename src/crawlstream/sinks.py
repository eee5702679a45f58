"""
Stream sinks.

A sink accepts stream bits in order. ``emit`` may suspend; that suspension is
the back-pressure the engine relies on instead of buffering.
"""

from __future__ import annotations

import asyncio
import json
from typing import Dict, List, Optional, TextIO

import structlog

from crawlstream.checkpoint import CheckpointStore
from crawlstream.protocols import CrawlItem, ItemKind, StreamBit

logger = structlog.get_logger(__name__)


class QueueSink:
    """Hands bits to a consumer through a bounded ``asyncio.Queue``."""

    def __init__(self, maxsize: int = 1) -> None:
        if maxsize < 1:
            raise ValueError("QueueSink needs a bounded queue (maxsize >= 1)")
        self.queue: asyncio.Queue[StreamBit] = asyncio.Queue(maxsize=maxsize)

    async def emit(self, bit: StreamBit) -> None:
        await self.queue.put(bit)


class CollectingSink:
    """Keeps every bit in memory, in emission order."""

    def __init__(self) -> None:
        self.bits: List[StreamBit] = []

    async def emit(self, bit: StreamBit) -> None:
        self.bits.append(bit)

    @property
    def items(self) -> List[CrawlItem]:
        return [bit.item for bit in self.bits if bit.item is not None]

    @property
    def checkpoints(self) -> List[Optional[str]]:
        return [bit.checkpoint for bit in self.bits if bit.item is not None]

    @property
    def terminal(self) -> Optional[StreamBit]:
        if self.bits and self.bits[-1].is_terminal:
            return self.bits[-1]
        return None


class IndexSink:
    """
    A minimal index keyed by item id.

    Re-emitting an id replaces the stored item and a deletion removes it, so
    replaying part of a crawl never duplicates documents.
    """

    def __init__(self) -> None:
        self.documents: Dict[str, CrawlItem] = {}
        self.last_checkpoint: Optional[str] = None
        self.writes = 0

    async def emit(self, bit: StreamBit) -> None:
        if bit.item is not None:
            self.writes += 1
            if bit.item.kind is ItemKind.DELETION:
                self.documents.pop(bit.item.item_id, None)
            else:
                self.documents[bit.item.item_id] = bit.item
        if bit.checkpoint is not None:
            self.last_checkpoint = bit.checkpoint


class JsonLinesSink:
    """
    Writes each bit as one JSON line and optionally persists its checkpoint.

    The checkpoint is saved before ``emit`` returns, so once the engine moves
    on to the next record the previous position is already durable.
    """

    def __init__(
        self,
        stream: TextIO,
        store: Optional[CheckpointStore] = None,
        crawl_key: Optional[str] = None,
    ) -> None:
        if store is not None and not crawl_key:
            raise ValueError("crawl_key is required when a checkpoint store is given")
        self.stream = stream
        self.store = store
        self.crawl_key = crawl_key
        self.count = 0

    async def emit(self, bit: StreamBit) -> None:
        self.stream.write(json.dumps(bit.to_dict(), ensure_ascii=False) + "\n")
        self.stream.flush()
        self.count += 1
        if self.store is not None and self.crawl_key and bit.checkpoint is not None:
            await self.store.save(self.crawl_key, bit.checkpoint)
