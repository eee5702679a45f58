"""
Appliance-parts CSV datasource.

The datasource URL is a path to a CSV file with the columns ``PartNumber,
Name, Description, Price, Inventory, Appliances`` and an optional
``AccessList``. There is no page number; the last emitted ``PartNumber`` is
the cursor and each fetch returns the rows that follow it in file order.
"""

from __future__ import annotations

import asyncio
import csv
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog

from crawlstream.config.config import CrawlConfig, SourceConfig
from crawlstream.engine import CrawlMode, KeysetCursorMode
from crawlstream.errors import AuthenticationError, SourceError
from crawlstream.normalizer import RecordNormalizer, user_grants
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
from crawlstream.sources.base import CrawlSource

logger = structlog.get_logger(__name__)

KEY_COLUMN = "PartNumber"
ACCESS_LIST_COLUMN = "AccessList"
REQUIRED_COLUMNS = ("PartNumber", "Name", "Description", "Price", "Inventory", "Appliances")

APPLIANCE_PARTS_SCHEMA = DataSourceSchema(
    properties=(
        PropertyDefinition("PartNumber", PropertyType.INT64, searchable=False, queryable=True),
        PropertyDefinition("Name", PropertyType.STRING),
        PropertyDefinition("Description", PropertyType.STRING),
        PropertyDefinition("Price", PropertyType.DOUBLE, searchable=False),
        PropertyDefinition("Inventory", PropertyType.INT64, searchable=False),
        PropertyDefinition("Appliances", PropertyType.STRING_COLLECTION, queryable=True),
    )
)


class AppliancePartNormalizer(RecordNormalizer):
    schema = APPLIANCE_PARTS_SCHEMA
    collection_delimiter = ";"

    def item_id(self, record: Mapping[str, Any]) -> str:
        return str(record[KEY_COLUMN]).strip()

    def property_values(self, record: Mapping[str, Any]) -> Mapping[str, Any]:
        return {name: record[name] for name in REQUIRED_COLUMNS}

    def access_control(self, record: Mapping[str, Any]) -> Sequence[AccessEntry]:
        return user_grants((record.get(ACCESS_LIST_COLUMN) or "").split(","))

    def content(self, record: Mapping[str, Any]) -> Optional[Content]:
        description = record.get("Description")
        return Content(text=description) if description else None


def _read_rows(path: Path) -> List[Dict[str, str]]:
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        reader = csv.DictReader(f)
        missing = [column for column in REQUIRED_COLUMNS if column not in (reader.fieldnames or [])]
        if missing:
            raise SourceError(f"CSV file is missing columns: {', '.join(missing)}")
        return list(reader)


class CsvPartsFetcher:
    """Serves pages of rows following the keyset cursor."""

    async def load_rows(self, path: Path) -> List[Dict[str, str]]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, _read_rows, path)
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            raise SourceError(f"Could not read CSV datasource {path}: {e}") from e

    async def fetch(self, request: PageRequest) -> Page:
        if not request.auth.datasource_url:
            raise SourceError("No datasource path supplied")
        rows = await self.load_rows(Path(request.auth.datasource_url))

        start = 0
        if request.cursor is not None:
            cursor = str(request.cursor)
            for index, row in enumerate(rows):
                if (row.get(KEY_COLUMN) or "").strip() == cursor:
                    start = index + 1
                    break
            else:
                logger.warning("Keyset cursor not found, restarting from the first row", cursor=cursor)

        batch = rows[start : start + request.page_size]
        next_cursor = None
        if batch:
            next_cursor = (batch[-1].get(KEY_COLUMN) or "").strip() or None
        return Page(records=batch, has_more=start + len(batch) < len(rows), next_cursor=next_cursor)


class AppliancePartsCsvSource(CrawlSource):
    name = "csv"
    supports_incremental = False

    def __init__(self, config: SourceConfig) -> None:
        fetcher = CsvPartsFetcher()
        super().__init__(config, fetcher, AppliancePartNormalizer())
        self.csv_fetcher = fetcher

    def full_crawl_mode(self, crawl_config: CrawlConfig) -> CrawlMode:
        return KeysetCursorMode()

    async def validate_authentication(self, auth: AuthenticationData) -> None:
        """The file must exist and carry the expected header."""
        path = Path(auth.datasource_url) if auth.datasource_url else None
        if path is None or not path.is_file():
            raise AuthenticationError(f"Datasource file not found: {auth.datasource_url!r}")
        try:
            await self.csv_fetcher.load_rows(path)
        except SourceError as e:
            raise AuthenticationError(str(e)) from e
