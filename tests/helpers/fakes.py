"""In-memory collaborators for engine tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from crawlstream.normalizer import RecordNormalizer, parse_datetime
from crawlstream.protocols import DataSourceSchema, Page, PageRequest, PropertyDefinition, PropertyType

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_records(count: int, start: int = 1, minutes_apart: int = 1) -> List[Dict[str, Any]]:
    """Records with ids ``start..start+count-1`` and ascending modification times."""
    return [
        {
            "id": str(n),
            "title": f"Record {n}",
            "count": str(n * 10),
            "modified_at": (BASE_TIME + timedelta(minutes=n * minutes_apart)).strftime("%Y-%m-%dT%H:%M:%SZ"),
        }
        for n in range(start, start + count)
    ]


class SimpleNormalizer(RecordNormalizer):
    schema = DataSourceSchema(
        properties=(
            PropertyDefinition("Title", PropertyType.STRING),
            PropertyDefinition("Count", PropertyType.INT64),
            PropertyDefinition("ModifiedAt", PropertyType.DATETIME, nullable=True),
        )
    )

    def item_id(self, record: Mapping[str, Any]) -> str:
        return str(record["id"])

    def property_values(self, record: Mapping[str, Any]) -> Mapping[str, Any]:
        return {"Title": record["title"], "Count": record["count"], "ModifiedAt": record.get("modified_at")}

    def is_deleted(self, record: Mapping[str, Any]) -> bool:
        return bool(record.get("deleted"))

    def modified_at(self, record: Mapping[str, Any]) -> Optional[datetime]:
        value = record.get("modified_at")
        return parse_datetime(value, field="modified_at") if value else None


class InMemoryFetcher:
    """
    Page-numbered source over a list of records.

    ``failures`` are raised one per call before any page is served. With
    ``report_has_more`` left on, every page claims more data follows and the
    crawl ends on the first empty page.
    """

    def __init__(self, records: List[Dict[str, Any]], *, failures=None, report_has_more: bool = True) -> None:
        self.records = list(records)
        self.failures = list(failures or [])
        self.report_has_more = report_has_more
        self.calls: List[PageRequest] = []

    async def fetch(self, request: PageRequest) -> Page:
        self.calls.append(request)
        if self.failures:
            raise self.failures.pop(0)

        records = self.records
        if request.since is not None:
            records = [r for r in records if parse_datetime(r["modified_at"]) >= request.since]
        page = int(request.cursor or 1)
        start = (page - 1) * request.page_size
        batch = records[start : start + request.page_size]
        has_more = True if self.report_has_more else start + len(batch) < len(records)
        return Page(records=batch, has_more=has_more)


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns immediately."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
