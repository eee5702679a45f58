"""
Record normalization.

A ``RecordNormalizer`` turns one raw source record into a ``CrawlItem``. It
is pure: no I/O, no clock, no shared state. Sources subclass it and declare
how ids, property values, access control and content are read from a record;
type checking against the schema and the empty-ACL rule live here.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from crawlstream.checkpoint import as_utc
from crawlstream.errors import NormalizationError
from crawlstream.protocols import (
    AccessEffect,
    AccessEntry,
    Content,
    CrawlItem,
    DataSourceSchema,
    ItemKind,
    PrincipalKind,
    PropertyType,
    TypedValue,
)

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

_TRUE_STRINGS = {"true"}
_FALSE_STRINGS = {"false"}
_SCALAR_TYPES = (PropertyType.INT64, PropertyType.DOUBLE, PropertyType.BOOLEAN, PropertyType.DATETIME)


def parse_datetime(value: Any, field: Optional[str] = None) -> datetime:
    """Parse a datetime or ISO-8601 string into an aware UTC datetime."""
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text[-1] in "Zz":
            text = text[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(text))
        except ValueError as e:
            raise NormalizationError(f"Invalid datetime value {value!r}", field=field) from e
    raise NormalizationError(f"Expected a datetime, got {type(value).__name__}", field=field)


def coerce_value(value: Any, prop_type: PropertyType, field: Optional[str] = None, delimiter: str = ";") -> Any:
    """
    Convert ``value`` to the Python representation of ``prop_type``.

    Only lossless conversions are accepted: numeric strings for numbers,
    ``"true"``/``"false"`` for booleans, ISO-8601 strings for datetimes and a
    delimited string for string collections. Anything else raises
    ``NormalizationError``.
    """
    if prop_type is PropertyType.STRING:
        if isinstance(value, str):
            return value
        raise NormalizationError(f"Expected a string, got {type(value).__name__}", field=field)

    if prop_type is PropertyType.INT64:
        if isinstance(value, bool):
            raise NormalizationError("Expected an int64, got a boolean", field=field)
        if isinstance(value, int):
            result = value
        elif isinstance(value, str):
            try:
                result = int(value.strip())
            except ValueError as e:
                raise NormalizationError(f"Invalid int64 value {value!r}", field=field) from e
        else:
            raise NormalizationError(f"Expected an int64, got {type(value).__name__}", field=field)
        if not INT64_MIN <= result <= INT64_MAX:
            raise NormalizationError(f"Value {result} is out of int64 range", field=field)
        return result

    if prop_type is PropertyType.DOUBLE:
        if isinstance(value, bool):
            raise NormalizationError("Expected a double, got a boolean", field=field)
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError as e:
                raise NormalizationError(f"Invalid double value {value!r}", field=field) from e
        raise NormalizationError(f"Expected a double, got {type(value).__name__}", field=field)

    if prop_type is PropertyType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
        raise NormalizationError(f"Invalid boolean value {value!r}", field=field)

    if prop_type is PropertyType.DATETIME:
        return parse_datetime(value, field=field)

    if prop_type is PropertyType.STRING_COLLECTION:
        if isinstance(value, str):
            return [part.strip() for part in value.split(delimiter) if part.strip()]
        if isinstance(value, (list, tuple)):
            if not all(isinstance(part, str) for part in value):
                raise NormalizationError("String collection contains non-string values", field=field)
            return list(value)
        raise NormalizationError(f"Expected a string collection, got {type(value).__name__}", field=field)

    raise NormalizationError(f"Unsupported property type {prop_type}", field=field)


def user_grants(user_ids: Iterable[str]) -> Tuple[AccessEntry, ...]:
    """Grant entries for each non-blank user id."""
    return tuple(
        AccessEntry(AccessEffect.GRANT, PrincipalKind.USER, user_id.strip()) for user_id in user_ids if user_id.strip()
    )


class RecordNormalizer:
    """
    Base class for per-source record normalizers.

    Subclasses set ``schema`` and implement ``item_id`` and
    ``property_values``. The remaining hooks have safe defaults: no access
    entries (which normalizes to deny-everyone), no content, never deleted and
    no modification time.
    """

    schema: DataSourceSchema = DataSourceSchema(properties=())
    collection_delimiter: str = ";"

    def item_id(self, record: Mapping[str, Any]) -> str:
        raise NotImplementedError

    def property_values(self, record: Mapping[str, Any]) -> Mapping[str, Any]:
        raise NotImplementedError

    def access_control(self, record: Mapping[str, Any]) -> Sequence[AccessEntry]:
        return ()

    def content(self, record: Mapping[str, Any]) -> Optional[Content]:
        return None

    def is_deleted(self, record: Mapping[str, Any]) -> bool:
        return False

    def modified_at(self, record: Mapping[str, Any]) -> Optional[datetime]:
        return None

    def normalize(self, record: Mapping[str, Any]) -> CrawlItem:
        try:
            item_id = self.item_id(record)
        except (KeyError, TypeError, ValueError) as e:
            raise NormalizationError(f"Record has no usable id: {e}", field="id") from e
        if not isinstance(item_id, str) or not item_id:
            raise NormalizationError("Record id must be a non-empty string", field="id")

        if self.is_deleted(record):
            return CrawlItem(item_id=item_id, kind=ItemKind.DELETION)

        properties = self._typed_properties(record)
        acl = tuple(self.access_control(record)) or (AccessEntry.deny_everyone(),)
        return CrawlItem(
            item_id=item_id,
            kind=ItemKind.CONTENT,
            properties=properties,
            access_control=acl,
            content=self.content(record),
        )

    def _typed_properties(self, record: Mapping[str, Any]) -> dict:
        try:
            values = self.property_values(record)
        except (KeyError, TypeError, ValueError) as e:
            raise NormalizationError(f"Record is missing a field: {e}") from e

        unknown: List[str] = sorted(set(values) - set(self.schema.names))
        if unknown:
            raise NormalizationError(f"Undeclared properties: {', '.join(unknown)}", field=unknown[0])

        properties = {}
        for definition in self.schema.properties:
            raw = values.get(definition.name)
            if raw is None or (isinstance(raw, str) and not raw.strip() and definition.type in _SCALAR_TYPES):
                if definition.nullable:
                    properties[definition.name] = TypedValue(definition.type, None)
                    continue
                raise NormalizationError(f"Required property {definition.name} is missing", field=definition.name)
            coerced = coerce_value(raw, definition.type, field=definition.name, delimiter=self.collection_delimiter)
            properties[definition.name] = TypedValue(definition.type, coerced)
        return properties
