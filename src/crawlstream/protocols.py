"""
Core contracts and dataclasses for crawlstream.

This module defines the canonical item representation streamed to the
consuming platform, the outcome attached to every stream bit, and the
protocols that pluggable datasources implement.

Architecture Overview:
- A source plug-in supplies a PageFetcher and a RecordNormalizer
- The CrawlEngine drives pagination through a CrawlMode strategy
- Every emitted item travels with a checkpoint and an outcome
- Faults are reported through the stream, never raised past the engine
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union, runtime_checkable

# ============================================================================
# Enums and Constants
# ============================================================================

EVERYONE_PRINCIPAL_ID = "EVERYONE"


class ItemKind(Enum):
    """What the platform should do with an emitted item id."""

    CONTENT = "content"
    DELETION = "deletion"


class PropertyType(Enum):
    """Declared schema type of a property value."""

    STRING = "string"
    INT64 = "int64"
    DOUBLE = "double"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    STRING_COLLECTION = "string_collection"


class AccessEffect(Enum):
    GRANT = "grant"
    DENY = "deny"


class PrincipalKind(Enum):
    USER = "user"
    GROUP = "group"
    EVERYONE = "everyone"


class OperationResult(Enum):
    """Result codes carried by every stream bit."""

    SUCCESS = "success"
    AUTH_FAULT = "auth_fault"
    SOURCE_FAULT = "source_fault"
    VALIDATION_FAULT = "validation_fault"
    TOKEN_EXPIRED = "token_expired"


class RetryType(Enum):
    """Retry guidance handed to the orchestrator."""

    NO_RETRY = "no_retry"
    STANDARD = "standard"


class ContentType(Enum):
    TEXT = "text"
    HTML = "html"


# ============================================================================
# Canonical item model
# ============================================================================

PropertyValue = Union[str, int, float, bool, datetime, List[str], None]


@dataclass(frozen=True)
class TypedValue:
    """A property value tagged with its schema type."""

    type: PropertyType
    value: PropertyValue

    def to_dict(self) -> Dict[str, Any]:
        value: Any = self.value
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, tuple):
            value = list(value)
        return {"type": self.type.value, "value": value}


@dataclass(frozen=True)
class AccessEntry:
    """One grant/deny rule for a principal on an item."""

    effect: AccessEffect
    principal_kind: PrincipalKind
    principal_id: str

    @classmethod
    def grant_everyone(cls) -> AccessEntry:
        return cls(AccessEffect.GRANT, PrincipalKind.EVERYONE, EVERYONE_PRINCIPAL_ID)

    @classmethod
    def deny_everyone(cls) -> AccessEntry:
        return cls(AccessEffect.DENY, PrincipalKind.EVERYONE, EVERYONE_PRINCIPAL_ID)

    def to_dict(self) -> Dict[str, str]:
        return {
            "effect": self.effect.value,
            "principal_kind": self.principal_kind.value,
            "principal_id": self.principal_id,
        }


@dataclass(frozen=True)
class Content:
    """Optional full-text payload of an item."""

    text: str
    content_type: ContentType = ContentType.TEXT

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.content_type.value, "text": self.text}


@dataclass(frozen=True)
class CrawlItem:
    """
    Canonical representation of one datasource record.

    Items are never mutated after emission. Re-emitting an ``item_id`` with new
    properties is an update; ``ItemKind.DELETION`` removes the id from the index.
    """

    item_id: str
    kind: ItemKind = ItemKind.CONTENT
    properties: Mapping[str, TypedValue] = field(default_factory=dict)
    access_control: tuple[AccessEntry, ...] = ()
    content: Optional[Content] = None

    def __post_init__(self) -> None:
        if not self.item_id:
            raise ValueError("item_id must be a non-empty string")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "kind": self.kind.value,
            "properties": {name: value.to_dict() for name, value in self.properties.items()},
            "access_control": [entry.to_dict() for entry in self.access_control],
            "content": self.content.to_dict() if self.content else None,
        }


# ============================================================================
# Outcomes and stream bits
# ============================================================================


@dataclass(frozen=True)
class RetryDetails:
    type: RetryType = RetryType.NO_RETRY
    max_attempts: Optional[int] = None


@dataclass(frozen=True)
class CrawlOutcome:
    """Status accompanying every emitted item and every terminal stream close."""

    result: OperationResult
    message: str = ""
    retry: RetryDetails = field(default_factory=RetryDetails)

    @classmethod
    def success(cls, message: str = "") -> CrawlOutcome:
        return cls(OperationResult.SUCCESS, message)

    @property
    def is_success(self) -> bool:
        return self.result is OperationResult.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result.value,
            "message": self.message,
            "retry": {"type": self.retry.type.value, "max_attempts": self.retry.max_attempts},
        }


@dataclass(frozen=True)
class StreamBit:
    """One ``(status, item, checkpoint)`` triple written to the stream sink."""

    status: CrawlOutcome
    item: Optional[CrawlItem] = None
    checkpoint: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        """Terminal bits carry no item; validation faults are not terminal."""
        return self.item is None and self.status.result is not OperationResult.VALIDATION_FAULT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.to_dict(),
            "item": self.item.to_dict() if self.item else None,
            "checkpoint": self.checkpoint,
        }


# ============================================================================
# Schema
# ============================================================================


@dataclass(frozen=True)
class PropertyDefinition:
    name: str
    type: PropertyType
    nullable: bool = False
    searchable: bool = True
    queryable: bool = False
    retrievable: bool = True


@dataclass(frozen=True)
class DataSourceSchema:
    """Properties a source exposes, with their declared types."""

    properties: tuple[PropertyDefinition, ...]

    def get(self, name: str) -> Optional[PropertyDefinition]:
        for definition in self.properties:
            if definition.name == name:
                return definition
        return None

    @property
    def names(self) -> List[str]:
        return [definition.name for definition in self.properties]


# ============================================================================
# Requests and pages
# ============================================================================


@dataclass(frozen=True)
class AuthenticationData:
    """Credentials and location of the datasource, as supplied by the platform."""

    datasource_url: str = ""
    access_token: Optional[str] = None


@dataclass(frozen=True)
class PageRequest:
    """Everything a PageFetcher needs to read one bounded batch."""

    auth: AuthenticationData
    query_params: Mapping[str, Any] = field(default_factory=dict)
    cursor: Optional[Union[int, str]] = None
    since: Optional[datetime] = None
    page_size: int = 100


@dataclass(frozen=True)
class Page:
    """
    One bounded batch of raw records.

    ``next_cursor`` lets keyset sources say where the following page starts,
    which may lie past records that failed normalization.
    """

    records: List[Mapping[str, Any]]
    has_more: bool = True
    next_cursor: Optional[Union[int, str]] = None

    @property
    def is_empty(self) -> bool:
        return not self.records


# ============================================================================
# Protocols
# ============================================================================


@runtime_checkable
class PageFetcher(Protocol):
    """Source-specific paginated read operation."""

    async def fetch(self, request: PageRequest) -> Page:
        """
        Read one page.

        Raises:
            TokenExpiredError: credentials were rejected by the source.
            Exception: any other failure; treated as a retryable source error.
        """
        ...


@runtime_checkable
class AuthenticationValidator(Protocol):
    async def validate_authentication(self, auth: AuthenticationData) -> None:
        """Raise AuthenticationError when the credentials cannot access the source."""
        ...


@runtime_checkable
class StreamSink(Protocol):
    """Ordered writer for stream bits; suspends the caller to signal back-pressure."""

    async def emit(self, bit: StreamBit) -> None:
        ...

