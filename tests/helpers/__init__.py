"""Test helpers."""

from .fakes import InMemoryFetcher, RecordingSleep, SimpleNormalizer, make_records
from .metric_delta import metric_delta

__all__ = ["InMemoryFetcher", "RecordingSleep", "SimpleNormalizer", "make_records", "metric_delta"]
