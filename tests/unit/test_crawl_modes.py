"""Cursor and checkpoint bookkeeping of the three crawl modes."""

from datetime import datetime, timezone

import pytest
from crawlstream.config.config import CheckpointPosition
from crawlstream.engine import KeysetCursorMode, PageCursorMode, WatermarkMode
from crawlstream.protocols import AuthenticationData, CrawlItem, Page

AUTH = AuthenticationData(datasource_url="https://example.test/items")


def item(item_id="1"):
    return CrawlItem(item_id=item_id)


def ts(minute):
    return datetime(2024, 1, 1, 0, minute, tzinfo=timezone.utc)


@pytest.mark.unit
class TestPageCursorMode:
    def test_starts_at_first_page_without_checkpoint(self):
        mode = PageCursorMode()
        mode.start(None)
        assert mode.page == 1
        assert mode.checkpoint == "1"
        assert mode.request(AUTH, {}, 50).cursor == 1

    def test_resumes_from_checkpoint(self):
        mode = PageCursorMode()
        mode.start("3")
        request = mode.request(AUTH, {"state": "open"}, 50)
        assert request.cursor == 3
        assert request.page_size == 50
        assert request.query_params == {"state": "open"}

    @pytest.mark.parametrize("bad", ["", "abc", "0", "-2", "1.5", "²"])
    def test_unparseable_checkpoint_falls_back_to_first_page(self, bad):
        mode = PageCursorMode()
        mode.start(bad)
        assert mode.page == 1

    def test_current_page_position(self):
        mode = PageCursorMode(CheckpointPosition.CURRENT_PAGE)
        mode.start(None)
        assert mode.record_emitted(item(), None) == "1"
        mode.advance_page(Page(records=[{}]))
        assert mode.record_emitted(item(), None) == "2"
        assert mode.final_checkpoint() == "2"

    def test_next_page_position(self):
        mode = PageCursorMode(CheckpointPosition.NEXT_PAGE)
        mode.start(None)
        assert mode.record_emitted(item(), None) == "2"
        mode.advance_page(Page(records=[{}]))
        assert mode.record_emitted(item(), None) == "3"

    def test_position_accepts_plain_string(self):
        assert PageCursorMode("next_page").position is CheckpointPosition.NEXT_PAGE


@pytest.mark.unit
class TestKeysetCursorMode:
    def test_starts_without_cursor(self):
        mode = KeysetCursorMode()
        mode.start(None)
        assert mode.cursor is None
        assert mode.checkpoint is None

    def test_checkpoint_is_last_emitted_id(self):
        mode = KeysetCursorMode()
        mode.start("100")
        assert mode.request(AUTH, {}, 10).cursor == "100"
        assert mode.record_emitted(item("101"), None) == "101"
        assert mode.request(AUTH, {}, 10).cursor == "101"

    def test_next_cursor_moves_past_skipped_records(self):
        mode = KeysetCursorMode()
        mode.start(None)
        mode.record_emitted(item("5"), None)
        mode.advance_page(Page(records=[{}], next_cursor=7))
        assert mode.cursor == "7"
        # the checkpoint still names the last item that was actually emitted
        assert mode.checkpoint == "5"

    def test_page_without_next_cursor_keeps_cursor(self):
        mode = KeysetCursorMode()
        mode.start("9")
        mode.advance_page(Page(records=[{}]))
        assert mode.cursor == "9"


@pytest.mark.unit
class TestWatermarkMode:
    def test_without_checkpoint_uses_previous_crawl_start(self):
        mode = WatermarkMode(previous_crawl_start=ts(5))
        mode.start(None)
        assert mode.since == ts(5)
        assert mode.checkpoint == "2024-01-01T00:05:00Z"

    def test_naive_previous_start_is_utc(self):
        mode = WatermarkMode(previous_crawl_start=datetime(2024, 1, 1, 0, 5))
        mode.start(None)
        assert mode.since == ts(5)

    def test_no_watermark_at_all_scans_everything(self):
        mode = WatermarkMode()
        mode.start(None)
        assert mode.since is None
        assert mode.checkpoint is None
        assert mode.request(AUTH, {}, 10).since is None

    def test_checkpoint_wins_over_previous_start(self):
        mode = WatermarkMode(previous_crawl_start=ts(1))
        mode.start("2024-01-01T00:30:00Z")
        assert mode.since == ts(30)

    def test_bad_checkpoint_falls_back_to_previous_start(self):
        mode = WatermarkMode(previous_crawl_start=ts(1))
        mode.start("last tuesday")
        assert mode.since == ts(1)

    def test_watermark_only_moves_forward(self):
        mode = WatermarkMode()
        mode.start(None)
        assert mode.record_emitted(item("a"), ts(10)) == "2024-01-01T00:10:00Z"
        assert mode.record_emitted(item("b"), ts(3)) == "2024-01-01T00:10:00Z"
        assert mode.record_emitted(item("c"), None) == "2024-01-01T00:10:00Z"
        assert mode.record_emitted(item("d"), ts(12)) == "2024-01-01T00:12:00Z"

    def test_since_is_frozen_during_scan(self):
        mode = WatermarkMode()
        mode.start("2024-01-01T00:01:00Z")
        mode.record_emitted(item(), ts(20))
        mode.advance_page(Page(records=[{}]))
        request = mode.request(AUTH, {}, 10)
        assert request.since == ts(1)
        assert request.cursor == 2

    def test_resume_restarts_at_first_page(self):
        mode = WatermarkMode()
        mode.start("2024-01-01T00:20:00Z")
        assert mode.page == 1
