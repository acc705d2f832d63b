import asyncio
import json
import logging

import pytest

from bazaar_crawler.core.context import get_log_context, scan_context, target_context
from bazaar_crawler.core.logging_config import (
    PlaywrightPipeFilter,
    ScanContextFilter,
    TextFormatter,
    build_formatter,
)
from bazaar_crawler.schemas.scan import TargetKind
from bazaar_crawler.services.targets import detail_target


def make_record(msg="fetched page", *args):
    return logging.LogRecord("bazaar_crawler.test", logging.INFO, __file__, 1, msg, args, None)


class TestScanContext:
    def test_empty_outside_a_scan(self):
        assert get_log_context() == {"scan_id": "", "scan_kind": "", "target": ""}

    def test_nested_contexts_are_restored(self):
        with scan_context("bans-1a2b3c4d", "bans"):
            with target_context("bans-page#0"):
                assert get_log_context()["target"] == "bans-page#0"
            assert get_log_context() == {"scan_id": "bans-1a2b3c4d", "scan_kind": "bans", "target": ""}
        assert get_log_context()["scan_id"] == ""

    @pytest.mark.asyncio
    async def test_concurrent_fetches_see_their_own_target(self):
        seen = {}

        async def fetch(label):
            with target_context(label):
                await asyncio.sleep(0)
                seen[label] = get_log_context()["target"]

        with scan_context("current-auctions-00000000", "current-auctions"):
            await asyncio.gather(*(fetch(f"current-detail/{i}") for i in range(3)))

        assert seen == {f"current-detail/{i}": f"current-detail/{i}" for i in range(3)}

    def test_target_label(self):
        assert detail_target(TargetKind.CURRENT_DETAIL, "123", 4).label == "current-detail/123"


class TestFilters:
    def test_context_is_injected(self):
        record = make_record()
        with scan_context("auction-ids-deadbeef", "auction-ids"), target_context("auction-detail/9"):
            assert ScanContextFilter().filter(record)

        assert record.scan_id == "auction-ids-deadbeef"
        assert record.scan_kind == "auction-ids"
        assert record.target == "auction-detail/9"

    def test_pipe_closed_warnings_are_dropped(self):
        pipe_filter = PlaywrightPipeFilter()
        assert not pipe_filter.filter(make_record("pipe closed by peer"))
        assert pipe_filter.filter(make_record("navigation to %s failed", "https://rubinot.com.br"))


class TestFormatters:
    def test_text_prefix_lists_scan_and_target(self):
        record = make_record()
        with scan_context("bans-1a2b3c4d", "bans"), target_context("bans-page#0"):
            ScanContextFilter().filter(record)

        line = TextFormatter().format(record)

        assert line.endswith("[bans-1a2b3c4d bans-page#0] fetched page")

    def test_text_without_context_has_no_prefix(self):
        record = make_record()
        ScanContextFilter().filter(record)

        line = TextFormatter().format(record)

        assert "[" not in line
        assert line.endswith("bazaar_crawler.test fetched page")

    def test_json_line_carries_context_fields(self):
        record = make_record()
        with scan_context("transfers-0f0f0f0f", "transfers"):
            ScanContextFilter().filter(record)

        payload = json.loads(build_formatter("json").format(record))

        assert payload["scan_id"] == "transfers-0f0f0f0f"
        assert payload["scan_kind"] == "transfers"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "bazaar_crawler.test"
