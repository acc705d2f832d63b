import asyncio

import pytest

from bazaar_crawler.schemas.records import BanRecord, TransferRecord
from bazaar_crawler.schemas.scan import (
    ErrorKind,
    FetchOutcome,
    HighscoreQuery,
    IdRange,
    ScanKind,
    ScanOptions,
    StopCause,
    TargetKind,
    Termination,
)
from bazaar_crawler.services.checkpoint import CheckpointStore
from bazaar_crawler.services.rate_limiter import RateLimiter
from bazaar_crawler.services.scan_service import ScanRunner, start_scan
from bazaar_crawler.services.session_pool import SessionPoolRegistry
from tests.fakes import FakeFetcher, FakeLauncher, FakePools, FakeStore, auction, live_auction, no_sleep

LIST_KINDS = (TargetKind.CURRENT_LIST, TargetKind.PAST_LIST)


def make_runner(store, fetcher, tmp_path):
    return ScanRunner(
        FakePools(),
        store,
        CheckpointStore(tmp_path),
        fetcher,
        rate_limiter=RateLimiter(sleep=no_sleep),
        sleep=no_sleep,
    )


def site(list_pages, details=None, fail_details=False):
    """List pages by page number; detail records by external id."""
    details = details or {}

    def behavior(target, call):
        if target.kind in LIST_KINDS:
            rows = list_pages.get(target.param("page"))
            return FetchOutcome.found(target, rows) if rows else FetchOutcome.not_found(target)
        if fail_details:
            return FetchOutcome.failed(target, ErrorKind.NETWORK, "timeout")
        record = details.get(target.external_id)
        return FetchOutcome.found(target, record) if record else FetchOutcome.not_found(target)

    return behavior


class TestCurrentAuctions:
    @pytest.mark.asyncio
    async def test_full_pass_fetches_new_updates_known_and_archives_ended(self, tmp_path):
        store = FakeStore()
        await store.upsert(live_auction("1", minimum_bid=100, magic_level=5))
        await store.upsert(live_auction("2", level=50, minimum_bid=400))
        fetcher = FakeFetcher(
            site(
                {1: [live_auction("1", current_bid=900, has_been_bid_on=True), live_auction("3", level=80)]},
                details={"3": live_auction("3", level=80, magic_level=20)},
            )
        )
        runner = make_runner(store, fetcher, tmp_path)

        summary = await runner.run(ScanKind.CURRENT_AUCTIONS, None, ScanOptions(max_attempts=2))

        assert summary.termination == Termination.COMPLETE
        assert summary.updated == 1
        assert summary.saved == 1
        assert summary.archived == 1
        assert summary.deactivated == 1
        assert store.current_active == {"1", "3"}
        assert store.current["1"].current_bid == 900
        assert store.current["1"].magic_level == 5
        assert store.current["3"].magic_level == 20
        assert store.history["2"].auction_status == "expired"
        detail_ids = [t.external_id for t in fetcher.calls if t.kind == TargetKind.CURRENT_DETAIL]
        assert detail_ids == ["3"]
        assert CheckpointStore(tmp_path).load(ScanKind.CURRENT_AUCTIONS.value) is None

    @pytest.mark.asyncio
    async def test_page_limit_skips_reconciliation(self, tmp_path):
        store = FakeStore()
        await store.upsert(live_auction("2"))
        fetcher = FakeFetcher(site({1: [live_auction("1")], 2: [live_auction("4")]}))
        runner = make_runner(store, fetcher, tmp_path)

        summary = await runner.run(
            ScanKind.CURRENT_AUCTIONS, None, ScanOptions(max_pages=1, with_details=False)
        )

        assert summary.saved == 1
        assert summary.archived is None
        assert store.current_active == {"1", "2"}

    @pytest.mark.asyncio
    async def test_dry_run_leaves_store_alone(self, tmp_path):
        store = FakeStore()
        await store.upsert(live_auction("2"))
        fetcher = FakeFetcher(site({1: [live_auction("1")]}, details={"1": live_auction("1")}))
        runner = make_runner(store, fetcher, tmp_path)

        summary = await runner.run(ScanKind.CURRENT_AUCTIONS, None, ScanOptions(dry_run=True))

        assert summary.saved == 1
        assert summary.archived is None
        assert set(store.current) == {"2"}


class TestAuctionHistory:
    @pytest.mark.asyncio
    async def test_list_rows_without_details(self, tmp_path):
        store = FakeStore()
        await store.upsert(auction("10"))
        fetcher = FakeFetcher(site({1: [auction("10"), auction("11", auction_status="sold", sold_price=700)]}))
        runner = make_runner(store, fetcher, tmp_path)

        summary = await runner.run(ScanKind.AUCTION_HISTORY, None, ScanOptions(with_details=False))

        assert summary.saved == 1
        assert summary.skipped == 1
        assert summary.archived is None
        assert store.history["11"].sold_price == 700

    @pytest.mark.asyncio
    async def test_failed_detail_keeps_the_list_row(self, tmp_path):
        store = FakeStore()
        fetcher = FakeFetcher(site({1: [auction("20", level=100)]}, fail_details=True))
        runner = make_runner(store, fetcher, tmp_path)

        summary = await runner.run(
            ScanKind.AUCTION_HISTORY, None, ScanOptions(max_attempts=1, error_threshold=50)
        )

        assert summary.failed == 1
        assert summary.saved == 1
        assert store.history["20"].level == 100


class TestIdScan:
    @pytest.mark.asyncio
    async def test_default_range_starts_after_highest_known(self, tmp_path):
        store = FakeStore()
        await store.upsert(auction("120"))
        runner = make_runner(store, FakeFetcher(site({})), tmp_path)

        assert await runner.resolve_id_range(IdRange(), ScanOptions(max_range=10)) == (121, 130)
        assert await runner.resolve_id_range(IdRange(), ScanOptions(max_range=10, descending=True)) == (120, 111)
        assert await runner.resolve_id_range(IdRange(start=5, end=1), ScanOptions()) == (1, 5)

    @pytest.mark.asyncio
    async def test_known_ids_are_not_refetched(self, tmp_path):
        store = FakeStore()
        await store.upsert(auction("3"))
        found = {"2": auction("2"), "4": auction("4")}
        fetcher = FakeFetcher(
            lambda target, call: FetchOutcome.found(target, found[target.external_id])
            if target.external_id in found
            else FetchOutcome.not_found(target)
        )
        runner = make_runner(store, fetcher, tmp_path)

        summary = await runner.run(ScanKind.AUCTION_IDS, IdRange(start=1, end=5), ScanOptions(pool_size=2))

        assert [t.external_id for t in fetcher.calls] == ["1", "2", "4", "5"]
        assert (summary.saved, summary.skipped, summary.not_found) == (2, 1, 2)
        assert summary.cause == StopCause.RANGE_EXHAUSTED


class TestSinglePages:
    @pytest.mark.asyncio
    async def test_bans_deactivate_lifted_bans(self, tmp_path):
        store = FakeStore()
        lifted = BanRecord(player_name="Old", banned_at="2025-01-01")
        await store.upsert(lifted)
        current = [BanRecord(player_name="Bot", banned_at="2025-05-01", is_permanent=True)]
        fetcher = FakeFetcher(lambda target, call: FetchOutcome.found(target, current))
        runner = make_runner(store, fetcher, tmp_path)

        summary = await runner.run(ScanKind.BANS, None, ScanOptions())

        assert summary.saved == 1
        assert summary.deactivated == 1
        assert store.bans_active == {current[0].external_id}

    @pytest.mark.asyncio
    async def test_empty_bans_page_deactivates_nothing(self, tmp_path):
        store = FakeStore()
        await store.upsert(BanRecord(player_name="Old", banned_at="2025-01-01"))
        fetcher = FakeFetcher(lambda target, call: FetchOutcome.not_found(target))
        runner = make_runner(store, fetcher, tmp_path)

        summary = await runner.run(ScanKind.BANS, None, ScanOptions())

        assert summary.deactivated == 0
        assert len(store.bans_active) == 1

    @pytest.mark.asyncio
    async def test_highscore_queue(self, tmp_path):
        store = FakeStore()
        fetcher = FakeFetcher(
            lambda target, call: FetchOutcome.found(target, [object()])
            if target.param("page") == 1
            else FetchOutcome.not_found(target)
        )
        runner = make_runner(store, fetcher, tmp_path)

        query = HighscoreQuery(worlds=("Auroria",), categories=("magic",), professions=("Druids", "Sorcerers"), pages=3)
        summary = await runner.run(ScanKind.HIGHSCORES, query, ScanOptions(dry_run=True))

        # page 1 found, page 2 empty ends the combo, page 3 never fetched
        assert len(fetcher.calls) == 4
        assert summary.saved == 2
        assert summary.not_found == 2


TRANSFERS_HTML = """
<html><head><title>Transfers</title></head><body>
<table><tbody>
  <tr><td>2025-05-01</td><td>Wanderer</td><td>420</td><td>Bellum</td><td>-&gt;</td><td>Auroria</td></tr>
  <tr><td>2025-05-02</td><td>Nomad</td><td>88</td><td>Solarian</td><td>-&gt;</td><td>Spectrum</td></tr>
</tbody></table>
</body></html>
"""


class TestStartScan:
    @pytest.mark.asyncio
    async def test_transfers_end_to_end(self, tmp_path):
        launcher = FakeLauncher({"https://rubinot.com.br/transfers": [("Transfers", TRANSFERS_HTML)]})
        pools = SessionPoolRegistry(launcher, headless=True, sleep=no_sleep)
        store = FakeStore()

        summary = await start_scan(
            ScanKind.TRANSFERS,
            options=ScanOptions(),
            pools=pools,
            store=store,
            checkpoints=CheckpointStore(tmp_path),
            rate_limiter=RateLimiter(sleep=no_sleep),
            sleep=no_sleep,
        )

        assert summary.termination == Termination.COMPLETE
        assert summary.cause == StopCause.QUEUE_EXHAUSTED
        assert summary.saved == 2
        assert all(isinstance(r, TransferRecord) for r in store.transfers.values())
        assert launcher.gotos == ["https://rubinot.com.br/bazaar", "https://rubinot.com.br/transfers"]
        assert summary.finished_at is not None

    @pytest.mark.asyncio
    async def test_detail_pass_uses_every_session_of_the_pool(self, tmp_path):
        launcher = OverlapLauncher()
        pools = SessionPoolRegistry(launcher, headless=True, sleep=no_sleep)
        store = FakeStore()

        def extractor(content, target, url):
            if target.kind == TargetKind.CURRENT_LIST:
                return [live_auction(i) for i in range(1, 7)] if target.param("page") == 1 else None
            return live_auction(target.external_id, level=100)

        summary = await start_scan(
            ScanKind.CURRENT_AUCTIONS,
            options=ScanOptions(pool_size=3),
            pools=pools,
            store=store,
            checkpoints=CheckpointStore(tmp_path),
            extractor=extractor,
            rate_limiter=RateLimiter(sleep=no_sleep),
            sleep=no_sleep,
        )

        assert summary.termination == Termination.COMPLETE
        assert summary.saved == 6
        assert pools.pool("current-auctions").size == 3
        assert len(launcher.sessions) == 3
        assert launcher.peak == 3
        assert all(store.current[str(i)].level == 100 for i in range(1, 7))


class OverlapLauncher(FakeLauncher):
    """Tracks how many navigations are in progress at once."""

    def __init__(self):
        super().__init__()
        self.in_flight = 0
        self.peak = 0

    async def goto(self, session, url, timeout_ms):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0)
            await super().goto(session, url, timeout_ms)
        finally:
            self.in_flight -= 1
