import asyncio

import pytest

from bazaar_crawler.schemas.scan import (
    ErrorKind,
    FetchOutcome,
    ScanKind,
    ScanOptions,
    ScrapeTarget,
    StopCause,
    TargetKind,
    Termination,
)
from bazaar_crawler.services.checkpoint import CheckpointState, CheckpointStore, DIRECTION_QUEUE
from bazaar_crawler.services.rate_limiter import RateLimiter
from bazaar_crawler.services.scan_driver import ScanDriver
from tests.fakes import FakeFetcher, FakePools, FakeStore, auction, found_or_missing, no_sleep

KIND = ScanKind.AUCTION_IDS


def make_driver(
    fetcher,
    store=None,
    pools=None,
    checkpoints=None,
    pool_size=1,
    known_ids=None,
    record_sink=None,
    stop_event=None,
    kind=KIND,
    **options,
):
    options.setdefault("max_attempts", 10)
    return ScanDriver(
        kind,
        fetcher,
        pools or FakePools(),
        store if store is not None else FakeStore(),
        ScanOptions(**options),
        checkpoints=checkpoints,
        checkpoint_key=kind.value if checkpoints is not None else None,
        pool_size=pool_size,
        rate_limiter=RateLimiter(sleep=no_sleep),
        known_ids=known_ids,
        record_sink=record_sink,
        stop_event=stop_event,
        launch_stagger_ms=0,
        sleep=no_sleep,
    )


def fail_first(n, existing):
    found = found_or_missing(existing)

    def behavior(target, call):
        if call <= n:
            return FetchOutcome.failed(target, ErrorKind.NETWORK, "net::ERR_CONNECTION_RESET")
        return found(target, call)

    return behavior


def fetched_ids(fetcher):
    return [int(t.cursor) for t in fetcher.calls]


class TestIdSpace:
    @pytest.mark.asyncio
    async def test_sparse_range_runs_to_the_end(self):
        store = FakeStore()
        fetcher = FakeFetcher(found_or_missing({170: auction(170, level=300)}))
        driver = make_driver(fetcher, store, pool_size=3, not_found_limit=100)

        summary = await driver.run_id_space(100, 200)

        assert summary.saved == 1
        assert summary.not_found == 100
        assert summary.skipped == 0
        assert summary.last_cursor == 200
        assert summary.termination == Termination.COMPLETE
        assert summary.cause == StopCause.RANGE_EXHAUSTED
        assert store.history["170"].level == 300

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pool_size", [1, 3])
    async def test_not_found_limit_stops_at_the_same_cursor(self, pool_size):
        fetcher = FakeFetcher(found_or_missing({}))
        driver = make_driver(fetcher, pool_size=pool_size, not_found_limit=5)

        summary = await driver.run_id_space(1, 1000)

        assert summary.cause == StopCause.NOT_FOUND_LIMIT
        assert summary.termination == Termination.COMPLETE
        assert summary.last_cursor == 5
        assert summary.not_found == 5

    @pytest.mark.asyncio
    async def test_found_resets_not_found_streak(self):
        fetcher = FakeFetcher(found_or_missing({4: auction(4), 8: auction(8)}))
        driver = make_driver(fetcher, not_found_limit=4)

        summary = await driver.run_id_space(1, 100)

        assert summary.saved == 2
        assert summary.last_cursor == 12
        assert summary.cause == StopCause.NOT_FOUND_LIMIT

    @pytest.mark.asyncio
    async def test_descending(self):
        fetcher = FakeFetcher(found_or_missing({9: auction(9), 3: auction(3)}))
        driver = make_driver(fetcher)

        summary = await driver.run_id_space(10, 1, descending=True)

        assert fetched_ids(fetcher) == list(range(10, 0, -1))
        assert summary.saved == 2
        assert summary.last_cursor == 1

    @pytest.mark.asyncio
    async def test_known_ids_are_skipped_without_fetching(self):
        fetcher = FakeFetcher(found_or_missing({1: auction(1), 5: auction(5)}))
        driver = make_driver(fetcher, pool_size=2, known_ids={"3", "4"})

        summary = await driver.run_id_space(1, 5)

        assert 3 not in fetched_ids(fetcher)
        assert 4 not in fetched_ids(fetcher)
        assert summary.skipped == 2
        assert summary.saved == 2
        assert summary.not_found == 1

    @pytest.mark.asyncio
    async def test_known_ids_reset_the_not_found_streak(self):
        fetcher = FakeFetcher(found_or_missing({}))
        driver = make_driver(fetcher, known_ids={"3"}, not_found_limit=3)

        summary = await driver.run_id_space(1, 100)

        # 1, 2 missing; 3 known; 4, 5, 6 missing
        assert summary.last_cursor == 6
        assert summary.skipped == 1

    @pytest.mark.asyncio
    async def test_max_items_counts_saves_from_this_run(self):
        existing = {i: auction(i) for i in range(1, 11)}
        fetcher = FakeFetcher(found_or_missing(existing))
        driver = make_driver(fetcher, max_items=3)

        summary = await driver.run_id_space(1, 10)

        assert summary.saved == 3
        assert summary.cause == StopCause.MAX_ITEMS
        assert summary.termination == Termination.COMPLETE

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self):
        store = FakeStore()
        fetcher = FakeFetcher(found_or_missing({2: auction(2)}))
        driver = make_driver(fetcher, store, dry_run=True)

        summary = await driver.run_id_space(1, 3)

        assert summary.saved == 1
        assert store.upserts == []

    @pytest.mark.asyncio
    async def test_store_failure_is_counted_and_scan_continues(self):
        store = FakeStore()
        store.fail_upsert_ids = {"2"}
        fetcher = FakeFetcher(found_or_missing({2: auction(2), 3: auction(3)}))
        driver = make_driver(fetcher, store)

        summary = await driver.run_id_space(1, 3)

        assert summary.saved == 1
        assert summary.store_errors == 1
        assert summary.last_cursor == 3
        assert set(store.history) == {"3"}


class TestCheckpointing:
    @pytest.mark.asyncio
    async def test_checkpoint_removed_after_complete_run(self, tmp_path):
        checkpoints = CheckpointStore(tmp_path)
        driver = make_driver(FakeFetcher(found_or_missing({})), checkpoints=checkpoints)

        await driver.run_id_space(1, 3)

        assert checkpoints.load(KIND.value) is None

    @pytest.mark.asyncio
    async def test_resume_continues_after_last_cursor(self, tmp_path):
        checkpoints = CheckpointStore(tmp_path)
        store = FakeStore()
        existing = {2: auction(2), 5: auction(5), 8: auction(8)}

        first = FakeFetcher(found_or_missing(existing))
        summary = await make_driver(first, store, checkpoints=checkpoints, max_items=1).run_id_space(1, 10)
        assert summary.cause == StopCause.MAX_ITEMS
        assert summary.last_cursor == 2
        assert checkpoints.load(KIND.value).last_cursor == 2

        second = FakeFetcher(found_or_missing(existing))
        driver = make_driver(second, store, checkpoints=checkpoints, resume=True)
        # The range passed here is ignored in favour of the checkpoint's
        summary = await driver.run_id_space(500, 600)

        assert driver.resumed
        assert fetched_ids(second) == list(range(3, 11))
        assert summary.saved == 3
        assert summary.cause == StopCause.RANGE_EXHAUSTED
        assert set(store.history) == {"2", "5", "8"}
        assert checkpoints.load(KIND.value) is None

    @pytest.mark.asyncio
    async def test_resume_without_checkpoint_starts_fresh(self, tmp_path):
        fetcher = FakeFetcher(found_or_missing({}))
        driver = make_driver(fetcher, checkpoints=CheckpointStore(tmp_path), resume=True)

        await driver.run_id_space(1, 3)

        assert not driver.resumed
        assert fetched_ids(fetcher) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_changed_queue_is_not_resumed(self, tmp_path):
        checkpoints = CheckpointStore(tmp_path)
        checkpoints.save(
            CheckpointState(
                kind=ScanKind.HIGHSCORES.value,
                direction=DIRECTION_QUEUE,
                start_cursor=0,
                end_cursor=2,
                last_cursor=1,
                queue_fingerprint="old",
            )
        )
        targets = [ScrapeTarget(kind=TargetKind.HIGHSCORE_PAGE, cursor=i) for i in range(3)]
        fetcher = FakeFetcher(lambda target, call: FetchOutcome.found(target, []))
        driver = make_driver(
            fetcher, checkpoints=checkpoints, kind=ScanKind.HIGHSCORES, resume=True
        )

        await driver.run_queue(targets, fingerprint="new")

        assert not driver.resumed
        assert len(fetcher.calls) == 3

    @pytest.mark.asyncio
    async def test_interrupt_keeps_checkpoint(self, tmp_path):
        checkpoints = CheckpointStore(tmp_path)
        stop = asyncio.Event()
        found = found_or_missing({1: auction(1)})

        def behavior(target, call):
            if call == 2:
                stop.set()
            return found(target, call)

        driver = make_driver(FakeFetcher(behavior), checkpoints=checkpoints, stop_event=stop)
        summary = await driver.run_id_space(1, 50)

        assert summary.termination == Termination.ABORTED
        assert summary.cause == StopCause.INTERRUPTED
        assert summary.last_cursor == 2
        assert checkpoints.load(KIND.value).last_cursor == 2

    @pytest.mark.asyncio
    async def test_cancel_mid_batch_keeps_last_completed_batch(self, tmp_path):
        checkpoints = CheckpointStore(tmp_path)
        store = FakeStore()
        fetcher = BlockingFetcher(found_or_missing({i: auction(i) for i in range(1, 10)}), block_from=4)
        driver = make_driver(fetcher, store=store, checkpoints=checkpoints, pool_size=3)

        task = asyncio.create_task(driver.run_id_space(1, 9))
        await asyncio.wait_for(fetcher.all_blocked.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert [int(t.cursor) for t in fetcher.calls] == [1, 2, 3, 4, 5, 6]
        state = checkpoints.load(KIND.value)
        assert state.last_cursor == 3
        assert state.saved == 3
        assert set(store.history) == {"1", "2", "3"}


class BlockingFetcher(FakeFetcher):
    """Hangs on every target from ``block_from`` on until cancelled."""

    def __init__(self, behavior, block_from, batch=3):
        super().__init__(behavior)
        self.block_from = block_from
        self.batch = batch
        self.blocked = 0
        self.all_blocked = asyncio.Event()

    async def fetch(self, target, pool_name, pool_size=None):
        if int(target.cursor) >= self.block_from:
            self.calls.append(target)
            self.blocked += 1
            if self.blocked == self.batch:
                self.all_blocked.set()
            await asyncio.Event().wait()
        return await super().fetch(target, pool_name, pool_size)


class TestEscalation:
    @pytest.mark.asyncio
    async def test_three_failures_replace_the_session(self):
        pools = FakePools()
        fetcher = FakeFetcher(fail_first(3, {1: auction(1)}))
        driver = make_driver(fetcher, pools=pools, error_threshold=3, replace_rounds=2)

        summary = await driver.run_id_space(1, 1)

        assert summary.saved == 1
        assert (summary.replace_calls, summary.restart_calls) == (1, 0)
        assert pools.replace_calls == 1
        assert summary.termination == Termination.COMPLETE

    @pytest.mark.asyncio
    async def test_six_failures_replace_then_restart(self):
        pools = FakePools()
        fetcher = FakeFetcher(fail_first(6, {1: auction(1)}))
        driver = make_driver(fetcher, pools=pools, error_threshold=3, replace_rounds=2)

        summary = await driver.run_id_space(1, 1)

        assert summary.saved == 1
        assert (summary.replace_calls, summary.restart_calls) == (1, 1)
        assert (pools.replace_calls, pools.restart_calls) == (1, 1)

    @pytest.mark.asyncio
    async def test_failed_replace_escalates_to_restart(self):
        pools = FakePools(fail_replace=True)
        fetcher = FakeFetcher(fail_first(1, {1: auction(1)}))
        driver = make_driver(fetcher, pools=pools, error_threshold=1, replace_rounds=2)

        summary = await driver.run_id_space(1, 1)

        assert summary.saved == 1
        assert pools.restart_calls == 1
        assert summary.restart_calls == 1

    @pytest.mark.asyncio
    async def test_failed_restart_aborts_with_checkpoint(self, tmp_path):
        checkpoints = CheckpointStore(tmp_path)
        pools = FakePools(fail_restart=True)
        fetcher = FakeFetcher(fail_first(1000, {}))
        driver = make_driver(
            fetcher, pools=pools, checkpoints=checkpoints, error_threshold=1, replace_rounds=1
        )

        summary = await driver.run_id_space(1, 10)

        assert summary.termination == Termination.ABORTED
        assert summary.cause == StopCause.ESCALATION_EXHAUSTED
        assert summary.last_cursor is None
        assert checkpoints.load(KIND.value) is not None

    @pytest.mark.asyncio
    async def test_target_failing_every_attempt_is_given_up(self):
        found = found_or_missing({1: auction(1), 3: auction(3)})

        def behavior(target, call):
            if target.cursor == 2:
                return FetchOutcome.blocked(target, "challenge timeout")
            return found(target, call)

        fetcher = FakeFetcher(behavior)
        driver = make_driver(fetcher, max_attempts=2, error_threshold=100)

        summary = await driver.run_id_space(1, 3)

        assert fetched_ids(fetcher) == [1, 2, 2, 3]
        assert summary.failed == 1
        assert summary.saved == 2
        assert [t.cursor for t in driver.failed_targets] == [2]

    @pytest.mark.asyncio
    async def test_failure_rewinds_the_rest_of_the_batch(self):
        found = found_or_missing({1: auction(1), 2: auction(2), 3: auction(3)})

        def behavior(target, call):
            if call == 2:
                return FetchOutcome.failed(target, ErrorKind.EXTRACTION, "no table")
            return found(target, call)

        fetcher = FakeFetcher(behavior)
        driver = make_driver(fetcher, pool_size=3)

        summary = await driver.run_id_space(1, 3)

        # Batch [1, 2, 3]: 2 fails, 3 is discarded and both are fetched again
        assert fetched_ids(fetcher) == [1, 2, 3, 2, 3]
        assert summary.saved == 3


class TestQueue:
    @pytest.mark.asyncio
    async def test_empty_page_ends_its_group(self):
        targets = [
            ScrapeTarget(kind=TargetKind.HIGHSCORE_PAGE, cursor=i, params=(("page", page),), group=group)
            for i, (group, page) in enumerate([("a", 1), ("a", 2), ("a", 3), ("b", 1), ("b", 2)])
        ]

        def behavior(target, call):
            if target.group == "a" and target.param("page") == 2:
                return FetchOutcome.not_found(target)
            return FetchOutcome.found(target, [object(), object()])

        sunk = []

        async def sink(target, records):
            sunk.append(target.cursor)
            return len(records)

        fetcher = FakeFetcher(behavior)
        driver = make_driver(fetcher, kind=ScanKind.HIGHSCORES, record_sink=sink, pool_size=1)

        summary = await driver.run_queue(targets)

        assert [t.cursor for t in fetcher.calls] == [0, 1, 3, 4]
        assert sunk == [0, 3, 4]
        assert summary.saved == 6
        assert summary.not_found == 1
        assert summary.skipped == 0
        assert summary.last_cursor == 4
        assert summary.cause == StopCause.QUEUE_EXHAUSTED
        assert driver.ended_groups == {"a"}

    @pytest.mark.asyncio
    async def test_not_found_limit_does_not_apply_to_queues(self):
        targets = [ScrapeTarget(kind=TargetKind.HIGHSCORE_PAGE, cursor=i) for i in range(6)]
        fetcher = FakeFetcher(lambda target, call: FetchOutcome.not_found(target))
        driver = make_driver(fetcher, kind=ScanKind.HIGHSCORES, not_found_limit=2)

        summary = await driver.run_queue(targets)

        assert summary.not_found == 6
        assert summary.cause == StopCause.QUEUE_EXHAUSTED
