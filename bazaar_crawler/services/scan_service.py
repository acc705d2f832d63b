"""Scan orchestration: one entry point per run, wiring every collaborator.

``start_scan`` builds (or accepts) the session pool registry, store,
checkpoint store and fetcher, runs the kind-specific flow, and always
returns a ``RunSummary``. Only operator cancellation propagates.
"""

import asyncio
import logging
from datetime import datetime, timezone

from bazaar_crawler.config import settings
from bazaar_crawler.core.context import new_scan_id, scan_context
from bazaar_crawler.core.database import create_session_factory
from bazaar_crawler.core.exceptions import StoreWriteFailure
from bazaar_crawler.core.metrics import store_errors_total
from bazaar_crawler.schemas.scan import (
    HighscoreQuery,
    IdRange,
    RunSummary,
    ScanKind,
    ScanOptions,
    ScrapeTarget,
    StopCause,
    TargetKind,
    Termination,
)
from bazaar_crawler.services.challenge import ChallengeGate
from bazaar_crawler.services.checkpoint import CheckpointStore
from bazaar_crawler.services.extraction import extract
from bazaar_crawler.services.fetcher import PageFetcher
from bazaar_crawler.services.rate_limiter import RateLimiter
from bazaar_crawler.services.reconciler import Reconciler
from bazaar_crawler.services.scan_driver import ScanDriver
from bazaar_crawler.services.session_pool import SessionPoolRegistry
from bazaar_crawler.services.store import SqlRecordStore
from bazaar_crawler.services.targets import (
    detail_target,
    highscore_targets,
    list_targets,
    queue_fingerprint,
    single_page_targets,
)

logger = logging.getLogger(__name__)


def _merge(list_pass: RunSummary, detail_pass: RunSummary | None) -> RunSummary:
    """Fold the detail pass of a two-phase scan into the list pass summary."""
    if detail_pass is None:
        return list_pass
    merged = list_pass.model_copy()
    merged.saved += detail_pass.saved
    merged.skipped += detail_pass.skipped
    merged.not_found += detail_pass.not_found
    merged.failed += detail_pass.failed
    merged.store_errors += detail_pass.store_errors
    merged.replace_calls += detail_pass.replace_calls
    merged.restart_calls += detail_pass.restart_calls
    merged.finished_at = detail_pass.finished_at
    if detail_pass.termination == Termination.ABORTED:
        merged.termination = Termination.ABORTED
        merged.cause = detail_pass.cause
    elif detail_pass.cause == StopCause.MAX_ITEMS:
        merged.cause = StopCause.MAX_ITEMS
    return merged


def log_summary(summary: RunSummary) -> None:
    logger.info(
        "Scan %s finished: %s (%s) saved=%d updated=%d skipped=%d not_found=%d failed=%d "
        "store_errors=%d last_cursor=%s archived=%s deactivated=%d replaces=%d restarts=%d "
        "duration=%.0fs",
        summary.kind.value,
        summary.termination.value,
        summary.cause.value if summary.cause else "-",
        summary.saved,
        summary.updated,
        summary.skipped,
        summary.not_found,
        summary.failed,
        summary.store_errors,
        summary.last_cursor,
        summary.archived if summary.archived is not None else "-",
        summary.deactivated,
        summary.replace_calls,
        summary.restart_calls,
        summary.duration_seconds or 0.0,
    )


class ScanRunner:
    """Kind-specific flows over shared collaborators."""

    def __init__(
        self,
        pools: SessionPoolRegistry,
        store,
        checkpoints: CheckpointStore,
        fetcher: PageFetcher,
        rate_limiter: RateLimiter | None = None,
        stop_event: asyncio.Event | None = None,
        sleep=None,
    ):
        self.pools = pools
        self.store = store
        self.checkpoints = checkpoints
        self.fetcher = fetcher
        self.rate_limiter = rate_limiter or RateLimiter()
        self.stop_event = stop_event
        self._sleep = sleep

    def _driver(self, kind: ScanKind, options: ScanOptions, **kwargs) -> ScanDriver:
        return ScanDriver(
            kind,
            self.fetcher,
            self.pools,
            self.store,
            options,
            checkpoints=self.checkpoints,
            rate_limiter=self.rate_limiter,
            stop_event=self.stop_event,
            sleep=self._sleep,
            **kwargs,
        )

    async def run(self, kind: ScanKind, target_spec, options: ScanOptions) -> RunSummary:
        if kind == ScanKind.AUCTION_IDS:
            return await self.scan_auction_ids(target_spec or IdRange(), options)
        if kind == ScanKind.AUCTION_HISTORY:
            return await self.scan_listing(kind, options)
        if kind == ScanKind.CURRENT_AUCTIONS:
            return await self.scan_listing(kind, options)
        if kind == ScanKind.HIGHSCORES:
            return await self.scan_highscores(target_spec or HighscoreQuery(), options)
        if kind == ScanKind.BANS:
            return await self.scan_bans(options)
        if kind == ScanKind.TRANSFERS:
            return await self.scan_transfers(options)
        raise ValueError(f"Unsupported scan kind {kind!r}")

    # ------------------------------------------------------------------
    # Id space
    # ------------------------------------------------------------------

    async def resolve_id_range(self, id_range: IdRange, options: ScanOptions) -> tuple[int, int]:
        """Default: ascending from one past the highest known id."""
        start = options.start_id if options.start_id is not None else id_range.start
        end = options.end_id if options.end_id is not None else id_range.end
        if start is None:
            highest = await self.store.max_known_id()
            if highest is None:
                start = settings.ID_SCAN_DEFAULT_START
            else:
                start = highest if options.descending else highest + 1
        if end is None:
            window = options.max_range or settings.ID_SCAN_WINDOW
            end = max(1, start - window + 1) if options.descending else start + window - 1
        if options.descending and end > start:
            start, end = end, start
        if not options.descending and end < start:
            start, end = end, start
        return start, end

    async def scan_auction_ids(self, id_range: IdRange, options: ScanOptions) -> RunSummary:
        kind = ScanKind.AUCTION_IDS
        known = set() if options.rescrape else await self.store.find_known_ids(kind)
        start, end = await self.resolve_id_range(id_range, options)
        driver = self._driver(kind, options, checkpoint_key=kind.value, known_ids=known)
        return await driver.run_id_space(start, end, options.descending)

    # ------------------------------------------------------------------
    # List + detail (auction history, current auctions)
    # ------------------------------------------------------------------

    async def scan_listing(self, kind: ScanKind, options: ScanOptions) -> RunSummary:
        """List pages first, collecting the SeenSet; then detail pages for
        ids the store does not know yet; then, for live auctions, the
        reconciliation pass."""
        live = kind == ScanKind.CURRENT_AUCTIONS
        list_kind = TargetKind.CURRENT_LIST if live else TargetKind.PAST_LIST
        detail_kind = TargetKind.CURRENT_DETAIL if live else TargetKind.AUCTION_DETAIL

        known = await self.store.find_known_ids(kind)
        seen: set[str] = set()
        list_rows: dict[str, object] = {}
        pending: list[str] = []
        counts = {"updated": 0, "skipped": 0}

        async def list_sink(target: ScrapeTarget, records: list) -> int:
            saved = 0
            for record in records:
                external_id = record.external_id
                seen.add(external_id)
                list_rows[external_id] = record
                if external_id in known and not options.rescrape:
                    if live:
                        if await self._write(kind, record, options):
                            counts["updated"] += 1
                    else:
                        counts["skipped"] += 1
                    continue
                if options.with_details:
                    if external_id not in pending:
                        pending.append(external_id)
                elif await self._write(kind, record, options):
                    saved += 1
            return saved

        targets = list_targets(list_kind, options.max_pages)
        list_driver = self._driver(
            kind,
            options.model_copy(update={"max_items": None}),
            checkpoint_key=kind.value,
            record_sink=list_sink,
            batch_size=1,
        )
        list_summary = await list_driver.run_queue(targets, fingerprint=queue_fingerprint(targets))
        list_summary.updated = counts["updated"]
        list_summary.skipped += counts["skipped"]

        detail_summary = None
        if pending and list_summary.termination == Termination.COMPLETE:
            detail_targets = [
                detail_target(detail_kind, external_id, index)
                for index, external_id in enumerate(pending)
            ]
            # Known ids are skipped by the driver, so a re-run picks up where
            # this one stopped without a checkpoint of its own
            detail_driver = self._driver(
                kind,
                options.model_copy(update={"resume": False}),
                checkpoint_key=None,
                known_ids=set() if options.rescrape else known,
            )
            detail_summary = await detail_driver.run_queue(detail_targets)
            for target in detail_driver.failed_targets:
                # Keep at least the list row for auctions whose detail page never loaded
                row = list_rows.get(target.external_id)
                if row is not None and await self._write(kind, row, options):
                    detail_summary.saved += 1

        summary = _merge(list_summary, detail_summary)

        complete_list = (
            list_summary.termination == Termination.COMPLETE
            and list_summary.cause == StopCause.QUEUE_EXHAUSTED
            and list_driver.failed_targets == []
            and list_kind.value in list_driver.ended_groups
            and not list_driver.resumed
            and options.max_pages is None
            and options.max_items is None
        )
        if live and not options.dry_run:
            if complete_list:
                reconciler = Reconciler(self.store, archive=True)
                summary.archived = await reconciler.reconcile(kind, seen)
                summary.reconcile_errors = reconciler.errors
                summary.deactivated = reconciler.deactivated
            else:
                logger.info("List pass incomplete or limited, skipping reconciliation")
        return summary

    async def _write(self, kind: ScanKind, record, options: ScanOptions) -> bool:
        if options.dry_run:
            return True
        try:
            await self.store.upsert(record)
            return True
        except StoreWriteFailure as e:
            store_errors_total.labels(kind=kind.value).inc()
            logger.error("%s", e)
            return False

    # ------------------------------------------------------------------
    # Combinator queue and single pages
    # ------------------------------------------------------------------

    async def scan_highscores(self, query: HighscoreQuery, options: ScanOptions) -> RunSummary:
        kind = ScanKind.HIGHSCORES
        if options.max_pages and not query.pages:
            query = HighscoreQuery(
                worlds=query.worlds,
                categories=query.categories,
                professions=query.professions,
                pages=options.max_pages,
                captured_date=query.captured_date,
            )
        targets = highscore_targets(query)
        driver = self._driver(kind, options, checkpoint_key=kind.value)
        return await driver.run_queue(targets, fingerprint=queue_fingerprint(targets))

    async def scan_bans(self, options: ScanOptions) -> RunSummary:
        kind = ScanKind.BANS
        seen: set[str] = set()
        driver = self._driver(kind, options, checkpoint_key=kind.value)
        default_sink = driver.record_sink

        async def sink(target: ScrapeTarget, records: list) -> int:
            seen.update(record.external_id for record in records)
            return await default_sink(target, records)

        driver.record_sink = sink
        summary = await driver.run_queue(single_page_targets(TargetKind.BANS_PAGE))

        # An empty or failed page says nothing about which bans ended
        if summary.termination == Termination.COMPLETE and seen and not options.dry_run:
            reconciler = Reconciler(self.store, archive=False)
            await reconciler.reconcile(kind, seen)
            summary.reconcile_errors = reconciler.errors
            summary.deactivated = reconciler.deactivated
        return summary

    async def scan_transfers(self, options: ScanOptions) -> RunSummary:
        kind = ScanKind.TRANSFERS
        driver = self._driver(kind, options, checkpoint_key=kind.value)
        return await driver.run_queue(single_page_targets(TargetKind.TRANSFERS_PAGE))


async def start_scan(
    kind: ScanKind,
    target_spec: IdRange | HighscoreQuery | None = None,
    options: ScanOptions | None = None,
    *,
    pools: SessionPoolRegistry | None = None,
    store=None,
    checkpoints: CheckpointStore | None = None,
    extractor=extract,
    rate_limiter: RateLimiter | None = None,
    stop_event: asyncio.Event | None = None,
    sleep=None,
) -> RunSummary:
    """Run one scan of ``kind`` to completion or abort.

    Collaborators not passed in are built from settings and torn down
    when the run ends.
    """
    options = options or ScanOptions()
    owns_pools = pools is None
    owns_store = store is None

    if pools is None:
        from bazaar_crawler.services.browser import PlaywrightLauncher

        pools = SessionPoolRegistry(PlaywrightLauncher(), headless=options.headless, sleep=sleep)
    if store is None:
        session_factory, engine = create_session_factory()
        store = SqlRecordStore(session_factory, engine)
        await store.init_models()
    checkpoints = checkpoints or CheckpointStore()
    rate_limiter = rate_limiter or RateLimiter(sleep=sleep)

    gate = ChallengeGate(pools.launcher, sleep=sleep)
    fetcher = PageFetcher(pools, gate, extractor=extractor, sleep=sleep)
    runner = ScanRunner(pools, store, checkpoints, fetcher, rate_limiter, stop_event, sleep)

    with scan_context(new_scan_id(kind.value), kind.value):
        logger.info("Starting %s scan (profile=%s, resume=%s)", kind.value, options.profile, options.resume)
        try:
            summary = await runner.run(kind, target_spec, options)
        finally:
            if owns_pools:
                await pools.close_all()
            if owns_store:
                await store.close()
        if summary.finished_at is None:
            summary.finished_at = datetime.now(timezone.utc)
        log_summary(summary)
        return summary
