"""Checkpointed, resumable scan loop.

States: INIT -> SCANNING -> {COMPLETE, ABORTED}

The driver walks either an id space (ascending or descending) or a fixed
queue of targets, dispatching at most K targets at a time (K = pool
size). Results of a batch are applied strictly in cursor order, and the
checkpoint only ever records a cursor whose side effects are complete,
so a resumed scan restarts from a consistent boundary.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

from bazaar_crawler.config import settings
from bazaar_crawler.core.exceptions import ScanAbortedError, SessionPoolError, StoreWriteFailure
from bazaar_crawler.core.metrics import store_errors_total, targets_total
from bazaar_crawler.schemas.scan import (
    FetchOutcome,
    OutcomeStatus,
    RunSummary,
    ScanKind,
    ScanOptions,
    ScrapeTarget,
    StopCause,
    TargetKind,
    Termination,
)
from bazaar_crawler.services.checkpoint import (
    DIRECTION_ASCENDING,
    DIRECTION_DESCENDING,
    DIRECTION_QUEUE,
    CheckpointState,
    CheckpointStore,
)
from bazaar_crawler.services.escalation import EscalationAction, EscalationPolicy
from bazaar_crawler.services.fetcher import PageFetcher
from bazaar_crawler.services.rate_limiter import RateLimiter
from bazaar_crawler.services.session_pool import SessionHandle, SessionPoolRegistry
from bazaar_crawler.services.store import RecordStore
from bazaar_crawler.services.targets import detail_target

logger = logging.getLogger(__name__)

# Driver states
STATE_INIT = "init"
STATE_SCANNING = "scanning"
STATE_COMPLETE = "complete"
STATE_ABORTED = "aborted"

# Causes after which the checkpoint has nothing left to resume
_FINISHED_CAUSES = frozenset(
    {StopCause.RANGE_EXHAUSTED, StopCause.NOT_FOUND_LIMIT, StopCause.QUEUE_EXHAUSTED}
)

RecordSink = Callable[[ScrapeTarget, list], Awaitable[int]]


@dataclass
class _IdSpace:
    start: int
    end: int
    descending: bool
    target_kind: TargetKind = TargetKind.AUCTION_DETAIL

    exhausted_cause = StopCause.RANGE_EXHAUSTED

    def contains(self, cursor: int) -> bool:
        if self.descending:
            return self.end <= cursor <= self.start
        return self.start <= cursor <= self.end

    def step(self, cursor: int) -> int:
        return cursor - 1 if self.descending else cursor + 1

    def target_at(self, cursor: int) -> ScrapeTarget:
        return detail_target(self.target_kind, str(cursor), cursor)


@dataclass
class _Queue:
    targets: list[ScrapeTarget]

    exhausted_cause = StopCause.QUEUE_EXHAUSTED

    @property
    def start(self) -> int:
        return 0

    def contains(self, cursor: int) -> bool:
        return 0 <= cursor < len(self.targets)

    def step(self, cursor: int) -> int:
        return cursor + 1

    def target_at(self, cursor: int) -> ScrapeTarget:
        return self.targets[cursor]


class ScanDriver:
    def __init__(
        self,
        kind: ScanKind,
        fetcher: PageFetcher,
        pools: SessionPoolRegistry,
        store: RecordStore | None,
        options: ScanOptions,
        *,
        checkpoints: CheckpointStore | None = None,
        checkpoint_key: str | None = None,
        pool_name: str | None = None,
        pool_size: int | None = None,
        batch_size: int | None = None,
        rate_limiter: RateLimiter | None = None,
        policy: EscalationPolicy | None = None,
        record_sink: RecordSink | None = None,
        known_ids: set[str] | None = None,
        stop_event: asyncio.Event | None = None,
        launch_stagger_ms: int | None = None,
        sleep=None,
    ):
        self.kind = kind
        self.fetcher = fetcher
        self.pools = pools
        self.store = store
        self.options = options
        self.checkpoints = checkpoints
        self.checkpoint_key = checkpoint_key
        self.pool_name = pool_name or kind.pool_name
        self.pool_size = pool_size or options.pool_size or settings.pool_size_for(kind.value)
        # List passes page one at a time but share the pool with their detail pass
        self.batch_size = min(batch_size or self.pool_size, self.pool_size)
        self.rate_limiter = rate_limiter or RateLimiter()
        self.policy = policy or EscalationPolicy(options.error_threshold, options.replace_rounds)
        self.record_sink = record_sink or self._upsert_records
        self.known_ids = known_ids if known_ids is not None else set()
        self.stop_event = stop_event
        self.launch_stagger = (
            settings.LAUNCH_STAGGER_MS if launch_stagger_ms is None else launch_stagger_ms
        ) / 1000.0
        self._sleep = sleep or asyncio.sleep

        self.status = STATE_INIT
        self.state: CheckpointState | None = None
        self.resumed = False
        self.store_errors = 0
        self.failed_targets: list[ScrapeTarget] = []
        self._attempts: dict[int, int] = {}
        self._ended_groups: set[str] = set()
        self._saved_this_run = 0
        self._skip_events = 0

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_id_space(self, start: int, end: int, descending: bool = False) -> RunSummary:
        direction = DIRECTION_DESCENDING if descending else DIRECTION_ASCENDING
        self.state = self._load_or_create(direction, start, end)
        if self.resumed:
            start = self.state.start_cursor
            end = self.state.end_cursor
            descending = self.state.direction == DIRECTION_DESCENDING
        logger.info(
            "Scanning %s ids %d -> %d (%s)", self.kind.value, start, end, self.state.direction
        )
        return await self._scan(_IdSpace(start=start, end=end, descending=descending))

    async def run_queue(self, targets: list[ScrapeTarget], fingerprint: str | None = None) -> RunSummary:
        self.state = self._load_or_create(
            DIRECTION_QUEUE, 0, max(len(targets) - 1, 0), fingerprint=fingerprint
        )
        logger.info("Scanning %s queue of %d targets", self.kind.value, len(targets))
        return await self._scan(_Queue(targets))

    # ------------------------------------------------------------------
    # Checkpoint lifecycle
    # ------------------------------------------------------------------

    def _load_or_create(
        self, direction: str, start: int, end: int, fingerprint: str | None = None
    ) -> CheckpointState:
        key = self.checkpoint_key
        if self.options.resume and self.checkpoints is not None and key:
            state = self.checkpoints.load(key)
            if state is None:
                logger.warning("No checkpoint for %s, starting fresh", key)
            elif fingerprint is not None and state.queue_fingerprint != fingerprint:
                logger.warning("Checkpoint for %s was taken over a different queue, starting fresh", key)
            else:
                self.resumed = True
                logger.info(
                    "Resuming %s after cursor %s (saved=%d skipped=%d not_found=%d)",
                    key,
                    state.last_cursor,
                    state.saved,
                    state.skipped,
                    state.not_found,
                )
                return state
        return CheckpointState(
            kind=key or self.kind.value,
            direction=direction,
            start_cursor=start,
            end_cursor=end,
            queue_fingerprint=fingerprint,
        )

    @property
    def ended_groups(self) -> set[str]:
        """Groups closed by an empty page during this run."""
        return set(self._ended_groups)

    def _save(self) -> None:
        if self.checkpoints is not None and self.checkpoint_key:
            self.checkpoints.save(self.state)

    def _finish_checkpoint(self, termination: Termination, cause: StopCause | None) -> None:
        if self.checkpoints is None or not self.checkpoint_key:
            return
        if termination == Termination.COMPLETE and cause in _FINISHED_CAUSES:
            self.checkpoints.delete(self.checkpoint_key)
        else:
            self.checkpoints.save(self.state)

    # ------------------------------------------------------------------
    # Scan loop
    # ------------------------------------------------------------------

    async def _scan(self, space) -> RunSummary:
        started_at = datetime.now(timezone.utc)
        self.status = STATE_SCANNING
        cursor = self.state.next_cursor
        if cursor is None:
            cursor = space.start
        termination = Termination.COMPLETE
        cause: StopCause | None = None

        try:
            while cause is None:
                if self.stop_event is not None and self.stop_event.is_set():
                    cause = StopCause.INTERRUPTED
                    break
                cause = self._check_stop(space)
                if cause is not None:
                    break

                batch, cursor = self._next_batch(space, cursor)
                if not batch:
                    cause = space.exhausted_cause
                    break

                results = await self._dispatch(batch)
                cursor, cause = await self._process(space, results, cursor)
                self._save()
        except ScanAbortedError as e:
            logger.error("%s", e)
            cause = StopCause.ESCALATION_EXHAUSTED
        except asyncio.CancelledError:
            self.status = STATE_ABORTED
            self._save()
            raise

        if cause in (StopCause.ESCALATION_EXHAUSTED, StopCause.INTERRUPTED):
            termination = Termination.ABORTED
        self.status = STATE_COMPLETE if termination == Termination.COMPLETE else STATE_ABORTED
        self._finish_checkpoint(termination, cause)

        return RunSummary(
            kind=self.kind,
            saved=self.state.saved,
            skipped=self.state.skipped,
            not_found=self.state.not_found,
            failed=self.state.failed,
            store_errors=self.store_errors,
            last_cursor=self.state.last_cursor,
            replace_calls=self.policy.replace_calls,
            restart_calls=self.policy.restart_calls,
            termination=termination,
            cause=cause,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )

    def _check_stop(self, space) -> StopCause | None:
        if self.options.max_items and self._saved_this_run >= self.options.max_items:
            return StopCause.MAX_ITEMS
        if (
            isinstance(space, _IdSpace)
            and self.options.not_found_limit
            and self.state.consecutive_not_found >= self.options.not_found_limit
        ):
            return StopCause.NOT_FOUND_LIMIT
        return None

    def _next_batch(self, space, cursor: int) -> tuple[list[ScrapeTarget], int]:
        """Collect up to ``batch_size`` dispatchable targets starting at ``cursor``.

        Skips are only consumed before the first dispatchable target, so
        the checkpoint cursor never runs ahead of an unfinished fetch.
        """
        batch: list[ScrapeTarget] = []
        while len(batch) < self.batch_size and space.contains(cursor):
            target = space.target_at(cursor)
            ended_group = target.group is not None and target.group in self._ended_groups
            known = target.external_id is not None and target.external_id in self.known_ids
            if ended_group or known:
                if batch:
                    break
                if known:
                    self._record_skip()
                self.state.last_cursor = cursor
                cursor = space.step(cursor)
                continue
            batch.append(target)
            cursor = space.step(cursor)
        return batch, cursor

    def _record_skip(self) -> None:
        self.state.skipped += 1
        # A known id is evidence the range is still populated
        self.state.consecutive_not_found = 0
        targets_total.labels(kind=self.kind.value, outcome="skipped").inc()
        self._skip_events += 1
        if self._skip_events % settings.SKIP_FLUSH_INTERVAL == 0:
            self._save()

    async def _dispatch(
        self, batch: list[ScrapeTarget]
    ) -> list[tuple[FetchOutcome, SessionHandle | None]]:
        await self.rate_limiter.wait(self.options.profile)

        async def _run(slot: int, target: ScrapeTarget):
            if slot and self.launch_stagger:
                await self._sleep(slot * self.launch_stagger)
            return await self.fetcher.fetch(target, self.pool_name, self.pool_size)

        return list(await asyncio.gather(*(_run(i, t) for i, t in enumerate(batch))))

    async def _process(self, space, results, next_cursor: int) -> tuple[int, StopCause | None]:
        """Apply batch results in cursor order.

        Returns the cursor to continue from and a stop cause, if any. A
        retryable failure rewinds to the failed target and discards the
        results after it; they are fetched again.
        """
        for outcome, handle in results:
            target = outcome.target
            targets_total.labels(kind=self.kind.value, outcome=outcome.status.value).inc()

            if outcome.is_hard_failure:
                attempts = self._attempts.get(target.cursor, 0) + 1
                self._attempts[target.cursor] = attempts
                logger.warning(
                    "Target %s failed (%s, attempt %d/%d): %s",
                    target.external_id or target.cursor,
                    outcome.error_kind.value if outcome.error_kind else outcome.status.value,
                    attempts,
                    self.options.max_attempts,
                    outcome.error,
                )
                await self._escalate(handle)
                if attempts < self.options.max_attempts:
                    return target.cursor, None
                logger.error("Giving up on target %s", target.external_id or target.cursor)
                self._attempts.pop(target.cursor, None)
                self.state.failed += 1
                self.failed_targets.append(target)
                self.state.last_cursor = target.cursor
                continue

            self.policy.record_success()
            self._attempts.pop(target.cursor, None)
            if outcome.status == OutcomeStatus.FOUND:
                saved = await self.record_sink(target, outcome.records)
                self.state.saved += saved
                self._saved_this_run += saved
                self.state.consecutive_not_found = 0
            else:
                self.state.not_found += 1
                self.state.consecutive_not_found += 1
                if target.group is not None:
                    self._ended_groups.add(target.group)
            self.state.last_cursor = target.cursor

            cause = self._check_stop(space)
            if cause is not None:
                return space.step(target.cursor), cause
        return next_cursor, None

    async def _escalate(self, handle: SessionHandle | None) -> None:
        action = self.policy.record_failure()
        if action == EscalationAction.RETRY:
            profile = "slow" if "slow" in self.rate_limiter.profiles else self.options.profile
            await self.rate_limiter.wait(profile)
            return

        if action == EscalationAction.REPLACE:
            await self.rate_limiter.cooldown(settings.REPLACE_COOLDOWN_SECONDS)
            if handle is None:
                action = self.policy.replace_failed()
            else:
                try:
                    await self.pools.replace(handle)
                    self.policy.recovered()
                    return
                except SessionPoolError as e:
                    logger.warning("%s", e)
                    action = self.policy.replace_failed()

        if action == EscalationAction.RESTART:
            try:
                await self.pools.restart(self.pool_name, cooldown=settings.RESTART_COOLDOWN_SECONDS)
            except Exception as e:
                self.policy.restart_failed()
                self._save()
                raise ScanAbortedError(f"pool {self.pool_name} could not be restarted: {e}") from e
            self.policy.recovered()
            return

        if action == EscalationAction.ABORT:
            self._save()
            raise ScanAbortedError("escalation exhausted")

    # ------------------------------------------------------------------
    # Default record sink
    # ------------------------------------------------------------------

    async def _upsert_records(self, target: ScrapeTarget, records: list) -> int:
        if self.options.dry_run or self.store is None:
            return len(records)
        saved = 0
        for record in records:
            try:
                await self.store.upsert(record)
                saved += 1
            except StoreWriteFailure as e:
                self.store_errors += 1
                store_errors_total.labels(kind=self.kind.value).inc()
                logger.error("%s", e)
        return saved
