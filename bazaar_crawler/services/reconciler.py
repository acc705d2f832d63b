"""Current -> history reconciliation.

After a complete list pass, every active record the pass did not see has
ended on the site. Each ended record gets a terminal snapshot in history
(at most once per external id) and is then deactivated.
"""

import logging
from typing import Iterable

from bazaar_crawler.core.metrics import records_archived_total
from bazaar_crawler.schemas.records import archive_snapshot
from bazaar_crawler.schemas.scan import ScanKind
from bazaar_crawler.services.store import RecordStore

logger = logging.getLogger(__name__)


class Reconciler:
    """Diff the SeenSet against the active set, archive, deactivate.

    ``archive=False`` only deactivates (bans have no history table).
    Counters from the last pass are kept on the instance.
    """

    def __init__(self, store: RecordStore, archive: bool = True):
        self.store = store
        self.archive = archive
        self.errors = 0
        self.deactivated = 0

    async def reconcile(self, kind: ScanKind, seen_ids: Iterable[str]) -> int:
        self.errors = 0
        self.deactivated = 0
        seen = set(seen_ids)
        active = await self.store.find_active_ids(kind)
        ended = active - seen
        logger.info(
            "Reconciling %s: %d active, %d seen, %d ended", kind.value, len(active), len(seen), len(ended)
        )
        if not ended:
            return 0

        archived = 0
        if self.archive:
            archived = await self._archive(kind, ended)

        # Runs even when some snapshots failed; those show up in self.errors
        self.deactivated = await self.store.mark_inactive(kind, ended)
        logger.info(
            "Reconciled %s: archived=%d deactivated=%d errors=%d",
            kind.value,
            archived,
            self.deactivated,
            self.errors,
        )
        return archived

    async def _archive(self, kind: ScanKind, ended: set[str]) -> int:
        archived = 0
        for record in await self.store.get_active(kind, sorted(ended)):
            try:
                if await self.store.historical_exists(record.external_id):
                    continue
                if await self.store.insert_historical(archive_snapshot(record)):
                    archived += 1
                    records_archived_total.inc()
            except Exception as e:
                self.errors += 1
                logger.error("Failed to archive %s: %s", record.external_id, e)
        return archived
