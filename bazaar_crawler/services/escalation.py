"""Escalation policy for sustained hard failures.

States: NORMAL -> TIER1 -> TIER2 -> ABORT
- NORMAL: forward progress; hard failures are counted
- TIER1: the failing session is being replaced
- TIER2: the whole pool is being restarted
- ABORT: a restart failed to produce a working pool; terminal

Only NORMAL makes cursor progress; the other states are recovery-only.
"""

import logging
from enum import Enum

from bazaar_crawler.config import settings
from bazaar_crawler.core.metrics import escalations_total

logger = logging.getLogger(__name__)

# State constants
STATE_NORMAL = "normal"
STATE_TIER1 = "tier1"
STATE_TIER2 = "tier2"
STATE_ABORT = "abort"


class EscalationAction(str, Enum):
    RETRY = "retry"  # cool off briefly and try the target again
    REPLACE = "replace"  # tier 1
    RESTART = "restart"  # tier 2
    ABORT = "abort"


class EscalationPolicy:
    """Per-run failure counters and the decision table over them.

    ``escalation_rounds`` counts tier-1 rounds since the last full pool
    restart; the round that reaches ``replace_rounds`` becomes a restart.
    """

    def __init__(
        self,
        error_threshold: int | None = None,
        replace_rounds: int | None = None,
    ):
        self.error_threshold = max(1, error_threshold or settings.ESCALATION_ERROR_THRESHOLD)
        self.replace_rounds = max(1, replace_rounds or settings.ESCALATION_REPLACE_ROUNDS)
        self.consecutive_errors = 0
        self.escalation_rounds = 0
        self.state = STATE_NORMAL
        self.replace_calls = 0
        self.restart_calls = 0

    @property
    def aborted(self) -> bool:
        return self.state == STATE_ABORT

    def record_success(self) -> None:
        self.consecutive_errors = 0
        self.state = STATE_NORMAL

    def record_failure(self) -> EscalationAction:
        """Count one hard failure and decide what to do about it."""
        if self.aborted:
            return EscalationAction.ABORT

        self.consecutive_errors += 1
        if self.consecutive_errors < self.error_threshold:
            return EscalationAction.RETRY

        self.consecutive_errors = 0
        self.escalation_rounds += 1
        if self.escalation_rounds >= self.replace_rounds:
            return self._escalate_restart()

        self.state = STATE_TIER1
        self.replace_calls += 1
        escalations_total.labels(tier="replace").inc()
        logger.warning(
            "%d consecutive failures, replacing session (round %d/%d)",
            self.error_threshold,
            self.escalation_rounds,
            self.replace_rounds,
        )
        return EscalationAction.REPLACE

    def replace_failed(self) -> EscalationAction:
        """A tier-1 replace could not produce a session; go to tier 2."""
        logger.warning("Session replace failed, escalating to pool restart")
        return self._escalate_restart()

    def _escalate_restart(self) -> EscalationAction:
        self.escalation_rounds = 0
        self.state = STATE_TIER2
        self.restart_calls += 1
        escalations_total.labels(tier="restart").inc()
        logger.warning("Escalating to full pool restart (#%d)", self.restart_calls)
        return EscalationAction.RESTART

    def recovered(self) -> None:
        """The replace/restart produced a usable pool."""
        self.state = STATE_NORMAL

    def restart_failed(self) -> EscalationAction:
        self.state = STATE_ABORT
        escalations_total.labels(tier="abort").inc()
        logger.error("Pool restart failed, aborting scan")
        return EscalationAction.ABORT
