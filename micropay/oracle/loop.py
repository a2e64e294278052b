# micropay/oracle/loop.py
"""
Reconciliation loop: the only component that changes a swap's status.

Each tick loads the store, takes every PENDING_DEPOSIT record and handles it on
its own:

1. Records whose settlement is already in flight resume directly, without
   asking the provider again
2. Otherwise the swap provider is queried:
   - unreachable -> skipped until the next tick
   - paid (per the configured protocol) -> settled on-chain
   - explicitly failed -> FAILED
   - anything else -> left alone
3. Each change is checkpointed to the store as it happens

The loop sleeps a fixed delay after each tick finishes, so slow provider or RPC
calls stretch the cadence instead of overlapping ticks.
"""
import logging
import threading
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional

from micropay.oracle import audit
from micropay.oracle.executor import SettlementError, SettlementExecutor, SettlementPending
from micropay.oracle.records import SettlementProtocol, SettlementStage, SwapRecord, SwapStatus
from micropay.oracle.store import SwapRecordStore
from micropay.services.payment_state import PaymentStateClient, PaymentStateUnavailable, PaymentStatus

logger = logging.getLogger(__name__)

# Provider statuses that mean "paid" for each settlement protocol
SUCCESS_SIGNALS = {
    SettlementProtocol.SWAP: frozenset({PaymentStatus.SOURCE_CONFIRMED, PaymentStatus.DONE}),
    SettlementProtocol.VOUCHER: frozenset({PaymentStatus.DONE}),
}


@dataclass
class TickSummary:
    """Outcome counts for one pass over the store."""
    examined: int = 0
    confirmed: int = 0
    failed: int = 0
    pending: int = 0
    skipped: int = 0
    errors: int = 0
    confirmed_ids: List[str] = field(default_factory=list)
    failed_ids: List[str] = field(default_factory=list)


class ReconciliationLoop:
    """Polls the swap provider and settles paid swaps on-chain."""

    def __init__(
        self,
        store: SwapRecordStore,
        payment_client: PaymentStateClient,
        executor: SettlementExecutor,
        poll_interval: float = 10.0
    ):
        self.store = store
        self.payment_client = payment_client
        self.executor = executor
        self.poll_interval = poll_interval

    def success_signals(self, record: SwapRecord) -> FrozenSet[PaymentStatus]:
        """Paid signals for the protocol pinned on the record, else the configured one."""
        return SUCCESS_SIGNALS[record.protocol or self.executor.protocol]

    def run_tick(self) -> TickSummary:
        """Process every pending record once."""
        summary = TickSummary()
        pending = [record for record in self.store.load_all() if record.is_pending]

        if not pending:
            logger.debug("No pending swaps found.")
            return summary

        logger.info(f"Checking {len(pending)} pending swap(s)...")
        for record in pending:
            summary.examined += 1
            try:
                self._process(record, summary)
            except Exception as e:
                summary.errors += 1
                logger.exception(f"Unexpected error processing swap {record.swap_id}: {e}")
                audit.log_error(record.swap_id, type(e).__name__, str(e), {"stage": record.stage.value})

        logger.info(
            f"Tick finished: examined={summary.examined}, confirmed={summary.confirmed}, "
            f"failed={summary.failed}, pending={summary.pending}, skipped={summary.skipped}, "
            f"errors={summary.errors}"
        )
        return summary

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        """
        Tick, then wait ``poll_interval`` seconds, until ``stop_event`` is set.

        A tick in progress always finishes before the loop exits.
        """
        stop = stop_event or threading.Event()
        logger.info(f"Oracle started. Polling for swaps every {self.poll_interval:g} seconds.")
        while not stop.is_set():
            try:
                self.run_tick()
            except Exception as e:
                # Store unreadable or similar: keep the oracle alive and retry
                logger.exception(f"Reconciliation tick failed: {e}")
            stop.wait(self.poll_interval)
        logger.info("Oracle stopped.")

    def _process(self, record: SwapRecord, summary: TickSummary) -> None:
        if record.settlement_in_flight:
            logger.info(f"Resuming settlement of swap {record.swap_id} from {record.stage.value}")
            self._settle(record, summary)
            return

        try:
            status = self.payment_client.get_status(record.swap_id)
        except PaymentStateUnavailable as e:
            summary.skipped += 1
            logger.warning(f"Skipping swap {record.swap_id} this tick: {e.reason}")
            return

        logger.info(f"Swap {record.swap_id} status: {status.value}")

        if status in self.success_signals(record):
            audit.log_payment_observed(record.swap_id, status.value)
            record.protocol = record.protocol or self.executor.protocol
            record.advance(SettlementStage.PAYMENT_SEEN)
            self.store.upsert(record)
            self._settle(record, summary)
        elif status is PaymentStatus.FAILED:
            audit.log_payment_observed(record.swap_id, status.value)
            self._fail(record, "Swap provider reported the payment as failed", summary)
        else:
            summary.pending += 1

    def _settle(self, record: SwapRecord, summary: TickSummary) -> None:
        try:
            tx_hash = self.executor.settle(record, checkpoint=self.store.upsert)
        except SettlementPending as e:
            summary.pending += 1
            logger.warning(f"Settlement of swap {record.swap_id} still pending: {e.reason}")
            audit.log_error(record.swap_id, "SettlementPending", e.reason, {"stage": record.stage.value})
            return
        except SettlementError as e:
            logger.error(f"Settlement of swap {record.swap_id} failed: {e.reason}")
            self._fail(record, e.reason, summary)
            return

        record.mark_confirmed()
        self.store.upsert(record)
        summary.confirmed += 1
        summary.confirmed_ids.append(record.swap_id)
        audit.log_swap_confirmed(record.swap_id, tx_hash)
        logger.info(
            f"Successfully unlocked content {record.content_id} for user {record.user_address}. Tx: {tx_hash}"
        )

    def _fail(self, record: SwapRecord, reason: str, summary: TickSummary) -> None:
        record.mark_failed(reason)
        self.store.upsert(record)
        summary.failed += 1
        summary.failed_ids.append(record.swap_id)
        audit.log_swap_failed(record.swap_id, reason, record.stage.value)
        logger.warning(f"Swap {record.swap_id} marked {SwapStatus.FAILED.value}: {reason}")
