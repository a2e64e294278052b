# micropay/oracle/executor.py
"""
Settlement executor: turns a paid swap into an on-chain content unlock.

Two protocols are supported:

- voucher: step A approves the payment contract and buys a voucher in one
  multicall; step B redeems the voucher id found in step A's receipt.
- swap: a single ``unlock_with_btc`` call once the Bitcoin side is confirmed.

Every submission is signed first. The record is checkpointed with the submitted
stage and the signed transaction's hash before anything is sent, so settlement
always resumes from the persisted stage: a submitted transaction is awaited
again, never signed or sent a second time.

Failure classes:

- node unreachable before sending, finality timeout, RPC errors while waiting,
  unknown send outcome: SettlementPending, retried next tick
- node rejection, revert, missing voucher event, a submitted stage without a
  hash, a transaction the node keeps not knowing: SettlementError
"""
import logging
from typing import Callable, List, Optional, Protocol

from starknet_py.hash.selector import get_selector_from_name

from micropay.oracle import audit
from micropay.oracle.pricing import ContentCatalog, UnknownContentError, split_u256
from micropay.oracle.records import SettlementProtocol, SettlementStage, SwapRecord
from micropay.services.starknet_ledger import (
    ContractCall,
    FinalityTimeout,
    LedgerReceipt,
    LedgerUnavailable,
    PreparedTransaction,
    TransactionNotFound,
    TransactionRejected,
    content_id_to_felt,
    to_felt,
)

logger = logging.getLogger(__name__)

Checkpoint = Callable[[SwapRecord], None]


class Ledger(Protocol):
    def prepare(self, calls: List[ContractCall]) -> PreparedTransaction: ...

    def send(self, prepared: PreparedTransaction) -> str: ...

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> LedgerReceipt: ...


class SettlementError(Exception):
    """Fatal settlement failure; the record must not be retried automatically."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class SettlementPending(Exception):
    """Settlement could not progress this tick (finality timeout, RPC outage)."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def _no_checkpoint(record: SwapRecord) -> None:
    return None


class SettlementExecutor:
    """Drives one record through its on-chain settlement steps."""

    def __init__(
        self,
        ledger: Ledger,
        payment_contract_address: str,
        token_contract_address: str,
        catalog: ContentCatalog,
        default_creator_address: str,
        protocol: SettlementProtocol = SettlementProtocol.SWAP,
        finality_timeout: float = 120.0,
        voucher_event_name: str = "VoucherPurchased",
        max_unknown_tx_polls: int = 10
    ):
        self.ledger = ledger
        self.payment_contract_address = payment_contract_address
        self.token_contract_address = token_contract_address
        self.catalog = catalog
        self.default_creator_address = default_creator_address
        self.protocol = protocol
        self.finality_timeout = finality_timeout
        self.voucher_event_selector = get_selector_from_name(voucher_event_name)
        self.voucher_event_name = voucher_event_name
        self.max_unknown_tx_polls = max_unknown_tx_polls

    def settle(self, record: SwapRecord, checkpoint: Optional[Checkpoint] = None) -> str:
        """
        Run (or resume) settlement for a record until it is SETTLED.

        Args:
            record: The record to settle; its stage and tx hashes are updated in place
            checkpoint: Called with the record after every persisted change

        Returns:
            Hash of the final (redeem or unlock) transaction

        Raises:
            SettlementError: On fatal failures (rejection, revert, missing event, unknown outcome)
            SettlementPending: When the node is unreachable or a transaction is not final yet
        """
        save = checkpoint or _no_checkpoint
        if record.protocol is None:
            record.protocol = self.protocol
            save(record)

        while record.stage is not SettlementStage.SETTLED:
            step = self._next_step(record)
            step(record, save)

        return record.unlock_tx_hash

    def _next_step(self, record: SwapRecord) -> Callable[[SwapRecord, Checkpoint], None]:
        stage = record.stage
        voucher = record.protocol is SettlementProtocol.VOUCHER

        if stage in (SettlementStage.AWAITING_PAYMENT, SettlementStage.PAYMENT_SEEN):
            return self._submit_purchase if voucher else self._submit_unlock
        if stage is SettlementStage.PURCHASE_SUBMITTED and voucher:
            return self._confirm_purchase
        if stage is SettlementStage.PURCHASE_CONFIRMED and voucher:
            return self._submit_unlock
        if stage is SettlementStage.UNLOCK_SUBMITTED:
            return self._confirm_unlock

        raise SettlementError(f"Stage {stage.value} is not valid for the {record.protocol.value} protocol")

    # --- Calldata ---

    def _creator(self, record: SwapRecord) -> str:
        return record.creator_address or self.default_creator_address

    def purchase_calls(self, record: SwapRecord) -> List[ContractCall]:
        try:
            price = self.catalog.price_in_base_units(record.content_id)
        except UnknownContentError as e:
            raise SettlementError(str(e)) from e

        low, high = split_u256(price)
        content_felt = content_id_to_felt(record.content_id)
        return [
            ContractCall(
                contract_address=self.token_contract_address,
                entrypoint="approve",
                calldata=(to_felt(self.payment_contract_address), low, high),
            ),
            ContractCall(
                contract_address=self.payment_contract_address,
                entrypoint="buy_voucher",
                calldata=(content_felt, low, high),
            ),
        ]

    def unlock_calls(self, record: SwapRecord) -> List[ContractCall]:
        content_felt = content_id_to_felt(record.content_id)
        creator = to_felt(self._creator(record))

        if record.protocol is SettlementProtocol.VOUCHER:
            if not record.voucher_id:
                raise SettlementError("Voucher id missing; cannot redeem")
            return [
                ContractCall(
                    contract_address=self.payment_contract_address,
                    entrypoint="redeem_voucher",
                    calldata=(to_felt(record.voucher_id), content_felt, creator),
                )
            ]

        return [
            ContractCall(
                contract_address=self.payment_contract_address,
                entrypoint="unlock_with_btc",
                calldata=(to_felt(record.user_address), content_felt, creator),
            )
        ]

    # --- Steps ---

    def _submit(
        self,
        record: SwapRecord,
        step: str,
        calls: List[ContractCall],
        stage: SettlementStage,
        hash_field: str,
        save: Checkpoint
    ) -> None:
        try:
            prepared = self.ledger.prepare(calls)
        except LedgerUnavailable as e:
            # Nothing was sent: the stage stays where it is
            raise SettlementPending(f"{step} not submitted: {e}") from e

        setattr(record, hash_field, prepared.tx_hash)
        record.unknown_tx_polls = 0
        record.advance(stage)
        save(record)

        try:
            tx_hash = self.ledger.send(prepared)
        except TransactionRejected as e:
            raise SettlementError(f"{step} transaction {prepared.tx_hash} rejected: {e}") from e
        except Exception as e:
            # May or may not have reached the node; the stored hash is polled next tick
            raise SettlementPending(f"{step} transaction {prepared.tx_hash} send outcome unknown: {e}") from e

        if tx_hash != prepared.tx_hash:
            setattr(record, hash_field, tx_hash)
            record.touch()
            save(record)
        audit.log_settlement_submitted(record.swap_id, step, tx_hash)
        logger.info(f"Swap {record.swap_id}: {step} submitted in {tx_hash}")

    def _await(self, record: SwapRecord, step: str, tx_hash: str, save: Checkpoint) -> LedgerReceipt:
        try:
            receipt = self.ledger.wait_for_receipt(tx_hash, self.finality_timeout)
        except TransactionNotFound as e:
            record.unknown_tx_polls += 1
            record.touch()
            save(record)
            if record.unknown_tx_polls >= self.max_unknown_tx_polls:
                raise SettlementError(
                    f"{step} transaction {tx_hash} still unknown to the node after "
                    f"{record.unknown_tx_polls} attempts; it was dropped or never sent"
                ) from e
            raise SettlementPending(f"{step} transaction {tx_hash} not seen by the node yet: {e}") from e
        except (FinalityTimeout, LedgerUnavailable) as e:
            raise SettlementPending(f"{step} transaction {tx_hash} not final yet: {e}") from e

        record.unknown_tx_polls = 0
        if not receipt.succeeded:
            raise SettlementError(
                f"{step} transaction {tx_hash} reverted: {receipt.revert_reason or 'no reason given'}"
            )
        audit.log_settlement_finalized(record.swap_id, step, tx_hash)
        return receipt

    def _submit_purchase(self, record: SwapRecord, save: Checkpoint) -> None:
        calls = self.purchase_calls(record)
        self._submit(record, "purchase", calls, SettlementStage.PURCHASE_SUBMITTED, "purchase_tx_hash", save)

    def _confirm_purchase(self, record: SwapRecord, save: Checkpoint) -> None:
        if not record.purchase_tx_hash:
            raise SettlementError("Purchase submission outcome unknown (no transaction hash recorded)")

        receipt = self._await(record, "purchase", record.purchase_tx_hash, save)
        voucher = self.extract_voucher_id(receipt)
        if voucher is None:
            raise SettlementError(
                f"No {self.voucher_event_name} event in purchase receipt {receipt.tx_hash}; "
                f"purchase will not be retried"
            )

        record.voucher_id = hex(voucher)
        record.advance(SettlementStage.PURCHASE_CONFIRMED)
        save(record)
        logger.info(f"Swap {record.swap_id}: voucher {record.voucher_id} purchased")

    def _step_name(self, record: SwapRecord) -> str:
        return "redeem" if record.protocol is SettlementProtocol.VOUCHER else "unlock"

    def _submit_unlock(self, record: SwapRecord, save: Checkpoint) -> None:
        calls = self.unlock_calls(record)
        self._submit(
            record, self._step_name(record), calls, SettlementStage.UNLOCK_SUBMITTED, "unlock_tx_hash", save
        )

    def _confirm_unlock(self, record: SwapRecord, save: Checkpoint) -> None:
        if not record.unlock_tx_hash:
            raise SettlementError("Unlock submission outcome unknown (no transaction hash recorded)")

        self._await(record, self._step_name(record), record.unlock_tx_hash, save)
        record.advance(SettlementStage.SETTLED)
        save(record)

    def extract_voucher_id(self, receipt: LedgerReceipt) -> Optional[int]:
        """Find the voucher id emitted by the payment contract in a purchase receipt."""
        contract = to_felt(self.payment_contract_address)
        for event in receipt.events:
            if event.from_address != contract:
                continue
            if event.keys and event.keys[0] == self.voucher_event_selector and event.data:
                return event.data[0]
        return None
