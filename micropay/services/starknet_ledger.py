# micropay/services/starknet_ledger.py
"""
Starknet ledger adapter used by the settlement executor.

Wraps a starknet-py account for signing multicalls and a full node client for
sending them and polling receipts. Submission is split in two:

1. ``prepare``: fetch the nonce, estimate fees and sign. Nothing leaves the
   process, and the transaction hash is known once this returns.
2. ``send``: broadcast the signed transaction.

The executor persists the hash between the two steps, so an interrupted send
can be followed up by polling that hash instead of signing again.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Union

from starknet_py.hash.selector import get_selector_from_name
from starknet_py.net.account.account import Account
from starknet_py.net.client_errors import ClientError
from starknet_py.net.client_models import (
    Call,
    TransactionExecutionStatus,
    TransactionFinalityStatus,
)
from starknet_py.net.full_node_client import FullNodeClient
from starknet_py.net.models import StarknetChainId
from starknet_py.net.signer.stark_curve_signer import KeyPair

logger = logging.getLogger(__name__)

# JSON-RPC error code for a transaction the node has not seen (yet)
TXN_HASH_NOT_FOUND = 29
# Answer to a send of a transaction the node already has
DUPLICATE_TX = 59

FINAL_STATUSES = (
    TransactionFinalityStatus.ACCEPTED_ON_L2,
    TransactionFinalityStatus.ACCEPTED_ON_L1,
)

Felt = Union[int, str]


class LedgerError(Exception):
    """Base error for ledger adapter failures."""


class LedgerUnavailable(LedgerError):
    """Raised when the node cannot be reached or answers with an RPC error."""


class TransactionRejected(LedgerError):
    """Raised when the node answers a send with an error: the transaction was not accepted."""


class FinalityTimeout(LedgerError):
    """Raised when a transaction is not final within the allowed time."""

    def __init__(self, tx_hash: str, timeout: float, message: Optional[str] = None):
        super().__init__(message or f"Transaction {tx_hash} not final after {timeout:.0f}s")
        self.tx_hash = tx_hash
        self.timeout = timeout


class TransactionNotFound(FinalityTimeout):
    """Raised when the node never reported the transaction during the wait."""

    def __init__(self, tx_hash: str, timeout: float = 0.0):
        super().__init__(tx_hash, timeout, f"Transaction {tx_hash} unknown to the node")


def to_felt(value: Felt) -> int:
    """Accept 0x-prefixed hex strings, decimal strings or ints."""
    if isinstance(value, int):
        return value
    text = value.strip()
    return int(text, 16) if text.lower().startswith("0x") else int(text)


def content_id_to_felt(content_id: str) -> int:
    """Contract-level content identifier: the Starknet selector of the content id string."""
    return get_selector_from_name(content_id)


@dataclass(frozen=True)
class ContractCall:
    """One entrypoint invocation inside a multicall."""
    contract_address: str
    entrypoint: str
    calldata: Sequence[int] = field(default_factory=tuple)


@dataclass(frozen=True)
class PreparedTransaction:
    """A signed multicall that has not been sent yet."""
    tx_hash: str
    calls: List[ContractCall]
    signed: Any = None


@dataclass(frozen=True)
class LedgerEvent:
    from_address: int
    keys: List[int]
    data: List[int]


@dataclass(frozen=True)
class LedgerReceipt:
    tx_hash: str
    succeeded: bool
    events: List[LedgerEvent] = field(default_factory=list)
    revert_reason: Optional[str] = None


class StarknetLedger:
    """Signs and sends multicalls from the oracle account and waits for their receipts."""

    def __init__(
        self,
        rpc_url: str,
        account_address: str,
        private_key: str,
        chain: str = "SEPOLIA",
        poll_interval: float = 5.0
    ):
        self.client = FullNodeClient(node_url=rpc_url)
        self.chain_id = StarknetChainId[chain]
        self.account = Account(
            client=self.client,
            address=account_address,
            key_pair=KeyPair.from_private_key(to_felt(private_key)),
            chain=self.chain_id,
        )
        self.poll_interval = poll_interval

    def check_connection(self) -> int:
        """
        Verify the node answers; used as a startup check.

        Returns:
            Latest block number

        Raises:
            LedgerUnavailable: If the node cannot be reached
        """
        try:
            return self.client.get_block_number_sync()
        except Exception as e:
            raise LedgerUnavailable(f"Starknet node unreachable: {e}") from e

    def prepare(self, calls: Sequence[ContractCall]) -> PreparedTransaction:
        """
        Sign a multicall from the oracle account without sending it.

        Returns:
            The signed transaction and its hash (0x-prefixed hex)

        Raises:
            LedgerUnavailable: If the nonce lookup, fee estimation or signing fails
        """
        starknet_calls = [
            Call(
                to_addr=to_felt(call.contract_address),
                selector=get_selector_from_name(call.entrypoint),
                calldata=[to_felt(arg) for arg in call.calldata],
            )
            for call in calls
        ]
        try:
            signed = self.account.sign_invoke_v3_sync(calls=starknet_calls, auto_estimate=True)
            tx_hash = hex(signed.calculate_hash(self.chain_id))
        except Exception as e:
            raise LedgerUnavailable(f"Could not prepare {', '.join(c.entrypoint for c in calls)}: {e}") from e
        return PreparedTransaction(tx_hash=tx_hash, calls=list(calls), signed=signed)

    def send(self, prepared: PreparedTransaction) -> str:
        """
        Broadcast a prepared transaction.

        Returns:
            Transaction hash reported by the node

        Raises:
            TransactionRejected: If the node answered with an error
            LedgerUnavailable: If the outcome of the send is unknown (transport failure)
        """
        try:
            response = self.client.send_transaction_sync(prepared.signed)
        except ClientError as e:
            if e.code == DUPLICATE_TX:
                logger.info(f"Transaction {prepared.tx_hash} was already received by the node")
                return prepared.tx_hash
            raise TransactionRejected(f"Node rejected transaction {prepared.tx_hash}: {e}") from e
        except Exception as e:
            raise LedgerUnavailable(f"Sending transaction {prepared.tx_hash} failed: {e}") from e

        tx_hash = hex(response.transaction_hash)
        if to_felt(tx_hash) != to_felt(prepared.tx_hash):
            logger.warning(f"Node reported hash {tx_hash} for prepared transaction {prepared.tx_hash}")
        logger.info(f"Submitted {', '.join(c.entrypoint for c in prepared.calls)} in tx {tx_hash}")
        return tx_hash

    def execute(self, calls: Sequence[ContractCall]) -> str:
        """Prepare and send a multicall in one go; used where no checkpoint is needed."""
        return self.send(self.prepare(calls))

    def get_receipt(self, tx_hash: str) -> Optional[LedgerReceipt]:
        """
        Fetch a receipt if the transaction is final.

        Returns:
            The receipt, or None while the transaction is not yet final

        Raises:
            TransactionNotFound: If the node does not know the transaction
            LedgerUnavailable: On transport or unexpected RPC errors
        """
        try:
            receipt = self.client.get_transaction_receipt_sync(tx_hash=to_felt(tx_hash))
        except ClientError as e:
            if e.code == TXN_HASH_NOT_FOUND:
                raise TransactionNotFound(tx_hash) from e
            raise LedgerUnavailable(f"RPC error fetching receipt for {tx_hash}: {e}") from e
        except Exception as e:
            raise LedgerUnavailable(f"Failed to fetch receipt for {tx_hash}: {e}") from e

        if receipt.finality_status not in FINAL_STATUSES:
            return None

        return LedgerReceipt(
            tx_hash=tx_hash,
            succeeded=receipt.execution_status == TransactionExecutionStatus.SUCCEEDED,
            events=[
                LedgerEvent(from_address=event.from_address, keys=list(event.keys), data=list(event.data))
                for event in (receipt.events or [])
            ],
            revert_reason=receipt.revert_reason,
        )

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> LedgerReceipt:
        """
        Poll until the transaction is final.

        Raises:
            TransactionNotFound: If the node never reported the transaction within ``timeout``
            FinalityTimeout: If the transaction is known but not final within ``timeout`` seconds
            LedgerUnavailable: On RPC failures while polling
        """
        deadline = time.monotonic() + timeout
        seen = False
        while True:
            try:
                receipt = self.get_receipt(tx_hash)
                seen = True
            except TransactionNotFound:
                receipt = None
            if receipt is not None:
                return receipt
            if time.monotonic() >= deadline:
                if not seen:
                    raise TransactionNotFound(tx_hash, timeout)
                raise FinalityTimeout(tx_hash, timeout)
            time.sleep(self.poll_interval)
