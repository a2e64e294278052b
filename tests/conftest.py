import os

import pytest

# Required settings must exist before micropay.core.config is imported
os.environ.setdefault("STARKNET_RPC_URL", "http://localhost:5050/rpc")
os.environ.setdefault("ORACLE_ACCOUNT_ADDRESS", "0x0a11ce")
os.environ.setdefault("ORACLE_PRIVATE_KEY", "0x1234")
os.environ.setdefault("PAYMENT_CONTRACT_ADDRESS", "0x0c0ffee")
os.environ.setdefault("SWAP_PROVIDER_URL", "http://swap-provider.test/api/")

from starknet_py.hash.selector import get_selector_from_name  # noqa: E402

from micropay.core.config import settings  # noqa: E402
from micropay.oracle.executor import SettlementExecutor  # noqa: E402
from micropay.oracle.loop import ReconciliationLoop  # noqa: E402
from micropay.oracle.pricing import ContentCatalog  # noqa: E402
from micropay.oracle.records import SettlementProtocol, SwapRecord  # noqa: E402
from micropay.oracle.store import SwapRecordStore  # noqa: E402
from micropay.services.payment_state import PaymentStatus  # noqa: E402
from micropay.services.starknet_ledger import (  # noqa: E402
    FinalityTimeout,
    LedgerEvent,
    LedgerReceipt,
    LedgerUnavailable,
    PreparedTransaction,
    TransactionNotFound,
    TransactionRejected,
    to_felt,
)

PAYMENT_CONTRACT = "0x0c0ffee"
TOKEN_CONTRACT = "0x0700"
CREATOR = "0x0c7ea7"
VOUCHER_ID = 0x77


class FakeLedger:
    """
    In-memory ledger recording sent multicalls.

    Behaviour is scripted per entrypoint name through the sets below.
    """

    def __init__(self, payment_contract: str = PAYMENT_CONTRACT, voucher_id: int = VOUCHER_ID):
        self.payment_contract = payment_contract
        self.voucher_id = voucher_id
        self.emit_voucher = True
        self.prepared = []
        self.submitted = []
        self.waits = []
        # Node down before anything is sent
        self.unreachable = set()
        # Node answers the send with an error
        self.rejected = set()
        # Send never reaches the node
        self.failed_sends = set()
        # Send reaches the node but its answer is lost
        self.lost_sends = set()
        # Sent, but the node never reports the transaction
        self.dropped = set()
        self.unfinalized = set()
        self.reverted = set()
        self._names = {}

    def prepare(self, calls):
        names = [call.entrypoint for call in calls]
        if self.unreachable.intersection(names):
            raise LedgerUnavailable("Starknet node unreachable: connection refused")
        tx_hash = f"0x{len(self.prepared) + 1:04x}"
        self.prepared.append(tx_hash)
        self._names[tx_hash] = names
        return PreparedTransaction(tx_hash=tx_hash, calls=list(calls))

    def send(self, prepared):
        names = set(self._names[prepared.tx_hash])
        if self.rejected & names:
            raise TransactionRejected(f"Node rejected transaction {prepared.tx_hash}")
        if self.failed_sends & names:
            raise LedgerUnavailable("connection reset by peer")
        self.submitted.append((prepared.tx_hash, list(prepared.calls)))
        if self.lost_sends & names:
            raise LedgerUnavailable("read timed out")
        return prepared.tx_hash

    def wait_for_receipt(self, tx_hash, timeout):
        self.waits.append(tx_hash)
        names = set(self._names.get(tx_hash, []))
        sent = any(sent_hash == tx_hash for sent_hash, _ in self.submitted)
        if not sent or self.dropped & names:
            raise TransactionNotFound(tx_hash, timeout)
        if self.unfinalized & names:
            raise FinalityTimeout(tx_hash, timeout)
        if self.reverted & names:
            return LedgerReceipt(tx_hash=tx_hash, succeeded=False, revert_reason="assertion failed")

        events = []
        if "buy_voucher" in names and self.emit_voucher:
            events.append(
                LedgerEvent(
                    from_address=to_felt(self.payment_contract),
                    keys=[get_selector_from_name("VoucherPurchased")],
                    data=[self.voucher_id, 0],
                )
            )
        return LedgerReceipt(tx_hash=tx_hash, succeeded=True, events=events)

    def entrypoints(self):
        return [[call.entrypoint for call in calls] for _, calls in self.submitted]

    def count(self, entrypoint):
        return sum(names.count(entrypoint) for names in self.entrypoints())


class FakePaymentClient:
    """Returns scripted statuses; exceptions in the script are raised."""

    def __init__(self, statuses=None):
        self.statuses = dict(statuses or {})
        self.calls = []

    def get_status(self, swap_id):
        self.calls.append(swap_id)
        outcome = self.statuses.get(swap_id, PaymentStatus.PENDING)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture(autouse=True)
def isolated_audit_log(tmp_path, monkeypatch):
    """Send audit events of every test to its own file."""
    audit_path = tmp_path / "audit" / "oracle_audit.jsonl"
    monkeypatch.setattr(settings, "AUDIT_LOG_PATH", str(audit_path))
    return audit_path


@pytest.fixture
def store(tmp_path):
    return SwapRecordStore(tmp_path / "swaps.json")


@pytest.fixture
def catalog():
    return ContentCatalog({"1": "0.001", "2": "0.005", "3": "0.002"}, decimals=18)


@pytest.fixture
def fake_ledger():
    return FakeLedger()


@pytest.fixture
def fake_payment_client():
    return FakePaymentClient()


@pytest.fixture
def make_record():
    def factory(swap_id="s1", content_id="1", **overrides):
        fields = {"swap_id": swap_id, "user_address": "0x0abc", "content_id": content_id}
        fields.update(overrides)
        return SwapRecord(**fields)
    return factory


@pytest.fixture
def make_executor(fake_ledger, catalog):
    def factory(protocol=SettlementProtocol.VOUCHER, ledger=None, max_unknown_tx_polls=3):
        return SettlementExecutor(
            ledger=ledger or fake_ledger,
            payment_contract_address=PAYMENT_CONTRACT,
            token_contract_address=TOKEN_CONTRACT,
            catalog=catalog,
            default_creator_address=CREATOR,
            protocol=protocol,
            finality_timeout=1.0,
            max_unknown_tx_polls=max_unknown_tx_polls,
        )
    return factory


@pytest.fixture
def make_loop(store, fake_payment_client, make_executor):
    def factory(protocol=SettlementProtocol.VOUCHER, executor=None, payment_client=None):
        return ReconciliationLoop(
            store=store,
            payment_client=payment_client or fake_payment_client,
            executor=executor or make_executor(protocol),
            poll_interval=0.01,
        )
    return factory
