# micropay/oracle/runtime.py
"""Builds the oracle's collaborators from settings."""
import logging
import threading
from typing import Optional, Tuple

from micropay.core.config import Settings, settings as default_settings
from micropay.oracle.executor import SettlementExecutor
from micropay.oracle.loop import ReconciliationLoop
from micropay.oracle.pricing import ContentCatalog
from micropay.oracle.records import SettlementProtocol
from micropay.oracle.store import SwapRecordStore
from micropay.services.payment_state import PaymentStateClient
from micropay.services.starknet_ledger import StarknetLedger

logger = logging.getLogger(__name__)


def build_store(config: Optional[Settings] = None) -> SwapRecordStore:
    config = config or default_settings
    return SwapRecordStore(config.SWAPS_DB_PATH)


def build_payment_client(config: Optional[Settings] = None) -> PaymentStateClient:
    config = config or default_settings
    return PaymentStateClient(
        base_url=str(config.SWAP_PROVIDER_URL),
        api_key=config.SWAP_PROVIDER_API_KEY,
        timeout=config.SWAP_PROVIDER_TIMEOUT_SECONDS,
    )


def build_catalog(config: Optional[Settings] = None) -> ContentCatalog:
    config = config or default_settings
    return ContentCatalog(config.CONTENT_PRICES, decimals=config.TOKEN_DECIMALS)


def build_ledger(config: Optional[Settings] = None) -> StarknetLedger:
    config = config or default_settings
    return StarknetLedger(
        rpc_url=str(config.STARKNET_RPC_URL),
        account_address=config.ORACLE_ACCOUNT_ADDRESS,
        private_key=config.ORACLE_PRIVATE_KEY,
        chain=config.STARKNET_CHAIN,
        poll_interval=config.FINALITY_POLL_SECONDS,
    )


def build_executor(ledger: StarknetLedger, config: Optional[Settings] = None) -> SettlementExecutor:
    config = config or default_settings
    return SettlementExecutor(
        ledger=ledger,
        payment_contract_address=config.PAYMENT_CONTRACT_ADDRESS,
        token_contract_address=config.TOKEN_CONTRACT_ADDRESS,
        catalog=build_catalog(config),
        default_creator_address=config.effective_creator_address,
        protocol=SettlementProtocol(config.SETTLEMENT_PROTOCOL),
        finality_timeout=config.FINALITY_TIMEOUT_SECONDS,
        voucher_event_name=config.VOUCHER_EVENT_NAME,
        max_unknown_tx_polls=config.MAX_UNKNOWN_TX_POLLS,
    )


def build_reconciliation_loop(
    config: Optional[Settings] = None,
    store: Optional[SwapRecordStore] = None
) -> ReconciliationLoop:
    """
    Wire a ready-to-run oracle and check the ledger is reachable.

    Raises:
        LedgerUnavailable: If the Starknet node cannot be reached (fatal at startup)
    """
    config = config or default_settings
    ledger = build_ledger(config)
    block = ledger.check_connection()
    logger.info(f"Connected to Starknet {config.STARKNET_CHAIN} at block {block}")

    return ReconciliationLoop(
        store=store or build_store(config),
        payment_client=build_payment_client(config),
        executor=build_executor(ledger, config),
        poll_interval=config.ORACLE_POLL_INTERVAL_SECONDS,
    )


def start_background_oracle(loop: ReconciliationLoop) -> Tuple[threading.Thread, threading.Event]:
    """
    Run the loop in a background thread.

    Returns:
        The thread and its stop event; set the event, then join the thread so an
        in-flight tick finishes before the process exits
    """
    stop_event = threading.Event()
    thread = threading.Thread(target=loop.run_forever, args=(stop_event,), name="oracle", daemon=True)
    thread.start()
    return thread, stop_event
