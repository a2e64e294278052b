"""
Command line entry point.

    python -m micropay run            # poll forever
    python -m micropay run --once     # single reconciliation pass
    python -m micropay set-prices     # publish catalog prices on-chain
    python -m micropay status         # swap counts by status
    python -m micropay serve          # HTTP API
"""
import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional, Sequence

from micropay.core.errors import ConfigurationError

logger = logging.getLogger("micropay")


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="micropay", description="Swap-to-unlock payment oracle")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the reconciliation loop")
    run.add_argument("--once", action="store_true", help="Run a single tick and exit")

    sub.add_parser("set-prices", help="Publish content prices to the payment contract")
    sub.add_parser("status", help="Print swap counts by status")

    serve = sub.add_parser("serve", help="Serve the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    return parser.parse_args(list(argv))


def _run(once: bool) -> int:
    from micropay.oracle.runtime import build_reconciliation_loop

    loop = build_reconciliation_loop()
    if once:
        summary = loop.run_tick()
        return 1 if summary.errors else 0

    stop_event = threading.Event()

    def _stop(signum, _frame) -> None:
        logger.info(f"Received signal {signum}, stopping after the current tick...")
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    loop.run_forever(stop_event)
    return 0


def _set_prices() -> int:
    from micropay.core.config import settings
    from micropay.oracle.pricing import split_u256
    from micropay.oracle.runtime import build_catalog, build_ledger
    from micropay.services.starknet_ledger import ContractCall, content_id_to_felt

    ledger = build_ledger()
    catalog = build_catalog()
    logger.info("Setting content prices...")

    for content_id, price in catalog.items():
        low, high = split_u256(catalog.price_in_base_units(content_id))
        call = ContractCall(
            contract_address=settings.PAYMENT_CONTRACT_ADDRESS,
            entrypoint="set_content_price",
            calldata=(content_id_to_felt(content_id), low, high),
        )
        logger.info(f"Setting price for content {content_id} to {price} STRK...")
        tx_hash = ledger.execute([call])
        receipt = ledger.wait_for_receipt(tx_hash, settings.FINALITY_TIMEOUT_SECONDS)
        if not receipt.succeeded:
            logger.error(f"Setting price for content {content_id} reverted: {receipt.revert_reason}")
            return 1
        logger.info(f"Price set for content {content_id}.")

    logger.info("All content prices set successfully.")
    return 0


def _status() -> int:
    from micropay.oracle.runtime import build_store

    print(json.dumps(build_store().count_by_status(), indent=2))
    return 0


def _serve(host: str, port: int) -> int:
    import uvicorn

    uvicorn.run("micropay.main:app", host=host, port=port)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)

    try:
        from micropay.core.config import settings
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    try:
        if args.command == "run":
            return _run(args.once)
        if args.command == "set-prices":
            return _set_prices()
        if args.command == "status":
            return _status()
        return _serve(args.host, args.port)
    except Exception as e:
        logger.error(f"Failed to start oracle: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
