"""
Swap-to-unlock oracle.

This package bridges off-chain and cross-chain payment confirmation to on-chain
content unlocking on Starknet.

Key components:
- records: swap record model and its status/stage state machine
- store: atomic JSON file store for swap records
- pricing: content catalog and fixed-point price conversion
- executor: two-step on-chain settlement (voucher or BTC swap unlock)
- loop: the reconciliation loop driving records to CONFIRMED or FAILED
- audit: JSON-lines audit trail of settlement events
- runtime: builds the collaborators from settings

Configuration is loaded from environment variables via micropay.core.config.
"""
