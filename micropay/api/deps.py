# micropay/api/deps.py
"""FastAPI dependencies; override them in tests via app.dependency_overrides."""
from functools import lru_cache

from micropay.oracle.pricing import ContentCatalog
from micropay.oracle.runtime import build_catalog, build_payment_client, build_store
from micropay.oracle.store import SwapRecordStore
from micropay.services.payment_state import PaymentStateClient


@lru_cache()
def get_store() -> SwapRecordStore:
    return build_store()


@lru_cache()
def get_payment_client() -> PaymentStateClient:
    return build_payment_client()


@lru_cache()
def get_catalog() -> ContentCatalog:
    return build_catalog()
