# tests/test_swaps_api.py
"""
Tests for the swap HTTP endpoints.
"""
from unittest.mock import MagicMock

import pytest
import requests
from fastapi.testclient import TestClient

from micropay.api.deps import get_catalog, get_payment_client, get_store
from micropay.main import app
from micropay.oracle.records import SwapStatus
from micropay.services.payment_state import SwapCreationError, SwapQuote


@pytest.fixture
def payment_client():
    client = MagicMock()
    client.create_swap.return_value = SwapQuote(swap_id="s1", deposit_address="bc1qxyz", amount="0.00001")
    return client


@pytest.fixture
def client(store, payment_client, catalog):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_payment_client] = lambda: payment_client
    app.dependency_overrides[get_catalog] = lambda: catalog
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestCreateSwap:
    """Test POST /api/v1/swaps."""

    def test_create_swap_success(self, client, store, payment_client):
        """A swap is created at the provider and tracked as pending."""
        response = client.post("/api/v1/swaps", json={"userAddress": "0xabc", "contentId": "1"})

        assert response.status_code == 200
        assert response.json() == {"depositAddress": "bc1qxyz", "amount": "0.00001", "swapId": "s1"}

        record = store.get("s1")
        assert record.status is SwapStatus.PENDING_DEPOSIT
        assert record.user_address == "0xabc"
        assert record.content_id == "1"

        kwargs = payment_client.create_swap.call_args.kwargs
        assert kwargs["recipient"] == "0xabc"
        assert str(kwargs["to_amount"]) == "0.001"

    def test_legacy_user_field(self, client, store):
        response = client.post("/api/v1/swaps", json={"userStarknetAddress": "0xdef", "contentId": "1"})
        assert response.status_code == 200
        assert store.get("s1").user_address == "0xdef"

    def test_unknown_content(self, client, store, payment_client):
        """Unknown content is rejected before contacting the provider."""
        response = client.post("/api/v1/swaps", json={"userAddress": "0xabc", "contentId": "99"})

        assert response.status_code == 404
        assert response.json()["error"] == "Content not found"
        payment_client.create_swap.assert_not_called()
        assert store.load_all() == []

    @pytest.mark.parametrize("body", [{"contentId": "1"}, {"userAddress": "0xabc"}, {"userAddress": "", "contentId": "1"}])
    def test_invalid_request(self, client, body):
        response = client.post("/api/v1/swaps", json=body)
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"

    @pytest.mark.parametrize("error", [
        requests.exceptions.ConnectionError("refused"),
        SwapCreationError("missing depositAddress"),
    ])
    def test_provider_failure(self, client, store, payment_client, error):
        """Provider failures are reported and nothing is tracked."""
        payment_client.create_swap.side_effect = error

        response = client.post("/api/v1/swaps", json={"userAddress": "0xabc", "contentId": "1"})

        assert response.status_code == 502
        assert response.json()["error"] == "Failed to create swap"
        assert store.load_all() == []

    def test_duplicate_swap_id(self, client):
        client.post("/api/v1/swaps", json={"userAddress": "0xabc", "contentId": "1"})
        response = client.post("/api/v1/swaps", json={"userAddress": "0xabc", "contentId": "2"})
        assert response.status_code == 409


class TestReadSwaps:
    """Test GET endpoints."""

    def test_get_swap(self, client, store, make_record):
        store.append(make_record("s1", unlock_tx_hash="0x2", status=SwapStatus.CONFIRMED))

        response = client.get("/api/v1/swaps/s1")

        assert response.status_code == 200
        data = response.json()
        assert data["swapId"] == "s1"
        assert data["status"] == "CONFIRMED"
        assert data["unlockTxHash"] == "0x2"

    def test_get_missing_swap(self, client):
        response = client.get("/api/v1/swaps/nope")
        assert response.status_code == 404
        assert response.json()["error"] == "Swap not found"

    def test_list_swaps_with_filter(self, client, store, make_record):
        store.append(make_record("s1"))
        store.append(make_record("s2", status=SwapStatus.FAILED))

        all_swaps = client.get("/api/v1/swaps").json()
        failed = client.get("/api/v1/swaps", params={"status": "FAILED"}).json()

        assert all_swaps["total_count"] == 2
        assert failed["total_count"] == 1
        assert failed["swaps"][0]["swapId"] == "s2"

    def test_oracle_status(self, client, store, make_record):
        store.append(make_record("s1"))

        response = client.get("/api/v1/oracle/status")

        assert response.status_code == 200
        data = response.json()
        assert data["swaps_by_status"]["PENDING_DEPOSIT"] == 1
        assert "total_events" in data["audit"]


class TestHealthCheck:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
