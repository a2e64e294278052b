# tests/test_cli.py
"""
Tests for the command line entry point.
"""
import json
from unittest.mock import MagicMock, patch

from micropay.__main__ import main
from micropay.oracle.loop import TickSummary
from micropay.services.starknet_ledger import LedgerReceipt, LedgerUnavailable, content_id_to_felt


class TestRunCommand:
    """Test `micropay run`."""

    @patch("micropay.oracle.runtime.build_reconciliation_loop")
    def test_run_once(self, mock_build):
        mock_build.return_value.run_tick.return_value = TickSummary(examined=1, confirmed=1)
        assert main(["run", "--once"]) == 0
        mock_build.return_value.run_tick.assert_called_once()
        mock_build.return_value.run_forever.assert_not_called()

    @patch("micropay.oracle.runtime.build_reconciliation_loop")
    def test_run_once_reports_errors(self, mock_build):
        mock_build.return_value.run_tick.return_value = TickSummary(examined=1, errors=1)
        assert main(["run", "--once"]) == 1

    @patch("micropay.oracle.runtime.build_reconciliation_loop")
    def test_unreachable_node_is_fatal(self, mock_build):
        """The oracle refuses to start without a reachable node."""
        mock_build.side_effect = LedgerUnavailable("connection refused")
        assert main(["run"]) == 1


class TestStatusCommand:
    """Test `micropay status`."""

    @patch("micropay.oracle.runtime.build_store")
    def test_prints_counts(self, mock_build_store, store, make_record, capsys):
        store.append(make_record("s1"))
        mock_build_store.return_value = store

        assert main(["status"]) == 0

        counts = json.loads(capsys.readouterr().out)
        assert counts == {"PENDING_DEPOSIT": 1, "CONFIRMED": 0, "FAILED": 0}


class TestSetPricesCommand:
    """Test `micropay set-prices`."""

    def _ledger(self, succeeded=True):
        ledger = MagicMock()
        ledger.execute.side_effect = lambda calls: f"0x{ledger.execute.call_count:x}"
        ledger.wait_for_receipt.side_effect = lambda tx_hash, timeout: LedgerReceipt(
            tx_hash=tx_hash, succeeded=succeeded, revert_reason=None if succeeded else "not owner"
        )
        return ledger

    @patch("micropay.oracle.runtime.build_catalog")
    @patch("micropay.oracle.runtime.build_ledger")
    def test_publishes_every_price(self, mock_build_ledger, mock_build_catalog, catalog):
        ledger = self._ledger()
        mock_build_ledger.return_value = ledger
        mock_build_catalog.return_value = catalog

        assert main(["set-prices"]) == 0

        calls = [c.args[0][0] for c in ledger.execute.call_args_list]
        assert [c.entrypoint for c in calls] == ["set_content_price"] * 3
        assert tuple(calls[0].calldata) == (content_id_to_felt("1"), 10 ** 15, 0)
        assert ledger.wait_for_receipt.call_count == 3

    @patch("micropay.oracle.runtime.build_catalog")
    @patch("micropay.oracle.runtime.build_ledger")
    def test_stops_on_revert(self, mock_build_ledger, mock_build_catalog, catalog):
        ledger = self._ledger(succeeded=False)
        mock_build_ledger.return_value = ledger
        mock_build_catalog.return_value = catalog

        assert main(["set-prices"]) == 1
        assert ledger.execute.call_count == 1
