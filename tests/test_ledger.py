"""
Unit tests for the credit ledger.

Tests conditional reserve, idempotent restore and grant, and that concurrent
reserves never overdraw an account.
"""

import threading

import pytest

from variation_guard.storage.ledger import CreditLedger


class TestReserve:
    """Test conditional debits."""

    def test_reserve_debits_when_covered(self, db_path):
        ledger = CreditLedger(db_path)
        ledger.grant("cust_1", 5, reason="Starter pack")

        assert ledger.reserve("cust_1", 3, reason="Variation generation req_1", request_id="req_1") is True
        assert ledger.read("cust_1") == 2

        account = ledger.get_account("cust_1")
        assert account.lifetime_purchased == 5
        assert account.lifetime_consumed == 3

    def test_reserve_exact_balance(self, db_path):
        ledger = CreditLedger(db_path)
        ledger.grant("cust_1", 2, reason="Promo")

        assert ledger.reserve("cust_1", 2, reason="Variation generation") is True
        assert ledger.read("cust_1") == 0

    def test_insufficient_balance_leaves_account_untouched(self, db_path):
        ledger = CreditLedger(db_path)
        ledger.grant("cust_1", 1, reason="Promo")

        assert ledger.reserve("cust_1", 2, reason="Variation generation") is False
        assert ledger.read("cust_1") == 1
        assert [t.kind for t in ledger.transactions("cust_1")] == ["grant"]

    def test_unknown_account_cannot_reserve(self, db_path):
        ledger = CreditLedger(db_path)
        assert ledger.reserve("nobody", 1, reason="Variation generation") is False
        assert ledger.read("nobody") == 0
        assert ledger.get_account("nobody") is None

    @pytest.mark.parametrize("amount", [0, -1, True, 1.5])
    def test_invalid_amount_rejected(self, db_path, amount):
        ledger = CreditLedger(db_path)
        with pytest.raises(ValueError, match="positive integer"):
            ledger.reserve("cust_1", amount, reason="bad")

    def test_concurrent_reserves_never_overdraw(self, db_path):
        ledger = CreditLedger(db_path)
        ledger.grant("cust_1", 10, reason="Popular pack")

        results = []
        lock = threading.Lock()

        def worker():
            ok = ledger.reserve("cust_1", 3, reason="Variation generation")
            with lock:
                results.append(ok)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 3
        assert results.count(False) == 5
        assert ledger.read("cust_1") == 1


class TestRestoreAndGrant:
    """Test compensating credits."""

    def test_restore_reverses_reserve(self, db_path):
        ledger = CreditLedger(db_path)
        ledger.grant("cust_1", 4, reason="Promo")
        ledger.reserve("cust_1", 4, reason="Variation generation", request_id="req_1")

        assert ledger.restore("cust_1", 4, reason="Refund: all variants failed", request_id="req_1") is True
        assert ledger.read("cust_1") == 4
        assert ledger.get_account("cust_1").lifetime_consumed == 0

    def test_restore_is_idempotent_per_key(self, db_path):
        ledger = CreditLedger(db_path)
        ledger.grant("cust_1", 2, reason="Promo")
        ledger.reserve("cust_1", 2, reason="Variation generation", request_id="req_1")

        assert ledger.restore("cust_1", 2, reason="Refund", idempotency_key="refund:req_1") is True
        assert ledger.restore("cust_1", 2, reason="Refund", idempotency_key="refund:req_1") is False
        assert ledger.read("cust_1") == 2

    def test_restore_creates_missing_account(self, db_path):
        ledger = CreditLedger(db_path)
        assert ledger.restore("cust_9", 1, reason="Manual compensation") is True
        assert ledger.read("cust_9") == 1

    def test_grant_is_idempotent_per_payment(self, db_path):
        ledger = CreditLedger(db_path)
        assert ledger.grant("cust_1", 15, reason="Popular pack", idempotency_key="pay_123") is True
        assert ledger.grant("cust_1", 15, reason="Popular pack", idempotency_key="pay_123") is False
        assert ledger.read("cust_1") == 15

    def test_transactions_newest_first_with_reasons(self, db_path):
        ledger = CreditLedger(db_path)
        ledger.grant("cust_1", 5, reason="Starter pack")
        ledger.reserve("cust_1", 2, reason="Variation generation req_1", request_id="req_1")
        ledger.restore("cust_1", 2, reason="Refund req_1", request_id="req_1")

        entries = ledger.transactions("cust_1")
        assert [(t.kind, t.amount) for t in entries] == [("refund", 2), ("debit", 2), ("grant", 5)]
        assert entries[1].reason == "Variation generation req_1"
        assert entries[1].request_id == "req_1"

    def test_transactions_limit(self, db_path):
        ledger = CreditLedger(db_path)
        for i in range(5):
            ledger.grant("cust_1", 1, reason=f"Grant {i}")
        assert len(ledger.transactions("cust_1", limit=2)) == 2
