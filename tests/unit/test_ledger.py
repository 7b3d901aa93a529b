"""
Unit tests for the balance ledger.
"""

import pytest

from lnbridge.exceptions import IdentityNotFound, InsufficientBalance, InvalidAmount
from lnbridge.ledger import BalanceLedger


@pytest.fixture
def ledger(database):
    return BalanceLedger()


class TestCreditDebit:
    def test_credit_adds_to_balance(self, ledger, make_user):
        user_id = make_user()

        result = ledger.credit(user_id, 250, reason="Contest prize")

        assert result == {"userId": user_id, "newBalance": 250, "credited": 250}
        assert ledger.get_balance(user_id) == 250

    def test_debit_removes_from_balance(self, ledger, make_user):
        user_id = make_user(balance=1000)

        result = ledger.debit(user_id, 400, reason="Balance withdrawal")

        assert result == {"userId": user_id, "newBalance": 600, "debited": 400}

    def test_debit_exact_balance_reaches_zero(self, ledger, make_user):
        user_id = make_user(balance=300)

        assert ledger.debit(user_id, 300)["newBalance"] == 0

    def test_overdraft_is_rejected_and_changes_nothing(self, ledger, make_user):
        user_id = make_user(balance=100)

        with pytest.raises(InsufficientBalance) as excinfo:
            ledger.debit(user_id, 101)

        assert excinfo.value.available == 100
        assert excinfo.value.requested == 101
        assert ledger.get_balance(user_id) == 100
        assert len(ledger.history(user_id)) == 0

    @pytest.mark.parametrize("amount", [0, -5, 1.5, "10", True, None])
    def test_invalid_amounts(self, ledger, make_user, amount):
        user_id = make_user(balance=100)

        with pytest.raises(InvalidAmount):
            ledger.credit(user_id, amount)
        with pytest.raises(InvalidAmount):
            ledger.debit(user_id, amount)

    def test_unknown_user(self, ledger):
        with pytest.raises(IdentityNotFound):
            ledger.credit("missing", 10)
        with pytest.raises(IdentityNotFound):
            ledger.debit("missing", 10)

        assert ledger.get_balance("missing") == 0

    def test_sequential_debits_cannot_overspend(self, ledger, make_user):
        """Two debits that each fit but together do not: the second one fails."""
        user_id = make_user(balance=500)

        ledger.debit(user_id, 300)
        with pytest.raises(InsufficientBalance):
            ledger.debit(user_id, 300)

        assert ledger.get_balance(user_id) == 200


class TestSetBalance:
    def test_set_balance_overwrites(self, ledger, make_user):
        user_id = make_user(balance=80)

        assert ledger.set_balance(user_id, 1000, reason="Correction") == {"userId": user_id, "newBalance": 1000}
        assert ledger.get_balance(user_id) == 1000

        entry = ledger.history(user_id)[0]
        assert entry["kind"] == "set"
        assert entry["deltaSats"] == 920
        assert entry["reason"] == "Correction"

    def test_set_balance_to_zero(self, ledger, make_user):
        user_id = make_user(balance=80)

        assert ledger.set_balance(user_id, 0)["newBalance"] == 0

    def test_set_balance_rejects_negative(self, ledger, make_user):
        user_id = make_user(balance=80)

        with pytest.raises(InvalidAmount):
            ledger.set_balance(user_id, -1)


class TestReporting:
    def test_history_records_every_mutation(self, ledger, make_user):
        user_id = make_user()

        ledger.credit(user_id, 1000, reason="Prize")
        ledger.debit(user_id, 300, reason="Balance withdrawal")

        entries = ledger.history(user_id)
        assert [(e["kind"], e["deltaSats"], e["balanceAfter"]) for e in entries] == [
            ("debit", -300, 700),
            ("credit", 1000, 1000),
        ]
        assert entries[0]["createdAt"].endswith("Z")

    def test_history_limit(self, ledger, make_user):
        user_id = make_user()
        for _ in range(5):
            ledger.credit(user_id, 1)

        assert len(ledger.history(user_id, limit=3)) == 3

    def test_list_balances(self, ledger, make_user):
        rich = make_user(name="rich", balance=5000)
        make_user(name="poor", balance=0)
        make_user(name="gone", balance=900, is_active=False)

        everyone = ledger.list_balances()
        with_balance = ledger.list_balances(nonzero_only=True)

        assert [u["name"] for u in everyone] == ["rich", "poor"]
        assert [u["id"] for u in with_balance] == [rich]
        assert with_balance[0]["balanceSats"] == 5000

    def test_stats(self, ledger, make_user):
        make_user(balance=100)
        make_user(balance=201)
        make_user(balance=0)

        assert ledger.stats() == {
            "totalOutstanding": 301,
            "usersWithBalance": 2,
            "averageBalance": 150,
            "maxBalance": 201,
        }

    def test_stats_empty(self, ledger):
        assert ledger.stats() == {"totalOutstanding": 0, "usersWithBalance": 0, "averageBalance": 0, "maxBalance": 0}
