"""
Ledger store tests: balance chain invariants, idempotent posting, the
negative-balance guard, reads and repair.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from stockledger.extensions import db
from stockledger.models import InventoryBalance, InventoryTransaction
from stockledger.models.inventory import REF_MANUAL, TX_ADJUSTMENT, TX_RECEIVE, TX_SALE, TX_TRANSFER_OUT
from stockledger.services import ledger_service
from stockledger.services.ledger_service import InsufficientStockError, LedgerError, Posting
from stockledger.validation import ValidationError


def _chain(product_id, department_id):
    return (
        db.session.query(InventoryTransaction)
        .filter_by(product_id=product_id, department_id=department_id)
        .order_by(InventoryTransaction.id.asc())
        .all()
    )


class TestPost:
    def test_first_post_starts_from_zero(self, db_session, rice, kitchen):
        entry = ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, Decimal("5"))

        assert entry.balance_before == Decimal("0")
        assert entry.balance_after == Decimal("5")
        assert ledger_service.get_balance(rice.id, kitchen.id) == Decimal("5")

    def test_chain_links_every_entry(self, db_session, rice, kitchen):
        for qty in ("10", "-3", "2.5", "-0.125"):
            ledger_service.post(rice.id, kitchen.id, TX_ADJUSTMENT, Decimal(qty))

        entries = _chain(rice.id, kitchen.id)
        assert entries[0].balance_before == 0
        for prev, cur in zip(entries, entries[1:]):
            assert cur.balance_before == prev.balance_after
        for e in entries:
            assert e.balance_after == e.balance_before + e.quantity

        balance = db_session.query(InventoryBalance).filter_by(product_id=rice.id, department_id=kitchen.id).one()
        assert balance.quantity == entries[-1].balance_after == Decimal("9.375")
        assert balance.last_transaction_id == entries[-1].id

    def test_keys_are_independent(self, db_session, rice, egg, kitchen, bar):
        ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 4)
        ledger_service.post(rice.id, bar.id, TX_RECEIVE, 7)
        ledger_service.post(egg.id, kitchen.id, TX_RECEIVE, 12)

        assert ledger_service.get_balance(rice.id, kitchen.id) == 4
        assert ledger_service.get_balance(rice.id, bar.id) == 7
        assert ledger_service.get_balance(egg.id, kitchen.id) == 12
        assert ledger_service.get_balance(egg.id, bar.id) == 0

    def test_quantities_are_rounded_to_three_places(self, db_session, rice, kitchen):
        entry = ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, Decimal("1.23456"))
        assert entry.quantity == Decimal("1.235")
        assert entry.balance_after == Decimal("1.235")

    def test_unknown_type_rejected(self, db_session, rice, kitchen):
        with pytest.raises(ValidationError):
            ledger_service.post(rice.id, kitchen.id, "gift", 1)
        assert _chain(rice.id, kitchen.id) == []

    def test_ledger_allows_negative_balances_by_default(self, db_session, rice, kitchen):
        entry = ledger_service.post(rice.id, kitchen.id, TX_SALE, Decimal("-2"))
        assert entry.balance_after == Decimal("-2")


class TestIdempotentPost:
    def test_same_reference_posts_once(self, db_session, rice, kitchen):
        first = ledger_service.post(
            rice.id, kitchen.id, TX_SALE, -3,
            reference_type="recipe_sale", reference_id="R1", idempotent=True,
        )
        second = ledger_service.post(
            rice.id, kitchen.id, TX_SALE, -3,
            reference_type="recipe_sale", reference_id="R1", idempotent=True,
        )

        assert first is not None
        assert second is None
        assert len(_chain(rice.id, kitchen.id)) == 1
        assert ledger_service.get_balance(rice.id, kitchen.id) == Decimal("-3")

    def test_same_reference_other_key_is_not_a_duplicate(self, db_session, rice, egg, kitchen):
        ledger_service.post(rice.id, kitchen.id, TX_SALE, -1, reference_type="recipe_sale", reference_id="R1", idempotent=True)
        entry = ledger_service.post(egg.id, kitchen.id, TX_SALE, -2, reference_type="recipe_sale", reference_id="R1", idempotent=True)
        assert entry is not None

    def test_duplicate_inside_one_batch_is_skipped(self, db_session, rice, kitchen):
        posting = Posting(rice.id, kitchen.id, TX_SALE, Decimal("-1"), reference_type="recipe_sale", reference_id="R9")
        result = ledger_service.post_batch([posting, posting], idempotent=True)
        assert len(result.entries) == 1
        assert len(result.skipped) == 1


class TestPostBatch:
    def test_batch_is_all_or_nothing(self, db_session, rice, egg, kitchen):
        ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 1)
        ledger_service.post(egg.id, kitchen.id, TX_RECEIVE, 1)

        postings = [
            Posting(egg.id, kitchen.id, TX_SALE, Decimal("-1")),
            Posting(rice.id, kitchen.id, TX_SALE, Decimal("-5")),
        ]
        with pytest.raises(InsufficientStockError):
            ledger_service.post_batch(postings, guard_negative=True)

        assert ledger_service.get_balance(egg.id, kitchen.id) == 1
        assert ledger_service.get_balance(rice.id, kitchen.id) == 1
        assert len(_chain(egg.id, kitchen.id)) == 1

    def test_empty_batch_is_noop(self, db_session):
        result = ledger_service.post_batch([])
        assert result.entries == [] and result.skipped == []


class TestNegativeGuard:
    def test_guard_rejects_outflow_below_zero(self, db_session, rice, kitchen):
        ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 2)
        with pytest.raises(InsufficientStockError) as exc:
            ledger_service.post(rice.id, kitchen.id, TX_TRANSFER_OUT, -3, guard_negative=True)

        assert exc.value.available == Decimal("2.000")
        assert exc.value.requested == Decimal("3.000")
        assert ledger_service.get_balance(rice.id, kitchen.id) == 2

    def test_guard_ignores_adjustments(self, db_session, rice, kitchen):
        entry = ledger_service.post(rice.id, kitchen.id, TX_ADJUSTMENT, -3, guard_negative=True)
        assert entry.balance_after == Decimal("-3")

    def test_manual_movement_follows_policy(self, db_session, reject_negative, rice, kitchen):
        ledger_service.post_manual_movement(rice.id, kitchen.id, TX_RECEIVE, 1)
        with pytest.raises(InsufficientStockError):
            ledger_service.post_manual_movement(rice.id, kitchen.id, TX_SALE, -2)
        assert ledger_service.get_balance(rice.id, kitchen.id) == 1


class TestManualMovement:
    def test_sign_convention_enforced(self, db_session, rice, kitchen):
        with pytest.raises(ValidationError):
            ledger_service.post_manual_movement(rice.id, kitchen.id, TX_RECEIVE, -1)
        with pytest.raises(ValidationError):
            ledger_service.post_manual_movement(rice.id, kitchen.id, TX_SALE, 1)
        with pytest.raises(ValidationError):
            ledger_service.post_manual_movement(rice.id, kitchen.id, TX_ADJUSTMENT, 0)

    def test_manual_entry_recorded(self, db_session, rice, kitchen):
        entry = ledger_service.post_manual_movement(
            rice.id, kitchen.id, TX_RECEIVE, Decimal("3"), notes="delivery", actor=42,
        )
        assert entry.reference_type == REF_MANUAL
        assert entry.created_by == 42
        assert entry.notes == "delivery"

    def test_inactive_department_rejected(self, db_session, rice, kitchen):
        kitchen.is_active = False
        db_session.commit()
        with pytest.raises(LedgerError):
            ledger_service.post_manual_movement(rice.id, kitchen.id, TX_RECEIVE, 1)


class TestInitializeBalance:
    def test_opening_balance(self, db_session, rice, kitchen):
        entry = ledger_service.initialize_balance(rice.id, kitchen.id, Decimal("10"))
        assert entry.transaction_type == "initial"
        assert ledger_service.get_balance(rice.id, kitchen.id) == 10

    def test_rejected_when_key_has_movements(self, db_session, rice, kitchen):
        ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 1)
        with pytest.raises(LedgerError):
            ledger_service.initialize_balance(rice.id, kitchen.id, Decimal("10"))


class TestReads:
    def test_balance_as_of_cursor(self, db_session, rice, kitchen):
        first = ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 10)
        ledger_service.post(rice.id, kitchen.id, TX_SALE, -4)

        assert ledger_service.balance_as_of(rice.id, kitchen.id, None) == 0
        assert ledger_service.balance_as_of(rice.id, kitchen.id, first.id) == 10
        assert ledger_service.last_entry_id(rice.id, kitchen.id) > first.id

    def test_stock_card_window(self, db_session, rice, kitchen):
        ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 10, occurred_at=datetime(2024, 3, 1, 9))
        ledger_service.post(rice.id, kitchen.id, TX_SALE, -4, occurred_at=datetime(2024, 3, 2, 9))
        ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 1, occurred_at=datetime(2024, 3, 3, 9))

        card = ledger_service.get_stock_card(
            rice.id, kitchen.id, start=datetime(2024, 3, 2), end=datetime(2024, 3, 4),
        )
        assert card["opening_balance"] == 10
        assert card["closing_balance"] == 7
        assert card["current_balance"] == 7
        assert card["total_in"] == 1
        assert card["total_out"] == 4
        assert len(card["entries"]) == 2

    def test_list_movements_filters(self, db_session, rice, egg, kitchen):
        ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 1, reference_type="manual")
        ledger_service.post(egg.id, kitchen.id, TX_RECEIVE, 1, reference_type="manual")
        ledger_service.post(egg.id, kitchen.id, TX_SALE, -1, reference_type="recipe_sale", reference_id="X")

        rows, total = ledger_service.list_movements(product_id=egg.id)
        assert total == 2
        assert rows[0].transaction_type == TX_SALE

        rows, total = ledger_service.list_movements(reference_type="recipe_sale", reference_id="X")
        assert total == 1

    def test_list_balances_by_branch(self, db_session, rice, kitchen, bar):
        ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 1)
        ledger_service.post(rice.id, bar.id, TX_RECEIVE, 2)
        rows = ledger_service.list_balances(branch_id=kitchen.branch_id)
        assert {r.department_id for r in rows} == {kitchen.id, bar.id}


class TestVerifyAndRebuild:
    def test_clean_ledger_verifies(self, db_session, rice, kitchen):
        ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 5)
        ledger_service.post(rice.id, kitchen.id, TX_SALE, -2)

        report = ledger_service.verify_ledger()
        assert report.ok
        assert report.entries_checked == 2

    def test_drifted_balance_detected_and_rebuilt(self, db_session, rice, kitchen):
        ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 5)
        balance = db_session.query(InventoryBalance).filter_by(product_id=rice.id, department_id=kitchen.id).one()
        balance.quantity = Decimal("99")
        db_session.commit()

        report = ledger_service.verify_ledger()
        assert not report.ok
        assert report.issues[0]["type"] == "balance_drift"

        summary = ledger_service.rebuild_balances()
        assert len(summary["repaired"]) == 1
        assert ledger_service.get_balance(rice.id, kitchen.id) == 5
        assert ledger_service.verify_ledger().ok

    def test_chain_break_detected(self, db_session, rice, kitchen):
        ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 5)
        second = ledger_service.post(rice.id, kitchen.id, TX_SALE, -2)
        second.balance_before = Decimal("4")
        second.balance_after = Decimal("2")
        db_session.commit()

        types = {issue["type"] for issue in ledger_service.verify_ledger().issues}
        assert "chain_break" in types


class TestDeleteSaleMovements:
    def test_deletes_and_rechains_later_entries(self, db_session, rice, kitchen):
        ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 10, occurred_at=datetime(2024, 3, 1, 8))
        ledger_service.post(rice.id, kitchen.id, TX_SALE, -3, occurred_at=datetime(2024, 3, 1, 12))
        ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 2, occurred_at=datetime(2024, 3, 2, 8))

        summary = ledger_service.delete_sale_movements(date(2024, 3, 1), date(2024, 3, 1))

        assert summary["deleted"] == 1
        entries = _chain(rice.id, kitchen.id)
        assert [e.transaction_type for e in entries] == [TX_RECEIVE, TX_RECEIVE]
        assert entries[1].balance_before == 10
        assert entries[1].balance_after == 12
        assert ledger_service.get_balance(rice.id, kitchen.id) == 12
        assert ledger_service.verify_ledger().ok

    def test_sales_outside_range_untouched(self, db_session, rice, kitchen):
        ledger_service.post(rice.id, kitchen.id, TX_SALE, -1, occurred_at=datetime(2024, 3, 5, 12))
        summary = ledger_service.delete_sale_movements(date(2024, 3, 1), date(2024, 3, 4))
        assert summary["deleted"] == 0
        assert ledger_service.get_balance(rice.id, kitchen.id) == -1

    def test_invalid_range_rejected(self, db_session):
        with pytest.raises(ValidationError):
            ledger_service.delete_sale_movements(date(2024, 3, 2), date(2024, 3, 1))
