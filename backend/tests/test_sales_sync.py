"""
Sales sync tests: POS sale lines -> recipe expansion -> idempotent `sale`
deductions, plus the end-to-end ledger walkthrough with a stock count.
"""

import threading
from datetime import date, datetime, time
from decimal import Decimal

import pytest

from conftest import StubSource, mark_counted, sale_line
from stockledger.models import InventoryTransaction, MenuRecipe, MenuRecipeItem, SalesSyncLog
from stockledger.models.inventory import REF_RECIPE_SALE, TX_ADJUSTMENT, TX_RECEIVE, TX_SALE
from stockledger.models.sync import SYNC_CANCELLED, SYNC_COMPLETED, SYNC_FAILED
from stockledger.services import count_service, ledger_service
from stockledger.services.analytics_client import AnalyticsUnavailableError
from stockledger.services.sales_sync_service import (
    REASON_NO_STOCK_CHECK,
    SaleReference,
    SalesSyncError,
    sync_sales,
)


DAY = date(2024, 3, 1)


def _sales(db_session):
    return (
        db_session.query(InventoryTransaction)
        .filter(InventoryTransaction.transaction_type == TX_SALE)
        .order_by(InventoryTransaction.id.asc())
        .all()
    )


@pytest.fixture
def omelette(db_session, units, egg):
    """Menu item OM01: 3 eggs."""
    recipe = MenuRecipe(menu_barcode="OM01", name="Omelette")
    recipe.items = [MenuRecipeItem(product_id=egg.id, unit_id=units["pc"].id, quantity=Decimal("3"))]
    db_session.add(recipe)
    db_session.commit()
    return recipe


class TestSaleReference:
    def test_serialized_form(self):
        ref = SaleReference("recipe-sale-bill", DAY, time(12, 30, 5), 1, 2, 3, "POS:0001")
        assert ref.serialize() == "recipe-sale-bill:2024-03-01:123005:1:2:3:POS%3A0001"
        assert SaleReference.parse(ref.serialize()) == ref

    def test_parse_rejects_foreign_reference(self):
        with pytest.raises(ValueError):
            SaleReference.parse("production:20240301:1:1")


class TestExampleScenario:
    def test_receive_sync_resync_and_count(self, db_session, branch, kitchen, egg, omelette):
        ledger_service.initialize_balance(egg.id, kitchen.id, Decimal("10"))
        mark_counted(db_session, egg, kitchen)

        ledger_service.post_manual_movement(egg.id, kitchen.id, TX_RECEIVE, Decimal("5"))
        assert ledger_service.get_balance(egg.id, kitchen.id) == 15

        source = StubSource([sale_line("R1", "OM01", 1, sold_at=datetime(2024, 3, 1, 12, 0))])
        first = sync_sales(DAY, DAY, source=source)
        assert first.applied_deductions == 1
        assert first.skipped_existing == 0
        assert ledger_service.get_balance(egg.id, kitchen.id) == 12

        again = sync_sales(DAY, DAY, source=source)
        assert again.planned_deductions == 1
        assert again.applied_deductions == 0
        assert again.skipped_existing == 1
        assert ledger_service.get_balance(egg.id, kitchen.id) == 12

        count_service.record_counts(kitchen.id, date(2024, 3, 2), [{"product_id": egg.id, "counted_quantity": 10}])
        preview = count_service.preview_variance(date(2024, 3, 2), kitchen.id)
        assert preview[0]["variance"] == -2
        assert preview[0]["can_apply"] is True

        result = count_service.apply_adjustment(date(2024, 3, 2), kitchen.id, [egg.id])
        assert result.total_adjustments == 1
        adjustment = result.adjustments[0]["transaction"]
        assert adjustment["transaction_type"] == TX_ADJUSTMENT
        assert adjustment["quantity"] == -2
        assert ledger_service.get_balance(egg.id, kitchen.id) == 10
        assert ledger_service.verify_ledger().ok


class TestSyncSales:
    def test_deduction_row_shape(self, db_session, branch, kitchen, egg, omelette):
        mark_counted(db_session, egg, kitchen)
        source = StubSource([sale_line("D-7", "OM01", 2, sold_at=datetime(2024, 3, 1, 19, 45, 10))])

        result = sync_sales(DAY, DAY, source=source, actor=5)

        entry = _sales(db_session)[0]
        assert entry.quantity == Decimal("-6")
        assert entry.reference_type == REF_RECIPE_SALE
        assert entry.reference_id == f"recipe-sale-bill:2024-03-01:194510:{branch.id}:{kitchen.id}:{egg.id}:D-7"
        assert entry.occurred_at == datetime(2024, 3, 1, 19, 45, 10)
        assert entry.created_by == 5
        assert result.applied_quantity == Decimal("6")

    def test_lines_of_one_bill_are_merged_per_ingredient(self, db_session, branch, kitchen, egg, rice, omelette, fried_rice):
        mark_counted(db_session, egg, kitchen)
        mark_counted(db_session, rice, kitchen)
        bill_time = datetime(2024, 3, 1, 12, 0)
        source = StubSource([
            sale_line("D1", "OM01", 1, sold_at=bill_time),
            sale_line("D1", "FR01", 1, sold_at=bill_time),
        ])

        result = sync_sales(DAY, DAY, source=source)

        assert result.planned_deductions == 2
        eggs = [e for e in _sales(db_session) if e.product_id == egg.id]
        assert len(eggs) == 1
        assert eggs[0].quantity == Decimal("-5")
        assert eggs[0].occurred_at == bill_time

    def test_reused_bill_number_on_another_day_is_a_separate_bill(self, db_session, branch, kitchen, egg, omelette):
        mark_counted(db_session, egg, kitchen)
        next_day = date(2024, 3, 2)
        source = StubSource([
            sale_line("0001", "OM01", 1, sold_at=datetime(2024, 3, 1, 12, 0)),
            sale_line("0001", "OM01", 1, sold_at=datetime(2024, 3, 2, 12, 0)),
        ])

        both = sync_sales(DAY, next_day, source=source)
        assert both.applied_deductions == 2
        assert ledger_service.get_balance(egg.id, kitchen.id) == -6

        # Re-syncing the second day alone matches the row already posted for it
        second = sync_sales(next_day, next_day, source=source)

        assert second.planned_deductions == 1
        assert second.skipped_existing == 1
        assert second.applied_deductions == 0
        assert ledger_service.get_balance(egg.id, kitchen.id) == -6
        assert [e.occurred_at.date() for e in _sales(db_session)] == [DAY, next_day]

    def test_rows_posted_in_bill_time_order(self, db_session, branch, kitchen, egg, omelette):
        mark_counted(db_session, egg, kitchen)
        source = StubSource([
            sale_line("LATE", "OM01", 1, sold_at=datetime(2024, 3, 1, 21, 0)),
            sale_line("EARLY", "OM01", 1, sold_at=datetime(2024, 3, 1, 9, 0)),
        ])
        sync_sales(DAY, DAY, source=source)
        assert [e.reference_id.rsplit(":", 1)[1] for e in _sales(db_session)] == ["EARLY", "LATE"]

    def test_product_without_stock_check_is_unresolved(self, db_session, branch, kitchen, egg, omelette):
        source = StubSource([sale_line("D1", "OM01", 1)])
        result = sync_sales(DAY, DAY, source=source)

        assert result.applied_deductions == 0
        assert result.unresolved_items[0]["reason"] == REASON_NO_STOCK_CHECK
        assert _sales(db_session) == []

    def test_count_routes_sales_only_once_applied(self, db_session, branch, kitchen, egg, omelette):
        ledger_service.post(egg.id, kitchen.id, TX_RECEIVE, Decimal("12"))
        count_service.record_counts(kitchen.id, date(2024, 2, 28), [{"product_id": egg.id, "counted_quantity": 10}])
        source = StubSource([sale_line("D1", "OM01", 1)])

        pending = sync_sales(DAY, DAY, source=source)

        assert pending.applied_deductions == 0
        assert pending.unresolved_items[0]["product_id"] == egg.id
        assert pending.unresolved_items[0]["reason"] == REASON_NO_STOCK_CHECK
        assert _sales(db_session) == []

        count_service.apply_adjustment(date(2024, 2, 28), kitchen.id, [egg.id])
        applied = sync_sales(DAY, DAY, source=source)

        assert applied.applied_deductions == 1
        assert _sales(db_session)[0].department_id == kitchen.id
        assert ledger_service.get_balance(egg.id, kitchen.id) == 7

    def test_lowest_counting_department_wins(self, db_session, branch, kitchen, bar, egg, omelette):
        mark_counted(db_session, egg, bar)
        mark_counted(db_session, egg, kitchen)
        sync_sales(DAY, DAY, source=StubSource([sale_line("D1", "OM01", 1)]))
        assert _sales(db_session)[0].department_id == min(kitchen.id, bar.id)

    def test_missing_recipe_and_branch_mapping_reported(self, db_session, branch, kitchen, egg, omelette):
        mark_counted(db_session, egg, kitchen)
        source = StubSource([
            sale_line("D1", "OM01", 1),
            sale_line("D2", "UNKNOWN", 2),
            sale_line("D3", "OM01", 1, branch_code="ZZ"),
        ])

        result = sync_sales(DAY, DAY, source=source)

        assert result.applied_deductions == 1
        assert [m["menu_barcode"] for m in result.missing_recipes] == ["UNKNOWN"]
        assert [m["branch_code"] for m in result.missing_branch_mapping] == ["ZZ"]

    def test_missing_conversion_does_not_block_other_ingredients(self, db_session, branch, kitchen, units, egg, rice):
        mark_counted(db_session, egg, kitchen)
        mark_counted(db_session, rice, kitchen)
        recipe = MenuRecipe(menu_barcode="BAD01", name="Broken")
        recipe.items = [
            MenuRecipeItem(product_id=rice.id, unit_id=units["pc"].id, quantity=Decimal("1")),
            MenuRecipeItem(product_id=egg.id, unit_id=units["pc"].id, quantity=Decimal("1")),
        ]
        db_session.add(recipe)
        db_session.commit()

        result = sync_sales(DAY, DAY, source=StubSource([sale_line("D1", "BAD01", 1)]))

        assert result.applied_deductions == 1
        assert result.missing_conversions[0]["product_id"] == rice.id
        assert [e.product_id for e in _sales(db_session)] == [egg.id]

    def test_dry_run_posts_nothing(self, db_session, branch, kitchen, egg, omelette):
        mark_counted(db_session, egg, kitchen)
        source = StubSource([sale_line("D1", "OM01", 1), sale_line("D2", "OM01", 1)])
        sync_sales(DAY, DAY, source=source)
        source.lines.append(sale_line("D3", "OM01", 1))

        result = sync_sales(DAY, DAY, source=source, dry_run=True)

        assert result.dry_run
        assert result.planned_deductions == 3
        assert result.skipped_existing == 2
        assert result.applied_deductions == 0
        assert len(_sales(db_session)) == 2

    def test_unavailable_source_fails_run_and_posts_nothing(self, db_session, branch, kitchen, egg, omelette):
        mark_counted(db_session, egg, kitchen)
        source = StubSource(error=AnalyticsUnavailableError("down", attempts=3))

        with pytest.raises(AnalyticsUnavailableError):
            sync_sales(DAY, DAY, source=source)

        log = db_session.query(SalesSyncLog).one()
        assert log.status == SYNC_FAILED
        assert "down" in log.error_message
        assert _sales(db_session) == []

    def test_cancel_stops_between_rows(self, db_session, branch, kitchen, egg, omelette):
        mark_counted(db_session, egg, kitchen)
        cancel = threading.Event()
        cancel.set()

        result = sync_sales(DAY, DAY, source=StubSource([sale_line("D1", "OM01", 1)]), cancel_event=cancel)

        assert result.cancelled
        assert result.applied_deductions == 0
        assert db_session.query(SalesSyncLog).one().status == SYNC_CANCELLED

    def test_completed_run_is_logged(self, db_session, branch, kitchen, egg, omelette):
        mark_counted(db_session, egg, kitchen)
        result = sync_sales(DAY, DAY, source=StubSource([sale_line("D1", "OM01", 1)]), actor=9)

        log = db_session.get(SalesSyncLog, result.log_id)
        assert log.status == SYNC_COMPLETED
        assert log.applied_deductions == 1
        assert log.triggered_by == 9
        assert log.finished_at is not None

    def test_branch_filter_queries_only_that_branch(self, db_session, branch, kitchen, egg, omelette):
        source = StubSource()
        sync_sales(DAY, DAY, branch.id, source=source)
        assert source.calls == [(DAY, DAY, ["B01"])]

    def test_invalid_window_rejected(self, db_session, branch):
        with pytest.raises(SalesSyncError):
            sync_sales(date(2024, 3, 2), DAY, source=StubSource())
