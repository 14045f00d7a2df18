from decimal import Decimal

import pytest

from stockledger.models import InventoryTransaction, Product
from stockledger.models.inventory import REF_PRODUCTION, TX_PRODUCTION_IN, TX_PRODUCTION_OUT, TX_RECEIVE
from stockledger.services import ledger_service, production_service
from stockledger.services.ledger_service import InsufficientStockError
from stockledger.services.production_service import ProductionError


@pytest.fixture
def dough(db_session, units):
    product = Product(code="DOUGH", name="Pizza dough", unit_id=units["kg"].id)
    db_session.add(product)
    db_session.commit()
    return product


def _production_rows(db_session):
    return (
        db_session.query(InventoryTransaction)
        .filter(InventoryTransaction.reference_type == REF_PRODUCTION)
        .order_by(InventoryTransaction.id.asc())
        .all()
    )


class TestTransform:
    def test_consumes_ingredients_and_produces_output(self, db_session, kitchen, rice, egg, dough):
        ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 5)
        ledger_service.post(egg.id, kitchen.id, TX_RECEIVE, 12)

        result = production_service.transform(
            kitchen.id,
            dough.id,
            "2",
            [{"product_id": rice.id, "quantity": "1.5"}, {"product_id": egg.id, "quantity": 4}],
            notes="batch A",
            actor=7,
        )

        assert ledger_service.get_balance(rice.id, kitchen.id) == Decimal("3.5")
        assert ledger_service.get_balance(egg.id, kitchen.id) == 8
        assert ledger_service.get_balance(dough.id, kitchen.id) == 2

        rows = _production_rows(db_session)
        assert len(rows) == 3
        assert {r.reference_id for r in rows} == {result.reference_id}
        assert [r.transaction_type for r in rows].count(TX_PRODUCTION_OUT) == 2
        assert [r.transaction_type for r in rows].count(TX_PRODUCTION_IN) == 1
        assert all(r.created_by == 7 for r in rows)

    def test_conservation_of_consumed_quantity(self, db_session, kitchen, rice, egg, dough):
        ingredients = [{"product_id": rice.id, "quantity": "0.75"}, {"product_id": egg.id, "quantity": 3}]
        production_service.transform(kitchen.id, dough.id, 1, ingredients)

        outs = [r for r in _production_rows(db_session) if r.transaction_type == TX_PRODUCTION_OUT]
        assert sum(-r.quantity for r in outs) == Decimal("3.75")

    def test_reference_ids_are_unique(self, db_session, kitchen, rice, dough):
        ingredients = [{"product_id": rice.id, "quantity": 1}]
        first = production_service.transform(kitchen.id, dough.id, 1, ingredients)
        second = production_service.transform(kitchen.id, dough.id, 1, ingredients)

        assert first.reference_id != second.reference_id
        assert first.reference_id.startswith("production:")
        assert first.reference_id.split(":")[2] == str(kitchen.id)

    def test_repeated_ingredient_is_merged(self, db_session, kitchen, rice, dough):
        production_service.transform(kitchen.id, dough.id, 1, [
            {"product_id": rice.id, "quantity": 1},
            {"product_id": rice.id, "quantity": 2},
        ])
        outs = [r for r in _production_rows(db_session) if r.transaction_type == TX_PRODUCTION_OUT]
        assert len(outs) == 1
        assert outs[0].quantity == Decimal("-3")

    def test_insufficient_ingredient_rolls_back_everything(self, db_session, reject_negative, kitchen, rice, egg, dough):
        ledger_service.post(rice.id, kitchen.id, TX_RECEIVE, 5)
        ledger_service.post(egg.id, kitchen.id, TX_RECEIVE, 1)

        with pytest.raises(InsufficientStockError):
            production_service.transform(kitchen.id, dough.id, 1, [
                {"product_id": rice.id, "quantity": 2},
                {"product_id": egg.id, "quantity": 3},
            ])

        assert _production_rows(db_session) == []
        assert ledger_service.get_balance(rice.id, kitchen.id) == 5
        assert ledger_service.get_balance(egg.id, kitchen.id) == 1
        assert ledger_service.get_balance(dough.id, kitchen.id) == 0

    @pytest.mark.parametrize("output_qty, ingredients", [
        (0, [{"quantity": 1}]),
        (1, []),
        (1, [{"quantity": 0}]),
    ])
    def test_invalid_requests_rejected(self, db_session, kitchen, rice, dough, output_qty, ingredients):
        for line in ingredients:
            line["product_id"] = rice.id
        with pytest.raises(ProductionError):
            production_service.transform(kitchen.id, dough.id, output_qty, ingredients)
        assert _production_rows(db_session) == []

    def test_output_cannot_be_an_ingredient(self, db_session, kitchen, dough):
        with pytest.raises(ProductionError):
            production_service.transform(kitchen.id, dough.id, 1, [{"product_id": dough.id, "quantity": 1}])

    def test_history_groups_by_reference(self, db_session, kitchen, rice, egg, dough):
        result = production_service.transform(kitchen.id, dough.id, 1, [
            {"product_id": rice.id, "quantity": 1},
            {"product_id": egg.id, "quantity": 1},
        ])

        history = production_service.list_transforms(kitchen.id)

        assert len(history) == 1
        assert history[0]["reference_id"] == result.reference_id
        assert len(history[0]["ingredients"]) == 2
        assert history[0]["output"][0]["product_id"] == dough.id
