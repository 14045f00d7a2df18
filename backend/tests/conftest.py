"""
Pytest fixtures for stockledger backend tests.

Provides test database setup, master data fixtures, a stub analytics source
and the test client.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest
from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import (
    Branch,
    Department,
    MenuRecipe,
    MenuRecipeItem,
    Product,
    StockCheck,
    Unit,
    UnitConversion,
)
from stockledger.models.inventory import REF_STOCK_CHECK, TX_ADJUSTMENT
from stockledger.services import ledger_service
from stockledger.services.analytics_client import SaleLine


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'ANALYTICS_TIME_OFFSET_HOURS': 0,
    'NEGATIVE_BALANCE_POLICY': 'allow',
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def reject_negative(app, monkeypatch):
    """Switch the negative-balance policy to reject for one test."""
    monkeypatch.setitem(app.config, 'NEGATIVE_BALANCE_POLICY', 'reject')


@pytest.fixture(scope='function')
def branch(db_session):
    """Branch mapped to analytics branch code B01."""
    branch = Branch(name="Riverside", analytics_branch_code="B01", is_active=True)
    db_session.add(branch)
    db_session.commit()
    return branch


@pytest.fixture(scope='function')
def kitchen(db_session, branch):
    dept = Department(branch_id=branch.id, name="Kitchen", is_active=True)
    db_session.add(dept)
    db_session.commit()
    return dept


@pytest.fixture(scope='function')
def bar(db_session, branch):
    dept = Department(branch_id=branch.id, name="Bar", is_active=True)
    db_session.add(dept)
    db_session.commit()
    return dept


@pytest.fixture(scope='function')
def units(db_session):
    """kg, g and piece, with 1 kg == 1000 g declared."""
    kg = Unit(name="kilogram", abbreviation="kg")
    g = Unit(name="gram", abbreviation="g")
    pc = Unit(name="piece", abbreviation="pc")
    db_session.add_all([kg, g, pc])
    db_session.flush()
    db_session.add(UnitConversion(from_unit_id=kg.id, to_unit_id=g.id, multiplier=Decimal("1000")))
    db_session.commit()
    return {"kg": kg, "g": g, "pc": pc}


@pytest.fixture(scope='function')
def rice(db_session, units):
    """Rice, stocked in kg."""
    product = Product(code="RICE", name="Jasmine rice", unit_id=units["kg"].id, default_price=Decimal("2.50"))
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def egg(db_session, units):
    """Egg, stocked in pieces."""
    product = Product(code="EGG", name="Egg", unit_id=units["pc"].id, default_price=Decimal("0.20"))
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def fried_rice(db_session, units, rice, egg):
    """Menu item FR01: 150 g rice + 2 eggs per plate."""
    recipe = MenuRecipe(menu_barcode="FR01", name="Fried rice", is_active=True)
    recipe.items = [
        MenuRecipeItem(product_id=rice.id, unit_id=units["g"].id, quantity=Decimal("150")),
        MenuRecipeItem(product_id=egg.id, unit_id=units["pc"].id, quantity=Decimal("2")),
    ]
    db_session.add(recipe)
    db_session.commit()
    return recipe


def mark_counted(db_session, product, department, check_date=date(2024, 1, 1)):
    """
    Record a count and apply it with a zero adjustment.

    An applied stock-check adjustment is what routes a product's sales to a
    department; the zero quantity leaves balances untouched.
    """
    check = StockCheck(
        product_id=product.id,
        department_id=department.id,
        check_date=check_date,
        counted_quantity=Decimal("0"),
        system_quantity=Decimal("0"),
    )
    db_session.add(check)
    db_session.commit()
    ledger_service.post(
        product.id,
        department.id,
        TX_ADJUSTMENT,
        Decimal("0"),
        reference_type=REF_STOCK_CHECK,
        reference_id=str(check.id),
        occurred_at=datetime.combine(check_date, datetime.min.time()),
    )
    return check


class StubSource:
    """In-memory analytics source with the same protocol as the HTTP client."""

    def __init__(self, lines=None, error=None):
        self.lines = list(lines or [])
        self.error = error
        self.calls = []

    def fetch_sale_lines(self, start, end, branch_codes=None):
        self.calls.append((start, end, list(branch_codes) if branch_codes is not None else None))
        if self.error is not None:
            raise self.error
        codes = set(branch_codes) if branch_codes else None
        return [
            line for line in self.lines
            if start <= line.sale_date <= end and (codes is None or line.branch_code in codes)
        ]


def sale_line(doc, barcode, qty, sold_at=datetime(2024, 3, 1, 12, 30, 0), branch_code="B01"):
    return SaleLine(
        sale_date=sold_at.date(),
        sold_at=sold_at,
        document_id=doc,
        branch_code=branch_code,
        menu_barcode=barcode,
        quantity=Decimal(str(qty)),
    )


@pytest.fixture(scope='function')
def stub_source():
    return StubSource()
