"""
Concurrent writers against one file-backed database.

Every worker posts through its own app context (and so its own session);
the balance row lock must serialize them so no update is lost and the chain
stays gap-free.
"""

import threading
from decimal import Decimal

import pytest

from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Branch, Department, InventoryTransaction, Product
from stockledger.models.inventory import TX_ADJUSTMENT, TX_SALE
from stockledger.services import sequence_service, ledger_service
from stockledger.services.concurrency import run_with_retry


WORKERS = 4
POSTS_PER_WORKER = 5


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'ledger.sqlite3'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30, 'check_same_thread': False}},
        'ANALYTICS_TIME_OFFSET_HOURS': 0,
    })
    with app.app_context():
        db.create_all()
        branch = Branch(name="Main", analytics_branch_code="M1")
        db.session.add(branch)
        db.session.flush()
        dept = Department(branch_id=branch.id, name="Kitchen")
        product = Product(code="FLOUR", name="Flour")
        db.session.add_all([dept, product])
        db.session.commit()
        ids = (product.id, dept.id)
    yield app, ids
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _run_workers(app, target):
    errors = []

    def _worker(n):
        with app.app_context():
            try:
                target(n)
            except Exception as exc:  # surfaced through the errors list
                errors.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=_worker, args=(n,)) for n in range(WORKERS)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


def test_parallel_posts_do_not_lose_updates(file_app):
    app, (product_id, department_id) = file_app

    def _post(n):
        for i in range(POSTS_PER_WORKER):
            ledger_service.post(product_id, department_id, TX_ADJUSTMENT, Decimal("1.5"), notes=f"w{n}-{i}")

    assert _run_workers(app, _post) == []

    with app.app_context():
        expected = Decimal("1.5") * WORKERS * POSTS_PER_WORKER
        assert ledger_service.get_balance(product_id, department_id) == expected

        entries = (
            db.session.query(InventoryTransaction)
            .order_by(InventoryTransaction.id.asc())
            .all()
        )
        assert len(entries) == WORKERS * POSTS_PER_WORKER
        running = Decimal("0")
        for entry in entries:
            assert entry.balance_before == running
            running = entry.balance_after
        assert ledger_service.verify_ledger().ok


def test_parallel_idempotent_posts_apply_once(file_app):
    app, (product_id, department_id) = file_app

    def _post(n):
        ledger_service.post(
            product_id, department_id, TX_SALE, Decimal("-2"),
            reference_type="recipe_sale", reference_id="BILL-1", idempotent=True,
        )

    assert _run_workers(app, _post) == []

    with app.app_context():
        assert db.session.query(InventoryTransaction).count() == 1
        assert ledger_service.get_balance(product_id, department_id) == Decimal("-2")


def test_parallel_sequence_allocation_is_unique(file_app):
    app, (_, department_id) = file_app
    allocated = []
    lock = threading.Lock()

    def _allocate(n):
        for _ in range(3):
            def _op():
                value = sequence_service.next_reference_sequence(department_id=department_id, kind="production")
                db.session.commit()
                return value
            value = run_with_retry(_op)
            with lock:
                allocated.append(value)

    assert _run_workers(app, _allocate) == []
    assert sorted(allocated) == list(range(1, WORKERS * 3 + 1))
