"""
Concurrency tests for stock mutations and document numbering.

Runs real threads against a file-backed SQLite database, so writers race on
the product's version_id and the database write lock instead of sharing one
in-memory connection.

Verifies:
- Concurrent stock_in / stock_out never lose an update
- Ledger entries chain in append order whichever writer wins
- Concurrent purchase orders get distinct numbers
"""

import threading

import pytest

from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Product, PurchaseOrder, StockTransaction, Supplier
from stockledger.services import products_service, purchase_order_service, stock_service

ACTOR_ID = 11


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'concurrency.sqlite3'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {"connect_args": {"timeout": 30}},
        'STOCK_MUTATION_RETRY_ATTEMPTS': 20,
        'STOCK_MUTATION_RETRY_BACKOFF': 0.01,
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _run_threads(app, jobs):
    """Start every job at once; each runs in its own app context (own session)."""
    barrier = threading.Barrier(len(jobs))
    errors = []

    def worker(job):
        with app.app_context():
            try:
                barrier.wait()
                job()
            except Exception as exc:  # surfaced in the assertion below
                errors.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(job,)) for job in jobs]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return errors


class TestConcurrentMutations:
    def test_stock_in_and_out_race(self, file_app):
        with file_app.app_context():
            product = products_service.create_product(
                payload={"sku": "RACE-1", "name": "Race", "cost_price_cents": 100, "initial_stock": 50},
                actor_user_id=ACTOR_ID,
            )
            product_id = product.id

        errors = _run_threads(file_app, [
            lambda: stock_service.mutate_stock(product_id, "stock_in", 10, ACTOR_ID),
            lambda: stock_service.mutate_stock(product_id, "stock_out", 4, ACTOR_ID),
        ])
        assert errors == []

        with file_app.app_context():
            assert db.session.get(Product, product_id).current_stock == 56

            entries = (
                db.session.query(StockTransaction)
                .filter_by(product_id=product_id)
                .order_by(StockTransaction.id.asc())
                .all()
            )
            assert len(entries) == 3
            assert entries[0].transaction_type == "initial"
            for prev, curr in zip(entries, entries[1:]):
                assert curr.previous_stock == prev.new_stock
            assert entries[-1].new_stock == 56

            assert stock_service.verify_product_ledger(product_id)["ok"] is True

    def test_many_writers_net_out(self, file_app):
        with file_app.app_context():
            product = products_service.create_product(
                payload={"sku": "RACE-2", "name": "Race 2", "initial_stock": 20},
                actor_user_id=ACTOR_ID,
            )
            product_id = product.id

        jobs = []
        for _ in range(4):
            jobs.append(lambda: stock_service.mutate_stock(product_id, "stock_in", 3, ACTOR_ID))
            jobs.append(lambda: stock_service.mutate_stock(product_id, "stock_out", 3, ACTOR_ID))

        errors = _run_threads(file_app, jobs)
        assert errors == []

        with file_app.app_context():
            assert db.session.get(Product, product_id).current_stock == 20
            report = stock_service.verify_product_ledger(product_id)
            assert report["ok"] is True
            assert report["entry_count"] == 9


class TestConcurrentNumbering:
    def test_purchase_order_numbers_are_unique(self, file_app):
        with file_app.app_context():
            supplier = Supplier(name="Race Supplier", code="RACE")
            db.session.add(supplier)
            db.session.commit()
            product = products_service.create_product(
                payload={"sku": "RACE-3", "name": "Race 3", "cost_price_cents": 250},
            )
            supplier_id, product_id = supplier.id, product.id

        def create():
            purchase_order_service.create_purchase_order(
                supplier_id=supplier_id,
                items=[{"product_id": product_id, "quantity": 1}],
                created_by_user_id=ACTOR_ID,
            )

        errors = _run_threads(file_app, [create] * 5)
        assert errors == []

        with file_app.app_context():
            numbers = [n for (n,) in db.session.query(PurchaseOrder.order_number).all()]
            assert len(numbers) == 5
            assert len(set(numbers)) == 5
            assert sorted(int(n[-3:]) for n in numbers) == [1, 2, 3, 4, 5]
