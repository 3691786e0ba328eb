"""
Pytest fixtures for stock ledger backend tests.

Provides test database setup, catalogue fixtures, and test client.
"""

import pytest
from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Supplier
from stockledger.services import products_service

ACTOR_ID = 7
MANAGER_ID = 3


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'STOCK_MUTATION_RETRY_BACKOFF': 0.0,
    })

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
def supplier(db_session):
    supplier = Supplier(name="Acme Wholesale", code="ACME", contact_person="Ravi")
    db_session.add(supplier)
    db_session.commit()
    return supplier


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: create a product through the service so opening stock hits the ledger."""
    counter = {"n": 0}

    def _make(initial_stock=0, **fields):
        counter["n"] += 1
        payload = {
            "sku": f"sku-{counter['n']:03d}",
            "name": f"Product {counter['n']}",
            "cost_price_cents": 400,
            "selling_price_cents": 1000,
            "tax_rate_bps": 0,
            "initial_stock": initial_stock,
        }
        payload.update(fields)
        return products_service.create_product(payload=payload, actor_user_id=ACTOR_ID)

    return _make


@pytest.fixture(scope='function')
def product(make_product):
    """Product with 15 on hand."""
    return make_product(initial_stock=15)


@pytest.fixture(scope='function')
def staff_headers():
    """Upstream identity headers for a staff member."""
    return {"X-Actor-Id": str(ACTOR_ID), "X-Actor-Role": "staff"}


@pytest.fixture(scope='function')
def manager_headers():
    """Upstream identity headers for a manager."""
    return {"X-Actor-Id": str(MANAGER_ID), "X-Actor-Role": "manager"}
