"""
Pytest fixtures for Stockbook backend tests.

Provides the application on an in-memory database, a per-test wipe, catalog
fixtures (warehouses, products, users) and the seeded chart of accounts.
"""

from decimal import Decimal

import pytest

from stockbook import create_app
from stockbook.extensions import db
from stockbook.models import Account, Category, Product, User, Warehouse
from stockbook.services import ledger_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'STOCK_ALLOCATION_POLICY': 'fefo',
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
def accounts(db_session):
    """Default chart of accounts, keyed by system role (cash, inventory, ...)."""
    ledger_service.seed_chart_of_accounts()
    roles = {
        role: ledger_service.get_system_account(role)
        for role in (
            "cash", "bank", "accounts_receivable", "inventory", "tax_input",
            "accounts_payable", "tax_output", "sales_revenue", "sales_returns", "cost_of_goods_sold",
            "purchase_price_variance",
        )
    }
    roles["operating_expenses"] = Account.query.filter_by(code="6000").one()
    roles["owners_equity"] = Account.query.filter_by(code="3000").one()
    return roles


@pytest.fixture(scope='function')
def warehouse(db_session):
    wh = Warehouse(code="MAIN", name="Main Warehouse")
    db_session.add(wh)
    db_session.commit()
    return wh


@pytest.fixture(scope='function')
def second_warehouse(db_session):
    wh = Warehouse(code="WEST", name="West Warehouse")
    db_session.add(wh)
    db_session.commit()
    return wh


@pytest.fixture(scope='function')
def product(db_session):
    """Product with a low-stock threshold of 10."""
    category = Category(name="Analgesics")
    db_session.add(category)
    db_session.flush()
    p = Product(
        category_id=category.id,
        sku="PARA-500",
        name="Paracetamol 500mg",
        min_stock=Decimal("10"),
        price=Decimal("5.00"),
        cost_price=Decimal("3.00"),
    )
    db_session.add(p)
    db_session.commit()
    return p


@pytest.fixture(scope='function')
def untracked_product(db_session):
    """Product without a low-stock threshold."""
    p = Product(sku="BAND-01", name="Bandage", min_stock=Decimal("0"), price=Decimal("2.00"))
    db_session.add(p)
    db_session.commit()
    return p


@pytest.fixture(scope='function')
def user(db_session):
    u = User(username="manager", email="manager@stockbook.local", is_active=True)
    db_session.add(u)
    db_session.commit()
    return u


@pytest.fixture(scope='function')
def users(db_session, user):
    """Two active users and one inactive user."""
    second = User(username="clerk", email="clerk@stockbook.local", is_active=True)
    inactive = User(username="former", email="former@stockbook.local", is_active=False)
    db_session.add_all([second, inactive])
    db_session.commit()
    return [user, second, inactive]
