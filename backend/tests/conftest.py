"""
Pytest fixtures for settlement engine tests.

Provides the app/database setup plus factories for customers, products,
payment methods and couriers.
"""

import pytest
from settlement import create_app
from settlement.extensions import db
from settlement.models import PaymentMethod, Product, BundleComponent, Courier
from settlement.services import event_service, inventory_service, ledger_service, sales_service
from settlement.services.checkout_service import UpdatePaymentLine, apply_edit


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        db.session.expunge_all()
        event_service.clear_listeners()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        event_service.clear_listeners()


@pytest.fixture(scope='function')
def payment_methods(db_session):
    """Cash, Card and Cheque, in that order."""
    for index, name in enumerate(("Cash", "Card", "Cheque")):
        db_session.add(PaymentMethod(name=name, is_active=True, sort_order=index))
    db_session.commit()
    return ["Cash", "Card", "Cheque"]


@pytest.fixture(scope='function')
def make_customer(db_session):
    """Factory: customer with a signed opening balance posted to the ledger."""
    def _make(name="Alice", balance_cents=0, walk_in=False):
        return ledger_service.create_customer(name, opening_balance_cents=balance_cents, is_walk_in=walk_in)
    return _make


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: active product with optional opening stock."""
    counter = {"n": 0}

    def _make(name="Widget", price_cents=1000, stock=0, weight_grams=0, warranty_period=None):
        counter["n"] += 1
        product = Product(
            sku=f"SKU-{counter['n']:03d}",
            name=name,
            price_cents=price_cents,
            weight_grams=weight_grams,
            warranty_period=warranty_period,
            warranty_unit="months" if warranty_period else None,
            is_active=True,
        )
        db_session.add(product)
        db_session.commit()
        if stock:
            inventory_service.receive_stock(product.id, stock, note="Opening stock")
        return product
    return _make


@pytest.fixture(scope='function')
def make_bundle(db_session, make_product):
    """Factory: bundle product built from (product, qty per bundle) pairs."""
    def _make(name, price_cents, parts):
        bundle = make_product(name=name, price_cents=price_cents)
        bundle.product_type = "bundle"
        for component, quantity in parts:
            db_session.add(BundleComponent(
                bundle_product_id=bundle.id,
                component_product_id=component.id,
                quantity=quantity,
            ))
        db_session.commit()
        return bundle
    return _make


@pytest.fixture(scope='function')
def courier(db_session):
    courier = Courier(name="Express", first_kg_price_cents=500, additional_kg_price_cents=200, is_active=True)
    db_session.add(courier)
    db_session.commit()
    return courier


@pytest.fixture(scope='function')
def checkout(db_session, payment_methods):
    """Factory: open a checkout for (product, qty) pairs, optionally tendering a fixed amount."""
    def _open(customer, items, *, tender_cents=None, **options):
        lines = [sales_service.line_from_product(product, qty) for product, qty in items]
        draft = sales_service.open_checkout(customer.id, lines, **options)
        if tender_cents is not None:
            draft = apply_edit(draft, UpdatePaymentLine(draft.payments[0].line_id, amount_cents=tender_cents))
        return draft
    return _open
