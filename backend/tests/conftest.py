"""
Pytest fixtures for marketcore backend tests.

Provides test database setup, model factories, and test client.
"""

import itertools

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session
from marketcore import create_app
from marketcore.extensions import db
from marketcore.models import Business, CartItem, Product, User
from marketcore.models.users import ROLE_ADMIN, ROLE_BUYER, ROLE_SELLER
from marketcore.services import plan_service, rate_limit_service
from marketcore.services.processor_service import compute_signature


TEST_CRON_SECRET = "test-cron-secret"
TEST_WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'CRON_SECRET': TEST_CRON_SECRET,
        'PAYMENT_WEBHOOK_SECRET': TEST_WEBHOOK_SECRET,
        'NOTIFICATION_WEBHOOK_URL': None,
        'BUYER_FEE_BPS': 100,
        'TRIAL_DAYS': 14,
        'WEBHOOK_ALLOWED_IPS': [],
        'RATE_LIMIT_WEBHOOK_PER_MINUTE': 100,
        'RATE_LIMIT_PAYMENT_INIT_PER_MINUTE': 5,
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
        rate_limit_service.limiter.reset()

        yield db.session

        # Cleanup after test
        db.session.rollback()


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture(scope='function')
def make_user(db_session):
    counter = itertools.count(1)

    def _make(role=ROLE_BUYER, name=None, email=None):
        n = next(counter)
        user = User(
            external_id=f"{role}-{n}",
            email=email or f"{role}{n}@example.com",
            name=name or f"{role.title()} {n}",
            role=role,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture(scope='function')
def buyer(make_user):
    return make_user(ROLE_BUYER, name="Abebe Buyer")


@pytest.fixture(scope='function')
def seller(make_user):
    return make_user(ROLE_SELLER, name="Seller A")


@pytest.fixture(scope='function')
def admin(make_user):
    return make_user(ROLE_ADMIN, name="Platform Admin")


@pytest.fixture(scope='function')
def make_product(db_session):
    counter = itertools.count(1)

    def _make(seller, *, price_cents=1000, quantity=10, name=None, status="active", low_stock_threshold=None):
        n = next(counter)
        product = Product(
            seller_id=seller.id,
            sku=f"SKU-{seller.id}-{n}",
            name=name or f"Product {n}",
            price_cents=price_cents,
            quantity=quantity,
            status=status,
            low_stock_threshold=low_stock_threshold,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def make_business(db_session):
    def _make(owner, name="Addis Coffee Exporters"):
        business = Business(owner_id=owner.id, name=name)
        db_session.add(business)
        db_session.commit()
        return business

    return _make


@pytest.fixture(scope='function')
def add_to_cart(db_session):
    """Place a cart row directly, bypassing cart rules."""
    def _add(user, product, quantity):
        item = CartItem(user_id=user.id, product_id=product.id, quantity=quantity)
        db_session.add(item)
        db_session.commit()
        return item

    return _add


@pytest.fixture(scope='function')
def plans(db_session):
    """Default plan catalog keyed by slug."""
    plan_service.seed_default_plans(currency="ETB")
    return {plan.slug: plan for plan in plan_service.list_plans()}


# =============================================================================
# HELPERS
# =============================================================================

def auth_headers(user: User) -> dict:
    """Headers the identity gateway forwards for an authenticated subject."""
    return {
        'X-User-Id': user.external_id,
        'X-User-Email': user.email,
    }


def cron_headers() -> dict:
    return {'X-Cron-Secret': TEST_CRON_SECRET}


def signed_webhook_headers(body: bytes, timestamp: str | None = None) -> dict:
    headers = {
        'Content-Type': 'application/json',
        'X-Webhook-Signature': compute_signature(body, TEST_WEBHOOK_SECRET),
    }
    if timestamp is not None:
        headers['X-Webhook-Timestamp'] = timestamp
    return headers


def commit_from_other_session(product_id: int, **values) -> None:
    """
    Commit a product write through an independent session, the way a
    concurrent request would. Bumps version_id like an ORM flush does.
    """
    other = Session(db.engine)
    try:
        other.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(version_id=Product.version_id + 1, **values)
        )
        other.commit()
    finally:
        other.close()
