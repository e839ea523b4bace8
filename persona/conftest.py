# persona/conftest.py
import os

# Settings are read at import time; pin the test configuration first
os.environ["ENVIRONMENT"] = "test"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["API_KEY_BCRYPT_ROUNDS"] = "4"
os.environ["AUTH_ALLOW_USER_HEADER"] = "true"
os.environ.pop("TEST_DATABASE_URL", None)

from datetime import datetime, timezone  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import insert  # noqa: E402

TEST_DATABASE_URL = "sqlite+pysqlite:///:memory:"


@pytest.fixture(scope="session", autouse=True)
def engine():
    """Bind the app to a single in-memory SQLite database for the session."""
    from persona.core.database import init_engine

    return init_engine(TEST_DATABASE_URL)


@pytest.fixture(scope="function", autouse=True)
def reset_db(engine):
    """Fresh schema for every test."""
    from persona.core.database import reset_database

    reset_database()
    yield


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from persona.main import app

    app.dependency_overrides.clear()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def seed_user():
    """Insert a users row; returns the user id."""
    from persona.core.database import get_db_session, users

    def _seed(user_id: str, *, role: str = "user", name: str = None, status: str = "active"):
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    name=name or user_id.capitalize(),
                    email=f"{user_id}@example.com",
                    role=role,
                    status=status,
                    created_at=datetime.now(timezone.utc),
                )
            )
        return user_id

    return _seed


@pytest.fixture
def seed_entity():
    """Insert a celebrity/outfit/movie/review/news row; returns its id."""
    from persona.core.database import get_db_session, celebrities, outfits, movies, reviews, news

    tables = {"celebrities": celebrities, "outfits": outfits, "movies": movies, "reviews": reviews, "news": news}

    def _seed(entity_type: str, entity_id: str, slug: str = None, title: str = None):
        table = tables[entity_type]
        values = {"id": entity_id, "slug": slug or entity_id, "created_at": datetime.now(timezone.utc)}
        if entity_type == "celebrities":
            values["name"] = title or entity_id.replace("-", " ").title()
        else:
            values["title"] = title or entity_id.replace("-", " ").title()
        with get_db_session() as session:
            session.execute(insert(table).values(**values))
        return entity_id

    return _seed


@pytest.fixture
def user_headers():
    def _headers(user_id: str) -> dict:
        return {"X-User-Id": user_id}

    return _headers


class FakeProvider:
    """In-memory PaymentProvider; records created orders."""

    key_id = "rzp_test_key"

    def __init__(self):
        self.created = []

    def create_order(self, amount_paise, currency, receipt, notes=None):
        from persona.features.payments.provider import ProviderOrder

        order = ProviderOrder(order_id=f"order_{len(self.created) + 1:04d}", amount_paise=amount_paise, currency=currency)
        self.created.append((order, receipt, notes))
        return order


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def seed_order():
    """Insert a payment order in the given status; returns the order id."""
    from persona.core.database import get_db_session, payment_orders

    counter = {"n": 0}

    def _seed(user_id: str, *, status: str = "paid", quota_granted: int = 900, plan_id: str = "starter",
              amount_inr: int = 199, credited: bool = False):
        counter["n"] += 1
        order_id = f"ord_{counter['n']:04d}"
        now = datetime.now(timezone.utc)
        with get_db_session() as session:
            session.execute(
                insert(payment_orders).values(
                    order_id=order_id,
                    user_id=user_id,
                    plan_id=plan_id,
                    plan_label=plan_id.capitalize(),
                    quota_granted=quota_granted,
                    amount_inr=amount_inr,
                    currency="INR",
                    provider_order_id=f"order_seed_{counter['n']:04d}",
                    provider_payment_id="pay_seed" if status in ("paid", "refunded") else None,
                    status=status,
                    quota_credited_at=now if credited else None,
                    credit_source="auto" if credited else None,
                    created_at=now,
                    updated_at=now,
                )
            )
        return order_id

    return _seed


@pytest.fixture
def superadmin(seed_user):
    from persona.models.actor import Actor

    seed_user("root", role="superadmin", name="Root")
    return Actor(user_id="root", role="superadmin", name="Root")
