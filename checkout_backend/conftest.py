# checkout_backend/conftest.py
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import insert

# Tests never validate the developer's environment
os.environ.setdefault("SKIP_ENV_VALIDATION", "1")
os.environ.setdefault("ENV", "test")

# Add repository root to PYTHONPATH
BACKEND_ROOT = Path(__file__).resolve().parent
REPO_ROOT = BACKEND_ROOT.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))
TESTS_DIR = BACKEND_ROOT / "tests"
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """
    Fresh in-memory database for every test.

    Tests that need a file-backed database (concurrency) re-init the engine
    themselves via `init_engine`.
    """
    from checkout_backend.core.database import init_engine, reset_database

    init_engine("sqlite://")
    reset_database()
    yield


@pytest.fixture
def seed():
    """Row builders for the catalog, users and coupons."""
    from checkout_backend.core import database as db

    class Seed:
        def user(self, user_id="user-1", auth_id="auth-1", email="ana@example.com", full_name="Ana Perez"):
            with db.get_db_session() as session:
                session.execute(insert(db.users).values(id=user_id, auth_id=auth_id, email=email, full_name=full_name))
            return user_id

        def course(self, slug="course-101", title="Course 101", is_active=True, course_id=None):
            course_id = course_id or f"id-{slug}"
            with db.get_db_session() as session:
                session.execute(insert(db.courses).values(
                    id=course_id, slug=slug, title=title, short_description=f"{title} description", is_active=is_active,
                ))
            return course_id

        def course_price(self, course_id, amount="50000", currency="ARS", provider="any", months=None, is_active=True):
            with db.get_db_session() as session:
                session.execute(insert(db.course_prices).values(
                    course_id=course_id,
                    currency_code=currency,
                    amount=Decimal(amount),
                    provider=provider,
                    months=months,
                    is_active=is_active,
                ))

        def plan(self, slug="pro", name="Pro", plan_id=None):
            plan_id = plan_id or f"plan-{slug}"
            with db.get_db_session() as session:
                session.execute(insert(db.plans).values(id=plan_id, slug=slug, name=name, is_active=True))
            return plan_id

        def plan_price(self, plan_id, amount="20", currency="USD", billing_period="monthly", provider="any"):
            with db.get_db_session() as session:
                session.execute(insert(db.plan_prices).values(
                    plan_id=plan_id,
                    currency_code=currency,
                    billing_period=billing_period,
                    amount=Decimal(amount),
                    provider=provider,
                    is_active=True,
                ))

        def organization(self, org_id="org-1", members=()):
            with db.get_db_session() as session:
                session.execute(insert(db.organizations).values(id=org_id, name="Acme"))
                for user_id, role in members:
                    session.execute(insert(db.organization_members).values(
                        organization_id=org_id, user_id=user_id, role=role, is_active=True,
                    ))
            return org_id

        def coupon(self, code="SAVE10", **fields):
            values = {
                "id": f"coupon-{code.lower()}",
                "code": code,
                "discount_type": "percent",
                "amount": Decimal("10"),
                "is_active": True,
                "used_count": 0,
                "per_user_limit": 1,
                "applies_to_all": True,
                "grants_free_entitlement": False,
            }
            values.update(fields)
            with db.get_db_session() as session:
                session.execute(insert(db.coupons).values(**values))
            return values["id"]

        def coupon_course(self, coupon_id, course_id):
            with db.get_db_session() as session:
                session.execute(insert(db.coupon_courses).values(coupon_id=coupon_id, course_id=course_id))

    return Seed()


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def adapters():
    from checkout_backend.features.checkout.models import Network
    from mocks import FakeAdapter

    return {
        Network.MERCADOPAGO: FakeAdapter(Network.MERCADOPAGO),
        Network.PAYPAL: FakeAdapter(Network.PAYPAL),
    }


@pytest.fixture
def client(adapters):
    """TestClient over an app wired to fake providers and a fake identity provider."""
    from fastapi.testclient import TestClient
    from checkout_backend.main import create_app
    from mocks import FakeSessionProvider, make_config

    app = create_app(config=make_config(), session_provider=FakeSessionProvider(), adapters=adapters)
    return TestClient(app)
