"""Pytest fixtures: test client, in-memory SQLite, seeded plans/users/orders, signed Payme calls."""
import json
import os
import socket
import threading
import time

import pytest
import uvicorn

# Must be set before the app (and its settings) is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("PAYME_MERCHANT_ID", "test-merchant")
os.environ.setdefault("PAYME_MERCHANT_KEY", "test-merchant-key")
os.environ.setdefault("PAYME_API_URL", "https://checkout.test.paycom.uz")
os.environ.setdefault("PAYME_CALLBACK_URL", "http://testserver/payments/payme/callback")
os.environ.setdefault("PAYME_AUTH_HEADER", "authorization")
os.environ.setdefault("PAYME_SIGNATURE_MODE", "key")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "100")

from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session

from app.main import app
from app.db.session import engine
from app.core.payme_auth import PaymeAuthGuard
from app.core.rate_limit import default_rate_limit_store
from app.core.security import create_access_token
from app.crud.order_crud import create_order
from app.crud.subscription_crud import SubscriptionActivator, get_free_plan
from app.external_services.payme_service import PaymeMerchantService
from app.models.plan_model import Plan
from app.models.user_model import User, UserRole

CALLBACK_URL = "/payments/payme/callback"


@pytest.fixture(autouse=True)
def _database():
    """Fresh tables for every test."""
    SQLModel.metadata.create_all(engine)
    default_rate_limit_store.reset()
    yield
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session():
    with Session(engine) as s:
        yield s


@pytest.fixture
def client():
    """TestClient; lifespan creates tables and seeds the free plan."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def free_plan(session: Session) -> Plan:
    plan = get_free_plan(session)
    if plan is None:
        plan = Plan(title="Free", price=0, duration_days=30, max_submissions=3, is_free=True)
        session.add(plan)
        session.commit()
        session.refresh(plan)
    return plan


@pytest.fixture
def premium_plan(session: Session) -> Plan:
    plan = Plan(title="Premium", price=3000, duration_days=30, max_submissions=50)
    session.add(plan)
    session.commit()
    session.refresh(plan)
    return plan


@pytest.fixture
def user(session: Session, free_plan: Plan) -> User:
    user = User(phone="+998901234567", first_name="Aziz", plan_id=free_plan.id, submissions_limit=3)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def admin(session: Session, free_plan: Plan) -> User:
    admin = User(phone="+998900000001", role=UserRole.admin, plan_id=free_plan.id)
    session.add(admin)
    session.commit()
    session.refresh(admin)
    return admin


@pytest.fixture
def order(session: Session, user: User, premium_plan: Plan):
    """order_u1_p2_1000 for 3000 UZS = 300000 tiyin"""
    return create_order(
        session,
        order_id="order_u1_p2_1000",
        user_id=user.id,
        plan_id=premium_plan.id,
        amount=3000,
        description="Upgrade to Premium plan",
    )


@pytest.fixture
def service(session: Session) -> PaymeMerchantService:
    return PaymeMerchantService(session, SubscriptionActivator(session))


@pytest.fixture
def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user.phone})}"}


@pytest.fixture
def admin_headers(admin: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': admin.phone})}"}


@pytest.fixture
def payme_call(client: TestClient):
    """POST a signed JSON-RPC call to the callback and return the decoded body."""
    guard = PaymeAuthGuard.from_settings()

    def _call(method: str, params: dict, request_id: int = 1) -> dict:
        body = json.dumps({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}).encode()
        r = client.post(
            CALLBACK_URL,
            content=body,
            headers={"Content-Type": "application/json", **guard.build_headers(body)},
        )
        assert r.status_code == 200
        return r.json()

    return _call


@pytest.fixture
def live_server():
    """The app served by a real single-worker uvicorn on a free local port; yields its base URL."""
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    server = uvicorn.Server(uvicorn.Config(app, host="127.0.0.1", port=port, workers=1, lifespan="off", log_level="warning"))
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()
    deadline = time.time() + 10
    while not server.started:
        if time.time() > deadline:
            raise RuntimeError("uvicorn did not start")
        time.sleep(0.05)

    yield f"http://127.0.0.1:{port}"

    server.should_exit = True
    thread.join(timeout=10)
