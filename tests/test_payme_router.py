import base64
import json
import time

import requests
from sqlmodel import select

from app.core.config import settings
from app.core.payme_auth import PaymeAuthGuard
from app.core.security import create_access_token
from app.crud.order_crud import update_order_status
from app.crud.transaction_crud import create_transaction
from app.external_services import payme_client
from app.models.order_model import Order, OrderStatus
from app.models.transaction_model import PaymeTransaction
from app.models.user_model import User

CALLBACK_URL = "/payments/payme/callback"
ORDER_ID = "order_u1_p2_1000"


def test_root(client):
    r = client.get("/")
    assert r.status_code == 200
    assert r.json() == {"message": "Service is up"}


# Callback

def test_callback_echoes_request_id(payme_call, order):
    body = payme_call(
        "CheckPerformTransaction", {"amount": 300000, "account": {"orderId": ORDER_ID}}, request_id=42
    )
    assert body["jsonrpc"] == "2.0"
    assert body["id"] == 42
    assert body["result"]["allow"] is True


def test_callback_error_envelope(payme_call, order):
    body = payme_call("CheckPerformTransaction", {"amount": 300001, "account": {"orderId": ORDER_ID}}, request_id=3)
    assert body == {"jsonrpc": "2.0", "id": 3, "error": {"code": -31001, "message": "Invalid amount"}}


def test_callback_account_error_carries_field(payme_call, order):
    body = payme_call("CheckPerformTransaction", {"amount": 300000, "account": {"orderId": "order_9_9_9"}})
    assert body["error"] == {"code": -31050, "message": "Order not found", "data": "orderId"}


def test_callback_parse_error(client):
    body = b"{not json"
    headers = PaymeAuthGuard.from_settings().build_headers(body)
    r = client.post(CALLBACK_URL, content=body, headers=headers)
    assert r.status_code == 200
    assert r.json() == {"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "Parse error"}}


def test_callback_invalid_request(client):
    body = json.dumps({"jsonrpc": "2.0", "id": 5, "params": {}}).encode()
    headers = PaymeAuthGuard.from_settings().build_headers(body)
    r = client.post(CALLBACK_URL, content=body, headers=headers)
    assert r.status_code == 200
    assert r.json()["id"] == 5
    assert r.json()["error"]["code"] == -32600


def test_callback_unknown_method(payme_call):
    body = payme_call("GetBalance", {})
    assert body["error"] == {"code": -32601, "message": "Unknown method"}


def test_full_payment_flow(client, payme_call, session, order, user, premium_plan, auth_headers):
    params = {"id": "t-flow", "time": 1399114284039, "amount": 300000, "account": {"orderId": ORDER_ID}}

    assert payme_call("CheckPerformTransaction", {"amount": 300000, "account": {"orderId": ORDER_ID}})["result"]
    created = payme_call("CreateTransaction", params)["result"]
    assert created["state"] == 1
    performed = payme_call("PerformTransaction", {"id": "t-flow"})["result"]
    assert performed["state"] == 2
    checked = payme_call("CheckTransaction", {"id": "t-flow"})["result"]
    assert checked["perform_time"] == performed["perform_time"]
    assert checked["cancel_time"] == 0

    r = client.get(f"/payments/payme/orders/{ORDER_ID}", headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["status"] == "PAID"
    assert r.json()["transaction_id"] == "t-flow"
    assert r.json()["transaction_state"] == 2

    session.expire_all()
    refreshed = session.get(User, user.id)
    assert refreshed.plan_id == premium_plan.id
    assert refreshed.has_paid_plan is True

    refunded = payme_call("CancelTransaction", {"id": "t-flow", "reason": 5})["result"]
    assert refunded["state"] == -2
    session.expire_all()
    assert session.get(User, user.id).has_paid_plan is False


# Orders

def test_create_order_returns_checkout_url(client, session, user, premium_plan, auth_headers):
    r = client.post("/payments/payme/orders", json={"plan_id": premium_plan.id}, headers=auth_headers)
    assert r.status_code == 200
    data = r.json()

    assert data["status"] == "PENDING"
    assert data["amount_in_tiyin"] == 300000
    assert data["order_id"].startswith(f"order_{user.id}_{premium_plan.id}_")
    prefix = "https://checkout.test.paycom.uz/"
    assert data["payment_url"].startswith(prefix)
    decoded = base64.b64decode(data["payment_url"][len(prefix):]).decode()
    assert decoded == f"m=test-merchant;ac.orderId={data['order_id']};a=300000;l=ru"

    order = session.exec(select(Order).where(Order.order_id == data["order_id"])).one()
    assert order.payment_url == data["payment_url"]


def test_list_orders_shows_only_own_orders(client, order, auth_headers, admin_headers):
    mine = client.get("/payments/payme/orders", headers=auth_headers)
    assert mine.status_code == 200
    assert [o["order_id"] for o in mine.json()] == [ORDER_ID]

    theirs = client.get("/payments/payme/orders", headers=admin_headers)
    assert theirs.json() == []


def test_create_order_with_return_url(client, premium_plan, auth_headers):
    r = client.post(
        "/payments/payme/orders",
        json={"plan_id": premium_plan.id, "return_url": "https://app.example.com/done"},
        headers=auth_headers,
    )
    assert r.status_code == 200
    encoded = r.json()["payment_url"].rsplit("/", 1)[-1]
    assert base64.b64decode(encoded).decode().endswith(";c=https://app.example.com/done")


def test_create_order_rejects_free_and_unknown_plans(client, free_plan, auth_headers):
    r = client.post("/payments/payme/orders", json={"plan_id": free_plan.id}, headers=auth_headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "Free plan cannot be purchased"

    r = client.post("/payments/payme/orders", json={"plan_id": 9999}, headers=auth_headers)
    assert r.status_code == 404


def test_create_order_rejects_current_paid_plan(client, session, user, premium_plan, auth_headers):
    user.plan_id = premium_plan.id
    user.has_paid_plan = True
    session.add(user)
    session.commit()

    r = client.post("/payments/payme/orders", json={"plan_id": premium_plan.id}, headers=auth_headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "You are already subscribed to this plan"


def test_create_order_requires_login(client, premium_plan):
    r = client.post("/payments/payme/orders", json={"plan_id": premium_plan.id})
    assert r.status_code == 401


def test_order_is_visible_to_owner_and_admin_only(client, session, order, auth_headers, admin_headers):
    assert client.get(f"/payments/payme/orders/{ORDER_ID}", headers=auth_headers).status_code == 200
    assert client.get(f"/payments/payme/orders/{ORDER_ID}", headers=admin_headers).status_code == 200

    stranger = User(phone="+998907777777", plan_id=order.plan_id)
    session.add(stranger)
    session.commit()
    headers = {"Authorization": f"Bearer {create_access_token({'sub': stranger.phone})}"}
    assert client.get(f"/payments/payme/orders/{ORDER_ID}", headers=headers).status_code == 404
    assert client.get("/payments/payme/orders/order_0_0_0", headers=auth_headers).status_code == 404


# Admin

def test_reconcile_activates_paid_orders(client, session, order, user, premium_plan, admin_headers):
    update_order_status(session, ORDER_ID, OrderStatus.PAID, transaction_id="t-lost")

    r = client.post("/payments/payme/reconcile", headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {"checked": 1, "activated": [ORDER_ID], "failed": []}

    session.expire_all()
    assert session.get(User, user.id).plan_id == premium_plan.id
    assert session.get(Order, order.id).subscription_activated_at is not None

    r = client.post("/payments/payme/reconcile", headers=admin_headers)
    assert r.json()["checked"] == 0


def test_admin_routes_require_admin(client, auth_headers):
    assert client.post("/payments/payme/reconcile", headers=auth_headers).status_code == 403
    assert client.get("/payments/payme/statistics", headers=auth_headers).status_code == 403
    assert client.delete("/payments/payme/transactions/t1", headers=auth_headers).status_code == 403


def test_statistics(client, payme_call, order, admin_headers):
    payme_call("CreateTransaction", {"id": "t-stat", "time": 1, "amount": 300000, "account": {"orderId": ORDER_ID}})

    r = client.get("/payments/payme/statistics", headers=admin_headers)
    assert r.status_code == 200
    data = r.json()
    assert data["transactions"]["total"] == 1
    assert data["transactions"]["by_state"]["CREATED"] == 1
    assert data["orders"]["created"] == 1


def test_delete_transaction(client, session, order, admin_headers):
    create_transaction(
        session, payme_id="t-del", time=1, amount=300000, account={"orderId": ORDER_ID},
        create_time=2, order_ref=order.id,
    )

    assert client.delete("/payments/payme/transactions/t-del", headers=admin_headers).status_code == 204
    assert client.delete("/payments/payme/transactions/t-del", headers=admin_headers).status_code == 404
    session.expire_all()
    assert session.exec(select(PaymeTransaction)).all() == []


class FakeResponse:
    status_code = 200
    text = ""

    def __init__(self, payload):
        self._payload = payload

    def json(self):
        return self._payload


def test_self_test_sends_signed_call(client, monkeypatch, admin_headers):
    sent = {}

    def fake_post(url, data, headers, timeout):
        sent.update(url=url, body=json.loads(data), headers=headers)
        return FakeResponse({"jsonrpc": "2.0", "id": 1, "result": {"allow": True}})

    monkeypatch.setattr(payme_client.requests, "post", fake_post)

    r = client.post("/payments/payme/self-test?order_id=order_1_2_3&amount=300000", headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {"check_perform_transaction": {"jsonrpc": "2.0", "id": 1, "result": {"allow": True}}}
    assert sent["url"] == "http://testserver/payments/payme/callback"
    assert sent["body"]["method"] == "CheckPerformTransaction"
    assert sent["body"]["params"] == {"amount": 300000, "account": {"orderId": "order_1_2_3"}}
    assert sent["headers"]["Authorization"].startswith("Basic ")


def test_self_test_reports_unreachable_callback(client, monkeypatch, admin_headers):
    def fake_post(*args, **kwargs):
        raise requests.exceptions.ConnectionError("refused")

    monkeypatch.setattr(payme_client.requests, "post", fake_post)

    r = client.post("/payments/payme/self-test?order_id=order_1_2_3&amount=300000", headers=admin_headers)
    assert r.status_code == 502
    assert r.json()["detail"] == "Callback unreachable: Connection error"


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    j = r.json()
    assert j["status"] == "ok"
    assert j["database"] == "ok"
    assert j["payme_configured"] is True


def test_openapi_marks_user_routes_as_bearer_protected(client):
    schema = client.get("/openapi.json").json()
    assert schema["paths"]["/payments/payme/orders"]["post"]["security"] == [{"BearerAuth": []}]
    assert "security" not in schema["paths"]["/health"]["get"]
    assert "/payments/payme/callback" not in schema["paths"]


def test_self_test_against_served_callback(live_server, monkeypatch, order, admin_headers):
    monkeypatch.setattr(settings, "PAYME_CALLBACK_URL", f"{live_server}{CALLBACK_URL}")

    started = time.time()
    r = requests.post(
        f"{live_server}/payments/payme/self-test",
        params={"order_id": ORDER_ID, "amount": 300000, "transaction_id": "t-unknown"},
        headers=admin_headers,
        timeout=20,
    )

    assert r.status_code == 200
    assert time.time() - started < 10
    data = r.json()
    assert data["check_perform_transaction"]["result"]["allow"] is True
    assert data["check_transaction"]["error"]["code"] == -31003
