import time

from app.core.rate_limit import InMemoryRateLimitStore, get_rate_limit_store
from app.main import app


def test_in_memory_store_counts_within_window():
    store = InMemoryRateLimitStore()
    assert store.hit("orders:1.2.3.4", 60)[0] == 1
    assert store.hit("orders:1.2.3.4", 60)[0] == 2
    assert store.hit("orders:5.6.7.8", 60)[0] == 1


def test_in_memory_store_starts_new_window(monkeypatch):
    store = InMemoryRateLimitStore()
    now = 1_000_000.0
    monkeypatch.setattr(time, "time", lambda: now)
    store.hit("k", 60)
    store.hit("k", 60)

    now += 61
    count, started = store.hit("k", 60)
    assert count == 1
    assert started == now


class ExhaustedStore:
    def hit(self, key, window_seconds):
        return 1000, time.time()


def test_order_creation_is_rate_limited(client, premium_plan, auth_headers):
    app.dependency_overrides[get_rate_limit_store] = ExhaustedStore
    try:
        r = client.post("/payments/payme/orders", json={"plan_id": premium_plan.id}, headers=auth_headers)
    finally:
        app.dependency_overrides.pop(get_rate_limit_store)

    assert r.status_code == 429
    assert r.json()["detail"].startswith("Rate limit exceeded. Try again in ")


def test_callback_is_not_rate_limited(client, payme_call):
    app.dependency_overrides[get_rate_limit_store] = ExhaustedStore
    try:
        body = payme_call("ChangePassword", {"password": "x"})
    finally:
        app.dependency_overrides.pop(get_rate_limit_store)

    assert body["error"]["code"] == -32504
