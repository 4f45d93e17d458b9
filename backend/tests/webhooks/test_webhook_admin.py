import asyncio
import time
from uuid import uuid4

from app.routers import webhooks as webhooks_router
from app.services import stripe_events


def test_webhook_health_is_public(api_client, post_heyflow):
    post_heyflow({"id": f"sub-{uuid4().hex}", "data": {"email": f"h-{uuid4().hex[:8]}@example.com"}})
    response = api_client.get("/api/v1/webhooks/health")
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["status"] == "healthy"
    assert body["total_webhooks"] >= 1
    assert body["processed_webhooks"] >= 1
    assert set(body["by_source"]) == {"heyflow", "stripe"}
    assert body["by_source"]["heyflow"]["total_webhooks"] >= 1
    assert body["last_webhook_received"] is not None


def test_event_list_requires_admin(api_client, provider_headers):
    response = api_client.get("/api/v1/webhooks/events", headers=provider_headers)
    assert response.status_code == 403


def test_event_list_filters(api_client, auth_headers, post_heyflow):
    post_heyflow({"id": f"sub-{uuid4().hex}", "data": {"email": f"f-{uuid4().hex[:8]}@example.com"}})
    response = api_client.get(
        "/api/v1/webhooks/events",
        params={"source": "heyflow", "processed": True, "limit": 5},
        headers=auth_headers,
    )
    assert response.status_code == 200, response.text
    events = response.json()
    assert 1 <= len(events) <= 5
    assert all(e["source"] == "heyflow" and e["processed"] for e in events)


def test_reprocess_unknown_event(api_client, auth_headers):
    response = api_client.post("/api/v1/webhooks/events/999999/reprocess", headers=auth_headers)
    assert response.status_code == 404
    assert response.json()["detail"] == "Webhook event not found"


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def test_stripe_processing_runs_off_the_event_loop(monkeypatch, post_stripe_event):
    seen: list[bool] = []

    def handler(db, obj):
        seen.append(_loop_running())

    monkeypatch.setitem(stripe_events.HANDLERS, "customer.created", handler)
    event = {
        "id": f"evt_{uuid4().hex}",
        "object": "event",
        "type": "customer.created",
        "created": int(time.time()),
        "data": {"object": {"id": f"cus_{uuid4().hex[:14]}", "object": "customer"}},
    }
    response = post_stripe_event(event)
    assert response.status_code == 200, response.text
    assert seen == [False]


def test_heyflow_processing_runs_off_the_event_loop(monkeypatch, post_heyflow):
    seen: list[bool] = []

    def processor(db, event):
        seen.append(_loop_running())

    monkeypatch.setattr(webhooks_router, "process_heyflow_event", processor)
    response = post_heyflow({"id": f"sub-{uuid4().hex}", "data": {"email": f"loop-{uuid4().hex[:8]}@example.com"}})
    assert response.status_code == 200, response.text
    assert seen == [False]
