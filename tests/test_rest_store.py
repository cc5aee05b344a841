"""
Tests for courier/outbox/rest_store.py against a mocked PostgREST endpoint.
"""

import json

import httpx
import pytest

from courier.exceptions import TransientStoreError
from courier.models import AuditEntry, MessageDraft, MessageStatus, Sender
from courier.outbox.rest_store import RestOutboxStore

ROW = {
    "id": 7,
    "chat_id": None,
    "sender": "admin",
    "destination": "39333@c.us",
    "body": "hello",
    "media_url": None,
    "status": "approved",
    "in_progress": False,
    "attempt_count": 0,
    "remote_message_id": None,
    "created_at": "2024-05-01T10:00:00+00:00",
}


class Recorder:
    """MockTransport handler that records requests and replies from a queue."""

    def __init__(self, *responses):
        self.requests: list[httpx.Request] = []
        self.responses = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            return httpx.Response(204)
        return self.responses.pop(0)


def make_store(handler):
    return RestOutboxStore(
        "https://db.example.co/", "service-key", transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_list_claimable_builds_filters():
    rec = Recorder(httpx.Response(200, json=[ROW]))
    store = make_store(rec)

    rows = await store.list_claimable(limit=20, max_attempts=5)

    assert rows[0].id == 7
    assert rows[0].status == MessageStatus.APPROVED
    [req] = rec.requests
    assert req.method == "GET"
    assert req.url.path == "/rest/v1/messages"
    params = req.url.params
    assert params["status"] == "eq.approved"
    assert params["in_progress"] == "is.false"
    assert params["attempt_count"] == "lt.5"
    assert params["limit"] == "20"
    assert params["order"] == "created_at.asc,id.asc"
    assert req.headers["apikey"] == "service-key"
    assert req.headers["authorization"] == "Bearer service-key"
    await store.close()


@pytest.mark.asyncio
async def test_try_claim_won():
    rec = Recorder(httpx.Response(200, json=[{**ROW, "in_progress": True}]))
    store = make_store(rec)

    assert await store.try_claim(7) is True

    [req] = rec.requests
    assert req.method == "PATCH"
    assert req.url.params["id"] == "eq.7"
    assert req.url.params["status"] == "eq.approved"
    assert req.url.params["in_progress"] == "is.false"
    assert req.headers["prefer"] == "return=representation"
    assert json.loads(req.content)["in_progress"] is True
    await store.close()


@pytest.mark.asyncio
async def test_try_claim_lost():
    store = make_store(Recorder(httpx.Response(200, json=[])))
    assert await store.try_claim(7) is False
    await store.close()


@pytest.mark.asyncio
async def test_claim_returns_current_row():
    store = make_store(Recorder(httpx.Response(200, json=[{**ROW, "in_progress": True, "attempt_count": 3}])))

    claimed = await store.claim(7)

    assert claimed.id == 7
    assert claimed.attempt_count == 3
    assert claimed.in_progress is True
    await store.close()


@pytest.mark.asyncio
async def test_mark_sent_body():
    rec = Recorder(httpx.Response(204))
    store = make_store(rec)

    await store.mark_sent(7, "wamid.9")

    # only an approved row may become sent
    assert rec.requests[0].url.params["status"] == "eq.approved"
    body = json.loads(rec.requests[0].content)
    assert body == {
        "status": "sent",
        "in_progress": False,
        "claimed_at": None,
        "remote_message_id": "wamid.9",
    }
    await store.close()


@pytest.mark.asyncio
async def test_mark_failed_attempt_final_and_guarded():
    rec = Recorder(httpx.Response(204))
    store = make_store(rec)

    await store.mark_failed_attempt(7, 5, 5)

    req = rec.requests[0]
    assert req.url.params["attempt_count"] == "lte.5"
    assert req.url.params["status"] == "eq.approved"
    body = json.loads(req.content)
    assert body["status"] == "failed"
    assert body["attempt_count"] == 5
    assert body["in_progress"] is False
    await store.close()


@pytest.mark.asyncio
async def test_mark_failed_attempt_requeues():
    rec = Recorder(httpx.Response(204))
    store = make_store(rec)
    await store.mark_failed_attempt(7, 2, 5)
    assert json.loads(rec.requests[0].content)["status"] == "approved"
    await store.close()


@pytest.mark.asyncio
async def test_release_stale_claims_counts_rows():
    rec = Recorder(httpx.Response(200, json=[{"id": 1}, {"id": 2}]))
    store = make_store(rec)
    assert await store.release_stale_claims(300) == 2
    params = rec.requests[0].url.params
    assert params["in_progress"] == "is.true"
    assert params["claimed_at"].startswith("lt.")
    await store.close()


@pytest.mark.asyncio
async def test_insert_message_and_audit():
    rec = Recorder(httpx.Response(201, json=[ROW]), httpx.Response(201))
    store = make_store(rec)

    record = await store.insert_message(
        MessageDraft(sender=Sender.ADMIN, destination="39333@c.us", body="hello")
    )
    await store.insert_audit(AuditEntry(event="message.sent", message_id=7))

    assert record.id == 7
    assert rec.requests[0].url.path == "/rest/v1/messages"
    assert rec.requests[1].url.path == "/rest/v1/audit_log"
    assert json.loads(rec.requests[1].content)["event"] == "message.sent"
    await store.close()


@pytest.mark.asyncio
async def test_find_or_create_chat_upserts():
    rec = Recorder(httpx.Response(201, json=[{"id": 12}]))
    store = make_store(rec)

    assert await store.find_or_create_chat("39333@c.us") == 12

    req = rec.requests[0]
    assert req.url.params["on_conflict"] == "address"
    assert "merge-duplicates" in req.headers["prefer"]
    await store.close()


@pytest.mark.asyncio
async def test_get_message_missing():
    store = make_store(Recorder(httpx.Response(200, json=[])))
    assert await store.get_message(99) is None
    await store.close()


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [500, 503, 401])
async def test_http_errors_are_transient(status):
    store = make_store(Recorder(httpx.Response(status, text="nope")))
    with pytest.raises(TransientStoreError):
        await store.list_claimable(10, 5)
    await store.close()


@pytest.mark.asyncio
async def test_connection_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    store = make_store(handler)
    with pytest.raises(TransientStoreError):
        await store.try_claim(1)
    await store.close()


@pytest.mark.asyncio
async def test_non_json_success_body_is_transient():
    html = httpx.Response(200, text="<html>down for maintenance</html>", headers={"content-type": "text/html"})
    store = make_store(Recorder(html))
    with pytest.raises(TransientStoreError, match="non-JSON"):
        await store.mark_sent(7, "wamid.9")
    await store.close()
