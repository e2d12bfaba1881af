"""Webhook forwarding: signed requests, retry backoff, dropping, event shape."""

import hashlib
import hmac
import json

import httpx
import pytest

from forward_dispatch import (
    ForwardDispatcher,
    build_forward_event,
    build_headers_and_body,
    compute_signature,
    sign_media_url,
    verify_media_signature,
)

URL = "https://hooks.example/relay"


def _dispatcher(handler, secret="s3cret", sleeps=None):
    async def fake_sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return ForwardDispatcher(
        lambda: (URL, secret),
        transport=httpx.MockTransport(handler),
        sleep=fake_sleep,
    )


@pytest.mark.asyncio
async def test_post_carries_secret_and_body_signature():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    d = _dispatcher(handler)
    d.enqueue({"event": "inbound_message", "event_id": "m1"})
    await d.idle()

    assert len(seen) == 1
    req = seen[0]
    assert str(req.url) == URL
    assert req.headers["X-Relay-Secret"] == "s3cret"
    expected = hmac.new(b"s3cret", req.content, hashlib.sha256).hexdigest()
    assert req.headers["X-Signature"] == f"sha256={expected}"
    assert json.loads(req.content)["event_id"] == "m1"
    assert d.delivered == 1


@pytest.mark.asyncio
async def test_no_secret_sends_no_auth_headers():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(204)

    d = _dispatcher(handler, secret="")
    d.enqueue({"event_id": "m1"})
    await d.idle()

    assert "X-Relay-Secret" not in seen[0].headers
    assert "X-Signature" not in seen[0].headers


@pytest.mark.asyncio
async def test_failures_retry_with_backoff_then_drop():
    calls = []
    sleeps = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, text="down")

    d = _dispatcher(handler, sleeps=sleeps)
    d.enqueue({"event_id": "m1"})
    await d.idle()

    assert len(calls) == 5
    assert sleeps == [1.0, 4.0, 9.0, 16.0]
    assert d.dropped == 1
    assert d.pending == 0


@pytest.mark.asyncio
async def test_recovers_after_transient_failure():
    responses = iter([httpx.Response(502), httpx.Response(200)])
    d = _dispatcher(lambda request: next(responses))

    d.enqueue({"event_id": "m1"})
    await d.idle()

    assert d.delivered == 1
    assert d.dropped == 0


@pytest.mark.asyncio
async def test_events_are_posted_in_order():
    order = []

    def handler(request):
        order.append(json.loads(request.content)["event_id"])
        return httpx.Response(200)

    d = _dispatcher(handler)
    for i in range(3):
        d.enqueue({"event_id": f"m{i}"})
    await d.idle()

    assert order == ["m0", "m1", "m2"]


@pytest.mark.asyncio
async def test_missing_webhook_url_skips_post():
    calls = []
    d = ForwardDispatcher(lambda: ("", ""), transport=httpx.MockTransport(lambda r: calls.append(r)))

    d.enqueue({"event_id": "m1"})
    await d.idle()

    assert calls == []
    assert d.dropped == 0


def test_backoff_is_capped():
    assert [ForwardDispatcher.backoff_seconds(n) for n in (1, 2, 5, 6, 10)] == [1.0, 4.0, 25.0, 30.0, 30.0]


def test_signature_matches_serialized_body():
    headers, body = build_headers_and_body({"b": 1, "a": "é"}, "k")

    assert headers["X-Signature"] == f"sha256={compute_signature('k', body)}"
    assert json.loads(body) == {"b": 1, "a": "é"}


def test_signed_media_url_expires_and_verifies():
    url = sign_media_url("1700_abcd.jpg", secret="m", ttl_seconds=60, now=1000)

    assert url.startswith("/media/1700_abcd.jpg?exp=1060&sig=")
    sig = url.rsplit("sig=", 1)[1]
    assert sig == hmac.new(b"m", b"1700_abcd.jpg|1060", hashlib.sha256).hexdigest()
    assert sign_media_url("x.jpg", secret="") is None


def test_media_host_verifies_signed_link():
    url = sign_media_url("1700_abcd.jpg", secret="m", ttl_seconds=60, now=1000)
    exp = url.split("exp=", 1)[1].split("&", 1)[0]
    sig = url.rsplit("sig=", 1)[1]

    assert verify_media_signature("1700_abcd.jpg", exp, sig, secret="m", now=1030)
    assert not verify_media_signature("1700_abcd.jpg", exp, sig, secret="m", now=1061)
    assert not verify_media_signature("other.jpg", exp, sig, secret="m", now=1030)
    assert not verify_media_signature("1700_abcd.jpg", "1999", sig, secret="m", now=1030)
    assert not verify_media_signature("1700_abcd.jpg", exp, sig, secret="", now=1030)


def test_forward_event_shape():
    record = {
        "id": "m1",
        "ts": 1_700_000_000_000,
        "chat_jid": "120363000000000000@g.us",
        "is_group": True,
        "sender_jid": "27821234567@s.whatsapp.net",
        "type": "image",
        "text": "look",
        "media": {"mimetype": "image/jpeg", "file_name": None, "url": "https://cdn.example/x"},
    }
    rule = {"group_mode": "prefix", "group_prefix": "!bot", "templates": ["t1"], "safety": {"allow_dm": True}}

    event = build_forward_event(record, "!bot look", rule)

    assert event["event"] == "inbound_message"
    assert event["event_id"] == "m1"
    assert event["raw_text"] == "!bot look"
    assert event["media"]["url"] == "https://cdn.example/x"
    assert event["rule"] == {"group_mode": "prefix", "group_prefix": "!bot", "templates": ["t1"]}
