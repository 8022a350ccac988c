"""Tests for ActorStateClient."""

from __future__ import annotations

import json
import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from services.actor_client import ActorStateClient

CID = "6f1c2a9b-4d3e-4a5b-9c8d-7e6f5a4b3c2d"


def test_push_state_posts_camel_case_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True})

    client = ActorStateClient("http://actors.local/", transport=httpx.MockTransport(handler))
    client.push_state(CID, summary="S", pinned_facts=["a"], last_updated="2024-06-10T06:13:20Z")

    assert seen["url"] == "http://actors.local/agent/state"
    assert seen["body"] == {
        "conversationId": CID,
        "summary": "S",
        "pinnedFacts": ["a"],
        "lastUpdated": "2024-06-10T06:13:20Z",
    }


def test_push_state_omits_missing_fields():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True})

    ActorStateClient("http://actors.local", transport=httpx.MockTransport(handler)).push_state(CID, summary="S")
    assert seen["body"] == {"conversationId": CID, "summary": "S"}


def test_push_state_raises_on_error_status():
    transport = httpx.MockTransport(lambda request: httpx.Response(500, json={"error": "boom"}))
    with pytest.raises(httpx.HTTPStatusError):
        ActorStateClient("http://actors.local", transport=transport).push_state(CID, summary="S")


def test_push_state_against_app(client, runtime):
    """The client speaks the same shape the /agent/state endpoint accepts."""
    transport = httpx.MockTransport(
        lambda request: _forward(client, request)
    )
    ActorStateClient("http://testserver", transport=transport).push_state(
        CID, summary="Synced", pinned_facts=["x", "y"],
    )

    state = runtime.registry.get(CID).snapshot()
    assert state.summary == "Synced"
    assert state.pinned_facts == ["x", "y"]


def _forward(test_client, request: httpx.Request) -> httpx.Response:
    resp = test_client.post(request.url.path, content=request.content, headers={"Content-Type": "application/json"})
    return httpx.Response(resp.status_code, content=resp.content)
