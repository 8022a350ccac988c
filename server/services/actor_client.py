"""HTTP client for the actor RPC endpoints (used from RQ workers)."""

from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)


class ActorStateClient:
    """POSTs derived state to ``/agent/state`` on the server that hosts the actors."""

    def __init__(self, base_url: str, *, timeout: float = 10.0, transport: httpx.BaseTransport | None = None):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def push_state(
        self,
        conversation_id: str,
        *,
        summary: str | None = None,
        pinned_facts: list[str] | None = None,
        last_updated: str | None = None,
    ) -> None:
        body: dict = {"conversationId": conversation_id}
        if summary is not None:
            body["summary"] = summary
        if pinned_facts is not None:
            body["pinnedFacts"] = pinned_facts
        if last_updated is not None:
            body["lastUpdated"] = last_updated

        with httpx.Client(base_url=self._base_url, timeout=self._timeout, transport=self._transport) as client:
            resp = client.post("/agent/state", json=body)
            resp.raise_for_status()
        logger.debug("Pushed state for conversation %s", conversation_id)
