"""Push delivery providers."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

LOGGER = logging.getLogger(__name__)

_EXPO_TOKEN = re.compile(r"^Expo(?:nent)?PushToken\[[^\]]+\]$")


@dataclass(slots=True)
class PushMessage:
    token: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PushTicket:
    """Provider response reduced to sent or error."""

    ok: bool
    error: str | None = None
    ticket_id: str | None = None


def is_valid_push_token(token: str | None) -> bool:
    return bool(token) and bool(_EXPO_TOKEN.match(token))


class PushProvider(ABC):
    """Black-box delivery channel for one message to one device token."""

    @abstractmethod
    async def send(self, message: PushMessage) -> PushTicket:
        """Deliver a message; transport failures may raise."""


class ExpoPushProvider(PushProvider):
    """Sends through the Expo push API."""

    def __init__(self, url: str, access_token: str | None = None, timeout_seconds: float = 30.0) -> None:
        self._url = url
        self._access_token = access_token
        self._timeout_seconds = timeout_seconds

    async def send(self, message: PushMessage) -> PushTicket:
        if not is_valid_push_token(message.token):
            return PushTicket(ok=False, error="INVALID_PUSH_TOKEN")

        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        payload = {
            "to": message.token,
            "title": message.title,
            "body": message.body,
            "data": message.data,
            "sound": "default",
        }
        async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout_seconds)) as client:
            response = await client.post(self._url, headers=headers, json=payload)
            response.raise_for_status()
            body = response.json()

        ticket = body.get("data")
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}
        if not isinstance(ticket, dict):
            return PushTicket(ok=False, error=f"unexpected response: {str(body)[:200]}")
        if ticket.get("status") == "ok":
            return PushTicket(ok=True, ticket_id=ticket.get("id"))
        details = ticket.get("details") or {}
        error = details.get("error") or ticket.get("message") or "unknown push error"
        LOGGER.warning("Expo rejected push: %s", error)
        return PushTicket(ok=False, error=str(error))
