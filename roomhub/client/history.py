"""REST access to persisted room messages.

Used after a reconnect to fill the gap left by at-most-once live delivery.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from roomhub.core.errors import AuthExpired, Forbidden, NotFound, TransportFailure

logger = logging.getLogger(__name__)


class MessageHistoryClient:
    """Reads ``GET {base_url}/messages/room/{room_id}/recent``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Accept": "application/json"},
            timeout=timeout,
        )

    async def recent_messages(self, room_id: str, token: str) -> List[Dict[str, Any]]:
        try:
            response = await self._client.get(
                f"/messages/room/{room_id}/recent",
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise TransportFailure(f"History request failed: {exc}", {"room_id": room_id}) from exc

        if response.status_code == 401:
            raise AuthExpired("History request unauthorized")
        if response.status_code == 403:
            raise Forbidden(f"No access to room {room_id}", {"room_id": room_id})
        if response.status_code == 404:
            raise NotFound(f"Room {room_id} not found", {"room_id": room_id})

        try:
            envelope = response.json()
        except ValueError as exc:
            raise TransportFailure("History response is not JSON", {"room_id": room_id}) from exc
        if not isinstance(envelope, dict):
            raise TransportFailure("Unexpected history response", {"room_id": room_id})

        if response.status_code >= 400 or envelope.get("success") is False:
            raise TransportFailure(
                str(envelope.get("message") or f"History request failed ({response.status_code})"),
                {"room_id": room_id, "status": response.status_code},
            )

        data = envelope.get("data") or []
        return [message for message in data if isinstance(message, dict)]

    async def close(self) -> None:
        await self._client.aclose()
