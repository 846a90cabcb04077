"""Chat notifier posting room notifications over the HipChat v2 REST API."""

from __future__ import annotations

import logging

import requests

logger = logging.getLogger(__name__)

SEVERITY_COLORS = {
    "info": "green",
    "warning": "yellow",
    "error": "red",
    "critical": "red",
}
DEFAULT_COLOR = "gray"


class HipChatNotifier:
    def __init__(
        self,
        *,
        url: str,
        token: str,
        default_room: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        if not token:
            raise ValueError("HipChat token is required")

        self._base_url = url.rstrip("/")
        self._default_room = default_room
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {token}"})

    def notify(self, text: str, room: str | None = None, severity: str | None = None) -> None:
        """Best-effort: delivery failures are logged, never raised."""

        target = room or self._default_room
        color = SEVERITY_COLORS.get((severity or "").lower(), DEFAULT_COLOR)
        payload = {
            "message": text,
            "color": color,
            "notify": color == "red",
            "message_format": "text",
        }

        try:
            response = self._session.post(
                f"{self._base_url}/v2/room/{target}/notification",
                json=payload,
                timeout=self._timeout,
            )
        except requests.RequestException:
            logger.exception("Notification failed", extra={"room": target})
            return

        if response.status_code >= 300:
            logger.warning(
                "Notification rejected",
                extra={"room": target, "status_code": response.status_code},
            )
