"""Pager triggering incidents through the PagerDuty generic events API."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import requests

logger = logging.getLogger(__name__)


class PagerDutyPager:
    def __init__(
        self,
        *,
        url: str,
        service_key: str,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        if not service_key:
            raise ValueError("PagerDuty service key is required")

        self._url = url
        self._service_key = service_key
        self._timeout = timeout
        self._session = session or requests.Session()

    def trigger(
        self, incident_key: str, description: str, details: Mapping[str, Any] | None = None
    ) -> None:
        """Open (or re-trigger) the incident `incident_key`.

        Best-effort: delivery failures are logged, never raised.
        """

        payload = {
            "service_key": self._service_key,
            "event_type": "trigger",
            "incident_key": incident_key,
            "description": description,
            "details": dict(details or {}),
        }

        try:
            response = self._session.post(self._url, json=payload, timeout=self._timeout)
        except requests.RequestException:
            logger.exception("Paging failed", extra={"incident_key": incident_key})
            return

        if response.status_code >= 300:
            logger.warning(
                "Page rejected",
                extra={"incident_key": incident_key, "status_code": response.status_code},
            )
