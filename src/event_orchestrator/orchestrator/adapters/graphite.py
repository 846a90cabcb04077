"""Graphite plaintext-protocol metrics sink."""

from __future__ import annotations

import logging
import re
import socket
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

_NAMESPACE = re.compile(r"\w\.\w")


class GraphiteMetrics:
    def __init__(
        self,
        *,
        host: str,
        port: int = 2003,
        proto: str = "tcp",
        debug: bool = False,
        timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if proto not in ("tcp", "udp"):
            raise ValueError(f"unsupported graphite protocol: {proto}")
        self._address = (host, port)
        self._proto = proto
        self._debug = debug
        self._timeout = timeout
        self._clock = clock

    @staticmethod
    def line(service: str, state: str, metric: float, timestamp: int) -> str:
        return f"{service}.{state} {metric} {timestamp}\n"

    def graph(
        self, service: str, state: str, metric: float, description: str | None = None
    ) -> bool:
        """Send one data point; returns False when it was dropped."""

        if not service or not _NAMESPACE.search(service):
            logger.error("Metric namespace must look like 'a.b'", extra={"service": service})
            return False
        if isinstance(metric, bool) or not isinstance(metric, (int, float)):
            logger.error("Metric value must be numeric", extra={"service": service, "metric": metric})
            return False

        payload = self.line(service, state, metric, int(self._clock()))
        if self._debug:
            logger.info(
                "Metric (debug, not sent)",
                extra={"line": payload.strip(), "description": description},
            )
            return True

        try:
            self._send(payload.encode())
        except OSError:
            logger.exception("Metric delivery failed", extra={"service": service})
            return False
        return True

    def _send(self, data: bytes) -> None:
        if self._proto == "udp":
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
                sock.sendto(data, self._address)
            return
        with socket.create_connection(self._address, timeout=self._timeout) as sock:
            sock.sendall(data)
