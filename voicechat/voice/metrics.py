"""
StatsD metrics for the chat client.

The client reports turn counters (``request.*``, ``session.<state>``,
``microphone.rearm``, ``client.interrupt``) and two timings:

- ``request.latency``: from sending a turn to receiving its reply
- ``session.duration``: from the start of playback to its natural end

Packets go out over UDP. A failed send is logged and dropped.
"""

import logging
import os
import socket
from dataclasses import dataclass
from typing import Optional, Union

from voicechat.serve.config import env_bool

logger = logging.getLogger(__name__)


@dataclass
class MetricsConfig:
    """Where StatsD packets go, read from ``STATSD_*`` variables."""

    host: str = "localhost"
    port: int = 8125
    prefix: str = "voicechat"
    enabled: bool = True

    @classmethod
    def from_env(cls) -> "MetricsConfig":
        return cls(
            host=os.environ.get("STATSD_HOST", "localhost"),
            port=int(os.environ.get("STATSD_PORT", "8125")),
            prefix=os.environ.get("STATSD_PREFIX", "voicechat"),
            enabled=env_bool("STATSD_ENABLED", True),
        )


class StatsdClient:
    """Counters and timings sent as StatsD datagrams."""

    def __init__(self, config: MetricsConfig):
        self.config = config
        self._address = (config.host, config.port)
        self._socket: Optional[socket.socket] = None

    def _emit(self, name: str, value: str, kind: str) -> None:
        if self.config.prefix:
            name = f"{self.config.prefix}.{name}"
        try:
            if self._socket is None:
                self._socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
                self._socket.setblocking(False)
            self._socket.sendto(f"{name}:{value}|{kind}".encode(), self._address)
        except OSError as e:
            logger.debug(f"Dropped metric {name}: {e}")

    def incr(self, name: str, value: int = 1) -> None:
        self._emit(name, str(value), "c")

    def timing(self, name: str, value_ms: float) -> None:
        """
        Record a duration.

        Args:
            name: Metric name without the prefix
            value_ms: Duration in milliseconds
        """
        self._emit(name, f"{value_ms:.1f}", "ms")

    def close(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None


class NullMetricsClient:
    """Stands in for StatsdClient when metrics are disabled."""

    def incr(self, name: str, value: int = 1) -> None:
        pass

    def timing(self, name: str, value_ms: float) -> None:
        pass

    def close(self) -> None:
        pass


MetricsClient = Union[StatsdClient, NullMetricsClient]


def create_metrics_client(config: Optional[MetricsConfig] = None) -> MetricsClient:
    """
    Build the client's metrics sink.

    Returns:
        A StatsdClient, or a NullMetricsClient when metrics are disabled
    """
    config = config or MetricsConfig.from_env()
    if not config.enabled:
        logger.info("Metrics disabled")
        return NullMetricsClient()
    logger.info(f"Metrics enabled: {config.host}:{config.port} ({config.prefix})")
    return StatsdClient(config)
