"""
ReadinessGate — blocks startup until the Tor SOCKS port accepts TCP.

Tor only opens its SocksPort once bootstrap has progressed far enough to
build circuits, so a successful TCP connect is used as the signal that the
tunnel is usable.  It is not a guarantee that the onion service itself is
reachable; that surfaces later as per-request 502s.

State machine::

    NOT_STARTED ──first probe──▶ PROBING(n) ──connect ok──▶ READY
                                    │  ▲
                                    └──┘ connect failed, n < max
                                    │
                                    └──n == max──▶ FAILED(reason)

``READY`` and ``FAILED`` are terminal.  The probe loop runs at most once
per gate; every ``wait()`` caller observes the same outcome.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from tor_bridge.errors import ReadinessTimeout

logger = logging.getLogger(__name__)


class ReadinessPhase(Enum):
    NOT_STARTED = "not_started"
    PROBING = "probing"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class ReadinessState:
    phase: ReadinessPhase = ReadinessPhase.NOT_STARTED
    attempts: int = 0
    reason: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return self.phase in (ReadinessPhase.READY, ReadinessPhase.FAILED)


class ReadinessGate:
    """Polls ``host:port`` at a fixed interval until it accepts a connection.

    Parameters
    ----------
    host, port:
        The endpoint to probe (the Tor SOCKS listener).
    max_attempts:
        Total number of connection attempts before giving up.
    interval:
        Seconds to sleep between failed attempts.  No backoff.
    probe_timeout:
        Upper bound for a single connection attempt, so a black-holed
        port cannot stall the loop indefinitely.
    """

    def __init__(
        self,
        host: str,
        port: int,
        max_attempts: int = 60,
        interval: float = 1.0,
        probe_timeout: float = 5.0,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if interval < 0:
            raise ValueError("interval must not be negative")
        self.host = host
        self.port = port
        self.max_attempts = max_attempts
        self.interval = interval
        self.probe_timeout = probe_timeout

        self._state = ReadinessState()
        self._task: Optional[asyncio.Task] = None

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def state(self) -> ReadinessState:
        return self._state

    async def wait(self) -> ReadinessState:
        """Run (or join) the probe loop and return the ``READY`` state.

        Raises
        ------
        ReadinessTimeout
            When every attempt failed.
        """
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="tor-readiness")
        return await asyncio.shield(self._task)

    def cancel(self) -> None:
        """Abandon a probe loop that is still running."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    # ── internal ──────────────────────────────────────────────────────────

    async def _run(self) -> ReadinessState:
        last_error: Optional[str] = None
        for attempt in range(1, self.max_attempts + 1):
            self._state = ReadinessState(ReadinessPhase.PROBING, attempt)
            error = await self._probe()
            if error is None:
                self._state = ReadinessState(ReadinessPhase.READY, attempt)
                logger.info(
                    "Tor SOCKS5 proxy is ready on %s (attempt %d)",
                    self.endpoint,
                    attempt,
                )
                return self._state

            last_error = error
            logger.debug(
                "Probe %d/%d of %s failed: %s",
                attempt,
                self.max_attempts,
                self.endpoint,
                error,
            )
            if attempt < self.max_attempts:
                await asyncio.sleep(self.interval)

        timeout = ReadinessTimeout(self.max_attempts, self.endpoint, last_error)
        self._state = ReadinessState(
            ReadinessPhase.FAILED, self.max_attempts, str(timeout)
        )
        logger.error("%s", timeout)
        raise timeout

    async def _probe(self) -> Optional[str]:
        """One TCP connect.  Returns ``None`` on success, else the error text."""
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.probe_timeout,
            )
        except asyncio.TimeoutError:
            return f"connect timed out after {self.probe_timeout:.1f}s"
        except OSError as e:
            return str(e) or type(e).__name__

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return None

    def __repr__(self) -> str:
        return (
            f"<ReadinessGate {self.endpoint} {self._state.phase.value} "
            f"attempts={self._state.attempts}/{self.max_attempts}>"
        )
