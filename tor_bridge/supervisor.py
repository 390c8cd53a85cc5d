"""
TorSupervisor — launches the Tor daemon and forwards its output to logging.

The gateway depends on a single long-lived ``tor`` process that exposes a
SOCKS5 listener.  This module only owns the *launch* side of that
relationship: it spawns the process, streams stdout/stderr line by line
into the Python logger, and hands back a :class:`ProcessHandle` for
shutdown.  It never restarts Tor.  If the daemon dies, the SOCKS port goes
away and every forwarded request turns into a 502 until an operator
restarts the container.

Log plumbing
~~~~~~~~~~~~
Each pipe has its own reader task.  Readers never log directly; they push
``(stream, line)`` tuples onto an ``asyncio.Queue`` owned by a single
drain task.  The drain task is the only place that formats Tor output,
so log consumption is independent of how busy the HTTP side is.

Usage::

    supervisor = TorSupervisor()
    handle = await supervisor.launch("tor", ["-f", "/etc/tor/torrc"])
    ...
    await handle.stop()
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from pathlib import Path
from typing import Optional, Sequence

from tor_bridge.errors import SpawnError

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"

# Sentinel pushed by each reader when its pipe hits EOF.
_EOF = object()


class ProcessHandle:
    """A running child process plus the tasks that forward its output.

    Parameters
    ----------
    process:
        The ``asyncio`` subprocess returned by ``create_subprocess_exec``.
    label:
        Source tag prepended to every forwarded log line.
    """

    def __init__(self, process: asyncio.subprocess.Process, label: str):
        self._process = process
        self.label = label
        self.started_at = time.monotonic()

        self._lines: asyncio.Queue = asyncio.Queue()
        self._readers = [
            asyncio.create_task(
                self._read_stream(process.stdout, STDOUT),
                name=f"{label.lower()}-stdout",
            ),
            asyncio.create_task(
                self._read_stream(process.stderr, STDERR),
                name=f"{label.lower()}-stderr",
            ),
        ]
        self._drain_task = asyncio.create_task(
            self._drain(), name=f"{label.lower()}-log"
        )
        self._exit_task = asyncio.create_task(
            self._watch_exit(), name=f"{label.lower()}-exit"
        )
        self._stopping = False

    # ── properties ────────────────────────────────────────────────────────

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def running(self) -> bool:
        """``True`` while the child has not exited."""
        return self._process.returncode is None

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at

    # ── lifecycle ─────────────────────────────────────────────────────────

    async def wait(self) -> int:
        """Wait for the child to exit and return its exit code."""
        return await self._process.wait()

    async def stop(self, timeout: float = 10.0) -> None:
        """Terminate the child.

        Sends ``SIGTERM``, waits up to *timeout* seconds, then ``SIGKILL``.
        Output already queued is still logged before the forwarders are
        torn down.
        """
        self._stopping = True
        proc = self._process

        if proc.returncode is None:
            logger.info("Stopping %s (pid=%d)...", self.label, proc.pid)
            try:
                proc.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=timeout)
                logger.info("%s stopped (rc=%d)", self.label, proc.returncode)
            except asyncio.TimeoutError:
                logger.warning(
                    "%s didn't stop in %.1fs, sending SIGKILL", self.label, timeout
                )
                try:
                    proc.kill()
                    await asyncio.wait_for(proc.wait(), timeout=3.0)
                except (ProcessLookupError, asyncio.TimeoutError):
                    pass

        await self._close_forwarders()

    # ── internal ──────────────────────────────────────────────────────────

    async def _read_stream(
        self, stream: Optional[asyncio.StreamReader], name: str
    ) -> None:
        """Push every non-empty line of *stream* onto the log queue."""
        try:
            if stream is None:
                return
            while True:
                try:
                    line = await stream.readline()
                except ValueError as e:
                    # Over the StreamReader limit; readline already discarded it
                    logger.warning("%s %s line dropped: %s", self.label, name, e)
                    continue
                if not line:
                    break
                decoded = line.decode("utf-8", errors="replace").rstrip()
                if decoded:
                    await self._lines.put((name, decoded))
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.debug("%s %s reader stopped: %s", self.label, name, e)
        finally:
            self._lines.put_nowait((name, _EOF))

    async def _drain(self) -> None:
        """Single consumer of the log queue."""
        open_streams = 2
        while open_streams:
            name, line = await self._lines.get()
            if line is _EOF:
                open_streams -= 1
                continue
            if name == STDERR:
                logger.warning("[%s Error] %s", self.label, line)
            else:
                logger.info("[%s] %s", self.label, line)

    async def _watch_exit(self) -> None:
        rc = await self._process.wait()
        if not self._stopping:
            logger.warning("%s exited unexpectedly (rc=%d)", self.label, rc)

    async def _close_forwarders(self) -> None:
        """Let the drain task flush, then cancel whatever is left."""
        try:
            await asyncio.wait_for(
                asyncio.gather(*self._readers, self._drain_task), timeout=2.0
            )
        except asyncio.TimeoutError:
            logger.debug("%s log forwarders did not finish, cancelling", self.label)
        tasks = [*self._readers, self._drain_task, self._exit_task]
        for t in tasks:
            if not t.done():
                t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def __repr__(self) -> str:
        status = "running" if self.running else f"exited rc={self.returncode}"
        return f"<ProcessHandle {self.label} pid={self.pid} {status}>"


class TorSupervisor:
    """Spawns the Tor daemon (or any compatible SOCKS process).

    Parameters
    ----------
    label:
        Tag used for forwarded output, e.g. ``[Tor] Bootstrapped 100%``.
    """

    def __init__(self, label: str = "Tor"):
        self.label = label
        self.handle: Optional[ProcessHandle] = None

    async def launch(self, command: str, args: Sequence[str] = ()) -> ProcessHandle:
        """Start *command* with *args* and begin forwarding its output.

        Raises
        ------
        SpawnError
            If the executable cannot be started (missing, not executable).
        """
        argv = [command, *args]
        logger.debug("Spawning %s: %s", self.label, " ".join(argv))
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SpawnError(argv, e) from e

        self.handle = ProcessHandle(process, self.label)
        logger.info("%s started (pid=%d)", self.label, process.pid)
        return self.handle


def render_torrc(
    path: str,
    socks_host: str,
    socks_port: int,
    control_port: int,
    data_dir: str,
) -> Path:
    """Write a minimal torrc for the gateway and create the data directory.

    A loopback SOCKS host is published on all interfaces, matching the
    container deployment where the listener and Tor share a network
    namespace.
    """
    bind_host = "0.0.0.0" if socks_host in ("127.0.0.1", "localhost") else socks_host
    Path(data_dir).mkdir(parents=True, exist_ok=True)
    torrc = Path(path)
    torrc.parent.mkdir(parents=True, exist_ok=True)
    torrc.write_text(
        "\n".join(
            [
                f"SocksPort {bind_host}:{socks_port}",
                f"DataDirectory {data_dir}",
                f"ControlPort {control_port}",
                "CookieAuthentication 0",
                "",
            ]
        ),
        encoding="utf-8",
    )
    logger.debug("Wrote torrc to %s", torrc)
    return torrc
