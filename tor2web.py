"""
tor2web.py — Entry point: configuration, Tor bootstrap and the listener.

Startup order::

    INIT ──launch tor──▶ SUPERVISOR_STARTED ──▶ GATE_WAITING ──ready──▶ LISTENING
      │                        │                     │                      │
      └── spawn error ─────────┴──── gate timeout ───┴──▶ FATAL_EXIT        └─stop─▶ STOPPED

The HTTP listener is never bound before the readiness gate reports READY,
so clients cannot observe a half-started gateway.
"""

from __future__ import annotations

import argparse
import asyncio
import configparser
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Mapping, Optional, TypeVar

import uvloop

from onion_proxy import (
    DEFAULT_ONION_URL,
    ConfigurationError,
    GatewayServer,
    ProxyConfig,
    ProxyTarget,
    SocksEndpoint,
    configure_logging,
)
from tor_bridge.errors import StartupFatalError
from tor_bridge.readiness import ReadinessGate
from tor_bridge.supervisor import ProcessHandle, TorSupervisor, render_torrc

__all__ = [
    "BootstrapState",
    "ConfigurationError",
    "Gateway",
    "GatewayConfig",
    "build_parser",
    "cli",
    "load_config",
    "main",
]

T = TypeVar("T")


# ============================================================================
# Configuration
# ============================================================================


@dataclass(frozen=True)
class GatewayConfig:
    """Everything the process needs, resolved once at startup.

    Attributes
    ----------
    proxy:
        Listener and forwarding settings (target, SOCKS endpoint, timeouts).
    host, port:
        Listener bind address.  Port 0 picks a free port.
    tor_binary, tor_args:
        The command used to start Tor.
    torrc, tor_control_port, tor_data_dir, render_torrc:
        With ``render_torrc`` a minimal torrc is written to ``torrc``
        before launch; otherwise an existing file is used as is.
    ready_max_attempts, ready_interval, ready_probe_timeout:
        Readiness gate budget (interval and probe timeout in seconds).
    stop_timeout:
        Grace period for Tor between SIGTERM and SIGKILL.
    """

    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    tor_binary: str = "tor"
    tor_args: tuple[str, ...] = ("-f", "/etc/tor/torrc")
    torrc: str = "/etc/tor/torrc"
    tor_control_port: int = 9051
    tor_data_dir: str = "/app/tor-data"
    render_torrc: bool = False

    ready_max_attempts: int = 60
    ready_interval: float = 1.0
    ready_probe_timeout: float = 5.0
    stop_timeout: float = 10.0


_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def _as_int(name: str, value: Any, low: int, high: Optional[int] = None) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    try:
        number = int(str(value).strip()) if not isinstance(value, int) else value
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from None
    if number < low or (high is not None and number > high):
        bounds = f"between {low} and {high}" if high is not None else f"at least {low}"
        raise ConfigurationError(f"{name} must be {bounds}, got {number}")
    return number


def _as_float(name: str, value: Any, low: float) -> float:
    try:
        number = float(str(value).strip()) if not isinstance(value, (int, float)) else float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None
    if number <= low:
        raise ConfigurationError(f"{name} must be greater than {low:g}, got {number:g}")
    return number


def _as_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _as_level(value: Any) -> str:
    level = str(value).strip().upper()
    if level not in logging.getLevelNamesMapping():
        raise ConfigurationError(f"Unknown log level {value!r}")
    return level


def load_config(
    args: Optional[argparse.Namespace] = None,
    env: Optional[Mapping[str, str]] = None,
    ini: Optional[configparser.ConfigParser] = None,
) -> GatewayConfig:
    """Resolve every knob: command line > environment > ini file > default.

    Empty environment variables count as unset.

    Raises
    ------
    ConfigurationError
        On the first malformed value.
    """
    args = args if args is not None else argparse.Namespace()
    env = os.environ if env is None else env
    ini = ini if ini is not None else configparser.ConfigParser()

    def pick(option: Optional[str], env_key: str, section: str, key: str, fallback: Any) -> Any:
        value = getattr(args, option, None) if option else None
        if value is not None:
            return value
        raw = env.get(env_key, "").strip()
        if raw:
            return raw
        return ini.get(section, key, fallback=fallback)

    target = ProxyTarget.parse(
        pick("onion_url", "ONION_URL", "server", "onion_url", DEFAULT_ONION_URL)
    )
    health_path = str(pick(None, "HEALTH_PATH", "server", "health_path", "/health")).strip()
    if not health_path.startswith("/"):
        raise ConfigurationError(f"HEALTH_PATH must start with '/', got {health_path!r}")

    socks = SocksEndpoint(
        host=str(pick(None, "SOCKS_HOST", "tor", "socks_host", "127.0.0.1")).strip(),
        port=_as_int("SOCKS_PORT", pick(None, "SOCKS_PORT", "tor", "socks_port", 9050), 1, 65535),
    )
    proxy = ProxyConfig(
        target=target,
        socks=socks,
        health_path=health_path,
        upstream_timeout=_as_float(
            "UPSTREAM_TIMEOUT",
            pick(None, "UPSTREAM_TIMEOUT", "server", "upstream_timeout", 30),
            0,
        ),
        verify_ssl=_as_bool(
            "VERIFY_SSL", pick(None, "VERIFY_SSL", "server", "verify_ssl", True)
        ),
    )

    torrc = str(pick(None, "TORRC", "tor", "torrc", "/etc/tor/torrc")).strip()
    interval_ms = _as_int(
        "TOR_READY_INTERVAL_MS",
        pick(None, "TOR_READY_INTERVAL_MS", "tor", "ready_interval_ms", 1000),
        0,
    )

    return GatewayConfig(
        proxy=proxy,
        host=str(pick("host", "HOST", "server", "host", "0.0.0.0")).strip(),
        port=_as_int("PORT", pick("port", "PORT", "server", "port", 3000), 0, 65535),
        log_level=_as_level(pick("log_level", "LOG_LEVEL", "server", "log_level", "INFO")),
        tor_binary=str(pick(None, "TOR_BINARY", "tor", "binary", "tor")).strip(),
        tor_args=("-f", torrc),
        torrc=torrc,
        tor_control_port=_as_int(
            "TOR_CONTROL_PORT",
            pick(None, "TOR_CONTROL_PORT", "tor", "control_port", 9051),
            1,
            65535,
        ),
        tor_data_dir=str(pick(None, "TOR_DATA_DIR", "tor", "data_dir", "/app/tor-data")).strip(),
        render_torrc=_as_bool(
            "TOR_RENDER_TORRC", pick(None, "TOR_RENDER_TORRC", "tor", "render_torrc", False)
        ),
        ready_max_attempts=_as_int(
            "TOR_READY_MAX_ATTEMPTS",
            pick(None, "TOR_READY_MAX_ATTEMPTS", "tor", "ready_max_attempts", 60),
            1,
        ),
        ready_interval=interval_ms / 1000.0,
    )


# ============================================================================
# Bootstrap
# ============================================================================


class BootstrapState(Enum):
    INIT = "init"
    SUPERVISOR_STARTED = "supervisor_started"
    GATE_WAITING = "gate_waiting"
    LISTENING = "listening"
    FATAL_EXIT = "fatal_exit"
    STOPPED = "stopped"


class _StopRequested(Exception):
    """A stop was requested before the listener came up."""


class Gateway:
    """Orders Tor launch, the readiness gate and the HTTP listener.

    Usage::

        gateway = Gateway(load_config())
        exit_code = await gateway.run()     # returns after request_stop()
    """

    def __init__(self, config: GatewayConfig, supervisor: Optional[TorSupervisor] = None):
        self.config = config
        self.supervisor = supervisor or TorSupervisor()
        self.gate = ReadinessGate(
            config.proxy.socks.host,
            config.proxy.socks.port,
            max_attempts=config.ready_max_attempts,
            interval=config.ready_interval,
            probe_timeout=config.ready_probe_timeout,
        )
        self.server: Optional[GatewayServer] = None
        self.state = BootstrapState.INIT

        self._tor: Optional[ProcessHandle] = None
        self._stop_event = asyncio.Event()

    @property
    def port(self) -> Optional[int]:
        """The bound listener port once LISTENING."""
        return self.server.port if self.server is not None else None

    def request_stop(self) -> None:
        """Ask :meth:`run` to shut down.  Safe to call from a signal handler."""
        if not self._stop_event.is_set():
            logger.info("Stop requested")
        self._stop_event.set()

    async def run(self) -> int:
        """Start everything and serve until stopped.

        Returns ``0`` after a clean stop and ``1`` when startup failed.
        """
        cfg = self.config
        try:
            if cfg.render_torrc:
                try:
                    render_torrc(
                        cfg.torrc,
                        cfg.proxy.socks.host,
                        cfg.proxy.socks.port,
                        cfg.tor_control_port,
                        cfg.tor_data_dir,
                    )
                except OSError as e:
                    raise StartupFatalError(f"Cannot write torrc {cfg.torrc}: {e}") from e

            self._tor = await self.supervisor.launch(cfg.tor_binary, cfg.tor_args)
            self.state = BootstrapState.SUPERVISOR_STARTED

            self.state = BootstrapState.GATE_WAITING
            logger.info("Waiting for Tor SOCKS5 proxy on %s...", self.gate.endpoint)
            await self._unless_stopped(self.gate.wait())

            self.server = GatewayServer(cfg.proxy, cfg.host, cfg.port)
            try:
                port = await self.server.start()
            except OSError as e:
                raise StartupFatalError(f"Cannot bind {cfg.host}:{cfg.port}: {e}") from e

        except _StopRequested:
            logger.info("Stopped before the listener came up")
            await self._shutdown()
            self.state = BootstrapState.STOPPED
            return 0
        except StartupFatalError as e:
            logger.critical("Failed to start: %s", e)
            await self._shutdown()
            self.state = BootstrapState.FATAL_EXIT
            return 1

        self.state = BootstrapState.LISTENING
        logger.info("✓ Tor2Web proxy running on port %d", port)
        logger.info("Proxying to: %s", cfg.proxy.target)
        logger.info("Health check: http://localhost:%d%s", port, cfg.proxy.health_path)

        try:
            await self._stop_event.wait()
        finally:
            await self._shutdown()
            self.state = BootstrapState.STOPPED
        return 0

    # -- internal ----------------------------------------------------------

    async def _unless_stopped(self, aw: Awaitable[T]) -> T:
        """Await *aw* unless :meth:`request_stop` fires first."""
        task = asyncio.ensure_future(aw)
        stopper = asyncio.create_task(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, stopper}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stopper.cancel()
        if task in done:
            return task.result()
        task.cancel()
        self.gate.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise _StopRequested()

    async def _shutdown(self) -> None:
        if self.server is not None:
            await self.server.stop()
        if self._tor is not None:
            await self._tor.stop(timeout=self.config.stop_timeout)
            self._tor = None


# ============================================================================
# CLI
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tor2web", description="HTTP gateway to a single onion service"
    )
    parser.add_argument('-c', '--config', type=str, metavar='PATH', default='./config.ini', help="Path to config")
    parser.add_argument('--host', dest='host', type=str, metavar='HOST', default=None, help='Host/IP to bind (default: 0.0.0.0)')
    parser.add_argument('--port', dest='port', type=int, metavar='PORT', default=None, help='Port to listen on (default: 3000)')
    parser.add_argument('--onion-url', dest='onion_url', type=str, metavar='URL', default=None, help=f'Upstream onion service (default: {DEFAULT_ONION_URL})')
    parser.add_argument('--log-level', dest='log_level', type=str, metavar='LEVEL', default=None, help='TRACE, DEBUG, INFO, WARNING or ERROR (default: INFO)')
    return parser


async def _serve(config: GatewayConfig) -> int:
    gateway = Gateway(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, gateway.request_stop)
    try:
        return await gateway.run()
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)


def main(argv: Optional[list[str]] = None) -> int:
    """Run the gateway.  Exit codes: 0 clean stop, 1 startup failure, 2 bad config."""
    args = build_parser().parse_args(argv)
    configure_logging("INFO")

    ini = configparser.ConfigParser()
    try:
        ini.read(args.config, encoding="utf-8")
        config = load_config(args, os.environ, ini)
    except (ConfigurationError, configparser.Error) as e:
        logger.critical("Invalid configuration: %s", e)
        return 2

    configure_logging(config.log_level)
    return uvloop.run(_serve(config))


def cli() -> None:
    sys.exit(main())


logger = logging.getLogger(__name__)


if __name__ == "__main__":
    cli()
