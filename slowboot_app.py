"""
slowboot_app.py

Slow-booting HTTP workload for exercising orchestration probes during rollouts.

Features:
- Simulates a boot delay measured from process start on a monotonic clock.
- delay-after-listen mode: listens immediately, /health answers 503
  "initializing" until the delay has elapsed, then 200.
- delay-before-listen mode: withholds the listener until the delay has
  elapsed, so early probes get connection refused.
- /ready, /status and / answer 200 regardless of the boot delay.
- Drains in-flight requests on SIGTERM/SIGINT and forces exit after a timeout.

Env vars:
- STARTUP_DELAY_SECONDS   (default: 45)
- PORT                    (default: 8080)
- HOST                    (default: 0.0.0.0)
- APP_VERSION             (default: package version, else "unknown")
- LISTEN_MODE             (default: delay-after-listen)
- DRAIN_TIMEOUT_SECONDS   (default: 10)
- JSON_LOGS               (default: false)
- LOG_LEVEL               (default: INFO)

Exit codes: 0 on clean shutdown, 1 on bind failure or forced shutdown.
"""

import enum
import json
import logging
import re
import signal
import socket
import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from importlib import metadata
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import urlsplit

from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger("slowboot")


# =========================
# Constants
# =========================

DIST_NAME = "slowboot-app"

LISTEN_AFTER = "delay-after-listen"
LISTEN_BEFORE = "delay-before-listen"
LISTEN_MODES = (LISTEN_AFTER, LISTEN_BEFORE)

UNKNOWN_VERSION = "unknown"
UNKNOWN_CONTAINER = "unknown-container"

EXIT_CLEAN = 0
EXIT_FAILURE = 1

ROUTE_ROOT = "/"
ROUTE_HEALTH = "/health"
ROUTE_READY = "/ready"
ROUTE_STATUS = "/status"

JSON_CONTENT_TYPE = "application/json"
TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# cgroup v1 lines carry the full id anywhere; mountinfo only under the runtime's containers dir.
CONTAINER_ID_SOURCES: Tuple[Tuple[str, re.Pattern[str]], ...] = (
    ("/proc/self/cgroup", re.compile(r"([0-9a-f]{64})")),
    ("/proc/self/mountinfo", re.compile(r"/containers/([0-9a-f]{64})/")),
)

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off", "")


# =========================
# Settings
# =========================

class AppSettings(BaseSettings):
    """Service configuration read from the environment.

    Malformed values never abort startup: they are replaced by the field
    default and a warning is logged.
    """

    startup_delay_seconds: int = 45
    port: int = 8080
    host: str = "0.0.0.0"
    app_version: Optional[str] = None
    listen_mode: str = LISTEN_AFTER
    drain_timeout_seconds: int = 10
    json_logs: bool = False
    log_level: str = "INFO"

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore", frozen=True)

    @classmethod
    def _fallback(cls, name: str, value: Any) -> Any:
        default = cls.model_fields[name].default
        logger.warning(f"Invalid {name.upper()}={value!r}; falling back to {default!r}.")
        return default

    @field_validator("startup_delay_seconds", "drain_timeout_seconds", "port", mode="before")
    @classmethod
    def non_negative_int(cls, v: Any, info: ValidationInfo) -> Any:
        try:
            value = int(str(v).strip())
        except (TypeError, ValueError):
            return cls._fallback(info.field_name, v)
        if value < 0 or (info.field_name == "port" and value > 65535):
            return cls._fallback(info.field_name, v)
        # Timer and Condition waits reject anything longer than TIMEOUT_MAX.
        if info.field_name != "port" and value > threading.TIMEOUT_MAX:
            return cls._fallback(info.field_name, v)
        return value

    @field_validator("listen_mode", mode="before")
    @classmethod
    def known_listen_mode(cls, v: Any, info: ValidationInfo) -> Any:
        mode = str(v).strip().lower()
        if mode not in LISTEN_MODES:
            return cls._fallback(info.field_name, v)
        return mode

    @field_validator("json_logs", mode="before")
    @classmethod
    def lenient_bool(cls, v: Any, info: ValidationInfo) -> Any:
        if isinstance(v, bool):
            return v
        text = str(v).strip().lower()
        if text in _TRUE_VALUES:
            return True
        if text in _FALSE_VALUES:
            return False
        return cls._fallback(info.field_name, v)

    @field_validator("log_level", mode="before")
    @classmethod
    def known_log_level(cls, v: Any, info: ValidationInfo) -> Any:
        level = str(v).strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            return cls._fallback(info.field_name, v)
        return level

    @field_validator("app_version", mode="before")
    @classmethod
    def blank_version_is_unset(cls, v: Any) -> Any:
        if v is None:
            return None
        text = str(v).strip()
        return text or None


# =========================
# Logging
# =========================

class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": _iso_utc(datetime.fromtimestamp(record.created, timezone.utc)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(json_logs: bool = False, level: str = "INFO") -> None:
    """Send service logs to stdout, replacing any handler installed earlier."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if json_logs else logging.Formatter(LOG_FORMAT))
    logger.handlers[:] = [handler]
    logger.setLevel(level)
    logger.propagate = False


# =========================
# Clock
# =========================

def _monotonic_ms() -> int:
    return time.monotonic_ns() // 1_000_000


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso_utc(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class ServiceClock:
    """Process start instant plus read-only access to "now"."""

    process_start_ms: int
    source: Callable[[], int] = _monotonic_ms
    wall: Callable[[], datetime] = _utc_now

    @classmethod
    def start(
        cls,
        source: Callable[[], int] = _monotonic_ms,
        wall: Callable[[], datetime] = _utc_now,
    ) -> "ServiceClock":
        return cls(process_start_ms=source(), source=source, wall=wall)

    def now(self) -> int:
        return self.source()

    def elapsed_ms(self, now: Optional[int] = None) -> int:
        if now is None:
            now = self.now()
        return max(0, now - self.process_start_ms)

    def timestamp(self) -> str:
        return _iso_utc(self.wall())


# =========================
# Boot-delay gate
# =========================

class GateState(str, enum.Enum):
    BOOTING = "booting"
    READY = "ready"


@dataclass(frozen=True)
class DelayConfig:
    delay_seconds: int

    def __post_init__(self) -> None:
        if self.delay_seconds < 0:
            raise ValueError(f"delay_seconds must be >= 0, got {self.delay_seconds}")

    @property
    def grace_ms(self) -> int:
        return self.delay_seconds * 1000


@dataclass(frozen=True)
class BootDelayGate:
    """
    Classify the process as BOOTING or READY from elapsed time alone.

    READY iff elapsed >= grace (the boundary counts as READY). The clock is
    monotonic and the config immutable, so READY never reverts to BOOTING and
    no locking is needed between request threads.
    """

    config: DelayConfig
    clock: ServiceClock

    def classify(self, now: Optional[int] = None) -> GateState:
        if self.clock.elapsed_ms(now) >= self.config.grace_ms:
            return GateState.READY
        return GateState.BOOTING

    def elapsed_seconds(self, now: Optional[int] = None) -> int:
        return self.clock.elapsed_ms(now) // 1000

    def remaining_ms(self, now: Optional[int] = None) -> int:
        return max(0, self.config.grace_ms - self.clock.elapsed_ms(now))

    def remaining_seconds(self, now: Optional[int] = None) -> int:
        """Whole seconds left, rounded up so a booting gate never reports 0."""
        return -(-self.remaining_ms(now) // 1000)


# =========================
# Metadata discovery
# =========================

def discover_container_id(
    sources: Iterable[Tuple[str, re.Pattern[str]]] = CONTAINER_ID_SOURCES,
) -> str:
    """
    Best-effort short container id:
    - 64-hex id from /proc/self/cgroup (cgroup v1 runtimes).
    - 64-hex id from /proc/self/mountinfo (cgroup v2 runtimes).
    - Fallback to the hostname, which Docker and Kubernetes set per container.
    """
    for path, pattern in sources:
        try:
            with open(path, encoding="utf-8") as fh:
                content = fh.read()
        except OSError:
            continue
        match = pattern.search(content)
        if match:
            return match.group(1)[:12]

    try:
        hostname = socket.gethostname()
    except OSError:
        hostname = ""
    return hostname or UNKNOWN_CONTAINER


def discover_version(explicit: Optional[str] = None) -> str:
    """APP_VERSION if set, else the installed distribution version."""
    if explicit:
        return explicit
    try:
        return metadata.version(DIST_NAME)
    except metadata.PackageNotFoundError:
        logger.debug(f"Distribution {DIST_NAME} not installed; version unknown.")
        return UNKNOWN_VERSION


# =========================
# Service context
# =========================

@dataclass(frozen=True)
class ServiceContext:
    """Everything a request needs, built once at process entry and never mutated."""

    settings: AppSettings
    clock: ServiceClock
    gate: BootDelayGate
    version: str
    container_id: str

    @property
    def listen_mode(self) -> str:
        return self.settings.listen_mode


def build_context(
    settings: AppSettings,
    clock: ServiceClock,
    version: Optional[str] = None,
    container_id: Optional[str] = None,
) -> ServiceContext:
    gate = BootDelayGate(DelayConfig(settings.startup_delay_seconds), clock)
    return ServiceContext(
        settings=settings,
        clock=clock,
        gate=gate,
        version=version or discover_version(settings.app_version),
        container_id=container_id or discover_container_id(),
    )


# =========================
# Probe responder
# =========================

@dataclass(frozen=True)
class ProbeResult:
    status: int
    body: Union[Dict[str, Any], str]
    content_type: str = JSON_CONTENT_TYPE

    def encode(self) -> bytes:
        if isinstance(self.body, str):
            return self.body.encode("utf-8")
        return json.dumps(self.body).encode("utf-8")


NOT_FOUND = ProbeResult(404, "Not Found", TEXT_CONTENT_TYPE)


def health_result(ctx: ServiceContext, now: int) -> ProbeResult:
    elapsed = ctx.gate.elapsed_seconds(now)

    if ctx.listen_mode == LISTEN_BEFORE:
        # Only reachable once the gate has opened the listener.
        return ProbeResult(200, {
            "status": "ok",
            "version": ctx.version,
            "message": f"App version {ctx.version} is healthy.",
            "elapsedSeconds": elapsed,
        })

    if ctx.gate.classify(now) is GateState.BOOTING:
        return ProbeResult(503, {
            "status": "initializing",
            "elapsedSeconds": elapsed,
            "remainingSeconds": ctx.gate.remaining_seconds(now),
        })
    return ProbeResult(200, {"status": "ok", "elapsedSeconds": elapsed})


def status_result(ctx: ServiceContext, now: int) -> ProbeResult:
    return ProbeResult(200, {
        "version": ctx.version,
        "container": ctx.container_id,
        "uptime": ctx.gate.elapsed_seconds(now),
        "timestamp": ctx.clock.timestamp(),
    })


def respond(ctx: ServiceContext, method: str, path: str, now: Optional[int] = None) -> ProbeResult:
    """Map a request onto a probe response. Query strings are ignored."""
    if method != "GET":
        return NOT_FOUND
    if now is None:
        now = ctx.clock.now()

    route = urlsplit(path).path
    if route == ROUTE_HEALTH:
        return health_result(ctx, now)
    if route == ROUTE_READY:
        return ProbeResult(200, {"status": "ready"})
    if route in (ROUTE_STATUS, ROUTE_ROOT):
        return status_result(ctx, now)
    return NOT_FOUND


# =========================
# HTTP transport
# =========================

class ProbeRequestHandler(BaseHTTPRequestHandler):
    server: "ProbeHTTPServer"
    server_version = "slowboot"

    def _dispatch(self) -> None:
        ctx = self.server.context
        logger.info(f"{self.command} {self.path} from {self.client_address[0]}")

        result = respond(ctx, self.command, self.path)
        if result.status == 503 and isinstance(result.body, dict):
            logger.info(
                f"Health check failed: {result.body['elapsedSeconds']}s uptime, "
                f"waiting for {ctx.gate.config.delay_seconds}s"
            )

        payload = result.encode()
        self.send_response(result.status)
        self.send_header("Content-Type", result.content_type)
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(payload)

    do_GET = _dispatch

    def __getattr__(self, name: str) -> Any:
        # Every other verb (TRACE, CONNECT, custom) goes through the responder, never a 501.
        if name.startswith("do_"):
            return self._dispatch
        raise AttributeError(name)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002 - http.server API
        logger.debug(f"{self.address_string()} - {format % args}")


class ProbeHTTPServer(ThreadingHTTPServer):
    """
    Thread-per-connection server that counts connections in flight.

    A connection is in flight from accept until its handler thread has closed
    the socket, so a drained server has delivered every response.
    """

    daemon_threads = True
    block_on_close = False

    def __init__(self, address: Tuple[str, int], context: ServiceContext):
        self.context = context
        self._in_flight = 0
        self._idle = threading.Condition()
        super().__init__(address, ProbeRequestHandler)

    @property
    def in_flight(self) -> int:
        with self._idle:
            return self._in_flight

    def process_request(self, request, client_address):
        with self._idle:
            self._in_flight += 1
        try:
            super().process_request(request, client_address)
        except Exception:
            self._release()
            raise

    def process_request_thread(self, request, client_address):
        try:
            super().process_request_thread(request, client_address)
        finally:
            self._release()

    def _release(self) -> None:
        with self._idle:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.notify_all()

    def wait_idle(self, timeout: float) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout=timeout)


# =========================
# Listener lifecycle
# =========================

class ListenerError(RuntimeError):
    """The listener could not be bound. Not retried: the operator must fix it."""


class ListenerManager:
    """Open the listener now or once the gate opens, and close it on shutdown."""

    def __init__(self, context: ServiceContext, coordinator: "ShutdownCoordinator"):
        self.context = context
        self.coordinator = coordinator
        self.server: Optional[ProbeHTTPServer] = None
        self.bind_error: Optional[OSError] = None
        self._timer: Optional[threading.Timer] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._started = False
        self._closed = False

    @property
    def port(self) -> Optional[int]:
        return self.server.server_address[1] if self.server else None

    @property
    def in_flight(self) -> int:
        return self.server.in_flight if self.server else 0

    def arm(self) -> None:
        """Start listening according to the listen mode. Raises ListenerError."""
        delay_ms = self.context.gate.remaining_ms()
        if self.context.listen_mode == LISTEN_AFTER or delay_ms == 0:
            if delay_ms:
                logger.info(
                    f"Simulating boot-up time. /health reports initializing for "
                    f"{self.context.gate.remaining_seconds()}s."
                )
            self.start()
            return

        logger.info(
            f"Simulating boot-up time. Will start server in "
            f"{self.context.gate.remaining_seconds()}s."
        )
        self._timer = threading.Timer(delay_ms / 1000, self._on_gate_open)
        self._timer.name = "boot-delay"
        self._timer.daemon = True
        self._timer.start()

    def _on_gate_open(self) -> None:
        try:
            self.start()
        except ListenerError:
            self.coordinator.request_shutdown("bind failure")

    def start(self) -> bool:
        """Bind and serve. Returns False if already started or closed."""
        settings = self.context.settings
        with self._lock:
            if self._started or self._closed:
                return False
            self._started = True
            logger.info("Server is starting...")
            try:
                self.server = ProbeHTTPServer((settings.host, settings.port), self.context)
            except OSError as exc:
                self.bind_error = exc
                logger.error(f"Could not listen on {settings.host}:{settings.port}: {exc}")
                raise ListenerError(str(exc)) from exc

            self._thread = threading.Thread(
                target=self.server.serve_forever,
                name="probe-listener",
                daemon=True,
            )
            self._thread.start()

        logger.info(f"Server listening on {settings.host}:{self.port}")
        logger.info(f"Version: {self.context.version}")
        logger.info(f"Container ID: {self.context.container_id}")
        return True

    def stop_accepting(self) -> None:
        """Cancel a pending start, stop the accept loop and close the socket."""
        with self._lock:
            self._closed = True
            if self._timer is not None:
                self._timer.cancel()
            server = self.server

        if server is None:
            logger.info("Listener was never opened.")
            return

        server.shutdown()
        server.server_close()
        logger.info("HTTP server closed.")

    def wait_idle(self, timeout: float) -> bool:
        if self.server is None:
            return True
        return self.server.wait_idle(timeout)


# =========================
# Shutdown coordination
# =========================

class ShutdownState(str, enum.Enum):
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"


class ShutdownCoordinator:
    """
    RUNNING -(first SIGTERM/SIGINT)-> DRAINING -(idle or timeout)-> TERMINATED.

    The first request wins; later signals are only recorded, so the drain
    runs once and its timeout is never restarted. The signal handler does
    not log; drain() reports on the main thread.
    """

    def __init__(self, drain_timeout: float = 10):
        self.drain_timeout = drain_timeout
        self.state = ShutdownState.RUNNING
        self.reason: Optional[str] = None
        self.ignored_signals: List[str] = []
        # Acquired once, never released. Non-blocking so a signal handler cannot deadlock on it.
        self._claim = threading.Lock()
        self._latch = threading.Event()

    def install_signal_handlers(self, signals: Iterable[int] = (signal.SIGTERM, signal.SIGINT)) -> None:
        for sig in signals:
            signal.signal(sig, self._on_signal)

    def _on_signal(self, signum: int, frame: Any) -> None:
        name = signal.Signals(signum).name
        if not self.request_shutdown(name):
            self.ignored_signals.append(name)

    def request_shutdown(self, reason: str) -> bool:
        if not self._claim.acquire(blocking=False):
            return False
        self.reason = reason
        self.state = ShutdownState.DRAINING
        self._latch.set()
        return True

    @property
    def requested(self) -> bool:
        return self._latch.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._latch.wait(timeout)

    def drain(self, listener: ListenerManager) -> int:
        """Stop accepting, wait for in-flight requests, return the exit code."""
        deadline = time.monotonic() + self.drain_timeout
        logger.info(f"Received {self.reason}. Shutting down gracefully...")
        listener.stop_accepting()

        pending = listener.in_flight
        if pending:
            logger.info(f"Waiting up to {self.drain_timeout}s for {pending} in-flight request(s).")

        clean = listener.wait_idle(max(0.0, deadline - time.monotonic()))
        self.state = ShutdownState.TERMINATED
        if self.ignored_signals:
            logger.info(f"Ignored repeated signal(s) while draining: {', '.join(self.ignored_signals)}.")
        if not clean:
            logger.error("Could not close connections in time, forcefully shutting down")
            return EXIT_FAILURE
        logger.info("Shutdown complete.")
        return EXIT_CLEAN


# =========================
# Entry point
# =========================

def main() -> int:
    clock = ServiceClock.start()
    configure_logging()
    settings = AppSettings()
    configure_logging(json_logs=settings.json_logs, level=settings.log_level)
    context = build_context(settings, clock)

    logger.info(f"[App v{context.version}] Initializing...")
    logger.info(
        f"[App v{context.version}] Configured startup delay: "
        f"{settings.startup_delay_seconds} seconds ({settings.listen_mode})."
    )

    coordinator = ShutdownCoordinator(drain_timeout=settings.drain_timeout_seconds)
    coordinator.install_signal_handlers()

    listener = ListenerManager(context, coordinator)
    try:
        listener.arm()
    except ListenerError:
        return EXIT_FAILURE

    coordinator.wait()
    if listener.bind_error is not None:
        return EXIT_FAILURE
    return coordinator.drain(listener)


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
