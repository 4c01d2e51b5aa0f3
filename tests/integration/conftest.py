"""Integration test fixtures: run slowboot_app.py as a real process."""
import os
import signal
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import requests

PROJECT_ROOT = Path(__file__).parent.parent.parent
SERVICE_SCRIPT = PROJECT_ROOT / "slowboot_app.py"


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """
    Expose test outcome on the test item so fixtures can react in teardown.

    Pattern:
      if request.node.rep_call.failed: ...
    """
    outcome = yield
    rep = outcome.get_result()
    setattr(item, f"rep_{rep.when}", rep)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class ServiceProcess:
    """A running slowboot_app.py subprocess with its output captured to a file."""

    def __init__(self, port: int, env: Dict[str, str], log_path: Path):
        self.port = port
        self.base_url = f"http://127.0.0.1:{port}"
        self.log_path = log_path
        self._log_file = open(log_path, "w")
        self.proc = subprocess.Popen(
            [sys.executable, str(SERVICE_SCRIPT)],
            env=env,
            stdout=self._log_file,
            stderr=subprocess.STDOUT,
        )

    def url(self, path: str) -> str:
        return self.base_url + path

    def get(self, path: str, timeout: float = 5) -> requests.Response:
        return requests.get(self.url(path), timeout=timeout)

    def wait_listening(self, timeout: float = 10) -> None:
        deadline = time.time() + timeout
        while time.time() < deadline:
            if self.proc.poll() is not None:
                raise RuntimeError(f"Service exited early with code {self.proc.returncode}")
            try:
                socket.create_connection(("127.0.0.1", self.port), timeout=0.5).close()
                return
            except OSError:
                time.sleep(0.1)
        raise RuntimeError(f"Service did not listen on {self.port} within {timeout}s")

    def signal(self, sig: int = signal.SIGTERM) -> None:
        self.proc.send_signal(sig)

    def wait_exit(self, timeout: float = 20) -> int:
        return self.proc.wait(timeout=timeout)

    def logs(self) -> str:
        if not self._log_file.closed:
            self._log_file.flush()
        return self.log_path.read_text()

    def log_lines(self) -> List[str]:
        return self.logs().splitlines()

    def stop(self) -> None:
        if self.proc.poll() is None:
            self.proc.kill()
            self.proc.wait(timeout=10)
        self._log_file.close()


@pytest.fixture
def service(request, tmp_path):
    """
    Factory that starts slowboot_app.py with the given env overrides.

    Every process is killed at teardown; its captured log is printed when the
    test failed or when SLOWBOOT_TEST_DEBUG=1.
    """
    started: List[ServiceProcess] = []
    always = os.environ.get("SLOWBOOT_TEST_DEBUG") == "1"

    def _start(port: Optional[int] = None, wait: bool = True, **env_overrides: str) -> ServiceProcess:
        port = port or free_port()
        env = {
            "PATH": os.environ.get("PATH", ""),
            "PYTHONPATH": str(PROJECT_ROOT),
            "PYTHONUNBUFFERED": "1",
            "HOST": "127.0.0.1",
            "PORT": str(port),
            "STARTUP_DELAY_SECONDS": "0",
            "APP_VERSION": "9.9.9-test",
            "DRAIN_TIMEOUT_SECONDS": "10",
        }
        env.update({k: str(v) for k, v in env_overrides.items()})
        svc = ServiceProcess(port, env, tmp_path / f"service-{len(started)}.log")
        started.append(svc)
        if wait:
            svc.wait_listening()
        return svc

    yield _start

    rep_call = getattr(request.node, "rep_call", None)
    failed = bool(rep_call and rep_call.failed)
    for svc in started:
        svc.stop()
        if always or failed:
            print(f"\n==================== SERVICE LOG (port {svc.port}) ====================")
            print(svc.logs())
