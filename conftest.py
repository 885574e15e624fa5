"""
Conftest for the ThreadForge test suite.

Unit and in-process API tests need nothing from here. The ``server`` fixture
starts a live ThreadForge server (echo model backend, throwaway database) on a
dedicated port for the e2e tests; it is opt-in and skips when the server
cannot be started.
"""
import os
import signal
import subprocess
import sys
import tempfile
import time

import httpx
import pytest

# Different port from the default (39780) to avoid clashing with a dev server
TEST_PORT = 39781
BASE_URL = os.getenv("THREADFORGE_BASE_URL", f"http://127.0.0.1:{TEST_PORT}")


def _server_up(base_url: str) -> bool:
    try:
        with httpx.Client(base_url=base_url, timeout=2) as client:
            return client.get("/health").status_code == 200
    except httpx.HTTPError:
        return False


def _stop(process: subprocess.Popen) -> None:
    try:
        if os.name == "nt":
            process.send_signal(signal.CTRL_C_EVENT)
        else:
            process.send_signal(signal.SIGTERM)
        process.wait(timeout=5)
    except (subprocess.TimeoutExpired, OSError):
        process.kill()
        process.wait()


@pytest.fixture(scope="session")
def server():
    """Yield the base URL of a reachable server, starting one if needed."""
    if _server_up(BASE_URL):
        yield BASE_URL
        return

    db_dir = tempfile.mkdtemp(prefix="threadforge-e2e-")
    env = os.environ.copy()
    env["THREADFORGE_PORT"] = str(TEST_PORT)
    env["THREADFORGE_DB"] = os.path.join(db_dir, "e2e.db")
    env["THREADFORGE_MODEL_BACKEND"] = "echo"
    env.pop("THREADFORGE_API_TOKENS", None)

    process = subprocess.Popen(
        [sys.executable, "-m", "threadforge.cli", "--port", str(TEST_PORT)],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        env=env,
    )
    try:
        for _ in range(30):
            time.sleep(0.5)
            if process.poll() is not None:
                break
            if _server_up(BASE_URL):
                yield BASE_URL
                return
        pytest.skip(f"ThreadForge server could not be started at {BASE_URL}")
    finally:
        if process.poll() is None:
            _stop(process)
