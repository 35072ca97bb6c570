from __future__ import annotations

import os
import socket
import subprocess
import sys
import time
from collections.abc import Iterator
from pathlib import Path
from urllib import request

import pytest

from mail_relay.storage.postgres import PostgresRelayStorage

_TABLES = "transactions, email_mappings, workflow_approved_senders, workflows, users"


def _database_url() -> str:
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip(
            "Set RUN_POSTGRES_INTEGRATION_TESTS=1 and MAIL_RELAY_DATABASE_URL "
            "to run integration tests against PostgreSQL."
        )
    database_url = os.getenv("MAIL_RELAY_DATABASE_URL")
    if not database_url:
        pytest.skip("MAIL_RELAY_DATABASE_URL is required for integration tests.")
    return database_url


def _pick_free_port() -> int:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return int(sock.getsockname()[1])
    except PermissionError:
        pytest.skip("Socket operations are blocked in this environment.")


def _wait_for_health(base_url: str, timeout_s: float = 20.0) -> None:
    deadline = time.time() + timeout_s
    while time.time() < deadline:
        try:
            with request.urlopen(f"{base_url}/health", timeout=1.0) as response:
                if response.status == 200:
                    return
        except OSError:
            time.sleep(0.2)
    raise TimeoutError(f"Relay did not become healthy within {timeout_s:.1f}s")


@pytest.fixture
def pg_storage() -> Iterator[PostgresRelayStorage]:
    storage = PostgresRelayStorage(_database_url())
    storage.migrate()
    with storage._connect() as conn:
        conn.execute(f"TRUNCATE {_TABLES} RESTART IDENTITY CASCADE")
    yield storage


@pytest.fixture
def relay_base_url() -> Iterator[str]:
    database_url = _database_url()
    port = _pick_free_port()
    base_url = f"http://127.0.0.1:{port}"
    env = os.environ.copy()
    env["MAIL_RELAY_DATABASE_URL"] = database_url

    cmd = [
        sys.executable,
        "-m",
        "uvicorn",
        "mail_relay.api.main:app",
        "--host",
        "127.0.0.1",
        "--port",
        str(port),
    ]
    server = subprocess.Popen(  # noqa: S603
        cmd,
        cwd=str(Path.cwd()),
        env=env,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        text=True,
    )
    try:
        _wait_for_health(base_url)
        yield base_url
    finally:
        server.terminate()
        try:
            server.wait(timeout=5)
        except subprocess.TimeoutExpired:
            server.kill()
            server.wait(timeout=5)
