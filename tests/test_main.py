from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from guardian.config import GuardianConfig
from guardian.main import merge_definitions, run_service
from guardian.models import Status
from guardian.settings import ProcessSettings
from guardian.store import ResultStore


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def do_GET(self) -> None:  # noqa: N802
        if self.path == "/health":
            body = json.dumps({"status": "healthy"}).encode("utf-8")
            status, ctype = 200, "application/json"
        elif self.path == "/page":
            body = b"<html><body><h1>Status page</h1></body></html>"
            status, ctype = 200, "text/html; charset=utf-8"
        else:
            body, status, ctype = b"unavailable", 503, "text/plain"
        self.send_response(status)
        self.send_header("Content-Type", ctype)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


@pytest.fixture(scope="module")
def base_url() -> str:
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


def _settings() -> ProcessSettings:
    return ProcessSettings(webhook_url="", notifications_enabled=False, browser_enabled=False)


def test_merge_definitions_file_wins() -> None:
    file_items = [{"id": "a", "target": "https://file.example/"}, "garbage"]
    stored = [{"id": "a", "target": "https://db.example/"}, {"id": "b", "target": "https://db.example/b"}]
    merged = merge_definitions(file_items, stored)
    assert merged == [file_items[0], "garbage", stored[1]]


@pytest.mark.asyncio
async def test_run_once_checks_file_and_stored_transactions(tmp_path: Path, base_url: str) -> None:
    db_path = str(tmp_path / "g.db")
    store = ResultStore(db_path)
    await store.upsert_transaction(
        {"id": "status-page", "type": "content", "target": f"{base_url}/page", "required_text": ["status page"]}
    )
    config = GuardianConfig(
        db_path=db_path,
        transactions=[{"id": "api", "type": "api", "target": f"{base_url}/health", "json_paths_equal": {"status": "healthy"}}],
    )

    assert await run_service(config, _settings(), once=True) == 0

    for tx_id in ("api", "status-page"):
        results = await store.query(tx_id)
        assert len(results) == 1 and results[0].ok, results
    states = await store.load_states()
    assert {s.status for s in states.values()} == {Status.HEALTHY}


@pytest.mark.asyncio
async def test_run_once_reports_unhealthy(tmp_path: Path, base_url: str) -> None:
    config = GuardianConfig(
        db_path=str(tmp_path / "g.db"),
        transactions=[
            {"id": "broken", "type": "api", "target": f"{base_url}/down", "max_retries": 0},
            {"id": "not-valid", "type": "ftp", "target": f"{base_url}/"},
        ],
    )
    assert await run_service(config, _settings(), once=True) == 1

    store = ResultStore(config.db_path)
    (result,) = await store.query("broken")
    assert "unexpected_status: 503" in result.detail
    assert (await store.load_states())["broken"].status == Status.DEGRADED


@pytest.mark.asyncio
async def test_run_without_valid_transactions_exits_2(tmp_path: Path) -> None:
    config = GuardianConfig(db_path=str(tmp_path / "g.db"), transactions=[{"id": "x", "type": "api", "target": "nope"}])
    assert await run_service(config, _settings(), once=True) == 2
