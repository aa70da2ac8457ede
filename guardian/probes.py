from __future__ import annotations

import asyncio
import re
import time
from typing import Any, Callable

import httpx
import structlog
from playwright.async_api import Browser, Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from guardian.errors import ProbeFailure, ProbeTimeout, TransportError
from guardian.models import CheckResult, Outcome, SyntheticTransaction, TransactionType
from guardian.stepflow import run_steps


logger = structlog.get_logger(__name__)

DEFAULT_FORBIDDEN_TEXT = [
    "maintenance",
    "temporarily unavailable",
    "we'll be back",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
]

_SCRIPT_AND_STYLE_RE = re.compile(r"(?is)<(script|style)[^>]*>.*?</\1>")
_HTML_TAG_RE = re.compile(r"(?is)<[^>]+>")


def _safe_str(x: Any, *, max_len: int = 500) -> str:
    s = str(x or "")
    return s if len(s) <= max_len else s[:max_len]


def _normalize_text(s: str) -> str:
    return re.sub(r"\s+", " ", s).strip().lower()


def html_to_visible_text(html: str) -> str:
    without_scripts = _SCRIPT_AND_STYLE_RE.sub(" ", html)
    without_tags = _HTML_TAG_RE.sub(" ", without_scripts)
    return _normalize_text(without_tags)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def get_json_path(obj: Any, path: str) -> tuple[bool, Any]:
    """
    Dot-path traversal:
      - "a.b.c"
      - list indices supported as numeric segments: "items.0.id"
    """
    cur = obj
    for seg in (path or "").split("."):
        s = seg.strip()
        if not s:
            return False, None
        if isinstance(cur, list):
            try:
                idx = int(s)
            except ValueError:
                return False, None
            if not (0 <= idx < len(cur)):
                return False, None
            cur = cur[idx]
            continue
        if isinstance(cur, dict):
            if s not in cur:
                return False, None
            cur = cur[s]
            continue
        return False, None
    return True, cur


class ProbeExecutor:
    """
    Runs exactly one attempt of a synthetic transaction and always returns a CheckResult.
    Holds no per-transaction state; safe to share across concurrent runs.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        browser: Browser | None = None,
        browser_concurrency: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.http_client = http_client
        self.browser = browser
        self._browser_semaphore = asyncio.Semaphore(max(1, int(browser_concurrency)))
        self._clock = clock

    async def execute(self, tx: SyntheticTransaction, *, attempt: int = 1) -> CheckResult:
        started_at = float(self._clock())
        started = time.perf_counter()
        data: dict[str, Any] = {}
        try:
            data = await asyncio.wait_for(self._run(tx), timeout=float(tx.timeout))
            outcome, detail = Outcome.SUCCESS, "ok"
        except asyncio.TimeoutError:
            outcome, detail = Outcome.TIMEOUT, f"timeout after {float(tx.timeout):g}s"
        except ProbeTimeout as exc:
            outcome, detail = Outcome.TIMEOUT, str(exc)
        except ProbeFailure as exc:
            outcome, detail, data = Outcome.FAILURE, str(exc), exc.data
        except TransportError as exc:
            outcome, detail = Outcome.FAILURE, f"transport_error: {exc}"
        except PlaywrightTimeoutError as exc:
            outcome, detail = Outcome.TIMEOUT, f"browser_timeout: {_safe_str(exc)}"
        except PlaywrightError as exc:
            outcome, detail = Outcome.FAILURE, f"browser_error: {_safe_str(exc)}"
        except Exception as exc:
            logger.exception("Unexpected probe error", transaction_id=tx.id, tx_type=tx.type.value)
            outcome, detail = Outcome.FAILURE, f"{type(exc).__name__}: {_safe_str(exc)}"

        elapsed_ms = (time.perf_counter() - started) * 1000.0
        return CheckResult(
            transaction_id=tx.id,
            started_at=started_at,
            duration_ms=round(elapsed_ms, 3),
            outcome=outcome,
            attempt=int(attempt),
            detail=_safe_str(detail, max_len=2000),
            data=data,
        )

    async def _run(self, tx: SyntheticTransaction) -> dict[str, Any]:
        if tx.type == TransactionType.API:
            return await self._check_api(tx)
        if tx.type == TransactionType.CONTENT:
            return await self._check_content(tx)
        return await self._check_browser(tx)

    async def _request(self, tx: SyntheticTransaction, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.http_client.request(
                method, url, timeout=float(tx.timeout), follow_redirects=True, **kwargs
            )
        except httpx.TimeoutException as exc:
            raise ProbeTimeout(f"http_timeout: {type(exc).__name__}: {_safe_str(exc)}") from exc
        except httpx.RequestError as exc:
            raise TransportError(f"{type(exc).__name__}: {_safe_str(exc)}") from exc

    async def _check_api(self, tx: SyntheticTransaction) -> dict[str, Any]:
        opts = tx.options
        method = str(opts.get("method") or "GET").strip().upper()
        expected_statuses = [int(x) for x in _as_list(opts.get("expected_status_codes") or [200])]
        expected_ct = str(opts.get("expected_content_type_contains") or "").strip() or None
        json_required = [str(x) for x in _as_list(opts.get("json_paths_required")) if str(x or "").strip()]
        json_equal = opts.get("json_paths_equal") if isinstance(opts.get("json_paths_equal"), dict) else {}
        max_elapsed_ms = opts.get("max_elapsed_ms")

        req_json = opts.get("body_json") if isinstance(opts.get("body_json"), (dict, list)) else None
        req_text = opts.get("body_text") if isinstance(opts.get("body_text"), str) else None
        headers = opts.get("headers") if isinstance(opts.get("headers"), dict) else {}

        started = time.perf_counter()
        resp = await self._request(
            tx,
            method,
            tx.target,
            json=req_json,
            content=req_text.encode("utf-8") if req_text is not None else None,
            headers={str(k): str(v) for k, v in headers.items()},
        )
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        status_code = int(resp.status_code)
        details: dict[str, Any] = {
            "status_code": status_code,
            "content_type": resp.headers.get("content-type"),
            "final_url": _safe_str(resp.url),
        }

        if status_code not in expected_statuses:
            raise ProbeFailure(f"unexpected_status: {status_code} not in {expected_statuses}", data=details)

        if expected_ct:
            ct = (resp.headers.get("content-type") or "").lower()
            if expected_ct.lower() not in ct:
                raise ProbeFailure(f"unexpected_content_type: {ct!r} missing {expected_ct!r}", data=details)

        if json_required or json_equal:
            try:
                data = resp.json()
            except ValueError as exc:
                raise ProbeFailure(f"json_parse_error: {_safe_str(exc)}", data=details) from exc

            missing = [p for p in json_required[:50] if not get_json_path(data, p)[0]]
            if missing:
                details["missing_json_paths"] = missing[:25]
                raise ProbeFailure(f"missing_json_paths: {missing[:25]}", data=details)

            mismatches: list[str] = []
            for p, expected_val in list(json_equal.items())[:50]:
                exists, got_val = get_json_path(data, str(p))
                if not exists:
                    mismatches.append(f"{p}: missing")
                elif got_val != expected_val:
                    mismatches.append(f"{p}: got={got_val!r} expected={expected_val!r}")
            if mismatches:
                details["json_mismatches"] = mismatches[:25]
                raise ProbeFailure(f"json_value_mismatch: {'; '.join(mismatches[:5])}", data=details)

        if max_elapsed_ms is not None and elapsed_ms > float(max_elapsed_ms):
            raise ProbeFailure(f"slow_api: elapsed_ms={elapsed_ms:.1f} > {float(max_elapsed_ms):.1f}", data=details)

        return details

    async def _check_content(self, tx: SyntheticTransaction) -> dict[str, Any]:
        opts = tx.options
        expected_statuses = [int(x) for x in _as_list(opts.get("expected_status_codes") or [200])]
        required = [str(x) for x in _as_list(opts.get("required_text")) if str(x or "").strip()]
        forbidden_raw = opts.get("forbidden_text")
        forbidden = [str(x) for x in (DEFAULT_FORBIDDEN_TEXT if forbidden_raw is None else _as_list(forbidden_raw))]

        resp = await self._request(tx, "GET", tx.target)
        status_code = int(resp.status_code)
        details: dict[str, Any] = {"status_code": status_code, "final_url": _safe_str(resp.url)}
        if status_code not in expected_statuses:
            raise ProbeFailure(f"unexpected_status: {status_code} not in {expected_statuses}", data=details)

        body_norm = html_to_visible_text(resp.text or "")
        missing = [t for t in required if _normalize_text(t) not in body_norm]
        if missing:
            details["missing_text"] = missing[:25]
            raise ProbeFailure(f"required_text_missing: {missing[:25]}", data=details)

        hits = [t for t in forbidden if t and _normalize_text(t) in body_norm]
        if hits:
            details["forbidden_text_hits"] = hits[:25]
            raise ProbeFailure(f"forbidden_text_present: {hits[:25]}", data=details)

        return details

    async def _check_browser(self, tx: SyntheticTransaction) -> dict[str, Any]:
        if self.browser is None:
            raise ProbeFailure("browser_unavailable")
        steps = tx.options.get("steps") or []
        timeout_ms = int(max(1.0, float(tx.timeout)) * 1000)

        async with self._browser_semaphore:
            context = await self.browser.new_context(viewport={"width": 1280, "height": 720})
            try:
                await context.route("**/*", _block_heavy_resources)
                page = await context.new_page()
                return await run_steps(page, steps, base_url=tx.target, timeout_ms=timeout_ms)
            finally:
                await context.close()


async def _block_heavy_resources(route) -> None:
    if route.request.resource_type in {"image", "media", "font"}:
        await route.abort()
        return
    await route.continue_()
