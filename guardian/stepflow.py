from __future__ import annotations

import asyncio
import os
import re
from typing import Any
from urllib.parse import urljoin

from guardian.errors import ConfigurationError, ProbeFailure


MAX_STEPS = 60

_ALLOWED_STEP_TYPES = {
    "goto",
    "click",
    "fill",
    "press",
    "wait_for_selector",
    "expect_url_contains",
    "expect_text",
    "expect_title_contains",
    "expect_selector_count",
    "set_viewport",
    "sleep_ms",
}

INTERACTION_STEP_TYPES = {"click", "fill", "press"}
EXPECTATION_STEP_TYPES = {"expect_url_contains", "expect_text", "expect_title_contains", "expect_selector_count"}

_ENV_REF_RE = re.compile(r"\$\{([A-Z0-9_]{1,64})\}")


def substitute_env_refs(text: str) -> str:
    """
    Replace ${VAR} with os.environ['VAR'].
    A placeholder whose env var is missing fails the step instead of sending an empty value.
    """
    s = str(text or "")
    if "${" not in s:
        return s

    missing: list[str] = []

    def _repl(m: re.Match[str]) -> str:
        key = m.group(1)
        val = os.getenv(key)
        if val is None:
            missing.append(key)
            return ""
        return val

    out = _ENV_REF_RE.sub(_repl, s)
    if missing:
        raise ProbeFailure(f"missing_env_secrets: {sorted(set(missing))}")
    return out


def validate_steps(steps: Any, *, transaction_id: str | None = None) -> list[dict[str, Any]]:
    """
    Validates and returns normalized step dicts. Raises ConfigurationError on the first bad step.
    """

    def _bad(msg: str) -> ConfigurationError:
        return ConfigurationError(msg, transaction_id=transaction_id)

    if not isinstance(steps, list) or not steps:
        raise _bad("missing_steps")
    if len(steps) > MAX_STEPS:
        raise _bad("too_many_steps")

    norm: list[dict[str, Any]] = []
    for idx, raw_step in enumerate(steps):
        if not isinstance(raw_step, dict):
            raise _bad(f"invalid_step[{idx}]")
        typ = str(raw_step.get("type") or "").strip().lower()
        if not typ:
            raise _bad(f"missing_step_type[{idx}]")
        if typ == "sleep":
            typ = "sleep_ms"
        if typ not in _ALLOWED_STEP_TYPES:
            raise _bad(f"unknown_step_type[{idx}]: {typ}")

        step: dict[str, Any] = {"type": typ}

        if typ == "goto":
            url = raw_step.get("url")
            if url is not None:
                step["url"] = str(url).strip()[:2000]

        elif typ in {"click", "wait_for_selector", "expect_selector_count", "fill"}:
            sel = str(raw_step.get("selector") or "").strip()
            if not sel:
                raise _bad(f"missing_selector[{idx}]")
            step["selector"] = sel[:500]
            if typ == "fill":
                text = str(raw_step.get("text") or "")
                if len(text) > 5000:
                    raise _bad(f"text_too_long[{idx}]")
                step["text"] = text
            elif typ == "wait_for_selector":
                step["state"] = str(raw_step.get("state") or "visible").strip()[:30]
            elif typ == "expect_selector_count":
                try:
                    count = int(raw_step.get("count"))
                except (TypeError, ValueError) as exc:
                    raise _bad(f"invalid_count[{idx}]") from exc
                if count < 0 or count > 10_000:
                    raise _bad(f"invalid_count[{idx}]")
                step["count"] = count

        elif typ == "press":
            sel = str(raw_step.get("selector") or "").strip()
            if sel:
                step["selector"] = sel[:500]
            step["key"] = (str(raw_step.get("key") or "").strip() or "Enter")[:80]

        elif typ == "expect_url_contains":
            value = str(raw_step.get("value") or "").strip()
            if not value:
                raise _bad(f"missing_value[{idx}]")
            step["value"] = value[:500]

        elif typ in {"expect_text", "expect_title_contains"}:
            value = str(raw_step.get("text") or raw_step.get("value") or "").strip()
            if not value:
                raise _bad(f"missing_text[{idx}]")
            step["text"] = value[:500]

        elif typ == "set_viewport":
            try:
                w = int(raw_step.get("width"))
                h = int(raw_step.get("height"))
            except (TypeError, ValueError) as exc:
                raise _bad(f"invalid_viewport[{idx}]") from exc
            if not (100 <= w <= 5000 and 100 <= h <= 5000):
                raise _bad(f"invalid_viewport[{idx}]")
            step["width"] = w
            step["height"] = h

        elif typ == "sleep_ms":
            try:
                ms = int(raw_step.get("ms") or 250)
            except (TypeError, ValueError):
                ms = 250
            step["ms"] = max(0, min(ms, 30_000))

        norm.append(step)

    return norm


def validate_form_steps(steps: Any, *, transaction_id: str | None = None) -> list[dict[str, Any]]:
    norm = validate_steps(steps, transaction_id=transaction_id)
    if not any(s["type"] in INTERACTION_STEP_TYPES for s in norm):
        raise ConfigurationError("form_requires_interaction_step", transaction_id=transaction_id)
    return norm


def validate_navigation_steps(steps: Any, *, transaction_id: str | None = None) -> list[dict[str, Any]]:
    norm = validate_steps(steps, transaction_id=transaction_id)
    if not any(s["type"] == "goto" for s in norm):
        raise ConfigurationError("navigation_requires_goto_step", transaction_id=transaction_id)
    # The final page state is what a navigation flow asserts.
    if norm[-1]["type"] not in EXPECTATION_STEP_TYPES:
        raise ConfigurationError("navigation_must_end_with_expectation", transaction_id=transaction_id)
    return norm


def _resolve_url(base: str, raw_url: str | None) -> str:
    url = str(raw_url or "").strip()
    if not url:
        url = base
    if url.startswith("/"):
        url = urljoin(base.rstrip("/") + "/", url.lstrip("/"))
    return substitute_env_refs(url)


async def run_steps(page: Any, steps: list[dict[str, Any]], *, base_url: str, timeout_ms: int) -> dict[str, Any]:
    """
    Execute normalized steps against a playwright page.
    Raises ProbeFailure when an expectation does not hold; playwright errors propagate unchanged.
    Returns a small diagnostics dict (completed step count, final url).
    """
    base = str(base_url or "").strip()
    completed = 0
    for step in steps:
        typ = step["type"]

        if typ == "goto":
            await page.goto(_resolve_url(base, step.get("url")), wait_until="domcontentloaded", timeout=timeout_ms)

        elif typ == "click":
            await page.click(step["selector"], timeout=timeout_ms)

        elif typ == "fill":
            await page.fill(step["selector"], substitute_env_refs(step.get("text") or ""), timeout=timeout_ms)

        elif typ == "press":
            sel = step.get("selector")
            if sel:
                await page.press(sel, step.get("key") or "Enter", timeout=timeout_ms)
            else:
                await page.keyboard.press(step.get("key") or "Enter")

        elif typ == "wait_for_selector":
            await page.wait_for_selector(step["selector"], state=step.get("state") or "visible", timeout=timeout_ms)

        elif typ == "expect_url_contains":
            value = step["value"]
            if value not in (page.url or ""):
                raise ProbeFailure(f"url_missing_substring: {value!r} not in {page.url!r} (step {completed + 1})")

        elif typ == "expect_text":
            value = step["text"]
            body = await page.evaluate("() => document.body?.innerText || ''")
            if value.lower() not in str(body or "").lower():
                raise ProbeFailure(f"text_missing: {value!r} (step {completed + 1})")

        elif typ == "expect_title_contains":
            value = step["text"]
            title = await page.title()
            if value.lower() not in str(title or "").lower():
                raise ProbeFailure(f"title_missing_substring: {value!r} not in {title!r} (step {completed + 1})")

        elif typ == "expect_selector_count":
            got = await page.locator(step["selector"]).count()
            if int(got) != int(step["count"]):
                raise ProbeFailure(
                    f"selector_count_mismatch: selector={step['selector']!r} got={got} expected={step['count']}"
                )

        elif typ == "set_viewport":
            await page.set_viewport_size({"width": step["width"], "height": step["height"]})

        elif typ == "sleep_ms":
            await asyncio.sleep(max(0.0, int(step.get("ms") or 0) / 1000.0))

        else:
            raise ProbeFailure(f"unknown_step_type: {typ!r}")

        completed += 1

    return {"steps_completed": completed, "final_url": str(page.url or "")[:500]}
