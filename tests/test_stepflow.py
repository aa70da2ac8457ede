from __future__ import annotations

import pytest

from guardian.errors import ConfigurationError, ProbeFailure
from guardian.stepflow import run_steps, substitute_env_refs, validate_steps


class _FakeLocator:
    def __init__(self, n: int) -> None:
        self._n = n

    async def count(self) -> int:
        return self._n


class _FakeKeyboard:
    def __init__(self, page: "_FakePage") -> None:
        self._page = page

    async def press(self, key: str) -> None:
        self._page.calls.append(("keyboard.press", key))


class _FakePage:
    """Just enough of the playwright Page API to drive run_steps."""

    def __init__(self, *, title: str = "Home", body: str = "", counts: dict[str, int] | None = None) -> None:
        self.url = "about:blank"
        self._title = title
        self._body = body
        self._counts = counts or {}
        self.calls: list[tuple] = []
        self.keyboard = _FakeKeyboard(self)

    async def goto(self, url: str, **kwargs) -> None:
        self.calls.append(("goto", url))
        self.url = url

    async def click(self, selector: str, **kwargs) -> None:
        self.calls.append(("click", selector))
        if selector == "#next":
            self.url = self.url.rstrip("/") + "/next"

    async def fill(self, selector: str, text: str, **kwargs) -> None:
        self.calls.append(("fill", selector, text))

    async def press(self, selector: str, key: str, **kwargs) -> None:
        self.calls.append(("press", selector, key))

    async def wait_for_selector(self, selector: str, **kwargs) -> None:
        self.calls.append(("wait_for_selector", selector))

    async def evaluate(self, script: str) -> str:
        return self._body

    async def title(self) -> str:
        return self._title

    def locator(self, selector: str) -> _FakeLocator:
        return _FakeLocator(self._counts.get(selector, 0))

    async def set_viewport_size(self, size: dict) -> None:
        self.calls.append(("set_viewport_size", size["width"], size["height"]))


def test_validate_steps_normalizes() -> None:
    steps = validate_steps(
        [
            {"type": "GOTO", "url": " /login "},
            {"type": "press"},
            {"type": "sleep", "ms": 999_999},
            {"type": "wait_for_selector", "selector": "#x"},
        ]
    )
    assert steps[0] == {"type": "goto", "url": "/login"}
    assert steps[1] == {"type": "press", "key": "Enter"}
    assert steps[2] == {"type": "sleep_ms", "ms": 30_000}
    assert steps[3] == {"type": "wait_for_selector", "selector": "#x", "state": "visible"}


@pytest.mark.parametrize(
    ("steps", "needle"),
    [
        ([], "missing_steps"),
        ([{"type": "hover", "selector": "#a"}], "unknown_step_type[0]"),
        ([{"type": "click"}], "missing_selector[0]"),
        ([{"type": "goto"}, {"type": "expect_selector_count", "selector": "a", "count": "many"}], "invalid_count[1]"),
        ([{"type": "set_viewport", "width": 10, "height": 10}], "invalid_viewport[0]"),
        ([{"type": "goto"}] * 61, "too_many_steps"),
    ],
)
def test_validate_steps_errors(steps: list, needle: str) -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        validate_steps(steps, transaction_id="tx")
    assert needle in str(exc_info.value)
    assert exc_info.value.transaction_id == "tx"


def test_substitute_env_refs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GUARDIAN_TEST_SECRET", "s3cret")
    assert substitute_env_refs("pw=${GUARDIAN_TEST_SECRET}") == "pw=s3cret"
    monkeypatch.delenv("GUARDIAN_TEST_SECRET")
    with pytest.raises(ProbeFailure):
        substitute_env_refs("pw=${GUARDIAN_TEST_SECRET}")


@pytest.mark.asyncio
async def test_run_steps_navigation_flow() -> None:
    page = _FakePage(title="Next page", body="Welcome back", counts={".item": 2})
    steps = validate_steps(
        [
            {"type": "goto", "url": "/start"},
            {"type": "click", "selector": "#next"},
            {"type": "expect_url_contains", "value": "/next"},
            {"type": "expect_title_contains", "text": "next"},
            {"type": "expect_text", "text": "welcome"},
            {"type": "expect_selector_count", "selector": ".item", "count": 2},
            {"type": "press"},
        ]
    )
    out = await run_steps(page, steps, base_url="https://svc.example/app", timeout_ms=1000)
    assert out["steps_completed"] == len(steps)
    assert page.calls[0] == ("goto", "https://svc.example/app/start")
    assert out["final_url"].endswith("/next")
    assert ("keyboard.press", "Enter") in page.calls


@pytest.mark.asyncio
async def test_run_steps_expectation_mismatch_raises_probe_failure() -> None:
    page = _FakePage(title="Login")
    steps = validate_steps([{"type": "goto"}, {"type": "expect_title_contains", "text": "Dashboard"}])
    with pytest.raises(ProbeFailure) as exc_info:
        await run_steps(page, steps, base_url="https://svc.example/", timeout_ms=1000)
    assert "title_missing_substring" in str(exc_info.value)


@pytest.mark.asyncio
async def test_run_steps_fill_substitutes_secrets(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GUARDIAN_TEST_PASSWORD", "hunter2")
    page = _FakePage()
    steps = validate_steps([{"type": "fill", "selector": "#pw", "text": "${GUARDIAN_TEST_PASSWORD}"}])
    await run_steps(page, steps, base_url="https://svc.example/", timeout_ms=1000)
    assert page.calls == [("fill", "#pw", "hunter2")]
