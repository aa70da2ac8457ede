from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import AsyncExitStack
from typing import Any

import httpx
import structlog
from playwright.async_api import Browser, Playwright, async_playwright

from guardian.alerts import AlertEvaluator
from guardian.config import GuardianConfig, load_config, load_transactions
from guardian.models import Status, TransactionType
from guardian.notify import build_notifier
from guardian.probes import ProbeExecutor
from guardian.retry import RetryCoordinator
from guardian.scheduler import TransactionScheduler
from guardian.settings import Capabilities, ProcessSettings, resolve_capabilities
from guardian.store import ResultStore


logger = structlog.get_logger(__name__)

_BROWSER_TYPES = {TransactionType.FORM, TransactionType.NAVIGATION}


def configure_logging(level: str) -> None:
    level_no = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(level=level_no, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    # Webhook tokens and target URLs stay out of library debug logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def merge_definitions(file_items: list[Any], stored_items: list[dict[str, Any]]) -> list[Any]:
    """Definitions from the config file win over stored rows with the same id."""
    file_ids = {str(item.get("id") or "").strip() for item in file_items if isinstance(item, dict)}
    merged = list(file_items)
    for item in stored_items:
        if str(item.get("id") or "").strip() not in file_ids:
            merged.append(item)
    return merged


async def _launch_browser(p: Playwright, capabilities: Capabilities) -> Browser:
    args = [
        "--no-sandbox",
        "--disable-gpu",
        "--disable-extensions",
        "--disable-background-networking",
        "--disable-dev-shm-usage",
        "--no-first-run",
        "--no-default-browser-check",
    ]
    return await p.chromium.launch(headless=True, executable_path=capabilities.chromium_path, args=args)


async def run_service(config: GuardianConfig, settings: ProcessSettings, *, once: bool = False) -> int:
    capabilities = resolve_capabilities(settings)
    defaults = config.monitoring

    store = ResultStore(config.db_path)
    await store.initialize()

    stored = await store.list_transaction_definitions()
    transactions, errors = load_transactions(merge_definitions(config.transactions, stored), defaults)
    if not transactions:
        logger.error("No valid synthetic transactions configured", excluded=len(errors))
        return 2

    async with AsyncExitStack() as stack:
        http_client = await stack.enter_async_context(httpx.AsyncClient())

        browser: Browser | None = None
        if any(tx.type in _BROWSER_TYPES for tx in transactions):
            if capabilities.browser_enabled:
                p = await stack.enter_async_context(async_playwright())
                browser = await _launch_browser(p, capabilities)
                stack.push_async_callback(browser.close)
            else:
                logger.warning("No chromium available; form/navigation checks will fail until one is installed")

        evaluator = AlertEvaluator(
            build_notifier(capabilities, http_client),
            down_after_failures=defaults.down_after_failures,
            store=store,
        )
        evaluator.restore(await store.load_states())

        executor = ProbeExecutor(http_client, browser=browser, browser_concurrency=defaults.browser_concurrency)
        scheduler = TransactionScheduler(RetryCoordinator(executor), store, evaluator, defaults=defaults)
        scheduler.load(transactions, errors)

        if once:
            await scheduler.run_all_once()
            unhealthy = [
                tx.id for tx in scheduler.transactions() if evaluator.state(tx.id).status != Status.HEALTHY
            ]
            logger.info("Single cycle finished", checked=len(scheduler.transactions()), unhealthy=unhealthy)
            return 1 if unhealthy else 0

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # add_signal_handler is unavailable on Windows event loops.
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

        await scheduler.start()
        await stop_event.wait()
        logger.info("Shutdown requested")
        await scheduler.stop(defaults.shutdown_grace_seconds)

    return 0


def main() -> int:
    settings = ProcessSettings()
    parser = argparse.ArgumentParser(description="DevOps-Guardian synthetic transaction monitor")
    parser.add_argument("--config", default=settings.config_path, help="Path to YAML config")
    parser.add_argument("--once", action="store_true", help="Run every transaction once and exit")
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level (INFO, WARNING, ...)")
    args = parser.parse_args()

    configure_logging(args.log_level)
    config = load_config(args.config)
    return asyncio.run(run_service(config, settings, once=bool(args.once)))


if __name__ == "__main__":
    raise SystemExit(main())
