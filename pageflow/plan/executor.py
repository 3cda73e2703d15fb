from __future__ import annotations

import asyncio
import html
import logging
from typing import Any

from pageflow.browser.actions import ActionPlan, ActionResult, ActionStatus, ContentItem
from pageflow.browser.driver import SessionDriver
from pageflow.browser.stability import StabilityDetector
from pageflow.config import DEFAULT_TIMEOUT_MS, DEFAULT_TYPING_DELAY_MS, INFINITE_WAIT_RETRY_MS, Settings
from pageflow.errors import AbortedByCancellation, PageflowError

from .handlers import HandlerContext, capture, run_action
from .parser import parse_plan
from .report import ExecutionReport, describe_action, format_status

logger = logging.getLogger(__name__)

FALLBACK_SELECTORS = ("h1", "main", "article", "#content", ".content", "body")
FALLBACK_TIMEOUT_SECONDS = 5.0
ERROR_DETAILS_SELECTOR = "error-details"


class PlanExecutor:
    """Runs an action plan against one session, strictly in order.

    Execution stops at the first failed action. The report always holds the
    status of every action that ran; nothing past the failure is attempted.
    """

    def __init__(
        self,
        detector: StabilityDetector | None = None,
        typing_delay_ms: int = DEFAULT_TYPING_DELAY_MS,
        infinite_wait_retry_ms: int = INFINITE_WAIT_RETRY_MS,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        capture_fallback: bool = True,
    ) -> None:
        self.detector = detector or StabilityDetector()
        self.typing_delay_ms = typing_delay_ms
        self.infinite_wait_retry_ms = infinite_wait_retry_ms
        self.default_timeout_ms = default_timeout_ms
        self.capture_fallback = capture_fallback

    @classmethod
    def from_settings(cls, settings: Settings, detector: StabilityDetector | None = None) -> PlanExecutor:
        return cls(detector=detector or StabilityDetector.from_settings(settings), default_timeout_ms=settings.timeout_ms)

    async def execute(
        self,
        driver: SessionDriver,
        plan: ActionPlan | dict[str, Any] | str,
        cancel: asyncio.Event | None = None,
    ) -> ExecutionReport:
        actions = plan if isinstance(plan, tuple) else parse_plan(plan, self.default_timeout_ms)
        ctx = HandlerContext(
            driver=driver,
            detector=self.detector,
            cancel=cancel,
            typing_delay_ms=self.typing_delay_ms,
            infinite_wait_retry_ms=self.infinite_wait_retry_ms,
        )
        report = ExecutionReport(total=len(actions))

        for index, action in enumerate(actions, start=1):
            logger.info("Step %d/%d: %s", index, len(actions), describe_action(action))
            try:
                result = await run_action(ctx, action)
            except AbortedByCancellation:
                result = ActionResult(
                    success=False,
                    message="Aborted by cancellation",
                    error_type=AbortedByCancellation.__name__,
                    aborted=True,
                )
            status = ActionStatus(index=index, total=len(actions), action=action, result=result)
            report.push(status)
            logger.info(format_status(status))

            if result.aborted:
                report.outcome = "aborted"
                break
            if not result.success:
                report.outcome = "failed"
                await self._record_failure(driver, status, report)
                break

        logger.info(
            "Plan %s after %d of %d action(s)",
            report.outcome,
            len(report.statuses),
            report.total,
        )
        return report

    async def _record_failure(
        self, driver: SessionDriver, status: ActionStatus, report: ExecutionReport
    ) -> None:
        try:
            url = await driver.current_url()
        except PageflowError as exc:
            logger.warning("Could not read URL for error details: %s", exc)
            url = "unknown"
        report.extra_content.append(_error_details(status, url))

        if not self.capture_fallback or report.captured_from_actions():
            return
        try:
            item = await asyncio.wait_for(_fallback_capture(driver), timeout=FALLBACK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.warning("Fallback capture failed: %s", exc)
            return
        if item is not None:
            report.extra_content.append(item)


async def _fallback_capture(driver: SessionDriver) -> ContentItem | None:
    """Capture the first broad page region that has content."""
    for selector in FALLBACK_SELECTORS:
        item = await capture(driver, selector, "html")
        if item.error is None and item.content:
            logger.info("Captured fallback content from %s", selector)
            return item
    return None


def _error_details(status: ActionStatus, url: str) -> ContentItem:
    result = status.result
    rows = [
        f"<h3>Action {status.index} of {status.total} failed</h3>",
        f"<p><strong>Action:</strong> {html.escape(describe_action(status.action))}</p>",
        f"<p><strong>Error:</strong> {html.escape(result.error or result.message)}</p>",
    ]
    if result.error_type:
        rows.append(f"<p><strong>Error type:</strong> {html.escape(result.error_type)}</p>")
    rows.append(f"<p><strong>Current URL:</strong> {html.escape(url)}</p>")
    return ContentItem(
        selector=ERROR_DETAILS_SELECTOR,
        content='<div class="error-details">' + "".join(rows) + "</div>",
        format="html",
    )
