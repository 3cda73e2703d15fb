from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import shlex
import shutil
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich import print as console_print
from rich import print_json
from rich.markup import escape
from rich.logging import RichHandler

from pageflow.browser.devtools_adapter import DevToolsAdapter
from pageflow.cache.state_cache import SessionStateCache
from pageflow.config import Settings
from pageflow.errors import AbortedByCancellation, InvalidPlan, PageflowError
from pageflow.mcp_client.session import McpSession
from pageflow.mcp_client.transport import StdioTransport
from pageflow.plan.executor import PlanExecutor
from pageflow.plan.parser import parse_plan
from pageflow.plan.report import ExecutionReport
from pageflow.runner import run_plan

logger = logging.getLogger("pageflow")

EXIT_FAILED = 1
EXIT_INVALID_PLAN = 2
EXIT_ABORTED = 130


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a scripted browser action plan via MCP")
    parser.add_argument("--url", required=True, help="Page to open before running the plan")
    parser.add_argument("--plan", required=True, help="Path to a plan JSON file, or inline JSON")
    parser.add_argument("--timeout", type=int, default=None, help="Default wait timeout in ms (-1 waits forever)")
    parser.add_argument("--no-cache", action="store_true", help="Do not restore or save session state")
    parser.add_argument("--json", dest="as_json", action="store_true", help="Print the full report as JSON")
    return parser.parse_args(argv)


def _load_plan_source(value: str) -> str:
    path = Path(value)
    if not value.lstrip().startswith("{") and path.is_file():
        return path.read_text(encoding="utf-8")
    return value


def _server_args(args_str: str) -> list[str]:
    args = shlex.split(args_str, posix=os.name != "nt")

    has_isolated = "--isolated" in args
    has_custom_session_target = any(
        token in {"-u", "--browserUrl", "-w", "--wsEndpoint", "--userDataDir"}
        or token.startswith("--browserUrl=")
        or token.startswith("--wsEndpoint=")
        or token.startswith("--userDataDir=")
        for token in args
    )
    if not has_isolated and not has_custom_session_target:
        args.append("--isolated")

    has_executable_arg = any(
        token in {"-e", "--executablePath"} or token.startswith("--executablePath=")
        for token in args
    )
    if not has_executable_arg:
        browser_executable = _resolve_browser_executable()
        if browser_executable:
            args.extend(["--executablePath", browser_executable])

    return args


def _resolve_browser_executable() -> str | None:
    configured = os.getenv("CHROME_PATH", "").strip().strip('"')
    if configured and os.path.exists(configured):
        return configured

    local_app_data = os.getenv("LOCALAPPDATA", "")
    program_files = os.getenv("ProgramFiles", "C:\\Program Files")
    program_files_x86 = os.getenv("ProgramFiles(x86)", "C:\\Program Files (x86)")

    candidates = [
        os.path.join(program_files, "Google", "Chrome", "Application", "chrome.exe"),
        os.path.join(program_files_x86, "Google", "Chrome", "Application", "chrome.exe"),
        os.path.join(local_app_data, "Google", "Chrome", "Application", "chrome.exe"),
        "/usr/bin/google-chrome",
        "/usr/bin/chromium",
        "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    ]
    for candidate in candidates:
        if candidate and os.path.exists(candidate):
            return candidate
    return None


def _resolve_command(command: str) -> str:
    candidate = command.strip().strip('"')
    resolved = shutil.which(candidate)
    if resolved and os.name == "nt" and resolved.lower().endswith(".ps1"):
        cmd_candidate = str(resolved)[:-4] + ".cmd"
        if os.path.exists(cmd_candidate):
            return cmd_candidate
    if resolved:
        return resolved
    if os.name == "nt" and not candidate.lower().endswith(".cmd"):
        resolved_cmd = shutil.which(f"{candidate}.cmd")
        if resolved_cmd:
            return resolved_cmd
    raise RuntimeError(
        f"MCP server command not found: {command}. Ensure Node.js/npx is installed and available in PATH."
    )


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=verbose, show_path=verbose)],
    )


async def _run(args: argparse.Namespace, settings: Settings) -> ExecutionReport:
    # Reject a malformed plan before spawning a browser.
    default_timeout = args.timeout if args.timeout is not None else settings.timeout_ms
    actions = parse_plan(_load_plan_source(args.plan), default_timeout)

    server_command = os.getenv("MCP_SERVER_COMMAND", "npx")
    server_args = _server_args(os.getenv("MCP_SERVER_ARGS", "-y chrome-devtools-mcp@latest"))
    if settings.verbose:
        with contextlib.suppress(ValueError):
            index = server_args.index("--executablePath")
            if index + 1 < len(server_args):
                console_print(escape(f"[pageflow] Browser: {server_args[index + 1]}"))

    transport = StdioTransport(_resolve_command(server_command), server_args)
    session = McpSession(transport, timeout_seconds=settings.step_timeout_seconds)
    cache = None if args.no_cache else SessionStateCache.from_settings(settings)
    executor = PlanExecutor.from_settings(settings)

    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, cancel.set)

    await session.start()
    adapter = DevToolsAdapter(session)
    unsubscribe_console = adapter.on_console(
        lambda level, text: logger.debug("[console:%s] %s", level, text)
    )
    try:
        await session.initialize()
        report = await run_plan(
            adapter,
            args.url,
            actions,
            executor=executor,
            cache=cache,
            cancel=cancel,
            navigation_timeout_ms=settings.timeout_ms,
        )
        if settings.verbose:
            with contextlib.suppress(PageflowError):
                console_print(escape(await adapter.read_console()))
        with contextlib.suppress(PageflowError):
            await adapter.close_all_pages()
        return report
    finally:
        unsubscribe_console()
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        await adapter.aclose()
        if cache is not None:
            await cache.flush(timeout=settings.write_deadline_seconds)
            await cache.aclose(cancel_pending=True)
        with contextlib.suppress(Exception):
            await session.stop()


def _print_summary(report: ExecutionReport, as_json: bool) -> None:
    if as_json:
        print_json(data=report.to_dict())
        return

    console_print("\n" + "=" * 60)
    if report.outcome == "completed":
        console_print("[bold green]✅ PLAN COMPLETED[/bold green]")
    elif report.outcome == "aborted":
        console_print("[bold yellow]⏹️ PLAN ABORTED[/bold yellow]")
    else:
        console_print("[bold red]❌ PLAN FAILED[/bold red]")
    console_print(f"Actions executed: {len(report.statuses)}/{report.total}")
    last = report.last
    if last is not None and last.result.error:
        console_print(f"Error: {escape(last.result.error)}")
    for item in report.captured:
        body = item.content if item.content is not None else f"<{item.error}>"
        label = escape(item.selector or "(navigation)")
        console_print(f"\n[bold]{label}[/bold] ({item.format})")
        console_print(escape(body))
    console_print("=" * 60 + "\n")


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    args = _parse_args(argv)
    settings = Settings.from_env()
    _configure_logging(settings.verbose)

    try:
        report = asyncio.run(_run(args, settings))
    except InvalidPlan as exc:
        console_print(f"[bold red]Invalid plan:[/bold red] {escape(str(exc))}")
        sys.exit(EXIT_INVALID_PLAN)
    except AbortedByCancellation:
        console_print("[bold yellow]Cancelled[/bold yellow]")
        sys.exit(EXIT_ABORTED)
    except (PageflowError, RuntimeError) as exc:
        console_print(f"[bold red]Session failed:[/bold red] {escape(str(exc))}")
        sys.exit(EXIT_FAILED)

    _print_summary(report, args.as_json)
    if report.outcome == "aborted":
        sys.exit(EXIT_ABORTED)
    if report.outcome == "failed":
        sys.exit(EXIT_FAILED)


if __name__ == "__main__":
    main()
