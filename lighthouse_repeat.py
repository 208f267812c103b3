# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "httpx",
#   "pandas",
#   "playwright",
#   "rich",
# ]
# ///
"""Lighthouse Repeat CLI Tool.

Runs Lighthouse against one page several times, each run in a fresh
Chromium session driven by Playwright, optionally seeding cookies and
suppressing CSS animations on every navigation. The weighted performance
metrics of every run are streamed as a log or collected into a table, and
each run's HTML report can be kept on disk as report-<n>.html.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import shutil
import sys
import tempfile
import tomllib
from contextlib import asynccontextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, NamedTuple
from urllib.parse import urlparse

import httpx
import pandas as pd
from playwright.async_api import BrowserContext, Frame, Page, Playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright
from rich.console import Console
from rich.table import Table
from rich.text import Text

__version__ = "0.4.0"

# Results go to stdout, progress and diagnostics to stderr. Markup is off
# because page titles, cookie values and driver errors are printed verbatim.
out_console = Console(highlight=False, markup=False)
err_console = Console(stderr=True, highlight=False, markup=False)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_URL = "https://www.bhphotovideo.com"
DEFAULT_REPEAT = 1
DEFAULT_LIGHTHOUSE_BIN = "lighthouse"
DEFAULT_OUTPUT_DIR = "."

REPORT_FILENAME = "report-{index}.html"
REPORT_GLOB = "report-*.html"

VALID_EXPORT_SUFFIXES = (".csv", ".json")

# Headless Chrome cannot maximize, so it gets an explicit large viewport
# instead of Playwright's 1280x720 default.
HEADLESS_VIEWPORT = {"width": 1920, "height": 1080}

DEVTOOLS_PORT_FILE = "DevToolsActivePort"
MAX_PROBE_RETRIES = 5
PROBE_BASE_DELAY = 0.25
PROBE_TIMEOUT = 5.0

INJECTION_DRAIN_TIMEOUT = 5.0

CONFIG_FILENAMES = ["lighthouse-repeat.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "lighthouse-repeat",
]

# Lighthouse audit titles -> column labels used in the table view
SHORTENED_METRIC_NAMES = {
    "Performance": "Perf",
    "Largest Contentful Paint": "LCP",
    "First Contentful Paint": "FCP",
    "First Meaningful Paint": "FMP",
    "Speed Index": "SI",
    "Time to Interactive": "TTI",
    "First CPU Idle": "FCI",
    "Total Blocking Time": "TBT",
    "Max Potential First Input Delay": "Max FID",
    "Cumulative Layout Shift": "CLS",
    "Interaction to Next Paint": "INP",
}

_VENDOR_PREFIXES = ("-o-", "-moz-", "-ms-", "-webkit-", "")
_DISABLED_PROPERTIES = ("transition-property", "transform", "animation")

NO_ANIMATION_CSS = "* {" + " ".join(
    f"{prefix}{prop}: none !important;"
    for prop in _DISABLED_PROPERTIES
    for prefix in _VENDOR_PREFIXES
) + "}"

_ADD_STYLE_FUNCTION = """(content) => {
    const style = document.createElement('style');
    style.type = 'text/css';
    style.appendChild(document.createTextNode(content));
    (document.head || document.documentElement).appendChild(style);
    return true;
}"""


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class LighthouseRepeatError(Exception):
    """Base class for every error this tool reports."""


class ConfigError(LighthouseRepeatError):
    """Raised for invalid command-line or config-file input."""


class LaunchError(LighthouseRepeatError):
    """Raised when a browser session cannot be started or prepared."""


class InjectionError(LighthouseRepeatError):
    """Raised when the animation-blocking stylesheet cannot be pushed into a page."""


class AuditError(LighthouseRepeatError):
    """Raised when Lighthouse fails or returns an unusable result."""


class PersistenceError(LighthouseRepeatError):
    """Raised when a report file cannot be written or removed."""


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunConfig:
    url: str
    inject_animation_block: bool = False
    cookie_pairs: tuple[tuple[str, str], ...] = ()
    repeat_count: int = DEFAULT_REPEAT
    log_only: bool = False
    tabular_output: bool = False
    headless: bool = False
    lighthouse_bin: str = DEFAULT_LIGHTHOUSE_BIN
    output_dir: str = DEFAULT_OUTPUT_DIR
    export_path: str | None = None
    verbose: bool = False


@dataclass
class BrowserSession:
    """One launched Chromium profile and the port Lighthouse connects to."""

    context: BrowserContext
    port: int
    websocket_url: str


@dataclass(frozen=True)
class AuditResult:
    """The parts of a Lighthouse result (lhr) this tool reads, plus the HTML report."""

    categories: dict
    audits: dict
    performance_audit_refs: tuple[tuple[str, float], ...]
    report: bytes

    @classmethod
    def from_lhr(cls, lhr: dict, report: bytes) -> AuditResult:
        runtime_error = lhr.get("runtimeError")
        if runtime_error:
            code = runtime_error.get("code", "UNKNOWN")
            message = runtime_error.get("message", "")
            raise AuditError(f"Lighthouse runtime error {code}: {message}")

        categories = lhr.get("categories", {})
        performance = categories.get("performance")
        if not performance:
            raise AuditError("Lighthouse result has no performance category")

        refs = tuple(
            (ref.get("id", ""), ref.get("weight") or 0)
            for ref in performance.get("auditRefs", [])
        )
        return cls(
            categories=categories,
            audits=lhr.get("audits", {}),
            performance_audit_refs=refs,
            report=report,
        )

    @property
    def overall_score(self) -> float | None:
        return self.categories["performance"].get("score")

    def positive_weight_audit_ids(self) -> list[str]:
        """Audit ids that contribute to the performance score, in Lighthouse's order."""
        return [audit_id for audit_id, weight in self.performance_audit_refs if weight > 0]


class SelectedMetric(NamedTuple):
    label: str
    display_value: str
    title: str
    numeric_value: float | None = None
    numeric_unit: str | None = None


@dataclass(frozen=True)
class RunRecord:
    run_index: int
    overall_score: float | None
    selected_metrics: tuple[SelectedMetric, ...]
    category_scores: tuple[tuple[str, float | None], ...] = ()


@dataclass(frozen=True)
class RunOutcome:
    """Result of one iteration: a record on success, an error message otherwise."""

    run_index: int
    record: RunRecord | None = None
    error: str | None = None
    report_path: Path | None = None

    @property
    def ok(self) -> bool:
        return self.record is not None


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"malformed config file {config_path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"cannot read config file {config_path}: {exc}") from exc


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. Profile values
      3. [settings] defaults from config
      4. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            raise ConfigError(f"profile '{profile_name}' not found in config. Available: {available}")
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "url": "url",
        "cookies": "cookie",
        "css_no_animate": "css_no_animate",
        "repeat": "repeat",
        "log_only": "log_only",
        "table": "table",
        "headless": "headless",
        "lighthouse_bin": "lighthouse_bin",
        "output_dir": "output_dir",
        "export": "export",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if not getattr(args, "lighthouse_bin", None):
        args.lighthouse_bin = os.environ.get("LIGHTHOUSE_BIN") or DEFAULT_LIGHTHOUSE_BIN

    return args


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="lighthouse-repeat",
        description="Run Lighthouse repeatedly against one page and summarise the performance metrics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose output to stderr")

    parser.add_argument("-u", "--url", dest="url", action=TrackingAction, default=None, help="The URL to be tested with Lighthouse")
    parser.add_argument("-c", "--cookie", dest="cookie", action=TrackingAction, nargs="*", default=None, metavar="KEY=VALUE", help="Sets cookies on the page before executing Lighthouse")
    parser.add_argument("-x", "--css-no-animate", dest="css_no_animate", action=TrackingStoreTrueAction, default=False, help="Inject CSS to block any animation on the page before executing Lighthouse")
    parser.add_argument("-r", "--repeat", dest="repeat", action=TrackingAction, type=int, default=DEFAULT_REPEAT, metavar="TIMES", help="Repeats the test TIMES times (default: 1)")
    parser.add_argument("-l", "--log-only", dest="log_only", action=TrackingStoreTrueAction, default=False, help="Don't save the HTML reports to the file system")
    parser.add_argument("-t", "--table", dest="table", action=TrackingStoreTrueAction, default=False, help="Log the performance results as a table, one row per run")
    parser.add_argument("--headless", dest="headless", action=TrackingStoreTrueAction, default=False, help="Run Chromium headless instead of in a visible window")
    parser.add_argument("--lighthouse-bin", dest="lighthouse_bin", action=TrackingAction, default=None, help="Lighthouse executable (or set LIGHTHOUSE_BIN env var)")
    parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory for report-<n>.html files (default: current directory)")
    parser.add_argument("--export", dest="export", action=TrackingAction, default=None, help="Also write the per-run metrics to a .csv or .json file")

    return parser


def validate_url(url: str) -> str | None:
    """Validate and normalize a URL. Returns the URL or None if invalid."""
    url = url.strip()
    if not url:
        return None

    # Add scheme if missing
    if not url.startswith(("http://", "https://")):
        url = "https://" + url

    parsed = urlparse(url)
    if not parsed.hostname:
        return None
    if "." not in parsed.hostname and parsed.hostname != "localhost":
        return None
    return url


def resolve_url(raw_url: str | None) -> str:
    """Return the URL to audit, falling back to DEFAULT_URL with a notice."""
    if not raw_url or not raw_url.strip():
        err_console.print("No URL passed, using default URL.")
        return DEFAULT_URL
    url = validate_url(raw_url)
    if url is None:
        err_console.print("Invalid URL passed, using default URL.")
        return DEFAULT_URL
    return url


def parse_cookie_pairs(raw_pairs: list[str] | str | None) -> tuple[tuple[str, str], ...]:
    """Split KEY=VALUE strings on the first '='.

    A bare string (as in `cookies = "a=1"` in the config file) counts as a
    single pair. A pair without '=' or with an empty name is rejected rather
    than turned into a cookie with an empty value.
    """
    if isinstance(raw_pairs, str):
        raw_pairs = [raw_pairs]
    elif raw_pairs is not None and not isinstance(raw_pairs, (list, tuple)):
        raise ConfigError(f"cookies must be a list of KEY=VALUE strings, got {raw_pairs!r}")

    pairs = []
    for raw in raw_pairs or []:
        if not isinstance(raw, str):
            raise ConfigError(f"malformed cookie {raw!r}: expected a KEY=VALUE string")
        name, separator, value = raw.partition("=")
        name = name.strip()
        if not separator or not name:
            raise ConfigError(f"malformed cookie '{raw}': expected KEY=VALUE")
        pairs.append((name, value))
    return tuple(pairs)


def build_run_config(args: argparse.Namespace) -> RunConfig:
    """Validate parsed arguments and freeze them into a RunConfig."""
    try:
        repeat_count = int(args.repeat)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"--repeat must be an integer, got {args.repeat!r}") from exc
    if repeat_count < 1:
        raise ConfigError("--repeat must be at least 1")

    export_path = getattr(args, "export", None)
    if export_path and Path(export_path).suffix.lower() not in VALID_EXPORT_SUFFIXES:
        raise ConfigError(f"unsupported export format '{Path(export_path).suffix}'. Use .csv or .json.")

    cookie_pairs = parse_cookie_pairs(getattr(args, "cookie", None))

    return RunConfig(
        url=resolve_url(getattr(args, "url", None)),
        inject_animation_block=bool(getattr(args, "css_no_animate", False)),
        cookie_pairs=cookie_pairs,
        repeat_count=repeat_count,
        log_only=bool(getattr(args, "log_only", False)),
        tabular_output=bool(getattr(args, "table", False)),
        headless=bool(getattr(args, "headless", False)),
        lighthouse_bin=getattr(args, "lighthouse_bin", None) or DEFAULT_LIGHTHOUSE_BIN,
        output_dir=str(getattr(args, "output_dir", None) or DEFAULT_OUTPUT_DIR),
        export_path=export_path,
        verbose=bool(getattr(args, "verbose", False)),
    )


# ---------------------------------------------------------------------------
# Metric Selection
# ---------------------------------------------------------------------------


def shorten_metric_title(title: str) -> str:
    """Map a Lighthouse audit title to its table label; unknown titles pass through."""
    return SHORTENED_METRIC_NAMES.get(title, title)


def build_run_record(run_index: int, audit: AuditResult) -> RunRecord:
    """Extract the performance score and positive-weight metrics of one run."""
    selected = []
    for audit_id in audit.positive_weight_audit_ids():
        audit_data = audit.audits.get(audit_id, {})
        title = audit_data.get("title", audit_id)
        selected.append(SelectedMetric(
            label=shorten_metric_title(title),
            display_value=audit_data.get("displayValue", ""),
            title=title,
            numeric_value=audit_data.get("numericValue"),
            numeric_unit=audit_data.get("numericUnit"),
        ))

    category_scores = tuple(
        (category.get("title", category_id), category.get("score"))
        for category_id, category in audit.categories.items()
    )
    return RunRecord(
        run_index=run_index,
        overall_score=audit.overall_score,
        selected_metrics=tuple(selected),
        category_scores=category_scores,
    )


def format_numeric_value(value: float | None, unit: str | None) -> str:
    if value is None or pd.isna(value):
        return "n/a"
    if unit == "millisecond":
        return f"{value:,.0f} ms"
    return f"{value:.3f}"


# ---------------------------------------------------------------------------
# Report Files
# ---------------------------------------------------------------------------


def clean_reports(output_dir: str, log_only: bool) -> list[Path]:
    """Delete report-*.html files left over from a previous batch.

    Stale reports could be mistaken for fresh ones, so any file that cannot
    be removed aborts the batch before the first run.
    """
    if log_only:
        return []

    removed: list[Path] = []
    for report_path in sorted(Path(output_dir).glob(REPORT_GLOB)):
        try:
            report_path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            raise PersistenceError(f"cannot remove stale report {report_path}: {exc}") from exc
        removed.append(report_path)
    return removed


def persist_report(report: bytes, run_index: int, output_dir: str) -> Path:
    """Write one run's HTML report as report-<run_index>.html. Returns the resolved path."""
    report_path = Path(output_dir) / REPORT_FILENAME.format(index=run_index)
    try:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_bytes(report)
    except OSError as exc:
        raise PersistenceError(f"cannot write report {report_path}: {exc}") from exc
    return report_path.resolve()


# ---------------------------------------------------------------------------
# Browser Session
# ---------------------------------------------------------------------------


def read_devtools_port(profile_dir: Path) -> int | None:
    """Read the debugging port Chrome wrote into its profile, if it is there yet."""
    try:
        first_line = (profile_dir / DEVTOOLS_PORT_FILE).read_text().splitlines()[0]
        return int(first_line.strip())
    except (OSError, IndexError, ValueError):
        return None


async def resolve_debugging_port(profile_dir: Path) -> int:
    """Wait for Chrome to publish its remote-debugging port."""
    for attempt in range(MAX_PROBE_RETRIES + 1):
        port = read_devtools_port(profile_dir)
        if port:
            return port
        if attempt < MAX_PROBE_RETRIES:
            await asyncio.sleep(PROBE_BASE_DELAY * (2**attempt))
    raise LaunchError(f"browser did not publish a debugging port in {profile_dir}")


async def probe_devtools_endpoint(port: int, client: httpx.AsyncClient | None = None) -> str:
    """Confirm the browser answers on its debugging port and return its WebSocket URL.

    Retries with exponential backoff while Chrome finishes starting up.
    """
    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=PROBE_TIMEOUT)

    version_url = f"http://127.0.0.1:{port}/json/version"
    last_error: Exception | None = None
    try:
        for attempt in range(MAX_PROBE_RETRIES + 1):
            try:
                response = await client.get(version_url)
                if response.status_code == 200:
                    websocket_url = response.json().get("webSocketDebuggerUrl")
                    if websocket_url:
                        return websocket_url
                    last_error = LaunchError("response carried no webSocketDebuggerUrl")
                else:
                    last_error = LaunchError(f"HTTP {response.status_code}")
            except (httpx.HTTPError, OSError, ValueError) as exc:
                last_error = exc
            if attempt < MAX_PROBE_RETRIES:
                await asyncio.sleep(PROBE_BASE_DELAY * (2**attempt))
    finally:
        if own_client:
            await client.aclose()

    raise LaunchError(
        f"DevTools endpoint on port {port} did not answer after {MAX_PROBE_RETRIES + 1} attempts: {last_error}"
    )


@asynccontextmanager
async def open_browser_session(playwright: Playwright, config: RunConfig) -> AsyncIterator[BrowserSession]:
    """Launch a fresh Chromium profile with remote debugging and close it on exit.

    Each session gets its own temporary profile, so cookies and cache never
    leak between runs. LaunchError raised before the context exists means
    there is nothing to release.
    """
    with tempfile.TemporaryDirectory(prefix="lighthouse-repeat-", ignore_cleanup_errors=True) as profile_dir:
        launch_args = ["--remote-debugging-port=0"]
        launch_options: dict = {"headless": config.headless}
        if config.headless:
            launch_options["viewport"] = HEADLESS_VIEWPORT
        else:
            launch_options["no_viewport"] = True
            launch_args.append("--start-maximized")
        launch_options["args"] = launch_args

        try:
            context = await playwright.chromium.launch_persistent_context(profile_dir, **launch_options)
        except PlaywrightError as exc:
            raise LaunchError(f"failed to launch Chromium: {exc}") from exc

        try:
            port = await resolve_debugging_port(Path(profile_dir))
            websocket_url = await probe_devtools_endpoint(port)
            if config.verbose:
                err_console.print(f"  Browser listening on {websocket_url}")
            yield BrowserSession(context=context, port=port, websocket_url=websocket_url)
        finally:
            try:
                await context.close()
            except PlaywrightError as exc:
                err_console.print(f"  Warning: browser did not close cleanly: {exc}", style="yellow")


async def seed_cookies(context: BrowserContext, url: str, cookie_pairs: tuple[tuple[str, str], ...]) -> None:
    """Set all cookies for the target URL in one call through a transient page."""
    page = None
    try:
        page = await context.new_page()
        await page.goto(url)
        cookies = [{"name": name, "value": value, "url": page.url} for name, value in cookie_pairs]
        await context.add_cookies(cookies)
    except PlaywrightError as exc:
        raise LaunchError(f"failed to seed cookies on {url}: {exc}") from exc
    finally:
        # Lighthouse fails when another page of the same origin stays open.
        if page is not None:
            try:
                await page.close()
            except PlaywrightError as exc:
                err_console.print(f"  Warning: cookie page did not close cleanly: {exc}", style="yellow")


# ---------------------------------------------------------------------------
# Animation Blocking
# ---------------------------------------------------------------------------


def build_injection_expression(css: str = NO_ANIMATION_CSS) -> str:
    """Build a Runtime.evaluate expression that appends css as a <style> element."""
    return f"({_ADD_STYLE_FUNCTION})({json.dumps(css)})"


async def _evaluate_in_page(context: BrowserContext, page: Page, expression: str) -> None:
    # Raw CDP rather than page.add_style_tag, which is unreliable on some pages.
    try:
        cdp = await context.new_cdp_session(page)
    except PlaywrightError as exc:
        raise InjectionError(f"cannot open CDP session: {exc}") from exc

    try:
        result = await cdp.send("Runtime.evaluate", {"expression": expression})
    except PlaywrightError as exc:
        raise InjectionError(f"failed Runtime.evaluate: {exc}") from exc
    finally:
        try:
            await cdp.detach()
        except PlaywrightError:
            pass  # target already closed, the session went with it

    details = result.get("exceptionDetails") if isinstance(result, dict) else None
    if details:
        raise InjectionError(f"page threw during Runtime.evaluate: {details.get('text', 'unknown error')}")


async def inject_no_animation(context: BrowserContext, page: Page | None) -> bool:
    """Push NO_ANIMATION_CSS into page. Returns True when the style landed.

    Failures are reported and swallowed: the audit carries on with or
    without the stylesheet. Lighthouse may already be measuring when this
    runs, so the style is a best effort, never a guarantee.
    """
    if page is None:
        err_console.print("  no page found, skipping CSS injection")
        return False
    try:
        await _evaluate_in_page(context, page, build_injection_expression())
    except InjectionError as exc:
        err_console.print(f"  CSS injection failed: {exc}", style="yellow")
        return False
    return True


class NavigationHook:
    """Run a coroutine on every main-frame navigation of one browser session.

    Listeners are attached on enter and removed on exit, so no handler
    outlives the session it was registered for. That includes the pages
    Lighthouse opens and reloads itself. Handlers run as tasks racing the
    audit and nothing orders them against Lighthouse's measurement.
    """

    def __init__(
        self,
        context: BrowserContext,
        on_navigate: Callable[[BrowserContext, Page], Awaitable[object]],
        verbose: bool = False,
    ) -> None:
        self.context = context
        self.on_navigate = on_navigate
        self.verbose = verbose
        self.invocations = 0
        self._pages: list[Page] = []
        self._tasks: set[asyncio.Task] = set()
        # Bound once so remove_listener receives the objects that were registered.
        self._page_listener = self._watch_page
        self._navigation_listener = self._on_frame_navigated

    async def __aenter__(self) -> NavigationHook:
        self.context.on("page", self._page_listener)
        for page in self.context.pages:
            self._watch_page(page)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        self.context.remove_listener("page", self._page_listener)
        for page in self._pages:
            page.remove_listener("framenavigated", self._navigation_listener)
        self._pages.clear()

        pending = set(self._tasks)
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=INJECTION_DRAIN_TIMEOUT)
            for task in still_running:
                task.cancel()
        return False

    def _watch_page(self, page: Page) -> None:
        if page in self._pages:
            return
        self._pages.append(page)
        page.on("framenavigated", self._navigation_listener)

    def _on_frame_navigated(self, frame: Frame) -> None:
        if frame.parent_frame is not None:
            return
        self.invocations += 1
        if self.verbose:
            err_console.print(f"  Navigation to {frame.url}, injecting CSS")
        task = asyncio.ensure_future(self.on_navigate(self.context, frame.page))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            err_console.print(f"  Navigation handler failed: {task.exception()}", style="yellow")


# ---------------------------------------------------------------------------
# Lighthouse
# ---------------------------------------------------------------------------


async def run_lighthouse(url: str, port: int, lighthouse_bin: str = DEFAULT_LIGHTHOUSE_BIN) -> AuditResult:
    """Audit url through the browser listening on port.

    Lighthouse writes a JSON result and an HTML report side by side; both are
    read back before the scratch directory is removed.
    """
    executable = shutil.which(lighthouse_bin) or lighthouse_bin

    with tempfile.TemporaryDirectory(prefix="lighthouse-repeat-audit-", ignore_cleanup_errors=True) as work_dir:
        output_base = Path(work_dir) / "lighthouse"
        cmd = [
            executable,
            url,
            f"--port={port}",
            "--output=json",
            "--output=html",
            f"--output-path={output_base}",
            "--quiet",
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise AuditError(f"cannot start {lighthouse_bin}: {exc}") from exc

        _, stderr = await process.communicate()
        if process.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[-500:]
            raise AuditError(f"Lighthouse exited with code {process.returncode}: {detail}")

        json_path = Path(work_dir) / "lighthouse.report.json"
        html_path = Path(work_dir) / "lighthouse.report.html"
        try:
            lhr = json.loads(json_path.read_text(encoding="utf-8"))
            report = html_path.read_bytes()
        except (OSError, ValueError) as exc:
            raise AuditError(f"unreadable Lighthouse output: {exc}") from exc

    return AuditResult.from_lhr(lhr, report)


# ---------------------------------------------------------------------------
# Run Execution
# ---------------------------------------------------------------------------


async def execute_run(playwright: Playwright, config: RunConfig, run_index: int) -> RunOutcome:
    """Run one iteration in its own browser session.

    The session is closed on every path out of here. Launch, cookie and
    audit failures turn into a failed RunOutcome; a report that cannot be
    written is reported but keeps the run's metrics.
    """
    run_label = f"Run {run_index}/{config.repeat_count}" if config.repeat_count > 1 else "Run"
    err_console.print(f"{run_label}: auditing {config.url}...")

    report_path = None
    try:
        async with open_browser_session(playwright, config) as session:
            if config.cookie_pairs:
                await seed_cookies(session.context, config.url, config.cookie_pairs)

            hook = None
            if config.inject_animation_block:
                hook = NavigationHook(session.context, inject_no_animation, verbose=config.verbose)
            async with hook if hook is not None else nullcontext():
                audit = await run_lighthouse(config.url, session.port, config.lighthouse_bin)
            if hook is not None and config.verbose:
                err_console.print(f"  CSS injection attempted {hook.invocations} time(s)")

            record = build_run_record(run_index, audit)

            if not config.log_only:
                try:
                    report_path = persist_report(audit.report, run_index, config.output_dir)
                except PersistenceError as exc:
                    err_console.print(f"  Error: {exc}", style="red")
    except LaunchError as exc:
        err_console.print(f"  Error: browser session failed in run {run_index}: {exc}", style="red")
        return RunOutcome(run_index=run_index, error=f"launch failed: {exc}")
    except AuditError as exc:
        err_console.print(f"  Error: Lighthouse failed in run {run_index}: {exc}", style="red")
        return RunOutcome(run_index=run_index, error=f"audit failed: {exc}")
    except PlaywrightError as exc:
        err_console.print(f"  Error: browser driver failed in run {run_index}: {exc}", style="red")
        return RunOutcome(run_index=run_index, error=f"browser failed: {exc}")

    return RunOutcome(run_index=run_index, record=record, report_path=report_path)


# ---------------------------------------------------------------------------
# Aggregation & Rendering
# ---------------------------------------------------------------------------


@dataclass
class BatchResult:
    """Outcomes of a batch, plus the table rows when rendering as a table.

    The header comes from the first successful run; later runs are assumed
    to report the same audits in the same order.
    """

    tabular: bool = False
    outcomes: list[RunOutcome] = field(default_factory=list)
    header: list[str] | None = None
    rows: list[list] = field(default_factory=list)

    def add(self, outcome: RunOutcome) -> None:
        self.outcomes.append(outcome)
        if not self.tabular:
            return

        record = outcome.record
        if record is None:
            self.rows.append([f"Run {outcome.run_index}", "failed"])
            return

        if self.header is None:
            self.header = ["Perf", *(metric.label for metric in record.selected_metrics)]
        self.rows.append([
            f"Run {record.run_index}",
            record.overall_score,
            *(metric.display_value for metric in record.selected_metrics),
        ])

    @property
    def records(self) -> list[RunRecord]:
        return [outcome.record for outcome in self.outcomes if outcome.record is not None]

    @property
    def failures(self) -> list[RunOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.ok]

    def to_dataframe(self) -> pd.DataFrame:
        """One row per successful run with the numeric value of each metric."""
        rows = []
        for record in self.records:
            row: dict[str, object] = {"run": record.run_index, "performance_score": record.overall_score}
            for metric in record.selected_metrics:
                row[metric.label] = metric.numeric_value
            rows.append(row)
        return pd.DataFrame(rows)

    def median_row(self) -> list[str] | None:
        """Median score and median metric values across successful runs.

        Only meaningful once at least two runs succeeded.
        """
        records = self.records
        if len(records) < 2:
            return None

        dataframe = self.to_dataframe()
        scores = pd.to_numeric(dataframe["performance_score"], errors="coerce").dropna()
        row = ["Median", f"{scores.median():.2f}" if len(scores) > 0 else "n/a"]
        for metric in records[0].selected_metrics:
            if metric.label not in dataframe.columns:
                row.append("n/a")
                continue
            values = pd.to_numeric(dataframe[metric.label], errors="coerce").dropna()
            median_value = values.median() if len(values) > 0 else None
            row.append(format_numeric_value(median_value, metric.numeric_unit))
        return row

    def render_table(self) -> Table:
        header = self.header or ["Perf"]
        table = Table()
        table.add_column("")
        for title in header:
            table.add_column(title, justify="right")

        width = len(header) + 1
        rows = list(self.rows)
        median = self.median_row()
        if median is not None:
            rows.append(median)
        for row in rows:
            cells = ["n/a" if cell is None else str(cell) for cell in row[:width]]
            cells.extend([""] * (width - len(cells)))
            table.add_row(*cells)
        return table


def render_run_log(record: RunRecord) -> Text:
    """Category scores, then the weighted performance metrics of one run."""
    lines = [f"Lighthouse score (Run {record.run_index}):"]
    lines.append(",\n".join(f"{title}: {score}" for title, score in record.category_scores))
    lines.extend(f"  {metric.title}: {metric.display_value}" for metric in record.selected_metrics)
    return Text("\n".join(lines))


def _print_batch_summary(batch: BatchResult) -> None:
    """Print completed/failed run counts to stderr."""
    total = len(batch.outcomes)
    completed = len(batch.records)
    err_console.print("")
    err_console.print("Summary:")
    err_console.print(f"  Runs completed: {completed}/{total}")
    failures = batch.failures
    if failures:
        failed_labels = ", ".join(f"Run {outcome.run_index}" for outcome in failures)
        err_console.print(f"  Failed runs:    {len(failures)} ({failed_labels})")


def export_batch(batch: BatchResult, export_path: str, url: str) -> str:
    """Write per-run metrics to CSV or structured JSON. Returns the file path."""
    output_path = Path(export_path)
    dataframe = batch.to_dataframe()
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        if output_path.suffix.lower() == ".csv":
            dataframe.to_csv(output_path, index=False)
        else:
            results = dataframe.astype(object).where(pd.notna(dataframe), None).to_dict(orient="records")
            output_data = {
                "metadata": {
                    "generated_at": datetime.now(timezone.utc).isoformat(),
                    "url": url,
                    "runs_requested": len(batch.outcomes),
                    "runs_completed": len(batch.records),
                    "tool_version": __version__,
                },
                "results": results,
                "failures": [
                    {"run": outcome.run_index, "error": outcome.error} for outcome in batch.failures
                ],
            }
            with open(output_path, "w") as fh:
                json.dump(output_data, fh, indent=2, default=str)
    except OSError as exc:
        raise PersistenceError(f"cannot write export {output_path}: {exc}") from exc
    return str(output_path)


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


async def run_batch(config: RunConfig) -> BatchResult:
    """Run every iteration in turn and render the aggregate.

    Iterations never overlap: the next browser is launched only after the
    previous session has closed. A failed iteration is logged and skipped.
    """
    times_label = f"{config.repeat_count} times" if config.repeat_count > 1 else "once"
    err_console.print(f"Preparing to run Lighthouse {times_label} for: {config.url}")
    if config.cookie_pairs:
        cookie_list = ", ".join(f"{name}={value}" for name, value in config.cookie_pairs)
        err_console.print(f" -> With the following cookies: {cookie_list}")
    if config.inject_animation_block:
        err_console.print(" -> With CSS injection to block animations.")
    err_console.print("")

    removed = clean_reports(config.output_dir, config.log_only)
    if removed and config.verbose:
        err_console.print(f"  Removed {len(removed)} report(s) from a previous batch")

    batch = BatchResult(tabular=config.tabular_output)
    async with async_playwright() as playwright:
        for run_index in range(1, config.repeat_count + 1):
            outcome = await execute_run(playwright, config, run_index)
            batch.add(outcome)
            if outcome.record is not None and not config.tabular_output:
                out_console.print("")
                out_console.print(render_run_log(outcome.record))
            if outcome.report_path is not None:
                err_console.print(f"Report saved to {outcome.report_path}")

    if config.tabular_output and batch.rows:
        out_console.print(batch.render_table())

    _print_batch_summary(batch)

    if config.export_path:
        try:
            written = export_batch(batch, config.export_path, config.url)
            err_console.print(f"Results written to: {written}")
        except PersistenceError as exc:
            err_console.print(f"Error: {exc}", style="red")

    return batch


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    try:
        config_path = Path(args.config) if args.config else discover_config_path()
        config = load_config(config_path)
        args = apply_profile(args, config, getattr(args, "profile", None))
        run_config = build_run_config(args)
        batch = asyncio.run(run_batch(run_config))
    except LighthouseRepeatError as exc:
        err_console.print(f"Error: {exc}", style="red")
        sys.exit(1)

    if not batch.records:
        sys.exit(1)


if __name__ == "__main__":
    main()
