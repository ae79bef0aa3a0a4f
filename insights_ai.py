# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "httpx",
#   "pandas",
#   "rich",
# ]
# ///
"""InsightsAI: repeated PageSpeed Insights runs reduced to median reports.

Runs every URL several times per device strategy against the PageSpeed
Insights API, parses the Lighthouse payload into a typed audit model,
and aggregates the repeated runs into one median record per
(url, strategy) pair. Results are rendered as a terminal table plus
markdown/JSON report files, optionally with an AI-written summary.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import math
import os
import re
import sys
import textwrap
import tomllib
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping
from urllib.parse import urlparse

import httpx
import pandas as pd
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeRemainingColumn
from rich.table import Table
from rich.text import Text

__version__ = "1.0.0"

out_console = Console()
err_console = Console(stderr=True)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PSI_API_URL = "https://pagespeedonline.googleapis.com/pagespeedonline/v5/runPagespeed"
OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"

VALID_STRATEGIES = ("desktop", "mobile")

DEFAULT_STRATEGIES = ["desktop", "mobile"]
DEFAULT_CONCURRENCY = 4
DEFAULT_RUNS = 1
DEFAULT_OUTPUT_DIR = "./output"
DEFAULT_CACHE_DIR = "./logs"
DEFAULT_OPENAI_MODEL = "gpt-3.5-turbo"

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0
REQUEST_TIMEOUT = 120.0
SUMMARY_TIMEOUT = 60.0

CONFIG_FILENAMES = ["insights.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "insights-ai",
]

# Lighthouse audit ids for the core metrics
LCP_AUDIT = "largest-contentful-paint"
FCP_AUDIT = "first-contentful-paint"
CLS_AUDIT = "cumulative-layout-shift"
TBT_AUDIT = "total-blocking-time"
SPEED_INDEX_AUDIT = "speed-index"
TTI_AUDIT = "interactive"

SCORE_DISPLAY_MODES = (
    "numeric",
    "binary",
    "manual",
    "informative",
    "notApplicable",
    "error",
    "metricSavings",
)
DEFAULT_SCORE_DISPLAY_MODE = "binary"

DETAILS_TYPES = ("table", "list", "opportunity", "debugdata", "treemap-data")
DEFAULT_DETAILS_TYPE = "table"

HEADING_VALUE_TYPES = ("text", "bytes", "ms", "url", "node")
DEFAULT_HEADING_VALUE_TYPE = "text"

BOUNDING_RECT_FIELDS = ("top", "bottom", "left", "right", "width", "height")

# Web Vitals traffic-light thresholds: (good_limit, poor_limit)
SCORE_THRESHOLDS = (90, 50)
LCP_THRESHOLDS = (2500, 4000)
FCP_THRESHOLDS = (1800, 3000)
CLS_THRESHOLDS = (0.1, 0.25)
TBT_THRESHOLDS = (200, 600)

TRAFFIC_LIGHT_EMOJI = {"green": "🟢", "yellow": "🟡", "red": "🔴"}

MAX_OPPORTUNITIES_IN_REPORT = 10
MAX_DIAGNOSTICS_IN_REPORT = 8
MAX_PASSED_IN_REPORT = 10
MAX_ITEMS_IN_REPORT = 10
MAX_SNIPPET_LENGTH = 100


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class InsightsError(Exception):
    """Base class for all errors reported to the user."""

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.details = details


class ConfigError(InsightsError):
    """Raised when runtime configuration is missing or invalid."""


class ApiError(InsightsError):
    """Raised when an upstream API request fails or returns an unusable response."""


class ValidationError(InsightsError):
    """Raised when a Lighthouse payload lacks the data required to extract it."""


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MeasurementRequest:
    url: str
    strategy: str
    run_index: int


@dataclass(frozen=True)
class Metric:
    """A metric as both display text and number; "n/a"/0 mean no data."""

    display: str
    numeric: float


@dataclass(frozen=True)
class BoundingRect:
    top: float
    bottom: float
    left: float
    right: float
    width: float
    height: float


@dataclass(frozen=True)
class DomElement:
    path: str = ""
    selector: str = ""
    snippet: str = ""
    node_label: str = ""
    bounding_rect: BoundingRect | None = None
    lh_id: str | None = None
    type: str = "node"


@dataclass(frozen=True)
class AuditSource:
    type: str = ""
    value: str = ""


@dataclass(frozen=True)
class AuditItem:
    """One row of an audit's details table. Any field may be absent."""

    url: str | None = None
    wasted_bytes: float | None = None
    wasted_ms: float | None = None
    total_bytes: float | None = None
    node: DomElement | None = None
    source: AuditSource | None = None
    resource_size: float | None = None
    transfer_size: float | None = None
    score: float | None = None
    label: str | None = None
    group_label: str | None = None


@dataclass(frozen=True)
class AuditHeading:
    key: str = ""
    label: str = ""
    value_type: str = DEFAULT_HEADING_VALUE_TYPE


@dataclass(frozen=True)
class AuditSummary:
    wasted_bytes: float | None = None
    wasted_ms: float | None = None


@dataclass(frozen=True)
class AuditDetails:
    type: str = DEFAULT_DETAILS_TYPE
    headings: list[AuditHeading] | None = None
    items: list[AuditItem] = field(default_factory=list)
    overall_savings_ms: float | None = None
    overall_savings_bytes: float | None = None
    summary: AuditSummary | None = None


@dataclass(frozen=True)
class Audit:
    id: str
    title: str
    description: str
    score: float | None
    score_display_mode: str
    display_value: str | None = None
    numeric_value: float | None = None
    numeric_unit: str | None = None
    metric_savings: dict[str, float] | None = None
    details: AuditDetails | None = None
    error_message: str | None = None
    warnings: list[str] | None = None


@dataclass(frozen=True)
class CoreMetrics:
    lcp: float = 0
    fcp: float = 0
    cls: float = 0
    tbt: float = 0
    si: float = 0
    tti: float = 0


@dataclass(frozen=True)
class PsiEnvironment:
    network_user_agent: str = ""
    host_user_agent: str = ""
    benchmark_index: float | None = None


@dataclass(frozen=True)
class ComprehensivePsiData:
    """Structured view of one Lighthouse run.

    Every parsed audit lands in exactly one of ``opportunities``,
    ``diagnostics`` or ``passed_audits``. Optional category scores are
    ``None`` when the category was not measured, never 0.
    """

    url: str
    strategy: str
    performance_score: int
    metrics: CoreMetrics
    opportunities: list[Audit] = field(default_factory=list)
    diagnostics: list[Audit] = field(default_factory=list)
    passed_audits: list[Audit] = field(default_factory=list)
    accessibility_score: int | None = None
    best_practices_score: int | None = None
    seo_score: int | None = None
    lighthouse_version: str = ""
    fetch_time: str = ""
    environment: PsiEnvironment | None = None


@dataclass(frozen=True)
class RunResult:
    url: str
    strategy: str
    run_index: int
    score: int
    lcp: Metric
    fcp: Metric
    cls: Metric
    tbt: Metric
    audit_data: ComprehensivePsiData


@dataclass(frozen=True)
class MedianResult:
    url: str
    strategy: str
    runs: int
    median_score: int
    median_lcp: float
    median_fcp: float
    median_cls: float
    median_tbt: float
    individual_runs: list[RunResult]
    audit_data: ComprehensivePsiData


@dataclass(frozen=True)
class AppConfig:
    """Fully resolved runtime settings, built once at startup."""

    api_key: str
    urls: tuple[str, ...]
    strategies: tuple[str, ...] = tuple(DEFAULT_STRATEGIES)
    concurrency: int = DEFAULT_CONCURRENCY
    runs_per_url: int = DEFAULT_RUNS
    output_dir: Path = Path(DEFAULT_OUTPUT_DIR)
    cache_dir: Path | None = None
    detailed_report: bool = False
    ai_enabled: bool = False
    openai_api_key: str | None = None
    openai_model: str = DEFAULT_OPENAI_MODEL


# ---------------------------------------------------------------------------
# Console helpers
# ---------------------------------------------------------------------------


def _warn(message: str) -> None:
    err_console.print(f"Warning: {message}", style="yellow", markup=False, highlight=False)


def log_error(exc: BaseException) -> None:
    """Print an error, plus any structured details, to stderr."""
    if isinstance(exc, InsightsError):
        err_console.print(f"{type(exc).__name__}: {exc}", style="bold red", markup=False, highlight=False)
        if exc.details is not None:
            err_console.print(
                json.dumps(exc.details, indent=2, default=str),
                style="yellow",
                markup=False,
                highlight=False,
            )
    else:
        err_console.print(f"Error: {exc}", style="bold red", markup=False, highlight=False)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _optional_number(value: Any) -> float | None:
    return value if _is_number(value) else None


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


# ---------------------------------------------------------------------------
# Metric Extraction
# ---------------------------------------------------------------------------


def get_metric_value(audits: Mapping[str, Any], audit_id: str) -> float:
    """Return an audit's numericValue, or 0 when missing or not finite."""
    audit = audits.get(audit_id)
    if not isinstance(audit, Mapping):
        return 0
    value = audit.get("numericValue")
    if _is_number(value) and math.isfinite(value):
        return value
    return 0


def extract_metric(audits: Mapping[str, Any], audit_id: str) -> Metric:
    """Return display text and numeric value, defaulting to "n/a" and 0."""
    audit = audits.get(audit_id)
    display = audit.get("displayValue") if isinstance(audit, Mapping) else None
    return Metric(
        display=display if isinstance(display, str) else "n/a",
        numeric=get_metric_value(audits, audit_id),
    )


def extract_core_metrics(audits: Mapping[str, Any]) -> CoreMetrics:
    return CoreMetrics(
        lcp=get_metric_value(audits, LCP_AUDIT),
        fcp=get_metric_value(audits, FCP_AUDIT),
        cls=get_metric_value(audits, CLS_AUDIT),
        tbt=get_metric_value(audits, TBT_AUDIT),
        si=get_metric_value(audits, SPEED_INDEX_AUDIT),
        tti=get_metric_value(audits, TTI_AUDIT),
    )


# ---------------------------------------------------------------------------
# Audit Parsing
# ---------------------------------------------------------------------------


def extract_comprehensive_data(lighthouse_result: Any, url: str, strategy: str) -> ComprehensivePsiData:
    """Reduce a raw ``lighthouseResult`` object to a ComprehensivePsiData.

    Only two things are required: an ``audits`` mapping and a
    ``categories.performance`` object. Everything else is optional and
    defaulted field by field.

    Raises:
        ValidationError: If either required part is missing.
    """
    if not isinstance(lighthouse_result, Mapping):
        raise ValidationError("Invalid Lighthouse result: missing required audit data")
    audits = lighthouse_result.get("audits")
    categories = lighthouse_result.get("categories")
    performance = categories.get("performance") if isinstance(categories, Mapping) else None
    if not isinstance(audits, Mapping) or not isinstance(performance, Mapping):
        raise ValidationError("Invalid Lighthouse result: missing required audit data")

    performance_score = performance.get("score")
    if not _is_number(performance_score):
        performance_score = 0

    opportunities, diagnostics, passed_audits = categorize_audits(audits)

    return ComprehensivePsiData(
        url=url,
        strategy=strategy,
        performance_score=_round_half_up(performance_score * 100),
        metrics=extract_core_metrics(audits),
        opportunities=opportunities,
        diagnostics=diagnostics,
        passed_audits=passed_audits,
        accessibility_score=_optional_category_score(categories.get("accessibility")),
        best_practices_score=_optional_category_score(categories.get("best-practices")),
        seo_score=_optional_category_score(categories.get("seo")),
        lighthouse_version=_optional_str(lighthouse_result.get("lighthouseVersion")) or "",
        fetch_time=_optional_str(lighthouse_result.get("fetchTime")) or "",
        environment=_parse_environment(lighthouse_result.get("environment")),
    )


def categorize_audits(audits: Mapping[str, Any]) -> tuple[list[Audit], list[Audit], list[Audit]]:
    """Split audits into (opportunities, diagnostics, passed_audits).

    An entry that fails to parse is reported as a warning and left out
    of all three lists; the remaining audits are still categorized.
    """
    opportunities: list[Audit] = []
    diagnostics: list[Audit] = []
    passed_audits: list[Audit] = []

    for audit_id, raw_audit in audits.items():
        try:
            audit = parse_audit(audit_id, raw_audit)
        except ValidationError as exc:
            _warn(f"failed to parse audit {audit_id}: {exc}")
            continue

        if audit.score_display_mode == "metricSavings" and audit.score is not None and audit.score < 1:
            opportunities.append(audit)
        elif audit.score_display_mode == "informative":
            diagnostics.append(audit)
        elif audit.score == 1 or audit.score is None:
            passed_audits.append(audit)
        else:
            # Failed audits that are not opportunities
            diagnostics.append(audit)

    return opportunities, diagnostics, passed_audits


def parse_audit(audit_id: str, raw_audit: Any) -> Audit:
    """Parse one raw audit object; only a non-object raises."""
    if not isinstance(raw_audit, Mapping):
        raise ValidationError(f"Invalid audit object for {audit_id}")

    title = raw_audit.get("title")
    description = raw_audit.get("description")
    warnings = raw_audit.get("warnings")

    return Audit(
        id=audit_id,
        title=title if isinstance(title, str) else f"Audit {audit_id}",
        description=description if isinstance(description, str) else "",
        score=_optional_number(raw_audit.get("score")),
        score_display_mode=_parse_score_display_mode(raw_audit.get("scoreDisplayMode")),
        display_value=_optional_str(raw_audit.get("displayValue")),
        numeric_value=_optional_number(raw_audit.get("numericValue")),
        numeric_unit=_optional_str(raw_audit.get("numericUnit")),
        metric_savings=_parse_metric_savings(raw_audit.get("metricSavings")),
        details=_parse_audit_details(raw_audit.get("details")),
        error_message=_optional_str(raw_audit.get("errorMessage")),
        warnings=[w for w in warnings if isinstance(w, str)] if isinstance(warnings, list) else None,
    )


def _parse_score_display_mode(value: Any) -> str:
    return value if value in SCORE_DISPLAY_MODES else DEFAULT_SCORE_DISPLAY_MODE


def _parse_metric_savings(savings: Any) -> dict[str, float] | None:
    if not isinstance(savings, Mapping):
        return None
    result = {key: value for key, value in savings.items() if _is_number(value)}
    return result or None


def _parse_audit_details(details: Any) -> AuditDetails | None:
    if not isinstance(details, Mapping):
        return None
    details_type = details.get("type")
    return AuditDetails(
        type=details_type if details_type in DETAILS_TYPES else DEFAULT_DETAILS_TYPE,
        headings=_parse_headings(details.get("headings")),
        items=_parse_audit_items(details.get("items")),
        overall_savings_ms=_optional_number(details.get("overallSavingsMs")),
        overall_savings_bytes=_optional_number(details.get("overallSavingsBytes")),
        summary=_parse_summary(details.get("summary")),
    )


def _parse_headings(headings: Any) -> list[AuditHeading] | None:
    if not isinstance(headings, list):
        return None
    parsed = []
    for heading in headings:
        if not isinstance(heading, Mapping):
            continue
        value_type = heading.get("valueType")
        parsed.append(AuditHeading(
            key=_optional_str(heading.get("key")) or "",
            label=_optional_str(heading.get("label")) or "",
            value_type=value_type if value_type in HEADING_VALUE_TYPES else DEFAULT_HEADING_VALUE_TYPE,
        ))
    return parsed


def _parse_audit_items(items: Any) -> list[AuditItem]:
    if not isinstance(items, list):
        return []
    return [_parse_audit_item(item) for item in items]


def _parse_audit_item(item: Any) -> AuditItem:
    if not isinstance(item, Mapping):
        return AuditItem()
    return AuditItem(
        url=_optional_str(item.get("url")),
        wasted_bytes=_optional_number(item.get("wastedBytes")),
        wasted_ms=_optional_number(item.get("wastedMs")),
        total_bytes=_optional_number(item.get("totalBytes")),
        node=_parse_dom_element(item.get("node")),
        source=_parse_source(item.get("source")),
        resource_size=_optional_number(item.get("resourceSize")),
        transfer_size=_optional_number(item.get("transferSize")),
        score=_optional_number(item.get("score")),
        label=_optional_str(item.get("label")),
        group_label=_optional_str(item.get("groupLabel")),
    )


def _parse_dom_element(node: Any) -> DomElement | None:
    if not isinstance(node, Mapping) or node.get("type") != "node":
        return None
    return DomElement(
        path=_optional_str(node.get("path")) or "",
        selector=_optional_str(node.get("selector")) or "",
        snippet=_optional_str(node.get("snippet")) or "",
        node_label=_optional_str(node.get("nodeLabel")) or "",
        bounding_rect=_parse_bounding_rect(node.get("boundingRect")),
        lh_id=_optional_str(node.get("lhId")),
    )


def _parse_bounding_rect(rect: Any) -> BoundingRect | None:
    # All six sides or nothing
    if not isinstance(rect, Mapping):
        return None
    if not all(_is_number(rect.get(name)) for name in BOUNDING_RECT_FIELDS):
        return None
    return BoundingRect(**{name: rect[name] for name in BOUNDING_RECT_FIELDS})


def _parse_source(source: Any) -> AuditSource | None:
    if not isinstance(source, Mapping):
        return None
    return AuditSource(
        type=_optional_str(source.get("type")) or "",
        value=_optional_str(source.get("value")) or "",
    )


def _parse_summary(summary: Any) -> AuditSummary | None:
    if not isinstance(summary, Mapping):
        return None
    return AuditSummary(
        wasted_bytes=_optional_number(summary.get("wastedBytes")),
        wasted_ms=_optional_number(summary.get("wastedMs")),
    )


def _parse_environment(environment: Any) -> PsiEnvironment | None:
    if not isinstance(environment, Mapping):
        return None
    return PsiEnvironment(
        network_user_agent=_optional_str(environment.get("networkUserAgent")) or "",
        host_user_agent=_optional_str(environment.get("hostUserAgent")) or "",
        benchmark_index=_optional_number(environment.get("benchmarkIndex")),
    )


def _optional_category_score(category: Any) -> int | None:
    if not isinstance(category, Mapping):
        return None
    score = category.get("score")
    if not _is_number(score):
        return None
    return _round_half_up(score * 100)


# ---------------------------------------------------------------------------
# Raw Report Cache
# ---------------------------------------------------------------------------


def _sanitize_url(url: str) -> str:
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
    except ValueError:
        return re.sub(r"[^a-zA-Z0-9\-._~=&]", "_", url)
    if hostname:
        sanitized = f"{hostname}{parsed.path}"
        if parsed.query:
            sanitized += f"?{parsed.query}"
        sanitized = re.sub(r"/$", "", sanitized)
    else:
        sanitized = url
    return re.sub(r"[^a-zA-Z0-9\-._~=&]", "_", sanitized)


def get_report_filename(url: str, strategy: str) -> str:
    """Cache filename for one (strategy, url) pair."""
    return f"psi-raw-{strategy}-{_sanitize_url(url)}.json"


def read_raw_report(cache_dir: Path | str, filename: str) -> dict | None:
    """Read a cached API response. Any failure counts as a cache miss."""
    file_path = Path(cache_dir) / filename
    if not file_path.is_file():
        return None
    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        _warn(f"failed to read cached report {file_path}: {exc}")
        return None
    if not isinstance(data, dict):
        _warn(f"ignoring cached report {file_path}: not a JSON object")
        return None
    return data


def save_raw_report(cache_dir: Path | str, filename: str, data: dict) -> None:
    """Write an API response to the cache. Failures are warnings only."""
    file_path = Path(cache_dir) / filename
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    except (OSError, TypeError, ValueError) as exc:
        _warn(f"failed to write cached report {file_path}: {exc}")


# ---------------------------------------------------------------------------
# API Client
# ---------------------------------------------------------------------------


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code <= 599


def _error_detail(response: httpx.Response) -> str:
    try:
        error_body = response.json()
        return error_body.get("error", {}).get("message", response.text[:200])
    except (ValueError, AttributeError):
        return response.text[:200]


def _decode_psi_payload(response: httpx.Response, url: str, strategy: str) -> dict:
    try:
        payload = response.json()
    except ValueError as exc:
        raise ApiError(f"Invalid JSON from PageSpeed API for {url} ({strategy})") from exc

    if not isinstance(payload, dict):
        raise ApiError(f"Unexpected PageSpeed API payload for {url} ({strategy})")

    if "error" in payload:
        error = payload["error"]
        message = error.get("message", "Unknown API error") if isinstance(error, dict) else str(error)
        raise ApiError(f"PageSpeed API error for {url} ({strategy}): {message}", details=error)

    if not isinstance(payload.get("lighthouseResult"), dict):
        raise ApiError(f"No lighthouseResult in PageSpeed API response for {url} ({strategy})")

    return payload


async def _request_psi(
    url: str,
    strategy: str,
    api_key: str | None,
    client: httpx.AsyncClient,
    retry_base_delay: float,
) -> dict:
    params = {"url": url, "strategy": strategy}
    if api_key:
        params["key"] = api_key

    last_error: Exception | None = None
    for attempt in range(1, MAX_RETRIES + 1):
        try:
            response = await client.get(PSI_API_URL, params=params, timeout=REQUEST_TIMEOUT)
        except (httpx.RequestError, OSError) as exc:
            last_error = exc
        else:
            if 200 <= response.status_code < 300:
                return _decode_psi_payload(response, url, strategy)
            if not _is_retryable_status(response.status_code):
                raise ApiError(
                    f"HTTP {response.status_code} for {url} ({strategy}): {_error_detail(response)}"
                )
            last_error = ApiError(f"HTTP {response.status_code} for {url} ({strategy})")

        if attempt < MAX_RETRIES:
            await asyncio.sleep(attempt * retry_base_delay)

    raise ApiError(
        f"Failed after {MAX_RETRIES} attempts for {url} ({strategy}): {last_error}",
        details=str(last_error),
    ) from last_error


async def fetch_psi_result(
    url: str,
    strategy: str,
    api_key: str | None,
    client: httpx.AsyncClient,
    cache_dir: Path | str | None = None,
    retry_base_delay: float = RETRY_BASE_DELAY,
) -> dict:
    """Fetch the raw PageSpeed Insights response for one URL + strategy.

    Transport errors and 429/5xx responses are retried up to MAX_RETRIES
    attempts in total, sleeping ``attempt * retry_base_delay`` between
    them. Malformed responses fail immediately.

    When ``cache_dir`` is set, a cached response is returned without
    touching the network, and fresh responses are written back to it.

    Raises:
        ApiError: On exhausted retries or a malformed response.
    """
    if cache_dir is None:
        return await _request_psi(url, strategy, api_key, client, retry_base_delay)

    filename = get_report_filename(url, strategy)
    cached = read_raw_report(cache_dir, filename)
    if cached is not None:
        err_console.print(f"[dev] Existing report found: {filename}", style="dim", markup=False, highlight=False)
        return cached

    err_console.print(f"[dev] Existing report missing: {filename}", style="dim", markup=False, highlight=False)
    data = await _request_psi(url, strategy, api_key, client, retry_base_delay)
    save_raw_report(cache_dir, filename, data)
    return data


async def measure_run(
    request: MeasurementRequest,
    api_key: str | None,
    client: httpx.AsyncClient,
    cache_dir: Path | str | None = None,
) -> RunResult:
    """Fetch and parse a single run."""
    data = await fetch_psi_result(request.url, request.strategy, api_key, client, cache_dir=cache_dir)
    lighthouse = data.get("lighthouseResult")
    try:
        audit_data = extract_comprehensive_data(lighthouse, request.url, request.strategy)
    except ValidationError as exc:
        raise ValidationError(f"{exc} for {request.url} ({request.strategy})", details=exc.details) from exc

    audits = lighthouse["audits"]
    return RunResult(
        url=request.url,
        strategy=request.strategy,
        run_index=request.run_index,
        score=audit_data.performance_score,
        lcp=extract_metric(audits, LCP_AUDIT),
        fcp=extract_metric(audits, FCP_AUDIT),
        cls=extract_metric(audits, CLS_AUDIT),
        tbt=extract_metric(audits, TBT_AUDIT),
        audit_data=audit_data,
    )


# ---------------------------------------------------------------------------
# Batch Processing
# ---------------------------------------------------------------------------


def build_work_items(urls: Iterable[str], strategies: Iterable[str], runs_per_url: int) -> list[MeasurementRequest]:
    strategies = list(strategies)
    return [
        MeasurementRequest(url=url, strategy=strategy, run_index=run_index)
        for url in urls
        for strategy in strategies
        for run_index in range(1, runs_per_url + 1)
    ]


async def process_runs(
    urls: Iterable[str],
    strategies: Iterable[str],
    runs_per_url: int,
    concurrency: int,
    api_key: str | None,
    on_progress: Callable[[int, int], None] | None = None,
    client: httpx.AsyncClient | None = None,
    cache_dir: Path | str | None = None,
) -> list[RunResult]:
    """Run every (url, strategy, run) item with at most ``concurrency`` in flight.

    ``on_progress(completed, total)`` fires once per finished item, in
    completion order. The first failure stops new items from starting;
    items already in flight are allowed to finish before the failure is
    raised. Results are returned in submission order.
    """
    if concurrency < 1:
        raise ConfigError("concurrency must be at least 1")

    work_items = build_work_items(urls, strategies, runs_per_url)
    total = len(work_items)
    completed = 0
    first_error: BaseException | None = None
    semaphore = asyncio.Semaphore(concurrency)

    async def run_single(request: MeasurementRequest, http_client: httpx.AsyncClient) -> RunResult | None:
        nonlocal completed, first_error
        async with semaphore:
            if first_error is not None:
                return None
            try:
                result = await measure_run(request, api_key, http_client, cache_dir=cache_dir)
            except Exception as exc:
                if first_error is None:
                    first_error = exc
                return None

        completed += 1
        if on_progress is not None:
            on_progress(completed, total)
        return result

    async def run_all(http_client: httpx.AsyncClient) -> list[RunResult | None]:
        return await asyncio.gather(*(run_single(request, http_client) for request in work_items))

    if client is None:
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as own_client:
            outcomes = await run_all(own_client)
    else:
        outcomes = await run_all(client)

    if first_error is not None:
        raise first_error
    return [outcome for outcome in outcomes if outcome is not None]


async def execute_runs(
    config: AppConfig,
    on_progress: Callable[[int, int], None] | None = None,
    client: httpx.AsyncClient | None = None,
) -> list[MedianResult]:
    """Run the configured batch and reduce it to one median record per pair."""
    results = await process_runs(
        urls=config.urls,
        strategies=config.strategies,
        runs_per_url=config.runs_per_url,
        concurrency=config.concurrency,
        api_key=config.api_key,
        on_progress=on_progress,
        client=client,
        cache_dir=config.cache_dir,
    )
    return aggregate_runs(results)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def median(values: Iterable[float]) -> float:
    """Median of a numeric series; even lengths average the two middle values."""
    series = pd.Series(list(values), dtype="float64")
    if series.empty:
        raise ValueError("median() of an empty series")
    return float(series.median())


def aggregate_runs(results: list[RunResult]) -> list[MedianResult]:
    """Aggregate run results into median values per (url, strategy) pair.

    Groups keep the order in which their key was first seen. Each metric
    gets its own median; the detailed audit data comes from a single
    representative run, the one at the middle index when the group is
    sorted by score.
    """
    if not results:
        return []

    dataframe = pd.DataFrame([
        {
            "position": position,
            "url": result.url,
            "strategy": result.strategy,
            "score": result.score,
            "lcp": result.lcp.numeric,
            "fcp": result.fcp.numeric,
            "cls": result.cls.numeric,
            "tbt": result.tbt.numeric,
        }
        for position, result in enumerate(results)
    ])

    aggregated: list[MedianResult] = []
    for (url, strategy), group in dataframe.groupby(["url", "strategy"], sort=False):
        runs = [results[position] for position in group["position"]]
        representative = sorted(runs, key=lambda run: run.score)[len(runs) // 2]

        aggregated.append(MedianResult(
            url=url,
            strategy=strategy,
            runs=len(runs),
            median_score=_round_half_up(median(group["score"])),
            median_lcp=median(group["lcp"]),
            median_fcp=median(group["fcp"]),
            median_cls=median(group["cls"]),
            median_tbt=median(group["tbt"]),
            individual_runs=runs,
            audit_data=representative.audit_data,
        ))

    return aggregated


# ---------------------------------------------------------------------------
# AI Summary
# ---------------------------------------------------------------------------


def condense_psi_data(result: MedianResult) -> dict:
    """Reduce a median result to the fields worth sending to a language model."""
    audit_data = result.audit_data

    def brief(audit: Audit) -> dict:
        return {
            "id": audit.id,
            "title": audit.title,
            "displayValue": audit.display_value,
            "score": audit.score,
            "metricSavings": audit.metric_savings,
        }

    return {
        "url": result.url,
        "strategy": result.strategy,
        "runs": result.runs,
        "performanceScore": result.median_score,
        "metrics": {
            "lcp": result.median_lcp,
            "fcp": result.median_fcp,
            "cls": result.median_cls,
            "tbt": result.median_tbt,
            "si": audit_data.metrics.si,
        },
        "categoryScores": {
            "accessibility": audit_data.accessibility_score,
            "bestPractices": audit_data.best_practices_score,
            "seo": audit_data.seo_score,
        },
        "opportunities": [brief(a) for a in audit_data.opportunities[:MAX_OPPORTUNITIES_IN_REPORT]],
        "diagnostics": [brief(a) for a in audit_data.diagnostics[:MAX_DIAGNOSTICS_IN_REPORT]],
    }


def build_summary_prompt(psi_data: dict) -> str:
    return textwrap.dedent("""\
        Analyze the following Lighthouse JSON data and provide a summary for a senior web developer.
        Respond in markdown. Use the header "Performance Analysis for <url> (<strategy>)" at level 3,
        followed by three level-4 sections:
        1. Overview: a one-paragraph summary of the page's performance.
        2. Key Issues: a bulleted list of the 3-5 most critical bottlenecks (e.g. LCP, TBT, CLS) with their values.
        3. Recommendations: a bulleted list of actionable, developer-focused fixes for those issues.

        Lighthouse Data:
        """) + json.dumps(psi_data)


def extract_summary(payload: Any) -> str | None:
    """Return ``choices[0].message.content`` when it is a non-blank string."""
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str) or not content.strip():
        return None
    return content


async def generate_report_summary(
    psi_data: dict,
    api_key: str | None,
    client: httpx.AsyncClient,
    model: str = DEFAULT_OPENAI_MODEL,
) -> str:
    """Ask a chat-completion model for a markdown summary of one result.

    Raises:
        ApiError: On a missing key, transport failure, HTTP error, or a
            response without message content.
    """
    if not api_key:
        raise ApiError("Missing OpenAI API key")

    body = {
        "model": model,
        "messages": [{"role": "user", "content": build_summary_prompt(psi_data)}],
        "temperature": 0.3,
    }
    try:
        response = await client.post(
            OPENAI_API_URL,
            json=body,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=SUMMARY_TIMEOUT,
        )
    except (httpx.RequestError, OSError) as exc:
        raise ApiError("Network error while contacting OpenAI", details=str(exc)) from exc

    if not 200 <= response.status_code < 300:
        raise ApiError(f"OpenAI API error ({response.status_code})", details=response.text)

    try:
        payload = response.json()
    except ValueError as exc:
        raise ApiError("Invalid JSON from OpenAI API") from exc

    summary = extract_summary(payload)
    if summary is None:
        raise ApiError("Unexpected OpenAI API response shape")
    return summary.strip()


async def _collect_ai_summaries(
    config: AppConfig,
    median_results: list[MedianResult],
    client: httpx.AsyncClient,
) -> str:
    sections = []
    for result in median_results:
        err_console.print(f"Summarizing {result.url} ({result.strategy})...", markup=False, highlight=False)
        try:
            summary = await generate_report_summary(
                condense_psi_data(result),
                config.openai_api_key,
                client,
                model=config.openai_model,
            )
        except ApiError as exc:
            _warn(f"AI summary failed for {result.url} ({result.strategy}): {exc}")
            continue
        sections.append(summary)
    return "\n\n".join(sections)


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------


def _traffic_light(value: float, thresholds: tuple[float, float], higher_is_better: bool = False) -> str:
    good, poor = thresholds
    if higher_is_better:
        return "green" if value >= good else ("yellow" if value >= poor else "red")
    return "green" if value <= good else ("yellow" if value <= poor else "red")


def score_color(score: float) -> str:
    return _traffic_light(score, SCORE_THRESHOLDS, higher_is_better=True)


def lcp_color(lcp: float) -> str:
    return _traffic_light(lcp, LCP_THRESHOLDS)


def fcp_color(fcp: float) -> str:
    return _traffic_light(fcp, FCP_THRESHOLDS)


def cls_color(cls: float) -> str:
    return _traffic_light(cls, CLS_THRESHOLDS)


def tbt_color(tbt: float) -> str:
    return _traffic_light(tbt, TBT_THRESHOLDS)


def score_emoji(score: float) -> str:
    return TRAFFIC_LIGHT_EMOJI[score_color(score)]


def lcp_emoji(lcp: float) -> str:
    return TRAFFIC_LIGHT_EMOJI[lcp_color(lcp)]


def fcp_emoji(fcp: float) -> str:
    return TRAFFIC_LIGHT_EMOJI[fcp_color(fcp)]


def cls_emoji(cls: float) -> str:
    return TRAFFIC_LIGHT_EMOJI[cls_color(cls)]


def tbt_emoji(tbt: float) -> str:
    return TRAFFIC_LIGHT_EMOJI[tbt_color(tbt)]


def format_metric(value: float) -> str:
    """Milliseconds as "<n> ms"; exactly 0 is the no-data sentinel."""
    if value == 0:
        return "n/a"
    return f"{_round_half_up(value)} ms"


def format_cls(value: float) -> str:
    return f"{value:.3f}"


def format_bytes(num_bytes: float) -> str:
    if num_bytes <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    exponent = max(0, min(int(math.log(num_bytes, 1024)), len(units) - 1))
    value = round(num_bytes / 1024**exponent, 2)
    return f"{value:g} {units[exponent]}"


def format_human_time(ms: float) -> str:
    """Format milliseconds as ms, s or min depending on magnitude."""
    if ms == 0:
        return "n/a"
    rounded = _round_half_up(ms)
    if rounded < 1000:
        return f"{rounded}ms"
    if rounded < 60000:
        seconds = rounded / 1000
        if abs(seconds - round(seconds)) < 0.05:
            return f"{round(seconds)}s"
        return f"{seconds:.1f}s"
    minutes = rounded / 60000
    if abs(minutes - round(minutes)) < 0.05:
        return f"{round(minutes)}min"
    return f"{minutes:.1f}min"


def format_results_table(median_results: list[MedianResult]) -> Table:
    """Render median results as a colour-coded rich table."""
    table = Table(title="Final Results (Medians)", header_style="bold bright_black")
    table.add_column("URL", justify="left", overflow="fold")
    for heading in ("Strategy", "Runs"):
        table.add_column(heading, justify="center")
    for heading in ("Score", "LCP", "FCP", "CLS", "TBT"):
        table.add_column(heading, justify="right")

    for result in median_results:
        table.add_row(
            result.url,
            result.strategy,
            str(result.runs),
            Text(str(result.median_score), style=score_color(result.median_score)),
            Text(format_metric(result.median_lcp), style=lcp_color(result.median_lcp)),
            Text(format_metric(result.median_fcp), style=fcp_color(result.median_fcp)),
            Text(format_cls(result.median_cls), style=cls_color(result.median_cls)),
            Text(format_metric(result.median_tbt), style=tbt_color(result.median_tbt)),
        )
    return table


def format_runs_table(result: MedianResult) -> Table:
    """Per-run breakdown for a single (url, strategy) pair."""
    table = Table(title=f"{result.url} ({result.strategy})", header_style="bold bright_black")
    for heading in ("Run", "Score", "LCP", "FCP", "CLS", "TBT"):
        table.add_column(heading, justify="right")
    for run in result.individual_runs:
        table.add_row(
            str(run.run_index),
            Text(str(run.score), style=score_color(run.score)),
            run.lcp.display,
            run.fcp.display,
            run.cls.display,
            run.tbt.display,
        )
    return table


# ---------------------------------------------------------------------------
# Markdown Report
# ---------------------------------------------------------------------------


def build_markdown_report(median_results: list[MedianResult], subheader: str, run_info: str) -> str:
    lines = [
        "# InsightsAI Analysis",
        "",
        subheader,
        run_info,
        "",
        "## Legend",
        "",
        "- 🟢 Good: Performance meets or exceeds recommended thresholds",
        "- 🟡 Needs Improvement: Performance is below recommended thresholds but not critical",
        "- 🔴 Poor: Performance is significantly below recommended thresholds",
        "",
        "## Final Results (Medians)",
        "",
        "| URL | Strategy | Runs | Score | LCP | FCP | CLS | TBT |",
        "| :-- | :------: | :--: | ----: | --: | --: | --: | --: |",
    ]
    for r in median_results:
        lines.append(
            f"| {r.url} | {r.strategy} | {r.runs} "
            f"| {score_emoji(r.median_score)} {r.median_score} "
            f"| {lcp_emoji(r.median_lcp)} {format_metric(r.median_lcp)} "
            f"| {fcp_emoji(r.median_fcp)} {format_metric(r.median_fcp)} "
            f"| {cls_emoji(r.median_cls)} {format_cls(r.median_cls)} "
            f"| {tbt_emoji(r.median_tbt)} {format_metric(r.median_tbt)} |"
        )
    return "\n".join(lines) + "\n"


def build_comprehensive_markdown_report(median_results: list[MedianResult], subheader: str, run_info: str) -> str:
    """Basic report plus opportunities, diagnostics and passed audits per result."""
    content = build_markdown_report(median_results, subheader, run_info)
    for result in median_results:
        content += f"\n\n## Detailed Analysis: {result.url} ({result.strategy})\n\n"
        content += _build_opportunities_section(result.audit_data.opportunities)
        content += _build_diagnostics_section(result.audit_data.diagnostics)
        content += _build_passed_audits_section(result.audit_data.passed_audits)
    return content


def append_ai_summary(markdown: str, summary: str) -> str:
    if not summary.strip():
        return markdown
    return f"{markdown}\n\n## AI Summary\n\n{summary}\n"


def _build_opportunities_section(opportunities: list[Audit]) -> str:
    if not opportunities:
        return "### 🟢 Performance Opportunities\n\nNo significant optimization opportunities identified.\n\n"

    section = "### ⚡ Performance Opportunities\n\n"
    for opportunity in opportunities[:MAX_OPPORTUNITIES_IN_REPORT]:
        section += f"#### {opportunity.title}\n{opportunity.description}\n\n"
        if opportunity.display_value:
            section += f"**Potential savings:** {opportunity.display_value}\n\n"
        if opportunity.metric_savings:
            savings = ", ".join(f"{metric}: {value}ms" for metric, value in opportunity.metric_savings.items())
            section += f"**Metric improvements:** {savings}\n\n"
        if opportunity.details and opportunity.details.items:
            section += _build_audit_items(opportunity.details.items)
        section += "\n---\n\n"
    return section


def _build_diagnostics_section(diagnostics: list[Audit]) -> str:
    if not diagnostics:
        return "### 🔍 Diagnostics\n\nNo significant diagnostic issues found.\n\n"

    section = "### 🔍 Diagnostics\n\n"
    for diagnostic in diagnostics[:MAX_DIAGNOSTICS_IN_REPORT]:
        section += f"#### {diagnostic.title}\n{diagnostic.description}\n\n"
        if diagnostic.display_value:
            section += f"**Value:** {diagnostic.display_value}\n\n"
        if diagnostic.details and diagnostic.details.items:
            section += _build_audit_items(diagnostic.details.items)
        section += "\n---\n\n"
    return section


def _build_passed_audits_section(passed_audits: list[Audit]) -> str:
    if not passed_audits:
        return ""
    section = "### ✅ Passed Audits\n\nThe following performance checks passed successfully:\n\n"
    for audit in passed_audits[:MAX_PASSED_IN_REPORT]:
        section += f"- **{audit.title}**"
        if audit.display_value:
            section += f" ({audit.display_value})"
        section += "\n"
    return section + "\n"


def _build_audit_items(items: list[AuditItem]) -> str:
    """Pick a resource table, element list or plain list based on the item fields."""
    has_urls = any(item.url for item in items)
    has_nodes = any(item.node for item in items)
    has_bytes = any(item.wasted_bytes or item.total_bytes for item in items)
    has_ms = any(item.wasted_ms for item in items)

    if has_urls and (has_bytes or has_ms):
        return _build_resource_table(items)
    if has_nodes:
        return _build_element_list(items)
    return _build_simple_list(items)


def _build_resource_table(items: list[AuditItem]) -> str:
    table = "| Resource | Size | Potential Savings |\n| :-- | --: | --: |\n"
    for item in items[:MAX_ITEMS_IN_REPORT]:
        if item.url:
            resource = urlparse(item.url).path or item.url
        else:
            resource = "Unknown resource"
        size = format_bytes(item.total_bytes) if item.total_bytes else "n/a"
        if item.wasted_bytes:
            savings = format_bytes(item.wasted_bytes)
        elif item.wasted_ms:
            savings = f"{_round_half_up(item.wasted_ms)}ms"
        else:
            savings = "n/a"
        table += f"| `{resource}` | {size} | {savings} |\n"
    return table + "\n"


def _build_element_list(items: list[AuditItem]) -> str:
    lines = []
    for item in items[:MAX_ITEMS_IN_REPORT]:
        if item.node is None:
            continue
        lines.append(f"- **Element:** `{item.node.selector}`")
        snippet = item.node.snippet
        if snippet:
            ellipsis = "..." if len(snippet) > MAX_SNIPPET_LENGTH else ""
            lines.append(f"  - **Code:** `{snippet[:MAX_SNIPPET_LENGTH]}{ellipsis}`")
        if item.score is not None:
            lines.append(f"  - **Impact:** {item.score}")
    return "\n".join(lines) + "\n\n" if lines else "\n"


def _build_simple_list(items: list[AuditItem]) -> str:
    lines = []
    for item in items[:MAX_ITEMS_IN_REPORT]:
        if item.label:
            lines.append(f"- {item.label}")
        elif item.url:
            lines.append(f"- {item.url}")
    return "\n".join(lines) + "\n\n" if lines else "\n"


# ---------------------------------------------------------------------------
# Output Files
# ---------------------------------------------------------------------------


def output_json(median_results: list[MedianResult], output_path: Path, runs_per_url: int) -> str:
    """Write median results to structured JSON with metadata. Returns the file path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_data = {
        "metadata": {
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "total_urls": len({r.url for r in median_results}),
            "strategies": sorted({r.strategy for r in median_results}),
            "runs_per_url": runs_per_url,
            "aggregation": "median",
            "tool_version": __version__,
        },
        "results": [asdict(r) for r in median_results],
    }
    with open(output_path, "w", encoding="utf-8") as fh:
        json.dump(output_data, fh, indent=2, default=str)
    return str(output_path)


def write_reports(
    config: AppConfig,
    median_results: list[MedianResult],
    subheader: str,
    run_info: str,
    started_at: datetime,
    ai_summary: str = "",
) -> list[str]:
    """Write the markdown and JSON reports. Returns the written paths."""
    timestamp = started_at.strftime("%Y-%m-%dT%H-%M-%S")
    config.output_dir.mkdir(parents=True, exist_ok=True)

    if config.detailed_report:
        markdown = build_comprehensive_markdown_report(median_results, subheader, run_info)
    else:
        markdown = build_markdown_report(median_results, subheader, run_info)
    markdown = append_ai_summary(markdown, ai_summary)

    markdown_path = config.output_dir / f"psi-report-{timestamp}.md"
    markdown_path.write_text(markdown, encoding="utf-8")
    json_path = output_json(median_results, config.output_dir / f"psi-report-{timestamp}.json", config.runs_per_url)

    return [str(markdown_path), json_path]


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
        raise ConfigError(f"Malformed config file {config_path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {config_path}: {exc}") from exc


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
            raise ConfigError(f"Profile '{profile_name}' not found in config. Available: {available}")
        profile = profiles[profile_name]

    # Map config keys to argparse dest names
    config_key_map = {
        "api_key": "api_key",
        "urls": "config_urls",
        "urls_file": "file",
        "strategies": "strategies",
        "concurrency": "concurrency",
        "runs": "runs",
        "output_dir": "output_dir",
        "cache_dir": "cache_dir",
        "dev_cache": "dev_cache",
        "detailed": "detailed",
        "ai_summary": "ai_summary",
        "openai_model": "openai_model",
    }

    cli_explicit = explicit_args(args)

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue  # CLI flag takes priority
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    return args


def validate_url(url: str) -> str | None:
    """Validate and normalize a URL. Returns the URL or None if invalid."""
    url = url.strip()
    if not url or url.startswith("#"):
        return None

    if not url.startswith(("http://", "https://")):
        url = "https://" + url

    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    if not parsed.netloc or "." not in parsed.netloc:
        return None
    return url


def load_urls(url_args: list[str], file_path: str | None, config_urls: list[str] | None = None) -> list[str]:
    """Collect URLs from args, a URL file, or the config list. Returns a validated list."""
    raw_urls: list[str] = []

    if url_args:
        raw_urls.extend(url_args)
    elif file_path:
        path = Path(file_path)
        if not path.is_file():
            raise ConfigError(f"URL file not found: {file_path}")
        raw_urls.extend(path.read_text(encoding="utf-8").splitlines())
    elif config_urls:
        raw_urls.extend(str(u) for u in config_urls)

    seen: set[str] = set()
    validated: list[str] = []
    for raw in raw_urls:
        cleaned = validate_url(raw)
        if cleaned:
            if cleaned not in seen:
                seen.add(cleaned)
                validated.append(cleaned)
        elif raw.strip() and not raw.strip().startswith("#"):
            _warn(f"skipping invalid URL: {raw.strip()}")

    if not validated:
        raise ConfigError("No valid URLs provided.")
    return validated


def parse_strategies(value: str | Iterable[str] | None) -> tuple[str, ...]:
    if value is None:
        return tuple(DEFAULT_STRATEGIES)
    items = value.split(",") if isinstance(value, str) else list(value)
    strategies = tuple(dict.fromkeys(str(s).strip() for s in items if str(s).strip()))
    invalid = [s for s in strategies if s not in VALID_STRATEGIES]
    if invalid or not strategies:
        raise ConfigError(
            f"Invalid strategies: {', '.join(invalid) or '(none)'}. Use: {', '.join(VALID_STRATEGIES)}"
        )
    return strategies


def resolve_app_config(args: argparse.Namespace) -> AppConfig:
    """Build the AppConfig from merged args and the environment.

    The environment is only consulted here; every component downstream
    receives the resulting AppConfig.

    Raises:
        ConfigError: If the API key, URLs, strategies, concurrency or
            runs are missing or invalid.
    """
    api_key = getattr(args, "api_key", None) or os.environ.get("PSI_KEY") or os.environ.get("PAGESPEED_API_KEY")
    if not api_key:
        raise ConfigError("Missing PageSpeed API key. Pass --api-key or set PSI_KEY.")

    urls = load_urls(
        getattr(args, "urls", None) or [],
        getattr(args, "file", None),
        getattr(args, "config_urls", None),
    )
    strategies = parse_strategies(getattr(args, "strategies", None))

    concurrency = int(getattr(args, "concurrency", DEFAULT_CONCURRENCY))
    if concurrency < 1:
        raise ConfigError("--concurrency must be at least 1")
    runs = int(getattr(args, "runs", DEFAULT_RUNS))
    if runs < 1:
        raise ConfigError("--runs must be at least 1")

    cache_dir = None
    if getattr(args, "dev_cache", False):
        cache_dir = Path(getattr(args, "cache_dir", None) or DEFAULT_CACHE_DIR)

    openai_api_key = os.environ.get("OPENAI_API_KEY")
    ai_enabled = bool(getattr(args, "ai_summary", False))
    if ai_enabled and not openai_api_key:
        _warn("AI summaries are enabled, but OPENAI_API_KEY is missing. Skipping summaries.")
        ai_enabled = False

    return AppConfig(
        api_key=api_key,
        urls=tuple(urls),
        strategies=strategies,
        concurrency=concurrency,
        runs_per_url=runs,
        output_dir=Path(getattr(args, "output_dir", None) or DEFAULT_OUTPUT_DIR),
        cache_dir=cache_dir,
        detailed_report=bool(getattr(args, "detailed", False)),
        ai_enabled=ai_enabled,
        openai_api_key=openai_api_key,
        openai_model=getattr(args, "openai_model", None) or DEFAULT_OPENAI_MODEL,
    )


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


EXPLICIT_MARKER_PREFIX = "_explicit_"


def mark_explicit(namespace: argparse.Namespace, dest: str) -> None:
    # Subparsers copy their namespace onto the parent; per-flag attributes survive the copy.
    setattr(namespace, EXPLICIT_MARKER_PREFIX + dest, True)


def explicit_args(namespace: argparse.Namespace) -> set[str]:
    """Return the dests of all flags given explicitly on the command line."""
    return {
        name[len(EXPLICIT_MARKER_PREFIX):]
        for name, value in vars(namespace).items()
        if name.startswith(EXPLICIT_MARKER_PREFIX) and value is True
    }


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        mark_explicit(namespace, self.dest)


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        mark_explicit(namespace, self.dest)


def _add_batch_arguments(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument("-s", "--strategies", dest="strategies", action=TrackingAction, default=",".join(DEFAULT_STRATEGIES), help="Comma-separated strategies (desktop,mobile)")
    subparser.add_argument("-w", "--concurrency", dest="concurrency", action=TrackingAction, type=int, default=DEFAULT_CONCURRENCY, help="Maximum simultaneous API requests")
    subparser.add_argument("-r", "--runs", dest="runs", action=TrackingAction, type=int, default=DEFAULT_RUNS, help="Runs per URL for median scoring (default: 1)")
    subparser.add_argument("--dev-cache", dest="dev_cache", action=TrackingStoreTrueAction, default=False, help="Reuse cached raw API responses for repeatable local runs")
    subparser.add_argument("--cache-dir", dest="cache_dir", action=TrackingAction, default=DEFAULT_CACHE_DIR, help="Directory for cached raw API responses")


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="insights-ai",
        description="Repeated PageSpeed Insights runs with median reporting",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--api-key", dest="api_key", action=TrackingAction, default=None, help="PageSpeed API key (or set PSI_KEY env var)")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- run ---
    run_parser = subparsers.add_parser("run", help="Full batch analysis with report output")
    run_parser.add_argument("urls", nargs="*", default=[], help="URLs to analyze")
    run_parser.add_argument("-f", "--file", dest="file", action=TrackingAction, default=None, help="File with one URL per line")
    _add_batch_arguments(run_parser)
    run_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory for report files")
    run_parser.add_argument("--detailed", dest="detailed", action=TrackingStoreTrueAction, default=False, help="Include opportunities, diagnostics and passed audits in the report")
    run_parser.add_argument("--ai-summary", dest="ai_summary", action=TrackingStoreTrueAction, default=False, help="Append an AI summary (requires OPENAI_API_KEY)")
    run_parser.add_argument("--openai-model", dest="openai_model", action=TrackingAction, default=DEFAULT_OPENAI_MODEL, help="Chat model used for AI summaries")

    # --- quick-check ---
    quick_check_parser = subparsers.add_parser("quick-check", help="Fast single-URL spot check, no report files")
    quick_check_parser.add_argument("url", help="URL to check")
    _add_batch_arguments(quick_check_parser)

    return parser


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _progress_bar() -> Progress:
    return Progress(
        TextColumn("Progress"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        MofNCompleteColumn(),
        TextColumn("tests"),
        TimeRemainingColumn(),
        console=err_console,
    )


async def cmd_run(args: argparse.Namespace) -> None:
    """Run the configured batch, print medians and write report files."""
    config = resolve_app_config(args)
    started_at = datetime.now()
    subheader = (
        f"Testing {len(config.urls)} URL(s) x {len(config.strategies)} strategies "
        f"x {config.runs_per_url} run(s)"
    )
    run_info = f"Started at {started_at:%Y-%m-%d %H:%M:%S}"
    err_console.print(f"[bold]InsightsAI Analysis[/bold]\n{subheader}\n{run_info}\n", highlight=False)

    total = len(config.urls) * len(config.strategies) * config.runs_per_url
    ai_summary = ""
    async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
        with _progress_bar() as progress:
            task_id = progress.add_task("runs", total=total)
            median_results = await execute_runs(
                config,
                on_progress=lambda completed, _total: progress.update(task_id, completed=completed),
                client=client,
            )
        err_console.print("All tests completed!", style="green")

        if config.ai_enabled:
            ai_summary = await _collect_ai_summaries(config, median_results, client)

    out_console.print(format_results_table(median_results))

    written_files = write_reports(config, median_results, subheader, run_info, started_at, ai_summary)
    err_console.print("\nReports written to:", highlight=False)
    for filepath in written_files:
        err_console.print(f"  {filepath}", markup=False, highlight=False)


async def cmd_quick_check(args: argparse.Namespace) -> None:
    """Check a single URL and print results to stdout."""
    args.urls = [args.url]
    args.file = None
    args.config_urls = None
    config = resolve_app_config(args)

    err_console.print(f"Checking {config.urls[0]} ({', '.join(config.strategies)})...", markup=False, highlight=False)
    median_results = await execute_runs(config)

    out_console.print(format_results_table(median_results))
    if config.runs_per_url > 1:
        for result in median_results:
            out_console.print(format_runs_table(result))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    commands = {
        "run": cmd_run,
        "quick-check": cmd_quick_check,
    }

    try:
        config_path = Path(args.config) if args.config else discover_config_path()
        config = load_config(config_path)
        args = apply_profile(args, config, getattr(args, "profile", None))
        asyncio.run(commands[args.command](args))
    except InsightsError as exc:
        log_error(exc)
        sys.exit(1)
    except KeyboardInterrupt:
        err_console.print("Interrupted", style="red")
        sys.exit(130)


if __name__ == "__main__":
    main()
