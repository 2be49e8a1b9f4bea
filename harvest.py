#!/usr/bin/env python3
"""
harvest.py

YAML-driven collector that expands job definitions into HTTP call parameters
and executes them in batches against external public APIs.
"""

from __future__ import annotations

import argparse
import calendar
import copy
import json
import logging
import os
import re
import signal
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from queue import Empty, Queue
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Mapping, Optional, Sequence, Set, Tuple
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import croniter


LOG_FILE = "harvest.log"
DEFAULT_CONFIG = "harvest.yaml"
DEFAULT_BATCH_SIZE = 10
DEFAULT_DELAY_SECONDS = 0
DEFAULT_TIMEOUT_SECONDS = 30
DEFAULT_RESOURCE_WEIGHT = 1
MAX_RESOURCE_WEIGHT = 10
DEFAULT_MAX_CONCURRENT_WEIGHT = 10
DEFAULT_AUDIT_LOG = ".harvest/runs.jsonl"
DEFAULT_PREVIEW_COUNT = 5
DEFAULT_SHOW_COUNT = 3
DEFAULT_POLL_SECONDS = 10
DEFAULT_DATE_FORMAT = "yyyyMM"
MAX_JOB_CODE_LENGTH = 50

MODE_SINGLE = "single"
MODE_ONE_VARYING = "one_varying"
MODE_MATRIX = "matrix"
VALID_MODES = {MODE_SINGLE, MODE_ONE_VARYING, MODE_MATRIX}
MODE_ALIASES = {"multi_param": MODE_ONE_VARYING}

KIND_STATIC_LIST = "static_list"
KIND_DATE_RANGE = "date_range"
KIND_LOOKUP = "lookup"
KIND_COMPUTED = "computed"
SOURCE_KINDS = {KIND_STATIC_LIST, KIND_DATE_RANGE, KIND_LOOKUP, KIND_COMPUTED}

VALID_METHODS = {"GET", "POST"}
VALID_INTERVALS = {"DAY", "WEEK", "MONTH", "YEAR"}
# rule -> (period, default format)
COMPUTED_RULES = {
    "last_days": ("DAY", "yyyyMMdd"),
    "last_weeks": ("WEEK", "yyyyMMdd"),
    "last_months": ("MONTH", "yyyyMM"),
    "last_years": ("YEAR", "yyyy"),
}

RUN_NOT_STARTED = "not_started"
RUN_RUNNING = "running"
RUN_COMPLETED = "completed"

STATUS_COMPLETED = "completed"
STATUS_STOPPED = "stopped"
STATUS_FAILED = "failed"

JOB_CODE_RE = re.compile(r"^[A-Z0-9_]+$")
ENV_REF_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
DIGITS_RE = re.compile(r"[0-9]+")
JAVA_DATE_TOKEN_RE = re.compile(r"yyyy|yy|MM|dd")
JAVA_DATE_TOKENS = {"yyyy": "%Y", "yy": "%y", "MM": "%m", "dd": "%d"}
NEAREST_WEEKDAY_RE = re.compile(r"^([0-9]+)W$")
NTH_WEEKDAY_RE = re.compile(r"^([0-9A-Z]+)#([0-9]+)$")
SENSITIVE_KEY_RE = re.compile(r"key|token|secret|password", re.IGNORECASE)

MONTH_NAME_TO_NUM = {
    "JAN": 1,
    "FEB": 2,
    "MAR": 3,
    "APR": 4,
    "MAY": 5,
    "JUN": 6,
    "JUL": 7,
    "AUG": 8,
    "SEP": 9,
    "OCT": 10,
    "NOV": 11,
    "DEC": 12,
}
# Quartz numbering: 1=SUN .. 7=SAT
DAY_NAME_TO_NUM = {
    "SUN": 1,
    "MON": 2,
    "TUE": 3,
    "WED": 4,
    "THU": 5,
    "FRI": 6,
    "SAT": 7,
}


class HarvestError(Exception):
    """Base error for harvest."""


class ConfigError(HarvestError):
    """Config validation error."""


class CronValidationError(ConfigError):
    """Cron expression rejected by the validator."""


class ParseError(ConfigError):
    """Malformed value source payload."""


class InvalidArgumentError(HarvestError, ValueError):
    """Caller contract violation."""


class CallError(HarvestError):
    """A single external call failed."""


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("harvest")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    return logger


logger = setup_logging()
UTC = timezone.utc

Combination = Mapping[str, Any]
Caller = Callable[[Combination], str]


@dataclass(frozen=True)
class ParameterSource:
    name: str
    kind: str
    spec: Any
    sort_order: int = 0
    description: str = ""
    active: bool = True


@dataclass(frozen=True)
class LookupSpec:
    name: str
    values: Optional[List[str]] = None
    file: Optional[Path] = None
    url: Optional[str] = None
    json_path: str = ""
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class JobSpec:
    code: str
    name: str
    resource_url: str
    http_method: str = "GET"
    base_parameters: Dict[str, Any] = field(default_factory=dict)
    expansion_mode: str = MODE_SINGLE
    sources: List[ParameterSource] = field(default_factory=list)
    batch_size: int = DEFAULT_BATCH_SIZE
    delay_seconds: int = DEFAULT_DELAY_SECONDS
    cron_expression: str = "0 0 0 * * ?"
    timezone: ZoneInfo = ZoneInfo("UTC")
    timezone_name: str = "UTC"
    enabled: bool = True
    description: str = ""
    resource_weight: int = DEFAULT_RESOURCE_WEIGHT
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    headers: Dict[str, str] = field(default_factory=dict)
    output: Optional[Path] = None


@dataclass(frozen=True)
class HarvestConfig:
    jobs: List[JobSpec]
    lookups: Dict[str, LookupSpec]
    audit_log: Path
    max_concurrent_weight: int
    timezone_name: str


@dataclass(frozen=True)
class CronFieldRule:
    name: str
    minimum: int
    maximum: int
    names: Dict[str, int] = field(default_factory=dict)
    allow_question: bool = False
    allow_last: bool = False
    allow_nearest_weekday: bool = False
    allow_nth: bool = False


CRON_FIELDS: Tuple[CronFieldRule, ...] = (
    CronFieldRule("second", 0, 59),
    CronFieldRule("minute", 0, 59),
    CronFieldRule("hour", 0, 23),
    CronFieldRule("day-of-month", 1, 31, allow_question=True, allow_last=True, allow_nearest_weekday=True),
    CronFieldRule("month", 1, 12, names=MONTH_NAME_TO_NUM),
    CronFieldRule("day-of-week", 1, 7, names=DAY_NAME_TO_NUM, allow_question=True, allow_nth=True),
    CronFieldRule("year", 1970, 2099),
)


@dataclass(frozen=True)
class CompiledSchedule:
    expression: str
    cron_expr: Optional[str]  # croniter syntax, seconds last; None when not expressible
    years: Optional[FrozenSet[int]]
    description: str
    timezone: ZoneInfo
    timezone_name: str

    def allows(self, candidate: datetime) -> bool:
        return self.years is None or candidate.year in self.years


@dataclass(frozen=True)
class ExpansionWarning:
    kind: str  # source_error | source_empty | no_sources | unknown_mode
    message: str
    parameter_name: Optional[str] = None


@dataclass(frozen=True)
class Resolution:
    parameter_name: str
    values: Tuple[str, ...]
    warning: Optional[ExpansionWarning] = None


@dataclass(frozen=True)
class Expansion:
    mode: str
    combinations: List[Combination]
    warnings: List[ExpansionWarning]

    @property
    def count(self) -> int:
        return len(self.combinations)


@dataclass(frozen=True)
class ExecutionOutcome:
    index: int
    batch_index: int
    parameters: Combination
    succeeded: bool
    error: Optional[str] = None
    duration_seconds: float = 0.0
    response_size: Optional[int] = None


@dataclass
class RunResult:
    success_count: int
    fail_count: int
    outcomes: List[ExecutionOutcome]
    cancelled: bool
    state: str
    started_at: datetime
    ended_at: datetime

    @property
    def total(self) -> int:
        return self.success_count + self.fail_count


@dataclass
class JobRunResult:
    job_code: str
    job_name: str
    run_id: str
    status: str
    base_date: date
    started_at: datetime
    ended_at: datetime
    combination_count: int = 0
    batch_count: int = 0
    run: Optional[RunResult] = None
    warnings: List[ExpansionWarning] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def success_count(self) -> int:
        return self.run.success_count if self.run else 0

    @property
    def fail_count(self) -> int:
        return self.run.fail_count if self.run else 0

    @property
    def processed_count(self) -> int:
        return self.run.total if self.run else 0

    @property
    def success(self) -> bool:
        return self.status == STATUS_COMPLETED and self.fail_count == 0

    def to_record(self) -> Dict[str, Any]:
        return {
            "job_code": self.job_code,
            "job_name": self.job_name,
            "run_id": self.run_id,
            "base_date": self.base_date.isoformat(),
            "status": self.status,
            "started_at": self.started_at.astimezone(UTC).isoformat(),
            "ended_at": self.ended_at.astimezone(UTC).isoformat(),
            "combination_count": self.combination_count,
            "batch_count": self.batch_count,
            "processed_count": self.processed_count,
            "success_count": self.success_count,
            "fail_count": self.fail_count,
            "warnings": [warning.message for warning in self.warnings],
            "error_message": self.error,
        }


@dataclass(frozen=True)
class JobStatistics:
    job_code: str
    job_name: str
    total_executions: int
    successful_executions: int
    failed_executions: int
    success_calls: int
    failed_calls: int
    last_execution_time: Optional[datetime]

    @property
    def success_rate(self) -> Optional[float]:
        if self.total_executions <= 0:
            return None
        return self.successful_executions / self.total_executions * 100


# ---------------------------------------------------------------------------
# Config helpers
# ---------------------------------------------------------------------------


def system_timezone() -> Tuple[ZoneInfo, str]:
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return local_tz, local_tz.key
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            zone = ZoneInfo(tz_name)
            return zone, tz_name
        except ZoneInfoNotFoundError:
            pass
    return ZoneInfo("UTC"), "UTC"


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_http_url(value: Any, field_path: str) -> str:
    url = ensure_str(value, field_path)
    if not (url.startswith("http://") or url.startswith("https://")):
        raise ConfigError(f"Error: {field_path} must be an HTTP URL.")
    return url


def expand_env_refs(value: str, field_path: str) -> str:
    def repl(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in os.environ:
            raise ConfigError(f'Error: Environment variable "{name}" referenced at {field_path} is not set.')
        return os.environ[name]

    return ENV_REF_RE.sub(repl, value)


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool)) or value is None


def _resolve_path(value: Any, config_dir: Path, field_path: str) -> Path:
    raw = Path(ensure_str(value, field_path))
    resolved = raw if raw.is_absolute() else (config_dir / raw)
    return resolved.resolve()


def parse_base_parameters(raw: Any, field_path: str = "parameters") -> Dict[str, Any]:
    if raw is None:
        return {}
    payload = raw
    if isinstance(raw, str):
        try:
            payload = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Error: {field_path} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping of parameter names to values.")
    params: Dict[str, Any] = {}
    for key, value in payload.items():
        if not isinstance(key, str) or not key.strip():
            raise ConfigError(f"Error: {field_path} keys must be non-empty strings, got {key!r}.")
        if not _is_scalar(value):
            raise ConfigError(f'Error: {field_path}.{key} must be a scalar value.')
        params[key] = value
    return params


def parse_headers(raw: Any, field_path: str) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    headers: Dict[str, str] = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not key.strip():
            raise ConfigError(f"Error: {field_path} keys must be non-empty strings.")
        if not isinstance(value, (str, int, float)) or isinstance(value, bool):
            raise ConfigError(f"Error: {field_path}.{key} must be a string.")
        headers[key.strip()] = expand_env_refs(str(value), f"{field_path}.{key}")
    return headers


def normalize_expansion_mode(raw: Any) -> str:
    mode = str(raw or MODE_SINGLE).strip().lower()
    return MODE_ALIASES.get(mode, mode)


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_config(config_path: Path) -> HarvestConfig:
    payload = _load_config_payload(config_path)
    config_dir = config_path.parent

    unknown_top = set(payload.keys()) - {"version", "defaults", "lookups", "jobs"}
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    defaults = payload.get("defaults", {}) or {}
    if not isinstance(defaults, dict):
        raise ConfigError("Error: defaults must be a mapping.")
    unknown_defaults = set(defaults.keys()) - {
        "timezone",
        "batch_size",
        "delay_seconds",
        "timeout_seconds",
        "resource_weight",
        "max_concurrent_weight",
        "audit_log",
        "headers",
        "expansion",
    }
    if unknown_defaults:
        raise ConfigError(f"Error: Unknown keys in defaults: {sorted(unknown_defaults)}.")

    _, system_tz_name = system_timezone()
    default_timezone_name = defaults.get("timezone", system_tz_name)
    if not isinstance(default_timezone_name, str):
        raise ConfigError("Error: defaults.timezone must be a timezone string.")
    parse_timezone(default_timezone_name, "defaults.timezone")

    job_defaults = {
        "batch_size": ensure_int(defaults.get("batch_size"), "defaults.batch_size", DEFAULT_BATCH_SIZE, 1),
        "delay_seconds": ensure_int(
            defaults.get("delay_seconds"), "defaults.delay_seconds", DEFAULT_DELAY_SECONDS, 0
        ),
        "timeout_seconds": ensure_int(
            defaults.get("timeout_seconds"), "defaults.timeout_seconds", DEFAULT_TIMEOUT_SECONDS, 1
        ),
        "resource_weight": _parse_resource_weight(
            defaults.get("resource_weight"), "defaults.resource_weight", DEFAULT_RESOURCE_WEIGHT
        ),
        "headers": parse_headers(defaults.get("headers"), "defaults.headers"),
        "expansion": normalize_expansion_mode(defaults.get("expansion")),
        "timezone": default_timezone_name,
    }
    max_concurrent_weight = ensure_int(
        defaults.get("max_concurrent_weight"),
        "defaults.max_concurrent_weight",
        DEFAULT_MAX_CONCURRENT_WEIGHT,
        1,
    )
    audit_log = _resolve_path(defaults.get("audit_log", DEFAULT_AUDIT_LOG), config_dir, "defaults.audit_log")
    lookups = parse_lookups(payload.get("lookups"), config_dir)

    jobs_raw = payload.get("jobs")
    if not isinstance(jobs_raw, list) or not jobs_raw:
        raise ConfigError("Error: jobs must be a non-empty list.")

    seen_codes: Set[str] = set()
    jobs: List[JobSpec] = []
    for idx, job_raw in enumerate(jobs_raw):
        job = parse_job(job_raw, f"jobs[{idx}]", job_defaults, lookups, config_dir)
        if job.code in seen_codes:
            raise ConfigError(f'Error: Duplicate job code "{job.code}".')
        seen_codes.add(job.code)
        jobs.append(job)

    return HarvestConfig(
        jobs=jobs,
        lookups=lookups,
        audit_log=audit_log,
        max_concurrent_weight=max_concurrent_weight,
        timezone_name=default_timezone_name,
    )


def _parse_resource_weight(value: Any, field_path: str, default: int) -> int:
    weight = ensure_int(value, field_path, default, 1)
    if weight > MAX_RESOURCE_WEIGHT:
        raise ConfigError(f"Error: {field_path} must be between 1 and {MAX_RESOURCE_WEIGHT}.")
    return weight


def parse_job(
    raw: Any,
    path: str,
    defaults: Dict[str, Any],
    lookups: Dict[str, LookupSpec],
    config_dir: Path,
) -> JobSpec:
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {path} must be a mapping.")

    unknown_job = set(raw.keys()) - {
        "code",
        "name",
        "description",
        "enabled",
        "url",
        "method",
        "parameters",
        "expansion",
        "sources",
        "batch_size",
        "delay_seconds",
        "cron",
        "timezone",
        "resource_weight",
        "timeout_seconds",
        "headers",
        "output",
    }
    if unknown_job:
        raise ConfigError(f"Error: Unknown keys in {path}: {sorted(unknown_job)}.")

    code = ensure_str(raw.get("code"), f"{path}.code")
    if not JOB_CODE_RE.match(code) or len(code) > MAX_JOB_CODE_LENGTH:
        raise ConfigError(
            f'Error: {path}.code must use A-Z, 0-9 and "_" (max {MAX_JOB_CODE_LENGTH} chars), got "{code}".'
        )
    name = ensure_str(raw.get("name", code), f"{path}.name")
    description = raw.get("description", "") or ""
    if not isinstance(description, str):
        raise ConfigError(f"Error: {path}.description must be a string.")

    method = ensure_str(raw.get("method", "GET"), f"{path}.method").upper()
    if method not in VALID_METHODS:
        raise ConfigError(f'Error: {path}.method must be one of {sorted(VALID_METHODS)}, got "{method}".')

    parameters = parse_base_parameters(raw.get("parameters"), f"{path}.parameters")
    parameters = {
        key: expand_env_refs(value, f"{path}.parameters.{key}") if isinstance(value, str) else value
        for key, value in parameters.items()
    }

    expansion = normalize_expansion_mode(raw.get("expansion", defaults["expansion"]))
    if expansion not in VALID_MODES:
        logger.warning(
            'Unknown expansion mode "%s" at %s.expansion; runs will fall back to %s.',
            expansion,
            path,
            MODE_SINGLE,
        )

    cron = ensure_str(raw.get("cron"), f"{path}.cron")
    try:
        check_cron_expression(cron)
    except CronValidationError as exc:
        raise CronValidationError(f'Error: Invalid cron expression "{cron}" at {path}.cron: {exc}') from exc

    timezone_name = raw.get("timezone", defaults["timezone"])
    if not isinstance(timezone_name, str):
        raise ConfigError(f"Error: {path}.timezone must be a timezone string.")
    timezone_obj = parse_timezone(timezone_name, f"{path}.timezone")

    headers = dict(defaults["headers"])
    headers.update(parse_headers(raw.get("headers"), f"{path}.headers"))
    output = _resolve_path(raw["output"], config_dir, f"{path}.output") if raw.get("output") is not None else None

    return JobSpec(
        code=code,
        name=name,
        description=description,
        enabled=ensure_bool(raw.get("enabled"), f"{path}.enabled", True),
        resource_url=ensure_http_url(raw.get("url"), f"{path}.url"),
        http_method=method,
        base_parameters=parameters,
        expansion_mode=expansion,
        sources=parse_sources(raw.get("sources"), f"{path}.sources", lookups),
        batch_size=ensure_int(raw.get("batch_size"), f"{path}.batch_size", defaults["batch_size"], 1),
        delay_seconds=ensure_int(raw.get("delay_seconds"), f"{path}.delay_seconds", defaults["delay_seconds"], 0),
        cron_expression=cron,
        timezone=timezone_obj,
        timezone_name=timezone_name,
        resource_weight=_parse_resource_weight(
            raw.get("resource_weight"), f"{path}.resource_weight", defaults["resource_weight"]
        ),
        timeout_seconds=ensure_int(
            raw.get("timeout_seconds"), f"{path}.timeout_seconds", defaults["timeout_seconds"], 1
        ),
        headers=headers,
        output=output,
    )


def parse_sources(raw: Any, field_path: str, lookups: Dict[str, LookupSpec]) -> List[ParameterSource]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError(f"Error: {field_path} must be a list.")
    seen_names: Set[str] = set()
    sources: List[ParameterSource] = []
    for idx, item in enumerate(raw):
        item_path = f"{field_path}[{idx}]"
        if not isinstance(item, dict):
            raise ConfigError(f"Error: {item_path} must be a mapping.")
        unknown = set(item.keys()) - {"name", "kind", "spec", "sort_order", "description", "active"}
        if unknown:
            raise ConfigError(f"Error: Unknown keys in {item_path}: {sorted(unknown)}.")

        name = ensure_str(item.get("name"), f"{item_path}.name")
        if name in seen_names:
            raise ConfigError(f'Error: Duplicate parameter source "{name}" at {item_path}.name.')
        seen_names.add(name)

        kind = ensure_str(item.get("kind"), f"{item_path}.kind").lower()
        if kind not in SOURCE_KINDS:
            raise ConfigError(f'Error: {item_path}.kind must be one of {sorted(SOURCE_KINDS)}, got "{kind}".')
        if item.get("spec") is None:
            raise ConfigError(f"Error: {item_path}.spec is required.")
        spec = item["spec"]
        try:
            _validate_source_spec(kind, spec, lookups)
        except ParseError as exc:
            raise ConfigError(f"Error: Invalid {kind} spec at {item_path}.spec: {exc}") from exc

        description = item.get("description", "") or ""
        if not isinstance(description, str):
            raise ConfigError(f"Error: {item_path}.description must be a string.")
        sources.append(
            ParameterSource(
                name=name,
                kind=kind,
                spec=spec,
                sort_order=ensure_int(item.get("sort_order"), f"{item_path}.sort_order", idx, 0),
                description=description,
                active=ensure_bool(item.get("active"), f"{item_path}.active", True),
            )
        )
    return sources


def _validate_source_spec(kind: str, spec: Any, lookups: Dict[str, LookupSpec]) -> None:
    if kind == KIND_STATIC_LIST:
        parse_static_list(spec)
        return
    if kind == KIND_DATE_RANGE:
        parse_date_range_spec(spec)
        return
    if kind == KIND_COMPUTED:
        parse_computed_spec(spec)
        return
    name = lookup_name(spec)
    if name not in lookups:
        raise ParseError(f'unknown lookup "{name}"; define it under lookups.')


def parse_lookups(raw: Any, config_dir: Path) -> Dict[str, LookupSpec]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("Error: lookups must be a mapping.")
    lookups: Dict[str, LookupSpec] = {}
    for name, item in raw.items():
        if not isinstance(name, str) or not name.strip():
            raise ConfigError("Error: lookups keys must be non-empty strings.")
        path = f"lookups.{name}"
        if not isinstance(item, dict):
            raise ConfigError(f"Error: {path} must be a mapping.")
        unknown = set(item.keys()) - {"values", "file", "url", "json_path", "timeout_seconds"}
        if unknown:
            raise ConfigError(f"Error: Unknown keys in {path}: {sorted(unknown)}.")
        provided = [key for key in ("values", "file", "url") if key in item]
        if len(provided) != 1:
            raise ConfigError(f"Error: {path} must define exactly one of values, file, url.")

        values: Optional[List[str]] = None
        if "values" in item:
            try:
                values = parse_static_list(item["values"])
            except ParseError as exc:
                raise ConfigError(f"Error: {path}.values {exc}") from exc
        file_path = _resolve_path(item["file"], config_dir, f"{path}.file") if "file" in item else None
        url = ensure_http_url(item["url"], f"{path}.url") if "url" in item else None
        json_path = item.get("json_path", "") or ""
        if not isinstance(json_path, str):
            raise ConfigError(f"Error: {path}.json_path must be a string.")
        if json_path and url is None:
            raise ConfigError(f"Error: {path}.json_path only applies to url lookups.")
        lookups[name] = LookupSpec(
            name=name,
            values=values,
            file=file_path,
            url=url,
            json_path=json_path,
            timeout_seconds=ensure_int(
                item.get("timeout_seconds"), f"{path}.timeout_seconds", DEFAULT_TIMEOUT_SECONDS, 1
            ),
        )
    return lookups


# ---------------------------------------------------------------------------
# Cron expressions (Quartz dialect: sec min hour dom month dow [year])
# ---------------------------------------------------------------------------


def check_cron_expression(expression: Any) -> List[str]:
    """Validate a 6 or 7 field cron expression, raising CronValidationError on the first bad field."""
    if not isinstance(expression, str) or not expression.strip():
        raise CronValidationError("expression must be a non-empty string")
    fields = expression.split()
    if len(fields) not in (6, 7):
        raise CronValidationError(f"expected 6 or 7 fields, got {len(fields)}")

    for rule, token in zip(CRON_FIELDS, fields):
        validate_cron_field(token, rule)

    day_of_month_any = fields[3] == "?"
    day_of_week_any = fields[5] == "?"
    if day_of_month_any and day_of_week_any:
        raise CronValidationError('day-of-month and day-of-week cannot both be "?"')
    if not day_of_month_any and not day_of_week_any:
        raise CronValidationError('one of day-of-month or day-of-week must be "?"')
    return fields


def validate_cron_expression(expression: Any) -> bool:
    try:
        check_cron_expression(expression)
    except CronValidationError as exc:
        logger.warning("Invalid cron expression %r: %s", expression, exc)
        return False
    return True


def validate_cron_field(token: str, rule: CronFieldRule) -> None:
    raw = token.upper()
    if raw == "?":
        if not rule.allow_question:
            raise CronValidationError(f'"?" is not allowed in the {rule.name} field')
        return
    if raw == "L" and rule.allow_last:
        return
    if rule.allow_nearest_weekday:
        match = NEAREST_WEEKDAY_RE.match(raw)
        if match:
            day = int(match.group(1))
            if day < rule.minimum or day > rule.maximum:
                raise CronValidationError(f'nearest weekday "{token}" out of bounds in the {rule.name} field')
            return
    if rule.allow_nth and "#" in raw:
        match = NTH_WEEKDAY_RE.match(raw)
        if not match:
            raise CronValidationError(f'invalid nth weekday "{token}" in the {rule.name} field')
        _cron_value(match.group(1), rule)
        nth = int(match.group(2))
        if nth < 1 or nth > 5:
            raise CronValidationError(f'nth weekday "{token}" must use 1-5 after "#"')
        return

    for part in raw.split(","):
        if not part:
            raise CronValidationError(f'invalid {rule.name} token "{token}"')
        _validate_cron_part(part, rule)


def _validate_cron_part(part: str, rule: CronFieldRule) -> None:
    if "/" in part:
        base, _, step_text = part.partition("/")
        if not DIGITS_RE.fullmatch(step_text) or int(step_text) <= 0:
            raise CronValidationError(f'invalid step "{part}" in the {rule.name} field')
        if base == "*":
            return
        _validate_cron_range_or_single(base, rule)
        return
    if part == "*":
        return
    _validate_cron_range_or_single(part, rule)


def _validate_cron_range_or_single(text: str, rule: CronFieldRule) -> None:
    if "-" in text:
        left, _, right = text.partition("-")
        start = _cron_value(left, rule)
        end = _cron_value(right, rule)
        if start > end:
            raise CronValidationError(f'invalid range "{text}" in the {rule.name} field')
        return
    _cron_value(text, rule)


def _cron_value(text: str, rule: CronFieldRule) -> int:
    if text in rule.names:
        return rule.names[text]
    if not DIGITS_RE.fullmatch(text):
        raise CronValidationError(f'invalid value "{text}" in the {rule.name} field')
    value = int(text)
    if value < rule.minimum or value > rule.maximum:
        raise CronValidationError(
            f'value "{value}" out of bounds {rule.minimum}-{rule.maximum} in the {rule.name} field'
        )
    return value


def _expand_cron_values(token: str, rule: CronFieldRule) -> FrozenSet[int]:
    values: Set[int] = set()
    for part in token.split(","):
        base, sep, step_text = part.partition("/")
        step = int(step_text) if sep else 1
        if base == "*":
            start, end = rule.minimum, rule.maximum
        elif "-" in base:
            left, _, right = base.partition("-")
            start, end = _cron_value(left, rule), _cron_value(right, rule)
        else:
            start = _cron_value(base, rule)
            end = rule.maximum if sep else start
        values.update(range(start, end + 1, step))
    return frozenset(values)


def _to_croniter_field(token: str, rule: CronFieldRule, shift: int = 0) -> str:
    if token == "?":
        return "*"
    if token == "L":
        return "L"
    if "#" in token:
        weekday, nth = token.split("#", 1)
        return f"{_cron_value(weekday, rule) - shift}#{nth}"

    parts: List[str] = []
    for part in token.split(","):
        base, sep, step = part.partition("/")
        if base == "*":
            converted = "*"
        elif "-" in base:
            left, _, right = base.partition("-")
            converted = f"{_cron_value(left, rule) - shift}-{_cron_value(right, rule) - shift}"
        else:
            value = _cron_value(base, rule) - shift
            # Quartz "a/s" starts at a and runs to the field maximum.
            converted = f"{value}-{rule.maximum - shift}" if sep else str(value)
        parts.append(f"{converted}/{step}" if sep else converted)
    return ",".join(parts)


def compile_cron(expression: str, tz: ZoneInfo, timezone_name: str) -> CompiledSchedule:
    fields = [token.upper() for token in check_cron_expression(expression)]
    second, minute, hour, day_of_month, month, day_of_week = fields[:6]
    years = _expand_cron_values(fields[6], CRON_FIELDS[6]) if len(fields) == 7 else None

    if NEAREST_WEEKDAY_RE.match(day_of_month):
        return CompiledSchedule(
            expression=expression,
            cron_expr=None,
            years=years,
            description=f"{expression} ({timezone_name}); nearest-weekday schedules have no croniter equivalent",
            timezone=tz,
            timezone_name=timezone_name,
        )

    cron_expr = " ".join(
        [
            _to_croniter_field(minute, CRON_FIELDS[1]),
            _to_croniter_field(hour, CRON_FIELDS[2]),
            _to_croniter_field(day_of_month, CRON_FIELDS[3]),
            _to_croniter_field(month, CRON_FIELDS[4]),
            _to_croniter_field(day_of_week, CRON_FIELDS[5], shift=1),
            _to_croniter_field(second, CRON_FIELDS[0]),
        ]
    )
    description = f"{expression} ({timezone_name}) -> croniter {cron_expr}"
    if years is not None:
        description += f" in years {min(years)}-{max(years)}"
    return CompiledSchedule(
        expression=expression,
        cron_expr=cron_expr,
        years=years,
        description=description,
        timezone=tz,
        timezone_name=timezone_name,
    )


def compile_job_schedule(job: JobSpec) -> CompiledSchedule:
    return compile_cron(job.cron_expression, job.timezone, job.timezone_name)


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def next_run_after(compiled: CompiledSchedule, after_utc: datetime) -> Optional[datetime]:
    if compiled.cron_expr is None:
        return None
    cursor = _ensure_aware_utc(after_utc).astimezone(compiled.timezone)
    for _ in range(10000):
        if compiled.years is not None:
            upcoming = [year for year in compiled.years if year >= cursor.year]
            if not upcoming:
                return None
            first_year = min(upcoming)
            if first_year > cursor.year:
                cursor = datetime(first_year, 1, 1, tzinfo=compiled.timezone) - timedelta(seconds=1)
        nxt = croniter(compiled.cron_expr, cursor).get_next(datetime)
        if nxt.tzinfo is None:
            nxt = nxt.replace(tzinfo=compiled.timezone)
        else:
            nxt = nxt.astimezone(compiled.timezone)
        if compiled.allows(nxt):
            return nxt.astimezone(UTC)
        cursor = nxt
    return None


def next_run_times(compiled: CompiledSchedule, count: int, now_utc: Optional[datetime] = None) -> List[datetime]:
    cursor = _ensure_aware_utc(now_utc or datetime.now(tz=UTC))
    runs: List[datetime] = []
    while len(runs) < count:
        nxt = next_run_after(compiled, cursor)
        if nxt is None:
            break
        runs.append(nxt)
        cursor = nxt
    return runs


# ---------------------------------------------------------------------------
# Value sources
# ---------------------------------------------------------------------------


def to_strftime(pattern: str) -> str:
    """Translate yyyy/yy/MM/dd patterns to strftime; patterns containing "%" pass through."""
    if "%" in pattern:
        return pattern
    return JAVA_DATE_TOKEN_RE.sub(lambda match: JAVA_DATE_TOKENS[match.group(0)], pattern)


def _add_months(current: date, months: int) -> date:
    month_index = current.month - 1 + months
    year = current.year + month_index // 12
    month = month_index % 12 + 1
    day = min(current.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def step_date(current: date, interval: str, amount: int = 1) -> date:
    if interval == "DAY":
        return current + timedelta(days=amount)
    if interval == "WEEK":
        return current + timedelta(weeks=amount)
    if interval == "YEAR":
        return _add_months(current, 12 * amount)
    return _add_months(current, amount)


def normalize_interval(raw: Any) -> str:
    interval = str(raw or "MONTH").strip().upper()
    if interval not in VALID_INTERVALS:
        logger.warning('Unknown date interval "%s"; using MONTH.', raw)
        return "MONTH"
    return interval


def _coerce_date(value: Any, label: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError as exc:
            raise ParseError(f'{label} must be YYYY-MM-DD, got "{value}"') from exc
    raise ParseError(f"{label} is required and must be a YYYY-MM-DD date")


def _json_payload(spec: Any, label: str) -> Any:
    if not isinstance(spec, str):
        return spec
    try:
        return json.loads(spec)
    except json.JSONDecodeError as exc:
        raise ParseError(f"{label} is not valid JSON: {exc}") from exc


def parse_static_list(spec: Any) -> List[str]:
    payload = _json_payload(spec, "static list")
    if not isinstance(payload, list):
        raise ParseError("must be a list of values")
    values: List[str] = []
    for idx, item in enumerate(payload):
        if item is None or not _is_scalar(item):
            raise ParseError(f"item {idx} must be a scalar value")
        values.append(str(item))
    return values


def parse_date_range_spec(spec: Any) -> Tuple[date, date, str, str]:
    payload = _json_payload(spec, "date range")
    if not isinstance(payload, dict):
        raise ParseError("must be a mapping with start and end")
    unknown = set(payload.keys()) - {"start", "end", "startDate", "endDate", "format", "interval"}
    if unknown:
        raise ParseError(f"unknown keys {sorted(unknown)}")
    start = _coerce_date(payload.get("start", payload.get("startDate")), "start")
    end = _coerce_date(payload.get("end", payload.get("endDate")), "end")
    fmt = payload.get("format") or DEFAULT_DATE_FORMAT
    if not isinstance(fmt, str):
        raise ParseError("format must be a string")
    return start, end, to_strftime(fmt), normalize_interval(payload.get("interval"))


def generate_date_range(spec: Any) -> List[str]:
    start, end, fmt, interval = parse_date_range_spec(spec)
    values: List[str] = []
    current = start
    while current <= end:
        values.append(current.strftime(fmt))
        current = step_date(current, interval)
    return values


def parse_computed_spec(spec: Any) -> Tuple[str, int, int, str]:
    payload = _json_payload(spec, "computed rule")
    if not isinstance(payload, dict):
        raise ParseError("must be a mapping with rule and count")
    unknown = set(payload.keys()) - {"rule", "count", "offset", "format"}
    if unknown:
        raise ParseError(f"unknown keys {sorted(unknown)}")
    rule = str(payload.get("rule", "")).strip().lower()
    if rule not in COMPUTED_RULES:
        raise ParseError(f'rule must be one of {sorted(COMPUTED_RULES)}, got "{rule}"')
    count = payload.get("count")
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        raise ParseError("count must be an integer >= 1")
    offset = payload.get("offset", 0)
    if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
        raise ParseError("offset must be an integer >= 0")
    fmt = payload.get("format") or COMPUTED_RULES[rule][1]
    if not isinstance(fmt, str):
        raise ParseError("format must be a string")
    return rule, count, offset, to_strftime(fmt)


def _period_start(day: date, interval: str) -> date:
    if interval == "WEEK":
        return day - timedelta(days=day.weekday())
    if interval == "MONTH":
        return day.replace(day=1)
    if interval == "YEAR":
        return day.replace(month=1, day=1)
    return day


def generate_computed_values(spec: Any, today: date) -> List[str]:
    """The `count` periods ending `offset` periods before the current one, oldest first."""
    rule, count, offset, fmt = parse_computed_spec(spec)
    interval = COMPUTED_RULES[rule][0]
    anchor = _period_start(today, interval)
    return [
        step_date(anchor, interval, -back).strftime(fmt)
        for back in range(offset + count - 1, offset - 1, -1)
    ]


def lookup_name(spec: Any) -> str:
    if isinstance(spec, dict):
        spec = spec.get("lookup")
    if not isinstance(spec, str) or not spec.strip():
        raise ParseError('must name a lookup, e.g. "region_codes" or {lookup: region_codes}')
    return spec.strip()


def read_value_file(path: Path) -> List[str]:
    values: List[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        values.append(text)
    return values


def extract_json_path(node: Any, path: str) -> List[str]:
    """Collect scalar values along a dotted path where "name[]" fans out over a list."""
    return _walk_json(node, [part for part in path.split(".") if part])


def _walk_json(node: Any, parts: List[str]) -> List[str]:
    if not parts:
        items = node if isinstance(node, list) else [node]
        return [str(item) for item in items if item is not None and _is_scalar(item)]
    head, rest = parts[0], parts[1:]
    if head.endswith("[]"):
        key = head[:-2]
        if key:
            items = node.get(key) if isinstance(node, dict) else None
        else:
            items = node
        if not isinstance(items, list):
            return []
        values: List[str] = []
        for item in items:
            values.extend(_walk_json(item, rest))
        return values
    if not isinstance(node, dict) or head not in node:
        return []
    return _walk_json(node[head], rest)


def fetch_url_values(url: str, json_path: str, timeout_seconds: int) -> List[str]:
    req = urllib_request.Request(url=url, method="GET", headers={"Accept": "application/json"})
    try:
        with urllib_request.urlopen(req, timeout=timeout_seconds) as response:
            body = response.read().decode(response.headers.get_content_charset() or "utf-8")
    except urllib_error.URLError as exc:
        raise HarvestError(f"Lookup request to {url} failed: {exc}") from exc
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise HarvestError(f"Lookup response from {url} is not JSON: {exc}") from exc
    if json_path:
        return extract_json_path(payload, json_path)
    if not isinstance(payload, list):
        raise HarvestError(f"Lookup response from {url} is not a list; set json_path.")
    return [str(item) for item in payload if item is not None and _is_scalar(item)]


class ConfiguredLookups:
    """Lookup provider backed by the config file's lookups section."""

    def __init__(self, specs: Dict[str, LookupSpec]):
        self.specs = specs

    def fetch_values(self, name: str) -> List[str]:
        spec = self.specs.get(name)
        if spec is None:
            raise HarvestError(f'Unknown lookup "{name}".')
        if spec.values is not None:
            return list(spec.values)
        if spec.file is not None:
            return read_value_file(spec.file)
        return fetch_url_values(spec.url or "", spec.json_path, spec.timeout_seconds)


class ValueSourceResolver:
    """Turns a ParameterSource into its ordered value sequence.

    Resolution never raises: a failing source resolves to no values and carries
    an ExpansionWarning so callers can tell it apart from a source that is
    legitimately empty.
    """

    def __init__(self, lookups: Any = None, today: Optional[date] = None):
        self.lookups = lookups
        self.today = today

    def resolve(self, source: ParameterSource) -> Resolution:
        try:
            values = tuple(self._values_for(source))
        except Exception as exc:
            message = f'Parameter source "{source.name}" ({source.kind}) failed: {exc}'
            logger.warning(message)
            return Resolution(
                parameter_name=source.name,
                values=(),
                warning=ExpansionWarning(kind="source_error", message=message, parameter_name=source.name),
            )

        if not values and source.kind == KIND_LOOKUP:
            message = f'Parameter source "{source.name}" (lookup) returned no values.'
            logger.warning(message)
            return Resolution(
                parameter_name=source.name,
                values=(),
                warning=ExpansionWarning(kind="source_empty", message=message, parameter_name=source.name),
            )

        logger.info("Parameter %s: %s value(s) from %s", source.name, len(values), source.kind)
        return Resolution(parameter_name=source.name, values=values)

    def _values_for(self, source: ParameterSource) -> List[str]:
        if source.kind == KIND_STATIC_LIST:
            return parse_static_list(source.spec)
        if source.kind == KIND_DATE_RANGE:
            return generate_date_range(source.spec)
        if source.kind == KIND_COMPUTED:
            return generate_computed_values(source.spec, self.today or date.today())
        if source.kind == KIND_LOOKUP:
            if self.lookups is None:
                raise HarvestError("no lookup provider configured")
            return [str(value) for value in self.lookups.fetch_values(lookup_name(source.spec))]
        raise ConfigError(f'Unknown source kind "{source.kind}".')


# ---------------------------------------------------------------------------
# Expansion and batching
# ---------------------------------------------------------------------------


def order_sources(sources: Sequence[ParameterSource]) -> List[ParameterSource]:
    """Active sources only, by sort_order."""
    return sorted((source for source in sources if source.active), key=lambda source: source.sort_order)


def _combination(base: Dict[str, Any], assigned: Mapping[str, str]) -> Combination:
    merged = copy.deepcopy(base)
    merged.update(assigned)
    return MappingProxyType(merged)


def iter_cartesian(base: Dict[str, Any], resolutions: Sequence[Resolution]) -> Iterator[Combination]:
    """Mixed-radix enumeration; the first resolution is the outermost (slowest) digit."""
    radices = [len(resolution.values) for resolution in resolutions]
    if not radices or any(radix == 0 for radix in radices):
        return
    digits = [0] * len(radices)
    while True:
        yield _combination(
            base,
            {
                resolution.parameter_name: resolution.values[digit]
                for resolution, digit in zip(resolutions, digits)
            },
        )
        position = len(digits) - 1
        while position >= 0:
            digits[position] += 1
            if digits[position] < radices[position]:
                break
            digits[position] = 0
            position -= 1
        if position < 0:
            return


def expand_parameters(
    base: Any,
    mode: Any,
    sources: Sequence[ParameterSource],
    resolver: ValueSourceResolver,
) -> Expansion:
    base_params = parse_base_parameters(base)
    normalized = normalize_expansion_mode(mode)
    warnings: List[ExpansionWarning] = []

    if normalized not in VALID_MODES:
        message = f'Unknown expansion mode "{mode}"; falling back to {MODE_SINGLE}.'
        logger.warning(message)
        warnings.append(ExpansionWarning(kind="unknown_mode", message=message))
        normalized = MODE_SINGLE

    combinations: List[Combination] = []
    ordered = order_sources(sources)
    if normalized == MODE_SINGLE:
        combinations.append(_combination(base_params, {}))
    elif not ordered:
        message = f"No parameter sources configured for {normalized} expansion; nothing to run."
        logger.warning(message)
        warnings.append(ExpansionWarning(kind="no_sources", message=message))
    elif normalized == MODE_ONE_VARYING:
        # Only the first source varies; the rest are ignored in this mode.
        first = ordered[0]
        resolution = resolver.resolve(first)
        if resolution.warning:
            warnings.append(resolution.warning)
        combinations.extend(_combination(base_params, {first.name: value}) for value in resolution.values)
    else:
        resolutions = [resolver.resolve(source) for source in ordered]
        warnings.extend(resolution.warning for resolution in resolutions if resolution.warning)
        combinations.extend(iter_cartesian(base_params, resolutions))

    logger.info("Generated %s parameter combination(s) (mode=%s).", len(combinations), normalized)
    return Expansion(mode=normalized, combinations=combinations, warnings=warnings)


def group_batches(combinations: Sequence[Combination], batch_size: int) -> List[List[Combination]]:
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
        raise InvalidArgumentError(f"batch_size must be a positive integer, got {batch_size!r}.")
    items = list(combinations)
    batches = [items[start:start + batch_size] for start in range(0, len(items), batch_size)]
    logger.info("Grouped %s combination(s) into %s batch(es) (batch_size=%s).", len(items), len(batches), batch_size)
    return batches


def redact_parameters(parameters: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        key: ("***" if SENSITIVE_KEY_RE.search(key) and value not in (None, "") else value)
        for key, value in parameters.items()
    }


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class ExecutionRunner:
    """Runs batches sequentially, isolating each call's failure.

    The delay is applied only after a successful call and only when another call
    follows. Cancellation is checked between calls; an in-flight call is never
    interrupted.
    """

    def __init__(
        self,
        caller: Caller,
        delay_seconds: float = 0,
        cancel_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        on_response: Optional[Callable[[int, Combination, str], None]] = None,
        log_prefix: str = "",
    ):
        if delay_seconds < 0:
            raise InvalidArgumentError(f"delay_seconds must be >= 0, got {delay_seconds!r}.")
        self.caller = caller
        self.delay_seconds = delay_seconds
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep or self.cancel_event.wait
        self.on_response = on_response
        self.log_prefix = log_prefix
        self.state = RUN_NOT_STARTED

    def cancel(self) -> None:
        self.cancel_event.set()

    def run(self, batches: Sequence[Sequence[Combination]]) -> RunResult:
        if self.state != RUN_NOT_STARTED:
            raise HarvestError("ExecutionRunner instances are single-use.")
        self.state = RUN_RUNNING
        started = datetime.now(tz=UTC)
        outcomes: List[ExecutionOutcome] = []
        success_count = 0
        fail_count = 0
        cancelled = False
        remaining = sum(len(batch) for batch in batches)

        for batch_index, batch in enumerate(batches):
            if self.cancel_event.is_set():
                cancelled = True
                logger.warning(
                    "%sCancellation requested; stopping before batch %s/%s.",
                    self.log_prefix,
                    batch_index + 1,
                    len(batches),
                )
                break
            logger.info(
                "%sBatch %s/%s started (%s call(s))",
                self.log_prefix,
                batch_index + 1,
                len(batches),
                len(batch),
            )
            for parameters in batch:
                if self.cancel_event.is_set():
                    cancelled = True
                    break
                outcome = self._invoke(len(outcomes), batch_index, parameters)
                outcomes.append(outcome)
                remaining -= 1
                if not outcome.succeeded:
                    fail_count += 1
                    continue
                success_count += 1
                if self.delay_seconds > 0 and remaining > 0:
                    self._sleep(self.delay_seconds)
            if cancelled:
                logger.warning(
                    "%sCancellation requested; stopping after %s of %s call(s).",
                    self.log_prefix,
                    len(outcomes),
                    len(outcomes) + remaining,
                )
                break
            logger.info("%sBatch %s/%s completed", self.log_prefix, batch_index + 1, len(batches))

        self.state = RUN_COMPLETED
        return RunResult(
            success_count=success_count,
            fail_count=fail_count,
            outcomes=outcomes,
            cancelled=cancelled,
            state=self.state,
            started_at=started,
            ended_at=datetime.now(tz=UTC),
        )

    def _invoke(self, index: int, batch_index: int, parameters: Combination) -> ExecutionOutcome:
        started = time.monotonic()
        try:
            body = self.caller(parameters)
            if self.on_response is not None:
                self.on_response(index, parameters, body)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.error(
                "%sCall %s failed: %s (parameters=%s)",
                self.log_prefix,
                index + 1,
                error,
                redact_parameters(parameters),
            )
            return ExecutionOutcome(
                index=index,
                batch_index=batch_index,
                parameters=parameters,
                succeeded=False,
                error=error,
                duration_seconds=time.monotonic() - started,
            )
        return ExecutionOutcome(
            index=index,
            batch_index=batch_index,
            parameters=parameters,
            succeeded=True,
            duration_seconds=time.monotonic() - started,
            response_size=len(body) if isinstance(body, (str, bytes)) else None,
        )


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_request_url(base_url: str, parameters: Mapping[str, Any]) -> str:
    query = urllib_parse.urlencode(
        [(key, _query_value(value)) for key, value in parameters.items() if value is not None]
    )
    if not query:
        return base_url
    parts = urllib_parse.urlsplit(base_url)
    merged = f"{parts.query}&{query}" if parts.query else query
    return urllib_parse.urlunsplit((parts.scheme, parts.netloc, parts.path, merged, parts.fragment))


class HttpCaller:
    """Default caller: one HTTP request per combination, parameters in the query string."""

    def __init__(self, job: JobSpec):
        self.url = job.resource_url
        self.method = job.http_method
        self.headers = dict(job.headers)
        self.timeout_seconds = job.timeout_seconds

    def __call__(self, parameters: Combination) -> str:
        url = build_request_url(self.url, parameters)
        data = b"" if self.method == "POST" else None
        req = urllib_request.Request(url=url, data=data, method=self.method, headers=self.headers)
        try:
            with urllib_request.urlopen(req, timeout=self.timeout_seconds) as response:
                status = response.status
                body = response.read().decode(response.headers.get_content_charset() or "utf-8", errors="replace")
        except urllib_error.HTTPError as exc:
            raise CallError(f"HTTP {exc.code} from {self.url}: {exc.reason}") from exc
        except urllib_error.URLError as exc:
            raise CallError(f"Request to {self.url} failed: {exc.reason}") from exc
        except OSError as exc:
            raise CallError(f"Request to {self.url} failed: {exc}") from exc
        if not 200 <= status < 300:
            raise CallError(f"HTTP {status} from {self.url}")
        return body


class ResponseCapture:
    """Appends successful response bodies to a JSONL file."""

    def __init__(self, path: Path, run_id: str):
        self.path = path
        self.run_id = run_id

    def write(self, index: int, parameters: Combination, body: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        record = {"run_id": self.run_id, "index": index, "parameters": dict(parameters), "body": body}
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n")


class AuditLog:
    """JSONL execution log, one record per job run."""

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def record(self, result: JobRunResult) -> None:
        line = json.dumps(result.to_record(), ensure_ascii=False, separators=(",", ":"))
        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
        except OSError as exc:
            logger.warning("Failed to write audit record for %s: %s", result.run_id, str(exc))

    def read_records(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        records: List[Dict[str, Any]] = []
        for line_no, line in enumerate(self.path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("Skipping malformed audit record at %s:%s", self.path, line_no)
                continue
            if isinstance(payload, dict):
                records.append(payload)
        return records


def compute_statistics(
    records: Sequence[Dict[str, Any]],
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> List[JobStatistics]:
    # code -> [(started_at, record, success_count, fail_count)]
    grouped: Dict[str, List[Tuple[datetime, Dict[str, Any], int, int]]] = {}
    for record in records:
        try:
            started = _ensure_aware_utc(datetime.fromisoformat(str(record["started_at"])))
            code = str(record["job_code"])
            success_calls = int(record.get("success_count", 0))
            fail_calls = int(record.get("fail_count", 0))
        except (KeyError, TypeError, ValueError):
            logger.warning("Skipping malformed audit record: %s", record)
            continue
        if since and started < since:
            continue
        if until and started > until:
            continue
        grouped.setdefault(code, []).append((started, record, success_calls, fail_calls))

    stats: List[JobStatistics] = []
    for code in sorted(grouped):
        entries = grouped[code]
        successful = sum(
            1
            for _, record, _, fail_calls in entries
            if record.get("status") == STATUS_COMPLETED and fail_calls == 0
        )
        last_started, last_record, _, _ = max(entries, key=lambda entry: entry[0])
        stats.append(
            JobStatistics(
                job_code=code,
                job_name=str(last_record.get("job_name", code)),
                total_executions=len(entries),
                successful_executions=successful,
                failed_executions=len(entries) - successful,
                success_calls=sum(entry[2] for entry in entries),
                failed_calls=sum(entry[3] for entry in entries),
                last_execution_time=last_started,
            )
        )
    return stats


# ---------------------------------------------------------------------------
# Job pipeline
# ---------------------------------------------------------------------------


def make_run_id(job_code: str, started: datetime) -> str:
    return f"{job_code}:{started.strftime('%Y%m%d%H%M%S')}-{started.microsecond:06d}-{os.getpid()}"


def plan_job(job: JobSpec, resolver: ValueSourceResolver) -> Tuple[Expansion, List[List[Combination]]]:
    expansion = expand_parameters(job.base_parameters, job.expansion_mode, job.sources, resolver)
    return expansion, group_batches(expansion.combinations, job.batch_size)


def run_job(
    job: JobSpec,
    resolver: ValueSourceResolver,
    caller: Optional[Caller] = None,
    cancel_event: Optional[threading.Event] = None,
    audit_log: Optional[AuditLog] = None,
    scheduled_for: Optional[datetime] = None,
    sleep: Optional[Callable[[float], Any]] = None,
) -> JobRunResult:
    started = datetime.now(tz=UTC)
    run_id = make_run_id(job.code, started)
    base_date = (scheduled_for or started).astimezone(job.timezone).date()
    if scheduled_for:
        logger.info(
            "[%s] Starting job %s (scheduled_for=%s)",
            run_id,
            job.code,
            scheduled_for.astimezone(job.timezone).isoformat(),
        )
    else:
        logger.info("[%s] Starting job %s", run_id, job.code)

    try:
        expansion, batches = plan_job(job, resolver)
    except HarvestError as exc:
        logger.error("[%s] Parameter expansion failed for %s: %s", run_id, job.code, str(exc))
        result = JobRunResult(
            job_code=job.code,
            job_name=job.name,
            run_id=run_id,
            status=STATUS_FAILED,
            base_date=base_date,
            started_at=started,
            ended_at=datetime.now(tz=UTC),
            error=str(exc),
        )
        if audit_log:
            audit_log.record(result)
        return result

    for warning in expansion.warnings:
        logger.warning("[%s] %s", run_id, warning.message)
    logger.info(
        "[%s] %s combination(s) in %s batch(es); delay=%ss",
        run_id,
        expansion.count,
        len(batches),
        job.delay_seconds,
    )

    capture = ResponseCapture(job.output, run_id) if job.output else None
    runner = ExecutionRunner(
        caller or HttpCaller(job),
        delay_seconds=job.delay_seconds,
        cancel_event=cancel_event,
        sleep=sleep,
        on_response=capture.write if capture else None,
        log_prefix=f"[{run_id}] ",
    )
    run = runner.run(batches)

    first_error = next((outcome.error for outcome in run.outcomes if not outcome.succeeded), None)
    result = JobRunResult(
        job_code=job.code,
        job_name=job.name,
        run_id=run_id,
        status=STATUS_STOPPED if run.cancelled else STATUS_COMPLETED,
        base_date=base_date,
        started_at=started,
        ended_at=datetime.now(tz=UTC),
        combination_count=expansion.count,
        batch_count=len(batches),
        run=run,
        warnings=list(expansion.warnings),
        error=f"{run.fail_count} call(s) failed; first error: {first_error}" if first_error else None,
    )
    if run.fail_count:
        logger.warning("[%s] %s of %s call(s) failed.", run_id, run.fail_count, run.total)
    logger.info(
        "[%s] Job %s %s: success=%s fail=%s in %.2fs",
        run_id,
        job.code,
        result.status,
        run.success_count,
        run.fail_count,
        (result.ended_at - started).total_seconds(),
    )
    if audit_log:
        audit_log.record(result)
    return result


# ---------------------------------------------------------------------------
# Daemon
# ---------------------------------------------------------------------------


@dataclass
class TriggerEvent:
    job_code: str
    scheduled_for: datetime


@dataclass
class JobState:
    next_fire: Optional[datetime]
    running: bool = False
    cancel_event: Optional[threading.Event] = None
    thread: Optional[threading.Thread] = None


class HarvestDaemon:
    """Fires jobs on their cron schedules, one worker thread per running job.

    A trigger is dispatched only while the summed resource_weight of running jobs
    stays within max_concurrent_weight; otherwise it waits for capacity. A job
    never overlaps itself: triggers for a running job are skipped.
    """

    def __init__(
        self,
        jobs: Sequence[JobSpec],
        resolver: ValueSourceResolver,
        audit_log: Optional[AuditLog] = None,
        max_concurrent_weight: int = DEFAULT_MAX_CONCURRENT_WEIGHT,
        caller_factory: Optional[Callable[[JobSpec], Caller]] = None,
        now: Optional[datetime] = None,
    ):
        self.jobs = {job.code: job for job in jobs}
        self.order = [job.code for job in jobs]
        self.resolver = resolver
        self.audit_log = audit_log
        self.max_concurrent_weight = max_concurrent_weight
        self.caller_factory = caller_factory or HttpCaller
        self.schedules: Dict[str, CompiledSchedule] = {}
        self.states: Dict[str, JobState] = {}
        self.pending: deque[TriggerEvent] = deque()
        self.completions: "Queue[Tuple[str, Optional[JobRunResult]]]" = Queue()
        self.results: List[JobRunResult] = []
        self.running_weight = 0

        start = _ensure_aware_utc(now or datetime.now(tz=UTC))
        for job in jobs:
            compiled = compile_job_schedule(job)
            if compiled.cron_expr is None:
                logger.warning("Job %s cannot be scheduled: %s", job.code, compiled.description)
                continue
            self.schedules[job.code] = compiled
            self.states[job.code] = JobState(next_fire=next_run_after(compiled, start))

    def tick(self, now: Optional[datetime] = None) -> None:
        current = _ensure_aware_utc(now or datetime.now(tz=UTC))
        self._drain_completions()
        self._collect_triggers(current)
        self._dispatch()

    def _drain_completions(self) -> None:
        while True:
            try:
                code, result = self.completions.get_nowait()
            except Empty:
                break
            state = self.states[code]
            state.running = False
            state.cancel_event = None
            state.thread = None
            self.running_weight = max(self.running_weight - self.jobs[code].resource_weight, 0)
            if result is not None:
                self.results.append(result)
                logger.info(
                    "Job %s finished with status=%s (success=%s, fail=%s); running_weight=%s",
                    code,
                    result.status,
                    result.success_count,
                    result.fail_count,
                    self.running_weight,
                )

    def _collect_triggers(self, now: datetime) -> None:
        for code in self.order:
            state = self.states.get(code)
            if state is None:
                continue
            while state.next_fire and state.next_fire <= now:
                self.pending.append(TriggerEvent(job_code=code, scheduled_for=state.next_fire))
                state.next_fire = next_run_after(self.schedules[code], state.next_fire)

    def _dispatch(self) -> None:
        waiting: deque[TriggerEvent] = deque()
        waiting_codes: Set[str] = set()
        while self.pending:
            trigger = self.pending.popleft()
            job = self.jobs[trigger.job_code]
            if self.states[job.code].running or job.code in waiting_codes:
                logger.info(
                    "Skipping overlapping trigger for %s at %s",
                    job.code,
                    trigger.scheduled_for.isoformat(),
                )
                continue
            if self.running_weight and self.running_weight + job.resource_weight > self.max_concurrent_weight:
                waiting.append(trigger)
                waiting_codes.add(job.code)
                continue
            self._launch(job, trigger.scheduled_for)
        if waiting:
            logger.info("%s trigger(s) waiting for capacity (running_weight=%s)", len(waiting), self.running_weight)
        self.pending = waiting

    def _launch(self, job: JobSpec, scheduled_for: datetime) -> None:
        state = self.states[job.code]
        cancel_event = threading.Event()
        state.running = True
        state.cancel_event = cancel_event
        self.running_weight += job.resource_weight
        logger.info(
            "Dispatching %s (weight=%s, running_weight=%s/%s)",
            job.code,
            job.resource_weight,
            self.running_weight,
            self.max_concurrent_weight,
        )

        def worker() -> None:
            result: Optional[JobRunResult] = None
            try:
                result = run_job(
                    job,
                    self.resolver,
                    caller=self.caller_factory(job),
                    cancel_event=cancel_event,
                    audit_log=self.audit_log,
                    scheduled_for=scheduled_for,
                )
            except Exception as exc:  # pragma: no cover - defensive
                logger.exception("Job %s crashed: %s", job.code, exc)
            finally:
                self.completions.put((job.code, result))

        thread = threading.Thread(target=worker, daemon=True, name=f"harvest-{job.code}")
        state.thread = thread
        thread.start()

    def running_codes(self) -> Set[str]:
        return {code for code, state in self.states.items() if state.running}

    def wait_idle(self, timeout: Optional[float] = None) -> None:
        for state in list(self.states.values()):
            if state.thread is not None:
                state.thread.join(timeout)
        self._drain_completions()

    def stop(self, timeout: Optional[float] = None) -> None:
        for state in self.states.values():
            if state.cancel_event is not None:
                state.cancel_event.set()
        self.wait_idle(timeout)

    def run_forever(self, stop_event: threading.Event, poll_seconds: float) -> None:
        logger.info(
            "Starting daemon with %s schedulable job(s), poll_seconds=%s",
            len(self.schedules),
            poll_seconds,
        )
        for code in self.order:
            state = self.states.get(code)
            if state is not None:
                next_fire = state.next_fire.isoformat() if state.next_fire else "none"
                logger.info("Next run for %s: %s", code, next_fire)
        try:
            while not stop_event.is_set():
                self.tick()
                stop_event.wait(poll_seconds)
        finally:
            logger.info("Stopping daemon; cancelling %s running job(s).", len(self.running_codes()))
            self.stop()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def install_stop_handlers(stop_event: threading.Event) -> Dict[int, Any]:
    def handler(signum: int, frame: object) -> None:
        logger.info("Received signal %s; finishing the current call and stopping.", signum)
        stop_event.set()

    previous: Dict[int, Any] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[signum] = signal.signal(signum, handler)
        except ValueError:
            logger.debug("Signal handlers can only be installed from the main thread.")
    return previous


def restore_signal_handlers(previous: Dict[int, Any]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def filter_jobs(jobs: List[JobSpec], job_code: Optional[str], include_disabled: bool = False) -> List[JobSpec]:
    selected = jobs
    if job_code:
        selected = [job for job in selected if job.code == job_code]
        if not selected:
            raise HarvestError(f'Unknown job "{job_code}".')
    if include_disabled:
        return selected
    selected = [job for job in selected if job.enabled]
    if not selected:
        raise HarvestError("No enabled jobs selected.")
    return selected


def build_resolver(config: HarvestConfig) -> ValueSourceResolver:
    return ValueSourceResolver(lookups=ConfiguredLookups(config.lookups))


def command_validate(config_path: Path) -> int:
    config = parse_config(config_path)
    enabled_count = sum(1 for job in config.jobs if job.enabled)
    print(f"Config valid: {config_path}")
    print(f"Total jobs: {len(config.jobs)}")
    print(f"Enabled jobs: {enabled_count}")
    print(f"Lookups: {len(config.lookups)}")
    for job in config.jobs:
        print(
            f"- {job.code}: {job.expansion_mode} with {len(job.sources)} source(s), "
            f"batch_size={job.batch_size}, cron={job.cron_expression}"
        )
    return 0


def command_check_cron(expression: str) -> int:
    try:
        check_cron_expression(expression)
    except CronValidationError as exc:
        print(f"Invalid: {exc}")
        return 1
    compiled = compile_cron(expression, ZoneInfo("UTC"), "UTC")
    print(f"Valid: {expression}")
    if compiled.cron_expr:
        print(f"croniter equivalent: {compiled.cron_expr}")
    else:
        print("croniter equivalent: none (runtime preview unavailable)")
    return 0


def command_preview(config_path: Path, job_code: Optional[str], count: int, show: int) -> int:
    config = parse_config(config_path)
    selected = filter_jobs(config.jobs, job_code, include_disabled=True)
    resolver = build_resolver(config)
    now_utc = datetime.now(tz=UTC)

    for job in selected:
        print("=" * 80)
        print(f"Job: {job.code} - {job.name} (enabled={job.enabled})")
        print(f"Request: {job.http_method} {job.resource_url}")
        compiled = compile_job_schedule(job)
        print(f"Schedule: {compiled.description}")
        expansion, batches = plan_job(job, resolver)
        print(
            f"Expansion: {expansion.mode}, {expansion.count} combination(s), "
            f"{len(batches)} batch(es) of <= {job.batch_size}, delay={job.delay_seconds}s"
        )
        for warning in expansion.warnings:
            print(f"Warning: {warning.message}")
        for combination in expansion.combinations[:show]:
            print(f"- {json.dumps(redact_parameters(combination), ensure_ascii=False)}")
        if expansion.count > show:
            print(f"- ... {expansion.count - show} more")
        print(f"Next {count} run(s):")
        runs = next_run_times(compiled, count, now_utc=now_utc)
        if not runs:
            print("- none")
        for run_dt in runs:
            print(f"- {run_dt.astimezone(compiled.timezone).isoformat()}")
    print("=" * 80)
    return 0


def command_run(config_path: Path, job_code: Optional[str], dry_run: bool = False) -> int:
    config = parse_config(config_path)
    selected = filter_jobs(config.jobs, job_code, include_disabled=False)
    resolver = build_resolver(config)

    if dry_run:
        for job in selected:
            expansion, batches = plan_job(job, resolver)
            print(f"{job.code}: {expansion.count} combination(s) in {len(batches)} batch(es)")
            for warning in expansion.warnings:
                print(f"  warning: {warning.message}")
        return 0

    audit_log = AuditLog(config.audit_log)
    stop_event = threading.Event()
    previous = install_stop_handlers(stop_event)
    exit_code = 0
    try:
        for job in selected:
            if stop_event.is_set():
                logger.info("Skipping %s: stop requested.", job.code)
                exit_code = 1
                continue
            result = run_job(job, resolver, cancel_event=stop_event, audit_log=audit_log)
            if not result.success:
                exit_code = 1
    finally:
        restore_signal_handlers(previous)
    return exit_code


def command_daemon(config_path: Path, poll_seconds: int) -> int:
    config = parse_config(config_path)
    selected = filter_jobs(config.jobs, job_code=None, include_disabled=False)
    daemon = HarvestDaemon(
        selected,
        build_resolver(config),
        audit_log=AuditLog(config.audit_log),
        max_concurrent_weight=config.max_concurrent_weight,
    )
    stop_event = threading.Event()
    previous = install_stop_handlers(stop_event)
    try:
        daemon.run_forever(stop_event, poll_seconds)
    finally:
        restore_signal_handlers(previous)
    return 0


def parse_cli_datetime(value: Optional[str], option: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise HarvestError(f'{option} must be an ISO date or datetime, got "{value}".') from exc
    return _ensure_aware_utc(parsed)


def command_stats(config_path: Path, since: Optional[str], until: Optional[str]) -> int:
    config = parse_config(config_path)
    records = AuditLog(config.audit_log).read_records()
    stats = compute_statistics(
        records,
        since=parse_cli_datetime(since, "--since"),
        until=parse_cli_datetime(until, "--until"),
    )
    if not stats:
        print(f"No executions recorded in {config.audit_log}")
        return 0
    print(f"{'JOB':<24} {'RUNS':>5} {'OK':>5} {'FAILED':>6} {'CALLS OK':>9} {'CALLS FAILED':>12} {'RATE':>7}  LAST RUN")
    for item in stats:
        rate = f"{item.success_rate:.1f}%" if item.success_rate is not None else "-"
        last_run = item.last_execution_time.isoformat() if item.last_execution_time else "-"
        print(
            f"{item.job_code:<24} {item.total_executions:>5} {item.successful_executions:>5} "
            f"{item.failed_executions:>6} {item.success_calls:>9} {item.failed_calls:>12} {rate:>7}  {last_run}"
        )
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="harvest.py public API collector",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to harvest YAML config (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate config, sources and cron expressions")
    validate_parser.add_argument(
        "--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})"
    )

    check_parser = subparsers.add_parser("check-cron", help="Validate a single cron expression")
    check_parser.add_argument("expression", help='Quoted expression, e.g. "0 0 2 * * ?"')

    preview_parser = subparsers.add_parser("preview", help="Show expansion and schedule preview")
    preview_parser.add_argument(
        "--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})"
    )
    preview_parser.add_argument("--job", help="Preview a single job by code")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")
    preview_parser.add_argument(
        "--show",
        type=int,
        default=DEFAULT_SHOW_COUNT,
        help=f"Combinations to print per job (default: {DEFAULT_SHOW_COUNT})",
    )

    run_parser = subparsers.add_parser("run", help="Run jobs once")
    run_parser.add_argument(
        "--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})"
    )
    run_parser.add_argument("--job", help="Run one job by code")
    run_parser.add_argument("--dry-run", action="store_true", help="Expand and batch without calling")

    daemon_parser = subparsers.add_parser("daemon", help="Run scheduler daemon loop")
    daemon_parser.add_argument(
        "--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})"
    )
    daemon_parser.add_argument(
        "--poll-seconds",
        type=int,
        default=DEFAULT_POLL_SECONDS,
        help=f"Polling interval in seconds (default: {DEFAULT_POLL_SECONDS})",
    )

    stats_parser = subparsers.add_parser("stats", help="Summarize recorded executions")
    stats_parser.add_argument(
        "--config", default=argparse.SUPPRESS, help=f"Path to config (default: {DEFAULT_CONFIG})"
    )
    stats_parser.add_argument("--since", help="Only runs started at or after this ISO date/datetime")
    stats_parser.add_argument("--until", help="Only runs started at or before this ISO date/datetime")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(getattr(args, "config", None) or DEFAULT_CONFIG).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "check-cron":
            return command_check_cron(args.expression)
        if args.command == "preview":
            if args.count <= 0:
                raise HarvestError("--count must be >= 1")
            if args.show < 0:
                raise HarvestError("--show must be >= 0")
            return command_preview(config_path, job_code=args.job, count=args.count, show=args.show)
        if args.command == "run":
            return command_run(config_path, job_code=args.job, dry_run=args.dry_run)
        if args.command == "daemon":
            if args.poll_seconds <= 0:
                raise HarvestError("--poll-seconds must be >= 1")
            return command_daemon(config_path, poll_seconds=args.poll_seconds)
        if args.command == "stats":
            return command_stats(config_path, since=args.since, until=args.until)
        raise HarvestError(f"Unsupported command: {args.command}")
    except HarvestError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover - defensive
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
