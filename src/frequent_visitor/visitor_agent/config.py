"""Visitor agent profile loader (policy + wiring)."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import re
from typing import Any, Mapping

import yaml

from .checkpoints import CHECKPOINT_INTERVAL_SECONDS
from .retry import BACKOFF_SECONDS, NUM_RETRIES
from .window import FrequencyWindowPolicy, IntervalUnit


AGENT_NAME = "FrequentVisitorIdentificationAgent"
STREAM_NAME = "ema-event-stream"
DEFAULT_REGION = "us-east-2"

_ENV_PATTERN = re.compile(r"^\$\{([^}:]+)(?::-([^}]*))?\}$")
_EVENT_BUS_KINDS = {"kinesis", "file"}
_START_POSITIONS = {"latest", "trim_horizon"}


class VisitorAgentConfigError(ValueError):
    """Raised when a visitor agent profile is invalid."""


@dataclass(frozen=True)
class VisitorAgentPolicy:
    agent_name: str = AGENT_NAME
    window: FrequencyWindowPolicy = field(default_factory=FrequencyWindowPolicy)
    retry_attempts: int = NUM_RETRIES
    backoff_seconds: float = BACKOFF_SECONDS
    checkpoint_interval_seconds: float = CHECKPOINT_INTERVAL_SECONDS


@dataclass(frozen=True)
class VisitorAgentWiring:
    event_bus_kind: str = "kinesis"
    stream_name: str = STREAM_NAME
    region: str | None = DEFAULT_REGION
    endpoint_url: str | None = None
    event_bus_root: str = "runs/visitor-agent/eb"
    start_position: str = "latest"
    poll_max_records: int = 100
    poll_sleep_seconds: float = 1.0
    checkpoint_path: Path = Path("runs/visitor-agent/checkpoints.sqlite")
    log_level: str = "INFO"
    log_path: str | None = None


@dataclass(frozen=True)
class VisitorAgentProfile:
    profile_id: str = "default"
    policy: VisitorAgentPolicy = field(default_factory=VisitorAgentPolicy)
    wiring: VisitorAgentWiring = field(default_factory=VisitorAgentWiring)

    @classmethod
    def load(cls, path: Path) -> "VisitorAgentProfile":
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        if not isinstance(payload, Mapping):
            raise VisitorAgentConfigError(f"visitor agent profile must be a mapping: {path}")
        if isinstance(payload.get("visitor_agent"), Mapping):
            payload = payload["visitor_agent"]
        return parse_profile(payload)


def parse_profile(payload: Mapping[str, Any]) -> VisitorAgentProfile:
    policy = _section(payload, "policy")
    wiring = _section(payload, "wiring")
    window = _section(policy, "window")

    unit_token = str(_env(window.get("interval_unit") or IntervalUnit.MINUTE.value)).strip().lower()
    try:
        interval_unit = IntervalUnit(unit_token)
    except ValueError as exc:
        raise VisitorAgentConfigError(f"unsupported interval_unit: {unit_token!r}") from exc
    try:
        window_policy = FrequencyWindowPolicy(
            window_size=_int(window.get("size"), 5, "window.size"),
            interval_unit=interval_unit,
            threshold=_int(window.get("threshold"), 2, "window.threshold"),
        )
    except ValueError as exc:
        raise VisitorAgentConfigError(str(exc)) from exc

    retry_attempts = _int(policy.get("retry_attempts"), NUM_RETRIES, "retry_attempts")
    if retry_attempts < 1:
        raise VisitorAgentConfigError("retry_attempts must be >= 1")
    backoff_seconds = _float(policy.get("backoff_seconds"), BACKOFF_SECONDS, "backoff_seconds")
    if backoff_seconds < 0:
        raise VisitorAgentConfigError("backoff_seconds must be >= 0")

    event_bus_kind = str(_env(wiring.get("event_bus_kind") or "kinesis")).strip().lower()
    if event_bus_kind not in _EVENT_BUS_KINDS:
        raise VisitorAgentConfigError(f"unsupported event_bus_kind: {event_bus_kind!r}")
    start_position = str(_env(wiring.get("start_position") or "latest")).strip().lower()
    if start_position not in _START_POSITIONS:
        raise VisitorAgentConfigError(f"unsupported start_position: {start_position!r}")

    return VisitorAgentProfile(
        profile_id=str(_env(payload.get("profile_id") or "default")).strip(),
        policy=VisitorAgentPolicy(
            agent_name=str(_env(policy.get("agent_name") or AGENT_NAME)).strip(),
            window=window_policy,
            retry_attempts=retry_attempts,
            backoff_seconds=backoff_seconds,
            checkpoint_interval_seconds=max(
                1.0,
                _float(policy.get("checkpoint_interval_seconds"), CHECKPOINT_INTERVAL_SECONDS, "checkpoint_interval_seconds"),
            ),
        ),
        wiring=VisitorAgentWiring(
            event_bus_kind=event_bus_kind,
            stream_name=str(_env(wiring.get("stream_name") or STREAM_NAME)).strip(),
            region=_none_if_blank(_env(wiring.get("region") or os.getenv("AWS_DEFAULT_REGION") or DEFAULT_REGION)),
            endpoint_url=_none_if_blank(_env(wiring.get("endpoint_url") or os.getenv("KINESIS_ENDPOINT_URL"))),
            event_bus_root=str(_env(wiring.get("event_bus_root") or "runs/visitor-agent/eb")).strip(),
            start_position=start_position,
            poll_max_records=max(1, _int(wiring.get("poll_max_records"), 100, "poll_max_records")),
            poll_sleep_seconds=max(0.05, _float(wiring.get("poll_sleep_seconds"), 1.0, "poll_sleep_seconds")),
            checkpoint_path=Path(
                str(_env(wiring.get("checkpoint_path") or "runs/visitor-agent/checkpoints.sqlite")).strip()
            ),
            log_level=str(_env(wiring.get("log_level") or "INFO")).strip().upper(),
            log_path=_none_if_blank(_env(wiring.get("log_path"))),
        ),
    )


def _section(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise VisitorAgentConfigError(f"{key} must be a mapping")
    return value


def _env(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    token = value.strip()
    match = _ENV_PATTERN.fullmatch(token)
    if not match:
        return value
    return os.getenv(match.group(1), match.group(2) or "")


def _int(value: Any, default: int, name: str) -> int:
    value = _env(value)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise VisitorAgentConfigError(f"{name} must be an integer, got {value!r}") from exc


def _float(value: Any, default: float, name: str) -> float:
    value = _env(value)
    if value in (None, ""):
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise VisitorAgentConfigError(f"{name} must be a number, got {value!r}") from exc


def _none_if_blank(value: Any) -> str | None:
    text = str(value or "").strip()
    return text or None
