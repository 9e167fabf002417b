"""YAML scenario configuration loader for stampede runs."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

import yaml

from .exceptions import StampedeConfigError
from .logging_config import get_logger
from .models import (
    DEFAULT_PRODUCT_IDS,
    Phase,
    PhaseKind,
    ScenarioConfig,
    ScenarioKind,
    SelectionStrategy,
    ThinkTime,
)
from .presets import get_preset, preset_phases
from .report import parse_thresholds
from .schedule import parse_duration, stages_to_phases
from .workload import TargetPool

logger = get_logger("config")

DEFAULT_PRESET = "smoke"
DEFAULT_THINK_TIME_MS = 100.0
SCHEDULE_KEYS = ("phases", "stages", "preset")
THINK_TIME_KEYS = ("think_time_ms", "think_time_min_ms", "think_time_max_ms")

KNOWN_KEYS = frozenset(
    {
        "name", "scenario", "base_url", "api_prefix", "coupon_id", "order_patterns",
        "selection", "user_id_start", "user_id_end", "user_ids", "user_ids_file",
        "products", "max_items", "max_quantity", "recipient_name", "shipping_address",
        "shipping_phone", "user_coupon_id", "thresholds", "exhaustion_marker",
        "order_number_field", "coupon_stock", "control_interval_seconds",
        "grace_period_seconds", "timeout_seconds", "http2", "max_connections", "headers",
        *SCHEDULE_KEYS, *THINK_TIME_KEYS,
    }
)


def _validate_scenario_config(c: ScenarioConfig) -> None:
    """Validate ScenarioConfig bounds. Raises StampedeConfigError if invalid."""
    if not c.phases:
        raise StampedeConfigError("Schedule requires at least one phase")
    if not c.base_url.startswith(("http://", "https://")):
        raise StampedeConfigError("base_url must start with http:// or https://", context={"base_url": c.base_url})
    if not str(c.coupon_id).strip():
        raise StampedeConfigError("coupon_id must not be empty")
    if c.user_id_start < 0:
        raise StampedeConfigError("user_id_start must be >= 0")
    if not c.user_ids and c.user_id_end < c.user_id_start:
        raise StampedeConfigError(
            "Caller pool is empty: user_id_end is below user_id_start",
            context={"user_id_start": c.user_id_start, "user_id_end": c.user_id_end},
        )
    if c.scenario == ScenarioKind.ORDER:
        if not c.order_patterns:
            raise StampedeConfigError("order scenario requires at least one order pattern")
        if not c.product_ids:
            raise StampedeConfigError("order scenario requires a non-empty product list")
    if c.max_items < 1:
        raise StampedeConfigError("max_items must be >= 1")
    if c.max_quantity < 1:
        raise StampedeConfigError("max_quantity must be >= 1")
    if c.think_time.min_ms < 0 or c.think_time.max_ms < c.think_time.min_ms:
        raise StampedeConfigError(
            "think time must satisfy 0 <= min <= max",
            context={"min_ms": c.think_time.min_ms, "max_ms": c.think_time.max_ms},
        )
    if c.coupon_stock is not None and c.coupon_stock < 0:
        raise StampedeConfigError("coupon_stock must be >= 0 when set")
    if c.control_interval_seconds <= 0:
        raise StampedeConfigError("control_interval_seconds must be > 0")
    if c.grace_period_seconds < 0:
        raise StampedeConfigError("grace_period_seconds must be >= 0")
    if c.timeout_seconds <= 0:
        raise StampedeConfigError("timeout_seconds must be > 0")
    if c.max_connections < 1:
        raise StampedeConfigError("max_connections must be >= 1")


def validate_scenario_config(config: ScenarioConfig) -> None:
    """Validate ScenarioConfig. Raises StampedeConfigError if invalid."""
    _validate_scenario_config(config)


def _parse_phase(entry: Any, index: int, previous_level: int) -> Phase:
    if not isinstance(entry, dict):
        raise StampedeConfigError("Each phase must be a mapping", context={"index": index})
    if "duration" not in entry:
        raise StampedeConfigError("Phase is missing duration", context={"index": index})
    duration = parse_duration(entry["duration"])
    kind_raw = entry.get("kind") or ("hold" if "level" in entry else "ramp")
    try:
        kind = PhaseKind(str(kind_raw).strip().lower())
    except ValueError as e:
        raise StampedeConfigError(
            f"Unknown phase kind: {kind_raw!r}", context={"index": index}, original_error=e
        ) from e
    try:
        if kind == PhaseKind.HOLD:
            level = int(entry.get("level", entry.get("to", previous_level)))
            return Phase.hold(level, duration)
        return Phase.ramp(int(entry.get("from", previous_level)), int(entry["to"]), duration)
    except KeyError as e:
        raise StampedeConfigError("Ramp phase is missing 'to'", context={"index": index}) from e
    except (TypeError, ValueError) as e:
        raise StampedeConfigError(
            f"Invalid phase value: {e}", context={"index": index}, original_error=e
        ) from e


def _parse_schedule(raw: Mapping[str, Any]) -> tuple[tuple[Phase, ...], str | None]:
    given = [k for k in SCHEDULE_KEYS if raw.get(k) is not None]
    if len(given) > 1:
        raise StampedeConfigError(
            "Only one of phases, stages or preset may be given",
            context={"given": ", ".join(given)},
        )
    if not given:
        logger.debug("No schedule given, using preset '%s'", DEFAULT_PRESET)
        return tuple(preset_phases(DEFAULT_PRESET)), DEFAULT_PRESET
    key = given[0]
    if key == "preset":
        name = str(raw["preset"]).strip().lower()
        return tuple(preset_phases(name)), name
    entries = raw[key]
    if not isinstance(entries, list) or not entries:
        raise StampedeConfigError(f"{key} must be a non-empty list")
    if key == "stages":
        stages = []
        for i, s in enumerate(entries):
            if not isinstance(s, dict) or "duration" not in s or "target" not in s:
                raise StampedeConfigError("Each stage needs duration and target", context={"index": i})
            try:
                stages.append((parse_duration(s["duration"]), int(s["target"])))
            except (TypeError, ValueError) as e:
                raise StampedeConfigError(
                    f"Invalid stage value: {e}", context={"index": i}, original_error=e
                ) from e
        return tuple(stages_to_phases(stages)), None
    phases: list[Phase] = []
    level = 0
    for i, entry in enumerate(entries):
        phase = _parse_phase(entry, i, level)
        phases.append(phase)
        level = phase.to_level
    return tuple(phases), None


def _parse_think_time(raw: Mapping[str, Any], default: ThinkTime | None = None) -> ThinkTime:
    if raw.get("think_time_min_ms") is not None or raw.get("think_time_max_ms") is not None:
        lo = float(raw.get("think_time_min_ms", 0))
        hi = float(raw.get("think_time_max_ms", lo))
        return ThinkTime(lo, hi)
    if raw.get("think_time_ms") is None:
        return default if default is not None else ThinkTime(DEFAULT_THINK_TIME_MS, DEFAULT_THINK_TIME_MS)
    fixed = float(raw["think_time_ms"])
    return ThinkTime(fixed, fixed)


def _parse_products(raw: Any) -> tuple[int, ...]:
    if raw is None:
        return DEFAULT_PRODUCT_IDS
    if not isinstance(raw, list):
        raise StampedeConfigError("products must be a list")
    ids: list[int] = []
    for p in raw:
        if isinstance(p, dict):
            p = p.get("id", p.get("productId"))
        ids.append(int(p))
    return tuple(ids)


def _parse_enum(enum_cls: type, value: Any, key: str) -> Any:
    text = str(value).strip().lower().replace("-", "_")
    try:
        return enum_cls(text)
    except ValueError as e:
        raise StampedeConfigError(
            f"Unknown {key}: {value!r}",
            context={"allowed": ", ".join(m.value for m in enum_cls)},
            original_error=e,
        ) from e


def _parse_user_ids(raw: Mapping[str, Any], base_dir: Path | None) -> tuple[str, ...]:
    if raw.get("user_ids_file"):
        path = Path(raw["user_ids_file"])
        if not path.is_absolute() and base_dir is not None:
            path = base_dir / path
        pool = TargetPool.from_file(path)
        return tuple(pool.at(i) for i in range(pool.size))
    ids = raw.get("user_ids")
    if ids is None:
        return ()
    if not isinstance(ids, list):
        raise StampedeConfigError("user_ids must be a list")
    if not ids:
        raise StampedeConfigError("user_ids is empty")
    return tuple(str(i) for i in ids)


def config_from_dict(raw: Mapping[str, Any], base_dir: str | Path | None = None) -> ScenarioConfig:
    """Build and validate a ScenarioConfig from a parsed YAML mapping.

    base_dir resolves a relative user_ids_file (the config file's directory).
    """
    unknown = sorted(set(raw) - KNOWN_KEYS)
    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
    base = Path(base_dir) if base_dir is not None else None
    phases, preset = _parse_schedule(raw)
    # a preset supplies thresholds and think time the file leaves unset
    defaults = get_preset(preset) if preset else None
    thresholds = raw.get("thresholds")
    if thresholds is None and defaults is not None:
        thresholds = defaults.thresholds
    scenario = _parse_enum(ScenarioKind, raw.get("scenario") or ScenarioKind.COUPON_FCFS.value, "scenario")
    selection = _parse_enum(SelectionStrategy, raw.get("selection") or SelectionStrategy.RANDOM.value, "selection")
    patterns = raw.get("order_patterns") or ["orchestration"]
    if isinstance(patterns, str):
        patterns = [patterns]
    headers = raw.get("headers") or {}
    if not isinstance(headers, dict):
        raise StampedeConfigError("headers must be a mapping")
    coupon_stock = raw.get("coupon_stock")
    user_coupon_id = raw.get("user_coupon_id")

    try:
        config = ScenarioConfig(
            phases=phases,
            name=str(raw.get("name") or "stampede"),
            scenario=scenario,
            base_url=str(raw.get("base_url") or "http://localhost:8080"),
            api_prefix=str(raw.get("api_prefix", "/api") or ""),
            coupon_id=str(raw.get("coupon_id", "1")),
            order_patterns=tuple(str(p).strip().lower() for p in patterns),
            selection=selection,
            user_id_start=int(raw.get("user_id_start", 1)),
            user_id_end=int(raw.get("user_id_end", 1000)),
            user_ids=_parse_user_ids(raw, base),
            product_ids=_parse_products(raw.get("products")),
            max_items=int(raw.get("max_items", 3)),
            max_quantity=int(raw.get("max_quantity", 3)),
            recipient_name=str(raw.get("recipient_name", "Load Tester")),
            shipping_address=str(raw.get("shipping_address", "123 Teheran-ro, Gangnam-gu, Seoul")),
            shipping_phone=str(raw.get("shipping_phone", "010-1234-5678")),
            user_coupon_id=int(user_coupon_id) if user_coupon_id is not None else None,
            think_time=_parse_think_time(raw, defaults.think_time if defaults else None),
            thresholds=parse_thresholds(thresholds),
            exhaustion_marker=str(raw.get("exhaustion_marker", "재고")),
            order_number_field=str(raw.get("order_number_field", "orderNumber")),
            coupon_stock=int(coupon_stock) if coupon_stock is not None else None,
            control_interval_seconds=parse_duration(raw.get("control_interval_seconds", 1.0)),
            grace_period_seconds=parse_duration(raw.get("grace_period_seconds", 10)),
            timeout_seconds=parse_duration(raw.get("timeout_seconds", 30)),
            http2=bool(raw.get("http2", False)),
            max_connections=int(raw.get("max_connections", 1000)),
            headers={str(k): str(v) for k, v in headers.items()},
            preset=preset,
        )
    except (TypeError, ValueError) as e:
        raise StampedeConfigError(f"Invalid config value: {e}", original_error=e) from e

    _validate_scenario_config(config)
    logger.debug(
        "Loaded config: name=%s, scenario=%s, phases=%d, duration=%.1fs",
        config.name, config.scenario.value, len(config.phases), config.total_duration_seconds,
    )
    return config


def apply_overrides(raw: Mapping[str, Any], overrides: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge override values (e.g. from the CLI) into raw config.

    An overriding schedule or think time replaces every form given in the file.
    """
    merged = dict(raw)
    if not overrides:
        return merged
    updates = {k: v for k, v in overrides.items() if v is not None}
    if any(k in updates for k in SCHEDULE_KEYS):
        for k in SCHEDULE_KEYS:
            merged.pop(k, None)
    if any(k in updates for k in THINK_TIME_KEYS):
        for k in THINK_TIME_KEYS:
            merged.pop(k, None)
    merged.update(updates)
    return merged


def load_config(path: str | Path | None = None, overrides: Mapping[str, Any] | None = None) -> ScenarioConfig:
    """Load scenario configuration from a YAML file.

    Args:
        path: Path to YAML configuration file; None builds from overrides and defaults only
        overrides: Raw values applied on top of the file before validation

    Returns:
        Validated ScenarioConfig instance

    Raises:
        StampedeConfigError: If file not found, invalid YAML, or validation fails
    """
    if path is None:
        return config_from_dict(apply_overrides({}, overrides))

    p = Path(path)
    if not p.exists():
        raise StampedeConfigError(
            f"Config file not found: {path}",
            context={"path": str(path)}
        )

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.exception("Failed to parse YAML config file")
        raise StampedeConfigError(
            f"Invalid YAML syntax in config file: {e}",
            context={"path": str(path)},
            original_error=e
        ) from e
    except OSError as e:
        logger.exception("Failed to read config file")
        raise StampedeConfigError(
            f"Cannot read config file: {e}",
            context={"path": str(path)},
            original_error=e
        ) from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise StampedeConfigError(
            "Config must be a YAML object/dictionary",
            context={"path": str(path), "actual_type": type(raw).__name__}
        )

    try:
        return config_from_dict(apply_overrides(raw, overrides), base_dir=p.parent)
    except StampedeConfigError as e:
        raise e.with_context(path=str(path))
