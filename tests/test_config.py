"""Unit tests for YAML scenario configuration."""

from __future__ import annotations

from pathlib import Path

import pytest

from stampede.config import apply_overrides, config_from_dict, load_config, validate_scenario_config
from stampede.exceptions import StampedeConfigError
from stampede.models import Phase, ScenarioConfig, ScenarioKind, SelectionStrategy, ThinkTime
from stampede.presets import preset_phases


def test_load_coupon_config(tmp_path_config_coupon: Path) -> None:
    config = load_config(tmp_path_config_coupon)
    assert config.name == "coupon-smoke"
    assert config.scenario == ScenarioKind.COUPON_FCFS
    assert config.coupon_id == "7"
    assert config.selection == SelectionStrategy.SEQUENTIAL_UNIQUE
    assert config.user_id_end == 500
    assert config.phases == (Phase.ramp(0, 10, 10), Phase.hold(10, 60))
    assert config.think_time == ThinkTime(100, 100)
    assert config.coupon_stock == 100
    assert config.preset is None
    assert {t.name for t in config.thresholds} == {"error_rate", "p95"}


def test_load_order_config(tmp_path_config_order: Path) -> None:
    config = load_config(tmp_path_config_order)
    assert config.scenario == ScenarioKind.ORDER
    assert config.order_patterns == ("orchestration", "choreography")
    assert config.selection == SelectionStrategy.FIXED_POOL_CYCLIC
    assert len(config.user_ids) == 2
    assert config.product_ids == (1, 2, 3)
    assert config.phases == (Phase.ramp(0, 50, 30), Phase.hold(50, 120), Phase.ramp(50, 0, 30))
    assert config.think_time == ThinkTime(2000, 5000)
    names = {t.name: t for t in config.thresholds}
    assert names["latency"].metric == "p95"
    assert names["latency"].value == 1000


def test_defaults_use_smoke_preset() -> None:
    config = config_from_dict({})
    assert config.preset == "smoke"
    assert config.phases == tuple(preset_phases("smoke"))
    assert config.base_url == "http://localhost:8080"
    assert config.api_prefix == "/api"
    assert config.exhaustion_marker == "재고"
    assert config.order_number_field == "orderNumber"
    assert config.control_interval_seconds == 1.0
    assert config.grace_period_seconds == 10.0


def test_preset_by_name() -> None:
    config = config_from_dict({"preset": "Load"})
    assert config.preset == "load"
    assert config.total_duration_seconds == 120


def test_multiple_schedules_rejected() -> None:
    with pytest.raises(StampedeConfigError):
        config_from_dict({"preset": "load", "stages": [{"duration": "1s", "target": 1}]})


def test_phase_kind_inferred_and_from_defaults_to_previous_level() -> None:
    config = config_from_dict(
        {"phases": [{"to": 20, "duration": 5}, {"level": 20, "duration": "1m"}, {"to": 0, "duration": 5}]}
    )
    assert config.phases == (Phase.ramp(0, 20, 5), Phase.hold(20, 60), Phase.ramp(20, 0, 5))


@pytest.mark.parametrize(
    "phases",
    [
        [],
        [{"kind": "hold", "level": 5}],
        [{"kind": "hold", "level": 5, "duration": 0}],
        [{"kind": "ramp", "from": -1, "to": 5, "duration": 1}],
        [{"kind": "ramp", "duration": 1}],
        [{"kind": "jump", "to": 5, "duration": 1}],
        ["hold 5"],
    ],
)
def test_invalid_phases_rejected(phases) -> None:
    with pytest.raises(StampedeConfigError):
        config_from_dict({"phases": phases})


def test_invalid_stage_rejected() -> None:
    with pytest.raises(StampedeConfigError):
        config_from_dict({"stages": [{"duration": "10s"}]})


def test_unknown_enum_values_rejected() -> None:
    with pytest.raises(StampedeConfigError):
        config_from_dict({"scenario": "refund"})
    with pytest.raises(StampedeConfigError):
        config_from_dict({"selection": "round_robin"})


def test_enum_values_accept_dashes() -> None:
    config = config_from_dict({"scenario": "coupon-fcfs", "selection": "fixed-pool-cyclic"})
    assert config.selection == SelectionStrategy.FIXED_POOL_CYCLIC


def test_empty_user_range_rejected() -> None:
    with pytest.raises(StampedeConfigError):
        config_from_dict({"user_id_start": 10, "user_id_end": 5})


def test_empty_user_list_rejected() -> None:
    with pytest.raises(StampedeConfigError):
        config_from_dict({"user_ids": []})


def test_user_ids_file_relative_to_config(tmp_path: Path) -> None:
    (tmp_path / "users.txt").write_text("a\nb\nc\n", encoding="utf-8")
    cfg = tmp_path / "scenario.yaml"
    cfg.write_text("user_ids_file: users.txt\nselection: fixed_pool_cyclic\n", encoding="utf-8")
    config = load_config(cfg)
    assert config.user_ids == ("a", "b", "c")


def test_invalid_threshold_rejected() -> None:
    with pytest.raises(StampedeConfigError):
        config_from_dict({"thresholds": ["p95 lower than 10"]})


def test_invalid_think_time_rejected() -> None:
    with pytest.raises(StampedeConfigError):
        config_from_dict({"think_time_min_ms": 500, "think_time_max_ms": 100})


def test_invalid_value_type_rejected() -> None:
    with pytest.raises(StampedeConfigError):
        config_from_dict({"max_items": "many"})


def test_invalid_base_url_rejected() -> None:
    with pytest.raises(StampedeConfigError):
        config_from_dict({"base_url": "localhost:8080"})


def test_load_config_file_not_found() -> None:
    with pytest.raises(StampedeConfigError) as exc:
        load_config("/nonexistent/scenario.yaml")
    assert "not found" in exc.value.message


def test_load_config_invalid_yaml(tmp_path: Path) -> None:
    p = tmp_path / "bad.yaml"
    p.write_text("phases: [unclosed\n", encoding="utf-8")
    with pytest.raises(StampedeConfigError):
        load_config(p)


def test_load_config_not_a_mapping(tmp_path: Path) -> None:
    p = tmp_path / "list.yaml"
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(StampedeConfigError):
        load_config(p)


def test_errors_carry_path(tmp_path: Path) -> None:
    p = tmp_path / "bad.yaml"
    p.write_text("max_quantity: 0\n", encoding="utf-8")
    with pytest.raises(StampedeConfigError) as exc:
        load_config(p)
    assert exc.value.context["path"] == str(p)


def test_overrides_replace_schedule_and_think_time(tmp_path_config_coupon: Path) -> None:
    config = load_config(
        tmp_path_config_coupon,
        overrides={"preset": "quick", "think_time_ms": 0, "base_url": "http://target:9000", "coupon_id": None},
    )
    assert config.preset == "quick"
    assert config.phases == tuple(preset_phases("quick"))
    assert config.think_time == ThinkTime(0, 0)
    assert config.base_url == "http://target:9000"
    assert config.coupon_id == "7"


def test_overrides_are_validated(tmp_path_config_coupon: Path) -> None:
    with pytest.raises(StampedeConfigError):
        load_config(tmp_path_config_coupon, overrides={"control_interval_seconds": 0})


def test_load_config_without_file() -> None:
    config = load_config(None, overrides={"scenario": "order"})
    assert config.scenario == ScenarioKind.ORDER


def test_apply_overrides_drops_none() -> None:
    merged = apply_overrides({"think_time_min_ms": 1, "think_time_max_ms": 2}, {"think_time_ms": 5, "preset": None})
    assert merged == {"think_time_ms": 5}


def test_validate_scenario_config_direct() -> None:
    config = ScenarioConfig(phases=(Phase.hold(1, 1),), grace_period_seconds=-1)
    with pytest.raises(StampedeConfigError):
        validate_scenario_config(config)


def test_preset_supplies_thresholds_and_think_time() -> None:
    config = config_from_dict({"preset": "spike"})
    by_name = {t.name: t for t in config.thresholds}
    assert set(by_name) == {"error_rate", "p95", "p99"}
    assert by_name["error_rate"].value == 10
    assert by_name["p99"].value == 3000
    assert config.think_time == ThinkTime(100, 100)


def test_file_values_win_over_preset_defaults() -> None:
    config = config_from_dict(
        {"preset": "order_load", "thresholds": ["p95 < 500ms"], "think_time_min_ms": 10, "think_time_max_ms": 20}
    )
    assert [t.metric for t in config.thresholds] == ["p95"]
    assert config.think_time == ThinkTime(10, 20)


def test_cli_preset_keeps_file_thresholds(tmp_path_config_order: Path) -> None:
    config = load_config(tmp_path_config_order, overrides={"preset": "spike"})
    assert {t.name for t in config.thresholds} == {"errors", "latency"}
    assert config.think_time == ThinkTime(2000, 5000)


def test_explicit_phases_keep_generic_defaults() -> None:
    config = config_from_dict({"phases": [{"kind": "hold", "level": 1, "duration": 1}]})
    assert {t.name for t in config.thresholds} == {"error_rate", "p95"}
    assert config.think_time == ThinkTime(100, 100)


def test_reserved_threshold_name_rejected() -> None:
    with pytest.raises(StampedeConfigError):
        config_from_dict({"thresholds": {"no_double_issuance": "error_rate < 1%"}})


def test_infinite_phase_duration_rejected() -> None:
    with pytest.raises(StampedeConfigError):
        config_from_dict({"phases": [{"kind": "hold", "level": 1, "duration": "inf"}]})
