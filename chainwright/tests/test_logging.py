"""Tests for structured logging (chainwright/core/logging.py)."""

from __future__ import annotations

import json
import logging

from chainwright.core.logging import (
    DevFormatter,
    JSONFormatter,
    ScenarioLogFilter,
    scenario_context,
)


def _record(msg: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("chainwright.test", logging.INFO, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    def test_json_formatter_promotes_context_fields(self):
        out = json.loads(JSONFormatter().format(_record(migration="1000_a", network="mainnet")))
        assert out["message"] == "hello"
        assert out["level"] == "INFO"
        assert out["migration"] == "1000_a"
        assert out["network"] == "mainnet"
        assert "scenario" not in out

    def test_dev_formatter_prefixes_scenario(self):
        out = DevFormatter().format(_record(scenario="upgrade"))
        assert "[upgrade] hello" in out


class TestScenarioLogFilter:
    def test_stamps_current_scenario(self):
        token = scenario_context.set(("upgrade", ["1000_a", "1000_b"]))
        try:
            record = _record()
            assert ScenarioLogFilter().filter(record) is True
        finally:
            scenario_context.reset(token)
        assert record.scenario == "upgrade"
        assert record.subset == ["1000_a", "1000_b"]

    def test_no_scenario_leaves_record_alone(self):
        record = _record()
        ScenarioLogFilter().filter(record)
        assert not hasattr(record, "scenario")
