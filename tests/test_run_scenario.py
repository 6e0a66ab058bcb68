import importlib.util
import json
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture(scope="module")
def run_scenario_module():
    spec = importlib.util.spec_from_file_location("run_scenario", ROOT / "scripts" / "run_scenario.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_downtown_shift(run_scenario_module):
    config = json.loads((ROOT / "scenarios" / "downtown_shift.json").read_text())
    center = run_scenario_module.build_center(config)

    report = run_scenario_module.run_scenario(center, config)

    outcomes = report["outcomes"]
    assert [o["ok"] for o in outcomes] == [True, True, True, True, True, False, False, True, False, True]
    assert outcomes[5]["error"] == "conflict"
    assert outcomes[6]["error"] == "invalid_transition"
    assert outcomes[8]["error"] == "conflict"
    ranked = outcomes[3]["result"]
    assert [m["eta"] for m in ranked] == sorted(m["eta"] for m in ranked)
    assert [t["status"] for t in report["trips"]] == ["COMPLETED"]
    assert {a["status"] for a in report["ambulances"]} == {"AVAILABLE"}
    assert report["event_counts"]["TripCreated"] == 1


def test_unknown_op_is_reported(run_scenario_module):
    center = run_scenario_module.build_center({})
    report = run_scenario_module.run_scenario(center, {"steps": [{"op": "teleport"}]})
    assert report["outcomes"] == [{"step": 0, "op": "teleport", "ok": False, "error": "unknown_op"}]


def test_save_results(run_scenario_module, tmp_path):
    target = tmp_path / "out" / "report.json"
    run_scenario_module.save_results(target, {"scenario": "x"})
    assert json.loads(target.read_text()) == {"scenario": "x"}
