"""Tests for OptimizationReporter — reports and preset export."""

import json

import yaml

from tick_optimizer.engine.models import (
    BacktestMetrics,
    BacktestResult,
    GridSearchResult,
    OptimizationMetric,
    PhasedOptimizationResult,
    PhaseSummary,
)
from tick_optimizer.engine.reporter import OptimizationReporter


def _result(x: float, pnl: float) -> BacktestResult:
    return BacktestResult(
        parameters={"x": x, "fixed": 1.0},
        metrics=BacktestMetrics(total_pnl=pnl, sharpe_ratio=pnl / 10),
        trade_count=4,
    )


def _grid_result() -> GridSearchResult:
    return GridSearchResult(
        run_id="grid-1",
        optimize_metric=OptimizationMetric.TOTAL_PNL,
        results=[_result(3.0, 30.0), _result(2.0, 20.0), _result(1.0, 10.0)],
        combinations_tested=3,
        duration_seconds=1.23456,
    )


class TestGridReport:

    def test_report_contents(self):
        report = OptimizationReporter().generate_grid_report(_grid_result(), top_n=2)

        assert report["run_id"] == "grid-1"
        assert report["combinations_tested"] == 3
        assert report["duration_seconds"] == 1.23
        assert len(report["top_results"]) == 2
        assert report["best_params"] == {"x": 3.0, "fixed": 1.0}
        assert report["best_metric"] == 30.0

    def test_param_impact(self):
        impact = OptimizationReporter().param_impact(_grid_result())
        assert impact == {"x": 1.0}

    def test_param_impact_needs_two_results(self):
        result = _grid_result()
        result.results = result.results[:1]
        assert OptimizationReporter().param_impact(result) == {}


class TestPhasedReport:

    def test_changed_params(self):
        best = _result(3.0, 30.0)
        result = PhasedOptimizationResult(
            run_id="phased-1",
            final_params=dict(best.parameters),
            final_metrics=best.metrics,
            total_combinations_tested=3,
            phase_summaries=[
                PhaseSummary(phase=1, name="X", combinations_tested=3, best_params=dict(best.parameters),
                             top_results=[best], optimize_metric=OptimizationMetric.TOTAL_PNL),
                PhaseSummary(phase=2, name="Y", best_params=dict(best.parameters), skipped=True,
                             skip_reason="No parameter ranges configured"),
            ],
        )

        report = OptimizationReporter().generate_phased_report(result, base_params={"x": 1.0, "fixed": 1.0})

        assert report["phases_run"] == 1
        assert report["phases_skipped"] == 1
        assert report["changed_params"] == {"x": {"from": 1.0, "to": 3.0}}
        assert report["phases"][0]["best_metric"] == 30.0
        assert report["phases"][1]["best_metric"] is None


class TestPresetExport:

    def test_yaml_preset(self):
        best = _result(3.0, 30.0)
        text = OptimizationReporter().export_preset_yaml("price-band", best.parameters, best.metrics, run_id="r1")
        preset = yaml.safe_load(text)

        assert preset["strategy"] == "price-band"
        assert preset["params"] == {"x": 3.0, "fixed": 1.0}
        assert preset["source_run_id"] == "r1"
        assert preset["_backtest_metrics"]["total_pnl"] == 30.0

    def test_json_preset_without_metrics(self):
        text = OptimizationReporter().export_preset_json("price-band", {"x": 1})
        preset = json.loads(text)
        assert preset == {"strategy": "price-band", "params": {"x": 1.0}}
