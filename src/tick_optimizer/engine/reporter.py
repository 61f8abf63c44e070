"""
OptimizationReporter — report generation and preset export.

Generates:
- Grid search reports with parameter impact analysis
- Phased run reports (per-phase summary and parameter changes)
- JSON/YAML presets of the winning parameters
"""

import json
from typing import Any

import numpy as np
import yaml

from tick_optimizer.engine.models import (
    BacktestMetrics,
    GridSearchResult,
    ParameterCombination,
    PhasedOptimizationResult,
)
from tick_optimizer.logging import get_logger

logger = get_logger(__name__)


class OptimizationReporter:
    """Builds reports and presets from optimization results."""

    def generate_grid_report(self, result: GridSearchResult, top_n: int = 5) -> dict[str, Any]:
        """Grid search report with the best results and parameter impact."""
        metric = result.optimize_metric
        report: dict[str, Any] = {
            "run_id": result.run_id,
            "optimize_metric": metric.value,
            "combinations_tested": result.combinations_tested,
            "duration_seconds": round(result.duration_seconds, 2),
            "top_results": [r.to_dict() for r in result.top_n(top_n)],
            "param_impact": self.param_impact(result),
        }
        if result.best is not None:
            report["best_params"] = dict(result.best.parameters)
            report["best_metric"] = round(
                result.best.metrics.metric_value(metric, result.composite_weights), 6
            )

        logger.info("Grid report generated", run_id=result.run_id, results=len(result.results))
        return report

    def param_impact(self, result: GridSearchResult) -> dict[str, float]:
        """|correlation| between each varied parameter and the ranking metric."""
        if len(result.results) < 2:
            return {}

        metric = result.optimize_metric
        scores = np.array(
            [r.metrics.metric_value(metric, result.composite_weights) for r in result.results]
        )
        impact: dict[str, float] = {}
        for name in result.results[0].parameters:
            values = np.array([r.parameters.get(name, 0.0) for r in result.results])
            if values.std() > 0 and scores.std() > 0:
                corr = np.corrcoef(values, scores)[0, 1]
                impact[name] = round(abs(float(corr)), 4)
            elif values.std() > 0:
                impact[name] = 0.0
        return impact

    def generate_phased_report(
        self,
        result: PhasedOptimizationResult,
        base_params: ParameterCombination | None = None,
    ) -> dict[str, Any]:
        """Phased run report: per-phase outcome and what changed versus the base."""
        phases = []
        for s in result.phase_summaries:
            best = s.best_result
            phases.append({
                "phase": s.phase,
                "name": s.name,
                "skipped": s.skipped,
                "skip_reason": s.skip_reason,
                "combinations_tested": s.combinations_tested,
                "duration_seconds": round(s.duration_seconds, 2),
                "optimize_metric": s.optimize_metric.value,
                "best_metric": round(best.metrics.metric_value(s.optimize_metric), 6) if best else None,
                "best_params": dict(s.best_params),
            })

        report: dict[str, Any] = {
            "run_id": result.run_id,
            "total_combinations_tested": result.total_combinations_tested,
            "total_duration_seconds": round(result.total_duration_seconds, 2),
            "phases_run": sum(1 for s in result.phase_summaries if not s.skipped),
            "phases_skipped": sum(1 for s in result.phase_summaries if s.skipped),
            "final_params": dict(result.final_params),
            "final_metrics": result.final_metrics.to_dict(),
            "phases": phases,
        }
        if base_params is not None:
            report["changed_params"] = {
                name: {"from": base_params.get(name), "to": value}
                for name, value in result.final_params.items()
                if base_params.get(name) != value
            }

        logger.info("Phased report generated", run_id=result.run_id, phases=len(phases))
        return report

    def export_preset_json(
        self,
        strategy_slug: str,
        params: ParameterCombination,
        metrics: BacktestMetrics | None = None,
        run_id: str | None = None,
    ) -> str:
        """Winning parameters as a JSON preset."""
        return json.dumps(self._build_preset_dict(strategy_slug, params, metrics, run_id), indent=2)

    def export_preset_yaml(
        self,
        strategy_slug: str,
        params: ParameterCombination,
        metrics: BacktestMetrics | None = None,
        run_id: str | None = None,
    ) -> str:
        """Winning parameters as a YAML preset."""
        preset = self._build_preset_dict(strategy_slug, params, metrics, run_id)
        return yaml.safe_dump(preset, default_flow_style=False, sort_keys=False)

    def _build_preset_dict(
        self,
        strategy_slug: str,
        params: ParameterCombination,
        metrics: BacktestMetrics | None,
        run_id: str | None,
    ) -> dict[str, Any]:
        preset: dict[str, Any] = {
            "strategy": strategy_slug,
            "params": {k: float(v) for k, v in params.items()},
        }
        if run_id:
            preset["source_run_id"] = run_id
        if metrics is not None:
            preset["_backtest_metrics"] = {k: round(v, 4) for k, v in metrics.to_dict().items()}
        return preset
