"""
OptimizationService — host-side entry point for optimization runs.

Resolves requests into frozen engine configs, runs the engine in a worker
thread (one sequential control flow per run), persists finished runs and
hands the caller a progress channel plus a cancellation token.

All collaborators are passed in; the service keeps no module-level state.
"""

import asyncio
from dataclasses import dataclass, replace
from functools import partial
from typing import Any, Callable

from pydantic import BaseModel, Field, field_validator

from tick_optimizer.config import OptimizerSettings
from tick_optimizer.data.cache import TickCache
from tick_optimizer.data.models import Session
from tick_optimizer.data.source import TickSource
from tick_optimizer.engine.models import (
    MAX_PHASE,
    MIN_PHASE,
    GridSearchConfig,
    GridSearchResult,
    OptimizationMetric,
    ParameterCombination,
    ParameterRange,
    PhaseConfig,
    PhasedOptimizationResult,
    PhasedRunConfig,
    RefinementSettings,
)
from tick_optimizer.engine.optimizer import GridSearchOptimizer, new_run_id
from tick_optimizer.engine.phased import PhasedOptimizer
from tick_optimizer.engine.reporter import OptimizationReporter
from tick_optimizer.engine.simulator import BacktestSimulator
from tick_optimizer.exceptions import (
    ConfigValidationError,
    OptimizerError,
    PersistenceError,
    RunCancelledError,
)
from tick_optimizer.logging import LoggerMixin
from tick_optimizer.persistence.checkpoint import OptimizationCheckpoint
from tick_optimizer.persistence.run_store import RunMetadata, RunStore
from tick_optimizer.progress.channel import CancellationToken, ProgressChannel
from tick_optimizer.strategies.base import StrategySpec
from tick_optimizer.strategies.price_band import SLUG as DEFAULT_STRATEGY
from tick_optimizer.strategies.registry import StrategyRegistry

OptimizationResult = GridSearchResult | PhasedOptimizationResult


# =============================================================================
# Request models
# =============================================================================


class ParameterRangeModel(BaseModel):
    name: str
    min: float
    max: float
    step: float

    def to_range(self) -> ParameterRange:
        return ParameterRange(name=self.name, min=self.min, max=self.max, step=self.step)


class GridOptimizationRequest(BaseModel):
    session_ids: list[str] = Field(min_length=1)
    strategy_slug: str = DEFAULT_STRATEGY
    base_params: dict[str, float] = Field(default_factory=dict)
    parameter_ranges: list[ParameterRangeModel] = Field(default_factory=list)
    optimize_metric: OptimizationMetric = OptimizationMetric.SHARPE_RATIO
    max_combinations: int | None = Field(default=None, ge=1)
    initial_capital: float | None = Field(default=None, gt=0)


class PhasedOptimizationRequest(BaseModel):
    session_ids: list[str] = Field(min_length=1)
    strategy_slug: str = DEFAULT_STRATEGY
    base_params: dict[str, float] = Field(default_factory=dict)
    phases: list[int] | None = None
    phase_ranges: dict[int, list[ParameterRangeModel]] = Field(default_factory=dict)
    max_combinations: int | None = Field(default=None, ge=1)
    initial_capital: float | None = Field(default=None, gt=0)

    @field_validator("phases")
    @classmethod
    def _phase_numbers(cls, value: list[int] | None) -> list[int] | None:
        if value is None:
            return value
        if not value:
            raise ValueError("phases must not be empty")
        for number in value:
            if not MIN_PHASE <= number <= MAX_PHASE:
                raise ValueError(f"phase must be between {MIN_PHASE} and {MAX_PHASE}, got {number}")
        if len(set(value)) != len(value):
            raise ValueError("phases must be unique")
        return sorted(value)


# =============================================================================
# Resolved runs
# =============================================================================


@dataclass(frozen=True)
class GridRunPlan:
    """A validated grid request bound to its optimizer."""

    config: GridSearchConfig
    optimizer: GridSearchOptimizer
    metadata: RunMetadata
    total_combinations: int

    def execute(
        self,
        channel: ProgressChannel | None,
        cancel: CancellationToken | None,
        run_id: str,
    ) -> GridSearchResult:
        return self.optimizer.run_optimization(self.config, channel=channel, cancel=cancel, run_id=run_id)


@dataclass(frozen=True)
class PhasedRunPlan:
    """A validated phased request bound to its optimizer."""

    config: PhasedRunConfig
    optimizer: PhasedOptimizer
    metadata: RunMetadata
    planned: dict[int, int]

    def execute(
        self,
        channel: ProgressChannel | None,
        cancel: CancellationToken | None,
        run_id: str,
    ) -> PhasedOptimizationResult:
        return self.optimizer.run(self.config, channel=channel, cancel=cancel, run_id=run_id)


@dataclass
class RunHandle:
    """A run started in the background."""

    run_id: str
    channel: ProgressChannel
    cancel: CancellationToken
    task: asyncio.Task

    def request_cancel(self, reason: str = "cancelled by caller") -> None:
        self.cancel.cancel(reason)

    async def result(self) -> OptimizationResult | None:
        return await self.task


# =============================================================================
# Service
# =============================================================================


class OptimizationService(LoggerMixin):
    """Validates, runs and persists optimization runs."""

    def __init__(
        self,
        source: TickSource | TickCache,
        registry: StrategyRegistry,
        run_store: RunStore | None = None,
        checkpoint: OptimizationCheckpoint | None = None,
        settings: OptimizerSettings | None = None,
    ) -> None:
        self.cache = source if isinstance(source, TickCache) else TickCache(source)
        self.registry = registry
        self.run_store = run_store
        self.checkpoint = checkpoint
        self.settings = settings or OptimizerSettings()
        self.reporter = OptimizationReporter()

    # =========================================================================
    # Validation
    # =========================================================================

    def validate_grid(self, request: GridOptimizationRequest) -> GridRunPlan:
        """Resolve a grid request; raises a ValidationError when it cannot run."""
        spec = self.registry.get(request.strategy_slug)
        sessions = self.cache.get_many(request.session_ids)
        capital = request.initial_capital or self.settings.initial_capital
        base_params = self._base_params(spec, request.base_params)

        config = GridSearchConfig(
            parameter_ranges=tuple(r.to_range() for r in request.parameter_ranges),
            base_params=base_params,
            optimize_metric=request.optimize_metric,
            max_combinations=request.max_combinations or self.settings.max_combinations_default,
            constraints=spec.constraints,
            completed_top_n=self.settings.completed_top_n,
        )
        optimizer = self._grid_optimizer(spec, sessions, capital)
        total = optimizer.validate(config)

        metadata = RunMetadata(
            strategy_slug=spec.slug,
            session_ids=tuple(request.session_ids),
            base_params=base_params,
            initial_capital=capital,
            optimize_metric=request.optimize_metric.value,
        )
        return GridRunPlan(config=config, optimizer=optimizer, metadata=metadata, total_combinations=total)

    def validate_phased(self, request: PhasedOptimizationRequest) -> PhasedRunPlan:
        """Resolve a phased request; raises a ValidationError when any phase cannot run."""
        spec = self.registry.get(request.strategy_slug)
        sessions = self.cache.get_many(request.session_ids)
        capital = request.initial_capital or self.settings.initial_capital
        base_params = self._base_params(spec, request.base_params)

        config = PhasedRunConfig(
            phases=self._resolve_phases(spec, request),
            base_params=base_params,
            max_combinations=request.max_combinations or self.settings.max_combinations_default,
            refinement=RefinementSettings(
                pair_top_k=self.settings.pair_top_k,
                pair_grid_points=self.settings.pair_grid_points,
                max_pair_combinations=self.settings.max_pair_combinations,
                random_samples=self.settings.random_samples,
                random_seed=self.settings.random_seed,
            ),
        )
        optimizer = PhasedOptimizer(self._grid_optimizer(spec, sessions, capital))
        planned = optimizer.validate(config)

        metadata = RunMetadata(
            strategy_slug=spec.slug,
            session_ids=tuple(request.session_ids),
            base_params=base_params,
            initial_capital=capital,
        )
        return PhasedRunPlan(config=config, optimizer=optimizer, metadata=metadata, planned=planned)

    # =========================================================================
    # Runs
    # =========================================================================

    async def run_grid(
        self,
        request: GridOptimizationRequest,
        channel: ProgressChannel | None = None,
        cancel: CancellationToken | None = None,
        run_id: str | None = None,
    ) -> GridSearchResult | None:
        """Run a grid search to completion. Returns None when cancelled."""
        plan = self.validate_grid(request)
        return await self._execute(plan, channel, cancel, run_id or new_run_id())

    async def run_phased(
        self,
        request: PhasedOptimizationRequest,
        channel: ProgressChannel | None = None,
        cancel: CancellationToken | None = None,
        run_id: str | None = None,
    ) -> PhasedOptimizationResult | None:
        """Run all requested phases to completion. Returns None when cancelled."""
        plan = self.validate_phased(request)
        return await self._execute(plan, channel, cancel, run_id or new_run_id())

    def start_grid(self, request: GridOptimizationRequest) -> RunHandle:
        """Validate now, then run in the background. Must be called from a running loop."""
        return self._start(self.validate_grid(request))

    def start_phased(self, request: PhasedOptimizationRequest) -> RunHandle:
        """Validate now, then run in the background. Must be called from a running loop."""
        return self._start(self.validate_phased(request))

    def _start(self, plan: GridRunPlan | PhasedRunPlan) -> RunHandle:
        run_id = new_run_id()
        cancel = CancellationToken()
        channel = ProgressChannel(maxsize=self.settings.progress_buffer_size, cancel_token=cancel)
        task = asyncio.create_task(self._execute(plan, channel, cancel, run_id))
        task.add_done_callback(partial(self._on_background_done, run_id))
        self.logger.info("Run started", run_id=run_id, kind=type(plan).__name__)
        return RunHandle(run_id=run_id, channel=channel, cancel=cancel, task=task)

    def _on_background_done(self, run_id: str, task: asyncio.Task) -> None:
        # Callers may only read the channel; retrieve the failure here.
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(
                "Background run failed",
                run_id=run_id,
                error_type=type(error).__name__,
                error=str(error),
            )

    async def _execute(
        self,
        plan: GridRunPlan | PhasedRunPlan,
        channel: ProgressChannel | None,
        cancel: CancellationToken | None,
        run_id: str,
    ) -> OptimizationResult | None:
        cancel = cancel or (channel.cancel_token if channel is not None else None) or CancellationToken()
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, partial(plan.execute, channel, cancel, run_id))
        except RunCancelledError as e:
            self.logger.info("Run cancelled", run_id=run_id, reason=e.reason)
            return None
        except asyncio.CancelledError:
            # The worker thread stops at its next cancellation check.
            cancel.cancel("task cancelled")
            raise
        except OptimizerError as e:
            self.logger.error("Run failed", run_id=run_id, error=str(e))
            raise

        await self._persist(result, plan.metadata)
        return result

    async def _persist(self, result: OptimizationResult, metadata: RunMetadata) -> None:
        if self.run_store is None:
            return
        try:
            await self.run_store.save_run(result, metadata)
        except Exception as e:
            self.logger.error("Failed to persist run", run_id=result.run_id, error=str(e))

    # =========================================================================
    # Stored runs & presets
    # =========================================================================

    async def get_run(self, run_id: str) -> dict[str, Any] | None:
        return await self._store().get_run(run_id)

    async def list_runs(self, limit: int = 20, offset: int = 0) -> list[dict[str, Any]]:
        return await self._store().list_runs(limit=limit, offset=offset)

    def _store(self) -> RunStore:
        if self.run_store is None:
            raise PersistenceError("No run store configured")
        return self.run_store

    def report(
        self,
        result: OptimizationResult,
        base_params: ParameterCombination | None = None,
    ) -> dict[str, Any]:
        if isinstance(result, PhasedOptimizationResult):
            return self.reporter.generate_phased_report(result, base_params)
        return self.reporter.generate_grid_report(result)

    def export_preset(
        self,
        strategy_slug: str,
        result: OptimizationResult,
        fmt: str = "yaml",
    ) -> str:
        """Winning parameters of ``result`` as a YAML or JSON preset."""
        if isinstance(result, PhasedOptimizationResult):
            params, metrics = result.final_params, result.final_metrics
        elif result.best is not None:
            params, metrics = result.best.parameters, result.best.metrics
        else:
            raise ConfigValidationError(f"Run {result.run_id} has no results to export")

        exporters: dict[str, Callable[..., str]] = {
            "yaml": self.reporter.export_preset_yaml,
            "json": self.reporter.export_preset_json,
        }
        exporter = exporters.get(fmt)
        if exporter is None:
            raise ConfigValidationError(f"Unknown preset format: {fmt}")
        return exporter(strategy_slug, params, metrics, run_id=result.run_id)

    def list_strategies(self) -> list[dict[str, Any]]:
        return [self.registry.get(slug).to_dict() for slug in self.registry.slugs()]

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _base_params(spec: StrategySpec, overrides: dict[str, float]) -> ParameterCombination:
        params = dict(spec.default_params)
        params.update(overrides)
        return params

    def _grid_optimizer(
        self,
        spec: StrategySpec,
        sessions: tuple[Session, ...],
        initial_capital: float,
    ) -> GridSearchOptimizer:
        simulator = BacktestSimulator(
            spec.decide,
            initial_capital=initial_capital,
            aggregation=self.settings.session_aggregation,
            outcome=self.settings.outcome,
        )
        return GridSearchOptimizer(
            simulator,
            sessions,
            max_workers=self.settings.max_workers,
            checkpoint=self.checkpoint,
        )

    @staticmethod
    def _resolve_phases(
        spec: StrategySpec,
        request: PhasedOptimizationRequest,
    ) -> tuple[PhaseConfig, ...]:
        presets = {p.phase: p for p in spec.phase_presets}
        numbers = request.phases if request.phases is not None else sorted(presets)

        unknown = sorted(set(request.phase_ranges) - set(numbers))
        if unknown:
            raise ConfigValidationError(f"Ranges given for phases not requested: {unknown}")

        phases = []
        for number in numbers:
            # Phases without a preset run only with explicit ranges; otherwise they are skipped.
            phase = presets.get(number) or PhaseConfig(phase=number, name=f"Phase {number}")
            ranges = request.phase_ranges.get(number)
            if ranges is not None:
                phase = replace(phase, parameter_ranges=tuple(r.to_range() for r in ranges))
            phases.append(phase)
        return tuple(phases)
