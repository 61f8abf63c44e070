"""
Tick Optimizer — Backtesting and parameter optimization over recorded tick sessions.

Provides:
- Deterministic tick-replay simulation of pure decision functions
- Exhaustive grid search with process-pool parallelism and checkpoint resume
- Phased optimization (ordered parameter subsets, best carried forward)
- Multi-stage refinement: baseline, sensitivity, pairs and random validation
- Bounded progress channel with cooperative cancellation
- SQLite-backed run persistence and YAML/JSON preset export
"""

__version__ = "1.0.0"
