"""
Exit Strategies (percentage scale-out)
======================================

  models.py    - strategy, execution and derived summary / schedule dataclasses
  store.py     - SQLite storage for strategies and executions
  engine.py    - next step, readiness, projected schedule, simulator
  recorder.py  - records confirmed fills
  service.py   - lifecycle facade used by the API
"""

from cryptodash.exit_strategy.models import (
    AssetSummary,
    CoinSimulation,
    ExitStrategy,
    ExitStrategyExecution,
    ScaleOutStepRow,
    StrategyDetails,
    StrategySummary,
)
from cryptodash.exit_strategy.store import ExitStrategyStore
from cryptodash.exit_strategy.engine import ExitStrategyEngine, simulate
from cryptodash.exit_strategy.recorder import ExecutionRecorder
from cryptodash.exit_strategy.service import ExitStrategyService

__all__ = [
    "AssetSummary", "CoinSimulation", "ExitStrategy", "ExitStrategyExecution",
    "ScaleOutStepRow", "StrategyDetails", "StrategySummary",
    "ExitStrategyStore", "ExitStrategyEngine", "simulate",
    "ExecutionRecorder", "ExitStrategyService",
]
