"""dae_core adaptive DAE time-integration core package."""

from __future__ import annotations

from .adapter import ResidualAdapter
from .backward_euler import BackwardEulerConfig, BackwardEulerEngine
from .config import IntegratorSettings, SessionConfig
from .context import ErrorStage, EvaluationContext, EvaluationPhase
from .engine import DAEEngine, EngineResult, EngineStatus, StatisticKind
from .errors import (
    ConfigurationError,
    ContextError,
    DaeCoreError,
    EngineError,
    ModelEvaluationFault,
    SessionStateError,
)
from .jacobian import (
    ColoredNumericJacobian,
    DenseNumericJacobian,
    JacobianMethod,
    JacobianWorkspace,
    resolve_jacobian_method,
)
from .model import EvalStatus, ModelFacade, ModelFunctions, SimulationData
from .session import (
    IntegrationSession,
    session_dispose,
    session_init,
    session_step,
)
from .sparsity import SparsityPattern
from .stepper import (
    DEGENERATE_STEP_EPS,
    SolverStatistics,
    StepDriver,
    StepOutcome,
    StepResult,
    StepState,
)

__all__ = [
    "DEGENERATE_STEP_EPS",
    "BackwardEulerConfig",
    "BackwardEulerEngine",
    "ColoredNumericJacobian",
    "ConfigurationError",
    "ContextError",
    "DAEEngine",
    "DaeCoreError",
    "DenseNumericJacobian",
    "EngineError",
    "EngineResult",
    "EngineStatus",
    "ErrorStage",
    "EvalStatus",
    "EvaluationContext",
    "EvaluationPhase",
    "IntegrationSession",
    "IntegratorSettings",
    "JacobianMethod",
    "JacobianWorkspace",
    "ModelEvaluationFault",
    "ModelFacade",
    "ModelFunctions",
    "ResidualAdapter",
    "SessionConfig",
    "SessionStateError",
    "SimulationData",
    "SolverStatistics",
    "SparsityPattern",
    "StatisticKind",
    "StepDriver",
    "StepOutcome",
    "StepResult",
    "StepState",
    "resolve_jacobian_method",
    "session_dispose",
    "session_init",
    "session_step",
]

__version__ = "0.1.0"
