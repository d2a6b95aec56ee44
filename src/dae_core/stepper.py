# dae_core/src/dae_core/stepper.py
"""Macro-step control loop around the engine's advance operation.

One call to StepDriver.step moves the live simulation state from the current
time to current_time + step_size, or to the first event inside that interval:

    IDLE -> STEPPING -> FINISHED_ON_TARGET | FINISHED_ON_EVENT | FAILED

Steps shorter than DEGENERATE_STEP_EPS never reach the engine. The state is
extrapolated linearly (x += dx/dt * h) and the explicit ODE is evaluated once
at the new point to refresh the derivatives.

Outcome classification per advance call:
    SUCCESS and time >= tout  -> FINISHED_ON_TARGET
    ROOT_RETURN               -> FINISHED_ON_EVENT (the next step reinitializes)
    SUCCESS short of tout     -> advance again
    anything else             -> FAILED, EngineError
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Final

from .context import ErrorStage, EvaluationPhase
from .engine import EngineStatus, StatisticKind
from .errors import EngineError, raise_engine_failure

if TYPE_CHECKING:
    from .context import EvaluationContext
    from .engine import DAEEngine
    from .model import ModelFacade

logger = logging.getLogger(__name__)

DEGENERATE_STEP_EPS: Final[float] = 1e-13
DEFAULT_MAX_ADVANCE_CALLS: Final[int] = 10_000

_FAILED_STATE_MSG: Final[str] = (
    "Step driver is in FAILED state after engine status {status}; "
    "call reinitialize() before stepping again."
)
_MAX_ADVANCE_MSG: Final[str] = (
    "Engine did not reach tout = {tout:.15g} within {n} advance calls "
    "(time = {time:.15g})."
)
_EXTERNAL_INPUT_MSG: Final[str] = "External input refresh failed at time {time:.15g}."
_NEGATIVE_STEP_MSG: Final[str] = "step_size must be non-negative; got {h}"

_CONTINUE_STATUSES: Final[frozenset[int]] = frozenset(
    {EngineStatus.SUCCESS, EngineStatus.TSTOP_RETURN}
)


class StepState(Enum):
    """Lifecycle state of the step driver."""

    IDLE = "idle"
    STEPPING = "stepping"
    FINISHED_ON_TARGET = "finished_on_target"
    FINISHED_ON_EVENT = "finished_on_event"
    FAILED = "failed"


class StepOutcome(Enum):
    """How a macro-step ended."""

    FINISHED_ON_TARGET = "finished_on_target"
    FINISHED_ON_EVENT = "finished_on_event"
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class StepResult:
    """Result of one macro-step.

    Attributes:
        outcome: How the step ended.
        time: Simulation time reached.
        extrapolated: True if the step was below DEGENERATE_STEP_EPS and handled
            by linear extrapolation without calling the engine.
        advance_calls: Number of engine advance calls made.
    """

    outcome: StepOutcome
    time: float
    extrapolated: bool = False
    advance_calls: int = 0


@dataclass(slots=True)
class SolverStatistics:
    """Accumulated engine counters.

    Engines that reset their counters on reinitialization are handled by
    accumulating deltas, so every counter here is non-decreasing.
    """

    steps: int = 0
    residual_evals: int = 0
    jacobian_evals: int = 0
    error_test_fails: int = 0
    nonlinear_conv_fails: int = 0
    _last_seen: dict[StatisticKind, int] = field(default_factory=dict, repr=False)

    def refresh(self, engine: DAEEngine) -> None:
        """Fold the engine's current counter values into the totals."""
        for kind in StatisticKind:
            value = engine.query_statistic(kind)
            if value is None:
                continue
            last = self._last_seen.get(kind, 0)
            delta = value - last if value >= last else value
            setattr(self, kind.value, getattr(self, kind.value) + delta)
            self._last_seen[kind] = value

    def as_dict(self) -> dict[str, int]:
        """Counters keyed by statistic name."""
        return {kind.value: int(getattr(self, kind.value)) for kind in StatisticKind}


class StepDriver:
    """Per-macro-step control loop for one session."""

    def __init__(
        self,
        engine: DAEEngine,
        model: ModelFacade,
        context: EvaluationContext,
        *,
        max_advance_calls: int = DEFAULT_MAX_ADVANCE_CALLS,
    ) -> None:
        """
        Initialize StepDriver.

        Args:
            engine: Initialized engine.
            model: Model facade whose live buffers the engine integrates.
            context: Evaluation context of the session.
            max_advance_calls: Bound on advance calls per macro-step.
        """
        self.engine = engine
        self.model = model
        self.context = context
        self.max_advance_calls = int(max_advance_calls)

        self.state = StepState.IDLE
        self.statistics = SolverStatistics()
        # True while the engine holds a consistent starting solution; a step
        # that finds it cleared reinitializes the engine first.
        self.initial_solution_set = True
        self.did_event_step = False
        self.last_status: int | None = None
        self._stop_requested = False

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Stop the current or next macro-step before its next advance call."""
        self._stop_requested = True

    def refresh_derivatives(self) -> None:
        """Evaluate the explicit ODE at the live state into the live derivatives.

        Raises:
            ModelEvaluationFault: If the model fails; no engine is involved, so
                the fault is raised to the caller.
        """
        data = self.model.data
        guard = (
            self.context.phase_scope(EvaluationPhase.ODE, time=data.time)
            if self.context.is_algebraic
            else nullcontext()
        )
        with guard, self.context.stage_scope(ErrorStage.INTEGRATOR):
            status = self.model.prepare_inputs(data.time, data.states)
            if status.ok:
                status = self.model.evaluate_ode(data.time, data.states, data.derivatives)
        if status.fault is not None:
            raise status.fault

    def reinitialize(self) -> None:
        """Restart the engine from the live buffers and clear a FAILED state.

        The derivatives are re-evaluated at the live state first, so the engine
        restarts from a consistent (y, yp) pair. initial_solution_set is True
        again only once the engine has accepted the new start.
        """
        data = self.model.data
        self.initial_solution_set = False
        self.refresh_derivatives()
        self.engine.reinitialize(data.time, data.states, data.derivatives)
        self.initial_solution_set = True
        self.did_event_step = False
        self.state = StepState.IDLE
        logger.debug("engine reinitialized at time %.15g", data.time)

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    def _extrapolate(self, step_size: float) -> StepResult:
        data = self.model.data
        data.states += data.derivatives * step_size
        data.time += step_size
        self.refresh_derivatives()
        self.state = StepState.FINISHED_ON_TARGET
        logger.debug(
            "step size %g below %g; extrapolated to time %.15g",
            step_size,
            DEGENERATE_STEP_EPS,
            data.time,
        )
        return StepResult(StepOutcome.FINISHED_ON_TARGET, data.time, extrapolated=True)

    def _fail(self, status: int | None) -> None:
        self.state = StepState.FAILED
        self.last_status = status

    def step(self, step_size: float) -> StepResult:
        """Advance the live state by step_size, stopping early at an event.

        Args:
            step_size: Requested macro-step length.

        Raises:
            EngineError: If the driver is FAILED, the engine reports an
                unrecoverable status, or max_advance_calls is exceeded.
            ValueError: If step_size is negative.

        Any other exception raised by engine.advance propagates unchanged after
        the driver is marked FAILED.

        Returns:
            StepResult describing how the step ended.
        """
        if self.state is StepState.FAILED:
            raise EngineError(
                _FAILED_STATE_MSG.format(status=self.last_status),
                status=self.last_status,
            )
        if step_size < 0.0:
            raise ValueError(_NEGATIVE_STEP_MSG.format(h=step_size))

        if step_size < DEGENERATE_STEP_EPS:
            return self._extrapolate(step_size)

        data = self.model.data
        if self.did_event_step:
            self.initial_solution_set = False
        if not self.initial_solution_set:
            self.reinitialize()

        self.state = StepState.STEPPING
        tout = data.time + step_size
        logger.debug("new step: time=%.15g tout=%.15g", data.time, tout)

        calls = 0
        outcome: StepOutcome | None = None
        while outcome is None:
            if self._stop_requested:
                self._stop_requested = False
                self.state = StepState.IDLE
                logger.info("step stopped on request at time %.15g", data.time)
                return StepResult(StepOutcome.STOPPED, data.time, advance_calls=calls)

            if calls >= self.max_advance_calls:
                self._fail(None)
                raise EngineError(
                    _MAX_ADVANCE_MSG.format(tout=tout, n=calls, time=data.time)
                )

            status = self.model.refresh_external_inputs(data.time)
            if not status.ok:
                self._fail(None)
                raise EngineError(_EXTERNAL_INPUT_MSG.format(time=data.time)) from status.fault

            try:
                result = self.engine.advance(tout)
            except Exception:
                self._fail(None)
                logger.exception("engine advance raised at time %.15g", data.time)
                raise
            calls += 1
            data.time = result.time
            self.last_status = int(result.status)

            if result.status == EngineStatus.SUCCESS and result.time >= tout:
                outcome = StepOutcome.FINISHED_ON_TARGET
            elif result.status == EngineStatus.ROOT_RETURN:
                logger.debug("root found at time %.15g", result.time)
                self.did_event_step = True
                outcome = StepOutcome.FINISHED_ON_EVENT
            elif result.status in _CONTINUE_STATUSES:
                logger.debug("continue integration at time %.15g", result.time)
            else:
                self._fail(int(result.status))
                logger.error(
                    "engine failed with status %d at time %.15g",
                    int(result.status),
                    result.time,
                )
                raise_engine_failure(int(result.status), time=result.time)

        if data.sample_activated and data.time < data.next_sample_event:
            data.sample_activated = False

        self.statistics.refresh(self.engine)
        self.state = (
            StepState.FINISHED_ON_EVENT
            if outcome is StepOutcome.FINISHED_ON_EVENT
            else StepState.FINISHED_ON_TARGET
        )
        return StepResult(outcome, data.time, advance_calls=calls)
