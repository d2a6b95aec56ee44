# dae_core/examples/bouncing_ball.py
"""Bouncing ball: a hybrid system with one zero crossing.

State y = (h, v) with h' = v, v' = -g. The indicator h crosses zero at every
impact; the step ends on the event, the "event handler" below reflects the
velocity with a restitution coefficient, and the next step re-initializes the
engine from the live buffers.

This script saves a plot to disk (no interactive windows).
"""

from __future__ import annotations

import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np

from dae_core import (
    BackwardEulerEngine,
    IntegrationSession,
    IntegratorSettings,
    ModelFunctions,
    SimulationData,
    StepOutcome,
)

_OUTPUT_DIR = Path(__file__).resolve().parent / "output" / "bouncing_ball"

GRAVITY = 9.81
RESTITUTION = 0.8


def ball_rhs(t: float, y: np.ndarray) -> np.ndarray:  # noqa: ARG001
    """(h', v') = (v, -g)."""
    return np.array([y[1], -GRAVITY])


def ball_indicator(t: float, y: np.ndarray) -> np.ndarray:  # noqa: ARG001
    """Height above the floor."""
    return np.array([y[0]])


def run_ball(
    *,
    t_end: float,
    step: float,
    settings: IntegratorSettings,
) -> tuple[np.ndarray, np.ndarray, list[float]]:
    """Integrate the ball and record output points and impact times.

    Args:
        t_end: Final time.
        step: Macro-step size.
        settings: Integrator settings (session and engine).

    Returns:
        Times, states of shape (n, 2), and impact times.
    """
    functions = ModelFunctions(ode=ball_rhs, zero_crossings=ball_indicator, n_zero_crossings=1)
    data = SimulationData(2, state_names=("h", "v"), nominal=[1.0, 10.0])
    data.set_states([1.0, 0.0])

    engine = BackwardEulerEngine(settings.to_engine_config())
    times = [data.time]
    states = [data.states.copy()]
    impacts: list[float] = []

    with IntegrationSession.create(functions, data, engine, settings) as session:
        while data.time < t_end:
            result = session.step(min(step, t_end - data.time))
            if result.outcome is StepOutcome.FINISHED_ON_EVENT:
                impacts.append(result.time)
                data.states[0] = 0.0
                data.states[1] = -RESTITUTION * data.states[1]
                if data.states[1] < 0.05:
                    break
            times.append(data.time)
            states.append(data.states.copy())
        logging.getLogger(__name__).info("statistics: %s", session.statistics.as_dict())

    return np.asarray(times), np.vstack(states), impacts


def save_ball_plot(
    time: np.ndarray, states: np.ndarray, impacts: list[float], out_path: Path
) -> None:
    """Save height and velocity trajectories with impact markers.

    Args:
        time: Output times.
        states: States, shape (n, 2).
        impacts: Impact times.
        out_path: Output path for the saved figure.
    """
    fig, (ax_h, ax_v) = plt.subplots(2, 1, figsize=(8, 6), sharex=True)
    ax_h.plot(time, states[:, 0], label="h")
    ax_v.plot(time, states[:, 1], label="v", color="tab:orange")
    for t in impacts:
        ax_h.axvline(t, color="grey", alpha=0.3, linewidth=0.8)
    ax_h.set_ylabel("height")
    ax_v.set_ylabel("velocity")
    ax_v.set_xlabel("Time")
    for ax in (ax_h, ax_v):
        ax.grid(visible=True)
        ax.legend()
    fig.suptitle(f"Bouncing ball, e = {RESTITUTION}, {len(impacts)} impacts")
    fig.tight_layout()

    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=150)
    plt.close(fig)


def main() -> None:
    """Run the example and write the plot."""
    logging.basicConfig(level=logging.INFO)
    settings = IntegratorSettings(jacobian_method="numerical", tolerance=1e-6, max_steps=5000)
    time, states, impacts = run_ball(t_end=3.0, step=0.01, settings=settings)

    # Analytic first impact from h0 = 1, v0 = 0.
    t_first = np.sqrt(2.0 / GRAVITY)
    print(f"first impact: {impacts[0]:.6f} (analytic {t_first:.6f})")
    save_ball_plot(time, states, impacts, _OUTPUT_DIR / "bouncing_ball.png")


if __name__ == "__main__":
    main()
