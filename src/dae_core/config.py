# dae_core/src/dae_core/config.py
"""Configuration models for dae_core integration sessions.

IntegratorSettings is the pydantic-facing schema (mappings, YAML/JSON files,
command-line layers) and translates into the frozen dataclasses the runtime
actually consumes:

    IntegratorSettings.to_session_config() -> SessionConfig
    IntegratorSettings.to_engine_config()  -> BackwardEulerConfig

Notes:
    - The Jacobian method name is kept as a free-form string here and
      resolved at session start, where an unknown name raises
      ConfigurationError with the list of valid names.
    - Unknown fields are allowed and ignored (`extra="allow"`), so settings
      can be carried inside larger configuration documents.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field

from .backward_euler import BackwardEulerConfig
from .stepper import DEFAULT_MAX_ADVANCE_CALLS


@dataclass(frozen=True, slots=True)
class SessionConfig:
    """Settings consumed once by IntegrationSession.create.

    Attributes:
        tolerance: Relative tolerance; also scales the absolute tolerances.
        jacobian_method: Configured Jacobian method name, or None for the default.
        max_advance_calls: Bound on engine advance calls per macro-step.
        min_nominal: Lower bound on |nominal| when computing absolute tolerances.
    """

    tolerance: float = 1e-6
    jacobian_method: str | None = None
    max_advance_calls: int = DEFAULT_MAX_ADVANCE_CALLS
    min_nominal: float = 1e-32


class IntegratorSettings(BaseModel):
    """Configuration schema for an integration session and its reference engine."""

    model_config = ConfigDict(extra="allow")

    jacobian_method: str | None = Field(
        default=None,
        description="Jacobian method name (coloredNumerical, numerical, ...)",
    )
    tolerance: float = Field(
        default=1e-6,
        gt=0.0,
        description="Relative tolerance of the corrector",
    )
    max_advance_calls: int = Field(default=DEFAULT_MAX_ADVANCE_CALLS, ge=1)

    # Reference engine controls
    h_init: float | None = Field(default=None, gt=0.0)
    h_min: float = Field(default=1e-14, gt=0.0)
    h_max: float = Field(default=float("inf"), gt=0.0)
    max_steps: int = Field(default=500, ge=1)
    max_newton_iters: int = Field(default=4, ge=1)
    newton_tol: float = Field(default=0.33, gt=0.0)
    safety: float = Field(default=0.9, gt=0.0, le=1.0)
    fac_min: float = Field(default=0.2, gt=0.0)
    fac_max: float = Field(default=2.0, gt=1.0)

    def to_session_config(self) -> SessionConfig:
        """Convert these settings to a SessionConfig.

        Returns:
            Fully constructed SessionConfig instance.
        """
        return SessionConfig(
            tolerance=self.tolerance,
            jacobian_method=self.jacobian_method,
            max_advance_calls=self.max_advance_calls,
        )

    def to_engine_config(self) -> BackwardEulerConfig:
        """Convert these settings to a BackwardEulerConfig.

        Returns:
            Fully constructed BackwardEulerConfig instance.
        """
        return BackwardEulerConfig(
            h_init=self.h_init,
            h_min=self.h_min,
            h_max=self.h_max,
            max_steps=self.max_steps,
            max_newton_iters=self.max_newton_iters,
            newton_tol=self.newton_tol,
            safety=self.safety,
            fac_min=self.fac_min,
            fac_max=self.fac_max,
        )
