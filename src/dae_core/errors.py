# dae_core/src/dae_core/errors.py
"""Error types and raise helpers for dae_core.

This module centralizes:
- the exception taxonomy shared by the session, adapters and step driver, and
- small helpers that raise those exceptions with standardized messages.

Only two of these ever cross the public API boundary during stepping:
``EngineError`` (the engine reported an unrecoverable status) and
``ConfigurationError`` (raised once, at session start). ``ModelEvaluationFault``
is raised by model code and is always contained at the adapter boundary.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Final, NoReturn

_UNKNOWN_JACOBIAN_MSG: Final[str] = (
    "Unrecognized jacobian calculation method '{name}'. Current options are:\n{options}"
)
_ENGINE_STATUS_MSG: Final[str] = (
    "Engine reported unrecoverable status {status} at time {time:.15g}."
)


class DaeCoreError(Exception):
    """Base exception for dae_core errors."""


class ConfigurationError(DaeCoreError, ValueError):
    """Raised when integrator settings are invalid at session start."""


class ContextError(DaeCoreError, RuntimeError):
    """Raised on an illegal evaluation-phase transition."""


class ModelEvaluationFault(DaeCoreError):
    """Raised by model code on a fatal model-side condition.

    Typical causes are a violated assert or a domain violation (log of a
    negative number, division by zero). The adapters catch this at their
    boundary and report a nonzero status to the engine instead.
    """


class EngineError(DaeCoreError, RuntimeError):
    """Raised when the engine reports an unrecoverable status.

    Attributes:
        status: Engine status code, when one is available.
    """

    def __init__(self, msg: str, *, status: int | None = None) -> None:
        super().__init__(msg)
        self.status = status


class SessionStateError(DaeCoreError, RuntimeError):
    """Raised when a session is used in a state that forbids the operation."""


def raise_unknown_jacobian_method(
    name: str,
    *,
    options: Iterable[tuple[str, str]],
) -> NoReturn:
    """Raise a standardized ConfigurationError for an unknown Jacobian method.

    Args:
        name: Configured method name.
        options: (name, description) pairs of supported methods.

    Raises:
        ConfigurationError: Always.
    """
    listing = "\n".join(f"  {opt:<18} [{desc}]" for opt, desc in options)
    raise ConfigurationError(_UNKNOWN_JACOBIAN_MSG.format(name=name, options=listing))


def raise_engine_failure(status: int, *, time: float) -> NoReturn:
    """Raise a standardized EngineError for an unrecoverable engine status.

    Args:
        status: Engine status code.
        time: Time reached when the engine gave up.

    Raises:
        EngineError: Always.
    """
    raise EngineError(_ENGINE_STATUS_MSG.format(status=status, time=time), status=status)
