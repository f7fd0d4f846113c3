"""Solver configuration and the retrying solve_ivp wrapper."""

from __future__ import annotations

import hashlib
import json
import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, ValidationError, field_validator
from scipy.integrate import solve_ivp

from .errors import ConfigError

logger = logging.getLogger(__name__)

StateVector = np.ndarray
RhsFn = Callable[[float, StateVector], StateVector]
EventFns = Optional[Sequence[Callable[[float, np.ndarray], float]]]

SUPPORTED_METHODS = ("RK45", "RK23", "DOP853", "Radau", "BDF", "LSODA")


class SolverOptions(BaseModel):
    method: str = "LSODA"
    rtol: float = 1e-6
    atol: float = 1e-9
    max_step: float = math.inf
    seed: Optional[int] = None
    first_step: Optional[float] = None
    max_attempts: int = 8
    nan_guard: bool = True

    @field_validator("method")
    def method_supported(cls, value: str) -> str:
        if value not in SUPPORTED_METHODS:
            raise ValueError(f"method '{value}' is not one of {SUPPORTED_METHODS}")
        return value

    @field_validator("rtol", "atol", "max_step")
    def strictly_positive(cls, value: float) -> float:
        if not value > 0.0:
            raise ValueError("must be strictly positive")
        return value

    @field_validator("first_step")
    def first_step_positive(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and not value > 0.0:
            raise ValueError("first_step must be strictly positive")
        return value

    @field_validator("max_attempts")
    def at_least_one_attempt(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_attempts must be at least 1")
        return value


@dataclass(frozen=True)
class SolverConfig:
    """Configuration driving scipy's solve_ivp."""

    method: str = "LSODA"
    rtol: float = 1e-6
    atol: float = 1e-9
    max_step: float = math.inf
    seed: Optional[int] = None
    first_step: Optional[float] = None
    max_attempts: int = 8
    nan_guard: bool = True

    @classmethod
    def from_options(cls, options: Mapping[str, object]) -> "SolverConfig":
        try:
            validated = SolverOptions.model_validate(dict(options))
        except ValidationError as exc:
            raise ConfigError(f"Invalid solver options: {exc}") from exc
        return cls(**validated.model_dump())

    def as_dict(self) -> Dict[str, object]:
        return {
            "method": self.method,
            "rtol": self.rtol,
            "atol": self.atol,
            "max_step": self.max_step,
            "seed": self.seed,
            "first_step": self.first_step,
            "max_attempts": self.max_attempts,
            "nan_guard": self.nan_guard,
        }

    def identity(self) -> str:
        payload = json.dumps(self.as_dict(), sort_keys=True)
        return hashlib.sha256(payload.encode("utf8")).hexdigest()


def _looks_like_step_failure(message: str) -> bool:
    text = (message or "").lower()
    return ("step size" in text) or ("strictly increasing" in text)


def solve_with_retry(
    rhs: RhsFn,
    span: Tuple[float, float],
    y0: StateVector,
    solver: SolverConfig,
    *,
    dense_output: bool = False,
    events: EventFns = None,
):
    """solve_ivp that halves ``max_step`` and retries after step-size failures."""

    t0 = float(span[0])
    t1 = float(span[1])
    state0 = np.asarray(y0, dtype=float)
    total_span = abs(t1 - t0)
    attempt_max = float(solver.max_step)
    if not math.isfinite(attempt_max) or attempt_max <= 0.0:
        attempt_max = total_span if total_span > 0.0 else math.inf
    attempt_first = solver.first_step
    if attempt_first is not None and total_span > 0.0:
        attempt_first = min(attempt_first, total_span)
    min_cap = max(total_span * 1e-6, 1e-12)
    result = None
    for attempt in range(solver.max_attempts):
        result = solve_ivp(
            rhs,
            (t0, t1),
            state0,
            method=solver.method,
            rtol=solver.rtol,
            atol=solver.atol,
            max_step=attempt_max,
            first_step=attempt_first,
            dense_output=dense_output,
            events=events,
        )
        if result.success or not _looks_like_step_failure(result.message or ""):
            return result
        logger.warning(
            "solve_ivp failed on [%s, %s] (attempt %d): %s; retrying with max_step=%s",
            t0,
            t1,
            attempt + 1,
            result.message,
            max(attempt_max * 0.5, min_cap),
        )
        attempt_max = max(attempt_max * 0.5, min_cap)
        if attempt_first is not None:
            attempt_first = min(attempt_first, attempt_max)
    return result


__all__ = ["SUPPORTED_METHODS", "SolverConfig", "SolverOptions", "solve_with_retry"]
