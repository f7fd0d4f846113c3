from __future__ import annotations

import math
from types import SimpleNamespace

import numpy as np
import pytest

from src.hybridsim import ode_solver
from src.hybridsim.errors import ConfigError
from src.hybridsim.ode_solver import SolverConfig, solve_with_retry


def test_from_options_validates_and_builds_config() -> None:
    config = SolverConfig.from_options({"method": "BDF", "rtol": 1e-8, "seed": 3})
    assert config.method == "BDF"
    assert config.rtol == pytest.approx(1e-8)
    assert config.seed == 3
    assert config.atol == SolverConfig().atol


@pytest.mark.parametrize(
    "options",
    [{"method": "Euler"}, {"rtol": 0.0}, {"atol": -1.0}, {"max_attempts": 0}, {"first_step": 0.0}],
)
def test_from_options_rejects_invalid_values(options) -> None:
    with pytest.raises(ConfigError):
        SolverConfig.from_options(options)


def test_identity_is_stable_and_sensitive() -> None:
    assert SolverConfig().identity() == SolverConfig().identity()
    assert SolverConfig().identity() != SolverConfig(rtol=1e-7).identity()


def test_solve_with_retry_integrates_decay() -> None:
    solver = SolverConfig(method="RK45", rtol=1e-8, atol=1e-10)
    result = solve_with_retry(lambda t, y: -y, (0.0, 1.0), np.array([2.0]), solver)
    assert result.success
    assert result.y[0, -1] == pytest.approx(2.0 * math.exp(-1.0), rel=1e-6)


def test_solve_with_retry_halves_max_step_after_step_failure(monkeypatch) -> None:
    calls = []

    def fake_solve_ivp(rhs, span, y0, **kwargs):
        calls.append(kwargs["max_step"])
        if len(calls) < 3:
            return SimpleNamespace(success=False, message="Required step size is less than spacing between numbers.")
        return SimpleNamespace(success=True, message="ok")

    monkeypatch.setattr(ode_solver, "solve_ivp", fake_solve_ivp)
    result = solve_with_retry(lambda t, y: y, (0.0, 4.0), np.array([1.0]), SolverConfig(max_step=2.0))

    assert result.success
    assert calls == [2.0, 1.0, 0.5]


def test_solve_with_retry_stops_on_other_failures(monkeypatch) -> None:
    calls = []

    def fake_solve_ivp(rhs, span, y0, **kwargs):
        calls.append(kwargs["max_step"])
        return SimpleNamespace(success=False, message="Something else went wrong.")

    monkeypatch.setattr(ode_solver, "solve_ivp", fake_solve_ivp)
    result = solve_with_retry(lambda t, y: y, (0.0, 4.0), np.array([1.0]), SolverConfig())

    assert not result.success
    assert calls == [4.0]
