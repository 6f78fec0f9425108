"""Tests for phase-line / phase-plane analysis, simulation and the command line."""

import json
import math
import argparse
import numpy as np
import pytest
from dynamics_dsl import (
    SystemModel1D, SystemModel2D, InvalidSystemError,
    AnalysisConfig, Stability, Equilibrium, DegenerateInterval, PhaseLineAnalyzer,
    analyze_phase_line, filter_equilibria,
    PhasePlaneAnalyzer, vector_field, classify_linearization,
    Trajectory, generate_time_series, simulate, HistorySample,
    EXAMPLE_SYSTEMS, run_example, SystemValidator, parse_param, main,
)


def analyze(formula, x_min, x_max, params=None, parameter_names=(), config=None, delay=False):
    system = SystemModel1D(formula, parameter_names, delay=delay)
    return analyze_phase_line(system, params, x_min, x_max, config)


class TestPhaseLine:
    def test_logistic(self):
        result = analyze("k*X*(1-X)", -0.5, 1.5, {"k": 0.5}, ["k"])
        assert [eq.stability for eq in result.equilibria] == [Stability.UNSTABLE, Stability.STABLE]
        assert result.equilibria[0].x == pytest.approx(0.0, abs=1e-9)
        assert result.equilibria[1].x == pytest.approx(1.0, abs=1e-9)
        assert result.degenerate_intervals == []

    def test_zero_function(self):
        result = analyze("0", -1.0, 1.0)
        assert result.equilibria == []
        assert result.degenerate_intervals == [DegenerateInterval(-1.0, 1.0)]

    def test_deterministic(self):
        system = SystemModel1D("X*exp(-X) - 0.1")
        first = analyze_phase_line(system, None, 0.0, 5.0)
        second = analyze_phase_line(system, None, 0.0, 5.0)
        assert first == second

    def test_two_roots(self):
        result = analyze("X*exp(-X) - 0.1", 0.0, 5.0)
        assert [eq.x for eq in result.equilibria] == [
            pytest.approx(0.111832559, abs=1e-6),
            pytest.approx(3.577152064, abs=1e-6),
        ]
        assert [eq.stability for eq in result.equilibria] == [Stability.UNSTABLE, Stability.STABLE]

    def test_sine(self):
        result = analyze("sin(X)", -4.0, 4.0)
        assert [eq.x for eq in result.equilibria] == [
            pytest.approx(-math.pi, abs=1e-9),
            pytest.approx(0.0, abs=1e-9),
            pytest.approx(math.pi, abs=1e-9),
        ]
        assert [eq.stability for eq in result.equilibria] == [
            Stability.STABLE, Stability.UNSTABLE, Stability.STABLE,
        ]

    def test_cubic(self):
        result = analyze("X^3", -2.0, 2.0)
        assert len(result.equilibria) == 1
        assert result.equilibria[0].stability == Stability.UNSTABLE

    def test_tangent_root_is_semi_stable(self):
        result = analyze("X*X", -1.0, 1.0)
        assert len(result.equilibria) == 1
        eq = result.equilibria[0]
        assert eq.x == pytest.approx(0.0, abs=1e-3)
        assert eq.stability == Stability.SEMI_STABLE
        assert eq.direction == "left"

    def test_semi_stable_direction(self):
        above = analyze("(X - 0.5)^2", 0.0, 1.0)
        below = analyze("-(X - 0.5)^2", 0.0, 1.0)
        assert [(eq.stability, eq.direction) for eq in above.equilibria] == [(Stability.SEMI_STABLE, "left")]
        assert [(eq.stability, eq.direction) for eq in below.equilibria] == [(Stability.SEMI_STABLE, "right")]
        assert above.equilibria[0].x == pytest.approx(0.5, abs=1e-3)

    def test_degenerate_interval_suppresses_roots(self):
        result = analyze("X - sqrt(X)*sqrt(X)", 0.0, 2.0)
        assert result.equilibria == []
        assert result.degenerate_intervals == [DegenerateInterval(0.0, 2.0)]

    def test_no_isolated_roots(self):
        assert analyze("exp(-X^2)", 5.0, 6.0).equilibria == []
        assert analyze("exp(X) + 1", -1.0, 1.0).equilibria == []

    def test_pole_is_not_a_root(self):
        assert analyze("1/X", -1.0, 1.3).equilibria == []

    def test_partial_domain(self):
        result = analyze("log(X)", -1.0, 2.0)
        assert len(result.equilibria) == 1
        assert result.equilibria[0].x == pytest.approx(1.0, abs=1e-9)
        assert result.equilibria[0].stability == Stability.UNSTABLE

    def test_mostly_non_finite_warns(self):
        with pytest.warns(UserWarning):
            analyze("sqrt(X - 3)", 0.0, 4.0)

    def test_delay_model_uses_steady_states(self):
        result = analyze("r*X*(1 - X_tau/k)", -0.5, 2.5, {"r": 1.0, "k": 1.0}, ["r", "k"], delay=True)
        assert [eq.x for eq in result.equilibria] == [pytest.approx(0.0, abs=1e-9), pytest.approx(1.0, abs=1e-9)]
        assert [eq.stability for eq in result.equilibria] == [Stability.UNSTABLE, Stability.STABLE]

    def test_invalid_bounds(self):
        system = SystemModel1D("X")
        with pytest.raises(ValueError):
            analyze_phase_line(system, None, 1.0, 1.0)
        with pytest.raises(ValueError):
            analyze_phase_line(system, None, -math.inf, 1.0)

    def test_invalid_system(self):
        with pytest.raises(InvalidSystemError):
            analyze("k*X", 0.0, 1.0)

    def test_stored_parameters_used(self):
        system = SystemModel1D("X - a", ["a"], {"a": 0.25})
        result = PhaseLineAnalyzer().analyze(system, None, -1.0, 1.0)
        assert result.equilibria[0].x == pytest.approx(0.25, abs=1e-9)

    def test_filter_equilibria(self):
        equilibria = [Equilibrium(0.0, Stability.STABLE), Equilibrium(2.0, Stability.UNSTABLE)]
        kept = filter_equilibria(equilibria, [DegenerateInterval(-0.5, 0.5)])
        assert kept == [equilibria[1]]


class TestAnalysisConfig:
    def test_defaults(self):
        config = AnalysisConfig()
        assert config.samples == 400
        assert config.probe_offset(2.0) == pytest.approx(2e-3)

    def test_absolute_offset(self):
        assert AnalysisConfig(stability_offset=0.01).probe_offset(100.0) == 0.01

    def test_rejects_bad_values(self):
        with pytest.raises(ValueError):
            AnalysisConfig(samples=1)
        with pytest.raises(ValueError):
            AnalysisConfig(zero_tolerance=0.0)
        with pytest.raises(ValueError):
            AnalysisConfig(stability_offset=-1.0)

    def test_from_dict(self):
        assert AnalysisConfig.from_dict({"samples": 200}).samples == 200
        with pytest.raises(ValueError):
            AnalysisConfig.from_dict({"colour": "red"})

    def test_from_json(self, tmp_path):
        path = tmp_path / "analysis.json"
        path.write_text(json.dumps({"samples": 100, "zero_tolerance": 1e-6}))
        config = AnalysisConfig.from_json(str(path))
        assert config.samples == 100
        assert config.zero_tolerance == 1e-6

    def test_coarse_sampling_still_finds_roots(self):
        result = analyze("k*X*(1-X)", -0.5, 1.5, {"k": 0.5}, ["k"], config=AnalysisConfig(samples=20))
        assert [eq.x for eq in result.equilibria] == [pytest.approx(0.0, abs=1e-9), pytest.approx(1.0, abs=1e-9)]


class TestPhasePlane:
    def test_classify_linearization(self):
        assert classify_linearization(0.0, -1.0) == "saddle"
        assert classify_linearization(0.0, 1.0) == "center"
        assert classify_linearization(-3.0, 2.0) == "stable node"
        assert classify_linearization(3.0, 2.0) == "unstable node"
        assert classify_linearization(-1.0, 2.0) == "stable spiral"
        assert classify_linearization(1.0, 2.0) == "unstable spiral"
        assert classify_linearization(1.0, 0.0) == "degenerate"

    def test_vector_field(self):
        data = vector_field(SystemModel2D("Y, -X"), None, (-1.0, 1.0), (-1.0, 1.0), grid_size=20)
        assert data['x'].shape == (21, 21)
        assert np.allclose(data['dx'], data['y'])
        assert np.allclose(data['dy'], -data['x'])
        moving = data['magnitude'] > 0
        assert np.allclose(np.hypot(data['ndx'], data['ndy'])[moving], 1.0)

    def test_harmonic_center(self):
        equilibria = PhasePlaneAnalyzer().find_equilibria(SystemModel2D("Y, -X"), None, (-2.0, 2.5), (-2.0, 2.5))
        assert len(equilibria) == 1
        assert equilibria[0].x == pytest.approx(0.0, abs=1e-8)
        assert equilibria[0].y == pytest.approx(0.0, abs=1e-8)
        assert equilibria[0].kind == "center"

    def test_lotka_volterra(self):
        params = {"a": 1.0, "b": 0.5, "c": 0.75, "d": 0.25}
        system = SystemModel2D("a*X - b*X*Y, -c*Y + d*X*Y", None, list(params), params)
        equilibria = PhasePlaneAnalyzer().find_equilibria(system, None, (-1.0, 6.0), (-1.0, 5.0))
        assert [eq.kind for eq in equilibria] == ["saddle", "center"]
        assert (equilibria[1].x, equilibria[1].y) == (pytest.approx(3.0, abs=1e-6), pytest.approx(2.0, abs=1e-6))

    def test_infinite_literal_in_field(self):
        system = SystemModel2D("Y + 0*1e400, -X")
        assert system.is_valid_system()
        assert PhasePlaneAnalyzer().find_equilibria(system, None, (-1.0, 1.0), (-1.0, 1.0)) == []

    def test_damped_spiral(self):
        system = SystemModel2D("Y, -X - 0.5*Y")
        equilibria = PhasePlaneAnalyzer().find_equilibria(system, None, (-1.0, 1.3), (-1.0, 1.3))
        assert [eq.kind for eq in equilibria] == ["stable spiral"]
        assert all(value.real < 0 for value in equilibria[0].eigenvalues)


class TestTrajectory:
    def test_leaves_padded_bounds(self):
        trajectory = Trajectory(SystemModel1D("X"), 1.0, bounds=[(-1.0, 2.0)]).run()
        assert not trajectory.active
        assert not trajectory.frozen
        assert trajectory.state.x > 2.3
        assert trajectory.state.t < 1.0

    def test_time_horizon(self):
        trajectory = Trajectory(SystemModel1D("-X"), 1.0, time_horizon=2.0).run()
        assert trajectory.state.t >= 2.0 - 1e-9
        assert trajectory.history[0].x == 1.0

    def test_history_window(self):
        trajectory = Trajectory(SystemModel1D("-X"), 1.0, max_history=5).run()
        assert len(trajectory.history) == 5

    def test_history_window_must_cover_delay(self):
        system = SystemModel1D("-X_tau", delay=True)
        with pytest.raises(ValueError):
            Trajectory(system, 1.0, tau=1.0, dt=0.05, max_history=10)

    def test_freeze_ends_trajectory(self):
        trajectory = Trajectory(SystemModel1D("1/X"), 0.0).run()
        assert trajectory.frozen
        assert len(trajectory.history) == 1

    def test_delay_trajectory(self):
        system = SystemModel1D("r*X*(1 - X_tau/k)", ["r", "k"], {"r": 1.0, "k": 1.0}, delay=True)
        trajectory = Trajectory(system, 0.2, tau=1.8).run()
        assert trajectory.state.t >= 10.0 - 1e-9
        assert np.all(np.isfinite(trajectory.values()))

    def test_two_dimensional_initial_state(self):
        trajectory = Trajectory(SystemModel2D("Y, -X"), (1.0, 0.0), time_horizon=1.0).run()
        assert trajectory.values().shape[0] == 2
        with pytest.raises(ValueError):
            Trajectory(SystemModel2D("Y, -X"), 1.0)

    def test_generate_time_series(self):
        samples = generate_time_series(SystemModel1D("-X"), 1.0, t_max=1.0, dt=0.1)
        assert samples[0] == HistorySample(0.0, 1.0)
        assert samples[-1].t >= 1.0 - 1e-9
        assert samples[-1].x == pytest.approx(math.exp(-samples[-1].t), abs=1e-5)


class TestSimulate:
    def test_rk4(self):
        solution = simulate(SystemModel1D("-X"), 1.0, (0.0, 1.0), dt=0.01)
        assert solution['success']
        assert solution['y'].shape == (1, len(solution['t']))
        assert solution['y'][0, -1] == pytest.approx(math.exp(-solution['t'][-1]), abs=1e-3)
        assert solution['state_names'] == ["X"]

    def test_solve_ivp_method(self):
        solution = simulate(SystemModel2D("Y, -X"), (1.0, 0.0), (0.0, 2 * math.pi), method="RK45")
        assert solution['success']
        assert solution['y'][0, -1] == pytest.approx(1.0, abs=1e-4)
        assert solution['y'][1, -1] == pytest.approx(0.0, abs=1e-4)

    def test_invalid_system(self):
        solution = simulate(SystemModel1D("k*X"), 1.0)
        assert not solution['success']
        assert "`k`" in solution['error']

    def test_delay_requires_rk4(self):
        system = SystemModel1D("-X_tau", delay=True)
        with pytest.raises(ValueError):
            simulate(system, 1.0, method="RK45", tau=1.0)

    def test_frozen_run_is_reported(self):
        with pytest.warns(UserWarning):
            solution = simulate(SystemModel1D("1/X"), 0.0)
        assert not solution['success']
        assert solution['frozen']


class TestExamples:
    @pytest.mark.parametrize("name", sorted(EXAMPLE_SYSTEMS))
    def test_run_example(self, name):
        result = run_example(name, t_max=2.0, verbose=False)
        assert result['system'].is_valid_system()
        assert result['solution']['success']

    def test_unknown_example(self):
        with pytest.raises(ValueError):
            run_example("pendulum", verbose=False)

    def test_validator(self):
        results = SystemValidator.run_all_tests(verbose=False)
        assert all(results.values())


class TestCommandLine:
    def test_parse_param(self):
        assert parse_param("k=0.5") == ("k", 0.5)
        with pytest.raises(argparse.ArgumentTypeError):
            parse_param("k")
        with pytest.raises(argparse.ArgumentTypeError):
            parse_param("k=abc")

    def test_phase_line(self, capsys):
        assert main(["--formula", "k*X*(1-X)", "--param", "k=0.5", "--domain", "-0.5", "1.5"]) == 0
        output = capsys.readouterr().out
        assert "unstable" in output
        assert "stable" in output

    def test_invalid_formula(self, capsys):
        assert main(["--formula", "k*X"]) == 1
        assert "unknown identifier `k`" in capsys.readouterr().out

    def test_planar_simulation(self, capsys):
        assert main(["--formula", "Y, -X", "--simulate", "--x0", "1", "0", "--time", "1"]) == 0
        assert "Final state" in capsys.readouterr().out

    def test_delay_simulation(self, capsys):
        args = ["--formula", "X*(1 - X_tau)", "--delay", "--tau", "1.5",
                "--domain", "-0.5", "2", "--simulate", "--x0", "0.2"]
        assert main(args) == 0

    def test_config_file(self, tmp_path, capsys):
        path = tmp_path / "analysis.json"
        path.write_text(json.dumps({"samples": 50}))
        assert main(["--formula", "-X", "--config", str(path)]) == 0
        path.write_text(json.dumps({"samples": 0}))
        assert main(["--formula", "-X", "--config", str(path)]) == 1

    def test_self_test(self, capsys):
        assert main(["--test"]) == 0
