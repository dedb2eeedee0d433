# -*- coding: utf-8 -*-
import numpy as np
import pytest

from long_mpc.condensing import (
    condense,
    linearize,
    stage_weight_matrices,
    trajectory_cost,
)
from long_mpc.integrator import HorizonDiscretizer
from long_mpc.parameters import CostWeights, MPCParameters
from long_mpc.trajectory import NumericalDivergenceError, Trajectory


@pytest.fixture
def setup():
    params = MPCParameters()
    weights = CostWeights()
    discretizer = HorizonDiscretizer(params.dt_grid, params.integrator_steps)
    stage_weights = stage_weight_matrices(weights.stage_matrix(), params.stage_weight_scale)
    terminal_weight = weights.terminal_matrix()
    stage_params = np.tile([45.0, 12.0, 1.5], (params.N + 1, 1))
    return params, discretizer, stage_weights, terminal_weight, stage_params


def make_trajectory(params, states, controls):
    trajectory = Trajectory(params.dt_grid)
    trajectory.set_states(states)
    trajectory.set_controls(controls)
    return trajectory


def test_stage_weights_scaled_by_interval(setup):
    params, _, stage_weights, _, _ = setup
    base = CostWeights().stage_matrix()
    np.testing.assert_allclose(stage_weights[0], base)
    np.testing.assert_allclose(stage_weights[4], base)
    np.testing.assert_allclose(stage_weights[5], 3.0 * base)
    assert len(stage_weights) == params.N


def test_condensed_prediction_matches_simulation_with_defects(setup):
    params, discretizer, stage_weights, terminal_weight, stage_params = setup
    rng = np.random.default_rng(0)
    x0 = np.array([0.0, 15.0, 0.3])
    controls = rng.normal(0.0, 0.2, params.N)
    # Guess with shooting defects: perturbed simulated states, stage 0 pinned
    states = discretizer.simulate(x0, controls) + rng.normal(0.0, 0.5, (params.N + 1, 3))
    states[0] = x0
    trajectory = make_trajectory(params, states, controls)

    lin = linearize(trajectory, stage_params, discretizer)
    qp = condense(lin, stage_weights, terminal_weight)

    du = rng.normal(0.0, 0.1, params.N)
    predicted = qp.predicted_states(states, du)
    np.testing.assert_allclose(predicted, discretizer.simulate(x0, controls + du), atol=1e-8)


def test_gradient_matches_cost_derivative(setup):
    params, discretizer, stage_weights, terminal_weight, stage_params = setup
    x0 = np.array([0.0, 15.0, 0.0])
    controls = np.linspace(-0.2, 0.1, params.N)
    states = discretizer.simulate(x0, controls)
    trajectory = make_trajectory(params, states, controls)

    lin = linearize(trajectory, stage_params, discretizer)
    qp = condense(lin, stage_weights, terminal_weight)

    def cost(u):
        return trajectory_cost(discretizer.simulate(x0, u), u, stage_params,
                               stage_weights, terminal_weight)

    eps = 1e-6
    numeric = np.array([
        (cost(controls + eps * e) - cost(controls - eps * e)) / (2 * eps)
        for e in np.eye(params.N)
    ])
    np.testing.assert_allclose(qp.g, numeric, rtol=1e-4, atol=1e-6)
    assert qp.cost == pytest.approx(cost(controls))


def test_hessian_symmetric_positive_semidefinite(setup):
    params, discretizer, stage_weights, terminal_weight, stage_params = setup
    x0 = np.array([0.0, 20.0, -0.5])
    controls = np.zeros(params.N)
    trajectory = make_trajectory(params, discretizer.straight_line(x0), controls)

    qp = condense(linearize(trajectory, stage_params, discretizer), stage_weights, terminal_weight)
    np.testing.assert_allclose(qp.H, qp.H.T)
    assert np.linalg.eigvalsh(qp.H).min() > -1e-9


def test_velocity_rows(setup):
    params, discretizer, stage_weights, terminal_weight, stage_params = setup
    x0 = np.array([0.0, 3.0, 0.0])
    controls = np.zeros(params.N)
    states = discretizer.simulate(x0, controls)
    trajectory = make_trajectory(params, states, controls)

    qp = condense(linearize(trajectory, stage_params, discretizer), stage_weights, terminal_weight,
                  v_min=0.0)
    assert qp.A.shape == (params.N + 1, params.N)
    # stage 0 is pinned: no control dependence
    np.testing.assert_array_equal(qp.A[0], 0.0)
    # v_k depends only on earlier controls
    np.testing.assert_array_equal(np.triu(qp.A[1:], k=1), 0.0)
    assert np.all(np.diag(qp.A[1:]) > 0.0)
    np.testing.assert_allclose(qp.lower, -states[:, 1], atol=1e-9)
    assert np.all(np.isinf(qp.upper))


def test_non_finite_guess_raises(setup):
    params, discretizer, _, _, stage_params = setup
    states = np.zeros((params.N + 1, 3))
    states[7, 1] = np.nan
    trajectory = make_trajectory(params, states, np.zeros(params.N))
    with pytest.raises(NumericalDivergenceError):
        linearize(trajectory, stage_params, discretizer)
