# -*- coding: utf-8 -*-
import json

import numpy as np
import pandas as pd
import pytest

from long_mpc.simulator import SCENARIOS, Scenario, ScenarioSimulator, get_scenario, step_ego
from long_mpc.vehicle_state import EgoState, LeadState


def test_step_ego_constant_jerk():
    nxt = step_ego(np.array([0.0, 10.0, 1.0]), 2.0, 0.5)
    np.testing.assert_allclose(nxt, [10.0 * 0.5 + 0.5 * 0.25 + 2.0 * 0.125 / 6.0,
                                     10.0 + 0.5 + 0.25,
                                     2.0])


def test_step_ego_never_reverses():
    nxt = step_ego(np.array([0.0, 0.1, -2.0]), 0.0, 0.5)
    assert nxt[1] == 0.0
    assert nxt[2] == 0.0


def test_lead_accel_profile():
    scenario = get_scenario('stop_and_go')
    assert scenario.lead_accel(0.0) == 0.0
    assert scenario.lead_accel(5.0) == -2.0
    assert scenario.lead_accel(12.0) == 1.5
    assert scenario.lead_accel(25.0) == 0.0


def test_unknown_scenario():
    with pytest.raises(ValueError):
        get_scenario('tailgate')


def test_every_scenario_builds():
    for name in SCENARIOS:
        scenario = get_scenario(name)
        assert scenario.name == name
        assert scenario.t_max > 0.0


def test_statistics_before_run(params, weights):
    simulator = ScenarioSimulator('cruise', params, weights)
    with pytest.raises(RuntimeError):
        simulator.get_statistics()
    with pytest.raises(RuntimeError):
        simulator.to_csv('unused.csv')


def test_standstill_stays_put(params, weights):
    simulator = ScenarioSimulator('standstill', params, weights)
    history = simulator.run(t_max=1.0)
    assert isinstance(history, pd.DataFrame)
    stats = simulator.get_statistics()
    assert not stats['collision']
    assert stats['min_gap'] > 3.9
    assert stats['min_velocity'] >= 0.0


def test_cruise_history_and_statistics(params, weights, tmp_path):
    simulator = ScenarioSimulator('cruise', params, weights)
    history = simulator.run(t_max=2.0)
    assert len(history) == 41
    for column in ('t', 'ego_x', 'ego_v', 'ego_a', 'jerk', 'gap', 'desired_gap',
                   'status', 'fallback', 'reset', 'events', 'qp_iterations', 'solve_time_ms'):
        assert column in history.columns
    assert history['lead_present'].all()
    # first tick sees a new lead
    assert history['reset'].iloc[0]
    assert not history['reset'].iloc[1:].any()

    stats = simulator.get_statistics()
    assert stats['ticks'] == 41
    assert stats['duration'] == pytest.approx(2.0)
    assert stats['infeasible'] == 0
    assert stats['fallback_count'] == 0
    assert not history['fallback'].any()
    assert stats['converged'] + stats['degraded'] == 41
    json.dumps(stats)

    path = tmp_path / 'cruise.csv'
    simulator.to_csv(str(path))
    assert len(pd.read_csv(path)) == 41


def test_cut_in_brakes_without_collision(params, weights):
    simulator = ScenarioSimulator('cut_in', params, weights)
    history = simulator.run(t_max=3.0)
    stats = simulator.get_statistics()
    assert not stats['collision']
    assert stats['min_velocity'] >= 0.0
    before = history[history['t'] < 1.0]
    after = history[history['t'] >= 1.0]
    assert not before['lead_present'].any()
    assert after['lead_present'].all()
    # the cut-in is a new lead
    assert after['reset'].iloc[0]
    assert after['jerk'].iloc[0] < 0.0


def test_custom_scenario(params, weights):
    scenario = Scenario(
        name='approach',
        description='closing on a slower lead',
        ego=EgoState(0.0, 20.0),
        lead=LeadState(60.0, 12.0),
        t_max=1.0,
    )
    simulator = ScenarioSimulator(scenario, params, weights)
    history = simulator.run()
    assert len(history) == 21
    assert history['jerk'].iloc[0] < 0.0
