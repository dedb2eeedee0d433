# -*- coding: utf-8 -*-
import math

import numpy as np
import pytest

from long_mpc.controllers import ControlCommand, LeadFollowController
from long_mpc.parameters import MPCParameters
from long_mpc.trajectory import Solution, SolverEvent, SolverStatus, Trajectory
from long_mpc.vehicle_state import EgoState, LeadState, OnlineParameters


@pytest.fixture
def controller(params, weights):
    return LeadFollowController(params, weights)


class TestLeadPreprocessing:
    def test_no_lead_uses_virtual_lead(self, controller):
        cmd = controller.update(EgoState(10.0, 20.0), None)
        assert isinstance(cmd, ControlCommand)
        assert not cmd.lead_present
        assert controller.feed.current == OnlineParameters(60.0, 30.0, 1.8)
        assert not cmd.fallback
        # nothing to follow: no braking
        assert cmd.jerk > -0.1

    def test_lead_with_status_false_counts_as_absent(self, controller):
        cmd = controller.update(EgoState(0.0, 20.0), LeadState(5.0, 0.0, status=False))
        assert not cmd.lead_present

    @pytest.mark.parametrize("v_lead,a_lead", [(0.05, 0.0), (-0.3, 0.0), (5.0, -12.0)])
    def test_stopped_lead_correction(self, controller, v_lead, a_lead):
        controller.update(EgoState(0.0, 10.0), LeadState(40.0, v_lead, a_lead))
        assert controller.feed.current.v_lead == 0.0
        assert controller.feed.lead_acceleration == 0.0

    def test_moving_lead_is_not_corrected(self, controller):
        controller.update(EgoState(0.0, 10.0), LeadState(40.0, 5.0, -1.0))
        assert controller.feed.current.v_lead == 5.0
        assert controller.feed.lead_acceleration == -1.0


class TestWarmStartInvalidation:
    def test_new_lead_resets(self, controller):
        ego = EgoState(0.0, 20.0)
        assert controller.update(ego, None).reset is False
        cmd = controller.update(ego, LeadState(30.0, 15.0), elapsed=0.05)
        assert cmd.reset
        assert cmd.lead_present
        assert controller.reset_count == 1

    def test_lead_following_its_prediction_does_not_reset(self, controller):
        controller.update(EgoState(0.0, 15.0), LeadState(30.0, 10.0))
        cmd = controller.update(EgoState(0.75, 15.0), LeadState(30.5, 10.0), elapsed=0.05)
        assert not cmd.reset
        assert controller.reset_count == 1

    def test_lead_position_jump_resets(self, controller):
        controller.update(EgoState(0.0, 15.0), LeadState(30.0, 10.0))
        cmd = controller.update(EgoState(0.75, 15.0), LeadState(40.0, 10.0), elapsed=0.05)
        assert cmd.reset
        assert controller.reset_count == 2

    def test_long_tick_interval_resets_with_warning(self, controller, capsys):
        controller.update(EgoState(0.0, 10.0), LeadState(30.0, 10.0))
        cmd = controller.update(EgoState(50.0, 10.0), LeadState(80.0, 10.0), elapsed=5.0)
        assert cmd.reset
        assert controller.reset_count == 2
        assert controller.warning.emitted == 1
        assert "[WARNING]" in capsys.readouterr().out

    def test_warning_is_rate_limited(self, controller):
        controller.update(EgoState(0.0, 10.0), None)
        for _ in range(3):
            controller.update(EgoState(0.0, 10.0), None, elapsed=-1.0)
        assert controller.warning.emitted == 1
        assert controller.warning.suppressed == 2
        assert controller.reset_count == 3


class TestFallback:
    def test_infeasible_solve_falls_back(self, controller):
        ego = EgoState(0.0, -1.0)
        cmd = controller.update(ego, LeadState(30.0, 5.0))
        assert cmd.status == SolverStatus.INFEASIBLE
        assert cmd.fallback
        assert SolverEvent.INFEASIBLE in cmd.events
        assert cmd.solution is not None and cmd.solution.trajectory is None
        assert cmd.plan.shape == (controller.params.N + 1, 3)
        assert cmd.plan[1:, 1].min() >= 0.0
        assert controller.fallback_count == 1

    def test_no_parameters_ever_falls_back(self, controller):
        cmd = controller.update(EgoState(0.0, 10.0), LeadState(math.nan, 10.0))
        assert cmd.fallback
        assert cmd.status == SolverStatus.INFEASIBLE
        assert SolverEvent.INVALID_INPUT in cmd.events
        assert cmd.solution is None

    def test_invalid_lead_reuses_previous_parameters(self, controller):
        controller.update(EgoState(0.0, 10.0), LeadState(30.0, 10.0))
        cmd = controller.update(EgoState(0.5, 10.0), LeadState(30.5, math.nan), elapsed=0.05)
        assert not cmd.fallback
        assert not cmd.reset
        assert SolverEvent.INVALID_INPUT in cmd.events
        assert controller.feed.current == OnlineParameters(30.0, 10.0, 1.8)

    def test_fallback_plan_ramps_to_hold_deceleration(self, controller):
        p = controller.params
        plan = controller.fallback_plan(EgoState(0.0, 20.0, 0.0))
        accel = plan[:, 2]
        assert np.all(np.diff(accel[:4]) < 0.0)
        assert accel.min() >= p.fallback_decel - 1e-9
        # jerk bound holds between grid points
        jerks = np.diff(accel) / p.dt_grid
        assert np.abs(jerks).max() <= p.fallback_jerk + 1e-9
        assert np.all(np.diff(plan[:, 1]) <= 1e-12)
        assert plan[:, 1].min() >= 0.0

    def test_fallback_plan_stays_at_standstill(self, controller):
        plan = controller.fallback_plan(EgoState(0.0, 0.0, 0.0))
        np.testing.assert_allclose(plan[:, 1:], 0.0)

    def test_sanity_check_flags_bad_plans(self, controller):
        params = controller.params
        trajectory = Trajectory(params.dt_grid)
        states = np.zeros((params.N + 1, 3))
        states[:, 1] = 5.0
        states[:, 0] = 5.0 * params.t_grid
        trajectory.set_states(states)
        good = Solution(SolverStatus.CONVERGED, trajectory)
        assert controller._sanity_problem(good, lead_positions=100.0) is None

        states[4, 1] = -0.5
        trajectory.set_states(states)
        assert "backwards" in controller._sanity_problem(good, lead_positions=100.0)

        states[4, 1] = 5.0
        trajectory.set_states(states)
        assert "through the lead" in controller._sanity_problem(good, lead_positions=-10.0)

        states[7, 2] = np.nan
        trajectory.set_states(states)
        assert "NaN" in controller._sanity_problem(good, lead_positions=100.0)

    def test_sanity_check_compares_stage_by_stage(self, controller):
        params = controller.params
        trajectory = Trajectory(params.dt_grid)
        states = np.zeros((params.N + 1, 3))
        states[:, 1] = 20.0
        states[:, 0] = 20.0 * params.t_grid
        trajectory.set_states(states)
        plan = Solution(SolverStatus.CONVERGED, trajectory)
        # a lead 30m ahead at the same speed is never overtaken
        assert controller._sanity_problem(plan, lead_positions=30.0 + 20.0 * params.t_grid) is None
        # the same plan behind a stopped lead drives far through it
        assert "through the lead" in controller._sanity_problem(
            plan, lead_positions=np.full(params.N + 1, 30.0))

    def test_hold_mode_extrapolates_lead_at_current_speed(self, controller):
        controller.update(EgoState(0.0, 20.0), LeadState(50.0, 20.0))
        positions = controller._predicted_lead_positions(controller.feed.stage_parameters())
        np.testing.assert_allclose(positions, 50.0 + 20.0 * controller.params.t_grid)


def test_steady_following_commands_small_jerk(controller):
    ego = EgoState(0.0, 15.0)
    desired = 15.0 * 1.8 + 4.0
    cmd = controller.update(ego, LeadState(desired, 15.0), time_gap=1.8)
    assert cmd.status == SolverStatus.CONVERGED
    assert abs(cmd.jerk) < 0.5
    assert cmd.acceleration == pytest.approx(cmd.plan[1, 2])
    assert "ControlCommand(" in repr(cmd)


@pytest.mark.parametrize("v_ego,x_lead,v_lead", [
    (20.0, 50.0, 20.0),
    (15.0, 31.0, 15.0),
    (25.0, 80.0, 20.0),
])
def test_cruising_behind_moving_lead_never_falls_back(controller, v_ego, x_lead, v_lead):
    for tick in range(10):
        t = 0.05 * tick
        cmd = controller.update(EgoState(v_ego * t, v_ego), LeadState(x_lead + v_lead * t, v_lead),
                                elapsed=None if tick == 0 else 0.05)
        assert not cmd.fallback
        assert cmd.status in (SolverStatus.CONVERGED, SolverStatus.DEGRADED)
    assert controller.fallback_count == 0
    assert controller.reset_count == 1


@pytest.mark.parametrize("lead_prediction", ["hold", "constant_velocity"])
def test_close_braking_lead_commands_negative_jerk(weights, lead_prediction):
    # lead 15m ahead at the same speed, braking at -4 m/s^2
    params = MPCParameters(qp_time_limit=10.0, lead_prediction=lead_prediction)
    controller = LeadFollowController(params, weights)
    cmd = controller.update(EgoState(0.0, 20.0), LeadState(15.0, 20.0, -4.0), time_gap=1.5)
    assert not cmd.fallback
    assert cmd.status == SolverStatus.CONVERGED
    assert cmd.jerk < 0.0
    assert controller.feed.lead_acceleration == -4.0
