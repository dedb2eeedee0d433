# -*- coding: utf-8 -*-
# --- mpc_controller.py: Gauss-Newton RTI 縦方向追従MPC ---
"""
================================================================================
Real-time iteration (RTI) Gauss-Newton MPC for longitudinal car following
================================================================================

ティックごとの状態遷移:
1. Initial:    前ティックの軌道をウォームスタートとして読み込み、
               初期状態を計測値に固定、オンラインパラメータを設定
2. Linearize:  軌道周りの線形化 + 凝縮 (condensing.py)
3. Solve:      ホットスタートQP (qp_kernel.py)
4. Update:     Δu を適用し、固定した初期状態から状態を再伝播
5. Terminal:   CONVERGED / DEGRADED / INFEASIBLE

既定構成では1ティックあたり1回のGauss-Newtonステップ (RTI)。
INFEASIBLE の場合、保持している軌道は一切変更しない。
数値発散 (NaN/Inf) の場合は直線初期解にリセットして DEGRADED。
================================================================================
"""

import math
import time
from typing import Any, Dict, Optional

import numpy as np

from .condensing import condense, linearize, stage_weight_matrices, trajectory_cost
from .integrator import HorizonDiscretizer
from .parameters import CostWeights, MPCParameters
from .qp_kernel import OSQPKernel, QPStatus
from .trajectory import NumericalDivergenceError, Solution, SolverEvent, SolverStatus, Trajectory
from .vehicle_state import EgoState, OnlineParameters

# Debug output flag
ENABLE_DEBUG_OUTPUT = False

__all__ = [
    'LongitudinalMPC',
    'elapsed_is_consistent',
]


def elapsed_is_consistent(elapsed: Optional[float], max_interval: float) -> bool:
    """
    Tick interval check.

    A non-positive, non-finite or too long interval means the retained
    trajectory no longer describes the current situation.
    """
    if elapsed is None:
        return True
    return math.isfinite(elapsed) and 0.0 < elapsed <= max_interval


class LongitudinalMPC:
    """
    Longitudinal lead-following MPC solved with one (or a few) Gauss-Newton
    steps per control tick.

    Args:
        params: Horizon, constraint and solver configuration
        weights: Stage and terminal cost weights

    Usage:
        mpc = LongitudinalMPC()
        solution = mpc.solve(EgoState(0.0, 15.0), OnlineParameters(30.0, 12.0, 1.8))
        if solution.is_valid:
            jerk = solution.jerk
    """

    def __init__(self, params: Optional[MPCParameters] = None,
                 weights: Optional[CostWeights] = None):
        self.params = params if params is not None else MPCParameters()
        self.weights = weights if weights is not None else CostWeights()

        self.discretizer = HorizonDiscretizer(self.params.dt_grid, self.params.integrator_steps)
        self._stage_weights = stage_weight_matrices(
            self.weights.stage_matrix(), self.params.stage_weight_scale
        )
        self._terminal_weight = self.weights.terminal_matrix()

        self._kernel = self._new_kernel()
        self._trajectory = Trajectory(self.params.dt_grid)
        self._initialized = False
        self._last_params: Optional[OnlineParameters] = None
        self.last_solution: Optional[Solution] = None

        self.stats: Dict[str, Any] = {
            'solves': 0,
            'converged': 0,
            'degraded': 0,
            'infeasible': 0,
            'resets': 0,
            'divergences': 0,
            'total_qp_iterations': 0,
            'total_solve_time': 0.0,
        }

    def _new_kernel(self) -> OSQPKernel:
        return OSQPKernel(
            n=self.params.N,
            m=self.params.N + 1,
            settings=self.params.qp_settings,
            hot_start=self.params.hot_start,
            refine=self.params.qp_refine_active_set,
            refine_iterations=self.params.qp_refine_iterations,
            feasibility_tol=self.params.qp_feasibility_tol,
        )

    # ========================================================================
    # Warm start management
    # ========================================================================

    @property
    def trajectory(self) -> Trajectory:
        """Copy of the retained warm start"""
        return self._trajectory.copy()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def init_with_simulation(self, ego_state: EgoState):
        """Straight-line guess: constant velocity, zero acceleration and jerk"""
        states = self.discretizer.straight_line(ego_state.as_array(), self.params.v_min)
        self._trajectory.set_states(states)
        self._trajectory.set_controls(np.zeros(self.params.N))
        self._initialized = True

    def reset(self, ego_state: Optional[EgoState] = None):
        """
        Cold start: drop the warm start and the QP kernel instance.

        With `ego_state` the straight-line guess is built immediately,
        otherwise on the next solve.
        """
        self._trajectory = Trajectory(self.params.dt_grid)
        self._initialized = False
        self._kernel = self._new_kernel()
        self.stats['resets'] += 1
        if ego_state is not None and ego_state.is_finite():
            self.init_with_simulation(ego_state)

        if ENABLE_DEBUG_OUTPUT:
            print(f"[RTI] reset (ego={ego_state})")

    # ========================================================================
    # Solve
    # ========================================================================

    def _cost(self, states: np.ndarray, controls: np.ndarray, stage_params: np.ndarray) -> float:
        with np.errstate(over='ignore', invalid='ignore'):
            return trajectory_cost(states, controls, stage_params,
                                   self._stage_weights, self._terminal_weight, self.params.gravity)

    def _resolve_parameters(self, online_params: Optional[OnlineParameters],
                            stage_params: Optional[np.ndarray], events: set):
        """Per-stage parameter rows; non-finite input falls back to the previous tick"""
        N = self.params.N
        if online_params is None or not online_params.is_finite():
            events.add(SolverEvent.INVALID_INPUT)
            if self._last_params is None:
                return None, None
            online_params = self._last_params
            stage_params = None

        if stage_params is not None:
            stage_params = np.asarray(stage_params, dtype=float)
            if stage_params.shape != (N + 1, 3) or not np.all(np.isfinite(stage_params)):
                events.add(SolverEvent.INVALID_INPUT)
                stage_params = None
        if stage_params is None:
            stage_params = np.tile(online_params.as_array(), (N + 1, 1))

        self._last_params = online_params
        return online_params, stage_params

    def _finish(self, solution: Solution, start: float) -> Solution:
        solution.solve_time = time.monotonic() - start
        self.last_solution = solution

        self.stats['solves'] += 1
        self.stats['total_qp_iterations'] += solution.qp_iterations
        self.stats['total_solve_time'] += solution.solve_time
        key = {
            SolverStatus.CONVERGED: 'converged',
            SolverStatus.DEGRADED: 'degraded',
            SolverStatus.INFEASIBLE: 'infeasible',
        }[solution.status]
        self.stats[key] += 1

        if ENABLE_DEBUG_OUTPUT:
            print(f"[RTI] {solution} in {solution.solve_time*1000:.2f}ms")
        return solution

    def solve(self, ego_state: EgoState,
              online_params: Optional[OnlineParameters],
              elapsed: Optional[float] = None,
              stage_params: Optional[np.ndarray] = None) -> Solution:
        """
        Run one control tick.

        Args:
            ego_state: Measured ego state, pinned as stage 0
            online_params: Lead position/velocity and time gap for this tick
            elapsed: Time since the previous tick [s]; an inconsistent value
                cold-starts the solver before solving
            stage_params: Optional (N+1, 3) per-stage rows (lead prediction);
                default holds `online_params` constant over the horizon

        Returns:
            Solution. INFEASIBLE solutions carry no trajectory and leave the
            retained warm start untouched.
        """
        start = time.monotonic()
        p = self.params
        events = set()

        if not ego_state.is_finite():
            events.add(SolverEvent.INVALID_INPUT)
            return self._finish(Solution(SolverStatus.INFEASIBLE, None, events=events), start)

        online_params, stage_params = self._resolve_parameters(online_params, stage_params, events)
        if online_params is None:
            return self._finish(Solution(SolverStatus.INFEASIBLE, None, events=events), start)

        if not elapsed_is_consistent(elapsed, p.max_tick_interval):
            if ENABLE_DEBUG_OUTPUT:
                print(f"[RTI] inconsistent tick interval {elapsed}, cold start")
            self.reset(ego_state)
        if not self._initialized:
            self.init_with_simulation(ego_state)

        working = self._trajectory.copy()
        working.pin_initial_state(ego_state)
        working.attach_parameters(online_params)
        x0 = ego_state.as_array()

        best: Optional[Trajectory] = None
        best_cost = math.inf
        sqp_iterations = 0
        qp_iterations = 0
        step_norm = math.nan
        converged = False

        try:
            for iteration in range(p.max_sqp_iterations):
                if (p.time_budget is not None and iteration > 0
                        and time.monotonic() - start > p.time_budget):
                    events.add(SolverEvent.BUDGET_EXCEEDED)
                    break

                lin = linearize(working, stage_params, self.discretizer, p.gravity)
                qp = condense(lin, self._stage_weights, self._terminal_weight,
                              p.v_min, p.hessian_regularization)
                result = self._kernel.solve(qp)
                sqp_iterations += 1
                qp_iterations += result.iterations

                if result.status in (QPStatus.INFEASIBLE, QPStatus.FAILED):
                    events.add(SolverEvent.INFEASIBLE)
                    if ENABLE_DEBUG_OUTPUT:
                        print(f"[RTI] QP kernel reported '{result.raw_status}', warm start retained")
                    return self._finish(Solution(
                        SolverStatus.INFEASIBLE, None, events=events,
                        sqp_iterations=sqp_iterations, qp_iterations=qp_iterations,
                    ), start)
                if result.status == QPStatus.INACCURATE:
                    events.add(SolverEvent.QP_INACCURATE)

                du = result.x
                step_norm = float(np.max(np.abs(du)))
                controls = lin.controls + du
                states = self.discretizer.simulate(x0, controls)
                working.set_controls(controls)
                working.set_states(states)

                cost = self._cost(states, controls, stage_params)
                if not math.isfinite(cost):
                    raise NumericalDivergenceError(f"non-finite cost {cost} after update")
                if cost <= best_cost:
                    best, best_cost = working.copy(), cost

                if ENABLE_DEBUG_OUTPUT:
                    print(f"[RTI] iter {iteration}: |du|={step_norm:.2e}, cost={cost:.4f}, "
                          f"qp={result.raw_status} ({result.iterations} it)")

                if step_norm < p.step_tolerance:
                    converged = True
                    break

        except NumericalDivergenceError as exc:
            events.add(SolverEvent.NUMERICAL_DIVERGENCE)
            self.stats['divergences'] += 1
            if ENABLE_DEBUG_OUTPUT:
                print(f"[RTI] numerical divergence: {exc}")
            self._kernel.reset()
            self.init_with_simulation(ego_state)
            self._trajectory.attach_parameters(online_params)
            cost = self._cost(self._trajectory.states, self._trajectory.controls, stage_params)
            return self._finish(Solution(
                SolverStatus.DEGRADED, self._trajectory.copy(),
                cost=cost if math.isfinite(cost) else math.nan, events=events,
                sqp_iterations=sqp_iterations, qp_iterations=qp_iterations,
            ), start)

        if p.time_budget is not None and time.monotonic() - start > p.time_budget:
            events.add(SolverEvent.BUDGET_EXCEEDED)

        # Exactly one accepted step is the real-time iteration policy
        rti_accepted = p.max_sqp_iterations == 1 and sqp_iterations == 1
        if converged or rti_accepted:
            status = SolverStatus.CONVERGED
        else:
            events.add(SolverEvent.BUDGET_EXCEEDED)
            status = SolverStatus.DEGRADED
        if SolverEvent.QP_INACCURATE in events or SolverEvent.BUDGET_EXCEEDED in events:
            status = SolverStatus.DEGRADED

        if status == SolverStatus.CONVERGED or best is None:
            final, final_cost = working, self._cost(working.states, working.controls, stage_params)
        else:
            final, final_cost = best, best_cost

        self._trajectory = final.copy()
        return self._finish(Solution(
            status, final.copy(), cost=final_cost, events=events,
            sqp_iterations=sqp_iterations, qp_iterations=qp_iterations, step_norm=step_norm,
        ), start)

    def get_statistics(self) -> Dict[str, Any]:
        stats = dict(self.stats)
        solves = max(stats['solves'], 1)
        stats['mean_qp_iterations'] = stats['total_qp_iterations'] / solves
        stats['mean_solve_time_ms'] = stats['total_solve_time'] / solves * 1000.0
        return stats


if __name__ == "__main__":
    print("=" * 80)
    print("Longitudinal RTI MPC Test")
    print("=" * 80)

    mpc = LongitudinalMPC()

    print("\n### Test 1: Closing on a slower lead ###")
    ego = EgoState(x=0.0, v=20.0)
    lead = OnlineParameters(x_lead=40.0, v_lead=12.0, time_gap=1.8)
    for tick in range(5):
        solution = mpc.solve(ego, lead, elapsed=0.05 if tick else None)
        print(f"  tick {tick}: {solution}, jerk={solution.jerk:.3f}")

    print("\n### Test 2: Standstill behind a stopped lead ###")
    mpc.reset()
    ego = EgoState(x=0.0, v=0.0)
    lead = OnlineParameters(x_lead=4.0, v_lead=0.0, time_gap=1.8)
    solution = mpc.solve(ego, lead)
    print(f"  {solution}, jerk={solution.jerk:.4f}")

    print(f"\n  Statistics: {mpc.get_statistics()}")
