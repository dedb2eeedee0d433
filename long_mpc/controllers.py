# -*- coding: utf-8 -*-
"""
long_mpc/controllers.py

先行車追従コントローラ層 (スタック側ラッパー)
================================================================================

ティックごとの処理:
1. 先行車の前処理
   - 先行車なし: 自車50m前方を自車+10m/sで走る仮想先行車を代入 (MPCは常に稼働)
   - 停止先行車: 0.1m/s未満、または0.5秒以内に停止する減速中の先行車は停止扱い
2. ウォームスタートの無効化判定
   - 新しい先行車の出現、先行車位置の2.5m以上のジャンプ
   - 経過時間が非正・非有限・長すぎる場合
3. OnlineParameterFeed 経由でパラメータ更新 (非有限値は前ティック値を再利用)
4. RTIソルバー実行
5. 事後健全性チェック
   - NaN、後退 (v < -0.01m/s)、先行車を50m以上突き抜ける計画 → リセット + 警告 (5秒に1回まで)
6. INFEASIBLE / リセット時のフォールバック
   - 有界ジャークで快適減速度 (-1.5m/s²) まで移行し停止まで保持
================================================================================
"""

import math
from dataclasses import dataclass, field
from typing import Optional, Set

import numpy as np

from .mpc_controller import LongitudinalMPC, elapsed_is_consistent
from .online_parameters import OnlineParameterFeed, predict_lead
from .parameters import CostWeights, MPCParameters
from .trajectory import Solution, SolverEvent, SolverStatus
from .utils import RateLimitedWarning
from .vehicle_state import EgoState, LeadState, stopped_lead_correction, virtual_lead

# Debug output flag
ENABLE_DEBUG_OUTPUT = False

DEFAULT_TIME_GAP = 1.8


@dataclass
class ControlCommand:
    """
    Output of one controller tick.

    Attributes:
        jerk: Jerk to actuate now [m/s³]
        acceleration: Planned acceleration at the end of the first interval [m/s²]
        plan: (N+1, 3) planned states (MPC trajectory or fallback plan)
        status: Solver status of this tick (INFEASIBLE when the fallback is used
            because the solver found no feasible point)
        fallback: True when `plan` is the hold-deceleration fallback
    """
    jerk: float
    acceleration: float
    plan: np.ndarray
    status: SolverStatus
    events: Set[SolverEvent] = field(default_factory=set)
    fallback: bool = False
    reset: bool = False
    lead_present: bool = True
    solution: Optional[Solution] = None

    def __repr__(self) -> str:
        flags = []
        if self.fallback:
            flags.append('FALLBACK')
        if self.reset:
            flags.append('RESET')
        if not self.lead_present:
            flags.append('NO_LEAD')
        return (f"ControlCommand(jerk={self.jerk:.3f}, a={self.acceleration:.3f}, "
                f"status={self.status.name}{', ' + ','.join(flags) if flags else ''})")


class LeadFollowController:
    """
    Stack-facing wrapper around LongitudinalMPC.

    Args:
        params: MPC configuration (includes the controller thresholds)
        weights: Cost weights
    """

    def __init__(self, params: Optional[MPCParameters] = None,
                 weights: Optional[CostWeights] = None):
        self.params = params if params is not None else MPCParameters()
        self.solver = LongitudinalMPC(self.params, weights)
        self.feed = OnlineParameterFeed(self.params)
        self.warning = RateLimitedWarning(self.params.reset_warning_interval)

        self.time = 0.0
        self._prev_lead_status = False
        self._prev_lead_x: Optional[float] = None
        self._prev_lead_v = 0.0

        self.reset_count = 0
        self.fallback_count = 0

    # ========================================================================
    # Lead preprocessing
    # ========================================================================

    def _lead_values(self, ego: EgoState, lead: Optional[LeadState], time_gap: float):
        """(x_lead, v_lead, a_lead, lead_present)"""
        p = self.params
        if lead is None or not lead.status:
            virt = virtual_lead(ego, p.no_lead_distance, p.no_lead_speed_offset, time_gap)
            return virt.x_lead, virt.v_lead, 0.0, False

        v_lead, a_lead = lead.v, lead.a
        if math.isfinite(v_lead) and math.isfinite(a_lead):
            corrected = stopped_lead_correction(v_lead, a_lead, p.stopped_lead_speed)
            if corrected is not None:
                v_lead, a_lead = corrected
        return lead.x, v_lead, a_lead, True

    def _lead_jumped(self, x_lead: float, elapsed: Optional[float]) -> bool:
        if self._prev_lead_x is None:
            return True
        dt = elapsed if elapsed is not None and math.isfinite(elapsed) else 0.0
        expected = self._prev_lead_x + self._prev_lead_v * dt
        return abs(x_lead - expected) > self.params.lead_jump_reset

    # ========================================================================
    # Sanity checks and fallback
    # ========================================================================

    def _predicted_lead_positions(self, stage_params: np.ndarray) -> np.ndarray:
        """Lead position at every stage; hold mode extrapolates at the current lead speed"""
        if self.params.lead_prediction == 'hold':
            p = self.feed.current
            return predict_lead(p.x_lead, p.v_lead, 0.0, p.time_gap, self.params.t_grid)[:, 0]
        return stage_params[:, 0]

    def _sanity_problem(self, solution: Solution, lead_positions) -> Optional[str]:
        """
        Plausibility check of an accepted plan.

        Args:
            lead_positions: Predicted lead position per stage (or a scalar)
        """
        states = solution.trajectory.states
        if not np.all(np.isfinite(states)):
            return "NaN in planned trajectory"
        if np.any(states[:, 1] < -self.params.backwards_tolerance):
            return f"planned velocity {states[:, 1].min():.3f}m/s (driving backwards)"
        overshoot = float(np.max(states[:, 0] - np.asarray(lead_positions, dtype=float)))
        if overshoot > self.params.crash_distance:
            return f"plan drives {overshoot:.1f}m through the lead"
        return None

    def fallback_plan(self, ego: EgoState) -> np.ndarray:
        """
        Hold-deceleration plan: ramp to `fallback_decel` with bounded jerk and
        stop at standstill.
        """
        p = self.params
        discretizer = self.solver.discretizer
        states = np.empty((p.N + 1, 3))
        states[0] = ego.as_array()
        if not np.all(np.isfinite(states[0])):
            states[0] = np.nan_to_num(states[0], nan=0.0, posinf=0.0, neginf=0.0)
        for k in range(p.N):
            x, v, a = states[k]
            target = p.fallback_decel if v > p.stopped_lead_speed else 0.0
            jerk = float(np.clip((target - a) / p.dt_grid[k], -p.fallback_jerk, p.fallback_jerk))
            nxt = discretizer.propagate(states[k], jerk, p.dt_grid[k])
            if nxt[1] < 0.0:
                nxt[1] = 0.0
                nxt[2] = max(nxt[2], 0.0)
            states[k + 1] = nxt
        return states

    def _fallback_command(self, ego: EgoState, status: SolverStatus, events: Set[SolverEvent],
                          solution: Optional[Solution], reset: bool, lead_present: bool) -> ControlCommand:
        p = self.params
        plan = self.fallback_plan(ego)
        a0 = ego.a if math.isfinite(ego.a) else 0.0
        v0 = ego.v if math.isfinite(ego.v) else 0.0
        target = p.fallback_decel if v0 > p.stopped_lead_speed else 0.0
        jerk = float(np.clip((target - a0) / p.dt_grid[0], -p.fallback_jerk, p.fallback_jerk))
        self.fallback_count += 1
        if ENABLE_DEBUG_OUTPUT:
            print(f"[CTRL] t={self.time:.2f}s fallback (status={status.name}), jerk={jerk:.3f}")
        return ControlCommand(
            jerk=jerk, acceleration=float(plan[1, 2]), plan=plan, status=status,
            events=set(events), fallback=True, reset=reset, lead_present=lead_present,
            solution=solution,
        )

    # ========================================================================
    # Tick
    # ========================================================================

    def update(self, ego: EgoState, lead: Optional[LeadState],
               time_gap: float = DEFAULT_TIME_GAP,
               elapsed: Optional[float] = None) -> ControlCommand:
        """
        Run one control tick.

        Args:
            ego: Measured ego state
            lead: Tracked lead vehicle, None (or status=False) when nothing is tracked
            time_gap: Driver following-time preference [s]
            elapsed: Time since the previous tick [s], None on the first tick
        """
        p = self.params
        if elapsed is not None and math.isfinite(elapsed) and elapsed > 0.0:
            self.time += elapsed

        x_lead, v_lead, a_lead, lead_present = self._lead_values(ego, lead, time_gap)

        # Non-finite lead data is left to the feed (rejected) and does not
        # touch the lead tracking state
        lead_finite = math.isfinite(x_lead) and math.isfinite(v_lead)

        reset_reason = None
        if lead_present and lead_finite and (
                not self._prev_lead_status or self._lead_jumped(x_lead, elapsed)):
            reset_reason = "new lead" if not self._prev_lead_status else "lead position jump"
        elif self.solver.is_initialized and not elapsed_is_consistent(elapsed, p.max_tick_interval):
            reset_reason = f"inconsistent tick interval ({elapsed})"
            self.warning.warn(f"t={self.time:.2f}s: {reset_reason}, resetting MPC", self.time)

        if lead_finite:
            self._prev_lead_status = lead_present
            self._prev_lead_x = x_lead if lead_present else None
            self._prev_lead_v = v_lead

        if reset_reason is not None and ego.is_finite():
            self.solver.reset(ego)
            self.reset_count += 1
            if ENABLE_DEBUG_OUTPUT:
                print(f"[CTRL] t={self.time:.2f}s reset: {reset_reason}")

        events: Set[SolverEvent] = set()
        if not self.feed.update(x_lead, v_lead, time_gap, a_lead):
            events.add(SolverEvent.INVALID_INPUT)
        if self.feed.current is None:
            return self._fallback_command(ego, SolverStatus.INFEASIBLE, events, None,
                                          reset_reason is not None, lead_present)

        stage_params = self.feed.stage_parameters()
        solution = self.solver.solve(ego, self.feed.current, stage_params=stage_params)
        events |= solution.events

        if not solution.is_valid:
            return self._fallback_command(ego, SolverStatus.INFEASIBLE, events, solution,
                                          reset_reason is not None, lead_present)

        problem = self._sanity_problem(solution, self._predicted_lead_positions(stage_params))
        if problem is not None:
            self.warning.warn(f"t={self.time:.2f}s: {problem}, resetting MPC", self.time)
            self.solver.reset(ego)
            self.reset_count += 1
            return self._fallback_command(ego, SolverStatus.DEGRADED, events, solution,
                                          True, lead_present)

        return ControlCommand(
            jerk=solution.jerk,
            acceleration=solution.planned_acceleration,
            plan=solution.trajectory.states,
            status=solution.status,
            events=events,
            reset=reset_reason is not None,
            lead_present=lead_present,
            solution=solution,
        )


if __name__ == "__main__":
    print("=" * 80)
    print("Lead-following Controller Test")
    print("=" * 80)

    controller = LeadFollowController()
    ego = EgoState(x=0.0, v=20.0)

    print("\n### Test 1: No lead ###")
    print(f"  {controller.update(ego, None)}")

    print("\n### Test 2: Lead appears 30m ahead ###")
    lead = LeadState(x=30.0, v=15.0)
    print(f"  {controller.update(ego, lead, elapsed=0.05)}")

    print("\n### Test 3: Fallback plan ###")
    plan = controller.fallback_plan(ego)
    print(f"  v: {plan[0, 1]:.2f} -> {plan[-1, 1]:.2f} m/s, a_end={plan[-1, 2]:.2f} m/s^2")
