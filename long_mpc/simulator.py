# -*- coding: utf-8 -*-
"""
long_mpc/simulator.py

閉ループシナリオシミュレータ:
- 自車: ジャーク入力の3重積分器を制御周期ごとに厳密積分 (後退なし)
- 先行車: 加速度プロファイル (区分一定) で駆動、速度は0未満にならない
- 1ティックごとに履歴を記録し pandas.DataFrame として返す
- 統計: 最小車間、衝突、最大減速度、RMSジャーク、ステータス集計、計算時間

組込みシナリオ:
- standstill: 停止中の先行車の4m後方で停止 (定常状態の確認)
- hard_brake: 40m前方の先行車が-4m/s²で急減速して停止
- cut_in:     1秒後に自車の2m前方へ先行車が割り込む (15m/s)
- stop_and_go: 渋滞の発進停止
- cruise:     同一速度での定常追従
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .controllers import LeadFollowController
from .cost import desired_distance
from .parameters import CostWeights, MPCParameters
from .trajectory import SolverStatus
from .vehicle_state import EgoState, LeadState


@dataclass
class Scenario:
    """
    Scripted closed-loop test case.

    Attributes:
        lead: Initial lead state, None when no lead exists at t=0
        lead_accel_profile: (t_start, acceleration) steps, sorted by t_start
        lead_appear_time: Lead is reported to the controller from this time on
        lead_appear_gap: When set, the lead is placed this far ahead of the
            ego at `lead_appear_time` (cut-in)
    """
    name: str
    description: str
    ego: EgoState
    lead: Optional[LeadState]
    time_gap: float = 1.5
    t_max: float = 20.0
    dt: float = 0.05
    lead_accel_profile: List[Tuple[float, float]] = field(default_factory=lambda: [(0.0, 0.0)])
    lead_appear_time: float = 0.0
    lead_appear_gap: Optional[float] = None

    def lead_accel(self, t: float) -> float:
        accel = 0.0
        for t_start, a in self.lead_accel_profile:
            if t >= t_start:
                accel = a
        return accel


def _standstill() -> Scenario:
    return Scenario(
        name='standstill',
        description='ego at rest 4 m behind a stopped lead',
        ego=EgoState(x=0.0, v=0.0),
        lead=LeadState(x=4.0, v=0.0),
        time_gap=1.5,
        t_max=5.0,
    )


def _hard_brake() -> Scenario:
    return Scenario(
        name='hard_brake',
        description='lead 40 m ahead brakes at -4 m/s^2 to a stop',
        ego=EgoState(x=0.0, v=20.0),
        lead=LeadState(x=40.0, v=20.0),
        time_gap=1.5,
        t_max=15.0,
        lead_accel_profile=[(0.0, 0.0), (1.0, -4.0)],
    )


def _cut_in() -> Scenario:
    return Scenario(
        name='cut_in',
        description='lead cuts in 2 m ahead of the ego at 15 m/s',
        ego=EgoState(x=0.0, v=15.0),
        lead=LeadState(x=0.0, v=15.0),
        time_gap=1.5,
        t_max=12.0,
        lead_appear_time=1.0,
        lead_appear_gap=2.0,
    )


def _stop_and_go() -> Scenario:
    return Scenario(
        name='stop_and_go',
        description='lead stops and pulls away again',
        ego=EgoState(x=0.0, v=10.0),
        lead=LeadState(x=25.0, v=10.0),
        time_gap=1.5,
        t_max=30.0,
        lead_accel_profile=[(0.0, 0.0), (2.0, -2.0), (12.0, 1.5), (20.0, 0.0)],
    )


def _cruise() -> Scenario:
    return Scenario(
        name='cruise',
        description='steady following at 25 m/s',
        ego=EgoState(x=0.0, v=25.0),
        lead=LeadState(x=50.0, v=25.0),
        time_gap=1.8,
        t_max=20.0,
    )


SCENARIOS: Dict[str, Callable[[], Scenario]] = {
    'standstill': _standstill,
    'hard_brake': _hard_brake,
    'cut_in': _cut_in,
    'stop_and_go': _stop_and_go,
    'cruise': _cruise,
}


def get_scenario(name: str) -> Scenario:
    if name not in SCENARIOS:
        raise ValueError(f"unknown scenario '{name}' (choose from {sorted(SCENARIOS)})")
    return SCENARIOS[name]()


def step_ego(state: np.ndarray, jerk: float, dt: float) -> np.ndarray:
    """Exact constant-jerk step of the triple integrator; the ego never reverses"""
    x, v, a = state
    x_next = x + v * dt + 0.5 * a * dt ** 2 + jerk * dt ** 3 / 6.0
    v_next = v + a * dt + 0.5 * jerk * dt ** 2
    a_next = a + jerk * dt
    if v_next < 0.0:
        v_next = 0.0
        a_next = max(a_next, 0.0)
    return np.array([x_next, v_next, a_next])


class ScenarioSimulator:
    """
    Runs a LeadFollowController against a scripted lead.

    Args:
        scenario: Scenario instance or built-in scenario name
        params: MPC configuration
        weights: Cost weights
        verbose: Print a progress line every second of simulated time
    """

    def __init__(self, scenario, params: Optional[MPCParameters] = None,
                 weights: Optional[CostWeights] = None, verbose: bool = False):
        self.scenario = get_scenario(scenario) if isinstance(scenario, str) else scenario
        self.params = params if params is not None else MPCParameters()
        self.weights = weights if weights is not None else CostWeights()
        self.controller = LeadFollowController(self.params, self.weights)
        self.verbose = verbose

        self.history: Optional[pd.DataFrame] = None
        self.collision_time: Optional[float] = None

    def run(self, t_max: Optional[float] = None) -> pd.DataFrame:
        sc = self.scenario
        t_max = sc.t_max if t_max is None else t_max
        dt = sc.dt
        n_ticks = int(round(t_max / dt))

        ego = sc.ego.as_array()
        lead = None if sc.lead is None else np.array([sc.lead.x, sc.lead.v])
        lead_visible = sc.lead is not None and sc.lead_appear_time <= 0.0
        rows: List[Dict[str, Any]] = []
        self.collision_time = None

        for tick in range(n_ticks + 1):
            t = tick * dt

            if not lead_visible and lead is not None and t >= sc.lead_appear_time - 1e-9:
                lead_visible = True
                if sc.lead_appear_gap is not None:
                    lead[0] = ego[0] + sc.lead_appear_gap
                    if self.verbose:
                        print(f"[SIM] t={t:.2f}s lead appears {sc.lead_appear_gap:.1f}m ahead")

            lead_a = 0.0
            if lead is not None:
                lead_a = sc.lead_accel(t)
                if lead[1] <= 0.0:
                    # stopped lead only pulls away
                    lead_a = max(lead_a, 0.0)
            lead_state = LeadState(x=lead[0], v=lead[1], a=lead_a) if lead_visible else None

            ego_state = EgoState.from_array(ego)
            wall_start = time.perf_counter()
            cmd = self.controller.update(ego_state, lead_state, sc.time_gap,
                                         elapsed=None if tick == 0 else dt)
            wall_time = time.perf_counter() - wall_start

            gap = lead[0] - ego[0] if lead_visible else np.nan
            solution = cmd.solution
            rows.append({
                't': t,
                'ego_x': ego[0], 'ego_v': ego[1], 'ego_a': ego[2],
                'jerk': cmd.jerk,
                'lead_present': lead_visible,
                'lead_x': lead[0] if lead_visible else np.nan,
                'lead_v': lead[1] if lead_visible else np.nan,
                'lead_a': lead_a if lead_visible else np.nan,
                'gap': gap,
                'desired_gap': (desired_distance(ego[1], lead[1], sc.time_gap, self.params.gravity)
                                if lead_visible else np.nan),
                'status': cmd.status.name,
                'fallback': cmd.fallback,
                'reset': cmd.reset,
                'events': ','.join(sorted(e.name for e in cmd.events)),
                'sqp_iterations': solution.sqp_iterations if solution is not None else 0,
                'qp_iterations': solution.qp_iterations if solution is not None else 0,
                'cost': solution.cost if solution is not None else np.nan,
                'solve_time_ms': wall_time * 1000.0,
            })

            if lead_visible and gap <= 0.0 and self.collision_time is None:
                self.collision_time = t
                print(f"[COLLISION] t={t:.2f}s gap={gap:.2f}m ego_v={ego[1]:.2f}m/s lead_v={lead[1]:.2f}m/s")

            if self.verbose and tick % max(int(round(1.0 / dt)), 1) == 0:
                print(f"[SIM] t={t:5.2f}s v={ego[1]:5.2f}m/s a={ego[2]:5.2f} j={cmd.jerk:6.3f} "
                      f"gap={gap:6.2f}m status={cmd.status.name}")

            if tick == n_ticks:
                break

            # Plant update
            ego = step_ego(ego, cmd.jerk, dt)
            if lead is not None:
                v_next = max(lead[1] + lead_a * dt, 0.0)
                lead[0] += 0.5 * (lead[1] + v_next) * dt
                lead[1] = v_next

        self.history = pd.DataFrame(rows)
        return self.history

    def get_statistics(self) -> Dict[str, Any]:
        """Summary of the last run (JSON serializable)"""
        if self.history is None:
            raise RuntimeError("run() has not been called")
        df = self.history
        followed = df[df['lead_present']]
        status_counts = df['status'].value_counts()
        gap_error = (followed['gap'] - followed['desired_gap']).abs()

        return {
            'scenario': self.scenario.name,
            'duration': float(df['t'].iloc[-1]),
            'ticks': int(len(df)),
            'collision': self.collision_time is not None,
            'collision_time': self.collision_time,
            'min_gap': float(followed['gap'].min()) if len(followed) else None,
            'mean_gap_error': float(gap_error.mean()) if len(followed) else None,
            'peak_decel': float(df['ego_a'].min()),
            'min_velocity': float(df['ego_v'].min()),
            'rms_jerk': float(np.sqrt(np.mean(df['jerk'] ** 2))),
            'converged': int(status_counts.get(SolverStatus.CONVERGED.name, 0)),
            'degraded': int(status_counts.get(SolverStatus.DEGRADED.name, 0)),
            'infeasible': int(status_counts.get(SolverStatus.INFEASIBLE.name, 0)),
            'fallback_count': int(df['fallback'].sum()),
            'reset_count': int(self.controller.reset_count),
            'mean_qp_iterations': float(df['qp_iterations'].mean()),
            'mean_solve_time_ms': float(df['solve_time_ms'].mean()),
            'max_solve_time_ms': float(df['solve_time_ms'].max()),
        }

    def to_csv(self, path: str):
        if self.history is None:
            raise RuntimeError("run() has not been called")
        self.history.to_csv(path, index=False)
