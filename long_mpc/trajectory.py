# -*- coding: utf-8 -*-
"""
long_mpc/trajectory.py

ホライズン上の軌道とソルバー出力:
- Stage: 1ノード (インデックス、区間長、状態、制御、オンラインパラメータ参照)
- Trajectory: N+1 ステージの順序付き列 (ウォームスタートとして保持、並べ替え禁止)
- Solution: 軌道 + コスト + ステータス (CONVERGED / DEGRADED / INFEASIBLE)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set

import numpy as np

from .vehicle_state import NX, EgoState, OnlineParameters


class SolverStatus(Enum):
    CONVERGED = 0    # step below tolerance, or RTI step accepted by policy
    DEGRADED = 1     # budget exceeded / inaccurate QP / divergence recovery
    INFEASIBLE = 2   # QP kernel found no feasible point


class SolverEvent(Enum):
    """Error taxonomy attached to a Solution (several may be set per tick)"""
    NUMERICAL_DIVERGENCE = 0
    INFEASIBLE = 1
    BUDGET_EXCEEDED = 2
    INVALID_INPUT = 3
    QP_INACCURATE = 4


class NumericalDivergenceError(ArithmeticError):
    """Integration or linearization produced non-finite values"""


@dataclass
class Stage:
    index: int
    dt: float                  # interval duration, 0.0 for the terminal stage
    state: np.ndarray          # (x, v, a)
    control: float = 0.0       # jerk acting over [t_k, t_k + dt]
    params: Optional[OnlineParameters] = None

    @property
    def is_terminal(self) -> bool:
        return self.dt == 0.0

    @property
    def x(self) -> float:
        return float(self.state[0])

    @property
    def v(self) -> float:
        return float(self.state[1])

    @property
    def a(self) -> float:
        return float(self.state[2])


class Trajectory:
    """
    Current best guess over the horizon.

    Stage count and durations are fixed at construction. Solver iterations
    overwrite states and controls in place; stages are never reordered.
    """

    def __init__(self, dt_grid: np.ndarray):
        self.dt_grid = np.asarray(dt_grid, dtype=float)
        self.N = len(self.dt_grid)
        self.t_grid = np.concatenate(([0.0], np.cumsum(self.dt_grid)))
        self.stages: List[Stage] = [
            Stage(index=k, dt=float(self.dt_grid[k]) if k < self.N else 0.0, state=np.zeros(NX))
            for k in range(self.N + 1)
        ]

    def __len__(self) -> int:
        return len(self.stages)

    def __getitem__(self, k: int) -> Stage:
        return self.stages[k]

    def __iter__(self):
        return iter(self.stages)

    @property
    def states(self) -> np.ndarray:
        """(N+1, 3) array copy of stage states"""
        return np.array([stage.state for stage in self.stages])

    @property
    def controls(self) -> np.ndarray:
        """(N,) array copy of stage controls (terminal stage excluded)"""
        return np.array([stage.control for stage in self.stages[:-1]])

    def set_states(self, states: np.ndarray):
        for stage, state in zip(self.stages, states):
            stage.state[:] = state

    def set_controls(self, controls: np.ndarray):
        for stage, control in zip(self.stages[:-1], controls):
            stage.control = float(control)

    def pin_initial_state(self, ego: EgoState):
        self.stages[0].state[:] = ego.as_array()

    def attach_parameters(self, params: OnlineParameters):
        for stage in self.stages:
            stage.params = params

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.states)) and np.all(np.isfinite(self.controls)))

    def copy(self) -> 'Trajectory':
        other = Trajectory(self.dt_grid)
        for src, dst in zip(self.stages, other.stages):
            dst.state[:] = src.state
            dst.control = src.control
            dst.params = src.params
        return other

    def __repr__(self) -> str:
        states = self.states
        return (f"Trajectory(N={self.N}, v=[{states[0, 1]:.2f} .. {states[-1, 1]:.2f}]m/s, "
                f"j0={self.stages[0].control:.3f}m/s^3)")


@dataclass
class Solution:
    """
    Result of one solve. An INFEASIBLE solution carries no trajectory, so the
    caller cannot mistake a stale control for a valid one.
    """
    status: SolverStatus
    trajectory: Optional[Trajectory]
    cost: float = float('nan')
    events: Set[SolverEvent] = field(default_factory=set)
    sqp_iterations: int = 0
    qp_iterations: int = 0
    step_norm: float = float('nan')
    solve_time: float = 0.0

    @property
    def is_valid(self) -> bool:
        return self.status != SolverStatus.INFEASIBLE and self.trajectory is not None

    @property
    def jerk(self) -> Optional[float]:
        """Commanded jerk for immediate actuation (first control)"""
        if not self.is_valid:
            return None
        return self.trajectory[0].control

    @property
    def planned_acceleration(self) -> Optional[float]:
        """Acceleration at the end of the first interval"""
        if not self.is_valid:
            return None
        return self.trajectory[1].a

    @property
    def planned_velocity(self) -> Optional[float]:
        if not self.is_valid:
            return None
        return self.trajectory[1].v

    def __repr__(self) -> str:
        events = ','.join(sorted(e.name for e in self.events)) or '-'
        return (f"Solution(status={self.status.name}, cost={self.cost:.3f}, "
                f"sqp={self.sqp_iterations}, qp={self.qp_iterations}, events={events})")
