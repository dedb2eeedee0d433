# -*- coding: utf-8 -*-
"""
================================================================================
Longitudinal vehicle states and per-tick online parameters
================================================================================

縦方向追従MPCの入力データ表現

状態ベクトル (x, v, a):
- x: 経路に沿った位置 [m]
- v: 速度 [m/s] (全ステージで v >= 0 をQPで保証)
- a: 加速度 [m/s²]

制御入力:
- j: ジャーク [m/s³] (上下限なし、コストでペナルティ)

オンラインパラメータ (状態・制御ベクトルには含まれない):
- x_lead: 先行車位置 [m]
- v_lead: 先行車速度 [m/s]
- time_gap: 追従時間ギャップ [s] (ドライバー設定)
================================================================================
"""

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

NX = 3  # state dimension (x, v, a)
NU = 1  # control dimension (jerk)
NP = 3  # online data dimension (x_lead, v_lead, time_gap)


@dataclass
class EgoState:
    """Measured ego vehicle state, pinned as stage 0 of every solve"""
    x: float
    v: float
    a: float = 0.0

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.v, self.a], dtype=float)

    @classmethod
    def from_array(cls, state: np.ndarray) -> 'EgoState':
        return cls(x=float(state[0]), v=float(state[1]), a=float(state[2]))

    def is_finite(self) -> bool:
        return all(math.isfinite(value) for value in (self.x, self.v, self.a))

    def __repr__(self) -> str:
        return f"EgoState(x={self.x:.2f}m, v={self.v:.2f}m/s, a={self.a:.2f}m/s^2)"


@dataclass
class LeadState:
    """
    Sensor-fused lead vehicle as delivered by the surrounding stack.

    Attributes:
        x: Lead position in the ego path frame [m]
        v: Lead velocity [m/s]
        a: Lead acceleration [m/s²] (only used by constant_velocity prediction)
        status: False when the tracker has no valid lead
    """
    x: float
    v: float
    a: float = 0.0
    status: bool = True


@dataclass(frozen=True)
class OnlineParameters:
    """
    Per-tick parameters of the cost function.

    Replaced every tick, never part of the decision vector. Frozen so that the
    stages of a trajectory can share one instance safely.
    """
    x_lead: float
    v_lead: float
    time_gap: float

    def as_array(self) -> np.ndarray:
        return np.array([self.x_lead, self.v_lead, self.time_gap], dtype=float)

    def is_finite(self) -> bool:
        return all(math.isfinite(value) for value in (self.x_lead, self.v_lead, self.time_gap))

    def gap_to(self, ego: EgoState) -> float:
        """Bumper gap d = x_lead - x_ego [m]"""
        return self.x_lead - ego.x


def virtual_lead(ego: EgoState, distance: float = 50.0, speed_offset: float = 10.0,
                 time_gap: float = 1.8) -> OnlineParameters:
    """
    Fast virtual lead used when the tracker reports nothing, so the MPC keeps
    producing a plan that is never constrained by the lead.
    """
    return OnlineParameters(
        x_lead=ego.x + distance,
        v_lead=ego.v + speed_offset,
        time_gap=time_gap,
    )


def stopped_lead_correction(v_lead: float, a_lead: float,
                            stopped_speed: float = 0.1) -> Optional[tuple]:
    """
    Treat a crawling lead, or one that brakes to standstill within half a
    second, as stopped.

    Returns:
        (v_lead, a_lead) corrected to (0.0, 0.0) when the lead is considered
        stopped, otherwise None
    """
    v_lead = max(0.0, v_lead)
    if v_lead < stopped_speed or -a_lead / 2.0 > v_lead:
        return 0.0, 0.0
    return None


if __name__ == "__main__":
    print("=" * 80)
    print("Longitudinal State Test")
    print("=" * 80)

    ego = EgoState(x=0.0, v=15.0, a=-0.5)
    params = OnlineParameters(x_lead=30.0, v_lead=12.0, time_gap=1.8)
    print(f"  {ego}")
    print(f"  {params}")
    print(f"  Gap: {params.gap_to(ego):.1f} m")
    print(f"  Virtual lead: {virtual_lead(ego)}")
    print(f"  Stopped lead correction (0.05 m/s): {stopped_lead_correction(0.05, 0.0)}")
    print("\n[PASS] State tests done")
