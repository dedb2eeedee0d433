# -*- coding: utf-8 -*-
"""
================================================================================
Nonlinear least-squares stage and terminal cost for lead following
================================================================================

安全車間 (反応距離 + 制動距離差) と快適性を表す残差ベクトル。
重みは外部 (CostWeights) から注入され、ここでは固定しない。

定義 (v: 自車速度, v_l: 先行車速度, d = x_l - x_ego, T: time_gap):
    RW(v, v_l, T)      = v*T - (v_l - v)*T + v²/(2g) - v_l²/(2g)
    follow_const_m(v)  = 2.75 / (1 + exp(2.2 - 0.9*v)) + 1.25
    desired(v, v_l, T) = follow_const_m(v) + RW(v, v_l, T)
    norm_rw_error      = (RW + 4.0 - d) / (sqrt(v + 0.5) + 0.1)

ステージ残差:
    r0 = exp(0.3 * norm_rw_error)           危険接近への指数ペナルティ
    r1 = (d - desired) / (0.05*v + 0.5)      車間追従誤差
    r2 = a * (0.1*v + 1.0)                   加速度 (高速ほど重く)
    r3 = j * (0.1*v + 1.0)                   ジャーク
終端残差: r0, r1, r2 (終端ノードに制御は作用しない)

全ての項はそのステージの状態・制御・オンラインパラメータのみに依存する。
ヤコビアンは解析的に計算 (Gauss-Newton線形化用)。
================================================================================
"""

import math
from typing import Tuple

import numpy as np

GRAVITY = 9.81

# Standstill offset of the normalized safety error [m]
RW_OFFSET = 4.0
TTC_EXP_GAIN = 0.3

N_STAGE_RESIDUALS = 4
N_TERMINAL_RESIDUALS = 3


def _sigmoid(z: float) -> float:
    if z >= 0.0:
        return 1.0 / (1.0 + math.exp(-z))
    ez = math.exp(z)
    return ez / (1.0 + ez)


def rw_distance(v: float, v_lead: float, time_gap: float, g: float = GRAVITY) -> float:
    """Reaction-plus-braking-distance safety margin RW(v, v_l, T) [m]"""
    return v * time_gap - (v_lead - v) * time_gap + v * v / (2.0 * g) - v_lead * v_lead / (2.0 * g)


def rw_distance_dv(v: float, time_gap: float, g: float = GRAVITY) -> float:
    return 2.0 * time_gap + v / g


def follow_const_m(v: float) -> float:
    """
    Speed-dependent standstill gap [m].

    Sigmoid that shrinks the classic ~4 m car-length gap towards ~1.5 m as the
    ego comes to a stop, starting around 9 m/s.
    """
    return 2.75 * _sigmoid(0.9 * v - 2.2) + 1.25


def follow_const_m_dv(v: float) -> float:
    s = _sigmoid(0.9 * v - 2.2)
    return 2.75 * 0.9 * s * (1.0 - s)


def desired_distance(v: float, v_lead: float, time_gap: float, g: float = GRAVITY) -> float:
    return follow_const_m(v) + rw_distance(v, v_lead, time_gap, g)


def _error_scale(v: float) -> float:
    # sqrt argument floored at 0 so velocities below -0.5 m/s stay finite
    return math.sqrt(max(v + 0.5, 0.0)) + 0.1


def _error_scale_dv(v: float) -> float:
    if v + 0.5 <= 0.0:
        return 0.0
    return 0.5 / math.sqrt(v + 0.5)


def norm_rw_error(v: float, v_lead: float, d: float, time_gap: float, g: float = GRAVITY) -> float:
    """Distance error against RW, normalized by a speed-dependent scale"""
    return (rw_distance(v, v_lead, time_gap, g) + RW_OFFSET - d) / _error_scale(v)


def _norm_rw_error_grad(v: float, v_lead: float, d: float, time_gap: float,
                        g: float) -> Tuple[float, float, float]:
    """(e, de/dv, de/dd)"""
    numerator = rw_distance(v, v_lead, time_gap, g) + RW_OFFSET - d
    scale = _error_scale(v)
    e = numerator / scale
    de_dv = rw_distance_dv(v, time_gap, g) / scale - numerator * _error_scale_dv(v) / (scale * scale)
    de_dd = -1.0 / scale
    return e, de_dv, de_dd


def stage_residual(state: np.ndarray, control: float, p: np.ndarray, g: float = GRAVITY) -> np.ndarray:
    """
    Stage residual vector (4,).

    Args:
        state: (x_ego, v_ego, a_ego)
        control: jerk
        p: online data (x_lead, v_lead, time_gap)
    """
    x, v, a = state
    x_lead, v_lead, time_gap = p
    d = x_lead - x
    comfort = 0.1 * v + 1.0
    return np.array([
        np.exp(TTC_EXP_GAIN * norm_rw_error(v, v_lead, d, time_gap, g)),
        (d - desired_distance(v, v_lead, time_gap, g)) / (0.05 * v + 0.5),
        a * comfort,
        control * comfort,
    ])


def terminal_residual(state: np.ndarray, p: np.ndarray, g: float = GRAVITY) -> np.ndarray:
    """Terminal residual vector (3,): stage residual without the jerk term"""
    return stage_residual(state, 0.0, p, g)[:N_TERMINAL_RESIDUALS]


def stage_residual_jacobian(state: np.ndarray, control: float, p: np.ndarray,
                            g: float = GRAVITY) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Residual and its analytic Jacobians.

    Returns:
        (r, Jx, Ju) with shapes (4,), (4, 3), (4, 1)
    """
    x, v, a = state
    x_lead, v_lead, time_gap = p
    d = x_lead - x

    r = np.empty(N_STAGE_RESIDUALS)
    Jx = np.zeros((N_STAGE_RESIDUALS, 3))
    Ju = np.zeros((N_STAGE_RESIDUALS, 1))

    # r0: exponential safety term (dd/dx = -1)
    e, de_dv, de_dd = _norm_rw_error_grad(v, v_lead, d, time_gap, g)
    r[0] = np.exp(TTC_EXP_GAIN * e)
    Jx[0, 0] = TTC_EXP_GAIN * r[0] * (-de_dd)
    Jx[0, 1] = TTC_EXP_GAIN * r[0] * de_dv

    # r1: speed-normalized gap tracking error
    q = 0.05 * v + 0.5
    gap_error = d - desired_distance(v, v_lead, time_gap, g)
    r[1] = gap_error / q
    Jx[1, 0] = -1.0 / q
    ddesired_dv = follow_const_m_dv(v) + rw_distance_dv(v, time_gap, g)
    Jx[1, 1] = -ddesired_dv / q - gap_error * 0.05 / (q * q)

    # r2, r3: acceleration and jerk effort
    comfort = 0.1 * v + 1.0
    r[2] = a * comfort
    Jx[2, 1] = 0.1 * a
    Jx[2, 2] = comfort

    r[3] = control * comfort
    Jx[3, 1] = 0.1 * control
    Ju[3, 0] = comfort

    return r, Jx, Ju


def terminal_residual_jacobian(state: np.ndarray, p: np.ndarray,
                               g: float = GRAVITY) -> Tuple[np.ndarray, np.ndarray]:
    """(r, Jx) with shapes (3,), (3, 3)"""
    r, Jx, _ = stage_residual_jacobian(state, 0.0, p, g)
    return r[:N_TERMINAL_RESIDUALS], Jx[:N_TERMINAL_RESIDUALS]


def stage_cost(state: np.ndarray, control: float, p: np.ndarray, W: np.ndarray,
               g: float = GRAVITY) -> float:
    """0.5 * r' W r"""
    r = stage_residual(state, control, p, g)
    return 0.5 * float(r @ W @ r)


def terminal_cost(state: np.ndarray, p: np.ndarray, W: np.ndarray, g: float = GRAVITY) -> float:
    r = terminal_residual(state, p, g)
    return 0.5 * float(r @ W @ r)


if __name__ == "__main__":
    print("=" * 80)
    print("Lead-following Cost Test")
    print("=" * 80)

    print("\n### Test 1: Standstill gap (follow_const_m) ###")
    for v in [0.0, 2.0, 5.0, 9.0, 15.0, 30.0]:
        print(f"  v={v:5.1f}m/s: follow_const_m={follow_const_m(v):.3f}m")

    print("\n### Test 2: RW at matched speed ###")
    for v in [0.0, 10.0, 25.0]:
        print(f"  v=v_l={v:5.1f}m/s, T=1.5s: RW={rw_distance(v, v, 1.5):.6f}m")

    print("\n### Test 3: Residuals ###")
    state = np.array([0.0, 20.0, 0.0])
    p = np.array([15.0, 16.0, 1.5])
    r, Jx, Ju = stage_residual_jacobian(state, 0.0, p)
    print(f"  r  = {np.array2string(r, precision=3)}")
    print(f"  Jx = {np.array2string(Jx, precision=3)}")
