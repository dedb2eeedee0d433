# -*- coding: utf-8 -*-
"""
long_mpc/dynamics.py

自車の連続時間運動方程式 (3重積分器):
    dx/dt = v
    dv/dt = a
    da/dt = j   (制御入力)

純粋関数。積分器と線形化の両方から任意の (状態, 制御) で評価される。
"""

from typing import Tuple

import numpy as np

# Model is linear in state and control: RK4 sensitivities do not depend on the
# linearization point and may be cached per interval length.
IS_LINEAR = True

_A = np.array([
    [0.0, 1.0, 0.0],
    [0.0, 0.0, 1.0],
    [0.0, 0.0, 0.0],
])
_B = np.array([[0.0], [0.0], [1.0]])


def dynamics(state: np.ndarray, control: float) -> np.ndarray:
    """Time derivative of (x, v, a) under jerk `control`"""
    return np.array([state[1], state[2], control], dtype=float)


def dynamics_jacobian(state: np.ndarray, control: float) -> Tuple[np.ndarray, np.ndarray]:
    """
    Jacobians of `dynamics` with respect to state and control.

    Returns:
        (A, B) with shapes (3, 3) and (3, 1)
    """
    return _A.copy(), _B.copy()
