# -*- coding: utf-8 -*-
"""
long_mpc/integrator.py

非等間隔ホライズンの離散化:
- 区間ごとに固定ステップRK4 (サブステップ数は設定可能、既定50)
- 順方向伝播 propagate(state, control, dt) -> next_state
- 感度 (dnext/dstate, dnext/dcontrol) をRK4の連鎖律で同時に計算
- 線形モデルの場合、感度は区間長ごとにキャッシュ
"""

from typing import Callable, Dict, Tuple

import numpy as np

from . import dynamics as _dynamics
from .trajectory import NumericalDivergenceError
from .vehicle_state import NU, NX

# Debug output flag
ENABLE_DEBUG_OUTPUT = False


class RK4Integrator:
    """
    Fixed-step 4th-order Runge-Kutta over one shooting interval.

    The interval is split into `num_steps` equal sub-steps so accuracy does
    not depend on the (possibly long) outer interval.
    """

    def __init__(self,
                 num_steps: int = 50,
                 f: Callable = _dynamics.dynamics,
                 jacobian: Callable = _dynamics.dynamics_jacobian,
                 is_linear: bool = _dynamics.IS_LINEAR):
        self.num_steps = num_steps
        self.f = f
        self.jacobian = jacobian
        self.is_linear = is_linear
        # dt -> (A_d, B_d) for linear models
        self._sensitivity_cache: Dict[float, Tuple[np.ndarray, np.ndarray]] = {}

    def propagate(self, state: np.ndarray, control: float, dt: float) -> np.ndarray:
        """Integrate the dynamics over `dt` with `control` held constant"""
        h = dt / self.num_steps
        z = np.asarray(state, dtype=float).copy()
        f = self.f
        for _ in range(self.num_steps):
            k1 = f(z, control)
            k2 = f(z + 0.5 * h * k1, control)
            k3 = f(z + 0.5 * h * k2, control)
            k4 = f(z + h * k3, control)
            z = z + (h / 6.0) * (k1 + 2.0 * k2 + 2.0 * k3 + k4)
        return z

    def sensitivities(self, state: np.ndarray, control: float,
                      dt: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Propagate and differentiate one interval.

        The variational equations are integrated alongside the state with the
        same RK4 stages, so the Jacobians are exact derivatives of the
        discrete map `propagate`.

        Returns:
            (next_state, A_d, B_d) with shapes (3,), (3, 3), (3, 1)
        """
        if self.is_linear and dt in self._sensitivity_cache:
            A_d, B_d = self._sensitivity_cache[dt]
            z = self.propagate(state, control, dt)
            if not np.all(np.isfinite(z)):
                raise NumericalDivergenceError(
                    f"non-finite integration result (state={state}, control={control}, dt={dt})"
                )
            return z, A_d.copy(), B_d.copy()

        h = dt / self.num_steps
        z = np.asarray(state, dtype=float).copy()
        # S = d z / d(z0, u)
        S = np.hstack([np.eye(NX), np.zeros((NX, NU))])
        E_u = np.hstack([np.zeros((NU, NX)), np.eye(NU)])
        f, jac = self.f, self.jacobian

        for _ in range(self.num_steps):
            z1 = z
            A1, B1 = jac(z1, control)
            k1 = f(z1, control)
            dk1 = A1 @ S + B1 @ E_u

            z2 = z + 0.5 * h * k1
            A2, B2 = jac(z2, control)
            k2 = f(z2, control)
            dk2 = A2 @ (S + 0.5 * h * dk1) + B2 @ E_u

            z3 = z + 0.5 * h * k2
            A3, B3 = jac(z3, control)
            k3 = f(z3, control)
            dk3 = A3 @ (S + 0.5 * h * dk2) + B3 @ E_u

            z4 = z + h * k3
            A4, B4 = jac(z4, control)
            k4 = f(z4, control)
            dk4 = A4 @ (S + h * dk3) + B4 @ E_u

            z = z + (h / 6.0) * (k1 + 2.0 * k2 + 2.0 * k3 + k4)
            S = S + (h / 6.0) * (dk1 + 2.0 * dk2 + 2.0 * dk3 + dk4)

        if not (np.all(np.isfinite(z)) and np.all(np.isfinite(S))):
            raise NumericalDivergenceError(
                f"non-finite integration result (state={state}, control={control}, dt={dt})"
            )

        A_d, B_d = S[:, :NX], S[:, NX:]
        if self.is_linear:
            self._sensitivity_cache[dt] = (A_d.copy(), B_d.copy())
            if ENABLE_DEBUG_OUTPUT:
                print(f"[RK4] cached sensitivities for dt={dt:.2f}s ({self.num_steps} sub-steps)")
        return z, A_d, B_d


class HorizonDiscretizer:
    """
    Multiple-shooting discretization of the fixed non-uniform horizon.

    Args:
        dt_grid: Interval durations, e.g. 5 x 0.2s then 15 x 0.6s
        num_steps: RK4 sub-steps per interval
    """

    def __init__(self, dt_grid: np.ndarray, num_steps: int = 50,
                 integrator: RK4Integrator = None):
        self.dt_grid = np.asarray(dt_grid, dtype=float)
        self.N = len(self.dt_grid)
        self.integrator = integrator if integrator is not None else RK4Integrator(num_steps)

    def propagate(self, state: np.ndarray, control: float, dt: float) -> np.ndarray:
        return self.integrator.propagate(state, control, dt)

    def sensitivities(self, state: np.ndarray, control: float,
                      dt: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        return self.integrator.sensitivities(state, control, dt)

    def simulate(self, x0: np.ndarray, controls: np.ndarray) -> np.ndarray:
        """
        Single-shooting forward simulation of a whole control sequence.

        Returns:
            (N+1, 3) states starting with x0
        """
        states = np.empty((self.N + 1, NX))
        states[0] = x0
        for k in range(self.N):
            states[k + 1] = self.integrator.propagate(states[k], float(controls[k]), self.dt_grid[k])
        if not np.all(np.isfinite(states)):
            raise NumericalDivergenceError("non-finite states in forward simulation")
        return states

    def straight_line(self, x0: np.ndarray, v_min: float = 0.0) -> np.ndarray:
        """
        Constant-velocity guess: zero acceleration, velocity floored at v_min.
        Stage 0 keeps the measured state.
        """
        t_grid = np.concatenate(([0.0], np.cumsum(self.dt_grid)))
        v = max(float(x0[1]), v_min)
        states = np.zeros((self.N + 1, NX))
        states[:, 0] = x0[0] + v * t_grid
        states[:, 1] = v
        states[0] = x0
        return states
