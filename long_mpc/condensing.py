# -*- coding: utf-8 -*-
"""
long_mpc/condensing.py

Gauss-Newton線形化と凝縮 (condensing):

1. 線形化: 現在の軌道推定 (x̄_k, ū_k) の周りで
   - 遷移写像:   Δx_{k+1} = A_k Δx_k + B_k Δu_k + c_k   (c_k: シューティング欠損)
   - 残差:       r_k ≈ r̄_k + Jx_k Δx_k + Ju_k Δu_k
2. 凝縮: Δx_0 = 0 (初期状態は固定) から状態変数を消去し、
   Δx_k = G_k Δu + e_k  として制御摂動 Δu (N次元) のみの密QPを構成:

       min  0.5 Δu' H Δu + g' Δu
       s.t. v_min - v̄_k - e_k[v] <= G_k[v,:] Δu      (k = 0..N)

   H = Σ M_k' W_k M_k,  g = Σ M_k' W_k ρ_k,  M_k = Jx_k G_k + Ju_k E_k,  ρ_k = r̄_k + Jx_k e_k
"""

from dataclasses import dataclass
from typing import List

import numpy as np

from .cost import (
    GRAVITY, N_STAGE_RESIDUALS,
    stage_cost, stage_residual_jacobian, terminal_cost, terminal_residual_jacobian,
)
from .integrator import HorizonDiscretizer
from .trajectory import NumericalDivergenceError, Trajectory
from .vehicle_state import NX

VELOCITY_INDEX = 1


@dataclass
class Linearization:
    """Per-stage sensitivities of one trajectory guess (N intervals)"""
    A: np.ndarray          # (N, 3, 3) transition Jacobians w.r.t. state
    B: np.ndarray          # (N, 3)    transition Jacobians w.r.t. control
    defects: np.ndarray    # (N, 3)    F(x̄_k, ū_k) - x̄_{k+1}
    residuals: np.ndarray  # (N, 4)
    Jx: np.ndarray         # (N, 4, 3)
    Ju: np.ndarray         # (N, 4)
    terminal_residual: np.ndarray  # (3,)
    terminal_Jx: np.ndarray        # (3, 3)
    states: np.ndarray     # (N+1, 3) linearization point
    controls: np.ndarray   # (N,)

    @property
    def N(self) -> int:
        return len(self.controls)


@dataclass
class CondensedQP:
    """Dense QP over the N control perturbations"""
    H: np.ndarray          # (N, N)
    g: np.ndarray          # (N,)
    A: np.ndarray          # (N+1, N) velocity rows, stage 0 has no control dependence
    lower: np.ndarray      # (N+1,)
    upper: np.ndarray      # (N+1,)
    cost: float            # cost at the linearization point
    G: np.ndarray          # (N+1, 3, N) state sensitivity to Δu
    e: np.ndarray          # (N+1, 3)    state offset from defects

    def predicted_states(self, states: np.ndarray, du: np.ndarray) -> np.ndarray:
        """Linearized state update x̄ + e + G Δu"""
        return states + self.e + np.einsum('kin,n->ki', self.G, du)


def linearize(trajectory: Trajectory,
              stage_params: np.ndarray,
              discretizer: HorizonDiscretizer,
              g: float = GRAVITY) -> Linearization:
    """
    Linearize dynamics and residuals about the current trajectory guess.

    Args:
        trajectory: Current guess with stage 0 already pinned
        stage_params: (N+1, 3) online data per stage
        discretizer: Horizon integrator
        g: Gravitational constant

    Raises:
        NumericalDivergenceError: on non-finite integration or residual values
    """
    N = trajectory.N
    states = trajectory.states
    controls = trajectory.controls
    if not (np.all(np.isfinite(states)) and np.all(np.isfinite(controls))):
        raise NumericalDivergenceError("non-finite trajectory guess")

    A = np.empty((N, NX, NX))
    B = np.empty((N, NX))
    defects = np.empty((N, NX))
    residuals = np.empty((N, N_STAGE_RESIDUALS))
    Jx = np.empty((N, N_STAGE_RESIDUALS, NX))
    Ju = np.empty((N, N_STAGE_RESIDUALS))

    for k in range(N):
        x_next, A_k, B_k = discretizer.sensitivities(states[k], controls[k], trajectory.dt_grid[k])
        A[k] = A_k
        B[k] = B_k[:, 0]
        defects[k] = x_next - states[k + 1]
        r, Jx_k, Ju_k = stage_residual_jacobian(states[k], controls[k], stage_params[k], g)
        residuals[k] = r
        Jx[k] = Jx_k
        Ju[k] = Ju_k[:, 0]

    rN, JxN = terminal_residual_jacobian(states[N], stage_params[N], g)

    for name, value in (('defects', defects), ('residuals', residuals), ('Jx', Jx),
                        ('Ju', Ju), ('terminal residual', rN), ('terminal Jx', JxN)):
        if not np.all(np.isfinite(value)):
            raise NumericalDivergenceError(f"non-finite {name} in linearization")

    return Linearization(
        A=A, B=B, defects=defects,
        residuals=residuals, Jx=Jx, Ju=Ju,
        terminal_residual=rN, terminal_Jx=JxN,
        states=states, controls=controls,
    )


def condense(lin: Linearization,
             stage_weights: List[np.ndarray],
             terminal_weight: np.ndarray,
             v_min: float = 0.0,
             regularization: float = 0.0) -> CondensedQP:
    """
    Eliminate the state perturbations and build the control-space QP.

    Args:
        lin: Linearization of the current guess
        stage_weights: N weighting matrices (4x4)
        terminal_weight: Terminal weighting matrix (3x3)
        v_min: Velocity lower bound applied on every stage
        regularization: Added to the Hessian diagonal
    """
    N = lin.N
    G = np.zeros((N + 1, NX, N))
    e = np.zeros((N + 1, NX))
    for k in range(N):
        G[k + 1] = lin.A[k] @ G[k]
        G[k + 1][:, k] += lin.B[k]
        e[k + 1] = lin.A[k] @ e[k] + lin.defects[k]

    H = np.zeros((N, N))
    g = np.zeros(N)
    cost = 0.0
    for k in range(N):
        W = stage_weights[k]
        M = lin.Jx[k] @ G[k]
        M[:, k] += lin.Ju[k]
        rho = lin.residuals[k] + lin.Jx[k] @ e[k]
        H += M.T @ W @ M
        g += M.T @ W @ rho
        cost += 0.5 * float(lin.residuals[k] @ W @ lin.residuals[k])

    M = lin.terminal_Jx @ G[N]
    rho = lin.terminal_residual + lin.terminal_Jx @ e[N]
    H += M.T @ terminal_weight @ M
    g += M.T @ terminal_weight @ rho
    cost += 0.5 * float(lin.terminal_residual @ terminal_weight @ lin.terminal_residual)

    H = 0.5 * (H + H.T) + regularization * np.eye(N)

    A_v = G[:, VELOCITY_INDEX, :].copy()
    lower = v_min - (lin.states[:, VELOCITY_INDEX] + e[:, VELOCITY_INDEX])
    upper = np.full(N + 1, np.inf)

    if not (np.all(np.isfinite(H)) and np.all(np.isfinite(g)) and np.all(np.isfinite(lower))):
        raise NumericalDivergenceError("non-finite condensed QP data")

    return CondensedQP(H=H, g=g, A=A_v, lower=lower, upper=upper, cost=cost, G=G, e=e)


def stage_weight_matrices(base: np.ndarray, scale: np.ndarray) -> List[np.ndarray]:
    """Per-stage weights: base matrix scaled by the interval factor"""
    return [base * s for s in scale]


def trajectory_cost(states: np.ndarray, controls: np.ndarray, stage_params: np.ndarray,
                    stage_weights: List[np.ndarray], terminal_weight: np.ndarray,
                    g: float = GRAVITY) -> float:
    """Objective 0.5 Σ r'Wr of a full trajectory"""
    N = len(controls)
    total = sum(stage_cost(states[k], controls[k], stage_params[k], stage_weights[k], g)
                for k in range(N))
    total += terminal_cost(states[N], stage_params[N], terminal_weight, g)
    return float(total)
