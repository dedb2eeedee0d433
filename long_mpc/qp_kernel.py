# -*- coding: utf-8 -*-
# --- qp_kernel.py: 凝縮QP用OSQPラッパー (ホットスタート対応) ---
"""
================================================================================
Condensed-QP kernel on top of OSQP
================================================================================

契約: solve(QP) -> 解 | 実行不可能、ホットスタート対応

設計:
1. スパース構造の固定:
   - P: 上三角を全要素保持 (N x N 密)
   - A: 速度行 k は Δu_0..Δu_{k-1} に依存 (下三角パターン、行0は空)
   - 数値的にゼロの要素も明示的に保持し、update(Px, Ax) で再セットアップを回避
2. ホットスタート:
   - 前ティックのOSQPインスタンスを再利用し、双対変数 y (アクティブセット情報) を引き継ぐ
   - 主変数は Δu = 0 (現在の軌道そのもの) から開始
3. 反復回数・時間の上限:
   - max_iter / time_limit 到達時は最良反復を返し INACCURATE として扱う
4. アクティブセット精緻化:
   - OSQPの停止判定は相対誤差基準のため、条件数の悪い凝縮ヘッセ行列では
     解が大きくずれたまま "solved" になることがある
   - OSQPの双対変数からアクティブ行を推定し、対角スケーリングした密KKT系を
     直接解いて主双対解を確定する (追加/削除を数回繰り返す)
   - 精緻化に失敗した場合はOSQPの解を残し INACCURATE に格下げ
================================================================================
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np
import osqp
from scipy.sparse import csc_matrix

from .condensing import CondensedQP

# Debug output flag
ENABLE_DEBUG_OUTPUT = False

# Global QP statistics (shared by all kernels in the process)
QP_STATS = {
    "total_solves": 0,
    "hot_starts": 0,
    "cold_starts": 0,
    "solved": 0,
    "inaccurate": 0,
    "infeasible": 0,
    "failed": 0,
    "refined": 0,
    "refine_failures": 0,
    "total_iterations": 0,
    "total_time_ms": 0.0,
}

SOLVED_STATUSES = ('solved',)
INACCURATE_STATUSES = (
    'solved inaccurate',
    'maximum iterations reached',
    'run time limit reached',
    'time limit reached',
)
INFEASIBLE_STATUSES = ('primal infeasible', 'primal infeasible inaccurate')


class QPStatus(Enum):
    SOLVED = 0
    INACCURATE = 1   # usable iterate, kernel stopped early or loosely
    INFEASIBLE = 2   # no feasible point
    FAILED = 3       # anything else (no usable iterate)


@dataclass
class QPResult:
    status: QPStatus
    x: Optional[np.ndarray]
    y: Optional[np.ndarray]
    iterations: int
    objective: float
    solve_time: float
    raw_status: str
    hot_started: bool = False


def get_qp_stats() -> Dict[str, Any]:
    """Return global QP performance statistics"""
    return QP_STATS.copy()


def reset_qp_stats():
    for key in QP_STATS:
        QP_STATS[key] = 0.0 if isinstance(QP_STATS[key], float) else 0


class OSQPKernel:
    """
    QP kernel for the condensed lead-following problem.

    One instance per solver; not shared across threads.

    Args:
        n: Number of control perturbations (N)
        m: Number of constraint rows (N + 1 velocity rows)
        settings: osqp setup keyword arguments
        hot_start: Reuse the solver instance and dual variables across solves
        refine: Polish the OSQP iterate with a dense active-set KKT solve
        refine_iterations: Maximum number of active-set changes while refining
        feasibility_tol: Allowed velocity-row violation of a refined solution
    """

    def __init__(self, n: int, m: int, settings: Optional[Dict[str, Any]] = None,
                 hot_start: bool = True, refine: bool = True, refine_iterations: int = 10,
                 feasibility_tol: float = 1e-9):
        self.n = n
        self.m = m
        self.settings = dict(settings or {})
        self.settings.setdefault('verbose', False)
        self.hot_start = hot_start
        self.refine = refine
        self.refine_iterations = refine_iterations
        self.feasibility_tol = feasibility_tol

        # Upper-triangular pattern of P in CSC order: column j holds rows 0..j
        self._P_cols, self._P_rows = np.tril_indices(n)
        self._P_indptr = np.concatenate(([0], np.cumsum(np.arange(1, n + 1))))

        # Velocity rows: column j holds rows j+1..m-1
        a_rows, a_cols, counts = [], [], []
        for j in range(n):
            rows = list(range(j + 1, m))
            a_rows.extend(rows)
            a_cols.extend([j] * len(rows))
            counts.append(len(rows))
        self._A_rows = np.array(a_rows, dtype=int)
        self._A_cols = np.array(a_cols, dtype=int)
        self._A_indptr = np.concatenate(([0], np.cumsum(counts))).astype(int)

        self._solver: Optional[osqp.OSQP] = None
        self._y: Optional[np.ndarray] = None

    @property
    def is_warm(self) -> bool:
        return self._solver is not None

    def reset(self):
        """Drop the solver instance and dual information (next solve is a cold start)"""
        self._solver = None
        self._y = None

    def _P_csc(self, H: np.ndarray) -> csc_matrix:
        data = H[self._P_rows, self._P_cols]
        return csc_matrix((data, self._P_rows.copy(), self._P_indptr.copy()), shape=(self.n, self.n))

    def _A_csc(self, A: np.ndarray) -> csc_matrix:
        data = A[self._A_rows, self._A_cols]
        return csc_matrix((data, self._A_rows.copy(), self._A_indptr.copy()), shape=(self.m, self.n))

    def _refine_active_set(self, qp: CondensedQP,
                           y: np.ndarray) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """
        Dense active-set polish of an OSQP iterate.

        OSQPの双対変数 (y < 0 で下限アクティブ) を初期アクティブセットとし、
        等式制約付きKKT系を直接解く。違反行の追加と負の乗数の削除を
        KKT条件を満たすまで繰り返す。

        Returns:
            (x, y) in OSQP sign convention, or None when no KKT point was found
        """
        H, g, A, lower = qp.H, qp.g, qp.A, qp.lower
        n = self.n

        # Diagonal scaling: x = D z
        diag = np.diag(H)
        scale = np.where(diag > 0.0, 1.0 / np.sqrt(np.abs(diag)), 1.0)
        Hs = H * scale[:, None] * scale[None, :]
        gs = g * scale
        As = A * scale[None, :]

        # Row 0 (initial velocity) has no dependence on the controls
        usable = np.any(A != 0.0, axis=1) & np.isfinite(lower)
        dual_tol = 1e-9 * max(1.0, float(np.max(np.abs(g))))
        active = usable & (y < -dual_tol)

        for _ in range(self.refine_iterations + 1):
            idx = np.flatnonzero(active)
            k = len(idx)
            K = np.zeros((n + k, n + k))
            K[:n, :n] = Hs
            K[:n, n:] = -As[idx].T
            K[n:, :n] = As[idx]
            rhs = np.concatenate((-gs, lower[idx]))
            try:
                sol = np.linalg.solve(K, rhs)
                # one step of iterative refinement
                sol = sol + np.linalg.solve(K, rhs - K @ sol)
            except np.linalg.LinAlgError:
                return None
            if not np.all(np.isfinite(sol)):
                return None

            x = scale * sol[:n]
            lam = sol[n:]
            slack = A @ x - lower
            violated = usable & ~active & (slack < -self.feasibility_tol)
            negative = np.zeros(self.m, dtype=bool)
            negative[idx] = lam < -dual_tol

            if not violated.any() and not negative.any():
                y_full = np.zeros(self.m)
                y_full[idx] = -np.maximum(lam, 0.0)
                return x, y_full

            active = (active & ~negative) | violated

        return None

    def solve(self, qp: CondensedQP) -> QPResult:
        """
        Solve one condensed QP.

        Returns:
            QPResult; x is the control perturbation when status is SOLVED or
            INACCURATE, None otherwise
        """
        if qp.H.shape != (self.n, self.n) or qp.A.shape != (self.m, self.n):
            raise ValueError(f"QP dimensions {qp.H.shape}/{qp.A.shape} do not match kernel ({self.n}, {self.m})")

        hot = self.hot_start and self._solver is not None
        if hot:
            self._solver.update(
                q=qp.g, l=qp.lower, u=qp.upper,
                Px=qp.H[self._P_rows, self._P_cols],
                Ax=qp.A[self._A_rows, self._A_cols],
            )
            if self._y is not None:
                self._solver.warm_start(x=np.zeros(self.n), y=self._y)
            QP_STATS["hot_starts"] += 1
        else:
            self._solver = osqp.OSQP()
            self._solver.setup(
                self._P_csc(qp.H), qp.g, self._A_csc(qp.A), qp.lower, qp.upper,
                **self.settings
            )
            QP_STATS["cold_starts"] += 1

        QP_STATS["total_solves"] += 1
        result = self._solver.solve()
        raw_status = str(result.info.status)
        iterations = int(result.info.iter)
        solve_time = float(result.info.solve_time)
        QP_STATS["total_iterations"] += iterations
        QP_STATS["total_time_ms"] += solve_time * 1000.0

        if raw_status in SOLVED_STATUSES:
            status = QPStatus.SOLVED
        elif raw_status in INACCURATE_STATUSES:
            status = QPStatus.INACCURATE
        elif raw_status in INFEASIBLE_STATUSES:
            status = QPStatus.INFEASIBLE
        else:
            status = QPStatus.FAILED

        x = None
        if status in (QPStatus.SOLVED, QPStatus.INACCURATE):
            x = np.array(result.x, dtype=float)
            if not np.all(np.isfinite(x)):
                status = QPStatus.FAILED
                x = None

        y = None
        objective = float(result.info.obj_val)
        refined = False
        if x is not None:
            y = np.array(result.y, dtype=float)
            if self.refine:
                polished = self._refine_active_set(qp, y)
                if polished is not None:
                    x, y = polished
                    objective = float(0.5 * x @ qp.H @ x + qp.g @ x)
                    refined = True
                    QP_STATS["refined"] += 1
                else:
                    QP_STATS["refine_failures"] += 1
                    status = QPStatus.INACCURATE

        if status in (QPStatus.SOLVED, QPStatus.INACCURATE):
            self._y = y
            QP_STATS["solved" if status == QPStatus.SOLVED else "inaccurate"] += 1
        elif status == QPStatus.INFEASIBLE:
            QP_STATS["infeasible"] += 1
        else:
            QP_STATS["failed"] += 1

        if ENABLE_DEBUG_OUTPUT:
            print(f"\n[QP-SOLVE] {'HOT' if hot else 'COLD'} start:")
            print(f"  Status: {raw_status}")
            print(f"  Iterations: {iterations}")
            print(f"  Solve time: {solve_time*1000:.2f}ms")
            print(f"  Objective value: {objective:.4f}")
            if self.refine:
                print(f"  Active-set refinement: {'OK' if refined else 'FAILED'}")

        return QPResult(
            status=status,
            x=x,
            y=None if self._y is None else self._y.copy(),
            iterations=iterations,
            objective=objective,
            solve_time=solve_time,
            raw_status=raw_status,
            hot_started=hot,
        )
