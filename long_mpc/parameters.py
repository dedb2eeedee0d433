# -*- coding: utf-8 -*-
"""
long_mpc/parameters.py

MPCParameters / CostWeights: 縦方向追従MPCのパラメータデータクラス

ホライズン構成:
- 非等間隔グリッド: 0.2s x 5 + 0.6s x 15 = 10.0s
- 各区間はRK4 (50サブステップ) で積分
- 初期状態は毎ティック計測値に固定

パラメータカテゴリ:
- ホライズン設定: 区間長、サブステップ数
- 制約: 速度下限
- コスト重み: TTC、車間距離、加速度、ジャーク (外部から注入)
- ソルバー設定: SQP反復数、QP反復上限、時間制限、ホットスタート
- コントローラ設定: リセット閾値、フォールバック減速度
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import numpy as np

# Interval durations of the reference configuration
DEFAULT_INTERVALS: Tuple[float, ...] = (0.2,) * 5 + (0.6,) * 15

LEAD_PREDICTION_MODES = ('hold', 'constant_velocity')


@dataclass
class CostWeights:
    """
    Least-squares weights for the stage and terminal residuals.

    Every weight is injected by the caller; the defaults are the runtime
    tuning for TTC, distance, acceleration and jerk. Terminal weights
    default to the stage weights multiplied by 3.
    """
    ttc: float = 5.0
    distance: float = 0.1
    acceleration: float = 10.0
    jerk: float = 20.0

    # None -> stage weight x terminal_multiplier (computed in __post_init__)
    ttc_terminal: Optional[float] = None
    distance_terminal: Optional[float] = None
    acceleration_terminal: Optional[float] = None
    terminal_multiplier: float = 3.0

    def __post_init__(self):
        if self.ttc_terminal is None:
            self.ttc_terminal = self.ttc * self.terminal_multiplier
        if self.distance_terminal is None:
            self.distance_terminal = self.distance * self.terminal_multiplier
        if self.acceleration_terminal is None:
            self.acceleration_terminal = self.acceleration * self.terminal_multiplier

        for name in ('ttc', 'distance', 'acceleration', 'jerk',
                     'ttc_terminal', 'distance_terminal', 'acceleration_terminal'):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0.0:
                raise ValueError(f"CostWeights.{name} must be finite and >= 0 (got {value})")

    def stage_matrix(self) -> np.ndarray:
        """4x4 weighting matrix for [ttc, distance, acceleration, jerk]"""
        return np.diag([self.ttc, self.distance, self.acceleration, self.jerk])

    def terminal_matrix(self) -> np.ndarray:
        """3x3 weighting matrix for the terminal residual (no jerk term)"""
        return np.diag([self.ttc_terminal, self.distance_terminal, self.acceleration_terminal])


@dataclass
class MPCParameters:

    # --- ホライズン設定 (構築時に固定、実行中は変更しない) ---
    intervals: List[float] = field(default_factory=lambda: list(DEFAULT_INTERVALS))
    horizon_time: float = 10.0
    integrator_steps: int = 50   # RK4 sub-steps per shooting interval

    # 以下は__post_init__で自動計算される(手動変更不要)
    N: int = field(default=0, init=False)
    dt_grid: np.ndarray = field(default=None, init=False)     # shape (N,)
    t_grid: np.ndarray = field(default=None, init=False)      # shape (N+1,)
    stage_weight_scale: np.ndarray = field(default=None, init=False)  # shape (N,)
    # ---

    # --- 物理定数・制約 ---
    gravity: float = 9.81
    v_min: float = 0.0           # velocity lower bound on every stage
    # Stage weights scaled by dt / dt[0]: 1 for 0.2s intervals, 3 for 0.6s
    scale_weights_by_interval: bool = True

    # --- オンラインパラメータ ---
    lead_prediction: str = 'hold'
    lead_accel_tau: float = 1.5  # decay of the lead acceleration in constant_velocity mode
    min_time_gap: float = 0.1
    max_time_gap: float = 5.0

    # --- SQP / RTI ---
    # 1 = real-time iteration (one Gauss-Newton step per tick)
    max_sqp_iterations: int = 1
    step_tolerance: float = 1e-4
    time_budget: Optional[float] = None    # [s] wall-clock budget per solve, None = unbounded
    hessian_regularization: float = 1e-8

    # --- QPカーネル (OSQP) ---
    qp_max_iterations: int = 4000
    qp_time_limit: float = 0.05  # [s]
    qp_eps_abs: float = 1e-5
    qp_eps_rel: float = 1e-5
    qp_check_termination: int = 25
    hot_start: bool = True
    qp_refine_active_set: bool = True   # dense KKT polish of the OSQP iterate
    qp_refine_iterations: int = 10
    qp_feasibility_tol: float = 1e-9    # [m/s]

    # --- コントローラ層 (LeadFollowController) ---
    lead_jump_reset: float = 2.5         # [m] lead position jump that invalidates the warm start
    stopped_lead_speed: float = 0.1      # [m/s]
    no_lead_distance: float = 50.0       # [m] virtual lead when nothing is tracked
    no_lead_speed_offset: float = 10.0   # [m/s]
    max_tick_interval: float = 0.5       # [s] longer gaps invalidate the warm start
    backwards_tolerance: float = 0.01    # [m/s]
    crash_distance: float = 50.0         # [m] plan driving this far through the lead is rejected
    reset_warning_interval: float = 5.0  # [s]
    fallback_decel: float = -1.5         # [m/s^2] hold-deceleration fallback
    fallback_jerk: float = 1.0           # [m/s^3] ramp rate of the fallback

    def __post_init__(self):
        self.intervals = [float(dt) for dt in self.intervals]
        if not self.intervals:
            raise ValueError("intervals must not be empty")
        if any(not math.isfinite(dt) or dt <= 0.0 for dt in self.intervals):
            raise ValueError(f"interval durations must be positive: {self.intervals}")
        if abs(sum(self.intervals) - self.horizon_time) > 1e-9:
            raise ValueError(
                f"intervals sum to {sum(self.intervals):.3f}s, horizon_time is {self.horizon_time:.3f}s"
            )
        if self.integrator_steps < 1:
            raise ValueError("integrator_steps must be >= 1")
        if self.max_sqp_iterations < 1:
            raise ValueError("max_sqp_iterations must be >= 1")
        if self.lead_prediction not in LEAD_PREDICTION_MODES:
            raise ValueError(f"lead_prediction must be one of {LEAD_PREDICTION_MODES}")
        if not 0.0 < self.min_time_gap <= self.max_time_gap:
            raise ValueError("time gap range must satisfy 0 < min_time_gap <= max_time_gap")

        self.N = len(self.intervals)
        self.dt_grid = np.array(self.intervals)
        self.t_grid = np.concatenate(([0.0], np.cumsum(self.dt_grid)))
        if self.scale_weights_by_interval:
            self.stage_weight_scale = self.dt_grid / self.dt_grid[0]
        else:
            self.stage_weight_scale = np.ones(self.N)

    @property
    def qp_settings(self) -> dict:
        """Keyword arguments for osqp.OSQP.setup"""
        return dict(
            verbose=False,
            max_iter=self.qp_max_iterations,
            time_limit=self.qp_time_limit,
            eps_abs=self.qp_eps_abs,
            eps_rel=self.qp_eps_rel,
            check_termination=self.qp_check_termination,
            adaptive_rho=True,
            # Fixed interval keeps iteration counts reproducible (0 = timing based)
            adaptive_rho_interval=self.qp_check_termination,
        )
