# -*- coding: utf-8 -*-
"""
long_mpc/online_parameters.py

オンラインパラメータ供給:
- OnlineParameterFeed: ティックごとに1回 update() し、非有限値を拒否 (前ティックの値を再利用)
- stage_parameters(): ホライズン各ステージのパラメータ行 (N+1, 3)
    - 'hold': 全ステージ同一 (既定)
    - 'constant_velocity': 先行車加速度を a·exp(-τ t²/2) で減衰させて位置・速度を予測 (v >= 0)
- LatestValueBuffer: センサースレッドから制御ループへの単一スロット受け渡し
  (キューではなく最新値優先、古い値で制御ティックをブロックしない)
"""

import math
import threading
from typing import Any, Optional, Tuple

import numpy as np

from .parameters import LEAD_PREDICTION_MODES, MPCParameters
from .vehicle_state import OnlineParameters

# Debug output flag
ENABLE_DEBUG_OUTPUT = False


def predict_lead(x_lead: float, v_lead: float, a_lead: float, time_gap: float,
                 t_grid: np.ndarray, tau: float = 1.5) -> np.ndarray:
    """
    Lead trajectory along the horizon grid with a decaying acceleration.

    Returns:
        (len(t_grid), 3) rows of (x_lead, v_lead, time_gap)
    """
    t_grid = np.asarray(t_grid, dtype=float)
    t_diffs = np.diff(t_grid, prepend=0.0)
    a_traj = a_lead * np.exp(-tau * t_grid ** 2 / 2.0)
    v_traj = np.clip(v_lead + np.cumsum(t_diffs * a_traj), 0.0, 1e8)
    x_traj = x_lead + np.cumsum(t_diffs * v_traj)
    return np.column_stack([x_traj, v_traj, np.full(len(t_grid), time_gap)])


class OnlineParameterFeed:
    """
    Per-tick holder of the lead/time-gap parameters.

    Args:
        params: MPC configuration (time gap range, lead prediction mode, grid)
    """

    def __init__(self, params: Optional[MPCParameters] = None):
        self.params = params if params is not None else MPCParameters()
        self._current: Optional[OnlineParameters] = None
        self._lead_accel = 0.0
        self.input_degraded = False
        self.rejected_updates = 0
        self.accepted_updates = 0

    @property
    def current(self) -> Optional[OnlineParameters]:
        return self._current

    @property
    def lead_acceleration(self) -> float:
        return self._lead_accel

    def _reject(self, reason: str) -> bool:
        self.input_degraded = True
        self.rejected_updates += 1
        if ENABLE_DEBUG_OUTPUT:
            kept = self._current if self._current is not None else 'nothing'
            print(f"[FEED] rejected update ({reason}), keeping {kept}")
        return False

    def update(self, lead_position: float, lead_velocity: float, time_gap: float,
               lead_acceleration: float = 0.0) -> bool:
        """
        Load this tick's parameters.

        Returns:
            True if accepted. On rejection the previous parameters stay in
            place and `input_degraded` is set for this tick.
        """
        self.input_degraded = False
        values = (lead_position, lead_velocity, time_gap, lead_acceleration)
        try:
            values = tuple(float(value) for value in values)
        except (TypeError, ValueError):
            return self._reject(f"non-numeric input {values}")
        if not all(math.isfinite(value) for value in values):
            return self._reject(f"non-finite input {values}")

        lead_position, lead_velocity, time_gap, lead_acceleration = values
        if not self.params.min_time_gap <= time_gap <= self.params.max_time_gap:
            return self._reject(
                f"time gap {time_gap:.2f}s outside "
                f"[{self.params.min_time_gap:.2f}, {self.params.max_time_gap:.2f}]"
            )

        self._current = OnlineParameters(x_lead=lead_position, v_lead=lead_velocity, time_gap=time_gap)
        self._lead_accel = lead_acceleration
        self.accepted_updates += 1
        return True

    def stage_parameters(self, t_grid: Optional[np.ndarray] = None,
                         mode: Optional[str] = None) -> np.ndarray:
        """
        Parameter rows for every stage of the horizon.

        Raises:
            RuntimeError: if no update was ever accepted
        """
        if self._current is None:
            raise RuntimeError("no online parameters loaded")
        t_grid = self.params.t_grid if t_grid is None else np.asarray(t_grid, dtype=float)
        mode = self.params.lead_prediction if mode is None else mode
        if mode not in LEAD_PREDICTION_MODES:
            raise ValueError(f"unknown lead prediction mode '{mode}'")

        p = self._current
        if mode == 'hold':
            return np.tile(p.as_array(), (len(t_grid), 1))
        return predict_lead(p.x_lead, p.v_lead, self._lead_accel, p.time_gap,
                            t_grid, self.params.lead_accel_tau)


class LatestValueBuffer:
    """
    Single-slot, most-recent-wins hand-off between a producer thread and the
    control loop. Writers overwrite; readers never block on the producer.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._value: Any = None
        self._sequence = 0

    def put(self, value: Any) -> int:
        with self._lock:
            self._value = value
            self._sequence += 1
            return self._sequence

    def get(self) -> Tuple[Any, int]:
        """(latest value, sequence number); (None, 0) before the first put"""
        with self._lock:
            return self._value, self._sequence

    @property
    def sequence(self) -> int:
        with self._lock:
            return self._sequence
