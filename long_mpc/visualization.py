# -*- coding: utf-8 -*-
"""
long_mpc/visualization.py

シナリオ結果の可視化:
- plot_scenario: 車間 (実際/目標)、速度、加速度、ジャークの時系列 2x2 プロット
"""

from typing import Optional

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import pandas as pd

STATUS_COLORS = {
    'CONVERGED': 'tab:green',
    'DEGRADED': 'tab:orange',
    'INFEASIBLE': 'tab:red',
}


def plot_scenario(history: pd.DataFrame, output_filename: str, title: Optional[str] = None):
    """
    Plot one closed-loop scenario run.

    Args:
        history: DataFrame returned by ScenarioSimulator.run()
        output_filename: Output plot file path

    Note:
        (a) gap vs desired gap, (b) ego and lead velocity,
        (c) ego acceleration, (d) commanded jerk with status markers
    """
    if history is None or len(history) == 0:
        print("[WARNING] No history to plot")
        return

    t = history['t']
    fig, axes = plt.subplots(2, 2, figsize=(14, 10), sharex=True)

    ax1 = axes[0, 0]
    ax1.plot(t, history['gap'], label='Gap', linewidth=2)
    ax1.plot(t, history['desired_gap'], '--', label='Desired gap', linewidth=1.5)
    ax1.axhline(y=0.0, color='r', linestyle=':', linewidth=1)
    ax1.set_ylabel('Distance (m)', fontsize=12)
    ax1.set_title('(a) Gap to Lead', fontsize=14, fontweight='bold')
    ax1.grid(True, alpha=0.3)
    ax1.legend()

    ax2 = axes[0, 1]
    ax2.plot(t, history['ego_v'], label='Ego', linewidth=2)
    ax2.plot(t, history['lead_v'], label='Lead', linewidth=1.5)
    ax2.set_ylabel('Velocity (m/s)', fontsize=12)
    ax2.set_title('(b) Velocity', fontsize=14, fontweight='bold')
    ax2.grid(True, alpha=0.3)
    ax2.legend()

    ax3 = axes[1, 0]
    ax3.plot(t, history['ego_a'], color='green', linewidth=2)
    ax3.set_xlabel('Time (s)', fontsize=12)
    ax3.set_ylabel('Acceleration (m/s²)', fontsize=12)
    ax3.set_title('(c) Ego Acceleration', fontsize=14, fontweight='bold')
    ax3.grid(True, alpha=0.3)

    ax4 = axes[1, 1]
    ax4.plot(t, history['jerk'], color='gray', linewidth=1)
    for status, color in STATUS_COLORS.items():
        mask = history['status'] == status
        if mask.any():
            ax4.scatter(t[mask], history['jerk'][mask], s=12, color=color, label=status)
    if 'fallback' in history and history['fallback'].any():
        mask = history['fallback'].astype(bool)
        ax4.scatter(t[mask], history['jerk'][mask], s=40, facecolors='none',
                    edgecolors='black', label='Fallback')
    ax4.set_xlabel('Time (s)', fontsize=12)
    ax4.set_ylabel('Jerk (m/s³)', fontsize=12)
    ax4.set_title('(d) Commanded Jerk', fontsize=14, fontweight='bold')
    ax4.grid(True, alpha=0.3)
    ax4.legend()

    if title:
        fig.suptitle(title, fontsize=15, fontweight='bold')
    plt.tight_layout()
    plt.savefig(output_filename, dpi=300, bbox_inches='tight')
    print(f"[PASS] Scenario plot saved to {output_filename}")
    plt.close(fig)
