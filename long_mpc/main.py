#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
縦方向追従MPC - メインエントリポイント
==================================================

実行方法:
    # テストモード（コスト関数・ソルバーのセルフチェック）
    python -m long_mpc.main --mode test

    # デモモード（1回の閉じた問題をティックごとに解いて表示）
    python -m long_mpc.main --mode demo

    # シミュレーションモード（閉ループシナリオ）
    python -m long_mpc.main --mode sim --scenario hard_brake --plot
    python -m long_mpc.main --mode sim --scenario cut_in --csv cut_in.csv

    # パラメータオーバーライド付き（重み調整用）
    python -m long_mpc.main --mode sim --scenario stop_and_go --config best_weights.json --silent
"""

import argparse
import io
import json
import sys
from typing import Optional

from .cost import follow_const_m, rw_distance
from .mpc_controller import LongitudinalMPC
from .online_parameters import predict_lead
from .parameters import CostWeights, MPCParameters
from .simulator import SCENARIOS, ScenarioSimulator
from .trajectory import SolverStatus
from .utils import SCRIPT_NAME, Logger, build_configs, load_overrides, output_path
from .vehicle_state import EgoState, OnlineParameters


def test_cost():
    """コスト関数の性質チェック"""
    print("=" * 80)
    print("Cost Function Self-check")
    print("=" * 80)

    speeds = [0.0, 2.0, 5.0, 10.0, 20.0, 30.0]
    values = [follow_const_m(v) for v in speeds]
    monotone = all(b > a for a, b in zip(values, values[1:]))
    bounded = all(1.25 < f < 4.0 for f in values)
    print(f"  follow_const_m: {', '.join(f'{f:.3f}' for f in values)}")
    print(f"  [{'PASS' if monotone and bounded else 'FAIL'}] monotone and within (1.25, 4.0)")

    rw_matched = all(abs(rw_distance(v, v, 1.5) - 1.5 * v) < 1e-9 for v in speeds)
    print(f"  [{'PASS' if rw_matched else 'FAIL'}] RW(v, v, T) = v*T")
    return monotone and bounded and rw_matched


def test_solver(params: MPCParameters, weights: CostWeights):
    """ソルバーのエンドツーエンドチェック (シナリオA/B/C)"""
    print("\n" + "=" * 80)
    print("RTI Solver Self-check")
    print("=" * 80)
    ok = True

    print("\n### Scenario A: standstill behind a stopped lead ###")
    mpc = LongitudinalMPC(params, weights)
    solution = mpc.solve(EgoState(0.0, 0.0), OnlineParameters(4.0, 0.0, 1.5))
    passed = solution.is_valid and abs(solution.jerk) < 0.1
    print(f"  {solution}, jerk={solution.jerk}")
    print(f"  [{'PASS' if passed else 'FAIL'}] control ~ 0")
    ok &= passed

    print("\n### Scenario B: lead 15 m ahead at 20 m/s braking at -4 m/s^2 ###")
    mpc = LongitudinalMPC(params, weights)
    stage_params = predict_lead(15.0, 20.0, -4.0, 1.5, params.t_grid, params.lead_accel_tau)
    solution = mpc.solve(EgoState(0.0, 20.0), OnlineParameters(15.0, 20.0, 1.5),
                         stage_params=stage_params)
    passed = solution.is_valid and solution.jerk < 0.0
    print(f"  {solution}, jerk={solution.jerk}")
    print(f"  [{'PASS' if passed else 'FAIL'}] braking within one tick")
    ok &= passed

    print("\n### Scenario C: cut-in 2 m ahead at 15 m/s ###")
    mpc = LongitudinalMPC(params, weights)
    solution = mpc.solve(EgoState(0.0, 15.0), OnlineParameters(2.0, 15.0, 1.5))
    if solution.is_valid:
        v_min = solution.trajectory.states[:, 1].min()
        passed = solution.jerk < 0.0 and v_min > -1e-3
        print(f"  {solution}, jerk={solution.jerk:.3f}, min planned v={v_min:.4f}")
    else:
        passed = solution.status == SolverStatus.INFEASIBLE
        print(f"  {solution}")
    print(f"  [{'PASS' if passed else 'FAIL'}] decelerates without negative velocity")
    ok &= passed
    return ok


def demo_mode(params: MPCParameters, weights: CostWeights, ticks: int = 10):
    """デモモード - 同一問題を繰り返し解き、RTIの収束を表示"""
    print("\n" + "=" * 80)
    print("Demo Mode: repeated RTI ticks on a fixed problem")
    print("=" * 80)

    mpc = LongitudinalMPC(params, weights)
    ego = EgoState(x=0.0, v=20.0)
    lead = OnlineParameters(x_lead=40.0, v_lead=15.0, time_gap=1.8)
    print(f"  Ego:  {ego}")
    print(f"  Lead: {lead}")
    for tick in range(ticks):
        solution = mpc.solve(ego, lead)
        print(f"  tick {tick:2d}: {solution} jerk={solution.jerk:+.4f} |du|={solution.step_norm:.2e}")

    states = mpc.trajectory.states
    print(f"\n  Planned velocity: {states[0, 1]:.2f} -> {states[-1, 1]:.2f} m/s over "
          f"{params.horizon_time:.1f}s")
    print(f"  Statistics: {mpc.get_statistics()}")


def simulation_mode(scenario: str, tmax: Optional[float], params: MPCParameters,
                    weights: CostWeights, csv_path: Optional[str] = None,
                    plot: bool = False, silent: bool = False):
    """
    シミュレーションモード - 閉ループシナリオを実行

    引数:
        scenario: シナリオ名
        tmax: 最大シミュレーション時間 [秒] (None = シナリオ既定値)
        csv_path: 履歴CSVの出力先
        plot: プロット出力
        silent: サイレントモード (ログファイル無効、JSON_STATSのみ出力)
    """
    original_stdout = sys.stdout
    logger = None
    if silent:
        sys.stdout = io.StringIO()
    else:
        log_file = output_path(f"simulation_log_{scenario}", "txt")
        logger = Logger(log_file, script_name=SCRIPT_NAME)
        sys.stdout = logger

    try:
        print("\n" + "=" * 80)
        print(f"Longitudinal MPC closed-loop simulation: {scenario}")
        print(f"Lead prediction: {params.lead_prediction}, SQP iterations/tick: {params.max_sqp_iterations}")
        print(f"Weights: {weights}")
        print("=" * 80 + "\n")

        simulator = ScenarioSimulator(scenario, params, weights, verbose=not silent)
        simulator.run(t_max=tmax)
        stats = simulator.get_statistics()

        if csv_path:
            simulator.to_csv(csv_path)
            print(f"History saved to: {csv_path}")
        if plot and not silent:
            from .visualization import plot_scenario
            plot_file = output_path(f"plots_{scenario}", "png")
            plot_scenario(simulator.history, plot_file, title=simulator.scenario.description)

        if silent:
            sys.stdout = original_stdout
        print("\n[JSON_STATS] " + json.dumps(stats))
        sys.stdout.flush()
    finally:
        if logger is not None:
            logger.close()
        sys.stdout = original_stdout

    if logger is not None:
        print(f"\nSimulation completed. Log saved to: {logger.filename}")
    return stats


def main(argv: Optional[list] = None):
    """メインエントリポイント"""
    parser = argparse.ArgumentParser(
        description="縦方向追従 Gauss-Newton RTI MPC",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
実行例:
  python -m long_mpc.main --mode test
  python -m long_mpc.main --mode demo
  python -m long_mpc.main --mode sim --scenario hard_brake --plot
  python -m long_mpc.main --mode sim --scenario cut_in --config best_weights.json --silent
        """
    )
    parser.add_argument('--mode', type=str, choices=['test', 'demo', 'sim'], default='test',
                        help='実行モード: test (セルフチェック), demo (RTIデモ), sim (閉ループシミュレーション)')
    parser.add_argument('--scenario', type=str, choices=sorted(SCENARIOS), default='hard_brake',
                        help='シミュレーションシナリオ (デフォルト: hard_brake)')
    parser.add_argument('--tmax', type=float, default=None,
                        help='最大シミュレーション時間 [秒] (デフォルト: シナリオ既定値)')
    parser.add_argument('--config', type=str, default=None,
                        help='CostWeights / MPCParameters オーバーライド用JSONファイルのパス')
    parser.add_argument('--lead-prediction', type=str, choices=['hold', 'constant_velocity'],
                        default=None, help='先行車予測モード (デフォルト: hold)')
    parser.add_argument('--csv', type=str, default=None, help='履歴CSVの出力先')
    parser.add_argument('--plot', action='store_true', help='プロットをoutputs/に保存')
    parser.add_argument('--silent', action='store_true',
                        help='サイレントモード: ログファイル出力を無効化、JSON_STATSのみ標準出力 (重み調整用)')
    args = parser.parse_args(argv)

    overrides = {}
    if args.config:
        try:
            overrides = load_overrides(args.config)
        except (OSError, ValueError) as e:
            print(f"[ERROR] Failed to load config: {e}")
            return 1
        if not args.silent:
            print(f"\n[CONFIG] Applying overrides from {args.config}:")
    if args.lead_prediction is not None:
        overrides['lead_prediction'] = args.lead_prediction
    try:
        weights, params = build_configs(overrides, [CostWeights, MPCParameters],
                                        verbose=not args.silent)
    except (TypeError, ValueError) as e:
        print(f"[ERROR] Invalid configuration: {e}")
        return 1

    if not args.silent:
        print("=" * 80)
        print("Longitudinal Car-following MPC")
        print(f"Package: {SCRIPT_NAME}")
        print("=" * 80)

    if args.mode == 'test':
        success = test_cost()
        success = test_solver(params, weights) and success
        print("\n" + "=" * 80)
        print("[SUCCESS] All checks passed!" if success else "[FAILED] Some checks failed")
        print("=" * 80)
        return 0 if success else 1

    if args.mode == 'demo':
        demo_mode(params, weights)
        return 0

    stats = simulation_mode(args.scenario, args.tmax, params, weights,
                            csv_path=args.csv, plot=args.plot, silent=args.silent)
    if stats['collision']:
        print("\n[FAILED] Collision during simulation")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
