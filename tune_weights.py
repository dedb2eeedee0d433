# -*- coding: utf-8 -*-
# --- tune_weights.py: 縦方向追従MPCのコスト重み最適化 (Optuna TPE) ---
"""
縦方向追従MPC コスト重みベイズ最適化
================================================================================

実行方法 (リポジトリルートから)
--------------------------------------------------------------------------------
- 事前準備: `pip install -e .` で依存パッケージをインストール
- 新規探索開始 (60試行)：
    python tune_weights.py --n_trials 60
- シナリオを限定：
    python tune_weights.py --n_trials 30 --scenarios hard_brake cut_in
- 過去ログから再開 (JSONLファイル指定、複数可)：
    python tune_weights.py --resume tune_weights_trials_20260110_101500.json

出力ファイル:
- テキストログ: `tune_weights_log_<タイムスタンプ>.txt`
- JSONL試行履歴: `tune_weights_trials_<タイムスタンプ>.json`
- 最良重み: `best_weights.json` (`python -m long_mpc.main --config best_weights.json` で利用可)
- Optuna DB: `long_mpc_weights.db` (SQLite)

目的関数の評価基準 (最小化):
1. 衝突ゼロ (ハード制約: 1件でもあれば大ペナルティ)
2. 目標車間への追従誤差
3. RMSジャーク (快適性)
4. 最大減速度 (快適減速度 -3 m/s² を超えた分)
5. INFEASIBLE / フォールバックの発生
================================================================================
"""

import argparse
import json
import signal
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

import optuna
from optuna.samplers import TPESampler

from long_mpc.parameters import CostWeights, MPCParameters
from long_mpc.simulator import SCENARIOS, ScenarioSimulator
from long_mpc.utils import Logger


# --- 探索範囲 (対数スケール) ---
PARAM_RANGES = {
    'ttc': (0.5, 50.0),
    'distance': (0.01, 1.0),
    'acceleration': (1.0, 100.0),
    'jerk': (2.0, 200.0),
    'ttc_terminal': (1.0, 150.0),
    'distance_terminal': (0.03, 3.0),
    'acceleration_terminal': (3.0, 300.0),
}

DEFAULT_SCENARIOS = ['hard_brake', 'cut_in', 'stop_and_go', 'cruise']

# --- 目的関数の重み ---
COLLISION_PENALTY = 1.0e6
W_GAP_ERROR = 1.0
W_RMS_JERK = 5.0
W_DECEL_EXCESS = 20.0
W_FALLBACK = 0.5
COMFORT_DECEL = -3.0    # [m/s²]

BEST_WEIGHTS_FILE = "best_weights.json"


def evaluate_weights(weights: CostWeights, scenarios: List[str],
                     params: Optional[MPCParameters] = None) -> Dict[str, Any]:
    """
    全シナリオを実行しスコアを計算する (小さいほど良い)。

    戻り値:
        {'score': float, 'per_scenario': {name: stats}}
    """
    params = params if params is not None else MPCParameters()
    score = 0.0
    per_scenario = {}
    for name in scenarios:
        simulator = ScenarioSimulator(name, params, weights)
        simulator.run()
        stats = simulator.get_statistics()
        per_scenario[name] = stats

        if stats['collision']:
            score += COLLISION_PENALTY
        if stats['mean_gap_error'] is not None:
            score += W_GAP_ERROR * stats['mean_gap_error']
        score += W_RMS_JERK * stats['rms_jerk']
        score += W_DECEL_EXCESS * max(0.0, COMFORT_DECEL - stats['peak_decel'])
        score += W_FALLBACK * (stats['fallback_count'] + stats['infeasible'])
    return {'score': score, 'per_scenario': per_scenario}


def objective(trial, scenarios: List[str]) -> float:
    """Optunaの目的関数 (最小化)"""
    values = {
        name: trial.suggest_float(name, low, high, log=True)
        for name, (low, high) in PARAM_RANGES.items()
    }
    weights = CostWeights(**values)
    result = evaluate_weights(weights, scenarios)

    collisions = sum(1 for s in result['per_scenario'].values() if s['collision'])
    trial.set_user_attr('collision_count', collisions)
    for name, stats in result['per_scenario'].items():
        trial.set_user_attr(f'{name}_min_gap', stats['min_gap'])
        trial.set_user_attr(f'{name}_rms_jerk', stats['rms_jerk'])
        trial.set_user_attr(f'{name}_peak_decel', stats['peak_decel'])

    print(f"[Trial {trial.number}] score={result['score']:.3f} collisions={collisions} "
          + ' '.join(f"{k}={v:.3g}" for k, v in values.items()))
    return result['score']


def load_previous_trials_from_json(study: Any, json_log_path: str) -> int:
    """JSONL試行履歴を study に追加する"""
    distributions = {
        name: optuna.distributions.FloatDistribution(low, high, log=True)
        for name, (low, high) in PARAM_RANGES.items()
    }
    count = 0
    skipped = 0
    try:
        with open(json_log_path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    trial_data = json.loads(line)
                except json.JSONDecodeError:
                    skipped += 1
                    continue
                params = trial_data.get('params', {})
                value = trial_data.get('value', None)
                if value is None or set(params) != set(distributions):
                    skipped += 1
                    continue
                study.add_trial(optuna.trial.create_trial(
                    params=params, distributions=distributions, value=value,
                ))
                count += 1
    except FileNotFoundError:
        print(f"[Warning] File not found: {json_log_path}\n")
        return 0

    print(f"[Resume] Loaded {count} trials (skipped: {skipped})\n")
    return count


def _write_best_snapshot(study: "optuna.study.Study") -> Optional[str]:
    """
    現在のベスト試行を `--config` 形式 (フラットな重み辞書) で保存する。
    戻り値: 保存したファイルパス（完了試行がない場合は None）
    """
    completed = [t for t in study.trials if t.state == optuna.trial.TrialState.COMPLETE]
    if not completed:
        return None
    bt = study.best_trial
    with open(BEST_WEIGHTS_FILE, 'w', encoding='utf-8') as f:
        json.dump(bt.params, f, indent=2)
    with open(BEST_WEIGHTS_FILE.replace('.json', '_metrics.json'), 'w', encoding='utf-8') as f:
        json.dump({
            'score': bt.value,
            'trial': bt.number,
            'metrics': bt.user_attrs,
            'timestamp': datetime.now().isoformat(),
        }, f, indent=2)
    return BEST_WEIGHTS_FILE


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description='Cost-weight tuning for the longitudinal MPC')
    parser.add_argument('--n_trials', type=int, default=60, help='最適化試行回数（デフォルト: 60）')
    parser.add_argument('--scenarios', type=str, nargs='+', default=DEFAULT_SCENARIOS,
                        choices=sorted(SCENARIOS), help='評価シナリオ')
    parser.add_argument('--resume', type=str, nargs='+', default=None,
                        help='既存のJSONログファイルから再開（複数ファイル対応）')
    parser.add_argument('--seed', type=int, default=42, help='TPEサンプラーのシード')
    args = parser.parse_args(argv)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_filename = f"tune_weights_log_{timestamp}.txt"
    json_log = f"tune_weights_trials_{timestamp}.json"
    study_name = "long_mpc_weights"
    storage_url = "sqlite:///long_mpc_weights.db"

    study = None

    def signal_handler(signum, frame):
        print("\n[中断] スナップショットを保存して終了します...")
        if study is not None:
            saved = _write_best_snapshot(study)
            if saved:
                print(f"[中断] スナップショット保存: {saved}")
        sys.exit(0)
    signal.signal(signal.SIGINT, signal_handler)

    logger = Logger(log_filename, script_name="tune_weights.py", title="Weight Tuning Log")
    sys.stdout = logger
    try:
        print("=" * 80)
        print("コスト重みベイズ最適化 (衝突=0 ハード制約)")
        print(f"シナリオ: {', '.join(args.scenarios)}")
        print("=" * 80)

        study = optuna.create_study(
            study_name=study_name,
            storage=storage_url,
            direction="minimize",
            load_if_exists=True,
            sampler=TPESampler(seed=args.seed, multivariate=True, n_startup_trials=5),
        )

        if args.resume:
            for path in args.resume:
                load_previous_trials_from_json(study, path)
        else:
            # 既定重みを最初の試行として評価
            study.enqueue_trial({name: getattr(CostWeights(), name) for name in PARAM_RANGES})

        def save_callback(study, trial):
            """各試行後に実行されるコールバック"""
            trial_data = {
                'number': trial.number,
                'params': trial.params,
                'value': trial.value,
                'datetime': datetime.now().isoformat(),
            }
            with open(json_log, 'a', encoding='utf-8') as f:
                f.write(json.dumps(trial_data) + '\n')
            saved = _write_best_snapshot(study)
            if saved:
                print(f"[スナップショット] 更新: {saved}")

        print(f"\n最適化ループを開始... (DB: {storage_url})")
        try:
            study.optimize(lambda t: objective(t, args.scenarios), n_trials=args.n_trials,
                           callbacks=[save_callback])
        except KeyboardInterrupt:
            print("\n[中断] 進捗を保存中...")

        saved = _write_best_snapshot(study)
        if saved is None:
            print("[エラー] 完了した試行がありません")
            return 1

        print("\n" + "=" * 80)
        print("最適化完了")
        print("=" * 80)
        print(f"ベスト試行: #{study.best_trial.number}")
        print(f"ベストスコア: {study.best_value:.4f}")
        print("\nベスト重み:")
        for k, v in study.best_params.items():
            print(f"  {k}: {v:.4f}")
        print(f"\nベスト重みを保存: {saved}")
    finally:
        sys.stdout = logger.terminal
        logger.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
