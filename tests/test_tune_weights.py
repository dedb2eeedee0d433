# -*- coding: utf-8 -*-
import json
import signal
import sys

import optuna
import pytest

import tune_weights
from long_mpc.parameters import CostWeights, MPCParameters

DEFAULTS = {
    'ttc': 5.0, 'distance': 0.1, 'acceleration': 10.0, 'jerk': 20.0,
    'ttc_terminal': 15.0, 'distance_terminal': 0.3, 'acceleration_terminal': 30.0,
}


def test_default_weights_lie_inside_search_ranges():
    for name, value in DEFAULTS.items():
        low, high = tune_weights.PARAM_RANGES[name]
        assert low <= value <= high
    assert set(tune_weights.DEFAULT_SCENARIOS) <= set(tune_weights.SCENARIOS)


def test_evaluate_weights_on_standstill():
    result = tune_weights.evaluate_weights(CostWeights(), ['standstill'],
                                           MPCParameters(qp_time_limit=10.0))
    stats = result['per_scenario']['standstill']
    assert not stats['collision']
    assert 0.0 <= result['score'] < tune_weights.COLLISION_PENALTY


def test_objective_records_metrics(capsys):
    trial = optuna.trial.FixedTrial(DEFAULTS)
    score = tune_weights.objective(trial, ['standstill'])
    assert score >= 0.0
    assert trial.user_attrs['collision_count'] == 0
    assert 'standstill_min_gap' in trial.user_attrs
    assert "[Trial" in capsys.readouterr().out


def test_resume_from_jsonl(tmp_path):
    log = tmp_path / 'trials.json'
    lines = [
        json.dumps({'number': 0, 'value': 12.5, 'params': DEFAULTS}),
        "{broken",
        json.dumps({'number': 1, 'value': None, 'params': DEFAULTS}),
        json.dumps({'number': 2, 'value': 3.0, 'params': {'ttc': 1.0}}),
    ]
    log.write_text("\n".join(lines) + "\n")

    study = optuna.create_study(direction='minimize')
    assert tune_weights.load_previous_trials_from_json(study, str(log)) == 1
    assert study.best_value == pytest.approx(12.5)


def test_resume_missing_file(tmp_path):
    study = optuna.create_study(direction='minimize')
    assert tune_weights.load_previous_trials_from_json(study, str(tmp_path / 'none.json')) == 0


def test_best_snapshot(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    study = optuna.create_study(direction='minimize')
    assert tune_weights._write_best_snapshot(study) is None

    distributions = {
        name: optuna.distributions.FloatDistribution(low, high, log=True)
        for name, (low, high) in tune_weights.PARAM_RANGES.items()
    }
    study.add_trial(optuna.trial.create_trial(params=DEFAULTS, distributions=distributions, value=1.0))
    path = tune_weights._write_best_snapshot(study)
    saved = json.loads((tmp_path / path).read_text())
    assert saved == pytest.approx(DEFAULTS)
    # the snapshot is a valid --config override file
    CostWeights(**saved)


def test_main_tees_log_and_restores_stdout(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(signal, 'signal', lambda *args: None)
    stdout = sys.stdout
    assert tune_weights.main(['--n_trials', '1', '--scenarios', 'standstill']) == 0
    assert sys.stdout is stdout

    logs = list(tmp_path.glob('tune_weights_log_*.txt'))
    assert len(logs) == 1
    text = logs[0].read_text(encoding='utf-8')
    assert text.startswith("Weight Tuning Log - tune_weights.py")
    assert "最適化完了" in text
    assert "最適化完了" in capsys.readouterr().out
    assert (tmp_path / 'best_weights.json').exists()
