# -*- coding: utf-8 -*-
"""
long_mpc/utils.py

縦方向追従MPCのユーティリティ:
- Logger: 標準出力をログファイルにも複製 (シミュレーション用)
- SCRIPT_NAME: スクリプト識別子
- RateLimitedWarning: 同一警告の出力間隔を制限
- JSON設定オーバーライドの適用
"""

import json
import math
import os
import sys
from dataclasses import fields
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

# スクリプト識別
SCRIPT_NAME = "long_mpc"
SCRIPT_VERSION = SCRIPT_NAME

# デバッグフラグ（インポート元モジュールでオーバーライド可能）
ENABLE_DEBUG_OUTPUT = False


class Logger:
    """
    シミュレーション結果用デュアル出力ロガー。

    ターミナルとログファイルの両方に即時フラッシュで出力。
    """

    def __init__(self, filename: str, script_name: str = SCRIPT_VERSION, title: str = "Simulation Log"):
        self.terminal = sys.stdout
        self.filename = filename
        # buffering=1 for line buffering
        self.log = open(filename, 'w', encoding='utf-8', buffering=1)
        self.closed = False
        self.log.write(f"{title} - {script_name}\n")
        self.log.write(f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
        self.log.write("=" * 80 + "\n")
        self.flush()

    def write(self, message):
        if self.closed:
            return
        try:
            self.terminal.write(message)
            self.terminal.flush()
        except OSError:
            pass  # console gone (e.g. closed pipe), keep writing the file

        self.log.write(message)
        self.log.flush()

    def flush(self):
        if not self.closed:
            self.terminal.flush()
            self.log.flush()
            os.fsync(self.log.fileno())

    def close(self):
        if not self.closed:
            self.flush()
            self.closed = True
            self.log.close()


def output_path(prefix: str, extension: str, output_dir: Optional[str] = None) -> str:
    """outputs/<prefix>_<timestamp>.<extension> next to the package (directory is created)"""
    if output_dir is None:
        package_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        output_dir = os.path.join(package_root, "outputs")
    os.makedirs(output_dir, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return os.path.join(output_dir, f"{prefix}_{timestamp}.{extension}")


class RateLimitedWarning:
    """
    Prints a `[WARNING]` line at most once per `interval` seconds of
    (simulated or wall) time. Suppressed messages are counted.
    """

    def __init__(self, interval: float = 5.0):
        self.interval = interval
        self._last_time = -math.inf
        self.suppressed = 0
        self.emitted = 0

    def warn(self, message: str, now: float) -> bool:
        if now - self._last_time < self.interval:
            self.suppressed += 1
            return False
        self._last_time = now
        self.emitted += 1
        print(f"[WARNING] {message}")
        return True


def load_overrides(config_path: str) -> Dict[str, Any]:
    """Read a flat JSON object of parameter overrides"""
    with open(config_path, 'r', encoding='utf-8') as f:
        overrides = json.load(f)
    if not isinstance(overrides, dict):
        raise ValueError(f"{config_path}: expected a JSON object, got {type(overrides).__name__}")
    return overrides


def build_configs(overrides: Dict[str, Any], config_classes: Iterable[type],
                  base: Optional[List[Dict[str, Any]]] = None,
                  verbose: bool = True) -> List[Any]:
    """
    Instantiate dataclass configs from defaults, `base` keyword arguments and
    JSON overrides.

    Each key goes to the first class that declares an init field of that
    name. Construction goes through `__post_init__`, so derived fields are
    recomputed and invalid values raise ValueError.

    Returns:
        One instance per class. Unknown keys are reported with a [WARNING]
        and ignored.
    """
    config_classes = list(config_classes)
    kwargs: List[Dict[str, Any]] = [dict(b) for b in base] if base else [{} for _ in config_classes]
    field_names = [{f.name for f in fields(cls) if f.init} for cls in config_classes]

    for key, value in overrides.items():
        index = next((i for i, names in enumerate(field_names) if key in names), None)
        if index is None:
            if verbose:
                print(f"  - [WARNING] Unknown parameter: {key}")
            continue
        kwargs[index][key] = value
        if verbose:
            print(f"  - {config_classes[index].__name__}.{key} = {value}")

    return [cls(**kw) for cls, kw in zip(config_classes, kwargs)]
