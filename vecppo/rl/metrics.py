# ============================================================
# rl/metrics.py
#
# Append-only metric logs + JSON utilities (safe logging)
# ============================================================

from __future__ import annotations

import json
import os
from collections import defaultdict
from typing import Any, Dict, List, Tuple

import numpy as np
import torch


def _json_safe(x):
    """Convert numpy/torch values to JSON-serializable Python types."""
    if isinstance(x, (np.floating,)):
        return float(x)
    if isinstance(x, (np.integer,)):
        return int(x)
    if isinstance(x, (np.bool_,)):
        return bool(x)
    if isinstance(x, (np.ndarray,)):
        return x.tolist()
    if torch.is_tensor(x):
        return x.detach().cpu().tolist() if x.ndim > 0 else x.item()
    if isinstance(x, dict):
        return {k: _json_safe(v) for k, v in x.items()}
    if isinstance(x, (list, tuple)):
        return [_json_safe(v) for v in x]
    return x


def write_log_json(path: str, payload: dict) -> None:
    """Atomic JSON write: write tmp then replace."""
    tmp_path = path + ".tmp"
    with open(tmp_path, "w") as f:
        json.dump(_json_safe(payload), f, indent=2)
    os.replace(tmp_path, path)


class MetricsLog:
    """
    Metric name -> (steps, values), both append-only and aligned.

    Usage:
        log = MetricsLog()
        log(4096, policy_loss=0.1, kl_est=0.003)
    """

    def __init__(self):
        self.log: Dict[str, Tuple[List[Any], List[Any]]] = {}

    def __call__(self, step, **metrics):
        for key, value in metrics.items():
            steps, values = self.log.setdefault(key, ([], []))
            steps.append(step)
            values.append(_json_safe(value))

    def __contains__(self, key: str) -> bool:
        return key in self.log

    def __getitem__(self, key: str) -> Tuple[List[Any], List[Any]]:
        return self.log[key]

    def keys(self):
        return self.log.keys()

    def last(self, key: str):
        return self.log[key][1][-1]

    def to_dict(self) -> Dict[str, Dict[str, list]]:
        return {key: {"steps": list(s), "values": list(v)} for key, (s, v) in self.log.items()}


class LossInfo:
    """Per-epoch accumulator of minibatch diagnostics (values only)."""

    def __init__(self):
        self.log: Dict[str, List[float]] = defaultdict(list)

    def __call__(self, **metrics):
        for key, value in metrics.items():
            self.log[key].append(float(value))

    def __len__(self) -> int:
        return max((len(v) for v in self.log.values()), default=0)

    def clear(self):
        self.log.clear()

    def last(self, key: str) -> float:
        return self.log[key][-1]

    def means(self) -> Dict[str, float]:
        return {key: float(np.mean(values)) for key, values in self.log.items()}
