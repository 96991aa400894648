from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .experts import History
from .mixer import HedgeMixer
from .utils import argmax_move, dist_to_dict, move_name, normalize


class SampleSizeBlendPolicy:
    """Weight each mixer by the rounds it has seen.

    raw_realtime = realtime_rounds + 1
    raw_history  = history_discount * history_rounds

    The +1 keeps the session in play from round one; the discount makes a
    session round count more than an archived one. Both are renormalized.
    """

    def __init__(self, history_discount: float = 0.5):
        self.history_discount = float(history_discount)

    def __call__(self, realtime_rounds: int, history_rounds: int) -> Tuple[float, float]:
        rt = float(max(0, realtime_rounds)) + 1.0
        hist = self.history_discount * float(max(0, history_rounds))
        total = rt + hist
        return rt / total, hist / total


class FixedBlendPolicy:
    def __init__(self, realtime_weight: float = 0.5):
        self.realtime_weight = min(1.0, max(0.0, float(realtime_weight)))

    def __call__(self, realtime_rounds: int, history_rounds: int) -> Tuple[float, float]:
        return self.realtime_weight, 1.0 - self.realtime_weight


@dataclass
class BlendResult:
    dist: np.ndarray
    realtime_dist: np.ndarray
    history_dist: np.ndarray
    realtime_weight: float
    history_weight: float
    realtime_move: int
    history_move: Optional[int]
    conflict: Optional[Dict[str, Optional[str]]]

    @property
    def move(self) -> int:
        return argmax_move(self.dist)

    @property
    def confidence(self) -> float:
        return float(np.max(self.dist))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dist": dist_to_dict(self.dist),
            "realtimeDist": dist_to_dict(self.realtime_dist),
            "historyDist": dist_to_dict(self.history_dist),
            "realtimeWeight": self.realtime_weight,
            "historyWeight": self.history_weight,
            "conflict": self.conflict,
        }


class BlendCombiner:
    """Merge a session-scoped mixer with the profile's persisted mixer."""

    def __init__(
        self,
        realtime: HedgeMixer,
        history: HedgeMixer,
        policy=None,
        realtime_rounds: int = 0,
        history_rounds: int = 0,
    ):
        self.realtime = realtime
        self.history = history
        self.policy = policy if policy is not None else SampleSizeBlendPolicy()
        self.realtime_rounds = int(realtime_rounds)
        self.history_rounds = int(history_rounds)

    def weights(self) -> Tuple[float, float]:
        rt, hist = self.policy(self.realtime_rounds, self.history_rounds)
        rt, hist = max(0.0, float(rt)), max(0.0, float(hist))
        total = rt + hist
        if total <= 0:
            return 0.5, 0.5
        return rt / total, hist / total

    def predict(self, history: History) -> BlendResult:
        p_rt = self.realtime.predict(history)
        p_hist = self.history.predict(history)
        w_rt, w_hist = self.weights()
        dist = normalize(w_rt * p_rt + w_hist * p_hist)
        rt_move = argmax_move(p_rt)
        hist_move = argmax_move(p_hist) if self.history_rounds > 0 else None
        conflict = None
        if hist_move is not None and hist_move != rt_move:
            conflict = {"realtime": move_name(rt_move), "history": move_name(hist_move)}
        return BlendResult(
            dist=dist,
            realtime_dist=p_rt,
            history_dist=p_hist,
            realtime_weight=w_rt,
            history_weight=w_hist,
            realtime_move=rt_move,
            history_move=hist_move,
            conflict=conflict,
        )

    def top_experts(self, history: History, k: int = 3) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        return self.realtime.top_experts(history, k), self.history.top_experts(history, k)

    def update(self, history: History, actual: int) -> None:
        self.realtime.update(history, actual)
        self.history.update(history, actual)
        self.realtime_rounds += 1
        self.history_rounds += 1
