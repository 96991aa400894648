from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

import numpy as np

from .errors import MalformedStateError
from .experts import (
    ExpertState,
    History,
    default_experts,
    expert_from_dict,
    expert_name,
    expert_to_dict,
    predict_expert,
    update_expert,
)
from .utils import argmax_move, move_name, normalize

LOSS_FLOOR = 1e-6


class HedgeMixer:
    """Multiplicative-weights (Hedge) mixture over a fixed list of experts.

    Weights always sum to 1. After the move is revealed each expert pays
    ``1 - p_i(actual)`` and its weight is scaled by ``exp(-eta * loss)``.
    """

    def __init__(
        self,
        experts: Optional[List[ExpertState]] = None,
        eta: float = 1.6,
        weights: Optional[List[float]] = None,
    ):
        self.experts: List[ExpertState] = experts if experts is not None else default_experts()
        self.eta = float(eta)
        n = len(self.experts)
        if weights is None or len(weights) != n:
            self.w = np.ones(n, dtype=np.float64) / float(max(1, n))
        else:
            self.w = self._renormalize(np.asarray(weights, dtype=np.float64))

    @staticmethod
    def _renormalize(w: np.ndarray) -> np.ndarray:
        w = np.where(np.isfinite(w), np.clip(w, 0.0, None), 0.0)
        s = float(np.sum(w))
        if s <= 0 or not math.isfinite(s):
            return np.ones_like(w) / float(max(1, w.shape[0]))
        return w / s

    @property
    def names(self) -> List[str]:
        return [expert_name(e) for e in self.experts]

    def expert_predictions(self, history: History) -> List[np.ndarray]:
        return [predict_expert(e, history) for e in self.experts]

    def predict(self, history: History) -> np.ndarray:
        preds = self.expert_predictions(history)
        if not preds:
            return normalize(np.zeros(3))
        mix = np.zeros(3, dtype=np.float64)
        for wi, p in zip(self.w, preds):
            mix += float(wi) * p
        return normalize(mix)

    def losses(self, history: History, actual: int) -> np.ndarray:
        preds = self.expert_predictions(history)
        return np.array([1.0 - max(LOSS_FLOOR, float(p[int(actual)])) for p in preds], dtype=np.float64)

    def update(self, history: History, actual: int) -> np.ndarray:
        """Reweight by loss, then let every expert learn the move. Returns losses."""
        losses = self.losses(history, actual)
        self.w = self._renormalize(self.w * np.exp(-self.eta * losses))
        for e in self.experts:
            update_expert(e, history, actual)
        return losses

    def top_experts(self, history: History, k: int = 3, actual: Optional[int] = None) -> List[Dict[str, Any]]:
        preds = self.expert_predictions(history)
        order = sorted(range(len(self.experts)), key=lambda i: (-float(self.w[i]), i))
        out: List[Dict[str, Any]] = []
        for i in order[:k]:
            top = argmax_move(preds[i])
            sample: Dict[str, Any] = {
                "name": expert_name(self.experts[i]),
                "weight": float(self.w[i]),
                "move": move_name(top),
                "p": float(preds[i][top]),
            }
            if actual is not None:
                sample["pActual"] = float(preds[i][int(actual)])
            out.append(sample)
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eta": self.eta,
            "weights": [float(x) for x in self.w],
            "experts": [expert_to_dict(e) for e in self.experts],
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "HedgeMixer":
        if not isinstance(d, dict):
            raise MalformedStateError("mixer state must be an object")
        experts_raw = d.get("experts")
        weights_raw = d.get("weights")
        if not isinstance(experts_raw, list) or not experts_raw:
            raise MalformedStateError("mixer state has no experts")
        if not isinstance(weights_raw, list) or len(weights_raw) != len(experts_raw):
            raise MalformedStateError("weights and experts are not aligned")
        try:
            eta = float(d.get("eta", 1.6))
            weights = [float(x) for x in weights_raw]
        except (TypeError, ValueError) as exc:
            raise MalformedStateError(f"bad mixer numbers: {exc}") from exc
        if not math.isfinite(eta) or eta <= 0:
            raise MalformedStateError(f"bad eta: {eta!r}")
        experts = [expert_from_dict(e) for e in experts_raw]
        return HedgeMixer(experts, eta=eta, weights=weights)
