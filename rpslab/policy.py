from __future__ import annotations

import logging
import math
import random
from typing import Dict, List, Optional, Tuple

import numpy as np

from .utils import MOVE_NAMES, counter_move, normalize, one_hot

logger = logging.getLogger(__name__)

HEURISTIC = "heuristic"
MIXER = "mixer"

DIFFICULTIES = ("fair", "normal", "ruthless")
# softmax sharpening per difficulty, and chance of a random move
_LAMBDA = {"normal": 2.0, "ruthless": 4.0}
_NOISE = {"normal": 0.05, "ruthless": 0.0}

MIN_HEURISTIC_CONF = 0.34


class DecisionPolicySelector:
    """Cold-start gate between the light heuristic and the Hedge ensemble.

    Starts in ``heuristic`` and is promoted to ``mixer`` once the profile has
    seen ``min_rounds`` rounds, or ``min_confident_rounds`` rounds with the
    ensemble at least ``confidence_threshold`` sure of itself. Promotion is
    one-way; a new profile version gets a new selector.
    """

    def __init__(
        self,
        min_rounds: int = 15,
        min_confident_rounds: int = 5,
        confidence_threshold: float = 0.55,
    ):
        self.min_rounds = int(min_rounds)
        self.min_confident_rounds = int(min_confident_rounds)
        self.confidence_threshold = float(confidence_threshold)
        self.state = HEURISTIC

    def observe(self, rounds_seen: int, confidence: Optional[float] = None) -> str:
        if self.state == MIXER:
            return self.state
        ready = rounds_seen >= self.min_rounds
        if not ready and confidence is not None and rounds_seen >= self.min_confident_rounds:
            ready = confidence >= self.confidence_threshold
        if ready:
            self.state = MIXER
            logger.debug("policy promoted to mixer after %d rounds (confidence=%s)", rounds_seen, confidence)
        return self.state


# ---------------------- heuristic predictor ----------------------
def markov_next(moves: List[int]) -> Tuple[Optional[int], float]:
    """First-order transition arg-max from the last move, with its share."""
    if len(moves) < 2:
        return None, 0.0
    trans = np.zeros((3, 3), dtype=np.float64)
    for prev, nxt in zip(moves[:-1], moves[1:]):
        trans[prev, nxt] += 1.0
    row = trans[moves[-1]]
    total = float(np.sum(row))
    if total == 0:
        return None, 0.0
    best = int(np.argmax(row))
    return best, float(row[best]) / total


def detect_pattern_next(moves: List[int]) -> Optional[int]:
    n = len(moves)
    if n >= 3 and moves[-1] == moves[-2] == moves[-3]:
        return moves[-1]
    if n >= 6 and moves[n - 6:n - 3] == moves[n - 3:]:
        return moves[n - 3]
    if n >= 4:
        a, b, c, d = moves[-4:]
        if a == c and b == d and a != b:
            return a
    return None


def predict_next(moves: List[int], rng: random.Random) -> Tuple[Optional[int], float, str]:
    """Heuristic guess at the next move: (move, confidence, reason)."""
    if not moves:
        return None, 0.0, "no moves yet"
    mk, mk_conf = markov_next(moves)
    pat = detect_pattern_next(moves)
    if mk is not None and pat is not None and mk == pat:
        return mk, max(0.8, mk_conf), f"transition and pattern agree on {MOVE_NAMES[mk]}"
    if pat is not None and (mk is None or mk_conf < 0.6):
        return pat, 0.75, f"repeating pattern points to {MOVE_NAMES[pat]}"
    if mk is not None and pat is not None:
        pick = pat if rng.random() < 0.6 else mk
        return pick, 0.7, "pattern and transition disagree"
    if mk is not None:
        return mk, mk_conf * 0.65, f"usually plays {MOVE_NAMES[mk]} after {MOVE_NAMES[moves[-1]]}"
    return None, 0.0, "not enough signal"


# ---------------------- counter selection ----------------------
def counter_from_dist(dist: np.ndarray, difficulty: str, rng: random.Random) -> int:
    """Pick the AI move against a predicted player distribution."""
    if difficulty not in _LAMBDA:
        return rng.randrange(3)
    lam = _LAMBDA[difficulty]
    logits = np.array([math.log(max(1e-6, float(v))) * lam for v in normalize(dist)])
    probs = np.exp(logits - np.max(logits))
    probs = probs / np.sum(probs)
    move = counter_move(int(np.argmax(probs)))
    if rng.random() < _NOISE[difficulty]:
        move = rng.randrange(3)
    return move


def heuristic_counter(predicted: Optional[int], conf: float, difficulty: str, rng: random.Random) -> int:
    if predicted is None or conf < MIN_HEURISTIC_CONF:
        return rng.randrange(3)
    return counter_from_dist(one_hot(predicted), difficulty, rng)


def confidence_bucket(conf: float) -> str:
    if conf < 0.4:
        return "low"
    if conf < 0.7:
        return "medium"
    return "high"


def describe_difficulty(difficulty: str) -> Dict[str, float]:
    return {"lambda": _LAMBDA.get(difficulty, 0.0), "noise": _NOISE.get(difficulty, 1.0)}
