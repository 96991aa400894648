from __future__ import annotations

import math
from typing import Any, Dict, Iterable, Optional

import numpy as np

from .errors import InvalidMoveError

# 0=Rock, 1=Paper, 2=Scissors
MOVE_NAMES = ("rock", "paper", "scissors")
OUTCOMES = ("win", "lose", "tie")  # player's perspective


def uniform() -> np.ndarray:
    return np.ones(3, dtype=np.float64) / 3.0


def normalize(p: Any) -> np.ndarray:
    """Clip to non-negative and rescale to sum 1; degenerate input -> uniform."""
    try:
        p = np.asarray(p, dtype=np.float64).reshape(-1)
    except (TypeError, ValueError):
        return uniform()
    if p.shape[0] != 3 or not np.all(np.isfinite(p)):
        return uniform()
    p = np.clip(p, 0.0, None)
    s = float(np.sum(p))
    if s <= 0:
        return uniform()
    return p / s


def from_counts(counts: Iterable[float], alpha: float = 1.0) -> np.ndarray:
    """Dirichlet/Laplace smoothing of raw move counts."""
    return normalize(np.asarray(list(counts), dtype=np.float64) + float(alpha))


def one_hot(i: int, n: int = 3) -> np.ndarray:
    v = np.zeros(n, dtype=np.float64)
    if 0 <= i < n:
        v[i] = 1.0
    return v


def counter_move(m: int) -> int:
    """The move that beats ``m`` (paper beats rock, ...)."""
    return (int(m) + 1) % 3


def beaten_by(m: int) -> int:
    """The move that ``m`` beats (rock beats scissors, ...)."""
    return (int(m) + 2) % 3


def resolve_outcome(player: int, ai: int) -> str:
    if player == ai:
        return "tie"
    if beaten_by(player) == ai:
        return "win"
    return "lose"


def argmax_move(p: np.ndarray) -> int:
    # np.argmax keeps the first index on ties: rock, then paper
    return int(np.argmax(np.asarray(p, dtype=np.float64)))


def entropy(p: np.ndarray) -> float:
    """Shannon entropy in nats; zero-probability terms contribute nothing."""
    total = 0.0
    for v in np.asarray(p, dtype=np.float64):
        if v > 0:
            total -= float(v) * math.log(float(v))
    return total


def move_name(m: Optional[int]) -> Optional[str]:
    if m is None:
        return None
    return MOVE_NAMES[int(m)]


def parse_move(value: Any) -> int:
    """Accept 0/1/2 or 'rock'/'paper'/'scissors' (any case)."""
    if isinstance(value, bool):
        raise InvalidMoveError(f"not a move: {value!r}")
    if isinstance(value, (int, np.integer)):
        if 0 <= int(value) <= 2:
            return int(value)
        raise InvalidMoveError(f"move index out of range: {value!r}")
    if isinstance(value, str):
        key = value.strip().lower()
        if key in MOVE_NAMES:
            return MOVE_NAMES.index(key)
        if key.isdigit():
            return parse_move(int(key))
    raise InvalidMoveError(f"not a move: {value!r}")


def dist_to_dict(p: np.ndarray) -> Dict[str, float]:
    p = normalize(p)
    return {name: float(p[i]) for i, name in enumerate(MOVE_NAMES)}


def dist_from_dict(d: Any) -> np.ndarray:
    """Read a ``{rock, paper, scissors}`` mapping; missing keys count as 0."""
    if not isinstance(d, dict):
        return uniform()
    raw = []
    for name in MOVE_NAMES:
        try:
            v = float(d.get(name, 0.0) or 0.0)
        except (TypeError, ValueError):
            v = 0.0
        if not math.isfinite(v):
            v = 0.0
        raw.append(min(1.0, max(0.0, v)))
    return normalize(raw)


def counts_to_dict(c: np.ndarray) -> Dict[str, float]:
    return {name: float(c[i]) for i, name in enumerate(MOVE_NAMES)}


def counts_from_dict(d: Any) -> np.ndarray:
    if not isinstance(d, dict):
        raise ValueError(f"expected move counts, got {type(d).__name__}")
    out = np.zeros(3, dtype=np.float64)
    for i, name in enumerate(MOVE_NAMES):
        v = float(d.get(name, 0.0) or 0.0)
        if not math.isfinite(v) or v < 0:
            raise ValueError(f"bad count for {name}: {v!r}")
        out[i] = v
    return out


def context_key(moves: Iterable[int]) -> str:
    return "|".join(MOVE_NAMES[int(m)] for m in moves)
