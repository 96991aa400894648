from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import numpy as np

from .errors import MalformedStateError
from .utils import (
    MOVE_NAMES,
    OUTCOMES,
    context_key,
    counts_from_dict,
    counts_to_dict,
    from_counts,
    normalize,
    uniform,
)

# Move encoding: 0=Rock, 1=Paper, 2=Scissors
# History: list of {"u_move": int, "ai_move": int, "outcome": "win"|"lose"|"tie"},
# oldest first. Outcomes are from the player's perspective.
History = List[Dict[str, Any]]


def _zeros() -> np.ndarray:
    return np.zeros(3, dtype=np.float64)


def _user_moves(history: History) -> List[int]:
    return [int(h["u_move"]) for h in history if h.get("u_move") is not None]


def _last(history: History, key: str) -> Optional[Any]:
    if not history:
        return None
    return history[-1].get(key)


@dataclass
class FrequencyExpert:
    """Laplace-smoothed marginal frequency over a trailing window."""

    window: int = 20
    alpha: float = 1.0


@dataclass
class RecencyExpert:
    """Exponentially decayed move counts (lower gamma = more recency)."""

    gamma: float = 0.85
    alpha: float = 1.0
    counts: np.ndarray = field(default_factory=_zeros)


@dataclass
class MarkovExpert:
    """p(next | last `order` moves); unseen contexts are uniform."""

    order: int = 1
    alpha: float = 1.0
    table: Dict[str, np.ndarray] = field(default_factory=dict)


@dataclass
class OutcomeExpert:
    """Next-move counts conditioned on how the previous round ended."""

    alpha: float = 1.0
    by_outcome: Dict[str, np.ndarray] = field(default_factory=lambda: {o: _zeros() for o in OUTCOMES})


@dataclass
class WinStayLoseShiftExpert:
    """Next-move counts keyed by (previous outcome, previous own move)."""

    alpha: float = 1.0
    table: Dict[str, np.ndarray] = field(default_factory=dict)


@dataclass
class PeriodicExpert:
    """Short-cycle detector via lagged self-agreement over a trailing window."""

    max_period: int = 5
    min_period: int = 2
    window: int = 18
    confident: float = 0.65


@dataclass
class BaitResponseExpert:
    """How the player answers the AI's previous move (rows: AI move)."""

    alpha: float = 1.0
    table: np.ndarray = field(default_factory=lambda: np.zeros((3, 3), dtype=np.float64))


ExpertState = Union[
    FrequencyExpert,
    RecencyExpert,
    MarkovExpert,
    OutcomeExpert,
    WinStayLoseShiftExpert,
    PeriodicExpert,
    BaitResponseExpert,
]


def default_experts() -> List[ExpertState]:
    return [
        FrequencyExpert(20, 1.0),
        RecencyExpert(0.85, 1.0),
        MarkovExpert(1, 1.0),
        MarkovExpert(2, 1.0),
        OutcomeExpert(1.0),
        WinStayLoseShiftExpert(1.0),
        PeriodicExpert(5, 2, 18, 0.65),
        BaitResponseExpert(1.0),
    ]


def expert_name(e: ExpertState) -> str:
    if isinstance(e, FrequencyExpert):
        return f"Frequency({e.window})"
    if isinstance(e, RecencyExpert):
        return f"Recency({e.gamma:g})"
    if isinstance(e, MarkovExpert):
        return f"Markov({e.order})"
    if isinstance(e, OutcomeExpert):
        return "Outcome"
    if isinstance(e, WinStayLoseShiftExpert):
        return "WinStayLoseShift"
    if isinstance(e, PeriodicExpert):
        return f"Periodic({e.min_period}-{e.max_period})"
    if isinstance(e, BaitResponseExpert):
        return "BaitResponse"
    raise TypeError(f"unknown expert: {type(e).__name__}")


# ---------------------- predict ----------------------
def _periodic_predict(e: PeriodicExpert, history: History) -> np.ndarray:
    arr = _user_moves(history)[-e.window:]
    n = len(arr)
    if n < e.min_period + 1:
        return uniform()
    best_p, best_score = -1, 0.0
    for p in range(e.min_period, e.max_period + 1):
        total = 0
        matches = 0
        for i in range(p, n):
            total += 1
            if arr[i] == arr[i - p]:
                matches += 1
        score = matches / total if total else 0.0
        if score > best_score:
            best_p, best_score = p, score
    if best_p < 0 or best_score < e.confident:
        return uniform()
    guess = arr[n - best_p]
    p = np.full(3, 0.05, dtype=np.float64)
    p[guess] += 0.9
    return normalize(p)


def predict_expert(e: ExpertState, history: History) -> np.ndarray:
    """Distribution over the player's next move. Never mutates ``e``."""
    if isinstance(e, FrequencyExpert):
        counts = _zeros()
        for m in _user_moves(history)[-e.window:]:
            counts[m] += 1.0
        return from_counts(counts, e.alpha)
    if isinstance(e, RecencyExpert):
        return from_counts(e.counts, e.alpha)
    if isinstance(e, MarkovExpert):
        moves = _user_moves(history)
        if len(moves) < e.order:
            return uniform()
        counts = e.table.get(context_key(moves[len(moves) - e.order:]))
        if counts is None:
            return uniform()
        return from_counts(counts, e.alpha)
    if isinstance(e, OutcomeExpert):
        last = _last(history, "outcome")
        if last not in e.by_outcome:
            return uniform()
        return from_counts(e.by_outcome[last], e.alpha)
    if isinstance(e, WinStayLoseShiftExpert):
        last_o, last_m = _last(history, "outcome"), _last(history, "u_move")
        if last_o is None or last_m is None:
            return uniform()
        counts = e.table.get(f"{last_o}|{MOVE_NAMES[int(last_m)]}")
        if counts is None:
            return uniform()
        return from_counts(counts, e.alpha)
    if isinstance(e, PeriodicExpert):
        return _periodic_predict(e, history)
    if isinstance(e, BaitResponseExpert):
        last_ai = _last(history, "ai_move")
        if last_ai is None:
            return uniform()
        return from_counts(e.table[int(last_ai)], e.alpha)
    raise TypeError(f"unknown expert: {type(e).__name__}")


# ---------------------- update ----------------------
def update_expert(e: ExpertState, history: History, actual: int) -> None:
    """Fold the revealed move into ``e``; ``history`` excludes that move."""
    actual = int(actual)
    if isinstance(e, (FrequencyExpert, PeriodicExpert)):
        # both recompute from the history window
        return
    if isinstance(e, RecencyExpert):
        e.counts = e.counts * float(e.gamma)
        e.counts[actual] += 1.0
        return
    if isinstance(e, MarkovExpert):
        moves = _user_moves(history)
        if len(moves) < e.order:
            return
        key = context_key(moves[len(moves) - e.order:])
        row = e.table.setdefault(key, _zeros())
        row[actual] += 1.0
        return
    if isinstance(e, OutcomeExpert):
        last = _last(history, "outcome")
        if last not in e.by_outcome:
            return
        e.by_outcome[last][actual] += 1.0
        return
    if isinstance(e, WinStayLoseShiftExpert):
        last_o, last_m = _last(history, "outcome"), _last(history, "u_move")
        if last_o is None or last_m is None:
            return
        row = e.table.setdefault(f"{last_o}|{MOVE_NAMES[int(last_m)]}", _zeros())
        row[actual] += 1.0
        return
    if isinstance(e, BaitResponseExpert):
        last_ai = _last(history, "ai_move")
        if last_ai is None:
            return
        e.table[int(last_ai), actual] += 1.0
        return
    raise TypeError(f"unknown expert: {type(e).__name__}")


# ---------------------- (de)serialization ----------------------
def expert_to_dict(e: ExpertState) -> Dict[str, Any]:
    if isinstance(e, FrequencyExpert):
        return {"type": "FrequencyExpert", "window": e.window, "alpha": e.alpha}
    if isinstance(e, RecencyExpert):
        return {"type": "RecencyExpert", "gamma": e.gamma, "alpha": e.alpha, "counts": counts_to_dict(e.counts)}
    if isinstance(e, MarkovExpert):
        return {
            "type": "MarkovExpert",
            "order": e.order,
            "alpha": e.alpha,
            "table": [[k, counts_to_dict(v)] for k, v in e.table.items()],
        }
    if isinstance(e, OutcomeExpert):
        return {
            "type": "OutcomeExpert",
            "alpha": e.alpha,
            "byOutcome": {o: counts_to_dict(e.by_outcome[o]) for o in OUTCOMES},
        }
    if isinstance(e, WinStayLoseShiftExpert):
        return {
            "type": "WinStayLoseShiftExpert",
            "alpha": e.alpha,
            "table": [[k, counts_to_dict(v)] for k, v in e.table.items()],
        }
    if isinstance(e, PeriodicExpert):
        return {
            "type": "PeriodicExpert",
            "maxPeriod": e.max_period,
            "minPeriod": e.min_period,
            "window": e.window,
            "confident": e.confident,
        }
    if isinstance(e, BaitResponseExpert):
        return {
            "type": "BaitResponseExpert",
            "alpha": e.alpha,
            "table": {MOVE_NAMES[i]: counts_to_dict(e.table[i]) for i in range(3)},
        }
    raise TypeError(f"unknown expert: {type(e).__name__}")


def _table_from_pairs(pairs: Any) -> Dict[str, np.ndarray]:
    if not isinstance(pairs, list):
        raise ValueError("table must be a list of [key, counts] pairs")
    out: Dict[str, np.ndarray] = {}
    for item in pairs:
        key, counts = item
        out[str(key)] = counts_from_dict(counts)
    return out


def _validate(e: ExpertState) -> ExpertState:
    """Reject parameters ``predict_expert`` cannot work with."""
    alpha = getattr(e, "alpha", 1.0)
    if not math.isfinite(alpha) or alpha <= 0:
        raise ValueError(f"alpha must be positive, got {alpha!r}")
    if isinstance(e, FrequencyExpert) and e.window < 1:
        raise ValueError(f"window must be >= 1, got {e.window!r}")
    if isinstance(e, RecencyExpert) and not 0 < e.gamma <= 1:
        raise ValueError(f"gamma must be in (0, 1], got {e.gamma!r}")
    if isinstance(e, MarkovExpert) and e.order < 1:
        raise ValueError(f"order must be >= 1, got {e.order!r}")
    if isinstance(e, PeriodicExpert):
        if not 1 <= e.min_period <= e.max_period:
            raise ValueError(f"bad period range {e.min_period}-{e.max_period}")
        if e.window < 1 or not math.isfinite(e.confident):
            raise ValueError("bad periodic window or threshold")
    return e


def _build(d: Dict[str, Any]) -> ExpertState:
    kind = d["type"]
    alpha = float(d.get("alpha", 1.0))
    if kind == "FrequencyExpert":
        return FrequencyExpert(window=int(d["window"]), alpha=alpha)
    if kind == "RecencyExpert":
        counts = counts_from_dict(d["counts"]) if "counts" in d else _zeros()
        return RecencyExpert(gamma=float(d["gamma"]), alpha=alpha, counts=counts)
    if kind == "MarkovExpert":
        return MarkovExpert(order=int(d["order"]), alpha=alpha, table=_table_from_pairs(d.get("table", [])))
    if kind == "OutcomeExpert":
        raw = d.get("byOutcome", {})
        return OutcomeExpert(
            alpha=alpha,
            by_outcome={o: counts_from_dict(raw[o]) if o in raw else _zeros() for o in OUTCOMES},
        )
    if kind == "WinStayLoseShiftExpert":
        return WinStayLoseShiftExpert(alpha=alpha, table=_table_from_pairs(d.get("table", [])))
    if kind == "PeriodicExpert":
        return PeriodicExpert(
            max_period=int(d["maxPeriod"]),
            min_period=int(d["minPeriod"]),
            window=int(d["window"]),
            confident=float(d["confident"]),
        )
    if kind == "BaitResponseExpert":
        raw = d.get("table", {})
        table = np.zeros((3, 3), dtype=np.float64)
        for i, name in enumerate(MOVE_NAMES):
            if name in raw:
                table[i] = counts_from_dict(raw[name])
        return BaitResponseExpert(alpha=alpha, table=table)
    raise MalformedStateError(f"unknown expert type: {kind!r}")


def expert_from_dict(d: Dict[str, Any]) -> ExpertState:
    """Strict parse of a persisted expert; bad shapes or parameters raise MalformedStateError."""
    try:
        return _validate(_build(d))
    except MalformedStateError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise MalformedStateError(f"bad expert record: {exc}") from exc
