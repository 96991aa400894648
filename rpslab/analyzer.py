"""
Calibration and behavior metrics over a chronological round log.

Everything here is a pure function of its input: nothing is cached, nothing is
written back, and the same rounds always give the same numbers. Ratios with an
empty denominator come back as ``None`` rather than NaN.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .records import RoundLog
from .utils import MOVE_NAMES, argmax_move, beaten_by, entropy, move_name, normalize

N_BINS = 10
HIGH_CONFIDENCE_THRESHOLD = 0.7
DEFAULT_CONFIDENCE = 0.34
# adaptation windows close once the trailing max-prob spread settles
ADAPTATION_EPSILON = 0.02
ADAPTATION_WINDOW = 4
BANDS = (
    ("0-40%", 0.0, 0.4),
    ("40-70%", 0.4, 0.7),
    ("70-100%", 0.7, 1.001),
)


@dataclass(frozen=True)
class DerivedEntry:
    round: RoundLog
    dist: Tuple[float, float, float]
    top_move: int
    max_prob: float
    actual_prob: float
    correct: bool
    index: int


@dataclass
class CalibrationBin:
    lower: float
    upper: float
    total: int = 0
    accuracy: Optional[float] = None
    avg_confidence: Optional[float] = None

    @property
    def gap(self) -> Optional[float]:
        if self.accuracy is None or self.avg_confidence is None:
            return None
        return abs(self.accuracy - self.avg_confidence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lower": self.lower,
            "upper": self.upper,
            "total": self.total,
            "accuracy": self.accuracy,
            "avgConfidence": self.avg_confidence,
            "gap": self.gap,
        }


@dataclass
class ConfidenceBand:
    label: str
    min: float
    max: float
    matrix: List[List[int]] = field(default_factory=lambda: [[0, 0, 0] for _ in range(3)])

    @property
    def total(self) -> int:
        return sum(sum(row) for row in self.matrix)

    @property
    def accuracy(self) -> Optional[float]:
        total = self.total
        if not total:
            return None
        return sum(self.matrix[i][i] for i in range(3)) / total

    @property
    def mistake_rate(self) -> Optional[float]:
        acc = self.accuracy
        return None if acc is None else 1.0 - acc

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "min": self.min,
            "max": self.max,
            "matrix": {
                MOVE_NAMES[p]: {MOVE_NAMES[a]: self.matrix[p][a] for a in range(3)} for p in range(3)
            },
            "total": self.total,
            "accuracy": self.accuracy,
            "mistakeRate": self.mistake_rate,
        }


@dataclass
class SurpriseEntry:
    value: float
    log_value: float
    index: int
    round_id: str


@dataclass
class AdaptationWindow:
    start: int
    end: int
    length: int


# ---------------------- reconstruction ----------------------
def clamp_probability(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value) or value < 0:
        return 0.0
    return min(1.0, value)


def _spread(predicted: int, conf: float) -> np.ndarray:
    share = max(0.0, 1.0 - conf) / 2.0
    dist = np.full(3, share, dtype=np.float64)
    dist[predicted] = conf
    return normalize(dist)


def expected_player_move_from_ai(ai_move: Optional[int]) -> Optional[int]:
    """The player move an AI move was aimed at: the one it beats."""
    if ai_move is None:
        return None
    return beaten_by(ai_move)


def build_distribution(round_log: RoundLog) -> Optional[np.ndarray]:
    if round_log.mixer is not None and round_log.mixer.dist is not None:
        return normalize(np.clip(np.asarray(round_log.mixer.dist, dtype=np.float64), 0.0, 1.0))
    h = round_log.heuristic
    if h is not None and h.predicted is not None:
        conf = h.conf if h.conf is not None else round_log.confidence
        conf = clamp_probability(conf if conf is not None else DEFAULT_CONFIDENCE)
        return _spread(int(h.predicted), conf)
    target = expected_player_move_from_ai(round_log.ai)
    if target is not None:
        conf = clamp_probability(round_log.confidence if round_log.confidence is not None else DEFAULT_CONFIDENCE)
        return _spread(target, conf)
    return None


def sort_rounds_chronologically(rounds: Sequence[RoundLog]) -> List[RoundLog]:
    # sorted() is stable, so equal timestamps keep log order
    return sorted(rounds, key=lambda r: r.t)


def compute_derived_entries(rounds: Sequence[RoundLog]) -> List[DerivedEntry]:
    derived: List[DerivedEntry] = []
    for index, r in enumerate(sort_rounds_chronologically(rounds)):
        dist = build_distribution(r)
        if dist is None:
            continue
        top = argmax_move(dist)
        derived.append(
            DerivedEntry(
                round=r,
                dist=(float(dist[0]), float(dist[1]), float(dist[2])),
                top_move=top,
                max_prob=clamp_probability(dist[top]),
                actual_prob=clamp_probability(dist[r.player]),
                correct=top == r.player,
                index=index,
            )
        )
    return derived


# ---------------------- calibration ----------------------
def compute_calibration_bins(entries: Sequence[DerivedEntry]) -> List[CalibrationBin]:
    totals = [0] * N_BINS
    hits = [0] * N_BINS
    conf = [0.0] * N_BINS
    for e in entries:
        i = min(N_BINS - 1, int(math.floor(e.max_prob * N_BINS)))
        totals[i] += 1
        hits[i] += 1 if e.correct else 0
        conf[i] += e.max_prob
    bins = []
    for i in range(N_BINS):
        b = CalibrationBin(lower=i / N_BINS, upper=(i + 1) / N_BINS, total=totals[i])
        if totals[i]:
            b.accuracy = hits[i] / totals[i]
            b.avg_confidence = conf[i] / totals[i]
        bins.append(b)
    return bins


def compute_ece(entries: Sequence[DerivedEntry], bins: Sequence[CalibrationBin]) -> Optional[float]:
    if not entries:
        return None
    total = 0.0
    for b in bins:
        if not b.total:
            continue
        total += b.gap * (b.total / len(entries))
    return total


def compute_brier_values(entries: Sequence[DerivedEntry]) -> List[float]:
    out = []
    for e in entries:
        s = 0.0
        for m in range(3):
            delta = clamp_probability(e.dist[m]) - (1.0 if e.round.player == m else 0.0)
            s += delta * delta
        out.append(s)
    return out


def compute_sharpness_values(entries: Sequence[DerivedEntry]) -> List[float]:
    max_entropy = math.log(3)
    return [1.0 - entropy(np.asarray(e.dist)) / max_entropy for e in entries]


def compute_surprise_values(entries: Sequence[DerivedEntry]) -> List[SurpriseEntry]:
    out = []
    for i, e in enumerate(entries):
        p = e.actual_prob
        out.append(
            SurpriseEntry(
                value=1.0 - p,
                log_value=-math.log(p) if p > 0 else math.inf,
                index=i,
                round_id=e.round.id,
            )
        )
    return out


def average(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return float(sum(values) / len(values))


def compute_std_dev(values: Sequence[float]) -> Optional[float]:
    """Population standard deviation; None for fewer than two values."""
    if len(values) < 2:
        return None
    return float(np.std(np.asarray(values, dtype=np.float64)))


# ---------------------- confusion / coverage ----------------------
def compute_confidence_bands(entries: Sequence[DerivedEntry]) -> List[ConfidenceBand]:
    bands = [ConfidenceBand(label, lo, hi) for label, lo, hi in BANDS]
    for e in entries:
        for band in bands:
            if band.min <= e.max_prob < band.max:
                band.matrix[e.top_move][e.round.player] += 1
                break
    return bands


def compute_coverage(entries: Sequence[DerivedEntry], threshold: float = HIGH_CONFIDENCE_THRESHOLD) -> Dict[str, Any]:
    if not entries:
        return {"coverageRate": None, "accuracy": None, "mistakeRate": None, "coveredCount": 0}
    covered = [e for e in entries if e.max_prob >= threshold]
    accuracy = sum(1 for e in covered if e.correct) / len(covered) if covered else None
    return {
        "coverageRate": len(covered) / len(entries),
        "accuracy": accuracy,
        "mistakeRate": None if accuracy is None else 1.0 - accuracy,
        "coveredCount": len(covered),
    }


# ---------------------- dynamics ----------------------
def compute_volatility(entries: Sequence[DerivedEntry]) -> Tuple[List[float], Optional[float]]:
    series = [e.max_prob for e in entries]
    diffs = [series[i] - series[i - 1] for i in range(1, len(series))]
    return diffs, compute_std_dev(diffs)


def compute_flips(entries: Sequence[DerivedEntry]) -> Tuple[List[int], Optional[float]]:
    moves = [e.top_move for e in entries]
    flips = [i for i in range(1, len(moves)) if moves[i] != moves[i - 1]]
    rate = len(flips) / (len(moves) - 1) if len(moves) > 1 else None
    return flips, rate


def compute_adaptation_windows(entries: Sequence[DerivedEntry]) -> List[AdaptationWindow]:
    """Spans from a wrong prediction flip until confidence settles and two hits land."""
    threshold = math.sqrt(ADAPTATION_EPSILON)
    result: List[AdaptationWindow] = []
    start: Optional[int] = None
    for i in range(1, len(entries)):
        flip = entries[i].top_move != entries[i - 1].top_move
        if flip and not entries[i].correct and start is None:
            start = i - 1
        if start is None:
            continue
        window = entries[max(start, i - ADAPTATION_WINDOW + 1):i + 1]
        spread = compute_std_dev([e.max_prob for e in window])
        regained = all(e.correct for e in window[-2:])
        if (spread or 0.0) < threshold and regained:
            result.append(AdaptationWindow(start=start, end=i, length=i - start + 1))
            start = None
    return result


# ---------------------- behavior ----------------------
def behavior_summary(rounds: Sequence[RoundLog]) -> Dict[str, Any]:
    """Favorite move, repeat-after-win, switch-after-loss, top transition."""
    ordered = sort_rounds_chronologically(rounds)
    n = len(ordered)
    if not n:
        return {
            "favoriteMove": None,
            "favoriteShare": None,
            "repeatAfterWin": None,
            "switchAfterLoss": None,
            "topTransition": None,
        }
    counts = [0, 0, 0]
    for r in ordered:
        counts[r.player] += 1
    fav = int(np.argmax(counts))
    wins = repeats = losses = switches = 0
    transitions: Dict[Tuple[int, int], int] = {}
    for prev, cur in zip(ordered[:-1], ordered[1:]):
        transitions[(prev.player, cur.player)] = transitions.get((prev.player, cur.player), 0) + 1
        if prev.outcome == "win":
            wins += 1
            repeats += 1 if cur.player == prev.player else 0
        elif prev.outcome == "lose":
            losses += 1
            switches += 1 if cur.player != prev.player else 0
    top = None
    if transitions:
        (frm, to), c = max(transitions.items(), key=lambda kv: kv[1])
        top = {"from": move_name(frm), "to": move_name(to), "count": c, "pct": c / max(1, n - 1)}
    return {
        "favoriteMove": move_name(fav),
        "favoriteShare": counts[fav] / n,
        "repeatAfterWin": repeats / wins if wins else None,
        "switchAfterLoss": switches / losses if losses else None,
        "topTransition": top,
    }


# ---------------------- report ----------------------
def _finite_mean(values: Sequence[float]) -> Optional[float]:
    return average([v for v in values if math.isfinite(v)])


def analyze(rounds: Sequence[RoundLog]) -> Dict[str, Any]:
    """Full derived report for a round log, JSON-ready."""
    entries = compute_derived_entries(rounds)
    bins = compute_calibration_bins(entries)
    brier = compute_brier_values(entries)
    sharpness = compute_sharpness_values(entries)
    surprise = compute_surprise_values(entries)
    diffs, volatility = compute_volatility(entries)
    flip_indices, flip_rate = compute_flips(entries)
    log_values = [s.log_value for s in surprise]
    return {
        "rounds": len(rounds),
        "analyzed": len(entries),
        "calibration": [b.to_dict() for b in bins],
        "ece": compute_ece(entries, bins),
        "brier": {"mean": average(brier), "values": brier},
        "sharpness": {"mean": average(sharpness), "values": sharpness},
        "surprise": {
            "mean": average([s.value for s in surprise]),
            "logMean": _finite_mean(log_values),
            "infiniteCount": sum(1 for v in log_values if not math.isfinite(v)),
            "values": [s.value for s in surprise],
        },
        "bands": [b.to_dict() for b in compute_confidence_bands(entries)],
        "coverage": compute_coverage(entries),
        "volatility": {"std": volatility, "diffs": diffs},
        "flips": {"rate": flip_rate, "indices": flip_indices},
        "adaptationWindows": [
            {"start": w.start, "end": w.end, "length": w.length} for w in compute_adaptation_windows(entries)
        ],
        "behavior": behavior_summary(rounds),
    }
