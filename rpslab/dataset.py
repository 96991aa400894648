from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import MalformedStateError
from .records import RoundLog
from .storage import NumpyEncoder

logger = logging.getLogger(__name__)

MAX_ROUNDS = 1000


class RoundJournal:
    """Append-only JSONL log of completed rounds.

    Structure:
      <root>/rounds/<YYYYMMDD>/<profile_id>.jsonl

    One RoundLog per line. Reads return the latest ``MAX_ROUNDS`` rounds of a
    profile, oldest first.
    """

    def __init__(self, root_dir: str, subdir: Optional[str] = None) -> None:
        self.root = root_dir
        self.rounds_dir = os.path.join(self.root, subdir or "rounds")
        os.makedirs(self.rounds_dir, exist_ok=True)

    @staticmethod
    def _safe(profile_id: str) -> str:
        return "p_" + "".join(c for c in profile_id if c.isalnum() or c in ("-", "_"))

    def _path_for(self, profile_id: str) -> str:
        day = time.strftime("%Y%m%d")
        d = os.path.join(self.rounds_dir, day)
        os.makedirs(d, exist_ok=True)
        return os.path.join(d, f"{self._safe(profile_id)}.jsonl")

    def append(self, round_log: RoundLog) -> None:
        try:
            with open(self._path_for(round_log.profile_id), "a", encoding="utf-8") as f:
                f.write(json.dumps(round_log.to_dict(), cls=NumpyEncoder, ensure_ascii=False) + "\n")
        except OSError as exc:
            # the in-memory session log still has the round
            logger.warning("failed to journal round %s: %s", round_log.id, exc)

    def read(self, profile_id: str, limit: int = MAX_ROUNDS) -> List[RoundLog]:
        name = f"{self._safe(profile_id)}.jsonl"
        out: List[RoundLog] = []
        for day in sorted(os.listdir(self.rounds_dir)):
            p = os.path.join(self.rounds_dir, day, name)
            if not os.path.exists(p):
                continue
            with open(p, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        out.append(RoundLog.from_dict(json.loads(line)))
                    except (ValueError, MalformedStateError) as exc:
                        logger.warning("skipping unreadable round in %s: %s", p, exc)
        return out[-limit:] if limit else out


def _round_key(d: Dict[str, Any]) -> Tuple[Optional[str], Optional[int]]:
    rn = d.get("roundNumber")
    try:
        rn = int(rn) if rn is not None else None
    except (TypeError, ValueError):
        rn = None
    return d.get("matchId"), rn


def rounds_from_export(rows: Iterable[Dict[str, Any]], traces: Iterable[Dict[str, Any]]) -> List[RoundLog]:
    """Join exported per-round rows with trace records on (matchId, roundNumber).

    Rows supply timing and match metadata; traces supply moves, policy and the
    mixer/heuristic trace. Rows without a matching trace are dropped, since
    they carry no moves. The result is ordered by ``completedAt``.
    """
    by_key: Dict[Tuple[Optional[str], Optional[int]], Dict[str, Any]] = {}
    for trace in traces:
        by_key[_round_key(trace)] = trace
    joined: List[Tuple[float, int, RoundLog]] = []
    for i, row in enumerate(rows):
        trace = by_key.get(_round_key(row))
        if trace is None:
            continue
        merged = dict(trace)
        for field_name in ("matchId", "roundNumber", "mode", "difficulty", "bestOf", "outcome"):
            if row.get(field_name) is not None:
                merged[field_name] = row[field_name]
        if row.get("aiStreak") is not None:
            merged["streakAI"] = row["aiStreak"]
        if row.get("youStreak") is not None:
            merged["streakYou"] = row["youStreak"]
        if row.get("responseTimeMs") is not None and merged.get("decisionTimeMs") is None:
            merged["decisionTimeMs"] = row["responseTimeMs"]
        completed = row.get("completedAt")
        if "t" not in merged and completed is not None:
            merged["t"] = _iso_from_ms(completed)
        merged.setdefault("id", f"{row.get('matchId')}:{row.get('roundNumber')}")
        try:
            rl = RoundLog.from_dict(merged)
        except MalformedStateError as exc:
            logger.warning("skipping export row %s: %s", _round_key(row), exc)
            continue
        joined.append((_as_float(completed, default=float(i)), i, rl))
    joined.sort(key=lambda item: (item[0], item[1]))
    return [rl for _, _, rl in joined]


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _iso_from_ms(value: Any) -> str:
    try:
        return datetime.fromtimestamp(float(value) / 1000.0, timezone.utc).isoformat()
    except (TypeError, ValueError, OverflowError, OSError):
        return str(value)
