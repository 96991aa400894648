from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import numpy as np

from .errors import MalformedStateError
from .mixer import HedgeMixer
from .utils import OUTCOMES, dist_from_dict, dist_to_dict, move_name, parse_move


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class StoredPredictorModelState:
    profile_id: str
    model_version: int = 1
    updated_at: str = field(default_factory=utc_now)
    rounds_seen: int = 0
    state: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profileId": self.profile_id,
            "modelVersion": self.model_version,
            "updatedAt": self.updated_at,
            "roundsSeen": self.rounds_seen,
            "state": self.state,
        }

    @staticmethod
    def from_dict(d: Any) -> "StoredPredictorModelState":
        """Strict parse; anything off raises MalformedStateError."""
        if not isinstance(d, dict):
            raise MalformedStateError("model record must be an object")
        profile_id = d.get("profileId")
        if not isinstance(profile_id, str) or not profile_id:
            raise MalformedStateError("model record has no profileId")
        version = d.get("modelVersion")
        if isinstance(version, bool) or not isinstance(version, (int, float)) or not math.isfinite(version):
            raise MalformedStateError("model record has no modelVersion")
        rounds = d.get("roundsSeen", 0)
        if isinstance(rounds, bool) or not isinstance(rounds, (int, float)) or not math.isfinite(rounds):
            raise MalformedStateError("roundsSeen is not a number")
        updated_at = d.get("updatedAt")
        state = d.get("state")
        # validates alignment and every expert record
        HedgeMixer.from_dict(state)
        return StoredPredictorModelState(
            profile_id=profile_id,
            model_version=max(1, int(version)),
            updated_at=updated_at if isinstance(updated_at, str) else datetime.fromtimestamp(0, timezone.utc).isoformat(),
            rounds_seen=max(0, int(rounds)),
            state=state,
        )


@dataclass
class MixerTrace:
    dist: np.ndarray
    counter: int
    top_experts: List[Dict[str, Any]]
    confidence: float
    realtime_weight: Optional[float] = None
    history_weight: Optional[float] = None
    realtime_dist: Optional[np.ndarray] = None
    history_dist: Optional[np.ndarray] = None
    realtime_top_experts: Optional[List[Dict[str, Any]]] = None
    history_top_experts: Optional[List[Dict[str, Any]]] = None
    realtime_rounds: Optional[int] = None
    history_rounds: Optional[int] = None
    conflict: Optional[Dict[str, Optional[str]]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dist": dist_to_dict(self.dist),
            "counter": move_name(self.counter),
            "topExperts": self.top_experts,
            "confidence": self.confidence,
            "realtimeWeight": self.realtime_weight,
            "historyWeight": self.history_weight,
            "realtimeDist": dist_to_dict(self.realtime_dist) if self.realtime_dist is not None else None,
            "historyDist": dist_to_dict(self.history_dist) if self.history_dist is not None else None,
            "realtimeTopExperts": self.realtime_top_experts,
            "historyTopExperts": self.history_top_experts,
            "realtimeRounds": self.realtime_rounds,
            "historyRounds": self.history_rounds,
            "conflict": self.conflict,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "MixerTrace":
        return MixerTrace(
            dist=dist_from_dict(d.get("dist")),
            counter=parse_move(d.get("counter", 0)),
            top_experts=list(d.get("topExperts") or []),
            confidence=float(d.get("confidence") or 0.0),
            realtime_weight=d.get("realtimeWeight"),
            history_weight=d.get("historyWeight"),
            realtime_dist=dist_from_dict(d["realtimeDist"]) if d.get("realtimeDist") else None,
            history_dist=dist_from_dict(d["historyDist"]) if d.get("historyDist") else None,
            realtime_top_experts=d.get("realtimeTopExperts"),
            history_top_experts=d.get("historyTopExperts"),
            realtime_rounds=d.get("realtimeRounds"),
            history_rounds=d.get("historyRounds"),
            conflict=d.get("conflict"),
        )


@dataclass
class HeuristicTrace:
    predicted: Optional[int] = None
    conf: Optional[float] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"predicted": move_name(self.predicted), "conf": self.conf, "reason": self.reason}

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "HeuristicTrace":
        predicted = d.get("predicted")
        conf = d.get("conf")
        return HeuristicTrace(
            predicted=parse_move(predicted) if predicted is not None else None,
            conf=float(conf) if conf is not None else None,
            reason=str(d.get("reason") or ""),
        )


@dataclass(frozen=True)
class RoundLog:
    id: str
    session_id: str
    player_id: str
    profile_id: str
    t: str
    player: int
    ai: int
    outcome: str
    policy: str
    mode: str = "practice"
    best_of: int = 5
    difficulty: str = "normal"
    match_id: Optional[str] = None
    round_number: Optional[int] = None
    mixer: Optional[MixerTrace] = None
    heuristic: Optional[HeuristicTrace] = None
    streak_ai: int = 0
    streak_you: int = 0
    reason: str = ""
    confidence: Optional[float] = None
    confidence_bucket: str = "low"
    decision_time_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "matchId": self.match_id,
            "roundNumber": self.round_number,
            "playerId": self.player_id,
            "profileId": self.profile_id,
            "t": self.t,
            "mode": self.mode,
            "bestOf": self.best_of,
            "difficulty": self.difficulty,
            "player": move_name(self.player),
            "ai": move_name(self.ai),
            "outcome": self.outcome,
            "policy": self.policy,
            "mixer": self.mixer.to_dict() if self.mixer is not None else None,
            "heuristic": self.heuristic.to_dict() if self.heuristic is not None else None,
            "streakAI": self.streak_ai,
            "streakYou": self.streak_you,
            "reason": self.reason,
            "confidence": self.confidence,
            "confidenceBucket": self.confidence_bucket,
            "decisionTimeMs": self.decision_time_ms,
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "RoundLog":
        try:
            outcome = d["outcome"]
            if outcome not in OUTCOMES:
                raise ValueError(f"bad outcome {outcome!r}")
            mixer = d.get("mixer")
            heuristic = d.get("heuristic")
            return RoundLog(
                id=str(d["id"]),
                session_id=str(d.get("sessionId") or ""),
                player_id=str(d.get("playerId") or ""),
                profile_id=str(d.get("profileId") or ""),
                t=str(d["t"]),
                player=parse_move(d["player"]),
                ai=parse_move(d["ai"]),
                outcome=outcome,
                policy=str(d.get("policy") or "heuristic"),
                mode=str(d.get("mode") or "practice"),
                best_of=int(d.get("bestOf") or 5),
                difficulty=str(d.get("difficulty") or "normal"),
                match_id=d.get("matchId"),
                round_number=int(d["roundNumber"]) if d.get("roundNumber") is not None else None,
                mixer=MixerTrace.from_dict(mixer) if isinstance(mixer, dict) else None,
                heuristic=HeuristicTrace.from_dict(heuristic) if isinstance(heuristic, dict) else None,
                streak_ai=int(d.get("streakAI") or 0),
                streak_you=int(d.get("streakYou") or 0),
                reason=str(d.get("reason") or ""),
                confidence=float(d["confidence"]) if d.get("confidence") is not None else None,
                confidence_bucket=str(d.get("confidenceBucket") or "low"),
                decision_time_ms=d.get("decisionTimeMs"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedStateError(f"bad round record: {exc}") from exc
