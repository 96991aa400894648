from __future__ import annotations

import copy
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .analyzer import analyze
from .blend import BlendCombiner, BlendResult
from .config import EngineConfig
from .dataset import RoundJournal
from .experts import History
from .mixer import HedgeMixer
from .policy import (
    DIFFICULTIES,
    MIXER,
    DecisionPolicySelector,
    confidence_bucket,
    counter_from_dist,
    describe_difficulty,
    heuristic_counter,
    predict_next,
)
from .records import HeuristicTrace, MixerTrace, RoundLog, StoredPredictorModelState, utc_now
from .storage import ModelStore, Repository, fresh_model_state, get_repository
from .utils import MOVE_NAMES, dist_to_dict, parse_move, resolve_outcome

logger = logging.getLogger(__name__)


class EngineContext:
    """Everything the engine persists through, built once by the caller.

    Holds the config, the debounced model store and the optional round
    journal. ``close()`` flushes whatever is still buffered.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        repository: Optional[Repository] = None,
        journal: Optional[RoundJournal] = None,
        clock=time.monotonic,
    ):
        self.config = config if config is not None else EngineConfig()
        if repository is None:
            repository = get_repository(self.config.storage, self.config.state_dir, self.config.redis_url)
        self.repository = repository
        self.model_store = ModelStore(
            repository,
            debounce_s=self.config.flush_interval,
            default_eta=self.config.history_eta,
            clock=clock,
        )
        if journal is None and self.config.journal_dir:
            journal = RoundJournal(self.config.journal_dir)
        self.journal = journal

    def close(self) -> None:
        self.model_store.flush()

    def __enter__(self) -> "EngineContext":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


@dataclass
class Decision:
    ai_move: int
    policy: str
    difficulty: str
    blend: BlendResult
    confidence: float
    reason: str
    heuristic: Optional[HeuristicTrace] = None
    started: float = field(default_factory=time.perf_counter)


@dataclass
class ProfileSession:
    profile_id: str
    session_id: str
    record: StoredPredictorModelState
    combiner: BlendCombiner
    selector: DecisionPolicySelector
    history: History = field(default_factory=list)
    rounds: List[RoundLog] = field(default_factory=list)
    pending: Optional[Decision] = None
    streak_ai: int = 0
    streak_you: int = 0


class GameBrain:
    """
    Adaptive Rock-Paper-Scissors opponent.

    - Predicts the player's next move as a distribution over rock/paper/scissors
    - Blends a session-only Hedge mixer with the profile's persisted one
    - Plays a light heuristic until the profile has enough rounds for the mixer
    - Emits a RoundLog per round; the analyzer scores those logs
    """

    def __init__(self, context: EngineContext, random_seed: Optional[int] = 42):
        self.context = context
        self.config = context.config
        self.store = context.model_store
        self.rng = random.Random(random_seed)
        self.sessions: Dict[str, ProfileSession] = {}

    # ---------------------- Public API ----------------------
    def predict(self, profile_id: str, difficulty: str = "normal") -> Tuple[int, Dict[str, Any]]:
        s = self._session(profile_id)
        decision = self._decide(s, difficulty)
        s.pending = decision
        meta = {
            "policy": decision.policy,
            "difficulty": decision.difficulty,
            "difficultyParams": describe_difficulty(decision.difficulty),
            "confidence": decision.confidence,
            "confidenceBucket": confidence_bucket(decision.confidence),
            "reason": decision.reason,
            "dist": dist_to_dict(decision.blend.dist),
            "blend": decision.blend.to_dict(),
            "modelVersion": s.record.model_version,
            "roundsSeen": s.record.rounds_seen,
        }
        if decision.heuristic is not None:
            meta["heuristic"] = decision.heuristic.to_dict()
        return decision.ai_move, meta

    def feedback(
        self,
        profile_id: str,
        user_move: Any,
        ai_move: Any = None,
        match_id: Optional[str] = None,
        mode: str = "practice",
        best_of: int = 5,
        round_number: Optional[int] = None,
        player_id: Optional[str] = None,
    ) -> RoundLog:
        """Score the round, update both mixers, persist and log it."""
        user = parse_move(user_move)
        s = self._session(profile_id)
        decision = s.pending if s.pending is not None else self._decide(s, "normal")
        s.pending = None
        ai = parse_move(ai_move) if ai_move is not None else decision.ai_move
        outcome = resolve_outcome(user, ai)

        mixer_trace = None
        if decision.policy == MIXER:
            blend = decision.blend
            rt_top = s.combiner.realtime.top_experts(s.history, 3, actual=user)
            hist_top = s.combiner.history.top_experts(s.history, 3, actual=user)
            mixer_trace = MixerTrace(
                dist=blend.dist,
                counter=ai,
                top_experts=rt_top if blend.realtime_weight >= blend.history_weight else hist_top,
                confidence=decision.confidence,
                realtime_weight=blend.realtime_weight,
                history_weight=blend.history_weight,
                realtime_dist=blend.realtime_dist,
                history_dist=blend.history_dist,
                realtime_top_experts=rt_top,
                history_top_experts=hist_top,
                realtime_rounds=s.combiner.realtime_rounds,
                history_rounds=s.combiner.history_rounds,
                conflict=blend.conflict,
            )

        s.combiner.update(s.history, user)
        s.history.append({"u_move": user, "ai_move": ai, "outcome": outcome})

        s.record.rounds_seen += 1
        s.record.state = s.combiner.history.to_dict()
        s.record.updated_at = utc_now()
        self.store.save(s.record)
        s.selector.observe(s.record.rounds_seen, decision.blend.confidence)

        if outcome == "lose":
            s.streak_ai, s.streak_you = s.streak_ai + 1, 0
        elif outcome == "win":
            s.streak_ai, s.streak_you = 0, s.streak_you + 1
        else:
            s.streak_ai, s.streak_you = 0, 0

        no_guess = decision.heuristic is not None and decision.heuristic.predicted is None
        round_log = RoundLog(
            id=uuid.uuid4().hex,
            session_id=s.session_id,
            player_id=player_id or profile_id,
            profile_id=profile_id,
            t=utc_now(),
            player=user,
            ai=ai,
            outcome=outcome,
            policy=decision.policy,
            mode=mode,
            best_of=int(best_of),
            difficulty=decision.difficulty,
            match_id=match_id,
            round_number=round_number,
            mixer=mixer_trace,
            heuristic=decision.heuristic if mixer_trace is None else None,
            streak_ai=s.streak_ai,
            streak_you=s.streak_you,
            reason=decision.reason,
            # a heuristic with no guess has no confidence to report
            confidence=None if no_guess else decision.confidence,
            confidence_bucket=confidence_bucket(decision.confidence),
            decision_time_ms=(time.perf_counter() - decision.started) * 1000.0,
        )
        s.rounds.append(round_log)
        if self.context.journal is not None:
            self.context.journal.append(round_log)
        return round_log

    def fork(self, source_profile_id: str, new_profile_id: str, carry_over: bool) -> StoredPredictorModelState:
        """Start a new model version for ``new_profile_id``.

        With ``carry_over`` the source's weights and expert tables are copied;
        otherwise the new version starts fresh. Either way the version is bumped
        past both the source and any existing target record, and ``roundsSeen``
        restarts at 0.

        Since the blend weights history by ``roundsSeen``, carried-over tables
        get zero blend weight and report no conflict until the fork has played
        its own rounds; they still drive the history mixer's own updates.
        """
        src = self.store.load(source_profile_id)
        version = src.model_version
        if self.store.exists(new_profile_id):
            version = max(version, self.store.load(new_profile_id).model_version)
        if carry_over:
            state = copy.deepcopy(src.state)
        else:
            state = HedgeMixer(eta=self.config.history_eta).to_dict()
        record = StoredPredictorModelState(
            profile_id=new_profile_id,
            model_version=version + 1,
            updated_at=utc_now(),
            rounds_seen=0,
            state=state,
        )
        self.store.save(record)
        self.sessions.pop(new_profile_id, None)
        logger.debug(
            "forked %s -> %s (carry_over=%s, version=%d)",
            source_profile_id, new_profile_id, carry_over, record.model_version,
        )
        return record

    def reset(self, profile_id: str) -> StoredPredictorModelState:
        current = self.store.load(profile_id)
        record = fresh_model_state(profile_id, self.config.history_eta, current.model_version + 1)
        self.store.save(record)
        self.sessions.pop(profile_id, None)
        logger.debug("reset %s to version %d", profile_id, record.model_version)
        return record

    def save(self) -> bool:
        return self.store.flush()

    def close(self) -> None:
        self.context.close()

    def rounds(self, profile_id: str, scope: str = "session") -> List[RoundLog]:
        """Rounds of the live session, or the journaled history when asked."""
        if scope == "history" and self.context.journal is not None:
            return self.context.journal.read(profile_id)
        s = self.sessions.get(profile_id)
        return list(s.rounds) if s is not None else []

    def insights(self, profile_id: str, scope: str = "session") -> Dict[str, Any]:
        return analyze(self.rounds(profile_id, scope))

    # ---------------------- Internal helpers ----------------------
    def _session(self, profile_id: str) -> ProfileSession:
        if profile_id in self.sessions:
            return self.sessions[profile_id]
        record = self.store.load(profile_id)
        combiner = BlendCombiner(
            realtime=HedgeMixer(eta=self.config.realtime_eta),
            history=HedgeMixer.from_dict(record.state),
            realtime_rounds=0,
            history_rounds=record.rounds_seen,
        )
        selector = DecisionPolicySelector(min_rounds=self.config.min_rounds)
        selector.observe(record.rounds_seen)
        s = ProfileSession(
            profile_id=profile_id,
            session_id=uuid.uuid4().hex,
            record=record,
            combiner=combiner,
            selector=selector,
        )
        self.sessions[profile_id] = s
        return s

    def _decide(self, s: ProfileSession, difficulty: str) -> Decision:
        if difficulty not in DIFFICULTIES:
            logger.warning("unknown difficulty %r, using normal", difficulty)
            difficulty = "normal"
        blend = s.combiner.predict(s.history)
        if s.selector.state == MIXER:
            move = counter_from_dist(blend.dist, difficulty, self.rng)
            reason = f"ensemble expects {MOVE_NAMES[blend.move]}"
            if blend.conflict is not None:
                reason += f" (session says {blend.conflict['realtime']}, history says {blend.conflict['history']})"
            return Decision(
                ai_move=move,
                policy=MIXER,
                difficulty=difficulty,
                blend=blend,
                confidence=blend.confidence,
                reason=reason,
            )
        moves = [int(h["u_move"]) for h in s.history]
        predicted, conf, reason = predict_next(moves, self.rng)
        move = heuristic_counter(predicted, conf, difficulty, self.rng)
        return Decision(
            ai_move=move,
            policy=s.selector.state,
            difficulty=difficulty,
            blend=blend,
            confidence=conf,
            reason=reason,
            heuristic=HeuristicTrace(predicted=predicted, conf=conf, reason=reason),
        )
