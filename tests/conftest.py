import numpy as np
import pytest

from rpslab import EngineConfig, EngineContext, GameBrain
from rpslab.records import HeuristicTrace, MixerTrace, RoundLog
from rpslab.storage import MemoryRepository
from rpslab.utils import resolve_outcome


@pytest.fixture
def context():
    return EngineContext(EngineConfig(), repository=MemoryRepository())


@pytest.fixture
def brain(context):
    return GameBrain(context, random_seed=1)


@pytest.fixture
def make_round():
    """Factory for RoundLog fixtures; ``i`` orders rounds by timestamp."""

    def _make(i, player, ai=2, dist=None, heuristic=None, confidence=None, policy=None):
        mixer = None
        if dist is not None:
            mixer = MixerTrace(dist=np.asarray(dist, dtype=np.float64), counter=ai, top_experts=[], confidence=max(dist))
        trace = None
        if heuristic is not None:
            trace = HeuristicTrace(predicted=heuristic[0], conf=heuristic[1], reason="test")
        return RoundLog(
            id=f"r{i}",
            session_id="s1",
            player_id="p1",
            profile_id="p1",
            t=f"2024-01-01T00:{i // 60:02d}:{i % 60:02d}+00:00",
            player=player,
            ai=ai,
            outcome=resolve_outcome(player, ai),
            policy=policy or ("mixer" if mixer is not None else "heuristic"),
            mixer=mixer,
            heuristic=trace,
            confidence=confidence,
        )

    return _make
