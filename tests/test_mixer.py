import random

import numpy as np
import pytest

from rpslab.errors import MalformedStateError
from rpslab.experts import MarkovExpert
from rpslab.mixer import HedgeMixer
from rpslab.utils import resolve_outcome


def play(mixer, moves):
    history = []
    dists = []
    for m in moves:
        dists.append(mixer.predict(history))
        mixer.update(history, m)
        history.append({"u_move": m, "ai_move": 0, "outcome": resolve_outcome(m, 0)})
    return history, dists


def test_distribution_sums_to_one():
    rng = random.Random(3)
    mixer = HedgeMixer()
    _, dists = play(mixer, [rng.randrange(3) for _ in range(40)])
    for p in dists:
        assert abs(float(np.sum(p)) - 1.0) < 1e-9
        assert np.all(p >= 0) and np.all(p <= 1)
    assert abs(float(np.sum(mixer.w)) - 1.0) < 1e-9


def test_lower_loss_expert_gains_weight_monotonically():
    mixer = HedgeMixer([MarkovExpert(1, 0.5), MarkovExpert(1, 1.0)], eta=1.6)
    history = []
    ratios = [mixer.w[0] / mixer.w[1]]
    for m in [0, 1] * 10:
        mixer.update(history, m)
        history.append({"u_move": m, "ai_move": 0, "outcome": resolve_outcome(m, 0)})
        ratios.append(mixer.w[0] / mixer.w[1])
    for prev, cur in zip(ratios[:-1], ratios[1:]):
        assert cur >= prev * (1 - 1e-9)
    assert ratios[-1] > ratios[0]


def test_update_returns_losses():
    mixer = HedgeMixer([MarkovExpert(1, 1.0)])
    losses = mixer.update([], 0)
    assert losses.shape == (1,)
    assert losses[0] == pytest.approx(2.0 / 3.0)


def test_degenerate_weights_fall_back_to_uniform():
    n = len(HedgeMixer().experts)
    for weights in ([float("nan")] * n, [0.0] * n, [-1.0] * n):
        mixer = HedgeMixer(weights=weights)
        assert np.allclose(mixer.w, np.ones(n) / n)


def test_predict_is_pure():
    mixer = HedgeMixer()
    history, _ = play(mixer, [0, 1, 2, 0, 1, 2])
    w = mixer.w.copy()
    state = mixer.to_dict()
    mixer.predict(history)
    mixer.top_experts(history, 3, actual=0)
    assert np.array_equal(mixer.w, w)
    assert mixer.to_dict() == state


def test_top_experts_sorted_by_weight():
    mixer = HedgeMixer()
    history, _ = play(mixer, [0, 0, 0, 0, 0, 0])
    top = mixer.top_experts(history, k=3, actual=0)
    assert len(top) == 3
    weights = [t["weight"] for t in top]
    assert weights == sorted(weights, reverse=True)
    assert {"name", "weight", "move", "p", "pActual"} <= set(top[0])


def test_from_dict_rejects_misaligned_state():
    state = HedgeMixer().to_dict()
    state["weights"] = state["weights"][:-1]
    with pytest.raises(MalformedStateError):
        HedgeMixer.from_dict(state)
    with pytest.raises(MalformedStateError):
        HedgeMixer.from_dict({"eta": -1, "weights": [1.0], "experts": [{"type": "FrequencyExpert", "window": 5}]})
    with pytest.raises(MalformedStateError):
        HedgeMixer.from_dict("nope")

