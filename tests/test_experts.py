import numpy as np
import pytest

from rpslab.errors import MalformedStateError
from rpslab.experts import (
    BaitResponseExpert,
    FrequencyExpert,
    MarkovExpert,
    OutcomeExpert,
    PeriodicExpert,
    RecencyExpert,
    WinStayLoseShiftExpert,
    default_experts,
    expert_from_dict,
    expert_to_dict,
    predict_expert,
    update_expert,
)
from rpslab.utils import argmax_move, resolve_outcome


def train(expert, moves, ai_move=0):
    history = []
    for m in moves:
        update_expert(expert, history, m)
        history.append({"u_move": m, "ai_move": ai_move, "outcome": resolve_outcome(m, ai_move)})
    return history


def test_markov_predicts_paper_after_rock():
    e = MarkovExpert(order=1, alpha=1.0)
    h = train(e, [0, 1, 0, 1, 0])
    p = predict_expert(e, h)
    assert argmax_move(p) == 1
    assert p[1] == pytest.approx(0.6)
    assert abs(float(np.sum(p)) - 1.0) < 1e-9


def test_markov_sharpens_with_lower_alpha_and_more_rounds():
    probs = []
    for alpha in (2.0, 1.0, 0.1):
        e = MarkovExpert(order=1, alpha=alpha)
        h = train(e, [0, 1, 0, 1, 0])
        probs.append(float(predict_expert(e, h)[1]))
    assert probs[0] < probs[1] < probs[2]

    short = MarkovExpert(order=1, alpha=1.0)
    hs = train(short, [0, 1, 0, 1, 0])
    long = MarkovExpert(order=1, alpha=1.0)
    hl = train(long, [0, 1] * 6 + [0])
    assert predict_expert(long, hl)[1] > predict_expert(short, hs)[1]


def test_unseen_context_is_uniform():
    e = MarkovExpert(order=2, alpha=1.0)
    h = train(e, [0, 1])
    assert np.allclose(predict_expert(e, h), np.ones(3) / 3.0)


def test_predict_does_not_mutate():
    experts = default_experts()
    history = []
    for m in [0, 1, 2, 2, 1, 0, 0]:
        for e in experts:
            update_expert(e, history, m)
        history.append({"u_move": m, "ai_move": 1, "outcome": resolve_outcome(m, 1)})
    before = [expert_to_dict(e) for e in experts]
    for e in experts:
        predict_expert(e, history)
    assert [expert_to_dict(e) for e in experts] == before


def test_recency_decays_before_counting():
    e = RecencyExpert(gamma=0.5, alpha=1.0)
    train(e, [0, 0, 1])
    assert np.allclose(e.counts, [0.75, 1.0, 0.0])


def test_periodic_detects_cycle():
    e = PeriodicExpert()
    h = train(e, [0, 1, 2] * 4)
    p = predict_expert(e, h)
    assert argmax_move(p) == 0
    assert p[0] > 0.85
    assert np.allclose(predict_expert(e, h[:2]), np.ones(3) / 3.0)


def test_frequency_ignores_moves_outside_window():
    e = FrequencyExpert(window=3, alpha=1.0)
    h = train(e, [0] * 10 + [1, 1, 1])
    p = predict_expert(e, h)
    assert argmax_move(p) == 1
    assert p[0] == pytest.approx(1.0 / 6.0)
    assert p[1] == pytest.approx(4.0 / 6.0)


def test_outcome_learns_repeat_after_win():
    e = OutcomeExpert(alpha=1.0)
    # rock against scissors: the player wins every round and keeps rock
    h = train(e, [0, 0, 0, 0], ai_move=2)
    assert h[-1]["outcome"] == "win"
    assert e.by_outcome["win"][0] == pytest.approx(3.0)
    assert e.by_outcome["lose"].sum() == 0.0
    p = predict_expert(e, h)
    assert argmax_move(p) == 0
    assert p[0] == pytest.approx(4.0 / 6.0)


def test_win_stay_lose_shift_tables():
    stay = WinStayLoseShiftExpert(alpha=1.0)
    h = train(stay, [0, 0, 0], ai_move=2)
    assert stay.table["win|rock"][0] == pytest.approx(2.0)
    assert argmax_move(predict_expert(stay, h)) == 0

    shift = WinStayLoseShiftExpert(alpha=1.0)
    lost = [{"u_move": 0, "ai_move": 1, "outcome": "lose"}]
    for _ in range(2):
        update_expert(shift, lost, 1)
    assert set(shift.table) == {"lose|rock"}
    assert argmax_move(predict_expert(shift, lost)) == 1
    # a context never seen stays uniform
    won = [{"u_move": 0, "ai_move": 2, "outcome": "win"}]
    assert np.allclose(predict_expert(shift, won), np.ones(3) / 3.0)


def test_bait_response_learns_reply_to_ai_move():
    e = BaitResponseExpert()
    history = [{"u_move": 0, "ai_move": 2, "outcome": "win"}]
    for _ in range(3):
        update_expert(e, history, 1)
    assert argmax_move(predict_expert(e, history)) == 1


def test_serialized_expert_predicts_the_same():
    e = MarkovExpert(order=1, alpha=0.5)
    h = train(e, [0, 1, 1, 2, 0, 1])
    restored = expert_from_dict(expert_to_dict(e))
    assert np.allclose(predict_expert(restored, h), predict_expert(e, h))


def test_bad_expert_records_raise():
    with pytest.raises(MalformedStateError):
        expert_from_dict({"type": "Nope"})
    with pytest.raises(MalformedStateError):
        expert_from_dict({"type": "MarkovExpert"})
    with pytest.raises(MalformedStateError):
        expert_from_dict({"type": "RecencyExpert", "gamma": 0.8, "counts": {"rock": -1}})


@pytest.mark.parametrize(
    "record",
    [
        {"type": "PeriodicExpert", "maxPeriod": 5, "minPeriod": 0, "window": 18, "confident": 0.65},
        {"type": "PeriodicExpert", "maxPeriod": 2, "minPeriod": 4, "window": 18, "confident": 0.65},
        {"type": "PeriodicExpert", "maxPeriod": 5, "minPeriod": 2, "window": 0, "confident": 0.65},
        {"type": "FrequencyExpert", "window": 0, "alpha": 1.0},
        {"type": "MarkovExpert", "order": 0, "alpha": 1.0},
        {"type": "RecencyExpert", "gamma": 0.0, "alpha": 1.0},
        {"type": "RecencyExpert", "gamma": 0.8, "alpha": 0.0},
        {"type": "OutcomeExpert", "alpha": float("nan")},
    ],
)
def test_out_of_range_expert_parameters_raise(record):
    with pytest.raises(MalformedStateError):
        expert_from_dict(record)
