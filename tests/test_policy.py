import random

import numpy as np

from rpslab.policy import (
    DecisionPolicySelector,
    confidence_bucket,
    counter_from_dist,
    detect_pattern_next,
    heuristic_counter,
    markov_next,
    predict_next,
)


def test_zero_rounds_is_heuristic():
    assert DecisionPolicySelector().observe(0) == "heuristic"
    assert DecisionPolicySelector().observe(0, confidence=0.99) == "heuristic"


def test_promotion_rules():
    s = DecisionPolicySelector()
    assert s.observe(14, confidence=0.3) == "heuristic"
    assert s.observe(15) == "mixer"

    s = DecisionPolicySelector()
    assert s.observe(4, confidence=0.9) == "heuristic"
    assert s.observe(5, confidence=0.5) == "heuristic"
    assert s.observe(5, confidence=0.6) == "mixer"


def test_promotion_is_one_way():
    s = DecisionPolicySelector(min_rounds=3)
    s.observe(3)
    assert s.observe(0, confidence=0.0) == "mixer"


def test_markov_next():
    assert markov_next([0, 1, 0, 1, 0]) == (1, 1.0)
    assert markov_next([0]) == (None, 0.0)
    # last move never seen as a source
    assert markov_next([0, 1]) == (None, 0.0)


def test_detect_pattern_next():
    assert detect_pattern_next([1, 2, 2, 2]) == 2
    assert detect_pattern_next([0, 1, 2, 0, 1, 2]) == 0
    assert detect_pattern_next([2, 1, 2, 1]) == 2
    assert detect_pattern_next([0, 1, 2]) is None


def test_predict_next():
    rng = random.Random(0)
    assert predict_next([], rng) == (None, 0.0, "no moves yet")
    move, conf, reason = predict_next([0, 0, 0], rng)
    assert move == 0
    assert conf == 1.0
    assert reason
    move, conf, _ = predict_next([2, 1, 2], rng)
    assert move == 1
    assert conf == 0.65


def test_counter_from_dist():
    rng = random.Random(0)
    dist = np.array([0.1, 0.8, 0.1])
    assert all(counter_from_dist(dist, "ruthless", rng) == 2 for _ in range(20))
    assert all(counter_from_dist(dist, "fair", rng) in (0, 1, 2) for _ in range(20))


def test_heuristic_counter():
    rng = random.Random(0)
    assert heuristic_counter(0, 0.9, "ruthless", rng) == 1
    seen = {heuristic_counter(0, 0.2, "ruthless", rng) for _ in range(60)}
    assert seen == {0, 1, 2}
    seen = {heuristic_counter(None, 0.0, "ruthless", rng) for _ in range(60)}
    assert seen == {0, 1, 2}


def test_confidence_bucket():
    assert confidence_bucket(0.1) == "low"
    assert confidence_bucket(0.4) == "medium"
    assert confidence_bucket(0.69) == "medium"
    assert confidence_bucket(0.7) == "high"
