import pytest

from prediction_engine import EnsembleConfig, GameConstants, combine_predictions, model_base_weights

H, L = GameConstants.HIGH, GameConstants.LOW


def vote(prediction, reason="r"):
    return {'prediction': prediction, 'source': 'test', 'reason': reason}


def quiet(streak=1, chance=0.0, switches=0):
    return {'streak': streak, 'current_label': H, 'break_probability': chance,
            'switches': switches, 'imbalance': 0.0}


def test_tie_resolves_to_high_every_time():
    votes = {'trend': vote(H), 'rule_based': vote(L)}
    results = [combine_predictions(votes, {}, quiet()) for _ in range(5)]
    assert all(r['label'] == EnsembleConfig.TIE_LABEL == H for r in results)
    assert results[0]['high_score'] == results[0]['low_score']
    assert results[0]['confidence'] == 50.0


def test_no_votes_gives_zero_confidence():
    result = combine_predictions({}, {}, quiet())
    assert result['label'] == H
    assert result['confidence'] == 0.0


def test_multipliers_scale_weights():
    votes = {'trend': vote(H), 'rule_based': vote(L)}
    result = combine_predictions(votes, {'trend': 2.0}, quiet())
    assert result['label'] == H
    assert result['confidence'] == pytest.approx(66.67)


def test_noisy_window_damps_both_scores():
    votes = {'trend': vote(H), 'markov': vote(L)}
    result = combine_predictions(votes, {}, quiet(switches=6))
    assert result['noisy'] is True
    assert result['high_score'] == pytest.approx(0.5)
    assert result['low_score'] == pytest.approx(0.35)
    assert result['confidence'] == pytest.approx(58.82)


def test_bridge_boost_on_streak():
    votes = {'trend': vote(H), 'bridge_break': vote(L)}
    result = combine_predictions(votes, {}, quiet(streak=3))
    assert result['low_score'] == pytest.approx(1.5 + 0.3)
    assert result['label'] == L


def test_strong_bridge_boost_on_break_probability():
    votes = {'bridge_break': vote(L)}
    result = combine_predictions(votes, {}, quiet(streak=4, chance=0.7))
    assert result['low_score'] == pytest.approx(1.5 + 0.4)


def test_triple_votes_are_ignored():
    votes = {'trend': vote(GameConstants.TRIPLE), 'markov': vote(L)}
    result = combine_predictions(votes, {}, quiet())
    assert result['high_score'] == 0.0
    assert result['label'] == L
    assert result['confidence'] == 100.0


def test_streak_shifts_base_weights():
    assert model_base_weights(1)['short_pattern'] == 0.8
    assert model_base_weights(2)['short_pattern'] == 1.2
    assert model_base_weights(2)['bridge_break'] == 1.0
    assert model_base_weights(3)['bridge_break'] == 1.5


def test_rationale_joins_rule_and_bridge_reasons():
    votes = {'rule_based': vote(H, "Zigzag"), 'bridge_break': vote(H, "Long bridge")}
    result = combine_predictions(votes, {}, quiet())
    assert result['rationale'] == "[AI] Zigzag | [Bridge] Long bridge"
