import pytest

from conftest import make_feedback
from protocol_rec.model_weights import (
    ModelWeights,
    adapt_weights,
    clamp_weight,
)


def test_weights_are_clamped_into_bounds():
    weights = ModelWeights(collaborative=0.9, content=0.0, domain_specific="oops", progress=0.15)

    assert weights.collaborative == 0.4
    assert weights.content == 0.1
    assert weights.domain_specific == 0.4  # invalid falls back to default
    assert weights.progress == 0.15
    assert clamp_weight("progress", 1.0) == 0.2


def test_from_dict_normalizes_types():
    weights = ModelWeights.from_dict({
        "content": "0.35",
        "personalized_adjustments": {"u1": {"high-completion": "1.15"}},
        "metadata": {"source": "test"},
    })

    assert weights.content == pytest.approx(0.35)
    assert weights.collaborative == pytest.approx(0.2)
    assert weights.personalized_adjustments["u1"]["high-completion"] == pytest.approx(1.15)
    assert weights.metadata["source"] == "test"


def test_adaptation_needs_enough_feedback():
    current = ModelWeights(content=0.25)
    entries = [make_feedback(rating=5, effectiveness=9)] * 49
    assert adapt_weights(entries, current) is current


def test_adaptation_without_successes_keeps_weights():
    current = ModelWeights(content=0.25)
    entries = [make_feedback(rating=2, effectiveness=3)] * 60
    assert adapt_weights(entries, current) is current


def test_adaptation_converges_to_priors_and_stays_bounded():
    current = ModelWeights(collaborative=0.4, content=0.1, domain_specific=0.6, progress=0.05)
    entries = [make_feedback(rating=5, effectiveness=8)] * 50

    adapted = adapt_weights(entries, current)

    assert adapted.as_dict() == pytest.approx(
        {"collaborative": 0.2, "content": 0.3, "domain_specific": 0.4, "progress": 0.1}
    )
    assert adapted.metadata["successes"] == 50
    # The original is untouched
    assert current.collaborative == 0.4


def test_adaptation_only_reads_recent_window(monkeypatch):
    from protocol_rec import model_weights

    monkeypatch.setattr(model_weights, "ADAPT_WINDOW", 10)
    entries = [make_feedback(rating=5, effectiveness=9)] * 60

    adapted = adapt_weights(entries, ModelWeights())
    assert adapted.metadata["adapted_from"] == 10
