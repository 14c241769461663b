import pytest

from protocol_rec.feedback import ProtocolPerformanceMetrics
from protocol_rec.satisfaction import blend_with_satisfaction, predict_satisfaction


def _metrics(avg_rating):
    return ProtocolPerformanceMetrics("p", avg_rating, 0.9, 8.0, 10)


def test_baseline_without_history():
    prediction = predict_satisfaction(None)
    assert prediction.predicted_rating == pytest.approx(3.5)
    assert prediction.confidence == pytest.approx(0.3)
    assert prediction.factors == ()


def test_history_and_factors():
    prediction = predict_satisfaction(_metrics(4.7), {"high-completion": 1.15, "neutral": 1.0})

    expected = (4.7 * 0.6 + 3.5 * 0.4) * 1.15
    assert prediction.predicted_rating == pytest.approx(min(5.0, expected))
    assert prediction.confidence == pytest.approx(0.6)
    assert prediction.factors == (
        "Historical performance: 4.7/5",
        "User preference: high-completion",
    )


def test_prediction_is_clamped_to_rating_scale():
    prediction = predict_satisfaction(_metrics(5.0), {"a": 1.3, "b": 1.3})
    assert prediction.predicted_rating == 5.0
    assert predict_satisfaction(_metrics(1.0), {}).predicted_rating >= 1.0


def test_blend_with_satisfaction():
    prediction = predict_satisfaction(None)
    assert blend_with_satisfaction(0.5, prediction) == pytest.approx(0.5 * 0.7 + 0.7 * 0.3)
