"""Confidence estimation for learning records."""

from __future__ import annotations

SAMPLE_PRIOR = 5
IMPACT_BOOST_THRESHOLD = 0.1
IMPACT_BOOST = 1.1


def sample_size_factor(total: int) -> float:
    """Credibility weight for ``total`` observations.

    Approaches 1 as evidence accumulates: 0.833 at 1 sample, 0.9 at 5,
    0.95 at 15, 0.98 at 45.
    """
    return 1 - 1 / (total + SAMPLE_PRIOR)


def confidence_score(total: int, successes: int, avg_impact: float) -> float:
    """Sample-size corrected success rate in [0, 1], boosted 10% for positive impact."""
    if total == 0:
        return 0.0

    confidence = (successes / total) * sample_size_factor(total)

    # Impact is variance reduction, so higher is better
    if avg_impact > IMPACT_BOOST_THRESHOLD:
        confidence = min(1.0, confidence * IMPACT_BOOST)

    return max(0.0, min(1.0, confidence))
