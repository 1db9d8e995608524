"""Security score aggregation."""
import itertools

import pytest

from accessgate.schemas.ledger import SecurityFactorSet
from accessgate.services import security_score

FACTORS = ("valid_credentials", "trusted_device", "recognized_location", "additional_verification")


@pytest.mark.parametrize("flags", list(itertools.product([False, True], repeat=4)))
def test_score_is_25_per_factor(flags):
    factors = SecurityFactorSet(**dict(zip(FACTORS, flags)))
    result = security_score.score(factors)

    assert result.score == 25 * sum(flags)
    assert result.max_score == 100
    if all(flags):
        assert result.recommendations == [security_score.OPTIMAL_MESSAGE]
    else:
        assert len(result.recommendations) == flags.count(False)


@pytest.mark.parametrize(
    "score,tier",
    [(100, "low"), (75, "low"), (50, "medium"), (25, "high"), (0, "critical")],
)
def test_tiers(score, tier):
    assert security_score.risk_tier(score) == tier


def test_recommendations_follow_fixed_order():
    result = security_score.score(SecurityFactorSet())

    assert result.tier == "critical"
    assert result.recommendations == [
        "Complete email and password verification",
        "Verify your device for enhanced security",
        "Enable location verification for your account",
        "Set up security questions or enable OTP verification",
    ]


def test_only_missing_factors_are_recommended():
    result = security_score.score(
        SecurityFactorSet(valid_credentials=True, recognized_location=True)
    )

    assert result.score == 50
    assert result.tier == "medium"
    assert result.recommendations == [
        "Verify your device for enhanced security",
        "Set up security questions or enable OTP verification",
    ]
