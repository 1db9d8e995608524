"""
Security score aggregation: the single source of truth for the 0–100 score
and its risk tier, used by signup, login, and the security dashboard alike.
"""
from accessgate.schemas.ledger import SecurityFactorSet
from accessgate.schemas.security import SecurityAssessment

POINTS_PER_FACTOR = 25

TIER_LOW = 75
TIER_MEDIUM = 50
TIER_HIGH = 25

# Fixed order: credentials, device, location, additional verification
_RECOMMENDATIONS = (
    ("valid_credentials", "Complete email and password verification"),
    ("trusted_device", "Verify your device for enhanced security"),
    ("recognized_location", "Enable location verification for your account"),
    ("additional_verification", "Set up security questions or enable OTP verification"),
)

OPTIMAL_MESSAGE = "Your account security is optimal!"


def risk_tier(score: int) -> str:
    if score >= TIER_LOW:
        return "low"
    if score >= TIER_MEDIUM:
        return "medium"
    if score >= TIER_HIGH:
        return "high"
    return "critical"


def score(factors: SecurityFactorSet) -> SecurityAssessment:
    total = 0
    recommendations = []
    for name, recommendation in _RECOMMENDATIONS:
        if getattr(factors, name):
            total += POINTS_PER_FACTOR
        else:
            recommendations.append(recommendation)

    if not recommendations:
        recommendations.append(OPTIMAL_MESSAGE)

    return SecurityAssessment(score=total, tier=risk_tier(total), recommendations=recommendations)
