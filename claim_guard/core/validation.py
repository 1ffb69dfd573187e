"""
Fraud and consistency validation of analysis results.

Each rule is an independent function registered with :func:`register_rule`.
Rules never short-circuit each other: every rule runs, in registration
order, and their findings accumulate into one ValidationResult.

The validator only annotates. It never blocks a claim; acting on
``requires_manual_review`` is a downstream decision.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

from .analysis import AnalysisResult

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERNS = (
    "ABC123",
    "ABC-123",
    "XYZ789",
    "XYZ-789",
    "1HGBH41JXMN109186",
    "[PLATE",
    "[VIN",
    "[MAKE",
)

ALLOWED_DAMAGE_TYPES = ("collision", "comprehensive", "weather", "vandalism", "unknown")

MANUAL_REVIEW_BANNER = "MANUAL REVIEW REQUIRED"


@dataclass(frozen=True)
class ValidationThresholds:
    """Business constants used by the validation rules."""
    low_confidence: float = 0.6
    verification_confidence: float = 0.70
    min_identity_fields: int = 2
    high_risk_repair_cost: float = 100_000
    inconsistent_cost_floor: float = 0
    high_confidence_denial: float = 0.8
    placeholder_patterns: Tuple[str, ...] = PLACEHOLDER_PATTERNS
    allowed_damage_types: Tuple[str, ...] = ALLOWED_DAMAGE_TYPES

    def __post_init__(self):
        """Validate thresholds are in range."""
        for name in ("low_confidence", "verification_confidence", "high_confidence_denial"):
            value = getattr(self, name)
            if not 0 <= value <= 1:
                raise ValueError(f"{name} must be between 0 and 1")
        if self.min_identity_fields < 0:
            raise ValueError("min_identity_fields cannot be negative")
        if self.high_risk_repair_cost <= 0:
            raise ValueError("high_risk_repair_cost must be > 0")
        if self.inconsistent_cost_floor < 0:
            raise ValueError("inconsistent_cost_floor cannot be negative")


DEFAULT_THRESHOLDS = ValidationThresholds()


@dataclass(frozen=True)
class RuleFinding:
    """Output of a single rule that fired."""
    code: str
    warnings: Tuple[str, ...]
    requires_manual_review: bool


@dataclass(frozen=True)
class ValidationResult:
    """Accumulated findings for one analysis."""
    warnings: Tuple[str, ...] = ()
    requires_manual_review: bool = False
    flagged_reasons: Tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.warnings and not self.requires_manual_review


Rule = Callable[[AnalysisResult, ValidationThresholds], Optional[RuleFinding]]

_RULES: List[Rule] = []


def register_rule(func: Rule) -> Rule:
    """Decorator to add a rule to the default rule set."""
    _RULES.append(func)
    return func


def registered_rules() -> Tuple[Rule, ...]:
    """Default rules in evaluation order."""
    return tuple(_RULES)


def validate(
    analysis: AnalysisResult,
    thresholds: Optional[ValidationThresholds] = None,
    rules: Optional[Sequence[Rule]] = None,
) -> ValidationResult:
    """Run every rule against ``analysis``.

    Args:
        analysis: Parsed analysis to inspect
        thresholds: Business constants (defaults to DEFAULT_THRESHOLDS)
        rules: Rules to apply (defaults to the registered rules)

    Returns:
        ValidationResult with warnings in rule order
    """
    thresholds = thresholds or DEFAULT_THRESHOLDS
    warnings: List[str] = []
    reasons: List[str] = []
    review = False

    for rule in registered_rules() if rules is None else rules:
        finding = rule(analysis, thresholds)
        if finding is None:
            continue
        warnings.extend(finding.warnings)
        reasons.append(finding.code)
        review = review or finding.requires_manual_review

    result = ValidationResult(
        warnings=tuple(warnings),
        requires_manual_review=review,
        flagged_reasons=tuple(reasons),
    )
    if reasons:
        logger.warning(
            "Validation flagged %s (manual review: %s)",
            ", ".join(reasons),
            review,
        )
    return result


def format_validation_warnings(result: ValidationResult) -> List[str]:
    """Warnings for display, led by a banner when review is required."""
    formatted = []
    if result.requires_manual_review:
        formatted.append(MANUAL_REVIEW_BANNER)
    formatted.extend(result.warnings)
    return formatted


def should_block_claim(result: ValidationResult) -> bool:
    """Claims are never auto-blocked; results only carry warnings."""
    return False


def _finding(code: str, warning: str, review: bool) -> RuleFinding:
    return RuleFinding(code=code, warnings=(warning,), requires_manual_review=review)


def _percent(value: float) -> str:
    return f"{value * 100:.0f}%"


def _money(value: float) -> str:
    return f"${value:,.0f}"


@register_rule
def low_confidence(analysis, thresholds):
    if analysis.confidence is None or analysis.confidence >= thresholds.low_confidence:
        return None
    return _finding(
        "low_confidence",
        f"Low confidence score: {_percent(analysis.confidence)}",
        True,
    )


@register_rule
def no_damage_detected(analysis, thresholds):
    if analysis.damaged_parts:
        return None
    return _finding(
        "no_damage_detected",
        "No damaged parts identified. This may indicate the vehicle has no "
        "visible damage or the analysis failed.",
        False,
    )


@register_rule
def severity_mismatch(analysis, thresholds):
    has_severe = any(part.severity == "severe" for part in analysis.damaged_parts)
    if not has_severe or analysis.overall_severity != "minor":
        return None
    return _finding(
        "severity_mismatch",
        "Inconsistency: Severe damage to individual parts but overall severity is minor.",
        True,
    )


@register_rule
def placeholder_hallucination(analysis, thresholds):
    verification = analysis.vehicle_verification
    if verification is None:
        return None

    fields = (
        (verification.video_vehicle.license_plate, "video license plate"),
        (verification.video_vehicle.vin, "video VIN"),
        (verification.policy_vehicle.license_plate, "policy license plate"),
        (verification.policy_vehicle.vin, "policy VIN"),
    )
    warnings = []
    for value, label in fields:
        if not isinstance(value, str):
            continue
        upper = value.upper()
        if any(pattern.upper() in upper for pattern in thresholds.placeholder_patterns):
            warnings.append(
                f'Suspicious {label}: "{value}" matches example pattern. '
                "This may be hallucinated data. Manual review required."
            )

    if not warnings:
        return None
    return RuleFinding(
        code="placeholder_hallucination",
        warnings=tuple(warnings),
        requires_manual_review=True,
    )


@register_rule
def high_repair_cost(analysis, thresholds):
    cost = analysis.estimated_total_repair_cost
    if cost is None or cost <= thresholds.high_risk_repair_cost:
        return None
    return _finding(
        "high_repair_cost",
        f"High repair cost: {_money(cost)}. Exceeds threshold of "
        f"{_money(thresholds.high_risk_repair_cost)}.",
        True,
    )


@register_rule
def vehicle_mismatch(analysis, thresholds):
    verification = analysis.vehicle_verification
    if verification is None or verification.verification_status != "mismatched":
        return None
    return _finding(
        "vehicle_mismatch",
        "Vehicle mismatch detected between video/images and policy. Possible fraud attempt.",
        True,
    )


@register_rule
def insufficient_vehicle_data(analysis, thresholds):
    verification = analysis.vehicle_verification
    if verification is None or verification.verification_status != "insufficient_data":
        return None
    return _finding(
        "insufficient_vehicle_data",
        "Insufficient vehicle details to verify identity. License plate or VIN not visible.",
        False,
    )


@register_rule
def low_verification_confidence(analysis, thresholds):
    verification = analysis.vehicle_verification
    if verification is None or verification.verification_status != "matched":
        return None
    score = verification.confidence_score or 0.0
    if score >= thresholds.verification_confidence:
        return None
    return _finding(
        "low_verification_confidence",
        f'Vehicle marked as "matched" but verification confidence is only '
        f"{_percent(score)}. Requires manual review to confirm vehicle identity.",
        True,
    )


@register_rule
def missing_mismatch_details(analysis, thresholds):
    verification = analysis.vehicle_verification
    if verification is None or verification.verification_status != "mismatched":
        return None
    if verification.mismatches:
        return None
    return _finding(
        "missing_mismatch_details",
        'Verification status is "mismatched" but no specific mismatches were '
        "listed. Analysis may be incomplete.",
        True,
    )


@register_rule
def insufficient_match_criteria(analysis, thresholds):
    verification = analysis.vehicle_verification
    if verification is None or verification.verification_status != "matched":
        return None
    present = sum(
        1 for value in verification.video_vehicle.identity_fields() if value is not None
    )
    if present >= thresholds.min_identity_fields:
        return None
    return _finding(
        "insufficient_match_criteria",
        f'Vehicle marked as "matched" but only {present} identification field(s) '
        "visible in video/images. Insufficient data for confident match - "
        "requires manual verification.",
        True,
    )


@register_rule
def invalid_damage_type(analysis, thresholds):
    if not analysis.damage_type or analysis.damage_type in thresholds.allowed_damage_types:
        return None
    return _finding(
        "invalid_damage_type",
        f'Invalid damage_type value "{analysis.damage_type}". Will be normalized '
        "to a valid enum value during claim creation.",
        False,
    )


@register_rule
def payout_exceeds_coverage(analysis, thresholds):
    if analysis.claim_assessment is None or analysis.policy_analysis is None:
        return None
    payout = analysis.claim_assessment.financial_breakdown.estimated_payout
    limits = analysis.policy_analysis.coverage_limits
    if payout is None or not limits:
        return None
    max_coverage = max(limits.values())
    if payout <= max_coverage:
        return None
    return _finding(
        "payout_exceeds_coverage",
        f"Estimated payout ({_money(payout)}) exceeds maximum coverage limit "
        f"({_money(max_coverage)}).",
        True,
    )


@register_rule
def inconsistent_cost(analysis, thresholds):
    cost = analysis.estimated_total_repair_cost
    if analysis.damaged_parts or cost is None or cost <= thresholds.inconsistent_cost_floor:
        return None
    return _finding(
        "inconsistent_cost",
        f"No damaged parts listed but repair cost is {_money(cost)}. This is inconsistent.",
        True,
    )


@register_rule
def ai_flagged_investigation(analysis, thresholds):
    status = analysis.claim_assessment.status if analysis.claim_assessment else None
    if not analysis.investigation_needed and status != "needs_investigation":
        return None
    return _finding(
        "ai_flagged_investigation",
        "Analysis flagged for investigation by AI model.",
        True,
    )


@register_rule
def high_confidence_denial(analysis, thresholds):
    status = analysis.claim_assessment.status if analysis.claim_assessment else None
    if status != "denied" or analysis.confidence is None:
        return None
    if analysis.confidence <= thresholds.high_confidence_denial:
        return None
    return _finding(
        "high_confidence_denial",
        "Claim denied by AI with high confidence. Verify denial reasons are valid.",
        False,
    )
