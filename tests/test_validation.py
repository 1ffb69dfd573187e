"""
Unit tests for the fraud and consistency validator.

Tests each rule in isolation plus the documented end-to-end scenarios.
"""

import pytest

from claim_guard.core.analysis import (
    AnalysisResult,
    ClaimAssessment,
    DamagedPart,
    FinancialBreakdown,
    PolicyAnalysis,
    VehicleDetails,
    VehicleVerification,
)
from claim_guard.core.validation import (
    MANUAL_REVIEW_BANNER,
    RuleFinding,
    ValidationResult,
    ValidationThresholds,
    format_validation_warnings,
    registered_rules,
    should_block_claim,
    validate,
)

SEVERE_PART = DamagedPart(part="hood", severity="severe")
MINOR_PART = DamagedPart(part="mirror", severity="minor")

SOLID_VEHICLE = VehicleDetails(license_plate="7KQM512", vin="2T1BURHE0JC034567", make="Toyota",
                               model="Corolla")


def _analysis(**overrides) -> AnalysisResult:
    values = dict(
        damaged_parts=(MINOR_PART,),
        overall_severity="minor",
        confidence=0.9,
    )
    values.update(overrides)
    return AnalysisResult(**values)


def _verified(status="matched", video=SOLID_VEHICLE, policy=SOLID_VEHICLE,
              mismatches=(), confidence_score=0.95) -> VehicleVerification:
    return VehicleVerification(
        video_vehicle=video,
        policy_vehicle=policy,
        verification_status=status,
        mismatches=mismatches,
        confidence_score=confidence_score,
    )


class TestScenarios:
    """End-to-end validator scenarios."""

    def test_clean_severe_analysis_is_valid(self):
        """Consistent severe damage with high confidence has no warnings."""
        result = validate(_analysis(
            damaged_parts=(SEVERE_PART,),
            overall_severity="severe",
            confidence=0.95,
        ))

        assert result.is_valid
        assert result.warnings == ()
        assert not result.requires_manual_review

    def test_low_confidence_and_no_damage(self):
        """Two independent warnings fire and review is required."""
        result = validate(_analysis(damaged_parts=(), confidence=0.50))

        assert result.flagged_reasons == ("low_confidence", "no_damage_detected")
        assert len(result.warnings) == 2
        assert result.warnings[0] == "Low confidence score: 50%"
        assert result.requires_manual_review
        assert not result.is_valid

    def test_matched_with_only_make(self):
        """A match on one identity field is not trusted."""
        result = validate(_analysis(vehicle_verification=_verified(
            video=VehicleDetails(make="Honda"),
            policy=VehicleDetails(make="Honda"),
        )))

        assert "insufficient_match_criteria" in result.flagged_reasons
        assert result.requires_manual_review

    def test_payout_exceeds_coverage(self):
        """Payout above the largest coverage limit needs review."""
        result = validate(_analysis(
            policy_analysis=PolicyAnalysis(coverage_limits={"collision": 50000}),
            claim_assessment=ClaimAssessment(
                status="approved",
                financial_breakdown=FinancialBreakdown(estimated_payout=60000),
            ),
        ))

        assert "payout_exceeds_coverage" in result.flagged_reasons
        assert result.requires_manual_review
        assert any("$60,000" in w and "$50,000" in w for w in result.warnings)

    def test_validate_is_idempotent(self):
        """Validating the same analysis twice gives identical results."""
        analysis = _analysis(
            damaged_parts=(),
            confidence=0.4,
            estimated_total_repair_cost=5000,
            vehicle_verification=_verified(status="mismatched"),
        )
        assert validate(analysis) == validate(analysis)


class TestIndividualRules:
    """Test each rule fires on its own trigger."""

    def test_severity_mismatch(self):
        """Severe part with minor overall severity is inconsistent."""
        result = validate(_analysis(damaged_parts=(SEVERE_PART,), overall_severity="minor"))
        assert result.flagged_reasons == ("severity_mismatch",)
        assert result.requires_manual_review

    def test_placeholder_one_warning_per_field(self):
        """Each placeholder field gets its own warning."""
        result = validate(_analysis(vehicle_verification=_verified(
            video=VehicleDetails(license_plate="abc-123", vin="1HGBH41JXMN109186",
                                 make="Honda", model="Civic"),
            policy=VehicleDetails(license_plate="[PLATE NUMBER]"),
        )))

        assert result.flagged_reasons == ("placeholder_hallucination",)
        assert len(result.warnings) == 3
        assert result.warnings[0].startswith('Suspicious video license plate: "abc-123"')
        assert "video VIN" in result.warnings[1]
        assert "policy license plate" in result.warnings[2]

    def test_high_repair_cost(self):
        """Repair cost above the high-risk threshold needs review."""
        result = validate(_analysis(estimated_total_repair_cost=150000))
        assert "high_repair_cost" in result.flagged_reasons
        assert result.requires_manual_review

    def test_repair_cost_at_threshold_not_flagged(self):
        """Exactly the threshold is allowed."""
        result = validate(_analysis(estimated_total_repair_cost=100000))
        assert "high_repair_cost" not in result.flagged_reasons

    def test_vehicle_mismatch_without_details(self):
        """Mismatch is flagged and missing details are flagged separately."""
        result = validate(_analysis(vehicle_verification=_verified(status="mismatched")))
        assert result.flagged_reasons == ("vehicle_mismatch", "missing_mismatch_details")

    def test_vehicle_mismatch_with_details(self):
        """Listed mismatches satisfy the details rule."""
        result = validate(_analysis(vehicle_verification=_verified(
            status="mismatched",
            mismatches=("color differs",),
        )))
        assert result.flagged_reasons == ("vehicle_mismatch",)

    def test_insufficient_vehicle_data_is_informational(self):
        """Insufficient data warns without forcing review."""
        result = validate(_analysis(vehicle_verification=_verified(status="insufficient_data")))

        assert result.flagged_reasons == ("insufficient_vehicle_data",)
        assert not result.requires_manual_review
        assert not result.is_valid

    def test_low_verification_confidence(self):
        """A match below the verification threshold needs review."""
        result = validate(_analysis(vehicle_verification=_verified(confidence_score=0.65)))
        assert result.flagged_reasons == ("low_verification_confidence",)

    def test_missing_verification_confidence_counts_as_zero(self):
        """A match without a confidence score is treated as zero."""
        result = validate(_analysis(vehicle_verification=_verified(confidence_score=None)))
        assert "only 0%" in result.warnings[0]

    def test_invalid_damage_type(self):
        """Unknown damage types are informational."""
        result = validate(_analysis(damage_type="hail"))

        assert result.flagged_reasons == ("invalid_damage_type",)
        assert not result.requires_manual_review

    def test_inconsistent_cost(self):
        """Nonzero cost with no damaged parts needs review."""
        result = validate(_analysis(damaged_parts=(), estimated_total_repair_cost=250))
        assert result.flagged_reasons == ("no_damage_detected", "inconsistent_cost")
        assert result.requires_manual_review

    def test_zero_cost_without_parts_is_consistent(self):
        """Zero cost with no parts is not inconsistent."""
        result = validate(_analysis(damaged_parts=(), estimated_total_repair_cost=0))
        assert "inconsistent_cost" not in result.flagged_reasons

    @pytest.mark.parametrize("analysis", [
        _analysis(investigation_needed=True),
        _analysis(claim_assessment=ClaimAssessment(status="needs_investigation")),
    ])
    def test_ai_flagged_investigation(self, analysis):
        """Either investigation signal is surfaced."""
        result = validate(analysis)
        assert result.flagged_reasons == ("ai_flagged_investigation",)
        assert result.requires_manual_review

    def test_high_confidence_denial(self):
        """Confident denials are informational."""
        result = validate(_analysis(
            confidence=0.9,
            claim_assessment=ClaimAssessment(status="denied"),
        ))

        assert result.flagged_reasons == ("high_confidence_denial",)
        assert not result.requires_manual_review


class TestRegistry:
    """Test rule registration and custom thresholds."""

    def test_rules_run_in_order(self):
        """All fifteen rules are registered in evaluation order."""
        names = [rule.__name__ for rule in registered_rules()]
        assert names[0] == "low_confidence"
        assert names[-1] == "high_confidence_denial"
        assert len(names) == 15

    def test_custom_rules(self):
        """Callers can run their own rule set."""
        def always(analysis, thresholds):
            return RuleFinding(code="custom", warnings=("custom warning",),
                               requires_manual_review=False)

        result = validate(_analysis(), rules=[always])
        assert result.flagged_reasons == ("custom",)
        assert result.warnings == ("custom warning",)

    def test_custom_thresholds(self):
        """Thresholds change rule outcomes."""
        analysis = _analysis(confidence=0.65)
        assert validate(analysis).is_valid
        strict = ValidationThresholds(low_confidence=0.7)
        assert validate(analysis, strict).flagged_reasons == ("low_confidence",)

    def test_threshold_validation(self):
        """Confidence thresholds must be fractions."""
        with pytest.raises(ValueError, match="low_confidence"):
            ValidationThresholds(low_confidence=60)


class TestHelpers:
    """Test formatting and blocking helpers."""

    def test_format_with_review(self):
        """Review banner leads the warnings."""
        result = ValidationResult(warnings=("a", "b"), requires_manual_review=True)
        assert format_validation_warnings(result) == [MANUAL_REVIEW_BANNER, "a", "b"]

    def test_format_without_review(self):
        """No banner without review."""
        result = ValidationResult(warnings=("a",))
        assert format_validation_warnings(result) == ["a"]

    def test_never_blocks(self):
        """Claims are never auto-blocked."""
        result = validate(_analysis(damaged_parts=(), confidence=0.1, investigation_needed=True))
        assert result.requires_manual_review
        assert should_block_claim(result) is False
