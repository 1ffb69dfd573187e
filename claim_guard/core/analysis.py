"""
Structured damage analysis returned by the AI model.

Parses the model's camelCase JSON into read-only dataclasses and rejects
responses that were cut off or are not a JSON object.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import TruncatedResponseError

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


@dataclass(frozen=True)
class DamagedPart:
    """One damaged component of the vehicle."""
    part: str
    severity: str
    description: str = ""
    estimated_repair_cost: Optional[str] = None


@dataclass(frozen=True)
class VehicleDetails:
    """Identity fields extracted from footage or from the policy."""
    license_plate: Optional[str] = None
    vin: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    color: Optional[str] = None

    def identity_fields(self) -> Tuple[Optional[str], ...]:
        """Fields that corroborate a vehicle match."""
        return (self.license_plate, self.vin, self.make, self.model)


@dataclass(frozen=True)
class VehicleVerification:
    """Comparison of the filmed vehicle against the insured vehicle."""
    video_vehicle: VehicleDetails = field(default_factory=VehicleDetails)
    policy_vehicle: VehicleDetails = field(default_factory=VehicleDetails)
    verification_status: str = "insufficient_data"
    mismatches: Tuple[str, ...] = ()
    confidence_score: Optional[float] = None
    notes: str = ""


@dataclass(frozen=True)
class PolicyAnalysis:
    """Coverage details read from the policy document."""
    coverage_limits: Mapping[str, float] = field(default_factory=dict)
    coverage_types: Tuple[str, ...] = ()
    exclusions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FinancialBreakdown:
    total_repair_estimate: Optional[float] = None
    covered_amount: Optional[float] = None
    deductible: Optional[float] = None
    estimated_payout: Optional[float] = None


@dataclass(frozen=True)
class ClaimAssessment:
    status: Optional[str] = None
    financial_breakdown: FinancialBreakdown = field(default_factory=FinancialBreakdown)
    reasoning: str = ""


@dataclass(frozen=True)
class AnalysisResult:
    """Parsed damage analysis.

    The policy-aware sections (verification, policy, claim assessment) are
    None for damage-only analyses.
    """
    damaged_parts: Tuple[DamagedPart, ...] = ()
    overall_severity: Optional[str] = None
    confidence: Optional[float] = None
    estimated_total_repair_cost: Optional[float] = None
    damage_type: Optional[str] = None
    vehicle_verification: Optional[VehicleVerification] = None
    policy_analysis: Optional[PolicyAnalysis] = None
    claim_assessment: Optional[ClaimAssessment] = None
    investigation_needed: bool = False
    investigation_reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnalysisResult":
        """Build from the model's JSON object.

        Missing, null or wrongly typed sections become defaults; unknown keys
        are ignored.

        Raises:
            ValueError: If ``data`` is not a mapping
        """
        if not isinstance(data, Mapping):
            raise ValueError("analysis must be a JSON object")

        parts = tuple(
            DamagedPart(
                part=str(item.get("part", "")),
                severity=str(item.get("severity", "")),
                description=str(item.get("description") or ""),
                estimated_repair_cost=item.get("estimatedRepairCost"),
            )
            for item in _items(data.get("damagedParts"))
            if isinstance(item, Mapping)
        )

        verification = None
        raw_verification = data.get("vehicleVerification")
        if isinstance(raw_verification, Mapping):
            verification = VehicleVerification(
                video_vehicle=_vehicle(raw_verification.get("videoVehicle")),
                policy_vehicle=_vehicle(raw_verification.get("policyVehicle")),
                verification_status=str(
                    raw_verification.get("verificationStatus") or "insufficient_data"
                ),
                mismatches=tuple(str(m) for m in _items(raw_verification.get("mismatches"))),
                confidence_score=_number(raw_verification.get("confidenceScore")),
                notes=str(raw_verification.get("notes") or ""),
            )

        policy = None
        raw_policy = data.get("policyAnalysis")
        if isinstance(raw_policy, Mapping):
            policy = PolicyAnalysis(
                coverage_limits=_coverage_limits(raw_policy.get("coverageLimits")),
                coverage_types=tuple(str(c) for c in _items(raw_policy.get("coverageTypes"))),
                exclusions=tuple(str(e) for e in _items(raw_policy.get("exclusions"))),
            )

        assessment = None
        raw_assessment = data.get("claimAssessment")
        if isinstance(raw_assessment, Mapping):
            breakdown = raw_assessment.get("financialBreakdown") or {}
            if not isinstance(breakdown, Mapping):
                breakdown = {}
            assessment = ClaimAssessment(
                status=raw_assessment.get("status"),
                financial_breakdown=FinancialBreakdown(
                    total_repair_estimate=_number(breakdown.get("totalRepairEstimate")),
                    covered_amount=_number(breakdown.get("coveredAmount")),
                    deductible=_number(breakdown.get("deductible")),
                    estimated_payout=_number(breakdown.get("estimatedPayout")),
                ),
                reasoning=str(raw_assessment.get("reasoning") or ""),
            )

        return cls(
            damaged_parts=parts,
            overall_severity=data.get("overallSeverity"),
            confidence=_number(data.get("confidence")),
            estimated_total_repair_cost=_number(data.get("estimatedTotalRepairCost")),
            damage_type=data.get("damageType"),
            vehicle_verification=verification,
            policy_analysis=policy,
            claim_assessment=assessment,
            investigation_needed=bool(data.get("investigationNeeded")),
            investigation_reason=data.get("investigationReason"),
        )


def _vehicle(data: Any) -> VehicleDetails:
    if not isinstance(data, Mapping):
        return VehicleDetails()
    year = data.get("year")
    return VehicleDetails(
        license_plate=data.get("licensePlate"),
        vin=data.get("vin"),
        make=data.get("make"),
        model=data.get("model"),
        year=year if isinstance(year, int) and not isinstance(year, bool) else None,
        color=data.get("color"),
    )


def _items(value: Any) -> Tuple[Any, ...]:
    # Only JSON arrays count as lists; scalars and strings are dropped
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return ()


def _coverage_limits(data: Any) -> Dict[str, float]:
    if not isinstance(data, Mapping):
        return {}
    limits = {}
    for name, amount in data.items():
        value = _number(amount)
        if value is not None:
            limits[str(name)] = value
    return limits


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", "").replace("$", "").strip())
        except ValueError:
            return None
    return None


def strip_markdown_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` block, if any."""
    cleaned = text.strip()
    cleaned = _FENCE_OPEN.sub("", cleaned)
    cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip()


def parse_analysis_response(
    text: str,
    finish_reason: Optional[str] = None,
) -> AnalysisResult:
    """Parse raw model output into an AnalysisResult.

    Args:
        text: Raw response text
        finish_reason: Finish reason reported by the model, if any

    Returns:
        Parsed AnalysisResult

    Raises:
        TruncatedResponseError: If the output was cut off or is not a
            well-formed JSON object
    """
    cleaned = strip_markdown_fences(text or "")

    reason = finish_reason.upper() if finish_reason else None
    if reason in ("MAX_TOKENS", "LENGTH") or (reason is None and not cleaned.endswith("}")):
        logger.warning(
            "Analysis response truncated (finish reason: %s, %d chars)",
            finish_reason or "undefined",
            len(cleaned),
        )
        raise TruncatedResponseError(
            f"Analysis response was truncated (finish reason: {finish_reason or 'undefined'}).",
            finish_reason=finish_reason,
        )

    if not (cleaned.startswith("{") and cleaned.endswith("}")):
        raise TruncatedResponseError(
            "AI returned incomplete or malformed JSON response.",
            finish_reason=finish_reason,
        )

    try:
        data: Dict[str, Any] = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise TruncatedResponseError(
            f"AI returned incomplete or malformed JSON response: {exc.msg}",
            finish_reason=finish_reason,
        ) from exc

    try:
        return AnalysisResult.from_dict(data)
    except (TypeError, ValueError) as exc:
        raise TruncatedResponseError(
            f"AI returned a malformed analysis: {exc}",
            finish_reason=finish_reason,
        ) from exc
