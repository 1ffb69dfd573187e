"""
Guarded Gemini client.

Runs damage analyses through Gemini's OpenAI-compatible endpoint with
quota-aware model selection, fallback, validation and auditing.
"""

import base64
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from openai import OpenAI

from ..config.loader import Settings, get_ledger, load_settings
from ..core.analysis import AnalysisResult, parse_analysis_response
from ..core.audit import (
    FLAG_ANALYSIS_FAILED,
    FLAG_MANUAL_REVIEW,
    FLAG_RATE_LIMITED,
    AuditLogger,
    build_audit_entry,
)
from ..core.errors import ConfigError, ErrorClass
from ..core.fallback import FallbackOrchestrator, InvocationFailure
from ..core.quota import QuotaLedger
from ..core.selector import ModelSelector
from ..core.validation import ValidationResult, format_validation_warnings, validate
from ..storage.models import AuditAction, AuditResult, QuotaMetric

logger = logging.getLogger(__name__)

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
ENV_API_KEY = "GEMINI_API_KEY"

ACTION_TOKEN_ESTIMATES: Dict[AuditAction, int] = {
    AuditAction.ANALYZE_IMAGE: 3000,
    AuditAction.ANALYZE_VIDEO: 4000,
    AuditAction.ANALYZE_POLICY: 13000,
}


@dataclass(frozen=True)
class MediaFile:
    """A file sent alongside the prompt."""
    content: bytes
    mime_type: str

    def __post_init__(self):
        """Validate media values."""
        if not self.content:
            raise ValueError("content cannot be empty")
        if not self.mime_type:
            raise ValueError("mime_type is required")

    def data_url(self) -> str:
        # Codec suffixes such as "video/webm;codecs=vp9" are not accepted upstream
        mime = self.mime_type.split(";")[0].strip()
        encoded = base64.b64encode(self.content).decode("ascii")
        return f"data:{mime};base64,{encoded}"


@dataclass(frozen=True)
class AnalysisResponse:
    """Outcome of one guarded analysis.

    On success ``data`` holds the parsed analysis and ``warnings`` the
    formatted validation warnings. On failure ``error`` holds a message
    safe to show to end users.
    """
    success: bool
    data: Optional[AnalysisResult] = None
    validation: Optional[ValidationResult] = None
    warnings: Tuple[str, ...] = ()
    model_used: Optional[str] = None
    token_usage: Optional[int] = None
    error: Optional[str] = None
    retry_after: Optional[int] = None


class GuardedGeminiClient:
    """Gemini client that never exceeds the configured model budgets."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        ledger: Optional[QuotaLedger] = None,
        audit_logger: Optional[AuditLogger] = None,
        client: Optional[Any] = None,
        api_key: Optional[str] = None,
    ):
        """Initialize the guarded client.

        Args:
            settings: Runtime settings (defaults to :func:`load_settings`)
            ledger: Quota ledger (defaults to the process-wide one for settings)
            audit_logger: Audit logger (defaults to one built from settings)
            client: Pre-built OpenAI-compatible client
            api_key: Gemini API key (defaults to ``GEMINI_API_KEY``)

        Raises:
            ConfigError: If no client is given and no API key is configured
        """
        self.settings = settings or load_settings()
        if client is None:
            api_key = api_key or os.environ.get(ENV_API_KEY)
            if not api_key:
                raise ConfigError(f"{ENV_API_KEY} is not configured")
            client = OpenAI(api_key=api_key, base_url=GEMINI_OPENAI_BASE_URL)
        self.client = client

        self.ledger = ledger or get_ledger(self.settings)
        self.selector = ModelSelector(
            self.settings.tiers,
            self.ledger,
            forced_model=self.settings.forced_model,
            max_retry_after=self.settings.max_retry_after,
        )
        self.orchestrator = FallbackOrchestrator(self.selector)
        self.audit_logger = audit_logger or self.settings.build_audit_logger()

    def analyze(
        self,
        action: AuditAction,
        prompt: str,
        media: Sequence[MediaFile] = (),
        estimated_tokens: Optional[int] = None,
    ) -> AnalysisResponse:
        """Run one analysis with fallback across models.

        Args:
            action: Kind of analysis, used for auditing and token estimates
            prompt: Instruction text asking for the JSON analysis
            media: Files to analyze
            estimated_tokens: Override for the per-action token estimate

        Returns:
            AnalysisResponse; never raises for upstream failures
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")
        if estimated_tokens is None:
            estimated_tokens = ACTION_TOKEN_ESTIMATES[action]

        messages = self._build_messages(prompt, media)
        contents = [item.content for item in media]

        def invoke(model: str) -> Tuple[AnalysisResult, int]:
            return self._complete(model, messages)

        outcome = self.orchestrator.retry_with_fallback(invoke, estimated_tokens)

        if isinstance(outcome, InvocationFailure):
            return self._failed(action, contents, outcome)

        analysis, total_tokens = outcome.result
        self.ledger.record_event(outcome.model_used, QuotaMetric.TOKENS, total_tokens)

        validation = validate(analysis, self.settings.thresholds)
        flags = [FLAG_MANUAL_REVIEW] if validation.requires_manual_review else []
        result = AuditResult.FLAGGED if validation.requires_manual_review else AuditResult.SUCCESS
        self.audit_logger.record(build_audit_entry(
            action,
            contents,
            result,
            security_flags=flags,
            token_usage=total_tokens,
            model_used=outcome.model_used,
        ))

        logger.info(
            "%s completed with %s (%d tokens)",
            action.value,
            outcome.model_used,
            total_tokens,
        )
        return AnalysisResponse(
            success=True,
            data=analysis,
            validation=validation,
            warnings=tuple(format_validation_warnings(validation)),
            model_used=outcome.model_used,
            token_usage=total_tokens,
        )

    def _complete(self, model: str, messages: List[Dict[str, Any]]) -> Tuple[AnalysisResult, int]:
        response = self.client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=0,
            top_p=0.1,
            response_format={"type": "json_object"},
        )
        if not response.choices:
            raise ValueError("Gemini response contained no choices")

        choice = response.choices[0]
        text = choice.message.content or ""
        # Parsed here so a truncated response falls back to the next model
        analysis = parse_analysis_response(text, finish_reason=choice.finish_reason)

        usage = response.usage
        total_tokens = usage.total_tokens if usage and usage.total_tokens else 0
        return analysis, total_tokens

    def _build_messages(self, prompt: str, media: Sequence[MediaFile]) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        for item in media:
            parts.append({"type": "image_url", "image_url": {"url": item.data_url()}})
        return [{"role": "user", "content": parts}]

    def _failed(
        self,
        action: AuditAction,
        contents: List[bytes],
        outcome: InvocationFailure,
    ) -> AnalysisResponse:
        flags = [FLAG_ANALYSIS_FAILED]
        if outcome.retry_after is not None:
            flags.append(FLAG_RATE_LIMITED)
            message = (
                "All AI models are currently at capacity. "
                f"Please retry in {outcome.retry_after} seconds."
            )
        elif outcome.error.error_class is ErrorClass.RATE_LIMITED:
            flags.append(FLAG_RATE_LIMITED)
            message = outcome.error.message
        else:
            message = outcome.error.message

        self.audit_logger.record(build_audit_entry(action, contents, AuditResult.ERROR, flags))
        logger.warning(
            "%s failed after trying %s: %s",
            action.value,
            ", ".join(outcome.exhausted_models) or "no models",
            outcome.error.detail,
        )
        return AnalysisResponse(
            success=False,
            error=message,
            retry_after=outcome.retry_after,
        )
