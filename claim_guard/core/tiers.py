"""
Model tiers and rate limits.

Fixed priority table of upstream models and the per-model budgets the
quota ledger enforces.
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Tuple

from claim_guard.storage.models import QuotaMetric


@dataclass(frozen=True)
class ModelLimits:
    """Rate limits for a single model."""
    rpm: int  # Requests per minute
    tpm: int  # Tokens per minute
    rpd: int  # Requests per day

    def __post_init__(self):
        """Validate limits are positive."""
        if self.rpm <= 0:
            raise ValueError("rpm must be > 0")
        if self.tpm <= 0:
            raise ValueError("tpm must be > 0")
        if self.rpd <= 0:
            raise ValueError("rpd must be > 0")

    def for_metric(self, metric: QuotaMetric) -> int:
        """Per-window limit for a quota metric."""
        if metric is QuotaMetric.REQUESTS:
            return self.rpm
        return self.tpm


@dataclass(frozen=True)
class ModelTiers:
    """Priority-ordered model configuration.

    ``primary`` is the single fast/cheap tier-1 model that should absorb
    most traffic; ``overflow`` is scanned in order once tier 1 is
    saturated or excluded.
    """
    primary: str
    overflow: Tuple[str, ...]
    limits: Mapping[str, ModelLimits]

    def __post_init__(self):
        """Validate tier layout and that every model has limits."""
        if not self.primary:
            raise ValueError("primary model is required")
        if len(self.overflow) < 2:
            raise ValueError("overflow tier must list at least two models")
        models = self.all_models
        if len(set(models)) != len(models):
            raise ValueError(f"duplicate model in tiers: {list(models)}")
        missing = [model for model in models if model not in self.limits]
        if missing:
            raise ValueError(f"No rate limits configured for models: {missing}")

    @property
    def all_models(self) -> Tuple[str, ...]:
        """Every configured model in priority order."""
        return (self.primary,) + tuple(self.overflow)

    def get_limits(self, model: str) -> ModelLimits:
        """Get rate limits for a specific model.

        Raises:
            ValueError: If model has no configured limits
        """
        if model not in self.limits:
            raise ValueError(f"No rate limits configured for model: {model}")
        return self.limits[model]


class GeminiModel:
    """Known Gemini model identifiers."""
    FLASH_LITE = "gemini-2.5-flash-lite"
    FLASH = "gemini-2.5-flash"
    FLASH_3 = "gemini-3-flash-preview"


# Free-tier budgets. Flash-lite carries the highest RPM so it leads.
DEFAULT_MODEL_LIMITS: Dict[str, ModelLimits] = {
    GeminiModel.FLASH_LITE: ModelLimits(rpm=10, tpm=250_000, rpd=20),
    GeminiModel.FLASH: ModelLimits(rpm=5, tpm=250_000, rpd=20),
    GeminiModel.FLASH_3: ModelLimits(rpm=5, tpm=250_000, rpd=20),
}

DEFAULT_MODEL_TIERS = ModelTiers(
    primary=GeminiModel.FLASH_LITE,
    overflow=(GeminiModel.FLASH, GeminiModel.FLASH_3),
    limits=DEFAULT_MODEL_LIMITS,
)
