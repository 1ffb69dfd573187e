"""
Priority-tiered model selection.

Selection Order:
1. Tier 1 - the fast/cheap primary model, if under budget
2. Tier 2 - overflow models scanned in fixed list order
3. Unavailable - with a retry hint from the quota ledger

Deterministic by construction: no round-robin state is kept, so the same
ledger state and exclusions always select the same model.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from .quota import QuotaLedger
from .tiers import ModelTiers

logger = logging.getLogger(__name__)

MAX_RETRY_AFTER_SECONDS = 60


@dataclass(frozen=True)
class ModelAvailable:
    """A model was selected."""
    model_name: str
    forced: bool = False

    @property
    def available(self) -> bool:
        return True


@dataclass(frozen=True)
class ModelUnavailable:
    """No model can take the request right now."""
    error: str
    retry_after: int

    @property
    def available(self) -> bool:
        return False


ModelSelection = Union[ModelAvailable, ModelUnavailable]


class ModelSelector:
    """Picks the next model for a request under the ledger's budgets."""

    def __init__(
        self,
        tiers: ModelTiers,
        ledger: QuotaLedger,
        forced_model: Optional[str] = None,
        max_retry_after: int = MAX_RETRY_AFTER_SECONDS,
    ):
        """Initialize the selector.

        Args:
            tiers: Model priority configuration
            ledger: Shared quota ledger
            forced_model: Model to use unconditionally, bypassing quotas
            max_retry_after: Cap on the retry hint in seconds
        """
        self.tiers = tiers
        self.ledger = ledger
        self.forced_model = forced_model or None
        self.max_retry_after = max_retry_after

    @property
    def model_count(self) -> int:
        """Upper bound on distinct models a fallback chain can try."""
        count = len(self.tiers.all_models)
        if self.forced_model and self.forced_model not in self.tiers.all_models:
            count += 1
        return count

    def select_available_model(
        self,
        estimated_tokens: int,
        exclude_models: Iterable[str] = (),
        reserve: bool = False,
    ) -> ModelSelection:
        """Select the best model not in ``exclude_models`` that has budget.

        Args:
            estimated_tokens: Token estimate for the request
            exclude_models: Models already attempted in this chain
            reserve: Record the request against the chosen model atomically
                with the capacity check

        Returns:
            ModelAvailable with the chosen model, or ModelUnavailable with
            an error message and retry hint
        """
        excluded = set(exclude_models)

        if self.forced_model:
            return self._select_forced(excluded)

        primary = self.tiers.primary
        if primary in excluded:
            logger.info("Skipping %s (already attempted)", primary)
        elif self._admit(primary, estimated_tokens, reserve):
            return ModelAvailable(model_name=primary)

        for model in self.tiers.overflow:
            if model in excluded:
                logger.info("Skipping %s (already attempted)", model)
                continue
            if self._admit(model, estimated_tokens, reserve):
                return ModelAvailable(model_name=model)

        retry_after = self.retry_after_seconds(estimated_tokens)
        return ModelUnavailable(
            error=(
                "All models are currently rate-limited. "
                f"Please retry in {retry_after} seconds."
            ),
            retry_after=retry_after,
        )

    def retry_after_seconds(self, estimated_tokens: int = 0) -> int:
        """Shortest wait across all configured models, between 1 and the cap.

        Models that still have budget but were excluded after failing
        report 0; the hint never drops below one second.
        """
        waits = [
            self.ledger.seconds_until_retry(model, estimated_tokens)
            for model in self.tiers.all_models
        ]
        return max(1, min(waits + [self.max_retry_after]))

    def _admit(self, model: str, estimated_tokens: int, reserve: bool) -> bool:
        if reserve:
            return self.ledger.try_reserve(model, estimated_tokens)
        return self.ledger.has_capacity(model, estimated_tokens)

    def _select_forced(self, excluded: set) -> ModelSelection:
        if self.forced_model in excluded:
            return ModelUnavailable(
                error=f"Forced model {self.forced_model} already attempted.",
                retry_after=1,
            )
        logger.warning(
            "Using forced model %s (FORCE_GEMINI_MODEL); rate limiting is BYPASSED",
            self.forced_model,
        )
        return ModelAvailable(model_name=self.forced_model, forced=True)
