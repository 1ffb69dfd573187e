"""
Retry with model fallback.

Runs a caller-supplied invocation function against the best available
model and, on a retryable failure, tries again with that model excluded.

Loop contract:
1. Select a model not yet attempted, reserving one request slot
2. No model available -> failure carrying the selector's retry hint
3. Invocation succeeds -> success with the model used
4. Retryable failure -> loop; fatal failure -> stop immediately

The attempted list only grows and never repeats a model, so the loop
runs at most once per configured model.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Tuple, Union

from .errors import ClassifiedError, ErrorClass
from .selector import ModelSelector, ModelUnavailable
from claim_guard.config.loader import get_ledger, load_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvocationSuccess:
    """The invocation returned a result."""
    result: Any
    model_used: str
    attempts: Tuple[str, ...]

    @property
    def success(self) -> bool:
        return True


@dataclass(frozen=True)
class InvocationFailure:
    """Every candidate model failed or a fatal error stopped the chain.

    ``retry_after`` is only set when the chain ended because no model had
    budget left.
    """
    error: ClassifiedError
    exhausted_models: Tuple[str, ...]
    retry_after: Optional[int] = None
    attempts: Tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return False


InvocationOutcome = Union[InvocationSuccess, InvocationFailure]


class FallbackOrchestrator:
    """Bounded retry loop over the models a selector hands out."""

    def __init__(self, selector: ModelSelector):
        self.selector = selector

    def retry_with_fallback(
        self,
        invoke: Callable[[str], Any],
        estimated_tokens: int,
        attempted_models: Optional[Iterable[str]] = None,
    ) -> InvocationOutcome:
        """Call ``invoke(model)`` until it succeeds or no model is left.

        Args:
            invoke: Function performing the model call for a model id
            estimated_tokens: Token estimate used for capacity checks
            attempted_models: Models to exclude from the start

        Returns:
            InvocationSuccess or InvocationFailure
        """
        attempted = _dedupe(attempted_models)
        while True:
            model, failure = self._next_model(estimated_tokens, attempted)
            if failure is not None:
                return failure

            try:
                result = invoke(model)
            except Exception as exc:
                failure = self._handle_failure(model, exc, attempted)
                if failure is not None:
                    return failure
                continue

            return self._succeeded(result, model, attempted)

    async def retry_with_fallback_async(
        self,
        invoke: Callable[[str], Awaitable[Any]],
        estimated_tokens: int,
        attempted_models: Optional[Iterable[str]] = None,
    ) -> InvocationOutcome:
        """Awaitable variant of :meth:`retry_with_fallback`.

        Model selection runs in the default executor, since reserving a
        slot may write to SQLite. Cancellation of the awaiting task
        propagates unchanged; the request slot reserved for the in-flight
        model is kept.
        """
        loop = asyncio.get_running_loop()
        attempted = _dedupe(attempted_models)
        while True:
            model, failure = await loop.run_in_executor(
                None, self._next_model, estimated_tokens, attempted
            )
            if failure is not None:
                return failure

            try:
                result = await invoke(model)
            except Exception as exc:
                failure = self._handle_failure(model, exc, attempted)
                if failure is not None:
                    return failure
                continue

            return self._succeeded(result, model, attempted)

    def _next_model(self, estimated_tokens, attempted):
        selection = self.selector.select_available_model(
            estimated_tokens,
            exclude_models=attempted,
            reserve=True,
        )
        if isinstance(selection, ModelUnavailable):
            logger.warning(
                "No model available after %d attempt(s): %s",
                len(attempted),
                selection.error,
            )
            failure = InvocationFailure(
                error=ClassifiedError(
                    error_class=ErrorClass.RATE_LIMITED,
                    message=selection.error,
                    detail=selection.error,
                ),
                exhausted_models=tuple(attempted),
                retry_after=selection.retry_after,
                attempts=tuple(attempted),
            )
            return None, failure

        if selection.model_name in attempted:
            raise RuntimeError(
                f"Selector returned already attempted model {selection.model_name}"
            )
        attempted.append(selection.model_name)
        logger.info("Attempting model %s (attempt %d)", selection.model_name, len(attempted))
        return selection.model_name, None

    def _handle_failure(self, model, exc, attempted) -> Optional[InvocationFailure]:
        classified = ClassifiedError.from_exception(exc)
        if classified.retryable:
            logger.warning(
                "Model %s failed with %s error, falling back: %s",
                model,
                classified.error_class.value,
                classified.detail,
            )
            return None

        logger.error("Model %s failed with non-retryable error: %s", model, classified.detail)
        return InvocationFailure(
            error=classified,
            exhausted_models=tuple(attempted),
            attempts=tuple(attempted),
        )

    def _succeeded(self, result, model, attempted) -> InvocationSuccess:
        logger.info("Model %s succeeded after %d attempt(s)", model, len(attempted))
        return InvocationSuccess(result=result, model_used=model, attempts=tuple(attempted))


def _dedupe(models: Optional[Iterable[str]]) -> list:
    seen = []
    for model in models or ():
        if model not in seen:
            seen.append(model)
    return seen


_default_orchestrator: Optional[FallbackOrchestrator] = None
_default_lock = threading.Lock()


def build_orchestrator(settings=None) -> FallbackOrchestrator:
    """Build an orchestrator over the shared ledger for ``settings``.

    Args:
        settings: Settings object (defaults to :func:`load_settings`)
    """
    settings = settings or load_settings()
    ledger = get_ledger(settings)
    selector = ModelSelector(
        settings.tiers,
        ledger,
        forced_model=settings.forced_model,
        max_retry_after=settings.max_retry_after,
    )
    return FallbackOrchestrator(selector)


def get_default_orchestrator() -> FallbackOrchestrator:
    """Get the process-wide orchestrator, building it on first use."""
    global _default_orchestrator
    with _default_lock:
        if _default_orchestrator is None:
            _default_orchestrator = build_orchestrator()
        return _default_orchestrator


def retry_with_fallback(
    invoke: Callable[[str], Any],
    estimated_tokens: int,
    attempted_models: Optional[Iterable[str]] = None,
) -> InvocationOutcome:
    """Run ``invoke`` through the process-wide orchestrator."""
    return get_default_orchestrator().retry_with_fallback(
        invoke, estimated_tokens, attempted_models
    )
