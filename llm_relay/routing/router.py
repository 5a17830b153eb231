"""
LLM Router - selection, retry, fallback and accounting for routed prompts.

Each request runs as its own task through an explicit state machine:

    PENDING -> IN_FLIGHT -> SUCCEEDED
                         -> RETRYING -> IN_FLIGHT (same or next provider)
                         -> FAILED
    (any non-terminal)   -> CANCELLED

Attempts are strictly sequential. Retryable failures are retried on the same
provider with exponential backoff; everything else, and retries that run out,
fall back to the next candidate. Terminal outcomes are stored per request id
so a request id can never produce two different successful responses.
"""

import asyncio
import logging
import time
import uuid
from collections import OrderedDict, deque
from typing import Any, Dict, List, Optional, Sequence, Tuple

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from llm_relay.exceptions import (
    AdapterErrorCode,
    CircuitBreaker,
    CircuitBreakerConfig,
    ConfigurationMissingError,
    InvalidInputError,
    InvalidStateTransition,
    ProviderCallError,
    RelayException,
)
from llm_relay.observability.event_log import RoutingEventLog
from llm_relay.providers.adapter import ProviderAdapter
from llm_relay.providers.base import CompletionResult
from llm_relay.providers.registry import ProviderConfig, ProviderRegistry
from llm_relay.providers.throttle import ProviderThrottle
from llm_relay.routing.classifier import PromptClassifier
from llm_relay.routing.models import (
    ALLOWED_TRANSITIONS,
    AttemptRecord,
    Costs,
    HistoryRecord,
    PromptAnalysis,
    RequestState,
    RouterError,
    RouterErrorCode,
    RoutingOutcome,
    RoutingRequest,
    RoutingResponse,
    StateTransition,
    Timing,
)
from llm_relay.routing.policy import SelectionPolicy
from llm_relay.usage.tracker import UsageTracker

logger = logging.getLogger(__name__)

CONFIGURATION_MISSING = "CONFIGURATION_MISSING"

# Failures that say something about the provider rather than the caller
BREAKER_CODES = frozenset({
    AdapterErrorCode.RATE_LIMITED,
    AdapterErrorCode.PROVIDER_ERROR,
    AdapterErrorCode.TIMEOUT,
    AdapterErrorCode.NETWORK_FAILURE,
})


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderCallError) and error.retryable


class RequestContext:
    """Mutable bookkeeping for one in-flight request."""

    def __init__(self, request: RoutingRequest):
        self.request = request
        self.state = RequestState.PENDING
        self.transitions: List[StateTransition] = [StateTransition(RequestState.PENDING)]
        self.attempts: List[AttemptRecord] = []
        self.fallbacks_used: List[str] = []
        self.current_provider: Optional[str] = None
        self.timing = Timing()
        self.task: Optional[asyncio.Task] = None

    def transition(self, target: RequestState, provider: Optional[str] = None) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.request.id, self.state.value, target.value)
        self.state = target
        if provider is not None:
            self.current_provider = provider
        self.transitions.append(StateTransition(target, provider=provider or self.current_provider))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request.id,
            "state": self.state.value,
            "current_provider": self.current_provider,
            "priority": self.request.priority.value,
            "user_id": self.request.user_id,
            "attempts": len(self.attempts),
            "fallbacks_used": list(self.fallbacks_used),
            "started_at": self.timing.started_at.isoformat(),
            "elapsed_ms": self.timing.total_duration_ms,
        }


class LLMRouter:
    """Routes prompts to providers with retry, fallback and accounting."""

    def __init__(
        self,
        registry: ProviderRegistry,
        adapter: ProviderAdapter,
        classifier: Optional[PromptClassifier] = None,
        throttle: Optional[ProviderThrottle] = None,
        usage_tracker: Optional[UsageTracker] = None,
        event_log: Optional[RoutingEventLog] = None,
        max_retries: int = 2,
        backoff_initial: float = 1.0,
        backoff_max: float = 10.0,
        backoff_jitter: float = 1.0,
        default_chain: Sequence[str] = (),
        history_size: int = 1000,
        circuit_breakers_enabled: bool = True,
        circuit_breaker_config: Optional[CircuitBreakerConfig] = None,
    ):
        self.registry = registry
        self.adapter = adapter
        self.throttle = throttle
        self.usage_tracker = usage_tracker or UsageTracker()
        self.event_log = event_log or RoutingEventLog()
        self.max_retries = max_retries
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.backoff_jitter = backoff_jitter
        self.history_size = history_size
        self.circuit_breakers_enabled = circuit_breakers_enabled
        self.circuit_breaker_config = circuit_breaker_config or CircuitBreakerConfig()

        self.policy = SelectionPolicy(
            registry,
            classifier=classifier,
            default_chain=default_chain,
            is_available=self._provider_available,
        )

        self._active: Dict[str, RequestContext] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._results: "OrderedDict[str, RoutingOutcome]" = OrderedDict()
        self._history: "OrderedDict[str, HistoryRecord]" = OrderedDict()
        self._errors: deque = deque(maxlen=history_size)
        self._breakers: Dict[str, CircuitBreaker] = {}

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    async def route(self, request: RoutingRequest) -> RoutingOutcome:
        """
        Route one request.

        Never raises for routing failures: the outcome is either a
        RoutingResponse or a RouterError. Routing an id that already finished
        returns the stored outcome; routing an id that is still running waits
        for that run.
        """
        if not request.id:
            request.id = uuid.uuid4().hex

        running = self._tasks.get(request.id)
        if running is not None:
            logger.info("Request %s already in flight, joining it", request.id)
            try:
                return await asyncio.shield(running)
            except asyncio.CancelledError:
                if running.cancelled() and request.id in self._results:
                    return self._results[request.id]
                raise

        stored = self._results.get(request.id)
        if stored is not None:
            logger.info("Request %s already routed, returning stored outcome", request.id)
            return stored

        try:
            request.validate()
        except InvalidInputError as e:
            return RouterError(
                code=RouterErrorCode.INVALID_INPUT,
                message=e.message,
                request_id=request.id,
                timing=Timing().finish(),
            )

        ctx = RequestContext(request)
        task = asyncio.create_task(self._run(ctx), name=f"route-{request.id}")
        ctx.task = task
        self._active[request.id] = ctx
        self._tasks[request.id] = task
        task.add_done_callback(lambda t: self._on_task_done(ctx, t))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                # Cancelled through cancel_request, possibly before the first step
                self._on_task_done(ctx, task)
                stored = self._results.get(request.id)
                return stored if stored is not None else self._cancelled(ctx)
            # The caller went away: stop the in-flight provider call too
            task.cancel()
            raise

    def cancel_request(self, request_id: str) -> bool:
        """Cancel a running request. False if unknown or already finished."""
        task = self._tasks.get(request_id)
        if task is None or task.done():
            return False
        logger.info("Cancelling request %s", request_id)
        task.cancel()
        return True

    def get_active_requests(self) -> List[Dict[str, Any]]:
        return [ctx.to_dict() for ctx in self._active.values()]

    def get_result(self, request_id: str) -> Optional[RoutingOutcome]:
        return self._results.get(request_id)

    def get_routing_history(
        self, filter: Optional[Dict[str, Any]] = None, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Terminal outcomes, newest first, matching every field in `filter`."""
        criteria = {k: v for k, v in (filter or {}).items() if v is not None}
        unknown = set(criteria) - set(HistoryRecord.FILTERABLE)
        if unknown:
            raise InvalidInputError(
                f"Cannot filter history by {sorted(unknown)}",
                details={"allowed": list(HistoryRecord.FILTERABLE)},
            )
        records = [r.to_dict() for r in reversed(self._history.values()) if r.matches(criteria)]
        return records[:limit] if limit else records

    def handle_error(self, error: RouterError) -> Optional[RoutingResponse]:
        """
        Record a terminal routing error.

        Returns the stored successful response for the same request id when
        one exists, so a late error never shadows a success.
        """
        self._errors.append(error)
        logger.error(
            "Routing failed for %s: %s (%s)", error.request_id, error.message, error.code.value,
            extra={"routing_request_id": error.request_id, "code": error.code.value, "llm_id": error.llm_id},
        )
        self.event_log.log_event(
            "routing_error",
            "router",
            duration_ms=error.timing.total_duration_ms,
            request_id=error.request_id,
            code=error.code.value,
            llm_id=error.llm_id,
            fallbacks_used=list(error.fallbacks_used),
        )
        stored = self._results.get(error.request_id)
        if isinstance(stored, RoutingResponse):
            return stored
        return None

    def get_recent_errors(self, limit: int = 50) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in list(self._errors)[-limit:]]

    def get_circuit_status(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.get_status() for name, breaker in self._breakers.items()}

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run(self, ctx: RequestContext) -> RoutingOutcome:
        try:
            outcome = await self._execute(ctx)
        except asyncio.CancelledError:
            outcome = self._cancelled(ctx)
        except Exception:
            logger.exception("Unexpected routing failure for %s", ctx.request.id)
            self._active.pop(ctx.request.id, None)
            self._tasks.pop(ctx.request.id, None)
            raise
        await self._finish(ctx, outcome)
        return outcome

    def _on_task_done(self, ctx: RequestContext, task: asyncio.Task) -> None:
        """Settle a task that was cancelled before `_run` could record it."""
        if not task.cancelled() or self._tasks.get(ctx.request.id) is not task:
            return
        logger.info("Request %s cancelled before it started", ctx.request.id)
        self._record(ctx, self._cancelled(ctx))

    async def _execute(self, ctx: RequestContext) -> RoutingOutcome:
        request = ctx.request
        analysis = self.policy.analysis_for(request)
        candidates = self.policy.candidates(request, analysis)
        self.event_log.log_event(
            "routing_started",
            "router",
            request_id=request.id,
            candidates=candidates,
            priority=request.priority.value,
        )

        if not candidates:
            ctx.transition(RequestState.FAILED)
            return self._error(
                ctx,
                RouterErrorCode.NO_PROVIDER_AVAILABLE,
                "No enabled provider is available for this request",
                context={"force_llm": request.force_llm},
            )

        max_retries = self.max_retries if request.max_retries is None else request.max_retries
        last_error: Optional[RelayException] = None

        for index, provider_id in enumerate(candidates):
            try:
                result, config = await self._attempt_provider(ctx, provider_id, max_retries)
            except (ProviderCallError, ConfigurationMissingError) as e:
                last_error = e
                ctx.fallbacks_used.append(provider_id)
                if index + 1 < len(candidates):
                    next_provider = candidates[index + 1]
                    ctx.transition(RequestState.RETRYING, next_provider)
                    logger.warning(
                        "Provider %s failed for %s, falling back to %s",
                        provider_id, request.id, next_provider,
                        extra={"routing_request_id": request.id, "provider": provider_id},
                    )
                    self.event_log.log_event(
                        "fallback", "router", request_id=request.id, failed=provider_id, next=next_provider
                    )
                continue

            ctx.transition(RequestState.SUCCEEDED, provider_id)
            return self._response(ctx, config, result, analysis)

        ctx.transition(RequestState.FAILED)
        return self._error(
            ctx,
            RouterErrorCode.ALL_PROVIDERS_FAILED,
            f"All providers failed: {last_error.message}" if last_error else "All providers failed",
            llm_id=candidates[-1],
            retryable=_is_retryable(last_error) if last_error else False,
            context={
                "candidates": candidates,
                "last_error": last_error.details if last_error else None,
            },
        )

    async def _attempt_provider(
        self, ctx: RequestContext, provider_id: str, max_retries: int
    ) -> Tuple[CompletionResult, ProviderConfig]:
        """Call one provider, retrying retryable failures with backoff."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_retries + 1),
            wait=wait_exponential(multiplier=self.backoff_initial, min=0, max=self.backoff_max)
            + wait_random(0, self.backoff_jitter),
            retry=retry_if_exception(_is_retryable),
            before_sleep=lambda retry_state: self._before_retry(ctx, provider_id, retry_state),
            reraise=True,
        )
        counter = {"n": 0}

        async def call_once() -> Tuple[CompletionResult, ProviderConfig]:
            counter["n"] += 1
            return await self._call_once(ctx, provider_id, counter["n"])

        return await retrying(call_once)

    async def _call_once(
        self, ctx: RequestContext, provider_id: str, attempt_number: int
    ) -> Tuple[CompletionResult, ProviderConfig]:
        request = ctx.request
        ctx.transition(RequestState.IN_FLIGHT, provider_id)
        record = AttemptRecord(provider=provider_id, attempt=attempt_number)
        ctx.attempts.append(record)
        start = time.perf_counter()

        try:
            config = self.registry.get(provider_id)
            if self.throttle is not None:
                self.throttle.acquire(config)
            result = await self.adapter.complete(
                config, request.prompt, params=request.parameters, timeout=request.timeout
            )
        except ProviderCallError as e:
            record.duration_ms = round((time.perf_counter() - start) * 1000, 2)
            record.outcome = e.code.value
            record.error = e.message
            record.status_code = e.status_code
            # A local bucket rejection never reached the provider
            if not e.details.get("local"):
                if e.code in BREAKER_CODES:
                    self._breaker(provider_id).record_failure()
                self.usage_tracker.record_error(provider_id, request.user_id, record.duration_ms)
            self.event_log.log_event(
                "attempt_failed",
                "router",
                duration_ms=record.duration_ms,
                request_id=request.id,
                provider=provider_id,
                attempt=attempt_number,
                code=e.code.value,
                retryable=e.retryable,
            )
            raise
        except ConfigurationMissingError as e:
            record.duration_ms = round((time.perf_counter() - start) * 1000, 2)
            record.outcome = CONFIGURATION_MISSING
            record.error = e.message
            logger.error("Provider %s is not usable: %s", provider_id, e.message)
            raise
        except asyncio.CancelledError:
            record.duration_ms = round((time.perf_counter() - start) * 1000, 2)
            record.outcome = "cancelled"
            raise

        record.duration_ms = round((time.perf_counter() - start) * 1000, 2)
        record.outcome = "success"
        self._breaker(provider_id).record_success()
        return result, config

    def _before_retry(self, ctx: RequestContext, provider_id: str, retry_state: RetryCallState) -> None:
        ctx.transition(RequestState.RETRYING, provider_id)
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Retrying %s on %s in %.2fs after %s",
            ctx.request.id, provider_id, delay, getattr(error, "code", error),
            extra={"routing_request_id": ctx.request.id, "provider": provider_id},
        )
        self.event_log.log_event(
            "retry",
            "router",
            request_id=ctx.request.id,
            provider=provider_id,
            attempt=retry_state.attempt_number,
            delay_s=round(delay, 3),
        )

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _response(
        self,
        ctx: RequestContext,
        config: ProviderConfig,
        result: CompletionResult,
        analysis: Optional[PromptAnalysis],
    ) -> RoutingResponse:
        request = ctx.request
        ctx.timing.finish()
        costs = Costs.compute(result.usage, config.costs)

        metadata: Dict[str, Any] = {
            "model": result.model,
            "priority": request.priority.value,
            "user_id": request.user_id,
            "attempts": [a.to_dict() for a in ctx.attempts],
            "transitions": [t.to_dict() for t in ctx.transitions],
        }
        if result.metadata.get("usage_estimated"):
            metadata["usage_estimated"] = True
        if analysis is not None:
            metadata["analysis"] = {
                "primary_category": analysis.primary_category,
                "confidence": analysis.confidence,
                "suggested_llms": analysis.suggested_llms,
            }
        if request.metadata:
            metadata["request"] = request.metadata

        self.usage_tracker.record_success(
            config.id,
            request.user_id,
            tokens=result.usage.total_tokens,
            cost=costs.total_cost,
            latency_ms=result.latency_ms,
            model=result.model,
        )
        return RoutingResponse(
            request_id=request.id,
            result=result,
            llm_used=config.id,
            fallbacks_used=list(ctx.fallbacks_used),
            timing=ctx.timing,
            token_usage=result.usage,
            costs=costs,
            metadata=metadata,
        )

    def _error(
        self,
        ctx: RequestContext,
        code: RouterErrorCode,
        message: str,
        llm_id: Optional[str] = None,
        retryable: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ) -> RouterError:
        ctx.timing.finish()
        return RouterError(
            code=code,
            message=message,
            request_id=ctx.request.id,
            llm_id=llm_id,
            retryable=retryable,
            context=context or {},
            fallbacks_used=list(ctx.fallbacks_used),
            timing=ctx.timing,
            costs=Costs(currency=self._currency_for(llm_id)),
            attempts=list(ctx.attempts),
        )

    def _cancelled(self, ctx: RequestContext) -> RouterError:
        if not ctx.state.is_terminal:
            ctx.transition(RequestState.CANCELLED)
        return self._error(
            ctx,
            RouterErrorCode.CANCELLED,
            "Request was cancelled",
            llm_id=ctx.current_provider,
            context={"state_history": [t.to_dict() for t in ctx.transitions]},
        )

    async def _finish(self, ctx: RequestContext, outcome: RoutingOutcome) -> None:
        self._record(ctx, outcome)
        await self.usage_tracker.persist()

    def _record(self, ctx: RequestContext, outcome: RoutingOutcome) -> None:
        request = ctx.request
        if isinstance(outcome, RouterError):
            self.handle_error(outcome)
        else:
            logger.info(
                "Routed %s to %s in %.0fms (fallbacks=%s)",
                request.id, outcome.llm_used, outcome.timing.total_duration_ms, outcome.fallbacks_used,
                extra={"routing_request_id": request.id, "provider": outcome.llm_used},
            )
            self.event_log.log_event(
                "routing_succeeded",
                "router",
                duration_ms=outcome.timing.total_duration_ms,
                request_id=request.id,
                llm_used=outcome.llm_used,
                fallbacks_used=list(outcome.fallbacks_used),
                total_tokens=outcome.token_usage.total_tokens,
                total_cost=outcome.costs.total_cost,
            )

        self._results[request.id] = outcome
        self._history[request.id] = HistoryRecord.from_outcome(request, outcome)
        while len(self._results) > self.history_size:
            self._results.popitem(last=False)
        while len(self._history) > self.history_size:
            self._history.popitem(last=False)

        self._active.pop(request.id, None)
        self._tasks.pop(request.id, None)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _breaker(self, provider_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(provider_id)
        if breaker is None:
            breaker = CircuitBreaker(provider_id, self.circuit_breaker_config)
            self._breakers[provider_id] = breaker
        return breaker

    def _provider_available(self, provider_id: str) -> bool:
        if not self.circuit_breakers_enabled:
            return True
        breaker = self._breaker(provider_id)
        if breaker.can_execute():
            return True
        breaker.record_rejection()
        return False

    def _currency_for(self, provider_id: Optional[str]) -> str:
        config = self.registry.find(provider_id) if provider_id else None
        return config.costs.currency if config else "USD"
