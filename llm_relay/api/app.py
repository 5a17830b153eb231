"""
LLM Relay - FastAPI application entry point.

Routes:
- POST   /api/llm/{provider_id}     - relay a prompt to one provider, vendor JSON back
- POST   /api/route                 - route a prompt with selection, retry and fallback
- GET    /api/route/active          - requests currently in flight
- GET    /api/route/history         - terminal outcomes, newest first
- GET    /api/route/{request_id}    - stored outcome for one request
- DELETE /api/route/{request_id}    - cancel an in-flight request
- GET    /api/providers             - provider table
- GET    /api/usage                 - usage accounting
- GET    /api/events                - recent routing events
- GET    /health                    - service health
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictStr
from starlette.exceptions import HTTPException as StarletteHTTPException

from llm_relay.api.middleware import RequestIDMiddleware
from llm_relay.config.settings import get_settings
from llm_relay.container import get_container, shutdown_container
from llm_relay.exceptions import InvalidInputError, ProviderCallError, ProviderResponseError, RelayException
from llm_relay.logging_utils import configure_logging
from llm_relay.providers.base import ModelParameters
from llm_relay.routing.models import (
    LLMPreferences,
    Priority,
    PromptAnalysis,
    RoutingRequest,
    Scope,
    ScopeType,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LLMPreferencesModel(BaseModel):
    preferred: List[str] = Field(default_factory=list)
    excluded: List[str] = Field(default_factory=list)
    fallback: List[str] = Field(default_factory=list)


class ScopeModel(BaseModel):
    id: str
    name: str = ""
    type: ScopeType = ScopeType.CHAT
    topic: Optional[str] = None
    personality: Optional[str] = None
    llm_preferences: Optional[LLMPreferencesModel] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_scope(self) -> Scope:
        prefs = self.llm_preferences
        return Scope(
            id=self.id,
            name=self.name,
            type=self.type,
            topic=self.topic,
            personality=self.personality,
            llm_preferences=LLMPreferences(
                preferred=list(prefs.preferred), excluded=list(prefs.excluded), fallback=list(prefs.fallback)
            ) if prefs else None,
            metadata=dict(self.metadata),
        )


class ParametersModel(BaseModel):
    max_tokens: Optional[int] = Field(default=None, ge=1, le=128000)
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    model: Optional[str] = None


class RouteRequest(BaseModel):
    id: Optional[str] = None
    prompt: StrictStr = Field(min_length=1)
    scope: Optional[ScopeModel] = None
    analysis: Optional[Dict[str, Any]] = None
    force_llm: Optional[str] = None
    max_retries: Optional[int] = Field(default=None, ge=0, le=10)
    timeout: Optional[float] = Field(default=None, gt=0, le=600)
    priority: Priority = Priority.NORMAL
    user_id: str = "anonymous"
    parameters: Optional[ParametersModel] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_routing_request(self) -> RoutingRequest:
        return RoutingRequest(
            id=self.id or "",
            prompt=self.prompt,
            scope=self.scope.to_scope() if self.scope else None,
            analysis=PromptAnalysis.from_dict(self.analysis),
            force_llm=self.force_llm,
            max_retries=self.max_retries,
            timeout=self.timeout,
            priority=self.priority,
            user_id=self.user_id,
            parameters=ModelParameters(**self.parameters.model_dump()) if self.parameters else None,
            metadata=dict(self.metadata),
        )


# ---------------------------------------------------------------------------
# Application lifecycle
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(application: FastAPI):
    settings = get_settings()
    configure_logging(settings)
    logger.info("%s %s starting up", settings.app_name, settings.app_version)
    container = get_container()
    logger.info("Container ready with %d providers", len(container.registry))
    yield
    await shutdown_container()
    logger.info("%s shutting down", settings.app_name)


app = FastAPI(
    title="LLM Relay",
    version="1.0.0",
    description="LLM request routing layer",
    lifespan=lifespan,
    docs_url=None if get_settings().is_production else "/docs",
    redoc_url=None if get_settings().is_production else "/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIDMiddleware)


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------


@app.exception_handler(RelayException)
async def relay_exception_handler(request: Request, exc: RelayException):
    log = logger.warning if exc.http_status < 500 else logger.error
    log("%s %s -> %s: %s", request.method, request.url.path, exc.http_status, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_api_response())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{location}: {first.get('msg')}" if location else str(first.get("msg", "Invalid request"))
    return JSONResponse(
        status_code=400,
        content={"error": message, "details": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors]},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
async def health():
    """Health check: provider table loaded and breaker states."""
    container = get_container()
    registry = container.registry
    breakers = container.router.get_circuit_status()
    open_circuits = [name for name, status in breakers.items() if status["state"] == "open"]
    return {
        "status": "degraded" if open_circuits else "healthy",
        "providers": len(registry),
        "enabled_providers": len(registry.enabled()),
        "open_circuits": open_circuits,
        "active_requests": len(container.router.get_active_requests()),
        "rate_limits": container.throttle.get_status(),
        "services": container.status(),
    }


@app.post("/api/llm/{provider_id}")
async def relay_to_provider(provider_id: str, request: Request):
    """Relay `{prompt}` to one provider and return the vendor's JSON unchanged."""
    try:
        body = await request.json()
    except ValueError:
        body = None
    prompt = body.get("prompt") if isinstance(body, dict) else None
    if not prompt or not isinstance(prompt, str):
        raise InvalidInputError("Prompt is required and must be a string")

    container = get_container()
    config = container.registry.get(provider_id)

    try:
        payload, latency_ms = await container.adapter.call_raw(config, prompt)
    except ProviderCallError as e:
        container.event_log.log_event(
            "relay_failed", "api", provider=provider_id, code=e.code.value, status_code=e.status_code
        )
        if e.status_code is not None:
            # Vendor answered: relay its status and body
            return JSONResponse(status_code=e.status_code, content={"error": e.payload})
        logger.error("%s API call failed: %s", config.name, e.message)
        return JSONResponse(status_code=500, content={"error": f"{config.name} API call failed"})

    if not isinstance(payload, (dict, list)):
        logger.error("%s returned a body that is not JSON", config.name, extra={"provider": provider_id})
        container.event_log.log_event(
            "relay_failed", "api", provider=provider_id, code=ProviderResponseError.code.value, status_code=502
        )
        return JSONResponse(status_code=502, content={"error": f"{config.name} returned an invalid response"})

    container.event_log.log_event("relay_succeeded", "api", duration_ms=round(latency_ms, 2), provider=provider_id)
    return JSONResponse(status_code=200, content=payload)


@app.post("/api/route")
async def route_prompt(req: RouteRequest):
    """Route a prompt through selection, retry and fallback."""
    router = get_container().router
    outcome = await router.route(req.to_routing_request())
    if outcome.is_error:
        return JSONResponse(status_code=outcome.http_status, content=outcome.to_dict())
    return outcome.to_dict()


@app.get("/api/route/active")
async def active_requests():
    return {"requests": get_container().router.get_active_requests()}


@app.get("/api/route/history")
async def routing_history(
    status: Optional[str] = None,
    llm_used: Optional[str] = None,
    user_id: Optional[str] = None,
    priority: Optional[str] = None,
    error_code: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
):
    criteria = {
        "status": status,
        "llm_used": llm_used,
        "user_id": user_id,
        "priority": priority,
        "error_code": error_code,
    }
    return {"history": get_container().router.get_routing_history(criteria, limit=limit)}


@app.get("/api/route/{request_id}")
async def routing_result(request_id: str):
    outcome = get_container().router.get_result(request_id)
    if outcome is None:
        raise HTTPException(status_code=404, detail=f"No routed request with id '{request_id}'")
    if outcome.is_error:
        return JSONResponse(status_code=outcome.http_status, content=outcome.to_dict())
    return outcome.to_dict()


@app.delete("/api/route/{request_id}")
async def cancel_request(request_id: str):
    if not get_container().router.cancel_request(request_id):
        raise HTTPException(status_code=404, detail=f"Request '{request_id}' is not in flight")
    return {"request_id": request_id, "cancelled": True}


@app.get("/api/providers")
async def list_providers(category: Optional[str] = None):
    """Provider table with whether each provider's key is present."""
    container = get_container()
    registry = container.registry
    configs = registry.by_category(category) if category else list(registry)
    adapter_stats = container.adapter.get_stats()
    providers = []
    for config in configs:
        entry = config.to_dict()
        try:
            config.resolve_api_key()
            entry["configured"] = True
        except RelayException:
            entry["configured"] = False
        entry["stats"] = adapter_stats.get(config.id)
        providers.append(entry)
    return {"categories": registry.categories(), "providers": providers}


@app.get("/api/usage")
async def usage(provider_id: Optional[str] = None, user_id: Optional[str] = None):
    tracker = get_container().usage_tracker
    return {
        "dashboard": tracker.get_dashboard(),
        "stats": tracker.get_stats(provider_id=provider_id, user_id=user_id),
    }


@app.get("/api/events")
async def events(
    limit: int = Query(default=100, ge=1, le=1000),
    event_type: Optional[str] = None,
    hours: float = Query(default=1.0, gt=0),
):
    event_log = get_container().event_log
    return {
        "events": event_log.get_recent(limit, event_type=event_type),
        "summary": event_log.get_summary(hours),
    }
