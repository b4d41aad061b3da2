from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from conduit.api.schemas import (
    ApiKeyUpdate,
    BudgetUpdate,
    ChatRequest,
    ChatResponse,
    ErrorResponse,
    ProviderSummary,
    SwitchProviderRequest,
)
from conduit.budget.models import Budget
from conduit.llm.credentials import SETTINGS_KEYS
from conduit.llm.errors import ConversationBusy, ErrorCategory, ProviderError
from conduit.observability.logger import get_logger

log = get_logger("api")

router = APIRouter(prefix="/api")

STATUS_BY_CATEGORY = {
    ErrorCategory.CONFIGURATION: 400,
    ErrorCategory.AUTHENTICATION: 401,
    ErrorCategory.BUDGET: 402,
    ErrorCategory.BUSY: 409,
    ErrorCategory.FORMAT: 502,
    ErrorCategory.TRANSIENT: 503,
    ErrorCategory.CIRCUIT_OPEN: 503,
    ErrorCategory.RESOURCE: 503,
    ErrorCategory.PROVIDER: 502,
}


def get_app_state(request: Request) -> dict:
    """Shared services, set up by the app lifespan."""
    return request.app.state.services


async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    status = STATUS_BY_CATEGORY.get(exc.category, 500)
    log.warning("api_error", path=request.url.path, status=status, category=exc.category.value, error=exc.message)
    body = ErrorResponse(error=exc.message, category=exc.category.value, provider=exc.provider_id)
    return JSONResponse(status_code=status, content=body.model_dump())


def _utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _time_range(start: Optional[datetime], end: Optional[datetime]):
    if start is None and end is None:
        return None
    return (
        _utc(start) if start else datetime.min.replace(tzinfo=timezone.utc),
        _utc(end) if end else datetime.max.replace(tzinfo=timezone.utc),
    )


@router.post("/chat", response_model=ChatResponse)
async def chat(req: ChatRequest, state: dict = Depends(get_app_state)):
    response = await state["orchestrator"].process_query(req.message, include_context=req.include_context)
    return ChatResponse(
        reply=response.text,
        model=response.metadata.model_id,
        provider=response.metadata.provider_id,
        tokens_used=response.token_count,
        cost_usd=response.metadata.estimated_cost_usd,
        processing_time=response.processing_time,
    )


@router.post("/chat/stream")
async def chat_stream(req: ChatRequest, state: dict = Depends(get_app_state)):
    orchestrator = state["orchestrator"]
    if orchestrator.is_processing:
        raise ConversationBusy()

    chunks = orchestrator.process_streaming_query(req.message, include_context=req.include_context)
    # Pull the first chunk here so setup failures still get a proper status code
    try:
        first = await chunks.__anext__()
    except StopAsyncIteration:
        first = None

    async def body():
        if first is None:
            return
        yield first
        try:
            async for chunk in chunks:
                yield chunk
        except ProviderError as e:
            yield f"\n[error: {e.category.value}] {e.message}"
        finally:
            await chunks.aclose()

    return StreamingResponse(body(), media_type="text/plain")


@router.post("/conversation/reset")
async def reset_conversation(state: dict = Depends(get_app_state)):
    await state["orchestrator"].reset_conversation_state()
    return {"status": "reset"}


@router.get("/providers", response_model=list[ProviderSummary])
async def list_providers(state: dict = Depends(get_app_state)):
    registry = state["registry"]
    summaries = []
    for provider in registry.providers():
        summaries.append(ProviderSummary(
            id=provider.provider_id,
            display_name=provider.display_name,
            kind=provider.kind,
            active=provider.provider_id == registry.active_id,
            ready=await provider.is_ready(),
            selected_model=provider.selected_model.id if provider.selected_model else None,
            models=provider.models,
        ))
    return summaries


@router.post("/providers/switch")
async def switch_provider(req: SwitchProviderRequest, state: dict = Depends(get_app_state)):
    provider = await state["orchestrator"].switch_provider(req.provider_id)
    return {
        "status": "switched",
        "provider": provider.provider_id,
        "model": provider.selected_model.id if provider.selected_model else None,
    }


@router.put("/providers/{provider_id}/key")
async def update_provider_key(provider_id: str, req: ApiKeyUpdate, state: dict = Depends(get_app_state)):
    """Set or clear an API key; an empty key removes the provider."""
    if provider_id not in SETTINGS_KEYS:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider_id}")
    credentials = state["credentials"]
    registry = state["registry"]
    credentials.set(provider_id, req.api_key)

    if credentials.has(provider_id):
        await registry.add_provider(registry.factories[provider_id]())
    else:
        await registry.remove_provider(provider_id)
    log.info("api_key_updated", provider=provider_id, configured=credentials.has(provider_id))
    return {
        "status": "updated",
        "provider": provider_id,
        "configured": credentials.has(provider_id),
        "active_provider": registry.active_id,
    }


@router.get("/usage")
async def get_usage(
    by_provider_only: bool = False,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    state: dict = Depends(get_app_state),
):
    totals = state["ledger"].aggregate(by_provider_only=by_provider_only, time_range=_time_range(start, end))
    return [t.model_dump() for t in totals]


@router.get("/usage/export")
async def export_usage(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    state: dict = Depends(get_app_state),
):
    csv_text = state["ledger"].export_csv(time_range=_time_range(start, end))
    return PlainTextResponse(
        csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=usage.csv"},
    )


@router.get("/budgets/{provider_id}")
async def get_budget(provider_id: str, state: dict = Depends(get_app_state)):
    budget = state["enforcer"].get_budget(provider_id)
    if budget is None:
        raise HTTPException(status_code=404, detail=f"No budget set for {provider_id}")
    return {"provider_id": provider_id, **budget.model_dump()}


@router.put("/budgets/{provider_id}")
async def put_budget(provider_id: str, req: BudgetUpdate, state: dict = Depends(get_app_state)):
    budget = Budget(**req.model_dump())
    await state["enforcer"].set_budget(provider_id, budget)
    return {"provider_id": provider_id, **budget.model_dump()}


@router.get("/status")
async def get_status(state: dict = Depends(get_app_state)):
    status = state["orchestrator"].system_status()
    return {
        **status.model_dump(mode="json"),
        "last_budget_alert": (
            state["enforcer"].last_alert.model_dump(mode="json") if state["enforcer"].last_alert else None
        ),
    }
