from pydantic import BaseModel

from conduit.llm.types import ModelDescriptor, ProviderKind


class ChatRequest(BaseModel):
    message: str
    include_context: bool = True


class ChatResponse(BaseModel):
    reply: str
    model: str | None = None
    provider: str | None = None
    tokens_used: int | None = None
    cost_usd: float | None = None
    processing_time: float | None = None


class SwitchProviderRequest(BaseModel):
    provider_id: str


class ProviderSummary(BaseModel):
    id: str
    display_name: str
    kind: ProviderKind
    active: bool
    ready: bool
    selected_model: str | None = None
    models: list[ModelDescriptor] = []


class BudgetUpdate(BaseModel):
    daily_usd: float | None = None
    monthly_usd: float | None = None
    block_on_exceed: bool = False


class ErrorResponse(BaseModel):
    error: str
    category: str
    provider: str | None = None


class ApiKeyUpdate(BaseModel):
    api_key: str = ""
