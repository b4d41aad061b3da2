import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderKind(str, Enum):
    LOCAL = "local"
    EXTERNAL = "external"


class Capability(str, Enum):
    TEXT_GENERATION = "text_generation"
    CONVERSATION = "conversation"
    SUMMARIZATION = "summarization"
    CODE_GENERATION = "code_generation"
    IMAGE_ANALYSIS = "image_analysis"
    FUNCTION_CALLING = "function_calling"


class ModelPricing(BaseModel):
    """USD per 1M tokens."""

    model_config = ConfigDict(frozen=True)

    input_per_mtok_usd: Optional[float] = None
    output_per_mtok_usd: Optional[float] = None
    cached_input_per_mtok_usd: Optional[float] = None


class ModelDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    context_window_tokens: int = 8192
    pricing: Optional[ModelPricing] = None
    cost_per_token: Optional[float] = None  # flat rate, used when pricing is absent
    capabilities: frozenset[Capability] = frozenset({Capability.TEXT_GENERATION, Capability.CONVERSATION})

    def estimate_cost(self, prompt_tokens: int, completion_tokens: int) -> Optional[float]:
        if self.pricing is not None:
            input_cost = (self.pricing.input_per_mtok_usd or 0.0) * (prompt_tokens / 1_000_000)
            output_cost = (self.pricing.output_per_mtok_usd or 0.0) * (completion_tokens / 1_000_000)
            return input_cost + output_cost
        if self.cost_per_token is not None:
            return (prompt_tokens + completion_tokens) * self.cost_per_token
        return None


class ProviderDescriptor(BaseModel):
    id: str
    display_name: str
    kind: ProviderKind
    capabilities: frozenset[Capability] = frozenset()
    models: list[ModelDescriptor] = Field(default_factory=list)
    selected_model: Optional[ModelDescriptor] = None


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ResponseMetadata(BaseModel):
    model_id: str
    provider_id: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    estimated_cost_usd: Optional[float] = None
    context_used: bool = False
    streamed: bool = False
    finish_reason: Optional[str] = None


class ConversationMessage(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)
    context_snapshot: Optional[str] = None
    response_metadata: Optional[ResponseMetadata] = None


class LLMResponse(BaseModel):
    text: str
    token_count: int = 0
    processing_time: float = 0.0
    metadata: ResponseMetadata


class UsageStatistics(BaseModel):
    request_count: int = 0
    token_count: int = 0
    average_response_time: float = 0.0
    error_count: int = 0
    last_used: Optional[datetime] = None
    estimated_cost: float = 0.0


# Provider settings: a tagged union over the setting kinds providers expose.

class _SettingBase(BaseModel):
    id: str
    name: str
    description: str = ""
    required: bool = False


class StringSetting(_SettingBase):
    kind: Literal["string"] = "string"
    default: str = ""
    current: str = ""


class NumberSetting(_SettingBase):
    kind: Literal["number"] = "number"
    default: float = 0.0
    current: float = 0.0
    minimum: Optional[float] = None
    maximum: Optional[float] = None


class BooleanSetting(_SettingBase):
    kind: Literal["boolean"] = "boolean"
    default: bool = False
    current: bool = False


class ChoiceSetting(_SettingBase):
    kind: Literal["choice"] = "choice"
    options: list[str] = Field(default_factory=list)
    default: str = ""
    current: str = ""


ProviderSetting = Annotated[
    Union[StringSetting, NumberSetting, BooleanSetting, ChoiceSetting],
    Field(discriminator="kind"),
]
