from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI

from conduit.api.routes import provider_error_handler, router as api_router
from conduit.budget.enforcer import BudgetEnforcer
from conduit.budget.ledger import UsageLedger
from conduit.budget.recorder import UsageRecorder
from conduit.config import Settings, settings as default_settings
from conduit.core.orchestrator import ConversationOrchestrator
from conduit.database import create_engine, create_session_factory, init_db
from conduit.llm.circuit_breaker import CircuitBreaker
from conduit.llm.credentials import SettingsCredentialStore
from conduit.llm.errors import ProviderError
from conduit.llm.executor import ResilientRequestExecutor
from conduit.llm.providers.anthropic import AnthropicProvider
from conduit.llm.providers.gemini import GeminiProvider
from conduit.llm.providers.ollama import OllamaProvider
from conduit.llm.providers.openai import OpenAIProvider
from conduit.llm.rate_limiter import RateLimiter
from conduit.llm.registry import ProviderRegistry
from conduit.memory.history import ConversationHistory
from conduit.observability.logger import get_logger, setup_logging
from conduit.preferences import PreferenceStore

log = get_logger("main")


def build_executor(settings: Settings, client: httpx.AsyncClient) -> ResilientRequestExecutor:
    rate_limiter = RateLimiter({
        "openai": settings.openai_min_interval_seconds,
        "anthropic": settings.anthropic_min_interval_seconds,
        "gemini": settings.gemini_min_interval_seconds,
        "local": settings.local_min_interval_seconds,
    })
    breaker = CircuitBreaker(
        failure_threshold=settings.circuit_failure_threshold,
        cooldown_seconds=settings.circuit_cooldown_seconds,
    )
    return ResilientRequestExecutor(
        client,
        breaker,
        rate_limiter,
        max_attempts=settings.max_attempts,
        base_backoff=settings.base_backoff_seconds,
        max_backoff=settings.max_backoff_seconds,
    )


async def build_services(settings: Settings) -> dict:
    """Wire every component together; the only place instances are created."""
    engine = create_engine(settings.resolved_database_url())
    await init_db(engine)
    session_factory = create_session_factory(engine)
    log.info("database_initialized")

    ledger = UsageLedger(session_factory)
    await ledger.load()
    enforcer = BudgetEnforcer(ledger, session_factory)
    await enforcer.load()
    recorder = UsageRecorder(ledger)

    client = httpx.AsyncClient(headers={"User-Agent": settings.user_agent})
    executor = build_executor(settings, client)
    credentials = SettingsCredentialStore(settings)
    common = {"recorder": recorder, "history_window": settings.history_window}

    local = OllamaProvider(
        executor,
        base_url=settings.ollama_host,
        default_model=settings.local_default_model,
        timeout=settings.local_timeout_seconds,
        **common,
    )
    factories = {
        "openai": lambda: OpenAIProvider(
            executor, credentials, settings.openai_base_url,
            timeout=settings.openai_timeout_seconds, **common,
        ),
        "anthropic": lambda: AnthropicProvider(
            executor, credentials, settings.anthropic_base_url,
            api_version=settings.anthropic_version,
            timeout=settings.anthropic_timeout_seconds, **common,
        ),
        "gemini": lambda: GeminiProvider(
            executor, credentials, settings.gemini_base_url,
            timeout=settings.gemini_timeout_seconds, **common,
        ),
    }
    registry = ProviderRegistry(local, PreferenceStore(session_factory), credentials, factories)
    await registry.select_initial()

    orchestrator = ConversationOrchestrator(
        registry,
        history=ConversationHistory(settings.max_history_messages, settings.max_history_tokens),
        enforcer=enforcer,
        history_window=settings.history_window,
        max_context_chars=settings.max_context_chars,
    )
    log.info("conduit_ready", active_provider=registry.active_id,
             providers=[p.provider_id for p in registry.providers()])

    return {
        "engine": engine,
        "session_factory": session_factory,
        "client": client,
        "ledger": ledger,
        "enforcer": enforcer,
        "recorder": recorder,
        "credentials": credentials,
        "registry": registry,
        "orchestrator": orchestrator,
    }


async def shutdown_services(services: dict):
    log.info("conduit_shutting_down")
    await services["registry"].close()
    await services["ledger"].flush()
    await services["client"].aclose()
    await services["engine"].dispose()


def create_app(services: Optional[dict] = None, settings: Settings = default_settings) -> FastAPI:
    """Build the API app. Passing ``services`` skips the wiring in the lifespan."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return
        setup_logging(settings.log_level, settings.log_json)
        log.info("conduit_starting")
        app.state.services = await build_services(settings)
        yield
        await shutdown_services(app.state.services)

    app = FastAPI(title="conduit", version="0.1.0", lifespan=lifespan)
    app.add_exception_handler(ProviderError, provider_error_handler)
    app.include_router(api_router)
    if services is not None:
        app.state.services = services
    return app


app = create_app()


def run():
    import uvicorn

    uvicorn.run("conduit.main:app", host="127.0.0.1", port=8000)
