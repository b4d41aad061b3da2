"""
ProviderRegistry: the set of available providers and which one is active.

Switching is all-or-nothing. The current provider is cleaned up, the target
initialized, and only a successful initialization commits the change; a
failure restores the previous provider and re-raises.
"""

import asyncio
from typing import Callable, Optional

from conduit.llm.base import LLMProvider
from conduit.llm.errors import InvalidConfiguration, ProviderError
from conduit.llm.types import ProviderKind
from conduit.observability.logger import get_logger
from conduit.preferences import PreferenceStore

log = get_logger("llm.registry")

ACTIVE_PROVIDER_KEY = "active_provider"

ProviderListener = Callable[[Optional[LLMProvider]], None]


class ProviderRegistry:
    def __init__(
        self,
        local: LLMProvider,
        preferences: Optional[PreferenceStore] = None,
        credentials=None,
        factories: Optional[dict[str, Callable[[], LLMProvider]]] = None,
    ):
        self.local = local
        self.preferences = preferences or PreferenceStore()
        self.credentials = credentials
        self.factories = dict(factories or {})
        self._providers: dict[str, LLMProvider] = {local.provider_id: local}
        self._active: Optional[LLMProvider] = None
        self._listeners: list[ProviderListener] = []
        self._lock = asyncio.Lock()

    @property
    def active(self) -> Optional[LLMProvider]:
        return self._active

    @property
    def active_id(self) -> Optional[str]:
        return self._active.provider_id if self._active else None

    def providers(self) -> list[LLMProvider]:
        return list(self._providers.values())

    def get(self, provider_id: str) -> Optional[LLMProvider]:
        return self._providers.get(provider_id)

    def subscribe(self, listener: ProviderListener):
        self._listeners.append(listener)

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener(self._active)
            except Exception as e:
                log.warning("provider_listener_failed", error=str(e))

    async def sync_credentials(self):
        """Create or drop external providers to match the credential store."""
        if self.credentials is None:
            return
        for provider_id, factory in self.factories.items():
            has_key = self.credentials.has(provider_id)
            if has_key and provider_id not in self._providers:
                await self.add_provider(factory(), switch=False)
            elif not has_key and provider_id in self._providers:
                await self.remove_provider(provider_id)

    async def select_initial(self) -> Optional[LLMProvider]:
        """Persisted choice first, then any external provider, then local."""
        await self.sync_credentials()
        persisted = await self.preferences.get(ACTIVE_PROVIDER_KEY)
        candidates = []
        if persisted and persisted in self._providers:
            candidates.append(persisted)
        candidates += [
            p.provider_id for p in self._providers.values()
            if p.kind == ProviderKind.EXTERNAL and p.provider_id not in candidates
        ]
        if self.local.provider_id not in candidates:
            candidates.append(self.local.provider_id)

        for provider_id in candidates:
            try:
                return await self.switch_to(provider_id)
            except ProviderError as e:
                log.warning("provider_unavailable", provider=provider_id, error=e.message)
        log.error("no_provider_available", tried=candidates)
        return None

    async def switch_to(self, provider_id: str) -> LLMProvider:
        target = self._providers.get(provider_id)
        if target is None:
            raise InvalidConfiguration(f"unknown provider '{provider_id}'", provider_id=provider_id)

        async with self._lock:
            previous = self._active
            if previous is target and await target.is_ready():
                return target

            if previous is not None and previous is not target:
                await previous.cleanup()
            try:
                await target.initialize()
            except ProviderError as e:
                log.warning("provider_switch_failed", provider=provider_id, error=e.message,
                            category=e.category.value)
                if previous is not None and previous is not target:
                    await self._restore(previous)
                raise

            self._active = target
            await self.preferences.set(ACTIVE_PROVIDER_KEY, provider_id)
            log.info("provider_switched", provider=provider_id,
                     previous=previous.provider_id if previous else None)
        self._notify()
        return target

    async def _restore(self, provider: LLMProvider):
        try:
            await provider.initialize()
        except ProviderError as e:
            log.error("provider_restore_failed", provider=provider.provider_id, error=e.message)

    async def add_provider(self, provider: LLMProvider, switch: bool = True):
        """Register (or replace) a provider and, by default, try to make it active."""
        existing = self._providers.get(provider.provider_id)
        if existing is not None and existing is not provider:
            await existing.cleanup()
            if self._active is existing:
                self._active = None
        self._providers[provider.provider_id] = provider
        log.info("provider_added", provider=provider.provider_id, replaced=existing is not None)

        if not switch:
            return
        try:
            await self.switch_to(provider.provider_id)
        except ProviderError as e:
            log.warning("provider_auto_switch_failed", provider=provider.provider_id, error=e.message)
            if self._active is None and existing is not None:
                await self._fallback_to_local()

    async def remove_provider(self, provider_id: str):
        if provider_id == self.local.provider_id:
            raise InvalidConfiguration("the local provider cannot be removed", provider_id=provider_id)
        provider = self._providers.pop(provider_id, None)
        if provider is None:
            return
        await provider.cleanup()
        log.info("provider_removed", provider=provider_id)
        if self._active is provider:
            self._active = None
            await self._fallback_to_local()

    async def _fallback_to_local(self):
        try:
            await self.switch_to(self.local.provider_id)
        except ProviderError as e:
            log.error("local_fallback_failed", error=e.message)
            self._notify()

    async def update_selected_model(self, model_id: str):
        if self._active is None:
            raise InvalidConfiguration("no active provider")
        self._active.select_model(model_id)
        self._notify()

    async def close(self):
        for provider in self._providers.values():
            await provider.cleanup()
        self._active = None
        log.info("registry_closed")
