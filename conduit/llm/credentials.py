from typing import Optional, Protocol

from conduit.config import Settings

# Provider id -> settings attribute holding its key
SETTINGS_KEYS = {
    "openai": "openai_api_key",
    "anthropic": "anthropic_api_key",
    "gemini": "gemini_api_key",
}


class CredentialStore(Protocol):
    def get(self, provider_id: str) -> Optional[str]: ...

    def has(self, provider_id: str) -> bool: ...

    def set(self, provider_id: str, api_key: str) -> None: ...

    def delete(self, provider_id: str) -> None: ...


class MemoryCredentialStore:
    def __init__(self, keys: Optional[dict[str, str]] = None):
        self._keys = {k: v for k, v in (keys or {}).items() if v}

    def get(self, provider_id: str) -> Optional[str]:
        return self._keys.get(provider_id)

    def has(self, provider_id: str) -> bool:
        return bool(self._keys.get(provider_id))

    def set(self, provider_id: str, api_key: str) -> None:
        if not api_key or not api_key.strip():
            self.delete(provider_id)
            return
        self._keys[provider_id] = api_key.strip()

    def delete(self, provider_id: str) -> None:
        self._keys.pop(provider_id, None)


class SettingsCredentialStore(MemoryCredentialStore):
    """Seeded from environment settings; runtime changes stay in memory."""

    def __init__(self, settings: Settings):
        super().__init__({
            provider_id: getattr(settings, attr)
            for provider_id, attr in SETTINGS_KEYS.items()
        })
