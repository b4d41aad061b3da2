from datetime import datetime, timezone
from typing import Optional

from conduit.models import Preference


class PreferenceStore:
    """Small key/value store for user choices such as the active provider."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory
        self._memory: dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        if self.session_factory is None:
            return self._memory.get(key)
        async with self.session_factory() as session:
            record = await session.get(Preference, key)
            return record.value if record else None

    async def set(self, key: str, value: str):
        if self.session_factory is None:
            self._memory[key] = value
            return
        async with self.session_factory() as session:
            record = await session.get(Preference, key)
            if record is None:
                record = Preference(key=key)
                session.add(record)
            record.value = value
            record.updated_at = datetime.now(timezone.utc)
            await session.commit()

    async def delete(self, key: str):
        if self.session_factory is None:
            self._memory.pop(key, None)
            return
        async with self.session_factory() as session:
            record = await session.get(Preference, key)
            if record is not None:
                await session.delete(record)
                await session.commit()
