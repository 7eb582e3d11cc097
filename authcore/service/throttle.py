from __future__ import annotations

from authcore.config import Settings
from authcore.logging import get_logger

logger = get_logger(__name__)


class LoginThrottle:
    """Per-address admin login failure counter with a timed lockout."""

    def __init__(self, cache, settings: Settings) -> None:
        self.cache = cache
        self.settings = settings

    @property
    def lockout_seconds(self) -> int:
        return self.settings.login_lockout_minutes * 60

    async def is_locked(self, address: str) -> bool:
        return await self.cache.is_locked(address)

    async def record_failure(self, address: str) -> bool:
        locked = await self.cache.record_failure(
            address, self.settings.login_max_failures, self.lockout_seconds
        )
        if locked:
            logger.warning(
                "admin_login_locked",
                source_address=address,
                lockout_seconds=self.lockout_seconds,
            )
        return locked

    async def record_success(self, address: str) -> None:
        await self.cache.clear_failures(address)
