"""
Credential adapter around an external identity provider.

The provider itself (login, token exchange) is a black box; the adapter only
reads the current credential and refreshes it when it has expired. One adapter
per account is passed explicitly to the fetcher and the launch assembler.
"""
import asyncio
import datetime
import logging
from typing import Callable, Optional, Protocol

from .config import UserConfig
from .errors import AuthError
from .models import Credential

log = logging.getLogger(__name__)

# Offline credentials never expire.
FAR_FUTURE = datetime.datetime(9999, 12, 31, tzinfo=datetime.timezone.utc)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class CredentialProvider(Protocol):
    def current(self) -> Credential:
        ...

    async def refresh(self) -> Credential:
        """Returns a fresh credential or raises ``AuthError``."""
        ...


class OfflineCredentialProvider:
    """Credential built from the auth_* fields of config.json."""

    def __init__(self, user: UserConfig):
        self._credential = Credential(
            token=user.auth_access_token,
            expires_at=FAR_FUTURE,
            username=user.auth_player_name,
            uuid=user.auth_uuid,
            xuid=user.auth_xuid,
            user_type='msa',
        )

    def current(self) -> Credential:
        return self._credential

    async def refresh(self) -> Credential:
        return self._credential


class CredentialAdapter:

    def __init__(self, provider: CredentialProvider, *, clock: Callable[[], datetime.datetime] = utcnow):
        self.provider = provider
        self.clock = clock
        self._lock: Optional[asyncio.Lock] = None

    def current(self) -> Credential:
        return self.provider.current()

    async def credential(self) -> Credential:
        """The current credential, refreshed first if its expiry has passed."""
        credential = self.provider.current()
        if not credential.expired(self.clock()):
            return credential
        async with self._get_lock():
            # Another task may have refreshed while we waited.
            credential = self.provider.current()
            if credential.expired(self.clock()):
                log.info("Credential expired, refreshing.")
                credential = await self._refresh(credential)
        return credential

    async def token(self) -> str:
        return (await self.credential()).token

    async def force_refresh(self, rejected: Optional[Credential] = None) -> Credential:
        """
        Refreshes after a server rejected ``rejected``.

        Concurrent callers that saw the same rejected credential share one
        refresh.
        """
        async with self._get_lock():
            credential = self.provider.current()
            if rejected is not None and credential.token != rejected.token:
                return credential
            log.info("Credential rejected by the server, refreshing.")
            return await self._refresh(credential)

    async def _refresh(self, previous: Credential) -> Credential:
        credential = await self.provider.refresh()
        if credential.expired(self.clock()):
            raise AuthError(f"Refreshed credential for {previous.username} is already expired")
        return credential

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock
