"""Delegated calendar credential lifecycle: linking and pre-emptive refresh."""
from __future__ import annotations

import asyncio
import hashlib
import logging
import secrets
from collections import defaultdict
from datetime import timedelta

from .calendar_client import CalendarAdapter, bounded
from .clock import Clock
from .errors import NotFoundError, RefreshError
from .models import Credential, Provider
from .store import Store

logger = logging.getLogger(__name__)

DEFAULT_SKEW = timedelta(minutes=5)


def _digest(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


class CredentialManager:
    """Owns every write to a provider's credential.

    Refreshes are single-flight per provider: concurrent callers queue on a
    lock and re-read the stored credential, so a refresh token is spent at
    most once.
    """

    def __init__(
        self,
        store: Store,
        adapter: CalendarAdapter,
        clock: Clock,
        *,
        skew: timedelta = DEFAULT_SKEW,
        timeout: float = 15.0,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._clock = clock
        self._skew = skew
        self._timeout = timeout
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def needs_refresh(self, credential: Credential) -> bool:
        return self._clock.now() + self._skew >= credential.expiry

    async def ensure_fresh(self, provider: Provider) -> Credential | None:
        """Return a usable credential, refreshing it first if it is near expiry.

        ``None`` means the provider never linked a calendar. Raises
        RefreshError when sync is disabled or the refresh is rejected, and
        AdapterUnavailableError when the token endpoint cannot be reached.
        """
        if provider.credential is None:
            return None
        if provider.sync_disabled_reason:
            raise RefreshError(f"calendar sync disabled: {provider.sync_disabled_reason}")
        if not self.needs_refresh(provider.credential):
            return provider.credential

        async with self._locks[provider.id]:
            current = await self._store.find_provider(provider.id)
            if current is None:
                raise NotFoundError(f"provider {provider.id} not found")
            if current.credential is None:
                return None
            if current.sync_disabled_reason:
                raise RefreshError(f"calendar sync disabled: {current.sync_disabled_reason}")
            if not self.needs_refresh(current.credential):
                # another caller refreshed while we waited
                return current.credential
            return await self._refresh(current, current.credential)

    async def _refresh(self, provider: Provider, credential: Credential) -> Credential:
        if not credential.refresh_token:
            await self._disable(provider.id, "refresh token missing")
            raise RefreshError("credential expired and no refresh token is stored")

        try:
            renewed = await bounded(self._adapter.refresh_token(credential.refresh_token), self._timeout)
        except RefreshError as exc:
            await self._disable(provider.id, str(exc))
            raise

        updated = Credential(
            access_token=renewed.access_token,
            refresh_token=renewed.refresh_token or credential.refresh_token,
            expiry=renewed.expiry,
        )
        await self._store.update_provider_credential(provider.id, updated)
        logger.info("refreshed calendar credential for provider %s", provider.id)
        return updated

    async def _disable(self, provider_id: str, reason: str) -> None:
        logger.warning("disabling calendar sync for provider %s: %s", provider_id, reason)
        await self._store.disable_sync(provider_id, reason)

    async def begin_link(self, provider_id: str) -> str:
        """Mint a correlation token for the provider and return the consent URL."""
        provider = await self._store.find_provider(provider_id)
        if provider is None:
            raise NotFoundError(f"provider {provider_id} not found")
        correlation_token = secrets.token_urlsafe(24)
        await self._store.set_link_state(provider.id, correlation_token)
        return self._adapter.build_authorization_url(correlation_token)

    async def complete_link(self, correlation_token: str, code: str) -> Provider:
        provider = await self._store.find_provider_by_link_state(correlation_token)
        if provider is None:
            raise NotFoundError("unknown or expired calendar link request")

        code_digest = _digest(code)
        async with self._locks[provider.id]:
            current = await self._store.find_provider(provider.id)
            if current is None:
                raise NotFoundError(f"provider {provider.id} not found")
            if current.linked_code_digest == code_digest and current.link_state == correlation_token:
                logger.debug("duplicate calendar link callback for provider %s ignored", current.id)
                return current

            tokens = await bounded(self._adapter.exchange_code(code), self._timeout)
            if not tokens.refresh_token:
                logger.warning(
                    "calendar link for provider %s returned no refresh token; sync stops at expiry",
                    current.id,
                )
            calendar_id = await bounded(
                self._adapter.get_primary_calendar_id(access_token=tokens.access_token), self._timeout
            )
            linked = await self._store.save_calendar_link(
                current.id, credential=tokens, calendar_id=calendar_id, code_digest=code_digest
            )
        logger.info("linked calendar for provider %s", linked.id)
        return linked
