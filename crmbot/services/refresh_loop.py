from __future__ import annotations

import asyncio
from datetime import datetime
import logging
from typing import Optional

from crmbot.core.config import get_settings
from crmbot.core.errors import StorageError
from crmbot.services.token_refresher import TokenRefresher
from crmbot.services.token_store import TokenStore, expires_within


logger = logging.getLogger(__name__)


class BackgroundRefresher:
    """Periodic sweep that refreshes tokens close to expiry, one chat at a time."""

    def __init__(
        self,
        refresher: TokenRefresher,
        interval_seconds: Optional[float] = None,
        startup_delay_seconds: Optional[float] = None,
        delay_between_seconds: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.refresher = refresher
        self.interval_seconds = settings.refresh_interval_seconds if interval_seconds is None else interval_seconds
        self.startup_delay_seconds = settings.refresh_startup_delay_seconds if startup_delay_seconds is None else startup_delay_seconds
        self.delay_between_seconds = settings.refresh_delay_seconds if delay_between_seconds is None else delay_between_seconds

    def _list_expirations(self) -> list[tuple[str, datetime]]:
        with self.refresher.session_factory() as db:
            return TokenStore(db, self.refresher.expiry_margin).list_expirations()

    async def sweep(self) -> int:
        """Refresh every stored token inside the expiry margin; returns how many were minted.

        Rows refreshed by a concurrent ``get_valid`` in the meantime are skipped.
        """
        try:
            rows = self._list_expirations()
        except StorageError as exc:
            logger.warning("refresh_loop.sweep skipped: store unavailable (%s)", exc)
            return 0

        due = [user_id for user_id, expires_at in rows if expires_within(expires_at, self.refresher.expiry_margin)]
        logger.info("refresh_loop.sweep checked=%s due=%s", len(rows), len(due))

        refreshed = 0
        for index, user_id in enumerate(due):
            if index:
                await asyncio.sleep(self.delay_between_seconds)
            try:
                result = await self.refresher.refresh(user_id, force=False)
            except StorageError as exc:
                logger.error("refresh_loop.refresh user=%s storage_error=%s", user_id, exc)
                continue
            except Exception:
                logger.exception("refresh_loop.refresh user=%s crashed", user_id)
                continue
            if result.reused:
                logger.info("refresh_loop.refresh user=%s already fresh", user_id)
            elif result.success:
                refreshed += 1
            else:
                logger.error("refresh_loop.refresh user=%s failed kind=%s error=%s", user_id, result.error_kind, result.error)

        logger.info("refresh_loop.sweep done refreshed=%s", refreshed)
        return refreshed

    async def run(self) -> None:
        await asyncio.sleep(self.startup_delay_seconds)
        while True:
            try:
                await self.sweep()
            except Exception:
                # keep the loop alive; the next tick retries
                logger.exception("refresh_loop.sweep crashed")
            await asyncio.sleep(self.interval_seconds)
