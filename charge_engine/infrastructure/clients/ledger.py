"""Accounting sync client with exponential backoff retry logic"""

import httpx
import asyncio
from typing import Dict, Any
from charge_engine.config import settings
from charge_engine.infrastructure.observability.metrics import sync_failure_counter


class AccountingSyncClient:
    """Tells the accounting sync service that staging records are ready to post"""

    def __init__(self, sync_url: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.sync_url = sync_url or settings.accounting_sync_url
        self.max_retries = settings.sync_max_retries
        self.backoff_base = settings.sync_backoff_base
        self.transport = transport

    async def notify_staging_ready(self, payload: Dict[str, Any]) -> None:
        """
        Send a staging-ready event to the sync service with retry logic.

        Retry strategy:
        - Exponential backoff: 1s, 2s, 4s, 8s (base * 2^(attempt-1))
        - Retries on 5xx errors and network failures
        - Final failure is re-raised; the staging rows stay queued for the next sync

        Args:
            payload: Event data, at least {"event", "staging_record_ids"}
        """
        attempt = 0
        async with httpx.AsyncClient(transport=self.transport) as client:
            while attempt < self.max_retries:
                try:
                    response = await client.post(
                        self.sync_url,
                        json=payload,
                        timeout=settings.http_timeout_seconds,
                    )
                    response.raise_for_status()
                    return

                except (httpx.HTTPStatusError, httpx.RequestError) as e:
                    attempt += 1
                    if isinstance(e, httpx.HTTPStatusError) and e.response.status_code < 500:
                        sync_failure_counter.inc()
                        raise

                    sync_failure_counter.inc()

                    if attempt >= self.max_retries:
                        raise

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    await asyncio.sleep(backoff)
