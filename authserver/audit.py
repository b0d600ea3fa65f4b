"""
Best-effort audit trail.

Events are queued without blocking the request and written out by a single
worker task. A full queue drops the event, and a failing sink never reaches
the caller.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aiohttp
import backoff
from loguru import logger

from authserver.config import settings

TOKEN_ISSUED = "oauth.token.issued"
TOKEN_REFRESHED = "oauth.token.refreshed"
TOKEN_REVOKED = "oauth.token.revoked"
TOKEN_REPLAY_DETECTED = "oauth.token.replay_detected"
TOKENS_REVOKED_ALL = "oauth.tokens.revoked_all"
CONSENT_REVOKED = "oauth.consent.revoked"
CLIENT_CREATED = "oauth.client.created"
CLIENT_UPDATED = "oauth.client.updated"
CLIENT_DEACTIVATED = "oauth.client.deactivated"
CLIENT_SECRET_ROTATED = "oauth.client.secret_rotated"
CLIENT_REGISTERED = "oauth.client.registered"
DEVICE_APPROVED = "oauth.device.approved"
DEVICE_DENIED = "oauth.device.denied"


class AuditEmitter:
    def __init__(self, sink_url: Optional[str] = None, maxsize: int = 1000):
        self.sink_url = sink_url
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._worker: Optional[asyncio.Task] = None
        self._http: Optional[aiohttp.ClientSession] = None

    @property
    def depth(self) -> int:
        return self.queue.qsize()

    def emit(
        self,
        action: str,
        user_id: Optional[str] = None,
        client_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        """
        Queue an event for the worker; never raises, never waits.
        """
        event = {
            "action": action,
            "user_id": user_id,
            "client_id": client_id,
            "details": details,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Audit queue full, dropping {action} event for client {client_id}")

    async def start(self) -> None:
        if self._worker and not self._worker.done():
            return
        if self.sink_url:
            self._http = aiohttp.ClientSession(
                raise_for_status=True,
                timeout=aiohttp.ClientTimeout(total=10),
            )
        self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """
        Flush what is queued, then shut the worker down.
        """
        if self._worker:
            await self.queue.join()
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._http:
            await self._http.close()
            self._http = None

    async def _run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self.write(event)
            except Exception as exc:
                logger.error(f"Failed to write audit event {event['action']}: {exc}")
            finally:
                self.queue.task_done()

    async def write(self, event: Dict[str, Any]) -> None:
        if self._http:
            await self._post(event)
            return
        logger.bind(audit=True).info(
            f"audit {event['action']} user={event['user_id']} "
            f"client={event['client_id']} details={event['details']}"
        )

    @backoff.on_exception(
        backoff.expo,
        aiohttp.ClientError,
        max_tries=3,
    )
    async def _post(self, event: Dict[str, Any]) -> None:
        async with self._http.post(self.sink_url, json=event) as response:
            await response.read()


def get_audit_emitter() -> AuditEmitter:
    return AuditEmitter(sink_url=settings.audit_sink_url, maxsize=settings.audit_queue_size)
