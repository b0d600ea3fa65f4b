"""Unit tests for the audit emitter."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from authserver import audit
from authserver.audit import AuditEmitter


class TestAuditEmitter:
    def test_emit_queues_event(self):
        emitter = AuditEmitter()
        emitter.emit(audit.TOKEN_ISSUED, user_id="user-1", client_id="client-1", grant="code")
        assert emitter.depth == 1
        event = emitter.queue.get_nowait()
        assert event["action"] == "oauth.token.issued"
        assert event["user_id"] == "user-1"
        assert event["client_id"] == "client-1"
        assert event["details"] == {"grant": "code"}
        assert event["timestamp"]

    def test_full_queue_drops_event(self):
        emitter = AuditEmitter(maxsize=2)
        for _ in range(5):
            emitter.emit(audit.TOKEN_REVOKED, client_id="client-1")
        assert emitter.depth == 2

    @pytest.mark.asyncio
    async def test_worker_drains_queue(self):
        emitter = AuditEmitter()
        emitter.write = AsyncMock()
        await emitter.start()
        emitter.emit(audit.CLIENT_CREATED, client_id="a")
        emitter.emit(audit.CLIENT_UPDATED, client_id="a")
        await emitter.stop()
        assert emitter.depth == 0
        actions = [c.args[0]["action"] for c in emitter.write.call_args_list]
        assert actions == ["oauth.client.created", "oauth.client.updated"]

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_stop_worker(self):
        emitter = AuditEmitter()
        emitter.write = AsyncMock(side_effect=[RuntimeError("sink down"), None])
        await emitter.start()
        emitter.emit(audit.TOKEN_ISSUED)
        emitter.emit(audit.TOKEN_REFRESHED)
        await asyncio.wait_for(emitter.stop(), timeout=5)
        assert emitter.write.await_count == 2

    @pytest.mark.asyncio
    async def test_log_sink_without_url(self):
        emitter = AuditEmitter()
        with patch("authserver.audit.logger") as mock_logger:
            await emitter.write(
                {
                    "action": audit.CONSENT_REVOKED,
                    "user_id": "user-1",
                    "client_id": "client-1",
                    "details": {},
                }
            )
        mock_logger.bind.assert_called_once_with(audit=True)
        mock_logger.bind.return_value.info.assert_called_once()

    @pytest.mark.asyncio
    async def test_http_sink_posts_event(self):
        emitter = AuditEmitter(sink_url="https://audit.example.com/events")
        emitter._http = object()
        emitter._post = AsyncMock()
        event = {"action": audit.TOKEN_ISSUED, "user_id": None, "client_id": None, "details": {}}
        await emitter.write(event)
        emitter._post.assert_awaited_once_with(event)
