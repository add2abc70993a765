"""Tests for AIService streaming, error normalization and client configuration."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from corex.config import AIConfig
from corex.errors import TransportError
from corex.services.ai_service import AIService


def _make_config(**overrides: Any) -> AIConfig:
    defaults: dict[str, Any] = {
        "base_url": "http://localhost:11434/v1",
        "api_key": "test-key",
        "model": "gpt-4o-mini",
        "request_timeout": 120,
        "verify_ssl": True,
        "retry_max_attempts": 0,  # no retries unless a test asks for them
        "retry_backoff_base": 0.1,
    }
    defaults.update(overrides)
    return AIConfig(**defaults)


def _make_service(config: AIConfig | None = None) -> AIService:
    service = AIService.__new__(AIService)
    service.config = config or _make_config()
    service.client = MagicMock()
    return service


def _chunk(content: str | None = None, finish_reason: str | None = None) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content), finish_reason=finish_reason)])


def _stream(*chunks: SimpleNamespace) -> Any:
    async def _gen():
        for c in chunks:
            yield c

    return _gen()


async def _collect(service: AIService, **kwargs: Any) -> list[dict[str, Any]]:
    return [e async for e in service.stream_chat([{"role": "user", "content": "hi"}], **kwargs)]


class TestClientConfiguration:
    def test_timeouts_applied(self) -> None:
        with patch("corex.services.ai_service.AsyncOpenAI") as mock_openai:
            AIService(_make_config(request_timeout=60, connect_timeout=8))
            http_client = mock_openai.call_args[1]["http_client"]
            assert isinstance(http_client, httpx.AsyncClient)
            assert http_client.timeout.read == 60.0
            assert http_client.timeout.connect == 8.0

    def test_verify_ssl_false_when_configured(self) -> None:
        with patch("corex.services.ai_service.httpx.AsyncClient") as mock_client_cls:
            with patch("corex.services.ai_service.AsyncOpenAI"):
                AIService(_make_config(verify_ssl=False))
            assert mock_client_cls.call_args[1]["verify"] is False

    def test_base_url_and_key_passed(self) -> None:
        with patch("corex.services.ai_service.AsyncOpenAI") as mock_openai:
            AIService(_make_config())
            kwargs = mock_openai.call_args[1]
            assert kwargs["base_url"] == "http://localhost:11434/v1"
            assert kwargs["api_key"] == "test-key"


class TestStreamChat:
    @pytest.mark.asyncio
    async def test_tokens_and_done(self) -> None:
        service = _make_service()
        service.client.chat.completions.create = AsyncMock(
            return_value=_stream(_chunk("Hel"), _chunk("lo"), _chunk(None, "stop"))
        )
        events = await _collect(service)
        kinds = [e["event"] for e in events]
        assert kinds == ["phase", "phase", "phase", "token", "token", "done"]
        assert [e["data"]["phase"] for e in events[:3]] == ["connecting", "waiting", "streaming"]
        assert "".join(e["data"]["content"] for e in events if e["event"] == "token") == "Hello"
        assert events[-1]["data"]["finish_reason"] == "stop"

    @pytest.mark.asyncio
    async def test_messages_sent_as_given(self) -> None:
        service = _make_service()
        service.client.chat.completions.create = AsyncMock(return_value=_stream(_chunk("x", "stop")))
        messages = [{"role": "system", "content": "sys"}, {"role": "user", "content": "q"}]
        [e async for e in service.stream_chat(messages, max_tokens=2048)]
        kwargs = service.client.chat.completions.create.call_args.kwargs
        assert kwargs["messages"] == messages
        assert kwargs["max_completion_tokens"] == 2048
        assert kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_default_max_tokens_from_output_mode(self) -> None:
        service = _make_service(_make_config(output_mode="detailed"))
        service.client.chat.completions.create = AsyncMock(return_value=_stream(_chunk("x", "stop")))
        await _collect(service)
        assert service.client.chat.completions.create.call_args.kwargs["max_completion_tokens"] == 16384

    @pytest.mark.asyncio
    async def test_empty_stream_is_done(self) -> None:
        service = _make_service()
        service.client.chat.completions.create = AsyncMock(return_value=_stream())
        events = await _collect(service)
        assert events[-1] == {"event": "done", "data": {}}

    @pytest.mark.asyncio
    async def test_cancel_before_start(self) -> None:
        service = _make_service()
        service.client.chat.completions.create = AsyncMock()
        cancel = asyncio.Event()
        cancel.set()
        assert await _collect(service, cancel_event=cancel) == []
        service.client.chat.completions.create.assert_not_called()


class TestErrorNormalization:
    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        from openai import APITimeoutError

        service = _make_service()
        service.client.chat.completions.create = AsyncMock(side_effect=APITimeoutError(request=MagicMock()))
        with patch.object(service, "_build_client") as mock_build:
            events = await _collect(service)
        errors = [e for e in events if e["event"] == "error"]
        assert len(errors) == 1
        assert errors[0]["data"]["code"] == "timeout"
        assert errors[0]["data"]["retryable"] is True
        assert mock_build.call_count == 1

    @pytest.mark.asyncio
    async def test_connection_error_retries_then_fails(self) -> None:
        from openai import APIConnectionError

        service = _make_service(_make_config(retry_max_attempts=1))
        service.client.chat.completions.create = AsyncMock(side_effect=APIConnectionError(request=MagicMock()))
        with patch.object(service, "_build_client"):
            events = await _collect(service)
        retrying = [e for e in events if e["event"] == "retrying"]
        assert len(retrying) == 1
        assert retrying[0]["data"]["attempt"] == 2
        assert events[-1]["data"]["code"] == "connection_error"

    @pytest.mark.asyncio
    async def test_auth_error(self) -> None:
        from openai import AuthenticationError

        service = _make_service()
        service.client.chat.completions.create = AsyncMock(
            side_effect=AuthenticationError(message="bad key", response=MagicMock(status_code=401), body={})
        )
        events = await _collect(service)
        assert events[-1]["data"]["code"] == "auth_failed"

    @pytest.mark.asyncio
    async def test_rate_limit(self) -> None:
        from openai import RateLimitError

        service = _make_service()
        service.client.chat.completions.create = AsyncMock(
            side_effect=RateLimitError(message="Rate limit exceeded", response=MagicMock(status_code=429), body={})
        )
        events = await _collect(service)
        assert events[-1]["data"] == {"message": "Rate limited by API provider", "code": "rate_limit", "retryable": True}

    @pytest.mark.asyncio
    async def test_context_length(self) -> None:
        from openai import BadRequestError

        service = _make_service()
        service.client.chat.completions.create = AsyncMock(
            side_effect=BadRequestError(
                message="too long",
                response=MagicMock(status_code=400),
                body={"error": {"code": "context_length_exceeded"}},
            )
        )
        events = await _collect(service)
        assert events[-1]["data"]["code"] == "context_length_exceeded"

    @pytest.mark.asyncio
    async def test_stream_stall(self) -> None:
        service = _make_service(_make_config(chunk_stall_timeout=5))
        service.config.chunk_stall_timeout = 0.05  # below the config clamp, set directly

        async def _stalled():
            yield _chunk("first")
            await asyncio.sleep(10)
            yield _chunk("never", "stop")

        service.client.chat.completions.create = AsyncMock(return_value=_stalled())
        with patch.object(service, "_build_client"):
            events = await _collect(service)
        assert [e["data"]["content"] for e in events if e["event"] == "token"] == ["first"]
        assert events[-1]["event"] == "error"
        assert events[-1]["data"]["code"] == "timeout"


class TestSendAndComplete:
    @pytest.mark.asyncio
    async def test_send_collects_tokens(self) -> None:
        service = _make_service()
        service.client.chat.completions.create = AsyncMock(
            return_value=_stream(_chunk("a"), _chunk("b"), _chunk(None, "stop"))
        )
        seen: list[str] = []
        reply = await service.send("hi", history=[{"role": "system", "content": "s"}], on_token=seen.append)
        assert reply == "ab"
        assert seen == ["a", "b"]
        messages = service.client.chat.completions.create.call_args.kwargs["messages"]
        assert messages == [{"role": "system", "content": "s"}, {"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_send_model_override(self) -> None:
        service = _make_service()
        service.client.chat.completions.create = AsyncMock(return_value=_stream(_chunk("x", "stop")))
        await service.send("hi", model_id="other-model")
        assert service.client.chat.completions.create.call_args.kwargs["model"] == "other-model"

    @pytest.mark.asyncio
    async def test_send_raises_transport_error(self) -> None:
        from openai import AuthenticationError

        service = _make_service()
        service.client.chat.completions.create = AsyncMock(
            side_effect=AuthenticationError(message="bad key", response=MagicMock(status_code=401), body={})
        )
        with pytest.raises(TransportError) as exc_info:
            await service.send("hi")
        assert exc_info.value.code == "auth_failed"

    @pytest.mark.asyncio
    async def test_complete(self) -> None:
        service = _make_service()
        response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="  A summary.  "))])
        service.client.chat.completions.create = AsyncMock(return_value=response)
        assert await service.complete("summarize", max_tokens=100) == "A summary."
        kwargs = service.client.chat.completions.create.call_args.kwargs
        assert kwargs["max_completion_tokens"] == 100
        assert "stream" not in kwargs

    @pytest.mark.asyncio
    async def test_complete_connection_error(self) -> None:
        from openai import APIConnectionError

        service = _make_service()
        service.client.chat.completions.create = AsyncMock(side_effect=APIConnectionError(request=MagicMock()))
        with patch.object(service, "_build_client"):
            with pytest.raises(TransportError) as exc_info:
                await service.complete("x")
        assert exc_info.value.retryable is True
        assert "localhost:11434" in exc_info.value.message


class TestValidateConnection:
    @pytest.mark.asyncio
    async def test_success(self) -> None:
        service = _make_service()
        service.client.models.list = AsyncMock(return_value=SimpleNamespace(data=[SimpleNamespace(id="m1")]))
        assert await service.validate_connection() == (True, "Connected successfully", ["m1"])

    @pytest.mark.asyncio
    async def test_connection_error(self) -> None:
        from openai import APIConnectionError

        service = _make_service()
        service.client.models.list = AsyncMock(side_effect=APIConnectionError(request=MagicMock()))
        with patch.object(service, "_build_client"):
            ok, message, models = await service.validate_connection()
        assert not ok
        assert "localhost:11434" in message
        assert models == []
