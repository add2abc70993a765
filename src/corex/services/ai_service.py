"""OpenAI SDK wrapper: the model call collaborator.

``stream_chat`` normalizes every failure into an ``{"event": "error"}`` event so
callers only ever deal with one event stream. ``send`` and ``complete`` are the
convenience forms that raise :class:`~corex.errors.TransportError` instead.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncGenerator, Callable, Sequence

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    BadRequestError,
    RateLimitError,
)

from ..config import AIConfig
from ..errors import TransportError

logger = logging.getLogger(__name__)


class _FirstTokenTimeoutError(Exception):
    """Raised when the first token does not arrive within first_token_timeout."""


class _StreamTimeoutError(Exception):
    """Raised when the stream stalls mid-response after the first token."""


def create_ai_service(config: AIConfig) -> "AIService":
    return AIService(config)


def _error_event(message: str, code: str = "", retryable: bool = False) -> dict[str, Any]:
    return {"event": "error", "data": {"message": message, "code": code, "retryable": retryable}}


async def _quiet_close(closeable: Any, timeout: float = 2.0) -> None:
    """Close a stream or iterator without letting cleanup failures escape."""
    for name in ("aclose", "close"):
        fn = getattr(closeable, name, None)
        if fn is None:
            continue
        try:
            await asyncio.wait_for(fn(), timeout=timeout)
        except (asyncio.TimeoutError, Exception):
            logger.debug("Ignoring error while closing stream", exc_info=True)
        return


async def _race_cancel(
    awaitable: Any, cancel_event: asyncio.Event | None, timeout: float
) -> tuple[str, Any]:
    """Await ``awaitable`` against a cancel event and a hard timeout.

    Returns ``("done", result)``, ``("cancelled", None)`` or ``("timeout", None)``.
    Exceptions raised by the awaitable propagate.
    """
    task = asyncio.ensure_future(awaitable)
    waiters: list[asyncio.Future[Any]] = [task]
    cancel_wait = asyncio.ensure_future(cancel_event.wait()) if cancel_event else None
    if cancel_wait is not None:
        waiters.append(cancel_wait)

    try:
        done, _pending = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        task.cancel()
        if cancel_wait is not None:
            cancel_wait.cancel()
        raise

    if cancel_wait is not None and cancel_wait not in done:
        cancel_wait.cancel()
    if not done:
        task.cancel()
        return "timeout", None
    if task not in done:
        task.cancel()
        return "cancelled", None
    return "done", task.result()


class AIService:
    def __init__(self, config: AIConfig) -> None:
        self.config = config
        self._build_client()

    def _build_client(self) -> None:
        """Build (or rebuild) the AsyncOpenAI client.

        Closes the previous client's HTTP pool so rebuilt clients do not leak connections.
        """
        old_client = getattr(self, "client", None)
        old_http = getattr(old_client, "_client", None) if old_client is not None else None
        if old_http is not None and hasattr(old_http, "aclose"):
            try:
                loop = asyncio.get_running_loop()
                task = loop.create_task(old_http.aclose())
                task.add_done_callback(lambda t: t.exception() if not t.cancelled() else None)
            except RuntimeError:
                pass  # no running loop yet

        timeout = httpx.Timeout(
            connect=float(self.config.connect_timeout),
            read=float(self.config.request_timeout),
            write=float(self.config.write_timeout),
            pool=float(self.config.pool_timeout),
        )
        # SECURITY-REVIEW: verify=False only when the user sets verify_ssl: false in config
        http_client = httpx.AsyncClient(verify=self.config.verify_ssl, timeout=timeout)
        self.client = AsyncOpenAI(
            base_url=self.config.base_url,
            api_key=self.config.api_key,
            http_client=http_client,
        )

    @staticmethod
    async def _iter_stream(
        stream_iter: Any,
        cancel_event: asyncio.Event | None,
        total_timeout: float,
        stall_timeout: float | None = None,
    ) -> AsyncGenerator[Any, None]:
        """Iterate an async stream with cancel-awareness, a stall limit and a hard deadline."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + total_timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning("Stream deadline exceeded before next chunk (%.0fs)", total_timeout)
                await _quiet_close(stream_iter)
                raise _StreamTimeoutError()

            wait_limit = min(remaining, stall_timeout) if stall_timeout else remaining
            try:
                outcome, chunk = await _race_cancel(stream_iter.__anext__(), cancel_event, wait_limit)
            except StopAsyncIteration:
                return

            if outcome == "cancelled":
                await _quiet_close(stream_iter)
                return
            if outcome == "timeout":
                logger.warning("Stream stalled: no chunk for %.0fs", wait_limit)
                await _quiet_close(stream_iter)
                raise _StreamTimeoutError()
            yield chunk

    def _retry_delay(self, attempt: int) -> float:
        return self.config.retry_backoff_base * (2**attempt)

    @staticmethod
    async def _cancellable_sleep(delay: float, cancel_event: asyncio.Event | None) -> bool:
        """Sleep for ``delay`` seconds. Returns True if cancelled while waiting."""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        cancel_event: asyncio.Event | None = None,
        max_tokens: int | None = None,
        model: str | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Stream one chat completion as ``phase``/``token``/``retrying``/``done``/``error`` events.

        ``messages`` is sent as-is; the caller owns the system prompt.
        """
        kwargs: dict[str, Any] = {
            "model": model or self.config.model,
            "messages": messages,
            "stream": True,
            "max_completion_tokens": max_tokens or self.config.max_output_tokens,
        }

        max_attempts = max(1, self.config.retry_max_attempts + 1)
        last_transient_error: Exception | None = None

        for attempt in range(max_attempts):
            if cancel_event and cancel_event.is_set():
                return

            try:
                yield {"event": "phase", "data": {"phase": "connecting"}}

                outcome, stream = await _race_cancel(
                    self.client.chat.completions.create(**kwargs),
                    cancel_event,
                    float(self.config.request_timeout),
                )
                if outcome == "cancelled":
                    logger.info("Cancelled during connecting phase")
                    return
                if outcome == "timeout":
                    logger.warning(
                        "API create() timed out after %ds (attempt %d/%d)",
                        self.config.request_timeout,
                        attempt + 1,
                        max_attempts,
                    )
                    raise _FirstTokenTimeoutError()

                yield {"event": "phase", "data": {"phase": "waiting"}}

                stream_iter = stream.__aiter__()
                try:
                    outcome, first_chunk = await _race_cancel(
                        stream_iter.__anext__(), cancel_event, float(self.config.first_token_timeout)
                    )
                except StopAsyncIteration:
                    await _quiet_close(stream)
                    yield {"event": "done", "data": {}}
                    return
                if outcome == "cancelled":
                    await _quiet_close(stream)
                    return
                if outcome == "timeout":
                    logger.warning(
                        "No first token within %ds (attempt %d/%d)",
                        self.config.first_token_timeout,
                        attempt + 1,
                        max_attempts,
                    )
                    await _quiet_close(stream)
                    raise _FirstTokenTimeoutError()

                yield {"event": "phase", "data": {"phase": "streaming"}}

                async def _chunks() -> AsyncGenerator[Any, None]:
                    yield first_chunk
                    async for c in AIService._iter_stream(
                        stream_iter,
                        cancel_event,
                        float(self.config.request_timeout),
                        float(self.config.chunk_stall_timeout),
                    ):
                        yield c

                try:
                    async for chunk in _chunks():
                        choice = chunk.choices[0] if chunk.choices else None
                        if not choice:
                            continue
                        if choice.delta and choice.delta.content:
                            yield {"event": "token", "data": {"content": choice.delta.content}}
                        if choice.finish_reason:
                            yield {"event": "done", "data": {"finish_reason": choice.finish_reason}}
                            return
                finally:
                    await _quiet_close(stream)

                # Stream ended (or was cancelled) without a finish_reason
                if not (cancel_event and cancel_event.is_set()):
                    yield {"event": "done", "data": {}}
                return

            except AuthenticationError:
                logger.error("Authentication failed")
                yield _error_event("Authentication failed. Check your API key.", "auth_failed")
                return
            except BadRequestError as e:
                body = getattr(e, "body", {}) or {}
                err_code = body.get("error", {}).get("code", "") if isinstance(body, dict) else ""
                if err_code == "context_length_exceeded" or "context_length" in str(e).lower():
                    logger.warning("Context length exceeded: %s", e)
                    yield _error_event("Conversation too long for model context window.", "context_length_exceeded")
                else:
                    logger.exception("AI bad request error")
                    yield _error_event("AI request error", "bad_request")
                return
            except RateLimitError as e:
                logger.warning("Rate limited by AI provider: %s", e)
                if cancel_event and cancel_event.is_set():
                    return
                yield _error_event("Rate limited by API provider", "rate_limit", retryable=True)
                return
            except APIStatusError as e:
                # Subclasses handled above; this branch is 5xx and remaining 4xx.
                if e.status_code < 500:
                    logger.warning("API client error %d: %s", e.status_code, type(e).__name__)
                    if cancel_event and cancel_event.is_set():
                        return
                    yield _error_event(f"API error (HTTP {e.status_code})", "api_error")
                    return
                last_transient_error = e
                logger.warning("API server error %d (attempt %d/%d)", e.status_code, attempt + 1, max_attempts)
                self._build_client()
            except _StreamTimeoutError:
                logger.warning("Stream timed out mid-response after first token")
                self._build_client()
                if cancel_event and cancel_event.is_set():
                    return
                yield _error_event("Stream timed out", "timeout", retryable=True)
                return
            except (APITimeoutError, APIConnectionError, _FirstTokenTimeoutError) as e:
                last_transient_error = e
                logger.warning("Transient error (attempt %d/%d): %s", attempt + 1, max_attempts, type(e).__name__)
                self._build_client()
            except Exception:
                logger.exception("AI stream error")
                yield _error_event("An internal error occurred")
                return

            if attempt < max_attempts - 1:
                delay = self._retry_delay(attempt)
                yield {
                    "event": "retrying",
                    "data": {
                        "attempt": attempt + 2,
                        "max_attempts": max_attempts,
                        "delay": delay,
                        "reason": "transient_error",
                    },
                }
                if await self._cancellable_sleep(delay, cancel_event):
                    return

        if isinstance(last_transient_error, APITimeoutError):
            yield _error_event(f"Request timed out ({max_attempts} attempts)", "timeout", retryable=True)
        elif isinstance(last_transient_error, _FirstTokenTimeoutError):
            yield _error_event(f"No response from API ({max_attempts} attempts)", "timeout", retryable=True)
        elif isinstance(last_transient_error, APIConnectionError):
            yield _error_event(f"Cannot connect to API ({max_attempts} attempts)", "connection_error", retryable=True)
        elif isinstance(last_transient_error, APIStatusError):
            yield _error_event(
                f"API server error (HTTP {last_transient_error.status_code}, {max_attempts} attempts)",
                "api_error",
                retryable=True,
            )

    async def send(
        self,
        prompt: str,
        model_id: str | None = None,
        history: Sequence[dict[str, Any]] = (),
        on_token: Callable[[str], None] | None = None,
    ) -> str:
        """Send one prompt (after ``history``) and return the full response text.

        Tokens are forwarded to ``on_token`` as they arrive. Raises TransportError
        if the stream reports an error.
        """
        messages = list(history) + [{"role": "user", "content": prompt}]
        parts: list[str] = []
        async for event in self.stream_chat(messages, model=model_id):
            kind = event["event"]
            data = event.get("data", {})
            if kind == "token":
                parts.append(data["content"])
                if on_token is not None:
                    on_token(data["content"])
            elif kind == "error":
                raise TransportError(
                    data.get("message", "AI request failed"),
                    code=data.get("code", ""),
                    retryable=bool(data.get("retryable", False)),
                )
        return "".join(parts)

    async def complete(self, prompt: str, max_tokens: int = 512) -> str:
        """Non-streaming single-shot completion, used for summaries."""
        try:
            response = await self.client.chat.completions.create(
                model=self.config.model,
                messages=[{"role": "user", "content": prompt}],
                max_completion_tokens=max_tokens,
            )
        except AuthenticationError as e:
            raise TransportError("Authentication failed. Check your API key.", code="auth_failed") from e
        except APITimeoutError as e:
            self._build_client()
            raise TransportError("Request timed out", code="timeout", retryable=True) from e
        except APIConnectionError as e:
            self._build_client()
            raise TransportError(f"Cannot connect to API at {self.config.base_url}", code="connection_error", retryable=True) from e
        except APIStatusError as e:
            raise TransportError(f"API error (HTTP {e.status_code})", code="api_error", retryable=e.status_code >= 500) from e
        return (response.choices[0].message.content or "").strip()

    async def validate_connection(self) -> tuple[bool, str, list[str]]:
        try:
            models = await self.client.models.list()
            model_ids = [m.id for m in models.data]
            return True, "Connected successfully", model_ids
        except AuthenticationError:
            logger.error("Authentication failed during connection validation")
            return False, "Authentication failed. Check your API key.", []
        except APITimeoutError:
            logger.warning("Connection validation timed out")
            self._build_client()
            return False, "Connection timed out. The API may be slow or unreachable.", []
        except APIConnectionError:
            logger.warning("Cannot connect to API at %s", self.config.base_url)
            self._build_client()
            return (
                False,
                f"Cannot connect to API at {self.config.base_url}. Check the URL and your network connection.",
                [],
            )
        except Exception as e:
            logger.error("AI connection validation failed: %s", e)
            return False, "Connection to AI service failed", []
