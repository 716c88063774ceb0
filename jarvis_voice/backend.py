#!/usr/bin/env python3
"""Reply backend: webhook dispatch plus correlation-id polling.

The webhook may answer synchronously (the reply is in the POST response) or
asynchronously, in which case ``GET {callback_url}/{correlation_id}`` returns
the reply once it is ready (404/204/empty body until then).
"""

import asyncio
import json
import uuid
from typing import Any, Optional, Protocol

import aiohttp

from jarvis_voice.errors import DispatchFailed, ErrorKind, as_voice_error
from jarvis_voice.utils import jarvis_log

REPLY_FIELDS_LIST = ("output", "result", "text")
REPLY_FIELDS_DICT = ("result", "output", "text")


def extract_reply_text(data: Any, fallback_json: bool = False) -> str:
    """Pull the reply text out of a webhook/callback payload.

    Lists join their string items (or ``output``/``result``/``text`` fields)
    with blank lines; dicts use ``result``/``output``/``text``. With
    ``fallback_json`` an unrecognised non-empty payload is returned as JSON.
    """
    if data is None:
        return ""
    if isinstance(data, str):
        return data.strip()
    if isinstance(data, list):
        parts = []
        for item in data:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict):
                parts.append(next((str(item[k]) for k in REPLY_FIELDS_LIST if item.get(k)), ""))
        text = "\n\n".join(p for p in parts if p).strip()
        if not text and fallback_json and data:
            return json.dumps(data, ensure_ascii=False)
        return text
    if isinstance(data, dict):
        if data.get("error") and not fallback_json:
            return f"Error: {data['error']}"
        text = next((str(data[k]) for k in REPLY_FIELDS_DICT if data.get(k)), "")
        if not text and fallback_json and data:
            return json.dumps(data, ensure_ascii=False)
        return text.strip()
    return str(data).strip()


def _parse_body(body: str, fallback_json: bool) -> str:
    if not body.strip():
        return ""
    try:
        data = json.loads(body)
    except ValueError:
        return body.strip()
    return extract_reply_text(data, fallback_json=fallback_json)


class ReplyBackend(Protocol):
    async def dispatch(self, text: str, correlation_id: str) -> Optional[str]:
        """Send user text; return an immediate reply or None."""
        ...

    async def poll(self, correlation_id: str) -> Optional[str]:
        """Return the reply if it is ready, else None."""
        ...

    async def close(self) -> None: ...


class WebhookReplyBackend:
    """aiohttp webhook client."""

    def __init__(self, webhook_url: str, callback_url: str = "", user_id: str = "anon",
                 session_id: str = "", source: str = "jarvis-voice", timeout: float = 15.0):
        self.webhook_url = webhook_url
        self.callback_url = callback_url.rstrip("/")
        self.user_id = user_id or "anon"
        self.session_id = session_id
        self.source = source
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        return self._session

    def build_payload(self, text: str, correlation_id: str) -> dict:
        return {
            "message": text,
            "userId": self.user_id,
            "sessionId": self.session_id or None,
            "correlationId": correlation_id,
            "callbackUrl": self.callback_url,
            "source": self.source,
            "messageType": "CallMessage",
        }

    async def dispatch(self, text: str, correlation_id: str) -> Optional[str]:
        if not self.webhook_url:
            raise DispatchFailed("No webhook URL configured")
        try:
            async with self._get_session().post(self.webhook_url,
                                                json=self.build_payload(text, correlation_id)) as resp:
                body = await resp.text()
                if resp.status >= 400:
                    raise DispatchFailed(f"Webhook error {resp.status}: {body[:200] or resp.reason}")
        except aiohttp.ClientError as e:
            raise as_voice_error(e, ErrorKind.DISPATCH_FAILED) from e
        return _parse_body(body, fallback_json=False) or None

    async def poll(self, correlation_id: str) -> Optional[str]:
        if not self.callback_url:
            return None
        try:
            async with self._get_session().get(f"{self.callback_url}/{correlation_id}") as resp:
                if resp.status != 200:
                    return None
                body = await resp.text()
        except aiohttp.ClientError as e:
            raise as_voice_error(e, ErrorKind.DISPATCH_FAILED) from e
        return _parse_body(body, fallback_json=True) or None

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def new_correlation_id() -> str:
    return str(uuid.uuid4())


async def acquire_reply(backend: ReplyBackend, text: str, correlation_id: Optional[str] = None,
                        timeout_ms: int = 30000, interval_ms: int = 1200) -> Optional[str]:
    """Dispatch ``text`` and wait for the reply, polling until ``timeout_ms``.

    Dispatch errors propagate; poll errors are logged and polling continues.
    """
    correlation_id = correlation_id or new_correlation_id()
    reply = await backend.dispatch(text, correlation_id)
    if reply:
        return reply

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000.0
    while loop.time() < deadline:
        try:
            reply = await backend.poll(correlation_id)
        except Exception as e:
            voice_error = as_voice_error(e, ErrorKind.DISPATCH_FAILED)
            jarvis_log("BACKEND", f"Poll failed ({voice_error.kind.value}: {voice_error}), retrying",
                       level="WARNING")
            reply = None
        if reply:
            return reply
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        await asyncio.sleep(min(interval_ms / 1000.0, remaining))

    jarvis_log("BACKEND", f"No reply for {correlation_id} within {timeout_ms} ms", level="WARNING")
    return None
