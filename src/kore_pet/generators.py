"""Text-generation collaborators.

A generator is any coroutine function `generate(prompt, options) -> str`.

Built-in providers:
    ollama_generate(model)   — local Ollama server, native asyncio HTTP,
                               retry with exponential backoff + jitter
    static_generate(text)    — fixed reply, for offline use and tests

GeneratorClient wraps a generator with a bounded timeout and turns every
failure into GeneratorError, so call sites can fall back uniformly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import re
import urllib.parse
import warnings
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from kore_pet.errors import GeneratorError, ParseError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerateOptions:
    temperature: float = 0.7
    max_tokens: int = 800


GenerateFn = Callable[[str, GenerateOptions], Awaitable[str]]


# ── Helpers ────────────────────────────────────────────────────────────


class _RetryableHTTPError(Exception):
    """HTTP status that should trigger a retry (5xx, 429)."""

    def __init__(self, status: int, body: bytes):
        self.status = status
        self.body = body
        super().__init__(f"HTTP {status}")


_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def extract_json(text: str, expect: type = dict) -> Any:
    """Pull the first JSON object (or list) out of free-form model output.

    Handles ```json fences and prose around the payload. Raises ParseError
    when nothing of the expected type can be decoded.
    """
    if not text:
        raise ParseError("empty response")
    fenced = _FENCE.search(text)
    if fenced:
        text = fenced.group(1)
    opener, closer = ("[", "]") if expect is list else ("{", "}")
    start = text.find(opener)
    end = text.rfind(closer)
    if start == -1 or end <= start:
        raise ParseError(f"no JSON {expect.__name__} in response")
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as exc:
        raise ParseError(f"malformed JSON: {exc}") from exc
    if not isinstance(data, expect):
        raise ParseError(f"expected {expect.__name__}, got {type(data).__name__}")
    return data


# ── Built-in providers ──────────────────────────────────────────────────


def static_generate(text: str) -> GenerateFn:
    """Generator that always answers `text`."""

    async def _generate(prompt: str, options: GenerateOptions) -> str:
        return text

    return _generate


def ollama_generate(
    model: str = "llama3",
    base_url: str = "http://localhost:11434",
    max_retries: int = 3,
    retry_base_delay: float = 0.5,
    retry_max_delay: float = 10.0,
    read_timeout: float = 60.0,
) -> GenerateFn:
    """Ollama /api/generate provider.

    Retries 5xx, 429, OSError and timeouts with exponential backoff + jitter.
    Raises GeneratorError once retries are exhausted or on any other HTTP error.
    """
    parsed = urllib.parse.urlparse(base_url)
    host = parsed.hostname or "localhost"
    port = parsed.port or 11434

    async def _post(payload: bytes) -> dict:
        """POST to /api/generate via native asyncio.open_connection."""
        last_exc: Exception | None = None
        for attempt in range(max_retries + 1):
            try:
                reader, writer = await asyncio.open_connection(host, port)
                try:
                    request = (
                        f"POST /api/generate HTTP/1.1\r\n"
                        f"Host: {host}:{port}\r\n"
                        f"Content-Type: application/json\r\n"
                        f"Content-Length: {len(payload)}\r\n"
                        f"Connection: close\r\n"
                        f"\r\n"
                    ).encode() + payload
                    writer.write(request)
                    await writer.drain()

                    status_line = await asyncio.wait_for(
                        reader.readline(), timeout=read_timeout
                    )
                    status = int(status_line.split(b" ")[1])

                    content_length = None
                    while True:
                        line = await reader.readline()
                        if line in (b"\r\n", b""):
                            break
                        if line.lower().startswith(b"content-length:"):
                            content_length = int(line.split(b":")[1].strip())

                    if content_length is None:
                        body = await asyncio.wait_for(reader.read(), timeout=read_timeout)
                    else:
                        body = await asyncio.wait_for(
                            reader.readexactly(content_length), timeout=read_timeout
                        )

                    if status >= 500 or status == 429:
                        raise _RetryableHTTPError(status, body)
                    if status >= 400:
                        raise GeneratorError(f"ollama HTTP {status}: {body[:200]!r}")
                    return json.loads(body)
                finally:
                    writer.close()
                    await writer.wait_closed()
            except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError,
                    _RetryableHTTPError) as exc:
                last_exc = exc
                if attempt < max_retries:
                    delay = min(retry_base_delay * (2 ** attempt), retry_max_delay)
                    delay *= random.uniform(0.5, 1.5)  # jitter
                    await asyncio.sleep(delay)
        raise GeneratorError(f"ollama unavailable: {last_exc}") from last_exc

    async def _generate(prompt: str, options: GenerateOptions) -> str:
        payload = json.dumps({
            "model": model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": options.temperature,
                "num_predict": options.max_tokens,
            },
        }).encode()
        try:
            data = await _post(payload)
            return data["response"]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise GeneratorError(f"unexpected ollama response: {exc}") from exc

    return _generate


# ── Client ─────────────────────────────────────────────────────────────


class GeneratorClient:
    """A generator plus timeout. complete() raises only GeneratorError."""

    def __init__(self, generate: GenerateFn | None, timeout: float = 30.0) -> None:
        self._generate = generate
        self._timeout = timeout
        self._warned = False

    @property
    def available(self) -> bool:
        return self._generate is not None

    async def complete(self, prompt: str, options: GenerateOptions) -> str:
        if self._generate is None:
            raise GeneratorError("no generator configured")
        try:
            text = await asyncio.wait_for(self._generate(prompt, options), self._timeout)
        except GeneratorError:
            raise
        except asyncio.TimeoutError as exc:
            raise GeneratorError(f"generator timed out after {self._timeout}s") from exc
        except Exception as exc:
            raise GeneratorError(f"generator failed: {exc}") from exc
        if not isinstance(text, str):
            raise GeneratorError(f"generator returned {type(text).__name__}, not str")
        return text

    def fell_back(self, where: str, reason: Exception) -> None:
        """Log a fallback. The first one per client also warns."""
        if self._generate is None:
            logger.debug("%s: no generator, using fallback", where)
            return
        logger.warning("%s: using fallback (%s)", where, reason)
        if not self._warned:
            warnings.warn(
                f"Text generator unavailable ({reason}); falling back to fixed content.",
                RuntimeWarning,
                stacklevel=3,
            )
            self._warned = True
