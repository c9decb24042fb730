"""Generative AI calls: files -> Markdown, text -> summary, Markdown -> title."""
import base64
import json
import logging
import re
from typing import AsyncIterator, Callable, Optional, Protocol

import httpx

from doc2md import config
from doc2md.conversion.models import PreparedFile
from doc2md.conversion.prompts import SUMMARIZE_PROMPT, TITLE_PROMPT, conversion_prompt
from doc2md.errors import ConfigurationMissing, Doc2MDError, UpstreamCallFailed

logger = logging.getLogger("doc2md.ai")

ChunkCallback = Callable[[str], None]

_LEADING_FENCE = re.compile(r"^\s*```(markdown|md)?[ \t]*\n", re.IGNORECASE)
_TRAILING_FENCE = re.compile(r"\n?```\s*$")
_TITLE_SAMPLE_CHARS = 4000


def strip_fences(text: str) -> str:
    """Remove a wrapping ```markdown ... ``` block the model may add, then trim.

    A bare ``` opener only counts as a wrapper when the text also ends with a
    fence; any other language tag is a real code block and is left alone.
    """
    leading = _LEADING_FENCE.match(text)
    if leading:
        body = text[leading.end():]
        trailing = _TRAILING_FENCE.search(body)
        if leading.group(1) or trailing:
            text = body[:trailing.start()] if trailing else body
    return text.strip()


def sanitize_title(text: str) -> str:
    title = text.replace("```", "").replace("\n", " ").strip()[:50]
    title = re.sub(r"\s+", "-", title)
    title = re.sub(r"[^\w-]", "", title)
    title = re.sub(r"-+", "-", title).strip("-")
    return title or "document"


def title_sample(markdown: str) -> str:
    if len(markdown) <= 2 * _TITLE_SAMPLE_CHARS:
        return markdown
    return f"{markdown[:_TITLE_SAMPLE_CHARS]}\n\n[...]\n\n{markdown[-_TITLE_SAMPLE_CHARS:]}"


class AIBackend(Protocol):
    name: str

    def stream(
        self, files: list[PreparedFile], prompt: str, model: str, temperature: float = 0.1
    ) -> AsyncIterator[str]: ...

    async def complete(
        self,
        files: list[PreparedFile],
        prompt: str,
        model: str,
        temperature: float = 0.1,
        max_tokens: Optional[int] = None,
    ) -> str: ...


def _audio_format(media_type: str) -> str:
    if "wav" in media_type:
        return "wav"
    return "mp3"


def build_content(files: list[PreparedFile], prompt: str) -> list[dict]:
    """Chat-completions content parts: every file first, the instruction last."""
    content: list[dict] = []
    for f in files:
        if f.media_type.startswith("audio/"):
            content.append({
                "type": "input_audio",
                "input_audio": {"data": base64.b64encode(f.data).decode("ascii"), "format": _audio_format(f.media_type)},
            })
        elif f.media_type.startswith("text/"):
            text = f.data.decode("utf-8", errors="replace")
            content.append({"type": "text", "text": f"File: {f.name}\n\n{text}"})
        elif f.media_type == "application/pdf":
            b64 = base64.b64encode(f.data).decode("ascii")
            content.append({
                "type": "file",
                "file": {"filename": f.name, "file_data": f"data:application/pdf;base64,{b64}"},
            })
        else:
            b64 = base64.b64encode(f.data).decode("ascii")
            content.append({"type": "image_url", "image_url": {"url": f"data:{f.media_type};base64,{b64}"}})
    content.append({"type": "text", "text": prompt})
    return content


class OpenAICompatibleBackend:
    """Chat-completions client for any OpenAI-compatible endpoint (OpenAI, Gemini compat, local servers)."""

    name = "OpenAI-compatible API"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = config.AI_BASE_URL,
        timeout: float = config.AI_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = config.AI_API_KEY if api_key is None else api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        if not self.api_key:
            raise ConfigurationMissing("AI_API_KEY is not set")
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.api_key}"},
            transport=self._transport,
        )

    def _payload(self, files, prompt, model, temperature, **extra) -> dict:
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": build_content(files, prompt)}],
            "temperature": temperature,
            "top_p": 0.95,
        }
        payload.update({k: v for k, v in extra.items() if v is not None})
        return payload

    async def stream(
        self, files: list[PreparedFile], prompt: str, model: str, temperature: float = 0.1
    ) -> AsyncIterator[str]:
        logger.info("%s stream: %s | model=%s | files=%s", self.name, self.base_url, model, len(files))
        async with self._client() as client:
            try:
                async with client.stream(
                    "POST", "/chat/completions", json=self._payload(files, prompt, model, temperature, stream=True)
                ) as response:
                    if response.is_error:
                        await response.aread()
                        raise UpstreamCallFailed(self.name, _error_excerpt(response), model)
                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if data == "[DONE]":
                            break
                        fragment = _delta_text(data)
                        if fragment:
                            yield fragment
            except httpx.HTTPError as e:
                raise UpstreamCallFailed(self.name, str(e) or e.__class__.__name__, model) from e

    async def complete(
        self,
        files: list[PreparedFile],
        prompt: str,
        model: str,
        temperature: float = 0.1,
        max_tokens: Optional[int] = None,
    ) -> str:
        logger.info("%s request: %s | model=%s | files=%s", self.name, self.base_url, model, len(files))
        async with self._client() as client:
            try:
                response = await client.post(
                    "/chat/completions",
                    json=self._payload(files, prompt, model, temperature, max_tokens=max_tokens),
                )
            except httpx.HTTPError as e:
                raise UpstreamCallFailed(self.name, str(e) or e.__class__.__name__, model) from e
        if response.is_error:
            raise UpstreamCallFailed(self.name, _error_excerpt(response), model)
        choices = response.json().get("choices") or []
        message = (choices[0].get("message") or {}) if choices else {}
        return message.get("content") or ""


def _delta_text(data: str) -> Optional[str]:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed stream line: %s", data[:200])
        return None
    choices = payload.get("choices") or []
    if not choices:
        return None
    return (choices[0].get("delta") or {}).get("content")


def _error_excerpt(response: httpx.Response) -> str:
    excerpt = ""
    try:
        parsed = response.json()
        if isinstance(parsed, dict) and isinstance(parsed.get("error"), dict):
            excerpt = str(parsed["error"].get("message") or "").strip()
    except ValueError:
        excerpt = response.text[:200].strip()
    if excerpt:
        return f"HTTP {response.status_code}: {excerpt}"
    return f"HTTP {response.status_code}"


class AIConversionClient:
    """Builds the instruction for a request and applies the streaming/fence-stripping contract."""

    def __init__(self, backend: AIBackend, default_model: str = config.AI_DEFAULT_MODEL, title_model: Optional[str] = config.AI_TITLE_MODEL):
        self.backend = backend
        self.default_model = default_model
        self.title_model = title_model

    async def stream_convert(self, files: list[PreparedFile], model: Optional[str] = None) -> AsyncIterator[str]:
        prompt = conversion_prompt(len(files))
        async for fragment in self._stream(files, prompt, model or self.default_model, 0.1):
            yield fragment

    async def convert(
        self,
        files: list[PreparedFile],
        model: Optional[str] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> str:
        model = model or self.default_model
        if on_chunk is None:
            return strip_fences(await self._complete(files, conversion_prompt(len(files)), model, 0.1))
        return await self._collect(self.stream_convert(files, model), on_chunk)

    async def stream_summarize(self, text: str, model: Optional[str] = None) -> AsyncIterator[str]:
        prompt = f"{SUMMARIZE_PROMPT}\n\n{text}"
        async for fragment in self._stream([], prompt, model or self.default_model, 0.3):
            yield fragment

    async def summarize(self, text: str, model: Optional[str] = None, on_chunk: Optional[ChunkCallback] = None) -> str:
        model = model or self.default_model
        if on_chunk is None:
            return strip_fences(await self._complete([], f"{SUMMARIZE_PROMPT}\n\n{text}", model, 0.3))
        return await self._collect(self.stream_summarize(text, model), on_chunk)

    async def generate_title(self, markdown: str, model: Optional[str] = None) -> str:
        model = self.title_model or model or self.default_model
        prompt = f"{TITLE_PROMPT}\n{title_sample(markdown)}\n\nFile name:"
        text = await self._complete([], prompt, model, 0.3, max_tokens=200)
        return sanitize_title(text)

    @staticmethod
    async def _collect(fragments: AsyncIterator[str], on_chunk: ChunkCallback) -> str:
        parts: list[str] = []
        async for fragment in fragments:
            parts.append(fragment)
            on_chunk(fragment)
        return strip_fences("".join(parts))

    async def _stream(self, files, prompt, model, temperature) -> AsyncIterator[str]:
        try:
            async for fragment in self.backend.stream(files, prompt, model, temperature=temperature):
                yield fragment
        except Doc2MDError:
            raise
        except Exception as e:
            logger.exception("%s stream failed (model=%s)", self.backend.name, model)
            raise UpstreamCallFailed(self.backend.name, str(e), model) from e

    async def _complete(self, files, prompt, model, temperature, max_tokens=None) -> str:
        try:
            return await self.backend.complete(files, prompt, model, temperature=temperature, max_tokens=max_tokens)
        except Doc2MDError:
            raise
        except Exception as e:
            logger.exception("%s request failed (model=%s)", self.backend.name, model)
            raise UpstreamCallFailed(self.backend.name, str(e), model) from e
