from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Protocol, Sequence

import httpx

from toon_engine.core.errors import ModelError, QuotaExceededError
from toon_engine.services.gemini.types import ImagePart, PromptPart, TextPart

logger = logging.getLogger(__name__)


SAFETY_SETTINGS: list[dict[str, str]] = [
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
]


class ImageModelClient(Protocol):
    async def generate(self, parts: Sequence[PromptPart], temperature: float) -> ImagePart | None: ...


def serialize_parts(parts: Sequence[PromptPart]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for part in parts:
        if isinstance(part, TextPart):
            out.append({"text": part.text})
        elif isinstance(part, ImagePart):
            out.append({"inlineData": {"mimeType": part.mime_type, "data": part.to_base64()}})
        else:
            raise TypeError(f"unsupported prompt part: {type(part).__name__}")
    return out


def extract_image(payload: Any) -> ImagePart | None:
    """Pull the first inline image out of a generateContent response.

    Raises ModelError for blocked prompts and text-only answers so the caller
    can surface the reason; returns None for an empty candidate.
    """
    if not isinstance(payload, dict):
        raise ModelError("Gemini returned a malformed response")
    candidates = payload.get("candidates") or []
    if not candidates:
        block_reason = (payload.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise ModelError(f"Gemini blocked: {block_reason}")
        raise ModelError("Gemini returned no candidates")

    first = candidates[0] or {}
    if first.get("finishReason") == "SAFETY":
        raise ModelError("Gemini blocked by safety filter")

    parts = ((first.get("content") or {}).get("parts")) or []
    texts: list[str] = []
    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data")
        if isinstance(inline, dict) and inline.get("data"):
            try:
                data = base64.b64decode(inline["data"])
            except (binascii.Error, ValueError):
                raise ModelError("Gemini returned undecodable image data") from None
            mime = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            return ImagePart(data=data, mime_type=mime)
        if isinstance(part.get("text"), str):
            texts.append(part["text"])

    if texts:
        raise ModelError(f"Gemini returned text only: {' '.join(texts)[:150]}")
    return None


class GeminiImageClient:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        model: str,
        timeout_s: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = (api_key or "").strip()
        self._base_url = (base_url or "").rstrip("/")
        self._model = model
        self._timeout_s = float(timeout_s)
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout_s), transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _endpoint(self) -> str:
        return f"{self._base_url}/models/{self._model}:generateContent"

    async def generate(self, parts: Sequence[PromptPart], temperature: float) -> ImagePart | None:
        body = {
            "contents": [{"parts": serialize_parts(parts)}],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
                "temperature": float(temperature),
                "imageConfig": {"personGeneration": "ALLOW_ALL"},
            },
            "safetySettings": SAFETY_SETTINGS,
        }
        try:
            resp = await self._client.post(
                self._endpoint(),
                params={"key": self._api_key},
                json=body,
            )
        except httpx.TimeoutException:
            raise ModelError(f"Gemini API timeout ({self._timeout_s:g}s)") from None
        except httpx.HTTPError as exc:
            raise ModelError(f"Gemini fetch failed: {exc}") from exc

        if resp.status_code == 429 or (resp.status_code >= 400 and "RESOURCE_EXHAUSTED" in resp.text):
            raise QuotaExceededError(f"Gemini quota exceeded ({resp.status_code})")
        if resp.status_code >= 400:
            logger.warning("gemini.generate.http_error status=%s model=%s", resp.status_code, self._model)
            raise ModelError(f"Gemini {resp.status_code}: {resp.text[:200]}")

        try:
            payload = resp.json()
        except ValueError:
            raise ModelError("Gemini returned invalid JSON") from None

        image = extract_image(payload)
        logger.info(
            "gemini.generate.done model=%s parts=%s temperature=%s image=%s",
            self._model,
            len(parts),
            temperature,
            bool(image),
        )
        return image
