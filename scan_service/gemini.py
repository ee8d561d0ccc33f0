"""Gemini / Gemma multimodal client for batch phone extraction.

One request carries every image of a batch as inline bytes plus a single text
prompt asking for exactly one answer line per image, in image order.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from functools import lru_cache
from typing import Any

from google import genai
from google.genai import types

from scan_service.normalize import NOT_FOUND
from scan_service.scanning.types import WorkItem

logger = logging.getLogger(__name__)

_BATCH_INSTRUCTION = (
    "[Instruksi sistem] Saya mengirim {n} gambar. Untuk setiap gambar (gambar 1, gambar 2, ...), "
    "ekstrak nomor telepon WhatsApp Indonesia. Berikan SATU nomor per baris, urutan sesuai gambar "
    "(baris 1 = gambar 1, baris 2 = gambar 2, ...). Hanya nomor per baris, tanpa penjelasan. "
    "Jika tidak ada nomor, tulis: {not_found}."
)

_SAFETY_SETTINGS = [
    types.SafetySetting(
        category=types.HarmCategory.HARM_CATEGORY_HARASSMENT,
        threshold=types.HarmBlockThreshold.BLOCK_ONLY_HIGH,
    ),
]


@lru_cache(maxsize=32)
def get_client(api_key: str) -> genai.Client:
    """Cached client per API key; rotation just switches which one is used."""
    return genai.Client(api_key=api_key)


def build_batch_prompt(prompt: str, n: int) -> str:
    instruction = _BATCH_INSTRUCTION.format(n=n, not_found=NOT_FOUND)
    prompt = (prompt or "").strip()
    return f"{prompt}\n\n{instruction}" if prompt else instruction


def build_batch_contents(items: Sequence[WorkItem], prompt: str) -> list[types.Content]:
    parts = [types.Part.from_bytes(data=it.data, mime_type=it.mime_type) for it in items]
    parts.append(types.Part.from_text(text=build_batch_prompt(prompt, len(items))))
    return [types.Content(role="user", parts=parts)]


class GeminiBatchCaller:
    """Issues one streaming ``generate_content`` call for a batch of images."""

    def __init__(self, *, model: str, prompt: str, temperature: float = 0.0) -> None:
        self._model = model
        self._prompt = prompt
        self._config = types.GenerateContentConfig(
            temperature=temperature,
            safety_settings=_SAFETY_SETTINGS,
        )

    @property
    def model(self) -> str:
        return self._model

    async def __call__(self, items: Sequence[WorkItem], api_key: str) -> AsyncIterator[Any]:
        """Start the streaming call.

        The SDK sends the HTTP request on the first iteration of the returned
        stream, so quota and network errors surface while it is being read.
        """
        client = get_client(api_key)
        logger.debug(
            "Sending %d images to %s: %s",
            len(items),
            self._model,
            ", ".join(it.name for it in items),
        )
        return await client.aio.models.generate_content_stream(
            model=self._model,
            contents=build_batch_contents(items, self._prompt),
            config=self._config,
        )


async def check_gemini_client(api_key: str) -> bool:
    """Quick health check: verify a client can be built for the key."""
    try:
        get_client(api_key)
        return True
    except Exception:
        logger.warning("Gemini client health check failed", exc_info=True)
        return False
