"""OCR backends used by the turn sheet scanners.

``tesseract`` runs locally through pytesseract. ``openai:<model>`` sends the
image to a vision model and asks for a verbatim transcription.
"""

from __future__ import annotations

import base64
import hashlib
import io
from typing import Protocol

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import settings
from ..errors import OCRFailed, TransportTimeout
from ..logging import logger

_TRANSCRIBE_PROMPT = (
    "Transcribe every line of text on this scanned form exactly as printed, "
    "one line per output line. Keep checkbox marks: write [X] for a marked box "
    "and [ ] for an empty one. Do not summarise or correct spelling."
)


class OCRBackend(Protocol):
    def extract_text(self, image_bytes: bytes) -> str: ...


class TesseractOCR:
    """Local OCR through Pillow and pytesseract."""

    def __init__(self, lang: str = "eng", tesseract_cmd: str | None = None) -> None:
        import pytesseract

        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self._pytesseract = pytesseract
        self.lang = lang

    def extract_text(self, image_bytes: bytes) -> str:
        from PIL import Image, UnidentifiedImageError

        if not image_bytes:
            raise OCRFailed("empty image data")
        try:
            with Image.open(io.BytesIO(image_bytes)) as image:
                text = self._pytesseract.image_to_string(image.convert("L"), lang=self.lang)
        except UnidentifiedImageError as exc:
            raise OCRFailed(f"unreadable image: {exc}") from exc
        except (self._pytesseract.TesseractError, self._pytesseract.TesseractNotFoundError) as exc:
            raise OCRFailed(f"tesseract failed: {exc}") from exc
        if not text or not text.strip():
            raise OCRFailed("tesseract produced no text")
        return text


class OpenAIVisionOCR:
    """Hosted OCR through an OpenAI vision model."""

    def __init__(self, model: str, api_key: str | None = None, timeout: float = 60.0) -> None:
        from openai import OpenAI

        self.api_key = api_key or settings.ocr_config.openai_api_key
        if not self.api_key:
            raise ValueError("OpenAI API key not configured")
        self.model = model
        self.client = OpenAI(api_key=self.api_key, timeout=timeout, max_retries=0)
        logger.info("openai_ocr_initialized", model=model)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=20),
        retry=retry_if_exception_type(TransportTimeout),
        reraise=True,
    )
    def extract_text(self, image_bytes: bytes) -> str:
        import openai

        if not image_bytes:
            raise OCRFailed("empty image data")
        encoded = base64.b64encode(image_bytes).decode("ascii")
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                temperature=0,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": _TRANSCRIBE_PROMPT},
                            {
                                "type": "image_url",
                                "image_url": {"url": f"data:image/png;base64,{encoded}"},
                            },
                        ],
                    }
                ],
            )
        except (openai.APITimeoutError, openai.APIConnectionError) as exc:
            logger.warning("openai_ocr_timeout", model=self.model, error=str(exc))
            raise TransportTimeout(f"OCR service unavailable: {exc}") from exc
        except openai.APIError as exc:
            raise OCRFailed(f"OCR service error: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise OCRFailed("OCR service returned no text")
        return content


class CachedOCR:
    """Remembers the last image's text so every scanner tried on it shares one OCR pass."""

    def __init__(self, backend: OCRBackend) -> None:
        self.backend = backend
        self._last: tuple[str, str] | None = None

    def extract_text(self, image_bytes: bytes) -> str:
        key = hashlib.sha256(image_bytes).hexdigest()
        if self._last is None or self._last[0] != key:
            self._last = (key, self.backend.extract_text(image_bytes))
        return self._last[1]


def build_ocr_backend(ocr_model: str | None = None) -> OCRBackend:
    """Create the backend named by ``ocr_model`` (defaults to settings)."""
    config = settings.ocr_config
    ocr_model = ocr_model or config.ocr_model
    if ocr_model == "tesseract":
        return TesseractOCR(lang=config.tesseract_lang, tesseract_cmd=config.tesseract_cmd)
    if ocr_model.startswith("openai:"):
        model = ocr_model.split(":", 1)[1]
        if not model:
            raise ValueError("ocr_model 'openai:' requires a model name")
        return OpenAIVisionOCR(model, timeout=config.request_timeout_seconds)
    raise ValueError(f"Unknown ocr_model: {ocr_model}")
