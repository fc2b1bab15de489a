from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence

from openai import OpenAI

from .errors import RecognitionFailure

logger = logging.getLogger(__name__)

RECOGNITION_PROMPT = (
    "Give me the text written on this notebook page. "
    "It can be German or English; answer in the language it was written in. "
    "The user may write the keywords 'CAL', 'TODO' or 'WA', but ONLY treat them as keywords "
    "when they are surrounded by a circle. "
    "Return the text exactly as written, one line per item. "
    "Every time you extract a keyword, put '--kw' in front of it. "
    "Return only the extracted text and preserve line breaks."
)

_FENCE_OPEN_RE = re.compile(r"^```\w*\n?")
_FENCE_CLOSE_RE = re.compile(r"\n?```$")


def strip_code_fences(text: str) -> str:
    """Some models wrap their whole answer in a Markdown code block."""
    out = (text or "").strip()
    while out.startswith("```") or out.endswith("```"):
        before = out
        out = _FENCE_OPEN_RE.sub("", out, count=1) if out.startswith("```") else out
        out = _FENCE_CLOSE_RE.sub("", out, count=1) if out.endswith("```") else out
        out = out.strip()
        if out == before:
            break
    return out


class RecognitionEngine:
    """
    Abstract recognition engine: image URLs in, raw page text out.
    Implementations should be stateless and reusable, and raise
    ``RecognitionFailure`` when the page cannot be read.
    """

    engine_version = "abstract"

    def recognize(self, image_urls: Sequence[str]) -> str:
        raise NotImplementedError


class OpenAIVisionRecognitionEngine(RecognitionEngine):
    """
    Vision-model recognizer over any OpenAI-compatible chat completions API
    (OpenAI itself or OpenRouter). The prompt asks the model to prefix circled
    keywords with ``--kw`` so the annotation parser can bucket them.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "openai/gpt-4o-mini",
        base_url: Optional[str] = "https://openrouter.ai/api/v1",
        image_detail: str = "low",
        max_tokens: int = 4000,
        client=None,
    ):
        self.client = client or OpenAI(api_key=api_key, base_url=base_url)
        self.model = model
        self.image_detail = image_detail
        self.max_tokens = max_tokens
        self.engine_version = f"openai-vision:{model}"

    def recognize(self, image_urls: Sequence[str]) -> str:
        if not image_urls:
            raise RecognitionFailure("No images to recognize")
        content: List[dict] = [{"type": "text", "text": RECOGNITION_PROMPT}]
        for url in image_urls:
            content.append({"type": "image_url", "image_url": {"url": url, "detail": self.image_detail}})

        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": content}],
                temperature=0,
                max_tokens=self.max_tokens,
            )
        except Exception as exc:  # noqa: BLE001
            raise RecognitionFailure(f"Recognition request failed: {exc}") from exc

        choices = getattr(resp, "choices", None) or []
        raw = choices[0].message.content if choices else None
        text = strip_code_fences(raw or "")
        if not text:
            raise RecognitionFailure("Recognition returned no text")
        logger.info("Recognized %s characters from %s image(s) with %s", len(text), len(image_urls), self.model)
        return text


class DoclingRecognitionEngine(RecognitionEngine):
    """
    Docling OCR recognizer for printed or neatly written pages. It reads each
    image URL through Docling's image pipeline and joins the text exports in
    submission order. It cannot see circles, so it never emits markers
    itself; markers only appear if the page literally says ``--kw``.
    """

    def __init__(self, perform_ocr: bool = True, engine_version: str = "docling-latest"):
        from docling.datamodel.base_models import InputFormat
        from docling.datamodel.pipeline_options import PdfPipelineOptions, RapidOcrOptions
        from docling.document_converter import DocumentConverter, ImageFormatOption

        self.engine_version = engine_version
        pipeline_options = PdfPipelineOptions()
        pipeline_options.do_ocr = perform_ocr
        pipeline_options.ocr_options = RapidOcrOptions()
        self.converter = DocumentConverter(
            format_options={InputFormat.IMAGE: ImageFormatOption(pipeline_options=pipeline_options)}
        )

    def recognize(self, image_urls: Sequence[str]) -> str:
        if not image_urls:
            raise RecognitionFailure("No images to recognize")
        parts: List[str] = []
        for url in image_urls:
            try:
                result = self.converter.convert(url)
            except Exception as exc:  # noqa: BLE001
                raise RecognitionFailure(f"Docling could not read {url}: {exc}") from exc
            parts.append(result.document.export_to_text().strip())
        text = "\n".join(p for p in parts if p)
        if not text:
            raise RecognitionFailure("Recognition returned no text")
        return text
