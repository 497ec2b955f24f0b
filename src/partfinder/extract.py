"""
Structured field extraction using OpenAI.

Turns a caller's utterance into vehicle search fields:
- year: Model year ("2018")
- make: Manufacturer ("Toyota")
- model: Model name ("Camry")
- item: The part being asked for ("brake pads")
- extras: Anything else worth keeping (["front", "ceramic"])

Extraction never raises to the call flow. Every failure (no API key, network
error, timeout, malformed output) comes back as an ExtractionResult with
success=False and an all-empty query.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import json
from typing import Any, List, Optional

import structlog
from openai import AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError, field_validator

from src.partfinder.config import Config, get_config

logger = structlog.get_logger(__name__)

EXTRACTION_PROMPT = """You are an assistant that extracts vehicle search fields from user speech.
Input: a single sentence where a person says what they want.
Return ONLY valid JSON with keys: year (string), make (string), model (string), item (string), extras (array of strings).
If a field isn't present, set it to an empty string or empty array.
Examples:
  Input: "2018 Toyota Camry brake pads"
  Output: {{"year":"2018","make":"Toyota","model":"Camry","item":"brake pads","extras":[]}}
Now extract from this input:
"{transcript}"
"""


class ParsedQuery(BaseModel):
    """Structured search fields for one utterance."""

    year: str = Field(default="", description="Vehicle model year")
    make: str = Field(default="", description="Vehicle manufacturer")
    model: str = Field(default="", description="Vehicle model name")
    item: str = Field(default="", description="The part the caller wants")
    extras: List[str] = Field(default_factory=list, description="Other qualifiers")

    @field_validator("year", "make", "model", "item", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, (list, dict)):
            return ""
        return str(value).strip()

    @field_validator("extras", mode="before")
    @classmethod
    def _coerce_extras(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value.strip()] if value.strip() else []
        if not isinstance(value, (list, tuple)):
            return []
        return [str(v).strip() for v in value if v is not None and str(v).strip()]

    @property
    def is_empty(self) -> bool:
        """True when there is nothing to search on."""
        return not (self.year or self.make or self.model or self.item)

    def describe(self) -> str:
        """Spoken form, e.g. "2018 Toyota Camry brake pads"."""
        return " ".join(p for p in (self.year, self.make, self.model, self.item) if p)


@dataclass
class ExtractionResult:
    """Result of an extraction attempt."""
    success: bool
    query: ParsedQuery = field(default_factory=ParsedQuery)
    error: Optional[str] = None
    latency_ms: float = 0.0
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def failed(cls, error: str, latency_ms: float = 0.0) -> "ExtractionResult":
        return cls(success=False, query=ParsedQuery(), error=error, latency_ms=latency_ms)


def parse_extraction_text(text: str) -> ParsedQuery:
    """
    Parse a model reply into a ParsedQuery.

    Tolerates prose before the JSON object by starting at the first "{".

    Raises:
        ValueError: If the reply holds no valid JSON object.
    """
    text = (text or "").strip()
    start = text.find("{")
    if start >= 0:
        text = text[start:]
        end = text.rfind("}")
        if end >= 0:
            text = text[: end + 1]

    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("Extraction reply is not a JSON object")

    try:
        return ParsedQuery.model_validate(data)
    except ValidationError as e:
        raise ValueError(str(e)) from e


class FieldExtractor:
    """
    OpenAI-backed field extractor.

    A client is only created when an API key is configured; without one every
    extraction fails fast without touching the network.
    """

    def __init__(self, config: Optional[Config] = None, client: Optional[Any] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_model
        self.timeout_seconds = config.extraction_timeout_seconds

        if client is None and config.openai_api_key:
            client = AsyncOpenAI(api_key=config.openai_api_key, max_retries=0)
        self._client = client

    @property
    def is_enabled(self) -> bool:
        return self._client is not None

    async def _complete(self, utterance: str) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "user", "content": EXTRACTION_PROMPT.format(transcript=utterance)},
            ],
            max_tokens=200,
            temperature=0,
        )
        return (response.choices[0].message.content or "").strip()

    async def extract(self, utterance: str) -> ExtractionResult:
        """
        Extract search fields from an utterance.

        Args:
            utterance: Recognized speech text (may be empty)

        Returns:
            ExtractionResult; on failure `query` is the all-empty default
        """
        utterance = (utterance or "").strip()
        if not utterance:
            return ExtractionResult.failed("Empty utterance")

        if self._client is None:
            logger.warning("Extraction skipped, OPENAI_API_KEY not set")
            return ExtractionResult.failed("OpenAI client not configured")

        loop = asyncio.get_running_loop()
        start_time = loop.time()

        try:
            text = await asyncio.wait_for(self._complete(utterance), timeout=self.timeout_seconds)
            query = parse_extraction_text(text)
        except asyncio.TimeoutError:
            latency_ms = (loop.time() - start_time) * 1000
            logger.warning(
                "Extraction timed out",
                timeout_seconds=self.timeout_seconds,
                latency_ms=round(latency_ms, 2),
            )
            return ExtractionResult.failed("Extraction timed out", latency_ms=latency_ms)
        except ValueError as e:
            latency_ms = (loop.time() - start_time) * 1000
            logger.warning("Extraction reply was not valid JSON", error=str(e))
            return ExtractionResult.failed(f"Malformed reply: {e}", latency_ms=latency_ms)
        except Exception as e:
            latency_ms = (loop.time() - start_time) * 1000
            logger.error("Extraction failed", error=str(e), latency_ms=round(latency_ms, 2))
            return ExtractionResult.failed(str(e), latency_ms=latency_ms)

        latency_ms = (loop.time() - start_time) * 1000
        logger.info(
            "Extraction completed",
            year=query.year,
            make=query.make,
            model=query.model,
            item=query.item,
            latency_ms=round(latency_ms, 2),
        )
        return ExtractionResult(success=True, query=query, latency_ms=latency_ms)
