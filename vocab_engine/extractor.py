from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Annotated, Any

import requests
from pydantic import BaseModel, ConfigDict, Field, StringConstraints, TypeAdapter, ValidationError, field_validator

from .config import WordExtractorConfig
from .errors import ConfigError, ExtractionError, ExtractionSchemaError
from .prompts import build_word_extraction_prompt
from .types import ExtractedGrammar, ExtractedWord, ExtractionResult
from .utils import term_key


logger = logging.getLogger(__name__)


NonBlank = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Trimmed = Annotated[str, StringConstraints(strip_whitespace=True)]


class WordCandidate(BaseModel):
    """One element of the model's JSON answer (a word or a grammar pattern)."""

    model_config = ConfigDict(strict=True, extra="ignore")

    korean: NonBlank
    english: NonBlank
    importance_score: float = Field(alias="importanceScore")
    sense_key: Trimmed = Field(default="", alias="senseKey")
    chapter_example: Trimmed = Field(default="", alias="chapterExample")
    global_example: Trimmed = Field(default="", alias="globalExample")

    @field_validator("importance_score")
    @classmethod
    def _finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("importanceScore must be finite")
        return v


class VocabularyAndGrammar(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")

    vocabulary: list[WordCandidate]
    grammar: list[WordCandidate] = Field(default_factory=list)


_CANDIDATES = TypeAdapter(list[WordCandidate])

# Structured-output schemas sent with the request (OpenAPI subset used by Gemini).
_ITEM_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "korean": {"type": "STRING"},
        "english": {"type": "STRING"},
        "importanceScore": {"type": "NUMBER"},
        "senseKey": {"type": "STRING"},
        "chapterExample": {"type": "STRING"},
        "globalExample": {"type": "STRING"},
    },
    "required": ["korean", "english", "importanceScore", "senseKey"],
}

WORD_RESPONSE_SCHEMA: dict[str, Any] = {"type": "ARRAY", "items": _ITEM_SCHEMA}

VOCABULARY_AND_GRAMMAR_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "vocabulary": {"type": "ARRAY", "items": _ITEM_SCHEMA},
        "grammar": {"type": "ARRAY", "items": _ITEM_SCHEMA},
    },
    "required": ["vocabulary", "grammar"],
}


def _schema_error(e: ValidationError) -> ExtractionSchemaError:
    return ExtractionSchemaError(
        f"response does not match word schema ({e.error_count()} errors): {e.errors()[0]['msg']}"
    )


def _convert(c: WordCandidate, cls: type[ExtractedWord] = ExtractedWord) -> ExtractedWord:
    return cls(
        korean=c.korean,
        english=c.english,
        importance_score=float(c.importance_score),
        sense_key=c.sense_key,
        chapter_example=c.chapter_example,
        global_example=c.global_example,
    )


def parse_words(text: str) -> list[ExtractedWord]:
    """Validate the model's JSON text into ExtractedWords.

    Every element must carry term, translation and a numeric score; one bad
    element fails the whole response. Sense key and examples are optional.
    """
    try:
        candidates = _CANDIDATES.validate_json(text)
    except ValidationError as e:
        raise _schema_error(e) from e
    return [_convert(c) for c in candidates]


def parse_vocabulary_and_grammar(text: str) -> ExtractionResult:
    """Validate a `{"vocabulary": [...], "grammar": [...]}` answer."""
    try:
        payload = VocabularyAndGrammar.model_validate_json(text)
    except ValidationError as e:
        raise _schema_error(e) from e
    return ExtractionResult(
        vocabulary=tuple(_convert(c) for c in payload.vocabulary),
        grammar=tuple(_convert(c, ExtractedGrammar) for c in payload.grammar),
    )


def entry_key(word: ExtractedWord) -> tuple[str, str]:
    """Identity of a vocabulary entry: the term plus the meaning it is used in."""
    return term_key(word.korean), term_key(word.sense_key)


def dedupe_words(words: list[ExtractedWord]) -> list[ExtractedWord]:
    """Keep one entry per (term, sense), highest score wins.

    Terms compare case/diacritic-insensitively. Homonyms with different
    sense keys are separate entries. First-seen order is preserved.
    """
    best: dict[tuple[str, str], ExtractedWord] = {}
    for w in words:
        k = entry_key(w)
        prev = best.get(k)
        if prev is None or w.importance_score > prev.importance_score:
            best[k] = w
    return list(best.values())


class WordExtractor(ABC):
    """Vocabulary extraction capability: text in, scored terms out."""

    @abstractmethod
    def request(self, text: str) -> ExtractionResult:
        """Call the model once and return its validated, undeduplicated answer."""

    def extract_all(self, text: str) -> ExtractionResult:
        """Vocabulary plus grammar patterns (empty unless the backend asks for them)."""
        if not text or not text.strip():
            logger.warning("Empty dialogue provided, skipping word extraction")
            return ExtractionResult()
        raw = self.request(text)
        result = ExtractionResult(
            vocabulary=tuple(dedupe_words(list(raw.vocabulary))),
            grammar=tuple(dedupe_words(list(raw.grammar))),
        )
        logger.info(
            "Word extraction completed: %d words (%d before dedupe), %d grammar patterns",
            len(result.vocabulary),
            len(raw.vocabulary),
            len(result.grammar),
        )
        return result

    def extract(self, text: str) -> list[ExtractedWord]:
        return list(self.extract_all(text).vocabulary)


@dataclass
class GeminiWordExtractor(WordExtractor):
    """Gemini generateContent REST client with JSON structured output."""

    cfg: WordExtractorConfig
    session: requests.Session | None = None

    def __post_init__(self) -> None:
        if not self.cfg.api_key:
            raise ConfigError("GEMINI_API_KEY not configured")

    def request(self, text: str) -> ExtractionResult:
        with_grammar = self.cfg.extract_grammar
        prompt = build_word_extraction_prompt(text, with_grammar=with_grammar)
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": VOCABULARY_AND_GRAMMAR_SCHEMA if with_grammar else WORD_RESPONSE_SCHEMA,
            },
        }
        url = f"{self.cfg.endpoint.rstrip('/')}/{self.cfg.model}:generateContent"
        logger.debug("Calling %s (prompt %d chars)", self.cfg.model, len(prompt))

        post = self.session.post if self.session is not None else requests.post
        try:
            response = post(
                url,
                headers={"x-goog-api-key": self.cfg.api_key, "Content-Type": "application/json"},
                json=body,
                timeout=self.cfg.timeout_s,
            )
        except requests.exceptions.RequestException as e:
            raise ExtractionError(f"extraction request failed: {e}") from e

        if not response.ok:
            raise ExtractionError(f"extraction API HTTP error: {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise ExtractionSchemaError(f"extraction API returned invalid JSON: {e}") from e

        answer = _candidate_text(payload)
        if with_grammar:
            return parse_vocabulary_and_grammar(answer)
        return ExtractionResult(vocabulary=tuple(parse_words(answer)))


def _candidate_text(payload: Any) -> str:
    try:
        text = payload["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError) as e:
        raise ExtractionSchemaError("invalid response from extraction API: no candidate text") from e
    if not isinstance(text, str) or not text.strip():
        raise ExtractionSchemaError("invalid response from extraction API: empty candidate text")
    return text
