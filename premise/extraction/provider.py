"""AI provider integration using Claude.

The provider extracts concepts, assumptions and intent from code it (or a
user) produced, narrates failure explanations, and answers enriched
requests. Everything it returns is parsed into local models; API and parse
failures surface as ProviderError so callers can degrade to partial results.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Protocol

import anthropic

from premise.config import DEFAULT_MODEL
from premise.errors import ProviderError
from premise.models import (
    AssumptionDraft,
    AssumptionKind,
    CodeLocation,
    ConceptCategory,
    Detection,
    ExtractionResult,
    ProviderResponse,
)

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BASE_DELAY = 2.0  # seconds
MAX_TOKENS = 2048
MAX_CODE_CHARS = 12000

EXTRACTION_PROMPT = """\
You are a code reasoning assistant. Analyze the following code from {location} and \
extract the concepts it implements, the assumptions it silently relies on, and the \
intent behind it.

**Concepts** are recurring engineering concerns. Use exactly one of these categories:
{categories}

**Assumptions** are conditions the code needs to hold but does not check or document:
- precondition: must be true before the code runs
- postcondition: the code promises this afterwards
- invariant: must stay true throughout
- dependency: relies on another component behaving a certain way

## Code

```
{code}
```

## Instructions

Respond with a JSON object:
{{"concepts": [
    {{"category": "one of the categories above", "signature": "short name of the construct",
      "start_line": 1, "end_line": 10, "confidence": 0.0-1.0}}
  ],
  "assumptions": [
    {{"description": "One sentence stating the assumption", "kind": "precondition|postcondition|invariant|dependency",
      "start_line": 1, "end_line": 10}}
  ],
  "intent": "One sentence describing what this code is for, or null"
}}

Line numbers are relative to the code shown. Omit them when the item covers the whole snippet.
If there is nothing to extract, return empty lists.

Respond ONLY with valid JSON, no other text.
"""

EXPLANATION_PROMPT = """\
You are helping a developer understand why their code failed. The local analysis below \
already identified the failure type and the assumptions most likely violated. Write a \
short explanation (at most 6 sentences) of what probably went wrong and what to check \
next. Do not propose a change that repeats one of the prior attempts.

## Failure analysis
{analysis}
"""

COMPLETION_PROMPT = """\
{prompt}

## Project context
The following knowledge was recorded for this part of the codebase. Treat constraints as \
requirements, do not repeat fixes listed as already failed, and respect the violated \
assumptions.

{context}
"""


class AssumptionProvider(Protocol):
    """What the core needs from an AI provider."""

    def extract(self, code: str, location: CodeLocation) -> ExtractionResult: ...

    def explain_failure(self, report) -> str: ...

    def complete(self, prompt: str, context: str) -> ProviderResponse: ...


class AnthropicProvider:
    """Claude-backed provider."""

    def __init__(self, client: anthropic.Anthropic, model: str = DEFAULT_MODEL) -> None:
        self._client = client
        self._model = model

    @classmethod
    def from_api_key(cls, api_key: str, model: str = DEFAULT_MODEL) -> AnthropicProvider:
        return cls(anthropic.Anthropic(api_key=api_key), model)

    def extract(self, code: str, location: CodeLocation) -> ExtractionResult:
        """Extract concepts, assumptions and intent from ``code`` found at ``location``."""
        if not code.strip():
            return ExtractionResult()
        if len(code) > MAX_CODE_CHARS:
            code = code[:MAX_CODE_CHARS] + "\n... (truncated)"
        prompt = EXTRACTION_PROMPT.format(
            location=location.key,
            categories=", ".join(c.value for c in ConceptCategory),
            code=code,
        )
        text = self._send(prompt, purpose="extraction")
        return _parse_extraction(text, location)

    def explain_failure(self, report) -> str:
        prompt = EXPLANATION_PROMPT.format(analysis=report.to_text())
        return self._send(prompt, purpose="failure explanation").strip()

    def complete(self, prompt: str, context: str) -> ProviderResponse:
        """Answer ``prompt`` with the composed project context attached."""
        text = self._send(
            COMPLETION_PROMPT.format(prompt=prompt, context=context or "(none recorded)"),
            purpose="completion",
            max_tokens=4096,
        )
        code, explanation = _split_code(text)
        return ProviderResponse(generated_code=code, free_text_explanation=explanation)

    def _send(self, prompt: str, purpose: str, max_tokens: int = MAX_TOKENS) -> str:
        for attempt in range(MAX_RETRIES):
            try:
                response = self._client.messages.create(
                    model=self._model,
                    max_tokens=max_tokens,
                    messages=[{"role": "user", "content": prompt}],
                )
                break
            except anthropic.RateLimitError as e:
                if attempt < MAX_RETRIES - 1:
                    delay = RETRY_BASE_DELAY * (2**attempt)
                    logger.warning(f"Rate limited, retrying in {delay}s...")
                    time.sleep(delay)
                else:
                    logger.error(f"Rate limited after {MAX_RETRIES} retries during {purpose}")
                    raise ProviderError(f"Rate limited during {purpose}") from e
            except anthropic.APIError as e:
                logger.error(f"API error during {purpose}: {e}")
                raise ProviderError(f"API error during {purpose}: {e}") from e

        if not response.content:
            raise ProviderError(f"Empty response during {purpose}")
        return response.content[0].text


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    return text


def _split_code(text: str) -> tuple[str, str]:
    """Separate the first fenced code block from the surrounding prose."""
    start = text.find("```")
    if start == -1:
        return "", text.strip()
    end = text.find("```", start + 3)
    if end == -1:
        return _strip_fences(text[start:]), text[:start].strip()
    block = text[start:end + 3]
    prose = (text[:start] + text[end + 3:]).strip()
    return _strip_fences(block), prose


def _sub_location(base: CodeLocation, item: dict) -> CodeLocation:
    """Map snippet-relative line numbers onto ``base``."""
    start = item.get("start_line")
    end = item.get("end_line")
    if not isinstance(start, int) or start < 1:
        return base
    if not isinstance(end, int) or end < start:
        end = start
    offset = (base.start_line or 1) - 1
    return CodeLocation(base.path, start + offset, end + offset)


def _items(data: dict, key: str, location: CodeLocation) -> list[dict]:
    """The object entries of list ``key``; null or missing means none."""
    value = data.get(key) or []
    if not isinstance(value, list):
        raise ProviderError(f"Extraction response for {location} has a non-list {key!r}")
    items = [item for item in value if isinstance(item, dict)]
    if len(items) < len(value):
        logger.warning(f"Skipping {len(value) - len(items)} malformed {key} entry(ies) for {location}")
    return items


def _parse_extraction(text: str, location: CodeLocation) -> ExtractionResult:
    """Parse Claude's JSON response into an ExtractionResult."""
    text = _strip_fences(text)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse extraction JSON for {location}: {text[:200]}")
        raise ProviderError(f"Unparseable extraction response for {location}") from e
    if not isinstance(data, dict):
        raise ProviderError(f"Extraction response for {location} is not an object")

    valid_categories = {c.value for c in ConceptCategory}
    valid_kinds = {k.value for k in AssumptionKind}
    result = ExtractionResult()

    for item in _items(data, "concepts", location):
        category = item.get("category")
        if not isinstance(category, str) or category not in valid_categories:
            logger.warning(f"Skipping concept with invalid category: {category}")
            continue
        try:
            confidence = min(max(float(item.get("confidence", 0.5)), 0.0), 1.0)
        except (TypeError, ValueError):
            confidence = 0.5
        result.detections.append(Detection(
            category=ConceptCategory(category),
            location=_sub_location(location, item),
            confidence=confidence,
            signature=str(item.get("signature") or ""),
        ))

    for item in _items(data, "assumptions", location):
        kind = item.get("kind")
        description = str(item.get("description") or "").strip()
        if not isinstance(kind, str) or kind not in valid_kinds or not description:
            logger.warning(f"Skipping assumption with invalid kind or empty description: {kind}")
            continue
        result.assumptions.append(AssumptionDraft(
            description=description,
            kind=AssumptionKind(kind),
            location=_sub_location(location, item),
        ))

    intent = data.get("intent")
    if isinstance(intent, str) and intent.strip():
        result.intent = intent.strip()
    return result
