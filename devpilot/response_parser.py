"""
Response Parser

Models wrap JSON in markdown fences, chat around it, or get it slightly
wrong. Extraction escalates through:

1. The first fenced code block (```json ... ``` or ``` ... ```)
2. The outermost {...} span, then the outermost [...] span
3. The trimmed raw text

If none parses, one self-correction request asks a fixed provider/model to
repair the text; its reply is parsed as raw text only.
"""

import json
import logging
import re
from typing import Any, Optional

from .config import DevPilotConfig
from .errors import ParseFailure

logger = logging.getLogger(__name__)

FENCED_BLOCK = re.compile(r'```(?:json)?\s*([\s\S]*?)\s*```')

STRATEGY_FENCED = "fenced_block"
STRATEGY_OBJECT = "object_span"
STRATEGY_ARRAY = "array_span"
STRATEGY_RAW = "raw_text"
STRATEGY_CORRECTION = "self_correction"

SELF_CORRECTION_PROMPT = '''The following text was supposed to be valid JSON, but it could not be parsed.

## Invalid Text
{text}

## Instructions
1. Fix the syntax so the text is valid JSON
2. Keep the original structure and values; do not add or remove keys
3. Respond with ONLY the corrected JSON. No explanations, no markdown fences.
{shape_hint}'''


def _shape_ok(value: Any, expect: Optional[type]) -> bool:
    return expect is None or isinstance(value, expect)


def _candidates(text: str):
    """Yield (strategy, candidate) pairs in escalation order."""
    match = FENCED_BLOCK.search(text)
    if match and match.group(1):
        yield STRATEGY_FENCED, match.group(1).strip()

    start, end = text.find('{'), text.rfind('}')
    if start != -1 and end > start:
        yield STRATEGY_OBJECT, text[start:end + 1]

    start, end = text.find('['), text.rfind(']')
    if start != -1 and end > start:
        yield STRATEGY_ARRAY, text[start:end + 1]

    yield STRATEGY_RAW, text.strip()


def extract_json(text: str, expect: Optional[type] = None) -> tuple[Any, str]:
    """
    Extract JSON from free-form model output.

    Args:
        text: Raw completion text
        expect: `dict` or `list` to reject values of the wrong shape

    Returns:
        (value, strategy name)

    Raises:
        ParseFailure: if no strategy yields JSON of the expected shape
    """
    for strategy, candidate in _candidates(text or ""):
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError as e:
            logger.debug("JSON extraction via %s failed: %s", strategy, e)
            continue
        if not _shape_ok(value, expect):
            logger.debug("JSON extraction via %s gave %s, expected %s", strategy, type(value).__name__, expect.__name__)
            continue
        return value, strategy

    raise ParseFailure(
        "Failed to parse AI response. The model may have returned invalid JSON.",
        text=text or "",
    )


class ResponseParser:
    """
    Parses model output, falling back to one self-correction call.

    Usage:
        parser = ResponseParser(model_call, config)
        plan = await parser.parse(text, expect=dict)
    """

    def __init__(self, model_call, config: DevPilotConfig, transcript=None):
        self.model_call = model_call
        self.config = config
        self.transcript = transcript
        self.corrections_made = 0

    async def parse(self, text: str, expect: Optional[type] = None) -> Any:
        """
        Raises:
            ParseFailure: when extraction and self-correction both fail
            ProviderError / InsufficientBudget / MissingCredential: from the
                self-correction call
        """
        try:
            value, strategy = extract_json(text, expect)
        except ParseFailure:
            logger.warning("Model returned unparseable JSON; requesting self-correction")
            if self.transcript:
                self.transcript.log_parse(None, "all extraction strategies failed")
        else:
            if self.transcript:
                self.transcript.log_parse(strategy)
            return value

        return await self._self_correct(text, expect)

    async def _self_correct(self, text: str, expect: Optional[type]) -> Any:
        shape_hint = ""
        if expect is dict:
            shape_hint = "4. The result must be a JSON object.\n"
        elif expect is list:
            shape_hint = "4. The result must be a JSON array.\n"

        self.corrections_made += 1
        corrected = await self.model_call.call(
            SELF_CORRECTION_PROMPT.format(text=text, shape_hint=shape_hint),
            self.config.correction_provider,
            self.config.correction_model,
            function_name="self_correct_json",
        )

        try:
            value = json.loads(corrected.strip())
        except json.JSONDecodeError as e:
            if self.transcript:
                self.transcript.log_parse(None, f"self-correction output invalid: {e}")
            raise ParseFailure(
                f"Failed to parse AI response after self-correction: {e}",
                text=corrected,
            )

        if not _shape_ok(value, expect):
            raise ParseFailure(
                f"Self-corrected response is a {type(value).__name__}, expected {expect.__name__}",
                text=corrected,
            )

        if self.transcript:
            self.transcript.log_parse(STRATEGY_CORRECTION)
        return value
