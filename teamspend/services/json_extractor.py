# ==== JSON EXTRACTOR SERVICE ==== #

"""
Robust JSON extraction from LLM responses.

Models wrap JSON in markdown fences, add prose around it, or emit almost-JSON
with trailing commas and single quotes. This module finds the most plausible
object in a response and repairs the common mistakes before parsing.
"""

import json
import re
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from teamspend.observability.logging import get_logger


logger = get_logger(__name__)


# ==== DATA MODELS ==== #


class JsonExtractResult(BaseModel):
    """Outcome of a JSON extraction attempt."""
    data: Optional[Dict[str, Any]] = Field(None, description="Extracted JSON data")
    success: bool = Field(False, description="Whether extraction was successful")
    error: Optional[str] = Field(None, description="Error message if extraction failed")


# ==== CORE EXTRACTION FUNCTIONS ==== #


async def _find_json_block(text: str) -> Optional[str]:
    """
    Find a JSON object in text, preferring a fenced markdown block.

    Falls back to the largest balanced top-level brace span.

    Args:
        text (str): Source text to search

    Returns:
        Optional[str]: JSON block or None if not found
    """
    code_block_match = re.search(r'```(?:json|javascript)?\s*(\{[\s\S]*?\})\s*```', text, re.DOTALL)
    if code_block_match:
        return code_block_match.group(1).strip()

    brace_level = 0
    max_len = 0
    best_match = None
    start_index = -1

    for i, char in enumerate(text):
        if char == '{':
            if brace_level == 0:
                start_index = i
            brace_level += 1
        elif char == '}':
            if brace_level > 0:
                brace_level -= 1
                if brace_level == 0 and start_index != -1:
                    length = i - start_index + 1
                    if length > max_len:
                        max_len = length
                        best_match = text[start_index:i + 1]

    return best_match


async def _repair_json_string(s: str) -> str:
    """
    Repair common LLM JSON mistakes.

    Args:
        s (str): JSON-like string

    Returns:
        str: Repaired string ready for json.loads
    """
    # Remove trailing commas
    s = re.sub(r',\s*([\}\]])', r'\1', s)

    # Quote bare keys
    s = re.sub(r'([{,]\s*)([a-zA-Z_]\w*)(\s*:)', r'\1"\2"\3', s)

    # Single-quoted keys and values
    s = re.sub(r"'([\w_]+)'\s*:", r'"\1":', s)
    s = re.sub(r":\s*'([^']*)'", r': "\1"', s)

    # Python literals
    s = re.sub(r'\bTrue\b', 'true', s)
    s = re.sub(r'\bFalse\b', 'false', s)
    s = re.sub(r'\bNone\b', 'null', s)

    first_brace = s.find('{')
    last_brace = s.rfind('}')
    if first_brace != -1 and last_brace > first_brace:
        s = s[first_brace:last_brace + 1]

    return s.strip()


async def extract_json(text: str) -> JsonExtractResult:
    """
    Extract a JSON object from a model response.

    Args:
        text (str): Raw model output

    Returns:
        JsonExtractResult: Parsed object, or the reason parsing failed
    """
    if not text or not text.strip():
        return JsonExtractResult(success=False, error="Empty response")

    block = await _find_json_block(text)
    if block is None:
        return JsonExtractResult(success=False, error="No JSON object found")

    try:
        data = json.loads(block)
    except json.JSONDecodeError:
        repaired = await _repair_json_string(block)
        try:
            data = json.loads(repaired)
        except json.JSONDecodeError as e:
            logger.debug("JSON repair failed", error=str(e), preview=block[:200])
            return JsonExtractResult(success=False, error=f"Invalid JSON: {e}")

    if not isinstance(data, dict):
        return JsonExtractResult(success=False, error="Top-level JSON is not an object")

    return JsonExtractResult(data=data, success=True)
