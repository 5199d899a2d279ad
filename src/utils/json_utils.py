# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

import json
import logging
import re
from typing import Any, Dict

import json_repair

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def _extract_json_from_content(content: str) -> str:
    """
    Drop trailing tokens after the first balanced JSON object or array.

    Brackets inside string literals are ignored. Content that never
    balances is returned unchanged.
    """
    content = content.strip()

    depth = 0
    in_string = False
    escape_next = False
    for i, char in enumerate(content):
        if escape_next:
            escape_next = False
        elif char == '\\':
            escape_next = True
        elif char == '"':
            in_string = not in_string
        elif in_string:
            continue
        elif char in '{[':
            depth += 1
        elif char in '}]':
            depth -= 1
            if depth == 0:
                if i + 1 < len(content):
                    logger.debug(f"Truncated content from {len(content)} to {i + 1} chars")
                return content[:i + 1]

    return content


def repair_json_output(content: str) -> str:
    """
    Repair and normalize JSON output.

    Handles:
    - JSON with extra tokens after closing brackets
    - Incomplete JSON structures
    - Malformed JSON from small models

    Args:
        content (str): String content that may contain JSON

    Returns:
        str: Repaired JSON string, or original content if not JSON
    """
    content = content.strip()

    if not content:
        return content

    content = _extract_json_from_content(content)

    try:
        repaired_content = json_repair.loads(content)
        if not isinstance(repaired_content, (dict, list)):
            logger.warning("Repaired content is not a valid JSON object or array.")
            return content
        content = json.dumps(repaired_content, ensure_ascii=False)
    except Exception as e:
        logger.debug(f"JSON repair failed: {e}")

    return content


def parse_json_object(content: str) -> Dict[str, Any]:
    """
    Parse a completion response into a JSON object.

    Args:
        content: Raw completion text, possibly wrapped in code fences

    Returns:
        Parsed dictionary

    Raises:
        ValueError: If no JSON object can be recovered from the content
    """
    if not isinstance(content, str) or not content.strip():
        raise ValueError("Empty completion content")

    text = content.strip()
    fence = _FENCE_RE.match(text)
    if fence:
        text = fence.group(1)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        if not text.startswith(("{", "[")):
            raise ValueError("Completion content is not JSON")
        try:
            parsed = json.loads(repair_json_output(text))
        except json.JSONDecodeError as e:
            raise ValueError(f"Completion content could not be repaired: {e}")

    if not isinstance(parsed, dict):
        raise ValueError("Completion content is not a JSON object")
    return parsed
