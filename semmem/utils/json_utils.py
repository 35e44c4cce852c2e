"""
JSON utilities for parsing LLM responses.
"""

import json
from typing import Any


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_json_response(response: str) -> Any:
    """Parse an LLM response into a JSON value.

    Falls back to the outermost object or array embedded in surrounding prose
    when the cleaned response is not valid JSON on its own.

    Args:
        response: Raw LLM response

    Returns:
        Parsed JSON value

    Raises:
        json.JSONDecodeError: If no JSON value can be recovered
    """
    cleaned = clean_json_response(response or '')
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        starts = [i for i in (cleaned.find('{'), cleaned.find('[')) if i != -1]
        if not starts:
            raise
        start = min(starts)
        end = max(cleaned.rfind('}'), cleaned.rfind(']'))
        if end <= start:
            raise
        return json.loads(cleaned[start:end + 1])
