# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Text-level helpers for locating and repairing JSON in model output.

The helpers here work on raw strings only. They know nothing about the
game-data schema; ResponseParser decides when to call them.
"""

import json
import re
from typing import Any, Optional, Tuple

REASONING_TAG_PATTERN = re.compile(r'<reasoning>[\s\S]*?</reasoning>')

TRAILING_COMMA_PATTERN = re.compile(r',(\s*[}\]])')
BLOCK_COMMENT_PATTERN = re.compile(r'/\*[\s\S]*?\*/')
LINE_COMMENT_PATTERN = re.compile(r'//.*')
BARE_KEY_PATTERN = re.compile(r'(\{|,)\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*:')


def strip_reasoning_tags(text: str) -> str:
    """Remove every <reasoning>...</reasoning> block from text."""
    return REASONING_TAG_PATTERN.sub('', text)


def extract_braced_json(text: str) -> Tuple[Optional[str], Optional[str]]:
    """Cut the first balanced {...} span out of text.

    The scan is a plain depth counter starting at the first "{". Braces
    inside string literals are counted too, so a value such as "a}b" ends
    the span early. Callers rely on this exact behavior.

    Args:
        text: Arbitrary model output

    Returns:
        Tuple of (json_text, error). Exactly one of them is None.
    """
    start = text.find('{')
    if start == -1:
        return None, "未找到JSON对象起始标记"

    depth = 0
    for index in range(start, len(text)):
        char = text[index]
        if char == '{':
            depth += 1
        elif char == '}':
            depth -= 1
        if depth == 0:
            return text[start:index + 1], None

    return None, "JSON对象不完整（括号不匹配）"


def repair_json(text: str) -> str:
    """Apply the fixed sequence of textual JSON repairs.

    Repairs run in this order:
    1. Drop trailing commas before "}" or "]"
    2. Replace single quotes with double quotes
    3. Strip /* block */ and // line comments
    4. Quote bare identifier keys

    The repairs are textual and can damage string contents (an apostrophe
    or a "//" inside a value); they are only tried after a strict parse
    has already failed.

    Args:
        text: Extracted JSON-like text

    Returns:
        Repaired text, which may still be invalid JSON
    """
    fixed = TRAILING_COMMA_PATTERN.sub(r'\1', text)
    fixed = fixed.replace("'", '"')
    fixed = BLOCK_COMMENT_PATTERN.sub('', fixed)
    fixed = LINE_COMMENT_PATTERN.sub('', fixed)
    fixed = BARE_KEY_PATTERN.sub(r'\1"\2":', fixed)
    return fixed


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Invalid JSON constant: {name}")


def loads_strict(text: str) -> Any:
    """Parse JSON, rejecting the NaN/Infinity extensions Python accepts.

    Raises:
        ValueError: If text is not valid JSON or nests deeper than the
            decoder's recursion limit
    """
    try:
        return json.loads(text, parse_constant=_reject_constant)
    except RecursionError as e:
        raise ValueError(f"JSON nesting too deep: {e}") from e


def dumps_compact(value: Any) -> str:
    """Serialize a value the compact way JavaScript's JSON.stringify does."""
    return json.dumps(value, ensure_ascii=False, separators=(',', ':'))
