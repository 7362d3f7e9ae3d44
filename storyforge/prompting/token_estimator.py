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
"""Cheap token count heuristic used for prompt size decisions."""

import math
import re

# CJK Unified Ideographs, basic block
CJK_PATTERN = re.compile(r'[\u4e00-\u9fa5]')

CJK_CHARS_PER_TOKEN = 2.5
OTHER_CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a text.

    CJK ideographs count as 1/2.5 token each and every other character
    as 1/4 token; the sum is rounded up.

    Args:
        text: Prompt or response text

    Returns:
        Estimated token count (0 for empty text)
    """
    if not text:
        return 0
    cjk_count = len(CJK_PATTERN.findall(text))
    other_count = len(text) - cjk_count
    return math.ceil(cjk_count / CJK_CHARS_PER_TOKEN + other_count / OTHER_CHARS_PER_TOKEN)
