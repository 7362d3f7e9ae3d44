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
"""Tests for the token estimation heuristic."""

import pytest

from storyforge.prompting.token_estimator import estimate_tokens


@pytest.mark.parametrize("text,expected", [
    ("", 0),
    ("a", 1),
    ("abcd", 1),
    ("abcde", 2),
    ("你好", 1),
    ("你好世界你", 2),
    ("你好世界你好", 3),
    ("你好ab", 2),
])
def test_estimate_tokens(text, expected):
    assert estimate_tokens(text) == expected


def test_punctuation_counts_as_other():
    # Full-width punctuation is outside the ideograph block
    assert estimate_tokens("，，，，") == 1


def test_monotonic_in_length():
    assert estimate_tokens("冒险" * 100) > estimate_tokens("冒险" * 10)
