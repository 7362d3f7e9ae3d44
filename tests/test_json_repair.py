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
"""Tests for the JSON extraction and repair helpers."""

import json

import pytest

from storyforge.services.json_repair import (
    dumps_compact,
    extract_braced_json,
    loads_strict,
    repair_json,
    strip_reasoning_tags,
)


class TestExtractBracedJson:
    """Tests for the depth-counting brace scanner."""

    def test_extracts_first_object(self):
        text, error = extract_braced_json('前言 {"a": {"b": 1}} 后记 {"c": 2}')

        assert text == '{"a": {"b": 1}}'
        assert error is None

    def test_no_opening_brace(self):
        text, error = extract_braced_json("没有任何对象")

        assert text is None
        assert error == "未找到JSON对象起始标记"

    def test_unbalanced(self):
        text, error = extract_braced_json('{"a": {"b": 1}')

        assert text is None
        assert error == "JSON对象不完整（括号不匹配）"

    def test_brace_inside_string_ends_span_early(self):
        text, _ = extract_braced_json('{"scene": "a}b", "x": 1}')

        assert text == '{"scene": "a}'


class TestRepairJson:
    """Tests for the textual repair sequence."""

    def test_trailing_commas(self):
        assert json.loads(repair_json('{"a": [1, 2,], "b": 3,}')) == {"a": [1, 2], "b": 3}

    def test_single_quotes(self):
        assert json.loads(repair_json("{'a': 'b'}")) == {"a": "b"}

    def test_comments(self):
        fixed = repair_json('{\n  "a": 1, /* block */\n  "b": 2 // line\n}')

        assert json.loads(fixed) == {"a": 1, "b": 2}

    def test_bare_keys(self):
        assert json.loads(repair_json('{a: 1, b_c: "x"}')) == {"a": 1, "b_c": "x"}

    def test_valid_json_unchanged(self):
        text = '{"a": [1, {"b": "c"}]}'

        assert repair_json(text) == text

    def test_apostrophe_in_value_is_damaged(self):
        with pytest.raises(ValueError):
            loads_strict(repair_json('{"text": "it\'s"}'))


class TestStrictJson:
    """Tests for strict load and compact dump."""

    @pytest.mark.parametrize("constant", ["NaN", "Infinity", "-Infinity"])
    def test_rejects_non_finite_constants(self, constant):
        with pytest.raises(ValueError):
            loads_strict('{"a": %s}' % constant)

    def test_invalid_json_raises_value_error(self):
        with pytest.raises(ValueError):
            loads_strict("{oops}")

    def test_deep_nesting_raises_value_error(self):
        depth = 100_000

        with pytest.raises(ValueError, match="nesting too deep"):
            loads_strict("[" * depth + "]" * depth)

    def test_dumps_compact(self):
        assert dumps_compact({"场景": [1, "a"]}) == '{"场景":[1,"a"]}'


def test_strip_reasoning_tags():
    text = "<reasoning>先想一想 {x}</reasoning>\n{\"a\": 1}<reasoning>再想</reasoning>"

    assert strip_reasoning_tags(text) == '\n{"a": 1}'
