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
"""Tests for provider response envelope decoders."""

import pytest

from storyforge.services.envelopes import (
    GeminiBlockedEnvelope,
    GeminiCandidateEnvelope,
    OpenAIChatEnvelope,
    SiliconFlowBatchEnvelope,
    TokenUsage,
    compose_raw_text,
    decode_deepseek_completion,
    decode_envelope,
    decode_gemini_blocked,
    decode_gemini_candidate,
    decode_openai_chat,
    decode_siliconflow_batch,
    extract_from_gemini_format,
    extract_from_openai_format,
    map_usage,
)


class TestDecodeEnvelope:
    """Each decoder recognizes its own shape and nothing else."""

    def test_openai_chat(self):
        payload = {
            "model": "deepseek-chat",
            "choices": [{"message": {"content": "{}"}, "finish_reason": "stop"}]
        }

        assert decode_envelope(payload) == OpenAIChatEnvelope(
            content="{}", model="deepseek-chat", finish_reason="stop"
        )

    def test_gemini_candidate(self):
        payload = {"candidates": [{"content": {"parts": [{"text": "hi"}]}, "finishReason": "STOP"}]}

        assert decode_envelope(payload) == GeminiCandidateEnvelope(text="hi", finish_reason="STOP")

    def test_gemini_blocked(self):
        payload = {"promptFeedback": {"blockReason": "PROHIBITED_CONTENT"}}

        assert decode_envelope(payload) == GeminiBlockedEnvelope(block_reason="PROHIBITED_CONTENT")

    def test_siliconflow_batch(self):
        envelope = decode_envelope({"results": [{"a": 1}, {"b": 2}]})

        assert isinstance(envelope, SiliconFlowBatchEnvelope)
        assert envelope.first == {"a": 1}

    @pytest.mark.parametrize("payload", [
        None,
        "text",
        [],
        {},
        {"choices": []},
        {"choices": [{"message": {"content": None}}]},
        {"candidates": [{"content": {"parts": []}}]},
        {"promptFeedback": {"blockReason": ""}},
        {"results": []},
    ])
    def test_unknown_shapes_return_none(self, payload):
        assert decode_envelope(payload) is None

    def test_decoders_do_not_cross_match(self):
        gemini = {"candidates": [{"content": {"parts": [{"text": "hi"}]}}]}

        assert decode_openai_chat(gemini) is None
        assert decode_gemini_blocked(gemini) is None
        assert decode_siliconflow_batch(gemini) is None
        assert decode_gemini_candidate({"choices": [{"message": {"content": "x"}}]}) is None

    def test_extract_helpers(self):
        assert extract_from_openai_format({"choices": [{"message": {"content": "x"}}]}) == "x"
        assert extract_from_openai_format({"choices": [{"message": {"content": 5}}]}) is None
        assert extract_from_gemini_format({"candidates": "oops"}) is None


class TestDeepSeekCompletion:
    """Decoding of DeepSeek completions with reasoning and cache usage."""

    def test_content_and_reasoning(self):
        payload = {
            "id": "msg-1",
            "model": "deepseek-reasoner",
            "choices": [{
                "message": {"content": '{"scene": "s"}', "reasoning_content": "先观察环境"}
            }],
            "usage": {
                "prompt_tokens": 100,
                "completion_tokens": 20,
                "total_tokens": 120,
                "prompt_cache_hit_tokens": 60,
                "prompt_cache_miss_tokens": 40,
                "completion_tokens_details": {"reasoning_tokens": 12}
            }
        }
        completion = decode_deepseek_completion(payload)

        assert completion.content == '{"scene": "s"}'
        assert completion.reasoning_text == "先观察环境"
        assert completion.model == "deepseek-reasoner"
        assert completion.message_id == "msg-1"
        assert completion.usage == TokenUsage(
            prompt_tokens=100,
            completion_tokens=20,
            total_tokens=120,
            cache_hit_tokens=60,
            cache_miss_tokens=40,
            reasoning_tokens=12,
        )
        assert completion.raw_text == '<reasoning>\n先观察环境\n</reasoning>\n{"scene": "s"}'

    def test_content_parts_list(self):
        payload = {"choices": [{"message": {"content": [{"text": "a"}, "b", {"type": "x"}]}}]}

        assert decode_deepseek_completion(payload).content == "a\nb"

    def test_fallback_to_choice_text(self):
        payload = {"choices": [{"text": "plain"}]}

        completion = decode_deepseek_completion(payload)
        assert completion.content == "plain"
        assert completion.model == "deepseek-chat"
        assert completion.reasoning_text is None
        assert completion.raw_text == "plain"

    def test_fallback_to_output_text(self):
        assert decode_deepseek_completion({"output_text": "top"}).content == "top"

    def test_blank_content_returns_none(self):
        assert decode_deepseek_completion({"choices": [{"message": {"content": "   "}}]}) is None
        assert decode_deepseek_completion("not a dict") is None

    def test_reasoning_from_several_places(self):
        payload = {
            "choices": [{
                "message": {"content": "x", "reasoning_content": ["一", {"thought": "二"}]},
                "reasoning_content": "三"
            }],
            "reasoning": "四"
        }

        assert decode_deepseek_completion(payload).reasoning_segments == ["一", "二", "三", "四"]


class TestUsage:
    """Token usage mapping."""

    def test_cache_miss_derived_from_hits(self):
        usage = map_usage({"prompt_tokens": 50, "completion_tokens": 5, "prompt_cache_hit_tokens": 20})

        assert usage.cache_miss_tokens == 30
        assert usage.total_tokens == 55

    def test_openai_cached_tokens(self):
        usage = map_usage({"prompt_tokens": 10, "prompt_tokens_details": {"cached_tokens": 4}})

        assert usage.cache_hit_tokens == 4

    def test_invalid_usage(self):
        assert map_usage(None) == TokenUsage()
        assert map_usage({"prompt_tokens": "abc", "completion_tokens": True}) == TokenUsage()


def test_compose_raw_text_keeps_existing_tags():
    assert compose_raw_text(" body ", "<reasoning>r</reasoning>") == "<reasoning>r</reasoning>\nbody"
    assert compose_raw_text(" body ") == "body"
