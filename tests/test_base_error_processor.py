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
"""Tests for the shared error processing machinery and processor registry."""

import asyncio
import logging

import pytest

from storyforge.errors.base import ProviderErrorInfo, to_number
from storyforge.errors.codes import ErrorCategory, ErrorCode, RecoveryStrategy, category_for
from storyforge.errors.deepseek import DeepSeekErrorProcessor
from storyforge.errors.gemini import GeminiErrorProcessor
from storyforge.errors.registry import GenericErrorProcessor, get_error_processor
from storyforge.errors.siliconflow import SiliconFlowErrorProcessor
from storyforge.models import AIProvider


class TestRegistry:
    """get_error_processor lookups."""

    @pytest.mark.parametrize("provider,processor_class", [
        ("deepseek", DeepSeekErrorProcessor),
        (AIProvider.GEMINI, GeminiErrorProcessor),
        ("siliconflow", SiliconFlowErrorProcessor),
        ("openai", GenericErrorProcessor),
        ("claude", GenericErrorProcessor),
    ])
    def test_processor_class(self, provider, processor_class):
        assert isinstance(get_error_processor(provider), processor_class)

    def test_same_instance_reused(self):
        assert get_error_processor("deepseek") is get_error_processor(AIProvider.DEEPSEEK)

    def test_generic_processor_keeps_provider(self):
        processor = get_error_processor("claude")

        assert processor.provider == AIProvider.CLAUDE
        processed = processor.process({"status": 401})
        assert processed.code == ErrorCode.API_KEY_INVALID
        assert processed.user_message == "Claude API 密钥无效，请在设置中重新配置。"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            get_error_processor("llama")


class TestGenericClassification:
    """Heuristics shared by every processor."""

    @pytest.fixture
    def processor(self):
        return GenericErrorProcessor(provider=AIProvider.OPENAI)

    @pytest.mark.parametrize("status,expected", [
        (400, ErrorCode.INVALID_PARAMETERS),
        (402, ErrorCode.AI_QUOTA_EXCEEDED),
        (408, ErrorCode.OPERATION_TIMEOUT),
        (413, ErrorCode.TOKEN_LIMIT_EXCEEDED),
        (429, ErrorCode.RATE_LIMIT_EXCEEDED),
        (502, ErrorCode.SERVICE_UNAVAILABLE),
    ])
    def test_status_codes(self, processor, status, expected):
        assert processor.process({"status": status}).code == expected

    @pytest.mark.parametrize("message,expected", [
        ("Request timed out", ErrorCode.CONNECTION_TIMEOUT),
        ("network unreachable", ErrorCode.CONNECTION_FAILED),
        ("Unauthorized", ErrorCode.API_KEY_INVALID),
        ("You exceeded your current quota", ErrorCode.RATE_LIMIT_EXCEEDED),
        ("could not parse body", ErrorCode.INVALID_JSON),
    ])
    def test_message_heuristics(self, processor, message, expected):
        assert processor.process(message).code == expected

    def test_asyncio_timeout(self, processor):
        assert processor.process(asyncio.TimeoutError()).code == ErrorCode.CONNECTION_TIMEOUT

    def test_invalid_json_category(self, processor):
        processed = processor.process("invalid json in response")

        assert processed.code == ErrorCode.INVALID_JSON
        assert processed.category == ErrorCategory.VALIDATION
        assert processed.recovery == RecoveryStrategy.USER_ACTION

    def test_empty_input(self, processor):
        processed = processor.process(None)

        assert processed.code == ErrorCode.UNKNOWN_ERROR
        assert processed.message == processed.user_message
        assert processed.details == "mapped_code=1000"

    def test_error_string_envelope(self, processor):
        processed = processor.process({"error": "upstream timeout", "request_id": "r-1"})

        assert processed.code == ErrorCode.CONNECTION_TIMEOUT
        assert processed.context.request_id == "r-1"

    def test_details_serialization(self, processor):
        processed = processor.process({
            "error": {"message": "slow down", "type": "requests", "code": "rl"},
            "status": 429,
            "request_id": "abc"
        })

        assert processed.details == (
            "provider_code=rl | mapped_code=3003 | status=429 | type=requests | request_id=abc | slow down"
        )

    def test_classification_is_logged(self, processor, caplog):
        with caplog.at_level(logging.WARNING):
            processor.process({"status": 429}, stage="provider_call")

        assert "Provider error classified" in caplog.text
        assert "RATE_LIMIT_EXCEEDED" in caplog.text


class TestHelpers:
    """Small helpers behind the processors."""

    @pytest.mark.parametrize("value,expected", [
        (5, 5),
        (2.0, 2),
        (1.5, 1.5),
        ("7", 7),
        (" 2.5 ", 2.5),
        ("abc", None),
        (True, None),
        (None, None),
        (float("nan"), None),
    ])
    def test_to_number(self, value, expected):
        assert to_number(value) == expected

    def test_provider_code_is_first_code(self):
        assert ProviderErrorInfo(codes=["a", "b"]).provider_code == "a"
        assert ProviderErrorInfo().provider_code is None

    @pytest.mark.parametrize("code,category", [
        (ErrorCode.UNKNOWN_ERROR, ErrorCategory.UNKNOWN),
        (ErrorCode.CONNECTION_TIMEOUT, ErrorCategory.NETWORK),
        (ErrorCode.DEEPSEEK_CACHE_ERROR, ErrorCategory.AI_SERVICE),
        (ErrorCode.SILICONFLOW_BATCH_ERROR, ErrorCategory.AI_SERVICE),
        (ErrorCode.INVALID_JSON, ErrorCategory.VALIDATION),
    ])
    def test_category_for(self, code, category):
        assert category_for(code) == category
