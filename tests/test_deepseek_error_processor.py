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
"""Tests for DeepSeekErrorProcessor."""

import httpx
import openai
import pytest

from storyforge.errors.codes import ErrorCategory, ErrorCode, ErrorSeverity, RecoveryStrategy
from storyforge.errors.deepseek import DeepSeekErrorProcessor
from storyforge.models import AIProvider

DEEPSEEK_URL = "https://api.deepseek.com/chat/completions"


@pytest.fixture
def processor():
    return DeepSeekErrorProcessor()


class TestCodeTable:
    """Provider error codes map through the table."""

    def test_invalid_api_key(self, processor):
        error = {
            "error": {
                "message": "Authentication Fails (no such user)",
                "type": "authentication_error",
                "code": "invalid_api_key"
            }
        }
        processed = processor.process(error, stage="provider_call")

        assert processed.code == ErrorCode.DEEPSEEK_INVALID_API_KEY
        assert processed.severity == ErrorSeverity.HIGH
        assert processed.recovery == RecoveryStrategy.USER_ACTION
        assert processed.retryable is False
        assert processed.provider == AIProvider.DEEPSEEK
        assert processed.category == ErrorCategory.AI_SERVICE
        assert processed.user_message == "DeepSeek API 密钥无效，请在设置中重新配置。"
        assert processed.context.stage == "provider_call"
        assert processed.context.provider_code == "invalid_api_key"
        assert processed.context.additional_data["provider_type"] == "authentication_error"
        assert "mapped_code=3014" in processed.details

    def test_type_used_when_code_missing(self, processor):
        processed = processor.process({"error": {"message": "no", "type": "authentication_error"}})

        assert processed.code == ErrorCode.DEEPSEEK_INVALID_API_KEY

    def test_rate_limit_with_retry_after(self, processor):
        error = {
            "error": {"code": "rate_limit_exceeded", "message": "Too fast"},
            "status": 429,
            "headers": {"Retry-After": "12"}
        }
        processed = processor.process(error)

        assert processed.code == ErrorCode.DEEPSEEK_RATE_LIMIT_EXCEEDED
        assert processed.retryable is True
        assert processed.recovery == RecoveryStrategy.RETRY
        assert processed.context.provider_status == 429
        assert processed.context.retry_after_seconds == 12

    @pytest.mark.parametrize("code,expected", [
        ("kv_cache_error", ErrorCode.DEEPSEEK_CACHE_ERROR),
        ("cache_error", ErrorCode.DEEPSEEK_CACHE_ERROR),
        ("reasoning_mode_failed", ErrorCode.DEEPSEEK_REASONING_FAILED),
        ("compatibility_error", ErrorCode.DEEPSEEK_COMPATIBILITY_ERROR),
        ("token_calculation_error", ErrorCode.DEEPSEEK_TOKEN_CALC_ERROR),
        ("REQUESTS_EXCEEDED", ErrorCode.DEEPSEEK_RATE_LIMIT_EXCEEDED),
    ])
    def test_code_aliases(self, processor, code, expected):
        assert processor.process({"error": {"code": code}}).code == expected

    def test_fallback_rows(self, processor):
        processed = processor.process({"error": {"code": "kv_cache_error"}})

        assert processed.recovery == RecoveryStrategy.FALLBACK
        assert processed.retryable is False


class TestHints:
    """Status and message hints apply when no code matches."""

    @pytest.mark.parametrize("status,expected", [
        (401, ErrorCode.DEEPSEEK_INVALID_API_KEY),
        (403, ErrorCode.DEEPSEEK_INVALID_API_KEY),
        (429, ErrorCode.DEEPSEEK_RATE_LIMIT_EXCEEDED),
    ])
    def test_status_hints(self, processor, status, expected):
        assert processor.process({"status": status}).code == expected

    @pytest.mark.parametrize("message,expected", [
        ("KV cache temporarily unavailable", ErrorCode.DEEPSEEK_CACHE_ERROR),
        ("reasoning mode failed", ErrorCode.DEEPSEEK_REASONING_FAILED),
        ("兼容模式错误", ErrorCode.DEEPSEEK_COMPATIBILITY_ERROR),
        ("Token 计数失败", ErrorCode.DEEPSEEK_TOKEN_CALC_ERROR),
    ])
    def test_message_hints(self, processor, message, expected):
        assert processor.process(message).code == expected

    def test_token_calc_is_retryable(self, processor):
        processed = processor.process("token count failed")

        assert processed.code == ErrorCode.DEEPSEEK_TOKEN_CALC_ERROR
        assert processed.retryable is True


class TestGenericFallback:
    """Failures outside the DeepSeek table use the generic heuristics."""

    def test_timeout_exception(self, processor):
        processed = processor.process(httpx.ConnectTimeout("connect timed out"))

        assert processed.code == ErrorCode.CONNECTION_TIMEOUT
        assert processed.category == ErrorCategory.NETWORK
        assert processed.retryable is True

    def test_connection_exception(self, processor):
        processed = processor.process(httpx.ConnectError("connection refused"))

        assert processed.code == ErrorCode.CONNECTION_FAILED
        assert processed.user_message == "无法连接到 DeepSeek 服务，请检查网络连接。"

    def test_type_error(self, processor):
        assert processor.process(TypeError("bad arguments")).code == ErrorCode.INVALID_PARAMETERS

    def test_http_status_error(self, processor):
        request = httpx.Request("POST", DEEPSEEK_URL)
        response = httpx.Response(
            503,
            json={"error": {"message": "Server overloaded"}},
            headers={"x-request-id": "req-503"},
            request=request
        )
        error = httpx.HTTPStatusError("503 Service Unavailable", request=request, response=response)
        processed = processor.process(error)

        assert processed.code == ErrorCode.SERVICE_UNAVAILABLE
        assert processed.retryable is True
        assert processed.context.provider_status == 503
        assert processed.context.request_id == "req-503"

    def test_unknown_error(self, processor):
        processed = processor.process("something odd happened")

        assert processed.code == ErrorCode.UNKNOWN_ERROR
        assert processed.category == ErrorCategory.UNKNOWN
        assert processed.recovery == RecoveryStrategy.FALLBACK
        assert processed.retryable is False
        assert "DeepSeek" in processed.user_message
        assert processed.message == "something odd happened"


class TestOpenAISdkErrors:
    """Errors raised by the openai SDK against the DeepSeek endpoint."""

    def test_rate_limit_error(self, processor):
        response = httpx.Response(
            429,
            headers={"retry-after": "3", "x-request-id": "req-9"},
            request=httpx.Request("POST", DEEPSEEK_URL)
        )
        error = openai.RateLimitError(
            "Rate limit reached",
            response=response,
            body={"error": {"message": "Rate limit reached", "code": "rate_limit_exceeded"}}
        )
        processed = processor.process(error)

        assert processed.code == ErrorCode.DEEPSEEK_RATE_LIMIT_EXCEEDED
        assert processed.context.provider_status == 429
        assert processed.context.request_id == "req-9"
        assert processed.context.retry_after_seconds == 3

    def test_explicit_request_id_wins(self, processor):
        response = httpx.Response(
            401,
            headers={"x-request-id": "provider-id"},
            request=httpx.Request("POST", DEEPSEEK_URL)
        )
        error = openai.AuthenticationError("Unauthorized", response=response, body=None)
        processed = processor.process(error, request_id="local-id")

        assert processed.code == ErrorCode.DEEPSEEK_INVALID_API_KEY
        assert processed.context.request_id == "local-id"
        assert processed.context.additional_data["provider_request_id"] == "provider-id"


class TestRecordContract:
    """Properties of the produced record."""

    def test_processed_error_returned_unchanged(self, processor):
        processed = processor.process("reasoning failed")

        assert processor.process(processed) is processed

    def test_secrets_redacted(self, processor):
        processed = processor.process("Incorrect API key provided: sk-abcdefghijklmnopqrstuvwx")

        assert "abcdefghijklmnopqrstuvwx" not in processed.message
        assert "abcdefghijklmnopqrstuvwx" not in processed.details

    def test_never_raises(self, processor, monkeypatch):
        def explode(error):
            raise RuntimeError("extraction bug")

        monkeypatch.setattr(processor, "extract_info", explode)
        processed = processor.process({"error": {"code": "invalid_api_key"}}, stage="provider_call")

        assert processed.code == ErrorCode.UNKNOWN_ERROR
        assert processed.context.stage == "provider_call"

    def test_record_is_frozen(self, processor):
        processed = processor.process("reasoning failed")

        with pytest.raises(Exception):
            processed.code = ErrorCode.UNKNOWN_ERROR
