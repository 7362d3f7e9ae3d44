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
"""Error processor for the Gemini API.

Gemini errors follow the Google RPC shape:

    {"error": {"code": 429, "message": "...", "status": "RESOURCE_EXHAUSTED",
               "details": [{"reason": "RATE_LIMIT_EXCEEDED", ...}]}}

so "code" is the HTTP status and "status"/"details[].reason" carry the
provider codes. A response blocked by the safety filter has no error at
all, only promptFeedback.blockReason.
"""

from typing import Any

from storyforge.errors.base import BaseErrorProcessor, ErrorMapping, ProviderErrorInfo
from storyforge.errors.codes import ErrorCode, ErrorSeverity, RecoveryStrategy
from storyforge.models import AIProvider
from storyforge.services.envelopes import gemini_block_reason


class GeminiErrorProcessor(BaseErrorProcessor):
    """Classifies Gemini failures, including safety-filter blocks."""

    provider = AIProvider.GEMINI

    ERROR_TABLE = (
        ErrorMapping(
            key="api_key_invalid",
            code=ErrorCode.API_KEY_INVALID,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            recovery=RecoveryStrategy.USER_ACTION,
            user_message="Gemini API 密钥无效或无访问权限，请在设置中检查密钥。",
            aliases=("unauthenticated", "permission_denied", "api_key_service_blocked"),
        ),
        ErrorMapping(
            key="api_key_expired",
            code=ErrorCode.API_KEY_EXPIRED,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            recovery=RecoveryStrategy.USER_ACTION,
            user_message="Gemini API 密钥已过期，请更新密钥。",
        ),
        ErrorMapping(
            key="resource_exhausted",
            code=ErrorCode.RATE_LIMIT_EXCEEDED,
            severity=ErrorSeverity.MEDIUM,
            retryable=True,
            recovery=RecoveryStrategy.RETRY,
            user_message="Gemini 请求频率或配额已达上限，已安排自动重试。",
            aliases=("rate_limit_exceeded", "quota_exceeded"),
        ),
        ErrorMapping(
            key="safety",
            code=ErrorCode.GEMINI_SAFETY_FILTERED,
            severity=ErrorSeverity.MEDIUM,
            retryable=False,
            recovery=RecoveryStrategy.FALLBACK,
            user_message="内容被 Gemini 安全策略拦截，已切换为备用内容。",
            aliases=("safety_block", "blocklist", "prohibited_content", "spii", "image_safety"),
        ),
        ErrorMapping(
            key="failed_precondition",
            code=ErrorCode.REGION_NOT_SUPPORTED,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            recovery=RecoveryStrategy.USER_ACTION,
            user_message="Gemini 服务在当前地区不可用，请更换服务商或网络环境。",
            aliases=("user_location_invalid", "region_not_supported"),
        ),
        ErrorMapping(
            key="context_cache_error",
            code=ErrorCode.GEMINI_CONTEXT_CACHE_ERROR,
            severity=ErrorSeverity.MEDIUM,
            retryable=False,
            recovery=RecoveryStrategy.FALLBACK,
            user_message="Gemini 上下文缓存不可用，已改为完整上下文请求。",
            aliases=("cached_content_not_found", "cache_expired"),
        ),
        ErrorMapping(
            key="not_found",
            code=ErrorCode.MODEL_NOT_AVAILABLE,
            severity=ErrorSeverity.MEDIUM,
            retryable=False,
            recovery=RecoveryStrategy.FALLBACK,
            user_message="所选 Gemini 模型不可用，已切换为默认模型。",
        ),
        ErrorMapping(
            key="invalid_argument",
            code=ErrorCode.INVALID_PARAMETERS,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            recovery=RecoveryStrategy.USER_ACTION,
            user_message="Gemini 请求参数无效，请检查模型与参数设置。",
        ),
        ErrorMapping(
            key="unavailable",
            code=ErrorCode.SERVICE_UNAVAILABLE,
            severity=ErrorSeverity.MEDIUM,
            retryable=True,
            recovery=RecoveryStrategy.RETRY,
            user_message="Gemini 服务暂时不可用，已安排自动重试。",
            aliases=("internal",),
        ),
        ErrorMapping(
            key="deadline_exceeded",
            code=ErrorCode.OPERATION_TIMEOUT,
            severity=ErrorSeverity.MEDIUM,
            retryable=True,
            recovery=RecoveryStrategy.RETRY,
            user_message="Gemini 请求处理超时，已安排自动重试。",
        ),
    )

    STATUS_HINTS = {
        401: "api_key_invalid",
        403: "api_key_invalid",
        404: "not_found",
        429: "resource_exhausted",
        500: "unavailable",
        503: "unavailable",
        504: "deadline_exceeded",
    }

    MESSAGE_HINTS = (
        ("api key not valid", "api_key_invalid"),
        ("api key expired", "api_key_expired"),
        ("安全过滤", "safety"),
        ("safety", "safety"),
        ("quota", "resource_exhausted"),
        ("location is not supported", "failed_precondition"),
        ("cached content", "context_cache_error"),
        ("deadline", "deadline_exceeded"),
    )

    def extract_info(self, error: Any) -> ProviderErrorInfo:
        """Also accept a safety-blocked response body as an error."""
        block_reason = gemini_block_reason(error)
        if block_reason:
            return ProviderErrorInfo(
                codes=[block_reason, "safety_block"],
                message=f"Gemini安全过滤: {block_reason}",
                type="prompt_feedback",
            )
        return super().extract_info(error)
