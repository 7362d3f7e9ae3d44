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
"""Error processor for the DeepSeek API."""

from storyforge.errors.base import BaseErrorProcessor, ErrorMapping
from storyforge.errors.codes import ErrorCode, ErrorSeverity, RecoveryStrategy
from storyforge.models import AIProvider


class DeepSeekErrorProcessor(BaseErrorProcessor):
    """Classifies DeepSeek failures, including reasoning-mode and KV cache errors."""

    provider = AIProvider.DEEPSEEK

    ERROR_TABLE = (
        ErrorMapping(
            key="invalid_api_key",
            code=ErrorCode.DEEPSEEK_INVALID_API_KEY,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            recovery=RecoveryStrategy.USER_ACTION,
            user_message="DeepSeek API 密钥无效，请在设置中重新配置。",
            aliases=("invalid_authentication", "authentication_error"),
        ),
        ErrorMapping(
            key="rate_limit_exceeded",
            code=ErrorCode.DEEPSEEK_RATE_LIMIT_EXCEEDED,
            severity=ErrorSeverity.MEDIUM,
            retryable=True,
            recovery=RecoveryStrategy.RETRY,
            user_message="DeepSeek 请求频率达到上限，已安排自动重试。",
            aliases=("requests_exceeded", "rate_limit_reached"),
        ),
        ErrorMapping(
            key="kv_cache_error",
            code=ErrorCode.DEEPSEEK_CACHE_ERROR,
            severity=ErrorSeverity.MEDIUM,
            retryable=False,
            recovery=RecoveryStrategy.FALLBACK,
            user_message="DeepSeek KV 缓存暂不可用，系统已降级为实时计算模式。",
            aliases=("cache_error", "kv_cache_failed"),
        ),
        ErrorMapping(
            key="reasoning_mode_failed",
            code=ErrorCode.DEEPSEEK_REASONING_FAILED,
            severity=ErrorSeverity.MEDIUM,
            retryable=False,
            recovery=RecoveryStrategy.FALLBACK,
            user_message="DeepSeek 推理模式失败，已切换至标准对话模式。",
            aliases=("reasoning_failed", "reasoning_unavailable"),
        ),
        ErrorMapping(
            key="compatibility_error",
            code=ErrorCode.DEEPSEEK_COMPATIBILITY_ERROR,
            severity=ErrorSeverity.MEDIUM,
            retryable=False,
            recovery=RecoveryStrategy.FALLBACK,
            user_message="当前兼容模式不受支持，系统已自动切换为默认模式。",
            aliases=("compatibility_mode_failed", "compatibility_mode_error"),
        ),
        ErrorMapping(
            key="token_calculation_error",
            code=ErrorCode.DEEPSEEK_TOKEN_CALC_ERROR,
            severity=ErrorSeverity.MEDIUM,
            retryable=True,
            recovery=RecoveryStrategy.RETRY,
            user_message="Token 计算出现异常，已重新安排请求。",
            aliases=("token_calc_error", "token_count_failed"),
        ),
    )

    STATUS_HINTS = {
        401: "invalid_api_key",
        403: "invalid_api_key",
        429: "rate_limit_exceeded",
    }

    MESSAGE_HINTS = (
        ("kv cache", "kv_cache_error"),
        ("reasoning", "reasoning_mode_failed"),
        ("compatibility", "compatibility_error"),
        ("兼容", "compatibility_error"),
        ("token calc", "token_calculation_error"),
        ("token count", "token_calculation_error"),
        ("计数", "token_calculation_error"),
        ("计算", "token_calculation_error"),
        ("api key", "invalid_api_key"),
        ("rate limit", "rate_limit_exceeded"),
    )
