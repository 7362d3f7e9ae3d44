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
"""Error processor for the SiliconFlow API.

SiliconFlow answers with either an OpenAI-style envelope or a flat body
{"code": 30001, "message": "...", "data": null} whose numeric code is a
business code rather than an HTTP status.
"""

from storyforge.errors.base import BaseErrorProcessor, ErrorMapping
from storyforge.errors.codes import ErrorCode, ErrorSeverity, RecoveryStrategy
from storyforge.models import AIProvider


class SiliconFlowErrorProcessor(BaseErrorProcessor):
    """Classifies SiliconFlow failures, including balance and batch errors."""

    provider = AIProvider.SILICONFLOW

    ERROR_TABLE = (
        ErrorMapping(
            key="invalid_api_key",
            code=ErrorCode.API_KEY_INVALID,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            recovery=RecoveryStrategy.USER_ACTION,
            user_message="SiliconFlow API 密钥无效，请在设置中重新配置。",
            aliases=("unauthorized", "invalid_token"),
        ),
        ErrorMapping(
            key="insufficient_balance",
            code=ErrorCode.SILICONFLOW_BALANCE_INSUFFICIENT,
            severity=ErrorSeverity.HIGH,
            retryable=False,
            recovery=RecoveryStrategy.USER_ACTION,
            user_message="SiliconFlow 账户余额不足，请充值后重试。",
            aliases=("balance_insufficient", "30001", "30011"),
        ),
        ErrorMapping(
            key="rate_limit_exceeded",
            code=ErrorCode.RATE_LIMIT_EXCEEDED,
            severity=ErrorSeverity.MEDIUM,
            retryable=True,
            recovery=RecoveryStrategy.RETRY,
            user_message="SiliconFlow 请求频率达到上限，已安排自动重试。",
            aliases=("too_many_requests", "rpm_limit_reached", "tpm_limit_reached"),
        ),
        ErrorMapping(
            key="batch_error",
            code=ErrorCode.SILICONFLOW_BATCH_ERROR,
            severity=ErrorSeverity.MEDIUM,
            retryable=False,
            recovery=RecoveryStrategy.FALLBACK,
            user_message="SiliconFlow 批处理任务失败，已改为单次请求模式。",
            aliases=("batch_failed", "batch_job_failed"),
        ),
        ErrorMapping(
            key="model_not_found",
            code=ErrorCode.SILICONFLOW_MODEL_SWITCH_ERROR,
            severity=ErrorSeverity.MEDIUM,
            retryable=False,
            recovery=RecoveryStrategy.FALLBACK,
            user_message="所选模型暂不可用，已切换为默认模型。",
            aliases=("model_switch_failed", "model_unavailable", "20012"),
        ),
        ErrorMapping(
            key="service_type_error",
            code=ErrorCode.SILICONFLOW_SERVICE_TYPE_ERROR,
            severity=ErrorSeverity.MEDIUM,
            retryable=False,
            recovery=RecoveryStrategy.USER_ACTION,
            user_message="当前服务类型不受支持，请在设置中调整服务类型。",
            aliases=("unsupported_service_type",),
        ),
        ErrorMapping(
            key="service_unavailable",
            code=ErrorCode.SERVICE_UNAVAILABLE,
            severity=ErrorSeverity.MEDIUM,
            retryable=True,
            recovery=RecoveryStrategy.RETRY,
            user_message="SiliconFlow 服务繁忙，已安排自动重试。",
            aliases=("system_busy", "overloaded", "50505"),
        ),
    )

    STATUS_HINTS = {
        401: "invalid_api_key",
        403: "invalid_api_key",
        402: "insufficient_balance",
        404: "model_not_found",
        429: "rate_limit_exceeded",
        503: "service_unavailable",
    }

    MESSAGE_HINTS = (
        ("balance", "insufficient_balance"),
        ("余额不足", "insufficient_balance"),
        ("model does not exist", "model_not_found"),
        ("batch", "batch_error"),
        ("service type", "service_type_error"),
        ("rate limit", "rate_limit_exceeded"),
        ("too many requests", "rate_limit_exceeded"),
        ("busy", "service_unavailable"),
        ("api key", "invalid_api_key"),
    )
