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
"""Unified error taxonomy shared by all provider error processors.

Error codes are grouped in numeric ranges:
- 1000-1099: generic and network failures
- 3000-3199: AI service failures (3010+ are provider specific)
- 3200-3299: response content failures
"""

from enum import Enum, IntEnum


class ErrorCode(IntEnum):
    """Numeric error codes understood by the UI and telemetry layers."""

    UNKNOWN_ERROR = 1000
    OPERATION_TIMEOUT = 1005
    CONNECTION_FAILED = 1010
    CONNECTION_TIMEOUT = 1011
    TOO_MANY_REQUESTS = 1017

    API_KEY_INVALID = 3000
    API_KEY_EXPIRED = 3001
    AI_QUOTA_EXCEEDED = 3002
    RATE_LIMIT_EXCEEDED = 3003
    MODEL_NOT_AVAILABLE = 3004
    SERVICE_UNAVAILABLE = 3005
    INVALID_PARAMETERS = 3006
    CONTENT_FILTERED = 3007
    TOKEN_LIMIT_EXCEEDED = 3008
    REGION_NOT_SUPPORTED = 3009

    DEEPSEEK_REASONING_FAILED = 3010
    DEEPSEEK_CACHE_ERROR = 3011
    DEEPSEEK_COMPATIBILITY_ERROR = 3012
    DEEPSEEK_TOKEN_CALC_ERROR = 3013
    DEEPSEEK_INVALID_API_KEY = 3014
    DEEPSEEK_RATE_LIMIT_EXCEEDED = 3015

    GEMINI_SAFETY_FILTERED = 3020
    GEMINI_MULTIMODAL_ERROR = 3021
    GEMINI_LIVE_API_ERROR = 3022
    GEMINI_OAUTH_ERROR = 3023
    GEMINI_CONTEXT_CACHE_ERROR = 3024

    SILICONFLOW_BALANCE_INSUFFICIENT = 3030
    SILICONFLOW_BATCH_ERROR = 3031
    SILICONFLOW_MODEL_SWITCH_ERROR = 3032
    SILICONFLOW_VOICE_ERROR = 3033
    SILICONFLOW_SERVICE_TYPE_ERROR = 3034

    INVALID_JSON = 3200


class ErrorSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class ErrorCategory(str, Enum):
    NETWORK = "network"
    AI_SERVICE = "ai_service"
    VALIDATION = "validation"
    CONFIG = "config"
    UNKNOWN = "unknown"


class RecoveryStrategy(str, Enum):
    """How the caller should react to a classified error."""

    RETRY = "retry"
    FALLBACK = "fallback"
    RESET = "reset"
    IGNORE = "ignore"
    USER_ACTION = "user_action"
    NONE = "none"


def category_for(code: ErrorCode) -> ErrorCategory:
    """Derive the error category from the numeric range of a code.

    Args:
        code: Unified error code

    Returns:
        Category the code belongs to
    """
    if code == ErrorCode.UNKNOWN_ERROR:
        return ErrorCategory.UNKNOWN
    if 1000 <= code < 1100:
        return ErrorCategory.NETWORK
    if 3000 <= code < 3200:
        return ErrorCategory.AI_SERVICE
    if 3200 <= code < 3300:
        return ErrorCategory.VALIDATION
    return ErrorCategory.AI_SERVICE
