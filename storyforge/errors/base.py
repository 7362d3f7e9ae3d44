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
"""Base error processor that normalizes provider failures.

A processor turns whatever a provider call failed with (an HTTP error
body, an SDK exception, a transport exception or a bare message) into
one immutable ProcessedError. Classification is data driven: subclasses
only declare tables.

Resolution order:
1. ERROR_TABLE lookup by provider error code (including aliases)
2. STATUS_HINTS lookup by HTTP status
3. MESSAGE_HINTS case-insensitive substring match on the message
4. Generic exception type, HTTP status and message heuristics
5. UNKNOWN_ERROR with FALLBACK recovery
"""

import asyncio
import math
import time
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple, Union

import httpx
import openai
from pydantic import BaseModel, ConfigDict, Field

from storyforge.errors.codes import (
    ErrorCategory,
    ErrorCode,
    ErrorSeverity,
    RecoveryStrategy,
    category_for,
)
from storyforge.logging import StructuredLogger, redact_secrets, sanitize_for_log
from storyforge.models import AIProvider

logger = StructuredLogger(__name__)

PROVIDER_LABELS: Dict[AIProvider, str] = {
    AIProvider.OPENAI: "OpenAI",
    AIProvider.CLAUDE: "Claude",
    AIProvider.DEEPSEEK: "DeepSeek",
    AIProvider.GEMINI: "Gemini",
    AIProvider.SILICONFLOW: "SiliconFlow",
}


@dataclass(frozen=True)
class ErrorMapping:
    """One row of a classification table.

    Attributes:
        key: Canonical provider error code for the row
        code: Unified error code
        severity: Severity reported to the UI
        retryable: Whether repeating the same request can succeed
        recovery: Suggested caller reaction
        user_message: Localized message shown to the player
        aliases: Other provider codes that mean the same thing
    """
    key: str
    code: ErrorCode
    severity: ErrorSeverity
    retryable: bool
    recovery: RecoveryStrategy
    user_message: str
    aliases: Tuple[str, ...] = ()


# Generic rows; "{provider}" is replaced by the provider label.
GENERIC_MAPPINGS: Dict[ErrorCode, ErrorMapping] = {
    mapping.code: mapping for mapping in (
        ErrorMapping("unknown_error", ErrorCode.UNKNOWN_ERROR, ErrorSeverity.MEDIUM, False,
                     RecoveryStrategy.FALLBACK, "{provider} 服务返回未知错误，已切换为备用处理。"),
        ErrorMapping("connection_timeout", ErrorCode.CONNECTION_TIMEOUT, ErrorSeverity.MEDIUM, True,
                     RecoveryStrategy.RETRY, "连接 {provider} 服务超时，已安排自动重试。"),
        ErrorMapping("connection_failed", ErrorCode.CONNECTION_FAILED, ErrorSeverity.MEDIUM, True,
                     RecoveryStrategy.RETRY, "无法连接到 {provider} 服务，请检查网络连接。"),
        ErrorMapping("operation_timeout", ErrorCode.OPERATION_TIMEOUT, ErrorSeverity.MEDIUM, True,
                     RecoveryStrategy.RETRY, "{provider} 请求处理超时，已安排自动重试。"),
        ErrorMapping("api_key_invalid", ErrorCode.API_KEY_INVALID, ErrorSeverity.HIGH, False,
                     RecoveryStrategy.USER_ACTION, "{provider} API 密钥无效，请在设置中重新配置。"),
        ErrorMapping("quota_exceeded", ErrorCode.AI_QUOTA_EXCEEDED, ErrorSeverity.HIGH, False,
                     RecoveryStrategy.USER_ACTION, "{provider} 账户额度不足，请检查账户余额。"),
        ErrorMapping("rate_limit_exceeded", ErrorCode.RATE_LIMIT_EXCEEDED, ErrorSeverity.MEDIUM, True,
                     RecoveryStrategy.RETRY, "{provider} 请求频率达到上限，已安排自动重试。"),
        ErrorMapping("model_not_available", ErrorCode.MODEL_NOT_AVAILABLE, ErrorSeverity.MEDIUM, False,
                     RecoveryStrategy.FALLBACK, "所选 {provider} 模型不可用，已切换为默认模型。"),
        ErrorMapping("service_unavailable", ErrorCode.SERVICE_UNAVAILABLE, ErrorSeverity.MEDIUM, True,
                     RecoveryStrategy.RETRY, "{provider} 服务暂时不可用，已安排自动重试。"),
        ErrorMapping("invalid_parameters", ErrorCode.INVALID_PARAMETERS, ErrorSeverity.HIGH, False,
                     RecoveryStrategy.USER_ACTION, "请求参数无效，请检查 {provider} 模型与参数设置。"),
        ErrorMapping("token_limit_exceeded", ErrorCode.TOKEN_LIMIT_EXCEEDED, ErrorSeverity.MEDIUM, False,
                     RecoveryStrategy.USER_ACTION, "请求内容超出模型上下文长度，请减少历史回合数。"),
        ErrorMapping("invalid_json", ErrorCode.INVALID_JSON, ErrorSeverity.MEDIUM, False,
                     RecoveryStrategy.USER_ACTION, "AI 响应无法解析，请重试。"),
    )
}

GENERIC_STATUS_CODES: Dict[int, ErrorCode] = {
    400: ErrorCode.INVALID_PARAMETERS,
    401: ErrorCode.API_KEY_INVALID,
    402: ErrorCode.AI_QUOTA_EXCEEDED,
    403: ErrorCode.API_KEY_INVALID,
    404: ErrorCode.MODEL_NOT_AVAILABLE,
    408: ErrorCode.OPERATION_TIMEOUT,
    413: ErrorCode.TOKEN_LIMIT_EXCEEDED,
    429: ErrorCode.RATE_LIMIT_EXCEEDED,
    500: ErrorCode.SERVICE_UNAVAILABLE,
    502: ErrorCode.SERVICE_UNAVAILABLE,
    503: ErrorCode.SERVICE_UNAVAILABLE,
    504: ErrorCode.OPERATION_TIMEOUT,
}

GENERIC_MESSAGE_HINTS: Tuple[Tuple[str, ErrorCode], ...] = (
    ("timeout", ErrorCode.CONNECTION_TIMEOUT),
    ("timed out", ErrorCode.CONNECTION_TIMEOUT),
    ("network", ErrorCode.CONNECTION_FAILED),
    ("fetch", ErrorCode.CONNECTION_FAILED),
    ("unauthorized", ErrorCode.API_KEY_INVALID),
    ("api key", ErrorCode.API_KEY_INVALID),
    ("quota", ErrorCode.RATE_LIMIT_EXCEEDED),
    ("rate limit", ErrorCode.RATE_LIMIT_EXCEEDED),
    ("invalid json", ErrorCode.INVALID_JSON),
    ("parse", ErrorCode.INVALID_JSON),
)

TIMEOUT_EXCEPTIONS = (httpx.TimeoutException, openai.APITimeoutError, TimeoutError, asyncio.TimeoutError)
CONNECTION_EXCEPTIONS = (httpx.TransportError, openai.APIConnectionError, ConnectionError)


class ErrorContext(BaseModel):
    """Diagnostic context attached to a processed error.

    additional_data keeps the raw provider fields (code, type, status,
    request id, retry-after) so telemetry is not lossy after normalization.
    """
    model_config = ConfigDict(frozen=True)

    stage: Optional[str] = None
    request_id: Optional[str] = None
    provider_code: Optional[str] = None
    provider_status: Optional[int] = None
    retry_after_seconds: Optional[Union[int, float]] = None
    additional_data: Dict[str, Any] = Field(default_factory=dict)


class ProcessedError(BaseModel):
    """Normalized, immutable error record produced by a processor."""
    model_config = ConfigDict(frozen=True)

    code: ErrorCode
    message: str
    severity: ErrorSeverity
    category: ErrorCategory
    retryable: bool
    recovery: RecoveryStrategy
    user_message: str
    provider: AIProvider
    details: Optional[str] = None
    context: ErrorContext = Field(default_factory=ErrorContext)
    timestamp: float = Field(default_factory=time.time)


@dataclass
class ProviderErrorInfo:
    """Provider fields pulled out of a raw error before classification.

    Attributes:
        codes: Candidate provider codes, most specific first
        message: Provider or exception message
        status: HTTP status
        type: Provider error type
        request_id: Provider request id
        retry_after: Seconds to wait before retrying
        exception: Original exception, when there was one
    """
    codes: List[str] = field(default_factory=list)
    message: Optional[str] = None
    status: Optional[int] = None
    type: Optional[str] = None
    request_id: Optional[str] = None
    retry_after: Optional[Union[int, float]] = None
    exception: Optional[BaseException] = None

    @property
    def provider_code(self) -> Optional[str]:
        return self.codes[0] if self.codes else None


def to_number(value: Any) -> Optional[Union[int, float]]:
    """Coerce a number or numeric string, returning None when not finite."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _header(headers: Any, name: str) -> Any:
    if isinstance(headers, httpx.Headers):
        return headers.get(name)
    if isinstance(headers, Mapping):
        for key, value in headers.items():
            if isinstance(key, str) and key.lower() == name:
                return value
    return None


def _first_string(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value:
            return value
    return None


class BaseErrorProcessor:
    """Classifies raw provider failures into ProcessedError records.

    Subclasses set provider and the three lookup tables. The processor is
    stateless and process() never raises.
    """

    provider: AIProvider = AIProvider.OPENAI
    ERROR_TABLE: Tuple[ErrorMapping, ...] = ()
    STATUS_HINTS: Dict[int, str] = {}
    MESSAGE_HINTS: Tuple[Tuple[str, str], ...] = ()

    def __init__(self, provider: Optional[AIProvider] = None):
        """Initialize processor and index the code table.

        Args:
            provider: Overrides the class-level provider (used by the
                generic processor)
        """
        if provider is not None:
            self.provider = provider
        self.provider_label = PROVIDER_LABELS.get(self.provider, self.provider.value)
        self._by_key: Dict[str, ErrorMapping] = {mapping.key: mapping for mapping in self.ERROR_TABLE}
        self._by_code: Dict[str, ErrorMapping] = {}
        for mapping in self.ERROR_TABLE:
            for alias in (mapping.key,) + mapping.aliases:
                self._by_code[alias.lower()] = mapping

    def process(
        self,
        error: Any,
        stage: Optional[str] = None,
        request_id: Optional[str] = None
    ) -> ProcessedError:
        """Classify a raw provider failure.

        Args:
            error: Error envelope, flat error dict, exception, message string
                or an already processed record (returned unchanged)
            stage: Pipeline stage where the failure happened
            request_id: Correlation id to record when the provider gave none

        Returns:
            Immutable ProcessedError
        """
        if isinstance(error, ProcessedError):
            return error

        try:
            info = self.extract_info(error)
            mapping = self.classify(info)
            processed = self._build_record(mapping, info, stage, request_id)
        except Exception as e:
            logger.error(
                "Error classification failed, using unknown error",
                provider=self.provider.value,
                error_type=type(e).__name__,
                error=sanitize_for_log(str(e))
            )
            processed = self._build_record(
                self._generic_mapping(ErrorCode.UNKNOWN_ERROR),
                ProviderErrorInfo(),
                stage,
                request_id
            )

        logger.warning(
            "Provider error classified",
            provider=self.provider.value,
            error_code=processed.code.name,
            provider_code=processed.context.provider_code,
            provider_status=processed.context.provider_status,
            retryable=processed.retryable,
            recovery=processed.recovery.value,
            stage=stage
        )
        return processed

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def extract_info(self, error: Any) -> ProviderErrorInfo:
        """Pull provider fields out of any supported error shape."""
        if isinstance(error, openai.APIStatusError):
            return self._from_openai_error(error)
        if isinstance(error, httpx.HTTPStatusError):
            return self._from_http_status_error(error)
        if isinstance(error, Mapping):
            return self._from_mapping(error)
        if isinstance(error, BaseException):
            return ProviderErrorInfo(message=str(error) or type(error).__name__, exception=error)
        if isinstance(error, str):
            return ProviderErrorInfo(message=error)
        return ProviderErrorInfo()

    def _from_mapping(self, data: Mapping) -> ProviderErrorInfo:
        """Read an error envelope {error: {...}, status?, ...} or a flat error dict."""
        inner = data.get("error")
        if isinstance(inner, Mapping):
            source = inner
        elif isinstance(inner, str):
            source = {"message": inner}
        else:
            source = data

        info = ProviderErrorInfo()

        # Gemini puts the most specific reason in details[].reason
        details = source.get("details")
        if isinstance(details, list):
            for detail in details:
                if isinstance(detail, Mapping) and isinstance(detail.get("reason"), str):
                    info.codes.append(detail["reason"])

        # "code" and "status" hold either a provider code or an HTTP status
        for candidate in (source.get("code"), source.get("status")):
            number = to_number(candidate)
            if isinstance(number, int) and 100 <= number < 600:
                if info.status is None:
                    info.status = number
            elif number is not None:
                info.codes.append(str(number))
            elif isinstance(candidate, str) and candidate.strip():
                info.codes.append(candidate.strip())

        if info.status is None and source is not data:
            for candidate in (data.get("status"), data.get("status_code")):
                number = to_number(candidate)
                if isinstance(number, int) and 100 <= number < 600:
                    info.status = number
                    break
        if info.status is None:
            number = to_number(data.get("status_code"))
            if isinstance(number, int):
                info.status = number

        info.message = _first_string(source.get("message"), data.get("message"), data.get("msg"))
        info.type = _first_string(source.get("type"))
        info.request_id = _first_string(
            data.get("request_id"), data.get("requestId"), data.get("x-request-id"),
            source.get("request_id"), _header(data.get("headers"), "x-request-id")
        )
        info.retry_after = next(
            (
                number for number in (
                    to_number(source.get("retry_after")),
                    to_number(data.get("retry_after")),
                    to_number(source.get("retryAfter")),
                    to_number(_header(data.get("headers"), "retry-after")),
                )
                if number is not None
            ),
            None
        )
        return info

    def _from_openai_error(self, error: openai.APIStatusError) -> ProviderErrorInfo:
        body = error.body if isinstance(error.body, Mapping) else {}
        info = self._from_mapping(body)
        if isinstance(error.code, str) and error.code not in info.codes:
            info.codes.insert(0, error.code)
        info.status = error.status_code
        info.message = info.message or error.message
        info.type = info.type or (error.type if isinstance(error.type, str) else None)
        info.request_id = info.request_id or getattr(error, "request_id", None)
        if info.retry_after is None:
            info.retry_after = to_number(error.response.headers.get("retry-after"))
        info.exception = error
        return info

    def _from_http_status_error(self, error: httpx.HTTPStatusError) -> ProviderErrorInfo:
        response = error.response
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, Mapping):
            info = self._from_mapping(body)
        else:
            info = ProviderErrorInfo(message=response.text or str(error))
        info.status = response.status_code
        info.request_id = info.request_id or response.headers.get("x-request-id")
        if info.retry_after is None:
            info.retry_after = to_number(response.headers.get("retry-after"))
        info.exception = error
        return info

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def classify(self, info: ProviderErrorInfo) -> ErrorMapping:
        """Pick the table row for extracted provider fields."""
        candidates = info.codes + ([info.type] if info.type else [])
        for code in candidates:
            mapping = self._by_code.get(code.strip().lower())
            if mapping:
                return mapping

        if info.status in self.STATUS_HINTS:
            return self._by_key[self.STATUS_HINTS[info.status]]

        if info.message:
            message = info.message.lower()
            for fragment, key in self.MESSAGE_HINTS:
                if fragment in message:
                    return self._by_key[key]

        return self._generic_mapping(self._classify_generic(info))

    def _classify_generic(self, info: ProviderErrorInfo) -> ErrorCode:
        exception = info.exception
        if isinstance(exception, TIMEOUT_EXCEPTIONS):
            return ErrorCode.CONNECTION_TIMEOUT
        if isinstance(exception, CONNECTION_EXCEPTIONS):
            return ErrorCode.CONNECTION_FAILED
        if isinstance(exception, TypeError):
            return ErrorCode.INVALID_PARAMETERS

        if info.status in GENERIC_STATUS_CODES:
            return GENERIC_STATUS_CODES[info.status]

        if info.message:
            message = info.message.lower()
            for fragment, code in GENERIC_MESSAGE_HINTS:
                if fragment in message:
                    return code

        return ErrorCode.UNKNOWN_ERROR

    def _generic_mapping(self, code: ErrorCode) -> ErrorMapping:
        mapping = GENERIC_MAPPINGS.get(code, GENERIC_MAPPINGS[ErrorCode.UNKNOWN_ERROR])
        return replace(mapping, user_message=mapping.user_message.format(provider=self.provider_label))

    # ------------------------------------------------------------------
    # Record construction
    # ------------------------------------------------------------------

    def _build_record(
        self,
        mapping: ErrorMapping,
        info: ProviderErrorInfo,
        stage: Optional[str],
        request_id: Optional[str]
    ) -> ProcessedError:
        provider_fields = {
            "provider_code": info.provider_code,
            "provider_type": info.type,
            "provider_status": info.status,
            "provider_request_id": info.request_id,
            "retry_after_seconds": info.retry_after,
        }
        context = ErrorContext(
            stage=stage,
            request_id=request_id or info.request_id,
            provider_code=info.provider_code,
            provider_status=info.status,
            retry_after_seconds=info.retry_after,
            additional_data={k: v for k, v in provider_fields.items() if v is not None},
        )
        message = redact_secrets(info.message) if info.message else mapping.user_message
        return ProcessedError(
            code=mapping.code,
            message=message,
            severity=mapping.severity,
            category=category_for(mapping.code),
            retryable=mapping.retryable,
            recovery=mapping.recovery,
            user_message=mapping.user_message,
            provider=self.provider,
            details=self._serialize_details(info, mapping.code),
            context=context,
        )

    def _serialize_details(self, info: ProviderErrorInfo, code: ErrorCode) -> str:
        parts = []
        if info.provider_code:
            parts.append(f"provider_code={info.provider_code}")
        parts.append(f"mapped_code={int(code)}")
        if info.status is not None:
            parts.append(f"status={info.status}")
        if info.type:
            parts.append(f"type={info.type}")
        if info.request_id:
            parts.append(f"request_id={info.request_id}")
        if info.message:
            parts.append(sanitize_for_log(redact_secrets(info.message)))
        return " | ".join(parts)
