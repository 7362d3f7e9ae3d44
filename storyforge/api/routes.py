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
"""API route handlers for the Storyforge diagnostics service.

This module defines the HTTP endpoints:
- GET /health: Service health check
- GET /metrics: Service metrics (optional, requires ENABLE_METRICS=true)
- POST /debug/build_prompt: Build a prompt from game state
- POST /debug/parse_response: Run the response parser on raw AI output
- POST /debug/validate_data: Format and validate game data against configs
- POST /debug/classify_error: Classify a provider error
- POST /debug/estimate_tokens: Estimate the token count of a text

The debug endpoints require ENABLE_DEBUG_ENDPOINTS=true and are meant for
local development only. Builder and parser failures are returned as 200
responses carrying the typed failure; only disabled endpoints and
malformed request bodies produce HTTP errors.
"""

from dataclasses import asdict
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status

from storyforge.config import get_settings, Settings
from storyforge.errors.registry import get_error_processor
from storyforge.logging import StructuredLogger, get_request_id
from storyforge.metrics import get_metrics_collector
from storyforge.models import (
    DebugClassifyRequest,
    DebugTokenRequest,
    DebugValidateRequest,
    HealthResponse,
    ParseOptions,
    PromptBuildOptions,
)
from storyforge.prompting.prompt_builder import PromptBuilder
from storyforge.prompting.token_estimator import estimate_tokens
from storyforge.services.data_formatter import DataFormatter
from storyforge.services.data_validator import DataValidator
from storyforge.services.response_parser import ResponseParser

logger = StructuredLogger(__name__)

router = APIRouter()


def get_prompt_builder() -> PromptBuilder:
    """Dependency that provides the shared PromptBuilder.

    This is a placeholder that must be overridden by the application.
    The application lifespan in main.py provides the actual implementation.

    Raises:
        NotImplementedError: If not overridden by the application
    """
    raise NotImplementedError(
        "get_prompt_builder dependency must be overridden. "
        "This should be configured in storyforge.main module."
    )


def get_response_parser() -> ResponseParser:
    """Dependency that provides the shared ResponseParser.

    This is a placeholder that must be overridden by the application.
    The application lifespan in main.py provides the actual implementation.

    Raises:
        NotImplementedError: If not overridden by the application
    """
    raise NotImplementedError(
        "get_response_parser dependency must be overridden. "
        "This should be configured in storyforge.main module."
    )


def require_debug_endpoints(settings: Settings = Depends(get_settings)) -> None:
    """Reject the request with 404 unless debug endpoints are enabled."""
    if not settings.enable_debug_endpoints:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Debug endpoints are disabled. Set ENABLE_DEBUG_ENDPOINTS=true to enable."
        )


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health check endpoint",
    description="Check service health status. Always returns 200 with status='healthy'."
)
async def health_check(settings: Settings = Depends(get_settings)) -> HealthResponse:
    """Health check endpoint.

    Args:
        settings: Application settings (injected)

    Returns:
        HealthResponse with status and service name
    """
    logger.debug("Health check requested")
    return HealthResponse(status="healthy", service=settings.service_name)


@router.get(
    "/metrics",
    status_code=status.HTTP_200_OK,
    summary="Metrics endpoint",
    description=(
        "Get service metrics including request counts, latencies, schema "
        "conformance of parsed AI responses and provider errors by code. "
        "Only available when ENABLE_METRICS is true. Returns 404 if metrics are disabled."
    ),
    responses={
        200: {
            "description": "Metrics collected",
            "content": {
                "application/json": {
                    "example": {
                        "uptime_seconds": 3600.0,
                        "requests": {
                            "total": 150,
                            "success": 148,
                            "errors": 2,
                            "by_status_code": {"200": 148, "422": 2}
                        },
                        "errors": {"by_type": {"provider_ai_service": 4}},
                        "latencies": {
                            "provider_call": {
                                "count": 40,
                                "avg_ms": 950.3,
                                "min_ms": 600.1,
                                "max_ms": 2500.5
                            }
                        },
                        "schema_conformance": {
                            "total_parses": 40,
                            "successful_parses": 37,
                            "failed_parses": 3,
                            "auto_fixed_parses": 5,
                            "failures_by_phase": {"parsing": 2, "validation": 1},
                            "conformance_rate": 0.925
                        },
                        "provider_errors": {
                            "deepseek": {"DEEPSEEK_RATE_LIMIT_EXCEEDED": 4}
                        }
                    }
                }
            }
        },
        404: {"description": "Metrics disabled"}
    }
)
async def get_metrics(settings: Settings = Depends(get_settings)):
    """Get service metrics.

    Args:
        settings: Application settings (injected)

    Returns:
        Dictionary with metrics data

    Raises:
        HTTPException: If metrics are disabled
    """
    if not settings.enable_metrics:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Metrics endpoint is disabled. Set ENABLE_METRICS=true to enable."
        )

    collector = get_metrics_collector()
    if not collector:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Metrics collector not initialized"
        )

    return collector.get_metrics()


@router.post(
    "/debug/build_prompt",
    status_code=status.HTTP_200_OK,
    summary="Build a prompt from game state",
    dependencies=[Depends(require_debug_endpoints)],
    responses={404: {"description": "Debug endpoints disabled"}}
)
async def debug_build_prompt(
    request: PromptBuildOptions,
    prompt_builder: PromptBuilder = Depends(get_prompt_builder),
    settings: Settings = Depends(get_settings)
) -> Dict[str, Any]:
    """Build the prompt the client would send for this game state.

    Args:
        request: Prompt build options; provider defaults to DEFAULT_PROVIDER
        prompt_builder: Shared prompt builder (injected)
        settings: Application settings (injected)

    Returns:
        Dictionary with success, prompt, error and metadata
    """
    if request.provider is None:
        request = request.model_copy(update={"provider": settings.default_provider})
    result = prompt_builder.build_prompt(request)
    return asdict(result)


@router.post(
    "/debug/parse_response",
    status_code=status.HTTP_200_OK,
    summary="Parse raw AI output",
    description=(
        "Run extraction, optional auto-fix and validation on a raw provider "
        "completion. Parse failures are returned with the failing phase."
    ),
    dependencies=[Depends(require_debug_endpoints)],
    responses={404: {"description": "Debug endpoints disabled"}}
)
async def debug_parse_response(
    request: ParseOptions,
    response_parser: ResponseParser = Depends(get_response_parser),
    settings: Settings = Depends(get_settings)
) -> Dict[str, Any]:
    """Parse a raw completion.

    Flags missing from the request body fall back to ENABLE_AUTO_FIX and
    STRICT_MODE.

    Args:
        request: Provider, raw text and parsing flags
        response_parser: Shared response parser (injected)
        settings: Application settings (injected)

    Returns:
        Dictionary with success, data, error and metadata
    """
    defaults = {
        "enable_auto_fix": settings.enable_auto_fix,
        "strict_mode": settings.strict_mode,
    }
    unset = {key: value for key, value in defaults.items() if key not in request.model_fields_set}
    if unset:
        request = request.model_copy(update=unset)
    result = response_parser.parse_response(request)
    return {
        "success": result.success,
        "data": result.data.model_dump() if result.data else None,
        "error": asdict(result.error) if result.error else None,
        "metadata": asdict(result.metadata) if result.metadata else None,
    }


@router.post(
    "/debug/validate_data",
    status_code=status.HTTP_200_OK,
    summary="Format and validate game data",
    description=(
        "Run DataFormatter and DataValidator on decoded game data against "
        "the given status and extension configuration."
    ),
    dependencies=[Depends(require_debug_endpoints)],
    responses={404: {"description": "Debug endpoints disabled"}}
)
async def debug_validate_data(
    request: DebugValidateRequest,
    settings: Settings = Depends(get_settings)
) -> Dict[str, Any]:
    """Format and validate game data.

    Args:
        request: Data, configs and flags; strict_mode defaults to STRICT_MODE
        settings: Application settings (injected)

    Returns:
        Dictionary with the checked data, format summary and validation report
    """
    strict_mode = settings.strict_mode if request.strict_mode is None else request.strict_mode
    data = request.data
    format_summary = None
    if request.enable_format:
        format_result = DataFormatter().format(data, request.status_config, request.extension_config)
        if format_result.data is not None:
            data = format_result.data
        format_summary = {
            "success": format_result.success,
            "applied": format_result.applied,
            "warnings": format_result.warnings,
        }
    report = DataValidator().validate(
        data, request.status_config, request.extension_config, strict_mode=strict_mode
    )
    return {"data": data, "format": format_summary, "validation": asdict(report)}


@router.post(
    "/debug/classify_error",
    status_code=status.HTTP_200_OK,
    summary="Classify a provider error",
    dependencies=[Depends(require_debug_endpoints)],
    responses={404: {"description": "Debug endpoints disabled"}}
)
async def debug_classify_error(request: DebugClassifyRequest) -> Dict[str, Any]:
    """Run the provider's error processor on an error body or message.

    Args:
        request: Provider, error and optional stage

    Returns:
        Processed error fields plus code_name
    """
    processor = get_error_processor(request.provider)
    processed = processor.process(request.error, stage=request.stage, request_id=get_request_id())
    return {**processed.model_dump(mode="json"), "code_name": processed.code.name}


@router.post(
    "/debug/estimate_tokens",
    status_code=status.HTTP_200_OK,
    summary="Estimate token count",
    dependencies=[Depends(require_debug_endpoints)],
    responses={404: {"description": "Debug endpoints disabled"}}
)
async def debug_estimate_tokens(request: DebugTokenRequest) -> Dict[str, int]:
    """Estimate the token count of a text."""
    return {"tokens": estimate_tokens(request.text), "length": len(request.text)}
