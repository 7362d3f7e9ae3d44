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
"""FastAPI application entry point for the Storyforge diagnostics service.

This module creates and configures the FastAPI application with:
- Route registration
- CORS middleware (for web client access)
- Lifespan management for the shared prompt builder and response parser
- OpenAPI/Swagger documentation
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging

from storyforge.api.routes import router, get_prompt_builder, get_response_parser
from storyforge.config import get_settings
from storyforge.middleware import RequestCorrelationMiddleware
from storyforge.logging import configure_logging
from storyforge.metrics import init_metrics_collector, disable_metrics_collector
from storyforge.prompting.prompt_builder import PromptBuilder
from storyforge.services.response_parser import ResponseParser

# Will be configured in lifespan
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager.

    Startup validates configuration, configures logging and metrics and
    creates the shared pipeline components.

    Args:
        app: FastAPI application instance
    """
    logger.info("Starting Storyforge service...")

    try:
        settings = get_settings()

        configure_logging(
            level=settings.log_level,
            json_format=settings.log_json_format,
            service_name=settings.service_name
        )

        logger.info("Configuration loaded successfully")
        logger.info(f"Default provider: {settings.default_provider.value}")
        logger.info(f"Metrics enabled: {settings.enable_metrics}")
        logger.info(f"Debug endpoints enabled: {settings.enable_debug_endpoints}")

        if settings.enable_metrics:
            init_metrics_collector()
            logger.info("Metrics collector initialized")
        else:
            disable_metrics_collector()
            logger.info("Metrics collection disabled")
    except Exception as e:
        logger.error(f"Configuration validation failed: {e}")
        raise

    app.state.prompt_builder = PromptBuilder(
        default_max_history_rounds=settings.max_history_rounds
    )
    logger.info(f"Prompt builder initialized (max_history_rounds={settings.max_history_rounds})")

    app.state.response_parser = ResponseParser(
        max_payload_log_length=settings.max_payload_log_length
    )
    logger.info("Response parser initialized")

    yield

    logger.info("Shutting down Storyforge service...")


app = FastAPI(
    title="Storyforge API",
    description=(
        "Diagnostics service for the AI response pipeline of an interactive "
        "fiction client: prompt building, response parsing and provider "
        "error classification."
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestCorrelationMiddleware)

app.include_router(router, tags=["pipeline"])


def get_prompt_builder_override() -> PromptBuilder:
    """Dependency override that provides the PromptBuilder from app state.

    Raises:
        RuntimeError: If prompt_builder is not initialized in app state
    """
    if not hasattr(app.state, 'prompt_builder'):
        raise RuntimeError(
            "Prompt builder not initialized. "
            "Ensure the application lifespan has started."
        )
    return app.state.prompt_builder


def get_response_parser_override() -> ResponseParser:
    """Dependency override that provides the ResponseParser from app state.

    Raises:
        RuntimeError: If response_parser is not initialized in app state
    """
    if not hasattr(app.state, 'response_parser'):
        raise RuntimeError(
            "Response parser not initialized. "
            "Ensure the application lifespan has started."
        )
    return app.state.response_parser


app.dependency_overrides[get_prompt_builder] = get_prompt_builder_override
app.dependency_overrides[get_response_parser] = get_response_parser_override


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level)

    uvicorn.run(
        "storyforge.main:app",
        host="0.0.0.0",
        port=8080,
        reload=True,
        log_level=settings.log_level.lower()
    )
