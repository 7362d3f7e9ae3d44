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
"""Configuration module for storyforge.

This module loads and validates configuration from environment variables.
All settings are validated at startup to fail fast if configuration is invalid.
"""

from functools import lru_cache
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from storyforge.models import AIProvider


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    See .env.example for documentation of each setting.
    """

    # Service Configuration
    service_name: str = Field(
        default="storyforge",
        description="Service name for logging and identification"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_json_format: bool = Field(
        default=False,
        description="Enable JSON structured logging output"
    )

    # Metrics Configuration
    enable_metrics: bool = Field(
        default=False,
        description="Enable metrics collection and /metrics endpoint"
    )

    # Debug Configuration
    enable_debug_endpoints: bool = Field(
        default=False,
        description="Enable /debug/* endpoints (for local development only)"
    )

    # Pipeline Configuration
    default_provider: AIProvider = Field(
        default=AIProvider.DEEPSEEK,
        description="Provider used when a request does not name one"
    )
    max_history_rounds: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Number of recent rounds rendered into prompts"
    )
    enable_auto_fix: bool = Field(
        default=True,
        description="Attempt textual repair of malformed JSON in AI responses"
    )
    strict_mode: bool = Field(
        default=False,
        description="Fail turns on any validation warning and skip formatter repair of contract violations"
    )
    max_payload_log_length: int = Field(
        default=500,
        ge=50,
        le=10000,
        description="Maximum number of characters of AI payloads written to logs"
    )

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a recognized value."""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(
                f"log_level must be one of {valid_levels}, got: {v}"
            )
        return v_upper

    @field_validator('default_provider', mode='before')
    @classmethod
    def normalize_provider(cls, v):
        """Accept provider names in any case."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )


@lru_cache
def get_settings() -> Settings:
    """Get the settings instance with LRU caching.

    Uses functools.lru_cache for thread-safe singleton pattern.
    The cache can be cleared for testing using get_settings.cache_clear().

    Returns:
        Settings instance with validated configuration

    Raises:
        ValueError: If configuration is invalid
    """
    try:
        return Settings()
    except Exception as e:
        raise ValueError(
            f"Configuration error: {e}. "
            "See .env.example for available configuration."
        ) from e
