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
"""Shared test fixtures for Storyforge.

This module provides pytest fixtures for testing Storyforge:
- test_env: Test environment variables
- client: FastAPI TestClient with debug endpoints and metrics enabled
- client_debug_disabled: FastAPI TestClient with default (disabled) diagnostics
- build_options: A complete PromptBuildOptions payload
- valid_game_data: A game-data object satisfying the output contract

Usage:
    Run tests with pytest:
        pytest tests/
        pytest tests/test_response_parser.py -v
"""

import json
import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch
import os


@pytest.fixture
def test_env():
    """Fixture providing test environment variables.

    Usage:
        def test_example(test_env):
            with patch.dict(os.environ, test_env):
                # Test code that uses environment variables
    """
    return {
        "SERVICE_NAME": "storyforge-test",
        "LOG_LEVEL": "INFO",
        "ENABLE_METRICS": "true",
        "ENABLE_DEBUG_ENDPOINTS": "true",
        "DEFAULT_PROVIDER": "deepseek",
        "MAX_HISTORY_ROUNDS": "10"
    }


@pytest.fixture
def client(test_env):
    """Fixture providing FastAPI test client with diagnostics enabled.

    Usage:
        def test_health(client):
            response = client.get("/health")
            assert response.status_code == 200
    """
    with patch.dict(os.environ, test_env, clear=True):
        from storyforge.config import get_settings
        get_settings.cache_clear()

        from storyforge.main import app
        from storyforge.metrics import disable_metrics_collector

        try:
            with TestClient(app) as client:
                yield client
        finally:
            disable_metrics_collector()
            get_settings.cache_clear()


@pytest.fixture
def client_debug_disabled():
    """Fixture providing FastAPI test client with default settings.

    Metrics and debug endpoints are both disabled by default.
    """
    with patch.dict(os.environ, {"SERVICE_NAME": "storyforge-test"}, clear=True):
        from storyforge.config import get_settings
        get_settings.cache_clear()

        from storyforge.main import app

        try:
            with TestClient(app) as client:
                yield client
        finally:
            get_settings.cache_clear()


@pytest.fixture
def build_options():
    """Fixture providing a complete prompt build payload as a dict."""
    return {
        "world_config": {
            "background": "一座漂浮在云海之上的古城",
            "rules": "每回合只能行动一次",
            "characters": "玩家是一名失忆的见习法师"
        },
        "status_config": {
            "fields": [
                {"name": "hp", "display_name": "生命值", "type": "progress"},
                {"name": "gold", "display_name": "金币", "type": "number"},
                {"name": "mood", "display_name": "心情", "type": "text"}
            ]
        },
        "extension_config": [
            {"name": "背包", "data_type": "array"},
            {"name": "任务", "data_type": "object"}
        ],
        "game_state": {
            "player_status": {
                "hp": {"value": 80, "max": 100},
                "gold": 25,
                "mood": "平静"
            },
            "custom_data": {
                "背包": ["木杖", "面包"],
                "任务": {"主线": "寻找钟楼"}
            }
        },
        "user_input": "推开钟楼的大门",
        "history": [
            {"round": 1, "user_input": "醒来", "ai_response": {"narration": "你在广场上醒来。"}},
            {"round": 2, "user_input": None, "ai_response": {"narration": "钟声响起。"}}
        ]
    }


@pytest.fixture
def valid_game_data():
    """Fixture providing a game-data object satisfying the output contract."""
    return {
        "scene": "钟楼内部昏暗，齿轮缓慢转动。",
        "narration": "大门在你身后合上。",
        "options": [
            {"id": "A", "text": "爬上楼梯"},
            {"id": "B", "text": "检查齿轮"},
            {"id": "C", "text": "退回广场"}
        ],
        "status": {"hp": {"value": 80, "max": 100}},
        "custom": {"背包": ["木杖"]}
    }


@pytest.fixture
def valid_game_json(valid_game_data):
    """Fixture providing valid_game_data serialized as JSON text."""
    return json.dumps(valid_game_data, ensure_ascii=False)
