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
"""Prompt builder for constructing provider prompts from game state."""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from storyforge.logging import StructuredLogger
from storyforge.models import (
    AIProvider,
    DataType,
    ExtensionConfig,
    FieldType,
    GameRound,
    ProgressValue,
    PromptBuildOptions,
    StatusConfig,
    StatusFieldValue,
    WorldConfig,
)
from storyforge.prompting.token_estimator import estimate_tokens

logger = StructuredLogger(__name__)

DEFAULT_MAX_HISTORY_ROUNDS = 10
SECTION_SEPARATOR = "\n\n"

DEFAULT_CHARACTER_TEXT = "玩家是一名普通的冒险者"
SYSTEM_ROUND_PLACEHOLDER = "（系统回合）"

# Provider output notes appended to the requirement section, keyed by provider.
PROVIDER_NOTES: Dict[AIProvider, Tuple[str, Tuple[str, ...]]] = {
    AIProvider.DEEPSEEK: (
        "DeepSeek",
        (
            "如果使用推理模式，请在思考后直接输出JSON，不要添加额外说明",
            "支持在JSON前添加<reasoning>标签包裹的思考过程，但最终必须输出完整JSON",
            "请确保JSON格式严格符合要求，不要使用Markdown格式的额外包装",
        ),
    ),
    AIProvider.GEMINI: (
        "Gemini",
        (
            "请确保输出内容符合安全政策，避免触发安全过滤器",
            "如果内容涉及敏感话题，请使用委婉的表达方式",
            "必须直接输出JSON格式，不要添加前缀或后缀说明",
            "支持多模态输入，但输出必须是纯文本JSON格式",
        ),
    ),
    AIProvider.SILICONFLOW: (
        "SiliconFlow",
        (
            "请直接输出JSON格式，不要添加任何前后说明文字",
            "确保JSON格式严格有效，避免解析错误",
            "如果使用批处理模式，每个请求都应独立输出完整JSON",
            "输出应该简洁高效，避免冗长描述",
        ),
    ),
}

STATUS_EXAMPLE_VALUES: Dict[FieldType, Any] = {
    FieldType.PROGRESS: {"value": 100, "max": 100},
    FieldType.NUMBER: 0,
}
STATUS_EXAMPLE_DEFAULT = "value"

EXTENSION_EXAMPLE_VALUES: Dict[DataType, Any] = {
    DataType.ARRAY: ["item1", "item2"],
    DataType.OBJECT: {"key1": "value1", "key2": "value2"},
}
EXTENSION_EXAMPLE_DEFAULT = "mixed data"

OUTPUT_RULES = (
    "JSON必须完整且格式正确，不能有多余的逗号",
    "内容使用生动的自然语言，但结构要固定",
    "options必须提供3个，id固定为A、B、C，不可省略或增加",
    "status字段必须与用户配置的状态栏字段完全一致，进度条类型使用{value,max}对象格式",
    "custom中的key优先使用系统配置的扩展卡片名称",
    "所有数值必须是数字类型，不要用字符串",
    "请勿使用\"event\"字段，必须使用\"narration\"",
    "narration必须限制在1-3句话，保持简洁明了",
)

REQUIREMENT_TEMPLATE = """=== 输出要求 ===
请必须严格按照以下JSON格式输出，内容使用自然语言描述：

```json
{{
  "scene": "场景的详细自然语言描述，包含环境、氛围、视觉细节等",
  "narration": "旁白内容——以第三人称视角叙述当前回合的情况变化（限制1-3句话）",
  "options": [
    {{"id": "A", "text": "选项A的具体行动描述"}},
    {{"id": "B", "text": "选项B的具体行动描述"}},
    {{"id": "C", "text": "选项C的具体行动描述"}}
  ],
  "status": {status_example},
  "custom": {extension_example}
}}
```

关键要求：
{rules}{provider_notes}"""


@dataclass
class BuildMetadata:
    """Size diagnostics for a built prompt.

    Attributes:
        total_length: Character length of the whole prompt
        sections: Section name to character length, in prompt order
        estimated_tokens: Heuristic token estimate of the whole prompt
    """
    total_length: int
    sections: Dict[str, int] = field(default_factory=dict)
    estimated_tokens: int = 0


@dataclass
class BuildResult:
    success: bool
    prompt: Optional[str] = None
    error: Optional[str] = None
    metadata: Optional[BuildMetadata] = None


def format_number(value: Union[int, float]) -> str:
    """Render a number without a trailing .0 for integral floats."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_scalar(value: Any) -> str:
    """Render a JSON-like value as prompt text."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return format_number(value)
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


class PromptBuilder:
    """Builds the text prompt for one game round.

    Sections are joined by a blank line in a fixed order that downstream
    prompt engineering depends on:

        world, character, [history], status, [extension], input, requirement

    History appears only when past rounds are supplied and extension only
    when the game state carries custom data. The requirement section ends
    with provider-specific notes from PROVIDER_NOTES.
    """

    def __init__(self, default_max_history_rounds: int = DEFAULT_MAX_HISTORY_ROUNDS):
        """Initialize prompt builder.

        Args:
            default_max_history_rounds: History window used when a request
                does not set max_history_rounds
        """
        self.default_max_history_rounds = default_max_history_rounds

    def build_prompt(self, options: Union[PromptBuildOptions, Mapping]) -> BuildResult:
        """Assemble the prompt.

        Never raises: invalid options or any failure during assembly yields
        a failed BuildResult carrying the error message.

        Args:
            options: PromptBuildOptions, or a mapping validated into one

        Returns:
            BuildResult with prompt text and per-section lengths
        """
        try:
            if not isinstance(options, PromptBuildOptions):
                options = PromptBuildOptions.model_validate(options)

            sections: List[Tuple[str, str]] = [
                ("world", self._build_world_section(options.world_config)),
                ("character", self._build_character_section(options.world_config)),
            ]
            if options.history:
                max_rounds = options.max_history_rounds or self.default_max_history_rounds
                sections.append(("history", self._build_history_section(options.history, max_rounds)))
            sections.append((
                "status",
                self._build_status_section(options.game_state.player_status, options.status_config),
            ))
            if options.game_state.custom_data:
                sections.append((
                    "extension",
                    self._build_extension_section(options.game_state.custom_data, options.extension_config),
                ))
            sections.append(("input", self._build_input_section(options.user_input)))
            sections.append((
                "requirement",
                self._build_requirement_section(options.status_config, options.extension_config, options.provider),
            ))

            prompt = SECTION_SEPARATOR.join(text for _, text in sections)
            metadata = BuildMetadata(
                total_length=len(prompt),
                sections={name: len(text) for name, text in sections},
                estimated_tokens=estimate_tokens(prompt),
            )
            logger.debug(
                "Prompt built",
                provider=options.provider.value if options.provider else None,
                total_length=metadata.total_length,
                estimated_tokens=metadata.estimated_tokens,
                section_count=len(sections),
            )
            return BuildResult(success=True, prompt=prompt, metadata=metadata)

        except ValidationError as e:
            logger.warning("Prompt build options are invalid", error_count=e.error_count())
            return BuildResult(success=False, error=str(e))
        except Exception as e:
            logger.error("Prompt build failed", error_type=type(e).__name__, error=str(e))
            return BuildResult(success=False, error=str(e) or "构建Prompt失败")

    @staticmethod
    def estimate_tokens(prompt: str) -> int:
        """Estimate the token count of a prompt. See token_estimator."""
        return estimate_tokens(prompt)

    def _build_world_section(self, world_config: WorldConfig) -> str:
        rules = f"游戏规则：\n{world_config.rules}" if world_config.rules else ""
        return f"=== 游戏世界观 ===\n{world_config.background}\n\n{rules}"

    def _build_character_section(self, world_config: WorldConfig) -> str:
        return f"=== 角色背景 ===\n{world_config.characters or DEFAULT_CHARACTER_TEXT}"

    def _build_history_section(self, history: List[GameRound], max_rounds: int) -> str:
        """Render the most recent max_rounds rounds, oldest first."""
        lines = []
        for game_round in history[-max_rounds:]:
            user_action = game_round.user_input or SYSTEM_ROUND_PLACEHOLDER
            lines.append(f"第{game_round.round}回合：{user_action} - {game_round.ai_response.narration}")
        return "=== 历史回合摘要 ===\n" + "\n".join(lines)

    def _build_status_section(
        self,
        player_status: Dict[str, StatusFieldValue],
        status_config: StatusConfig
    ) -> str:
        """Render status values in configured field order, skipping absent fields."""
        lines = []
        for status_field in status_config.fields:
            if status_field.name in player_status:
                value = self._format_status_value(player_status[status_field.name])
                lines.append(f"{status_field.display_name}: {value}")
        return "=== 当前角色状态 ===\n" + "\n".join(lines)

    def _format_status_value(self, value: StatusFieldValue) -> str:
        if isinstance(value, ProgressValue):
            return f"{format_number(value.value)}/{format_number(value.max)}"
        return format_scalar(value)

    def _build_extension_section(
        self,
        custom_data: Dict[str, Any],
        extension_config: List[ExtensionConfig]
    ) -> str:
        """Render configured extensions in order, then unconfigured _extra entries."""
        lines = []
        configured = set()
        for extension in extension_config:
            configured.add(extension.name)
            if extension.name in custom_data:
                lines.append(f"{extension.name}: {self._format_extension_data(custom_data[extension.name])}")

        extra = custom_data.get("_extra")
        if isinstance(extra, Mapping):
            for key, value in extra.items():
                if key not in configured:
                    lines.append(f"{key}: {self._format_extension_data(value)}")

        return "=== 当前扩展信息 ===\n" + "\n".join(lines)

    def _format_extension_data(self, data: Any) -> str:
        if isinstance(data, list):
            return ", ".join("" if item is None else format_scalar(item) for item in data)
        if isinstance(data, Mapping):
            return ", ".join(f"{key}: {format_scalar(value)}" for key, value in data.items())
        return format_scalar(data)

    def _build_input_section(self, user_input: str) -> str:
        return f"=== 玩家当前操作 ===\n{user_input}"

    def _build_requirement_section(
        self,
        status_config: StatusConfig,
        extension_config: List[ExtensionConfig],
        provider: Optional[AIProvider]
    ) -> str:
        status_example = {
            status_field.name: STATUS_EXAMPLE_VALUES.get(status_field.type, STATUS_EXAMPLE_DEFAULT)
            for status_field in status_config.fields
        }
        extension_example = {
            extension.name: EXTENSION_EXAMPLE_VALUES.get(extension.data_type, EXTENSION_EXAMPLE_DEFAULT)
            for extension in extension_config
        }
        rules = "\n".join(f"{index}. {rule}" for index, rule in enumerate(OUTPUT_RULES, start=1))
        return REQUIREMENT_TEMPLATE.format(
            status_example=self._format_example(status_example),
            extension_example=self._format_example(extension_example),
            rules=rules,
            provider_notes=self._build_provider_notes(provider),
        )

    def _format_example(self, example: Dict[str, Any]) -> str:
        """Indent a JSON example to sit inside the outer example object."""
        text = json.dumps(example, ensure_ascii=False, indent=2)
        return "\n".join("  " + line for line in text.split("\n")).strip()

    def _build_provider_notes(self, provider: Optional[AIProvider]) -> str:
        if provider not in PROVIDER_NOTES:
            return ""
        label, notes = PROVIDER_NOTES[provider]
        bullet_lines = "\n".join(f"- {note}" for note in notes)
        return f"\n\n特别说明（{label}）：\n{bullet_lines}"
