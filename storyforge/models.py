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
"""Pydantic models for the storyforge AI response pipeline.

This module defines:
- Session configuration (world, status bar and extension panel configs)
- Game state snapshots and history rounds consumed by the prompt builder
- The ParsedGameData contract the AI provider is instructed to emit
- Request/response models for the diagnostics API
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, StrictStr, field_validator


class AIProvider(str, Enum):
    """AI text-completion providers known to the pipeline."""

    OPENAI = "openai"
    CLAUDE = "claude"
    DEEPSEEK = "deepseek"
    GEMINI = "gemini"
    SILICONFLOW = "siliconflow"


class FieldType(str, Enum):
    """Rendering type of a status bar field."""

    NUMBER = "number"
    PROGRESS = "progress"
    TEXT = "text"
    LEVEL = "level"


class DataType(str, Enum):
    """Shape of the data carried by an extension panel."""

    ARRAY = "array"
    OBJECT = "object"
    SCALAR = "scalar"

    @classmethod
    def _missing_(cls, value):
        # Older saves call scalar panels "mixed"
        if isinstance(value, str) and value.lower() == "mixed":
            return cls.SCALAR
        return None


# ============================================================================
# Session configuration
# ============================================================================


class WorldConfig(BaseModel):
    """World setting shown to the model at the top of every prompt.

    Attributes:
        background: World background text (rendered verbatim)
        rules: Optional game rules text
        characters: Optional character background text
    """
    background: str = Field(..., description="World background text")
    rules: Optional[str] = Field(default=None, description="Optional game rules")
    characters: Optional[str] = Field(
        default=None,
        description="Character background; a default sentence is used when absent"
    )


class ProgressValue(BaseModel):
    """Progress-bar value rendered as value/max."""
    value: Union[StrictInt, StrictFloat]
    max: Union[StrictInt, StrictFloat]


# Booleans are not status values; strict members stop True from becoming 1
StatusFieldValue = Union[ProgressValue, StrictInt, StrictFloat, StrictStr]


class StatusField(BaseModel):
    """One configured status bar field.

    Attributes:
        name: Key used in status mappings
        display_name: Label rendered in prompts
        type: Value rendering type
        default_value: Value filled in when the AI omits the field
        max: Maximum used when a progress value arrives as a bare number
        required: Report a missing value as an error instead of a warning
    """
    name: str = Field(..., min_length=1, description="Key used in status mappings")
    display_name: str = Field(..., description="Label rendered in prompts")
    type: FieldType = Field(default=FieldType.TEXT, description="Value rendering type")
    default_value: Optional[StatusFieldValue] = Field(default=None)
    max: Optional[Union[StrictInt, StrictFloat]] = Field(default=None)
    required: bool = Field(default=False)


class StatusConfig(BaseModel):
    """Ordered status bar configuration. Field order drives rendering order."""
    fields: List[StatusField] = Field(default_factory=list)


class ExtensionConfig(BaseModel):
    """One configured extension panel (quests, inventory, relationships...)."""
    name: str = Field(..., min_length=1)
    data_type: DataType = Field(default=DataType.SCALAR)


# ============================================================================
# Game state and history
# ============================================================================


class GameState(BaseModel):
    """Snapshot of the current game state.

    Attributes:
        player_status: Mapping of status field name to its current value
        custom_data: Mapping of extension name to arbitrary JSON data. The
            optional "_extra" key holds unconfigured extension data.
    """
    player_status: Dict[str, StatusFieldValue] = Field(default_factory=dict)
    custom_data: Dict[str, Any] = Field(default_factory=dict)


class RoundResponse(BaseModel):
    """AI response stored for a past round. Only narration is rendered."""
    model_config = ConfigDict(extra="allow")

    narration: str = Field(default="")


class GameRound(BaseModel):
    """One historical turn.

    Attributes:
        round: Round number
        user_input: Player action text, None for system-triggered rounds
        ai_response: The stored AI response for that round
    """
    round: int
    user_input: Optional[str] = None
    ai_response: RoundResponse = Field(default_factory=RoundResponse)


class PromptBuildOptions(BaseModel):
    """Inputs to PromptBuilder.build_prompt."""
    world_config: WorldConfig
    status_config: StatusConfig = Field(default_factory=StatusConfig)
    extension_config: List[ExtensionConfig] = Field(default_factory=list)
    game_state: GameState = Field(default_factory=GameState)
    user_input: str = Field(default="")
    history: List[GameRound] = Field(default_factory=list)
    max_history_rounds: Optional[int] = Field(
        default=None,
        ge=0,
        description="Number of most recent rounds to render; 0 or None uses the default of 10"
    )
    provider: Optional[AIProvider] = Field(
        default=None,
        description="Provider whose output notes are appended to the prompt"
    )


class ParseOptions(BaseModel):
    """Inputs to ResponseParser.parse_response."""
    provider: AIProvider
    raw_response: str
    enable_auto_fix: bool = False
    strict_mode: bool = False


# ============================================================================
# AI output contract
# ============================================================================


class GameOption(BaseModel):
    """One of the three action options offered to the player."""
    model_config = ConfigDict(extra="allow")

    id: Literal["A", "B", "C"]
    text: StrictStr = Field(..., min_length=1)


class ParsedGameData(BaseModel):
    """Validated game-data delta produced by the AI for one round.

    Unknown top-level keys are kept. A null status or custom is treated as
    absent.
    """
    model_config = ConfigDict(extra="allow")

    scene: StrictStr = Field(..., min_length=1)
    narration: StrictStr = Field(..., min_length=1)
    options: List[GameOption] = Field(..., min_length=3, max_length=3)
    status: Optional[Dict[str, Any]] = None
    custom: Optional[Dict[str, Any]] = None

    @field_validator("options")
    @classmethod
    def validate_option_ids(cls, v: List[GameOption]) -> List[GameOption]:
        """Require the option ids to be exactly A, B and C."""
        ids = sorted(option.id for option in v)
        if ids != ["A", "B", "C"]:
            raise ValueError(f"option ids must be exactly A, B and C, got {ids}")
        return v


# ============================================================================
# Diagnostics API models
# ============================================================================


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str = Field(..., examples=["healthy"])
    service: str = Field(default="storyforge")


class DebugClassifyRequest(BaseModel):
    """Request model for the error classification debug endpoint.

    Attributes:
        provider: Provider whose processor classifies the error
        error: Error envelope (JSON object) or bare error message
        stage: Optional pipeline stage where the error happened
    """
    provider: AIProvider
    error: Union[Dict[str, Any], str]
    stage: Optional[str] = None


class DebugTokenRequest(BaseModel):
    """Request model for the token estimation debug endpoint."""
    text: str


class DebugValidateRequest(BaseModel):
    """Request model for the data validation debug endpoint.

    Attributes:
        data: Decoded game data to check
        status_config: Status bar configuration to check against
        extension_config: Configured extension panels
        strict_mode: Treat warnings as failures; defaults to STRICT_MODE
        enable_format: Run DataFormatter before validating
    """
    data: Any
    status_config: StatusConfig = Field(default_factory=StatusConfig)
    extension_config: List[ExtensionConfig] = Field(default_factory=list)
    strict_mode: Optional[bool] = None
    enable_format: bool = True
