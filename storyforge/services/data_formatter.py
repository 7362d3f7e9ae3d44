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
"""Light-touch repair of decoded game data against the session configuration.

DataFormatter works on plain decoded JSON (dicts and lists), before or after
ParsedGameData validation. It applies, in order:

1. Field mapping: common alternative key names (event, 旁白, choices, 状态...)
   are renamed to the contract keys when the contract key is absent
2. Options repair: strings become option objects, ids are forced into
   A/B/C, text falls back to content/description, the list is padded or
   truncated to exactly three entries
3. Status repair: configured progress and number fields are coerced to
   their configured shape. Values that cannot be coerced are dropped, and
   required fields that end up missing get their default
4. Custom repair: data for unconfigured extension panels moves under "_extra"
5. Default fill: empty scene, narration and options get placeholder values

Every change is recorded in FormatResult.applied; changes that lose data
are also recorded in FormatResult.warnings. Status and custom are deltas:
an absent status, custom or status field means nothing changed this round,
so only required fields are ever filled in.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from storyforge.logging import StructuredLogger
from storyforge.models import (
    ExtensionConfig,
    FieldType,
    ProgressValue,
    StatusConfig,
    StatusField,
)
from storyforge.services.json_repair import dumps_compact

logger = StructuredLogger(__name__)

EXTRA_KEY = "_extra"

VALID_OPTION_IDS = ("A", "B", "C")

DEFAULT_SCENE = "场景描述暂时缺失，请继续游戏。"
DEFAULT_NARRATION = "当前回合的情况变化暂无描述。"
DEFAULT_OPTION_TEXTS = ("继续", "等待", "返回")
DEFAULT_PROGRESS_MAX = 100

# Alternative key -> contract key, applied in this order
FIELD_MAPPING: Tuple[Tuple[str, str], ...] = (
    ("event", "narration"),
    ("事件说明", "narration"),
    ("事件", "narration"),
    ("情况说明", "narration"),
    ("旁白", "narration"),
    ("description", "scene"),
    ("场景", "scene"),
    ("场景描述", "scene"),
    ("选项", "options"),
    ("choices", "options"),
    ("actions", "options"),
    ("状态", "status"),
    ("state", "status"),
    ("自定义", "custom"),
    ("extension", "custom"),
    ("extensions", "custom"),
)

# Leading decimal number, the way a lenient string-to-number read works
LEADING_NUMBER_PATTERN = re.compile(r'^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?')


@dataclass
class FormatResult:
    """Outcome of DataFormatter.format.

    Attributes:
        success: True when the formatted data has a scene, a narration and
            exactly three options
        data: Formatted data; None only when the input was not an object
        applied: Human-readable list of changes made
        warnings: Changes that discarded or replaced AI output
    """
    success: bool
    data: Optional[Dict[str, Any]] = None
    applied: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def is_number(value: Any) -> bool:
    """True for JSON numbers. Booleans are not numbers."""
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_leading_number(text: str) -> Optional[Union[int, float]]:
    """Read the number at the start of text ("12.5kg" -> 12.5), or None."""
    match = LEADING_NUMBER_PATTERN.match(text)
    if not match:
        return None
    number = float(match.group(0))
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def default_option(index: int) -> Dict[str, str]:
    return {"id": VALID_OPTION_IDS[index], "text": DEFAULT_OPTION_TEXTS[index]}


def default_field_value(status_field: StatusField) -> Any:
    """Value used for a configured status field the AI left out or mangled."""
    if status_field.default_value is not None:
        value = status_field.default_value
        return value.model_dump() if isinstance(value, ProgressValue) else value
    if status_field.type == FieldType.PROGRESS:
        return {"value": 0, "max": status_field.max or DEFAULT_PROGRESS_MAX}
    if status_field.type == FieldType.TEXT:
        return ""
    return 0


class DataFormatter:
    """Repairs common shape problems in AI game data.

    The formatter never raises on odd input; anything it cannot repair is
    replaced by a default and reported as a warning.
    """

    def __init__(self, enable_field_mapping: bool = True, enable_default_fill: bool = True):
        """Initialize the formatter.

        Args:
            enable_field_mapping: Rename alternative keys to contract keys
            enable_default_fill: Fill empty scene, narration and options
        """
        self.enable_field_mapping = enable_field_mapping
        self.enable_default_fill = enable_default_fill

    def format(
        self,
        data: Any,
        status_config: Optional[StatusConfig] = None,
        extension_config: Optional[List[ExtensionConfig]] = None
    ) -> FormatResult:
        """Format decoded game data.

        Args:
            data: Decoded JSON value, normally an object
            status_config: Status bar configuration
            extension_config: Configured extension panels

        Returns:
            FormatResult with the formatted copy of data
        """
        if not isinstance(data, dict):
            return FormatResult(success=False, warnings=["数据不是有效的对象类型"])

        status_config = status_config or StatusConfig()
        extension_config = extension_config or []
        result = FormatResult(success=False, data=dict(data))

        if self.enable_field_mapping:
            self._apply_field_mapping(result)

        if result.data.get("options") is not None:
            self._fix_options(result)

        if result.data.get("status") is not None:
            self._fix_status(result, status_config)

        if result.data.get("custom") is not None:
            self._fix_custom(result, extension_config)

        if self.enable_default_fill:
            self._fill_defaults(result)

        result.success = self.is_minimally_valid(result.data)
        if not result.success:
            result.warnings.append("数据格式化后仍不满足最基本要求")

        if result.applied or result.warnings:
            logger.debug(
                "Formatted AI game data",
                applied_count=len(result.applied),
                warning_count=len(result.warnings),
                success=result.success,
            )
        return result

    @staticmethod
    def is_minimally_valid(data: Dict[str, Any]) -> bool:
        """Check for a non-empty scene and narration plus three options."""
        scene = data.get("scene")
        narration = data.get("narration")
        options = data.get("options")
        return (
            isinstance(scene, str) and bool(scene)
            and isinstance(narration, str) and bool(narration)
            and isinstance(options, list) and len(options) == 3
        )

    def _apply_field_mapping(self, result: FormatResult) -> None:
        data = result.data
        for old_key, new_key in FIELD_MAPPING:
            if old_key in data and new_key not in data:
                data[new_key] = data.pop(old_key)
                result.applied.append(f"字段映射: {old_key} → {new_key}")

    def _fix_options(self, result: FormatResult) -> None:
        options = result.data["options"]
        if not isinstance(options, list):
            result.data["options"] = [default_option(i) for i in range(3)]
            result.applied.append("使用默认选项")
            result.warnings.append("options不是数组类型，无法修复")
            return

        fixed: List[Dict[str, Any]] = []
        used_ids = set()
        for index, option in enumerate(options):
            if isinstance(option, str):
                option_id = self._next_option_id(index, used_ids)
                fixed.append({"id": option_id, "text": option or DEFAULT_OPTION_TEXTS[0]})
                result.applied.append(f"选项{index}从字符串转换为对象")
            elif isinstance(option, dict):
                fixed.append(self._fix_option_object(option, index, used_ids, result))
            else:
                option_id = self._next_option_id(index, used_ids)
                fixed.append({"id": option_id, "text": DEFAULT_OPTION_TEXTS[0]})
                result.warnings.append(f"选项{index}格式无效，使用默认值")
            used_ids.add(fixed[-1]["id"])

        if len(fixed) > 3:
            fixed = fixed[:3]
            result.warnings.append("选项数量超过3个，已截取前3个")
            used_ids = {option["id"] for option in fixed}

        while len(fixed) < 3:
            option_id = self._next_option_id(len(fixed), used_ids)
            fixed.append({"id": option_id, "text": DEFAULT_OPTION_TEXTS[len(fixed)]})
            used_ids.add(option_id)
            result.applied.append(f"添加默认选项{len(fixed)}")

        result.data["options"] = fixed

    def _fix_option_object(
        self,
        option: Dict[str, Any],
        index: int,
        used_ids: set,
        result: FormatResult
    ) -> Dict[str, Any]:
        fixed = dict(option)
        original_id = option.get("id")
        if original_id in VALID_OPTION_IDS and original_id not in used_ids:
            option_id = original_id
        else:
            option_id = self._next_option_id(index, used_ids)
            result.applied.append(f"修复选项{index}的id: {original_id} → {option_id}")
        fixed["id"] = option_id

        text = option.get("text") or option.get("content") or option.get("description")
        if not option.get("text"):
            result.applied.append(f"选项{index}缺少text，使用备用字段或默认值")
        if not text:
            text = DEFAULT_OPTION_TEXTS[0]
        fixed["text"] = text if isinstance(text, str) else dumps_compact(text)
        return fixed

    @staticmethod
    def _next_option_id(index: int, used_ids: set) -> str:
        """Prefer the positional id, else the first id not yet taken."""
        if index < len(VALID_OPTION_IDS) and VALID_OPTION_IDS[index] not in used_ids:
            return VALID_OPTION_IDS[index]
        for option_id in VALID_OPTION_IDS:
            if option_id not in used_ids:
                return option_id
        # Only reachable past the third option, which is truncated anyway
        return VALID_OPTION_IDS[0]

    def _fix_status(self, result: FormatResult, status_config: StatusConfig) -> None:
        status = result.data["status"]
        if not isinstance(status, dict):
            result.data["status"] = None
            result.warnings.append("status不是对象类型，已忽略")
            return

        fixed = dict(status)
        for status_field in status_config.fields:
            name = status_field.name
            value = status.get(name)

            if value is None:
                fixed.pop(name, None)
                if status_field.required:
                    fixed[name] = default_field_value(status_field)
                    result.applied.append(f"状态字段{name}缺失，使用默认值")
                continue

            if status_field.type == FieldType.PROGRESS:
                repaired = self._fix_progress(status_field, value, result)
            elif status_field.type == FieldType.NUMBER:
                repaired = self._fix_number(status_field, value, result)
            else:
                continue

            if repaired is not None:
                fixed[name] = repaired
            elif status_field.required:
                fixed[name] = default_field_value(status_field)
                result.warnings.append(f"状态字段{name}格式无效，使用默认值")
            else:
                del fixed[name]
                result.warnings.append(f"状态字段{name}格式无效，已忽略")

        result.data["status"] = fixed

    def _fix_progress(self, status_field: StatusField, value: Any, result: FormatResult) -> Any:
        """Coerce a progress value to {value, max}, or None when hopeless."""
        name = status_field.name
        default_max = status_field.max or DEFAULT_PROGRESS_MAX

        if is_number(value):
            result.applied.append(f"状态字段{name}从数字转换为进度条格式")
            return {"value": value, "max": default_max}

        if not isinstance(value, dict):
            return None

        if is_number(value.get("value")):
            current = value["value"]
        elif is_number(value.get("current")):
            current = value["current"]
            result.applied.append(f"状态字段{name}.current映射到value")
        else:
            current = 0
        if is_number(value.get("max")):
            maximum = value["max"]
        elif is_number(value.get("maximum")):
            maximum = value["maximum"]
        else:
            maximum = default_max
        return {"value": current, "max": maximum}

    def _fix_number(self, status_field: StatusField, value: Any, result: FormatResult) -> Any:
        """Coerce a number value, reading numeric strings, or None when hopeless."""
        if is_number(value):
            return value
        if isinstance(value, str):
            number = parse_leading_number(value)
            if number is not None:
                result.applied.append(f"状态字段{status_field.name}从字符串转换为数字")
            return number
        return None

    def _fix_custom(self, result: FormatResult, extension_config: List[ExtensionConfig]) -> None:
        custom = result.data["custom"]
        if not isinstance(custom, dict):
            result.data["custom"] = None
            result.warnings.append("custom不是对象类型，已忽略")
            return

        configured = {extension.name for extension in extension_config}
        fixed: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in custom.items():
            if key in configured:
                fixed[key] = value
            elif key == EXTRA_KEY:
                if isinstance(value, dict):
                    extra.update(value)
                else:
                    result.warnings.append(f"{EXTRA_KEY}不是对象类型，已忽略")
            else:
                extra[key] = value
                result.applied.append(f"扩展数据{key}未配置，移入{EXTRA_KEY}")

        if extra:
            fixed[EXTRA_KEY] = extra
        result.data["custom"] = fixed

    def _fill_defaults(self, result: FormatResult) -> None:
        data = result.data

        scene = data.get("scene")
        if not isinstance(scene, str) or not scene.strip():
            data["scene"] = DEFAULT_SCENE
            result.applied.append("填充默认scene")

        narration = data.get("narration")
        if not isinstance(narration, str) or not narration.strip():
            data["narration"] = DEFAULT_NARRATION
            result.applied.append("填充默认narration")

        options = data.get("options")
        if not isinstance(options, list) or not options:
            data["options"] = [default_option(i) for i in range(3)]
            result.applied.append("填充默认options")
