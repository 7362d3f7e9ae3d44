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
"""Config-aware validation of game data.

ResponseParser only checks the output contract. DataValidator also checks
the data against the session's status bar and extension panel configuration
and flags content that is legal but poor (a one-line scene, a rambling
narration, an unconfigured status key).

Issues carry a severity:
- critical / error: the data breaks the contract or the configuration
- warning: the data is usable but worth a look

A report is valid when it has no critical or error issues. In strict mode
warnings invalidate it too.
"""

import re
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

from storyforge.logging import StructuredLogger
from storyforge.models import (
    DataType,
    ExtensionConfig,
    FieldType,
    ParsedGameData,
    StatusConfig,
)
from storyforge.services.data_formatter import EXTRA_KEY, VALID_OPTION_IDS, is_number

logger = StructuredLogger(__name__)

SEVERITY_CRITICAL = "critical"
SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"

MIN_SCENE_LENGTH = 20
MAX_SCENE_LENGTH = 1000
MAX_NARRATION_SENTENCES = 3
MAX_NARRATION_LENGTH = 200
MAX_OPTION_TEXT_LENGTH = 50

SENTENCE_SPLIT_PATTERN = re.compile(r'[。！？.!?]')


@dataclass
class ValidationIssue:
    """One validation finding.

    Attributes:
        field: Dotted path of the offending value, e.g. "options[1].id"
        code: Machine-readable issue code
        message: Human-readable description
        severity: critical, error or warning
        suggestion: How to fix it, for warnings
    """
    field: str
    code: str
    message: str
    severity: str = SEVERITY_ERROR
    suggestion: Optional[str] = None


@dataclass
class ValidationReport:
    """Outcome of DataValidator.validate."""
    is_valid: bool
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    fields_checked: int = 0
    validation_time_ms: float = 0.0

    @property
    def warning_messages(self) -> List[str]:
        return [warning.message for warning in self.warnings]


class DataValidator:
    """Checks game data against the output contract and the session configuration."""

    def validate(
        self,
        data: Union[ParsedGameData, Mapping],
        status_config: Optional[StatusConfig] = None,
        extension_config: Optional[List[ExtensionConfig]] = None,
        strict_mode: bool = False
    ) -> ValidationReport:
        """Validate one round of game data.

        Args:
            data: Parsed game data or its decoded JSON object
            status_config: Status bar configuration
            extension_config: Configured extension panels
            strict_mode: Treat warnings as failures

        Returns:
            ValidationReport listing every issue found
        """
        start_time = time.perf_counter()
        if isinstance(data, ParsedGameData):
            data = data.model_dump()
        status_config = status_config or StatusConfig()
        extension_config = extension_config or []
        report = ValidationReport(is_valid=False)

        if not isinstance(data, Mapping):
            self._error(report, "root", "INVALID_TYPE", "游戏数据必须是对象类型", SEVERITY_CRITICAL)
        else:
            self._check_required_fields(data, report)
            self._check_scene(data.get("scene"), report)
            self._check_narration(data.get("narration"), report)
            self._check_options(data.get("options"), report)
            if data.get("status") is not None:
                self._check_status(data["status"], status_config, report)
            if data.get("custom") is not None:
                self._check_custom(data["custom"], extension_config, report)

        if strict_mode:
            report.is_valid = not report.errors and not report.warnings
        else:
            report.is_valid = not any(
                issue.severity in (SEVERITY_CRITICAL, SEVERITY_ERROR) for issue in report.errors
            )
        report.validation_time_ms = round((time.perf_counter() - start_time) * 1000, 3)

        logger.debug(
            "Validated game data",
            is_valid=report.is_valid,
            strict_mode=strict_mode,
            error_count=len(report.errors),
            warning_count=len(report.warnings),
            fields_checked=report.fields_checked,
        )
        return report

    @staticmethod
    def quick_validate(data: Union[ParsedGameData, Mapping]) -> bool:
        """Check only the fields a round cannot be shown without."""
        if isinstance(data, ParsedGameData):
            return True
        if not isinstance(data, Mapping):
            return False
        scene = data.get("scene")
        narration = data.get("narration")
        options = data.get("options")
        if not (isinstance(scene, str) and scene and isinstance(narration, str) and narration):
            return False
        if not isinstance(options, list) or len(options) != 3:
            return False
        return all(
            isinstance(option, Mapping)
            and option.get("id") in VALID_OPTION_IDS
            and isinstance(option.get("text"), str)
            and bool(option.get("text"))
            for option in options
        )

    def _error(
        self,
        report: ValidationReport,
        field_path: str,
        code: str,
        message: str,
        severity: str = SEVERITY_ERROR
    ) -> None:
        report.errors.append(ValidationIssue(field=field_path, code=code, message=message, severity=severity))

    def _warn(
        self,
        report: ValidationReport,
        field_path: str,
        code: str,
        message: str,
        suggestion: Optional[str] = None
    ) -> None:
        report.warnings.append(ValidationIssue(
            field=field_path,
            code=code,
            message=message,
            severity=SEVERITY_WARNING,
            suggestion=suggestion,
        ))

    def _check_required_fields(self, data: Mapping, report: ValidationReport) -> None:
        for name in ("scene", "narration", "options"):
            report.fields_checked += 1
            if name not in data:
                self._error(report, name, "MISSING_REQUIRED_FIELD", f"缺少必需字段: {name}", SEVERITY_CRITICAL)

    def _check_scene(self, scene: Any, report: ValidationReport) -> None:
        report.fields_checked += 1
        if scene is None:
            return
        if not isinstance(scene, str):
            self._error(report, "scene", "INVALID_TYPE", "scene字段必须是字符串类型")
        elif not scene.strip():
            self._error(report, "scene", "EMPTY_VALUE", "scene字段不能为空")
        elif len(scene) < MIN_SCENE_LENGTH:
            self._warn(
                report, "scene", "TOO_SHORT", "场景描述过短，建议增加细节描述",
                "场景描述应该包含环境、氛围、视觉细节等信息"
            )
        elif len(scene) > MAX_SCENE_LENGTH:
            self._warn(
                report, "scene", "TOO_LONG", "场景描述过长，可能影响阅读体验",
                "建议将场景描述控制在500字以内"
            )

    def _check_narration(self, narration: Any, report: ValidationReport) -> None:
        report.fields_checked += 1
        if narration is None:
            return
        if not isinstance(narration, str):
            self._error(report, "narration", "INVALID_TYPE", "narration字段必须是字符串类型")
            return
        if not narration.strip():
            self._error(report, "narration", "EMPTY_VALUE", "narration字段不能为空")
            return

        sentences = [s for s in SENTENCE_SPLIT_PATTERN.split(narration) if s.strip()]
        if len(sentences) > MAX_NARRATION_SENTENCES:
            self._warn(
                report, "narration", "TOO_MANY_SENTENCES",
                f"旁白句子过多（{len(sentences)}句），建议控制在1-3句",
                "旁白应该简洁明了，只叙述关键变化"
            )
        if len(narration) > MAX_NARRATION_LENGTH:
            self._warn(
                report, "narration", "TOO_LONG", "旁白文字过长，建议精简",
                "旁白应该简短有力，控制在100字以内"
            )

    def _check_options(self, options: Any, report: ValidationReport) -> None:
        report.fields_checked += 1
        if options is None:
            return
        if not isinstance(options, list):
            self._error(report, "options", "INVALID_TYPE", "options字段必须是数组类型", SEVERITY_CRITICAL)
            return
        if len(options) != 3:
            self._error(
                report, "options", "INVALID_LENGTH",
                f"options必须包含3个选项，当前有{len(options)}个", SEVERITY_CRITICAL
            )

        seen = set()
        for index, option in enumerate(options):
            path = f"options[{index}]"
            if not isinstance(option, Mapping):
                self._error(report, path, "INVALID_TYPE", f"选项{index}必须是对象类型")
                continue

            option_id = option.get("id")
            if not option_id:
                self._error(report, f"{path}.id", "MISSING_FIELD", f"选项{index}缺少id字段")
            elif option_id not in VALID_OPTION_IDS:
                self._error(report, f"{path}.id", "INVALID_VALUE", f"选项id必须是A、B或C，当前为{option_id}")
            else:
                if option_id in seen:
                    self._error(report, f"{path}.id", "DUPLICATE_ID", f"选项id重复: {option_id}")
                seen.add(option_id)

            text = option.get("text")
            if text is None or text == "":
                self._error(report, f"{path}.text", "MISSING_FIELD", f"选项{index}缺少text字段")
            elif not isinstance(text, str):
                self._error(report, f"{path}.text", "INVALID_TYPE", "选项text必须是字符串类型")
            elif not text.strip():
                self._error(report, f"{path}.text", "EMPTY_VALUE", f"选项{index}的文字不能为空")
            elif len(text) > MAX_OPTION_TEXT_LENGTH:
                self._warn(
                    report, f"{path}.text", "TOO_LONG", "选项文字过长，建议精简",
                    "选项文字应该简洁明了，控制在30字以内"
                )

    def _check_status(self, status: Any, status_config: StatusConfig, report: ValidationReport) -> None:
        if not isinstance(status, Mapping):
            report.fields_checked += 1
            self._error(report, "status", "INVALID_TYPE", "status字段必须是对象类型")
            return

        for status_field in status_config.fields:
            report.fields_checked += 1
            path = f"status.{status_field.name}"
            if status_field.name not in status:
                if status_field.required:
                    self._error(report, path, "MISSING_FIELD", f"缺少必需的状态字段: {status_field.display_name}")
                else:
                    self._warn(
                        report, path, "MISSING_OPTIONAL_FIELD",
                        f"缺少可选状态字段: {status_field.display_name}",
                        "建议补充此字段以保持数据完整性"
                    )
                continue

            value = status[status_field.name]
            if status_field.type == FieldType.PROGRESS:
                if not isinstance(value, Mapping):
                    self._error(report, path, "INVALID_TYPE", "进度条字段必须是对象类型{value, max}")
                    continue
                if not is_number(value.get("value")):
                    self._error(report, f"{path}.value", "INVALID_TYPE", "进度条的value必须是数字类型")
                if not is_number(value.get("max")):
                    self._error(report, f"{path}.max", "INVALID_TYPE", "进度条的max必须是数字类型")
            elif status_field.type == FieldType.NUMBER and not is_number(value):
                self._error(report, path, "INVALID_TYPE", "数值字段必须是数字类型")

        configured = {status_field.name for status_field in status_config.fields}
        for key in status:
            if key not in configured:
                self._warn(
                    report, f"status.{key}", "UNCONFIGURED_FIELD",
                    f"发现未配置的状态字段: {key}",
                    "建议在状态栏配置中添加此字段，或者从响应中移除"
                )

    def _check_custom(
        self,
        custom: Any,
        extension_config: List[ExtensionConfig],
        report: ValidationReport
    ) -> None:
        if not isinstance(custom, Mapping):
            report.fields_checked += 1
            self._error(report, "custom", "INVALID_TYPE", "custom字段必须是对象类型")
            return

        for extension in extension_config:
            report.fields_checked += 1
            path = f"custom.{extension.name}"
            if extension.name not in custom:
                self._warn(
                    report, path, "MISSING_EXTENSION",
                    f"缺少配置的扩展卡片: {extension.name}",
                    "建议在响应中包含所有配置的扩展卡片数据"
                )
                continue

            value = custom[extension.name]
            if extension.data_type == DataType.ARRAY and not isinstance(value, list):
                self._warn(
                    report, path, "TYPE_MISMATCH",
                    f"扩展卡片{extension.name}配置为数组类型，但实际数据不是数组",
                    "建议调整数据格式或修改配置"
                )
            elif extension.data_type == DataType.OBJECT and not isinstance(value, Mapping):
                self._warn(
                    report, path, "TYPE_MISMATCH",
                    f"扩展卡片{extension.name}配置为对象类型，但实际数据不是对象",
                    "建议调整数据格式或修改配置"
                )

        if EXTRA_KEY in custom and not isinstance(custom[EXTRA_KEY], Mapping):
            self._warn(
                report, f"custom.{EXTRA_KEY}", "TYPE_MISMATCH",
                f"{EXTRA_KEY}应该是对象类型",
                "未配置的扩展数据应按名称放入对象中"
            )
