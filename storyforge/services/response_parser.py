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
"""Parser for free-form AI completions with extraction, repair and validation.

Parsing runs in three phases and the result records which phase failed:

1. extraction: locate a JSON payload in arbitrary provider output
2. parsing: decode it, optionally after textual auto-fix
3. validation: check it against the ParsedGameData contract

parse_response never raises. Every failure is returned as a ParseResult
carrying a phase-tagged ParseError.
"""

import re
import time
from dataclasses import dataclass
from typing import Any, List, Optional

from pydantic import ValidationError

from storyforge.logging import StructuredLogger, redact_secrets
from storyforge.models import AIProvider, ParsedGameData, ParseOptions
from storyforge.services.envelopes import (
    extract_from_gemini_format,
    gemini_block_reason,
    decode_siliconflow_batch,
)
from storyforge.services.json_repair import (
    dumps_compact,
    extract_braced_json,
    loads_strict,
    repair_json,
    strip_reasoning_tags,
)

logger = StructuredLogger(__name__)

# Maximum payload size to log (to prevent log flooding and secret leakage)
MAX_PAYLOAD_LOG_LENGTH = 500

EXTRACTION_FAILED = "EXTRACTION_FAILED"
PROVIDER_BLOCKED = "PROVIDER_BLOCKED"
PARSE_FAILED = "PARSE_FAILED"
INVALID_STRUCTURE = "INVALID_STRUCTURE"
UNKNOWN_ERROR = "UNKNOWN_ERROR"

PHASE_EXTRACTION = "extraction"
PHASE_PARSING = "parsing"
PHASE_VALIDATION = "validation"

MARKDOWN_JSON_PATTERN = re.compile(r'```json\s*([\s\S]*?)\s*```')
CODE_BLOCK_PATTERN = re.compile(r'```\s*([\s\S]*?)\s*```')


@dataclass
class ParseError:
    """Phase-tagged parse failure.

    Attributes:
        code: EXTRACTION_FAILED, PROVIDER_BLOCKED, PARSE_FAILED,
            INVALID_STRUCTURE or UNKNOWN_ERROR
        message: Human-readable reason
        phase: extraction, parsing or validation
        raw_content: Text that failed, for diagnostics
        details: Per-field validation errors, when any
    """
    code: str
    message: str
    phase: str
    raw_content: Optional[str] = None
    details: Optional[List[str]] = None


@dataclass
class ParseMetadata:
    extraction_method: str
    auto_fix_applied: bool
    parse_time_ms: float
    original_length: int
    extracted_length: int


@dataclass
class ParseResult:
    """Outcome of ResponseParser.parse_response. No partial success."""
    success: bool
    data: Optional[ParsedGameData] = None
    error: Optional[ParseError] = None
    metadata: Optional[ParseMetadata] = None


@dataclass
class Extraction:
    """Result of the extraction phase."""
    json_text: Optional[str] = None
    method: Optional[str] = None
    error: Optional[str] = None
    code: str = EXTRACTION_FAILED

    @property
    def success(self) -> bool:
        return self.json_text is not None


class ResponseParser:
    """Turns untrusted completion text into validated ParsedGameData.

    Extraction strategies, in priority order (first match wins):
    - ```json fenced block ("markdown")
    - first fenced block whose content starts with { or [ ("codeblock")
    - DeepSeek: strip <reasoning> blocks, then brace matching ("deepseek-reasoning")
    - Gemini: unwrap candidates[0].content.parts[0].text and extract again,
      or fail immediately on promptFeedback.blockReason
    - SiliconFlow: first entry of a batch "results" array ("siliconflow-batch")
    - brace matching from the first "{" ("braces")
    """

    def __init__(self, max_payload_log_length: int = MAX_PAYLOAD_LOG_LENGTH):
        """Initialize response parser.

        Args:
            max_payload_log_length: Characters of payload included in failure logs
        """
        self.max_payload_log_length = max_payload_log_length

    def parse_response(self, options: ParseOptions) -> ParseResult:
        """Parse one provider completion.

        strict_mode does not change parsing; the contract validation here
        is already the strictest one applied. TurnPipeline uses the flag for
        the config-aware checks that follow parsing.

        Args:
            options: Provider, raw text and parsing flags

        Returns:
            ParseResult with data and metadata, or a phase-tagged error
        """
        start_time = time.perf_counter()
        raw = options.raw_response

        try:
            extraction = self.extract_json(raw, options.provider)
            if not extraction.success:
                return self._fail(
                    options,
                    ParseError(
                        code=extraction.code,
                        message=extraction.error or "无法提取JSON内容",
                        phase=PHASE_EXTRACTION,
                        raw_content=raw,
                    ),
                )

            json_text = extraction.json_text
            auto_fix_applied = False
            try:
                payload = loads_strict(json_text)
            except ValueError as parse_error:
                if not options.enable_auto_fix:
                    return self._fail(
                        options,
                        ParseError(
                            code=PARSE_FAILED,
                            message=str(parse_error),
                            phase=PHASE_PARSING,
                            raw_content=json_text,
                        ),
                    )
                fixed = repair_json(json_text)
                try:
                    payload = loads_strict(fixed)
                except ValueError as fix_error:
                    return self._fail(
                        options,
                        ParseError(
                            code=PARSE_FAILED,
                            message=str(parse_error),
                            phase=PHASE_PARSING,
                            raw_content=json_text,
                            details=[f"auto-fix: {fix_error}"],
                        ),
                    )
                auto_fix_applied = True

            try:
                data = ParsedGameData.model_validate(payload)
            except ValidationError as e:
                return self._fail(
                    options,
                    ParseError(
                        code=INVALID_STRUCTURE,
                        message="解析后的数据结构不符合要求",
                        phase=PHASE_VALIDATION,
                        raw_content=dumps_compact(payload),
                        details=self._extract_validation_errors(e),
                    ),
                )

            metadata = ParseMetadata(
                extraction_method=extraction.method,
                auto_fix_applied=auto_fix_applied,
                parse_time_ms=round((time.perf_counter() - start_time) * 1000, 3),
                original_length=len(raw),
                extracted_length=len(json_text),
            )
            logger.debug(
                "Parsed AI response",
                provider=options.provider.value,
                extraction_method=metadata.extraction_method,
                auto_fix_applied=auto_fix_applied,
                original_length=metadata.original_length,
                extracted_length=metadata.extracted_length,
            )
            return ParseResult(success=True, data=data, metadata=metadata)

        except Exception as e:
            return self._fail(
                options,
                ParseError(
                    code=UNKNOWN_ERROR,
                    message=f"{type(e).__name__}: {e}",
                    phase=PHASE_PARSING,
                ),
            )

    def extract_json(self, text: str, provider: AIProvider) -> Extraction:
        """Locate the JSON payload in provider output.

        Args:
            text: Raw completion text
            provider: Provider that produced the text

        Returns:
            Extraction with json_text and method, or an error
        """
        markdown_match = MARKDOWN_JSON_PATTERN.search(text)
        if markdown_match:
            return Extraction(json_text=markdown_match.group(1).strip(), method="markdown")

        code_block_match = CODE_BLOCK_PATTERN.search(text)
        if code_block_match:
            content = code_block_match.group(1).strip()
            if content.startswith("{") or content.startswith("["):
                return Extraction(json_text=content, method="codeblock")

        if provider == AIProvider.DEEPSEEK:
            return self._extract_braces(strip_reasoning_tags(text), "deepseek-reasoning")

        if provider == AIProvider.GEMINI:
            envelope = self._load_envelope(text)
            if envelope is not None:
                inner_text = extract_from_gemini_format(envelope)
                if inner_text is not None:
                    return self.extract_json(inner_text, provider)
                block_reason = gemini_block_reason(envelope)
                if block_reason:
                    return Extraction(
                        error=f"Gemini安全过滤: {block_reason}",
                        code=PROVIDER_BLOCKED,
                    )

        if provider == AIProvider.SILICONFLOW:
            batch = decode_siliconflow_batch(self._load_envelope(text))
            if batch is not None:
                return Extraction(json_text=dumps_compact(batch.first), method="siliconflow-batch")

        return self._extract_braces(text, "braces")

    def _extract_braces(self, text: str, method: str) -> Extraction:
        json_text, error = extract_braced_json(text)
        if json_text is None:
            return Extraction(error=error)
        return Extraction(json_text=json_text, method=method)

    def _load_envelope(self, text: str) -> Any:
        """Decode the whole text as JSON, or None when it is not JSON."""
        try:
            return loads_strict(text)
        except ValueError:
            return None

    def _fail(self, options: ParseOptions, error: ParseError) -> ParseResult:
        logger.warning(
            "Failed to parse AI response",
            provider=options.provider.value,
            phase=error.phase,
            error_code=error.code,
            error_message=error.message,
            error_count=len(error.details) if error.details else None,
            payload_preview=self._truncate_for_log(options.raw_response),
        )
        return ParseResult(success=False, error=error)

    def _truncate_for_log(self, text: str) -> str:
        """Truncate and redact text for safe logging.

        Args:
            text: Text to truncate

        Returns:
            Truncated and redacted text
        """
        redacted = redact_secrets(text)
        if len(redacted) > self.max_payload_log_length:
            return redacted[:self.max_payload_log_length] + "... (truncated)"
        return redacted

    def _extract_validation_errors(self, error: ValidationError) -> List[str]:
        """Extract human-readable error messages from ValidationError.

        Args:
            error: Pydantic ValidationError

        Returns:
            List of "field.path: error_type - message" descriptions
        """
        error_list = []
        for err in error.errors():
            field_path = ".".join(str(loc) for loc in err["loc"]) or "root"
            error_list.append(f"{field_path}: {err['type']} - {err['msg']}")
        return error_list
