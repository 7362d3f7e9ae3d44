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
"""Turn pipeline that runs one prompt → provider → parse round.

The pipeline enforces the sequence:
1. Build the prompt
2. Await the injected transport
3. Decode the provider response envelope
4. Parse and validate the completion
5. Format the game data against the session configuration
6. Validate it against that configuration
7. Classify provider failures

The transport is any awaitable callable taking the prompt text and
returning either the completion text or the decoded JSON response body.
No failure escapes run_turn; each one lands in a TurnOutcome field.
Cancellation of the awaiting task still propagates.

Outside strict mode, a completion that decodes but breaks the output
contract is passed through DataFormatter when auto-fix is enabled, and
validation warnings are reported without failing the turn. In strict mode
contract failures are final and any validation issue, warnings included,
fails the turn.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Union

from pydantic import ValidationError

from storyforge.errors.base import BaseErrorProcessor, ProcessedError
from storyforge.errors.registry import get_error_processor
from storyforge.logging import PhaseTimer, StructuredLogger, get_request_id
from storyforge.metrics import MetricsTimer, get_metrics_collector
from storyforge.models import AIProvider, ParsedGameData, ParseOptions, PromptBuildOptions
from storyforge.prompting.prompt_builder import BuildMetadata, PromptBuilder
from storyforge.services.data_formatter import DataFormatter
from storyforge.services.data_validator import DataValidator, ValidationReport
from storyforge.services.envelopes import (
    DeepSeekCompletion,
    GeminiBlockedEnvelope,
    GeminiCandidateEnvelope,
    OpenAIChatEnvelope,
    decode_deepseek_completion,
    decode_envelope,
)
from storyforge.services.json_repair import dumps_compact, loads_strict
from storyforge.services.response_parser import (
    PHASE_VALIDATION,
    PROVIDER_BLOCKED,
    ParseError,
    ParseMetadata,
    ParseResult,
    ResponseParser,
)

logger = StructuredLogger(__name__)

Transport = Callable[[str], Awaitable[Any]]

STAGE_BUILD = "prompt_build"
STAGE_PROVIDER = "provider_call"
STAGE_DECODE = "response_decode"
STAGE_PARSE = "response_parse"
STAGE_FORMAT = "data_format"
STAGE_VALIDATE = "data_validate"

VALIDATION_FAILED_MESSAGE = "数据验证失败"


@dataclass
class TurnOutcome:
    """Result of one turn.

    Exactly one of data, build_error, provider_error, parse_error or
    validation_error is set, except that a provider-blocked parse failure
    carries both parse_error and the classified provider_error.

    Attributes:
        success: True when data is set
        data: Formatted and validated game data
        prompt: Prompt sent to the provider
        raw_text: Completion text handed to the parser
        build_error: Prompt build failure message
        provider_error: Classified provider failure
        parse_error: Phase-tagged parse failure
        validation_error: Set when the validator rejects the data
        build_metadata: Prompt build metadata
        parse_metadata: Parse metadata on success
        completion: Decoded DeepSeek completion with reasoning and usage
        validation: Config-aware validation report, once validation ran
        applied_fixes: Changes DataFormatter made to the game data
        warnings: Formatter warnings followed by validation warning messages
    """
    success: bool = False
    data: Optional[ParsedGameData] = None
    prompt: Optional[str] = None
    raw_text: Optional[str] = None
    build_error: Optional[str] = None
    provider_error: Optional[ProcessedError] = None
    parse_error: Optional[ParseError] = None
    validation_error: Optional[str] = None
    build_metadata: Optional[BuildMetadata] = None
    parse_metadata: Optional[ParseMetadata] = None
    completion: Optional[DeepSeekCompletion] = None
    validation: Optional[ValidationReport] = None
    applied_fixes: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class TurnPipeline:
    """Runs prompt building, the provider call and response parsing for one turn."""

    def __init__(
        self,
        provider: Union[AIProvider, str],
        transport: Transport,
        enable_auto_fix: bool = True,
        strict_mode: bool = False,
        error_processor: Optional[BaseErrorProcessor] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        response_parser: Optional[ResponseParser] = None,
        data_formatter: Optional[DataFormatter] = None,
        data_validator: Optional[DataValidator] = None
    ):
        """Initialize the turn pipeline.

        Args:
            provider: Provider the transport talks to
            transport: Awaitable callable sending the prompt to the provider
            enable_auto_fix: Attempt JSON repair on malformed completions and
                formatter repair of contract violations
            strict_mode: Disable formatter repair of contract violations and
                fail the turn on any validation issue
            error_processor: Processor for provider failures (defaults to
                the registered processor for provider)
            prompt_builder: Shared PromptBuilder instance
            response_parser: Shared ResponseParser instance
            data_formatter: Shared DataFormatter instance
            data_validator: Shared DataValidator instance
        """
        self.provider = AIProvider(provider)
        self.transport = transport
        self.enable_auto_fix = enable_auto_fix
        self.strict_mode = strict_mode
        self.error_processor = error_processor or get_error_processor(self.provider)
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.response_parser = response_parser or ResponseParser()
        self.data_formatter = data_formatter or DataFormatter()
        self.data_validator = data_validator or DataValidator()

    async def run_turn(self, options: Union[PromptBuildOptions, Mapping]) -> TurnOutcome:
        """Run one turn end to end.

        Args:
            options: Prompt build options; provider defaults to the pipeline's

        Returns:
            TurnOutcome with data or the failure of the first failing step
        """
        outcome = TurnOutcome()
        logger.info("Starting turn", provider=self.provider.value)

        # Step 1: build prompt
        options = self._with_provider(options)
        with MetricsTimer(STAGE_BUILD):
            build_result = self.prompt_builder.build_prompt(options)
        outcome.build_metadata = build_result.metadata
        if not build_result.success:
            outcome.build_error = build_result.error
            logger.warning("Turn aborted: prompt build failed", error=build_result.error)
            return outcome
        outcome.prompt = build_result.prompt
        if not isinstance(options, PromptBuildOptions):
            options = PromptBuildOptions.model_validate(options)

        # Step 2: provider call
        try:
            with PhaseTimer(STAGE_PROVIDER, logger), MetricsTimer(STAGE_PROVIDER):
                result = await self.transport(build_result.prompt)
        except Exception as e:
            outcome.provider_error = self._classify(e, STAGE_PROVIDER)
            return outcome

        # Step 3: decode envelope
        raw_text = self._decode(result, outcome)
        if raw_text is None:
            return outcome
        outcome.raw_text = raw_text

        # Step 4: parse
        with MetricsTimer(STAGE_PARSE):
            parse_result = self.response_parser.parse_response(
                ParseOptions(
                    provider=self.provider,
                    raw_response=raw_text,
                    enable_auto_fix=self.enable_auto_fix,
                    strict_mode=self.strict_mode,
                )
            )

        collector = get_metrics_collector()
        if collector:
            collector.record_parse(
                success=parse_result.success,
                phase=parse_result.error.phase if parse_result.error else None,
                auto_fixed=bool(parse_result.metadata and parse_result.metadata.auto_fix_applied),
            )

        if parse_result.success:
            # Step 5: format
            data = self._format(parse_result.data, options, outcome)
        else:
            data = self._recover_structure(parse_result, options, outcome)
            if data is None:
                outcome.parse_error = parse_result.error
                if parse_result.error.code == PROVIDER_BLOCKED:
                    outcome.provider_error = self._classify(parse_result.error.message, STAGE_PARSE)
                return outcome

        # Step 6: validate against the session configuration
        with MetricsTimer(STAGE_VALIDATE):
            report = self.data_validator.validate(
                data,
                options.status_config,
                options.extension_config,
                strict_mode=self.strict_mode,
            )
        outcome.validation = report
        outcome.warnings.extend(report.warning_messages)
        if not report.is_valid:
            outcome.validation_error = VALIDATION_FAILED_MESSAGE
            if collector:
                collector.record_error("validation_failed")
            logger.warning(
                "Turn failed validation",
                provider=self.provider.value,
                strict_mode=self.strict_mode,
                error_count=len(report.errors),
                warning_count=len(report.warnings),
            )
            return outcome

        outcome.success = True
        outcome.data = data
        outcome.parse_metadata = parse_result.metadata
        logger.info(
            "Turn completed",
            provider=self.provider.value,
            extraction_method=parse_result.metadata.extraction_method if parse_result.metadata else None,
            auto_fix_applied=parse_result.metadata.auto_fix_applied if parse_result.metadata else None,
            applied_fix_count=len(outcome.applied_fixes),
            warning_count=len(outcome.warnings),
        )
        return outcome

    def _format(
        self,
        data: ParsedGameData,
        options: PromptBuildOptions,
        outcome: TurnOutcome
    ) -> ParsedGameData:
        """Normalize valid game data against the configs.

        Returns:
            The formatted data, or data unchanged when formatting could not
            produce a valid object
        """
        with MetricsTimer(STAGE_FORMAT):
            result = self.data_formatter.format(
                data.model_dump(), options.status_config, options.extension_config
            )
        outcome.warnings.extend(result.warnings)
        if not result.success:
            return data
        try:
            formatted = ParsedGameData.model_validate(result.data)
        except ValidationError as e:
            outcome.warnings.append(f"格式化结果未通过校验，保留原始数据: {e.error_count()}个错误")
            return data
        outcome.applied_fixes.extend(result.applied)
        return formatted

    def _recover_structure(
        self,
        parse_result: ParseResult,
        options: PromptBuildOptions,
        outcome: TurnOutcome
    ) -> Optional[ParsedGameData]:
        """Run the formatter over a decoded payload that broke the contract.

        Only attempted outside strict mode with auto-fix enabled.

        Returns:
            Repaired data, or None when the parse failure stands
        """
        error = parse_result.error
        if self.strict_mode or not self.enable_auto_fix or error.phase != PHASE_VALIDATION:
            return None
        try:
            payload = loads_strict(error.raw_content)
        except (TypeError, ValueError):
            return None

        with MetricsTimer(STAGE_FORMAT):
            result = self.data_formatter.format(payload, options.status_config, options.extension_config)
        if not result.success:
            return None
        try:
            data = ParsedGameData.model_validate(result.data)
        except ValidationError:
            return None

        outcome.applied_fixes.extend(result.applied)
        outcome.warnings.extend(result.warnings)
        logger.info(
            "Recovered contract violation with formatter",
            provider=self.provider.value,
            applied_fix_count=len(result.applied),
        )
        return data

    def _with_provider(self, options: Union[PromptBuildOptions, Mapping]) -> Any:
        if isinstance(options, PromptBuildOptions):
            if options.provider is None:
                return options.model_copy(update={"provider": self.provider})
            return options
        if isinstance(options, Mapping) and options.get("provider") is None:
            return {**options, "provider": self.provider}
        return options

    def _decode(self, result: Any, outcome: TurnOutcome) -> Optional[str]:
        """Turn a transport result into parser input.

        Returns:
            Text for the parser, or None when outcome.provider_error was set
        """
        if isinstance(result, str):
            return result

        if not isinstance(result, Mapping):
            outcome.provider_error = self._classify(
                f"Unsupported transport result type: {type(result).__name__}",
                STAGE_DECODE
            )
            return None

        if self.provider == AIProvider.DEEPSEEK:
            completion = decode_deepseek_completion(result)
            if completion is not None:
                outcome.completion = completion
                logger.debug(
                    "Decoded DeepSeek completion",
                    model=completion.model,
                    has_reasoning=completion.reasoning_text is not None,
                    cache_hit_tokens=completion.usage.cache_hit_tokens,
                    total_tokens=completion.usage.total_tokens,
                )
                return completion.raw_text

        envelope = decode_envelope(result)
        if isinstance(envelope, OpenAIChatEnvelope):
            return envelope.content
        if isinstance(envelope, GeminiCandidateEnvelope):
            return envelope.text
        if isinstance(envelope, GeminiBlockedEnvelope):
            outcome.provider_error = self._classify(result, STAGE_DECODE)
            return None
        if envelope is None and "error" in result:
            outcome.provider_error = self._classify(result, STAGE_DECODE)
            return None

        # Batch envelopes and unknown bodies go to the parser as JSON text
        return dumps_compact(dict(result))

    def _classify(self, error: Any, stage: str) -> ProcessedError:
        processed = self.error_processor.process(error, stage=stage, request_id=get_request_id())
        collector = get_metrics_collector()
        if collector:
            collector.record_provider_error(self.provider.value, processed.code.name)
            collector.record_error(f"provider_{processed.category.value}")
        return processed
