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
"""Decoders for provider HTTP response envelopes.

Each provider wraps the completion text differently. The decoders here
turn a decoded JSON body into one explicit envelope variant, or return
None to signal "not this format" so the caller can try the next one.
A shape mismatch is never an error.

Variants:
- OpenAIChatEnvelope: choices[0].message.content (OpenAI, DeepSeek, SiliconFlow chat)
- GeminiCandidateEnvelope: candidates[0].content.parts[0].text
- GeminiBlockedEnvelope: promptFeedback.blockReason (safety block, no candidates)
- SiliconFlowBatchEnvelope: non-empty results array from the batch API
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union


def _dig(value: Any, *path: Union[str, int]) -> Any:
    """Walk nested mappings/lists, returning None on the first mismatch."""
    for step in path:
        if isinstance(step, int):
            if not isinstance(value, list) or not -len(value) <= step < len(value):
                return None
            value = value[step]
        else:
            if not isinstance(value, Mapping):
                return None
            value = value.get(step)
    return value


@dataclass(frozen=True)
class OpenAIChatEnvelope:
    content: str
    model: Optional[str] = None
    finish_reason: Optional[str] = None


@dataclass(frozen=True)
class GeminiCandidateEnvelope:
    text: str
    finish_reason: Optional[str] = None


@dataclass(frozen=True)
class GeminiBlockedEnvelope:
    block_reason: str


@dataclass(frozen=True)
class SiliconFlowBatchEnvelope:
    results: List[Any]

    @property
    def first(self) -> Any:
        return self.results[0]


Envelope = Union[
    OpenAIChatEnvelope,
    GeminiCandidateEnvelope,
    GeminiBlockedEnvelope,
    SiliconFlowBatchEnvelope,
]


def extract_from_openai_format(payload: Any) -> Optional[str]:
    """Return choices[0].message.content when it is a string, else None."""
    content = _dig(payload, "choices", 0, "message", "content")
    return content if isinstance(content, str) else None


def extract_from_gemini_format(payload: Any) -> Optional[str]:
    """Return candidates[0].content.parts[0].text when it is a string, else None."""
    text = _dig(payload, "candidates", 0, "content", "parts", 0, "text")
    return text if isinstance(text, str) else None


def gemini_block_reason(payload: Any) -> Optional[str]:
    """Return promptFeedback.blockReason when present and non-empty."""
    reason = _dig(payload, "promptFeedback", "blockReason")
    if reason in (None, "", False):
        return None
    return str(reason)


def decode_openai_chat(payload: Any) -> Optional[OpenAIChatEnvelope]:
    content = extract_from_openai_format(payload)
    if content is None:
        return None
    model = _dig(payload, "model")
    finish_reason = _dig(payload, "choices", 0, "finish_reason")
    return OpenAIChatEnvelope(
        content=content,
        model=model if isinstance(model, str) else None,
        finish_reason=finish_reason if isinstance(finish_reason, str) else None,
    )


def decode_gemini_candidate(payload: Any) -> Optional[GeminiCandidateEnvelope]:
    text = extract_from_gemini_format(payload)
    if text is None:
        return None
    finish_reason = _dig(payload, "candidates", 0, "finishReason")
    return GeminiCandidateEnvelope(
        text=text,
        finish_reason=finish_reason if isinstance(finish_reason, str) else None,
    )


def decode_gemini_blocked(payload: Any) -> Optional[GeminiBlockedEnvelope]:
    reason = gemini_block_reason(payload)
    return GeminiBlockedEnvelope(block_reason=reason) if reason else None


def decode_siliconflow_batch(payload: Any) -> Optional[SiliconFlowBatchEnvelope]:
    results = _dig(payload, "results")
    if isinstance(results, list) and results:
        return SiliconFlowBatchEnvelope(results=list(results))
    return None


ENVELOPE_DECODERS = (
    decode_openai_chat,
    decode_gemini_candidate,
    decode_gemini_blocked,
    decode_siliconflow_batch,
)


def decode_envelope(payload: Any) -> Optional[Envelope]:
    """Decode a provider response body into its envelope variant.

    Decoders are tried in order and the first match wins.

    Args:
        payload: Decoded JSON body

    Returns:
        Envelope variant, or None if no known shape matches
    """
    for decoder in ENVELOPE_DECODERS:
        envelope = decoder(payload)
        if envelope is not None:
            return envelope
    return None


# ============================================================================
# DeepSeek completions
# ============================================================================


@dataclass(frozen=True)
class TokenUsage:
    """Token accounting reported by the provider."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cache_hit_tokens: int = 0
    cache_miss_tokens: int = 0
    reasoning_tokens: int = 0


@dataclass(frozen=True)
class DeepSeekCompletion:
    """Decoded DeepSeek chat completion.

    Attributes:
        content: Final answer text
        reasoning_segments: Chain-of-thought segments, in payload order
        usage: Token usage including KV cache hit/miss counts
        model: Model that produced the completion
        message_id: Provider message id, when reported
    """
    content: str
    reasoning_segments: List[str] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = "deepseek-chat"
    message_id: Optional[str] = None

    @property
    def reasoning_text(self) -> Optional[str]:
        if not self.reasoning_segments:
            return None
        return "\n".join(self.reasoning_segments).strip() or None

    @property
    def raw_text(self) -> str:
        """Text handed to the response parser."""
        return compose_raw_text(self.content, self.reasoning_text)


def compose_raw_text(content: str, reasoning: Optional[str] = None) -> str:
    """Prefix content with a <reasoning> block the parser knows to strip.

    Args:
        content: Final answer text
        reasoning: Optional reasoning text

    Returns:
        Combined text, trimmed
    """
    trimmed = content.strip()
    if not reasoning:
        return trimmed
    block = reasoning if "<reasoning>" in reasoning else f"<reasoning>\n{reasoning}\n</reasoning>"
    return f"{block}\n{trimmed}".strip()


def _normalize_content(content: Any) -> Optional[str]:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        segments = []
        for item in content:
            if isinstance(item, str):
                segments.append(item)
            elif isinstance(item, Mapping):
                text = item.get("text", item.get("content"))
                if isinstance(text, str):
                    segments.append(text)
        segments = [segment for segment in segments if segment]
        return "\n".join(segments) if segments else None
    if isinstance(content, Mapping):
        if isinstance(content.get("text"), str):
            return content["text"]
        if isinstance(content.get("parts"), list):
            return _normalize_content(content["parts"])
    return None


def _reasoning_strings(value: Any) -> List[str]:
    items = value if isinstance(value, list) else [value]
    strings = []
    for item in items:
        if isinstance(item, Mapping):
            item = item.get("thought", item.get("text", item.get("content")))
        if isinstance(item, str) and item.strip():
            strings.append(item)
    return strings


def _to_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)) and math.isfinite(value):
        return int(value)
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return 0
        return int(parsed) if math.isfinite(parsed) else 0
    return 0


def _first_present(mapping: Mapping, *keys: str) -> Any:
    for key in keys:
        if mapping.get(key) is not None:
            return mapping[key]
    return None


def map_usage(usage: Any) -> TokenUsage:
    """Map a provider usage block onto TokenUsage.

    Cache misses default to prompt tokens minus cache hits when the
    provider only reports hits.
    """
    if not isinstance(usage, Mapping):
        return TokenUsage()

    prompt_details = usage.get("prompt_tokens_details")
    if not isinstance(prompt_details, Mapping):
        prompt_details = {}

    prompt = _to_count(_first_present(usage, "prompt_tokens", "promptTokens", "input_tokens"))
    completion = _to_count(_first_present(usage, "completion_tokens", "completionTokens", "output_tokens"))
    total = _to_count(_first_present(usage, "total_tokens", "totalTokens")) or prompt + completion
    cache_hit = _to_count(
        _first_present(usage, "prompt_cache_hit_tokens", "cache_read_tokens")
        or prompt_details.get("cached_tokens")
    )
    cache_miss = _to_count(_first_present(usage, "prompt_cache_miss_tokens", "cache_miss_tokens"))
    if not cache_miss:
        cache_miss = max(prompt - cache_hit, 0)

    completion_details = usage.get("completion_tokens_details")
    reasoning = _to_count(
        usage.get("reasoning_tokens")
        or (completion_details.get("reasoning_tokens") if isinstance(completion_details, Mapping) else None)
    )

    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=total,
        cache_hit_tokens=cache_hit,
        cache_miss_tokens=cache_miss,
        reasoning_tokens=reasoning,
    )


def decode_deepseek_completion(payload: Any) -> Optional[DeepSeekCompletion]:
    """Decode a DeepSeek chat completion body.

    Content is taken from choices[0].message.content, then choices[0].text,
    then top-level output_text or content. Reasoning is collected from
    reasoning_content on the message, the choice and the payload, and from
    a top-level reasoning string.

    Args:
        payload: Decoded JSON body

    Returns:
        DeepSeekCompletion, or None when no non-blank content is present
    """
    if not isinstance(payload, Mapping):
        return None

    choice = _dig(payload, "choices", 0)
    if not isinstance(choice, Mapping):
        choice = {}
    message = choice.get("message")
    if not isinstance(message, Mapping):
        message = {}

    candidates = [
        _normalize_content(message.get("content", choice.get("content"))),
        choice.get("text") if isinstance(choice.get("text"), str) else None,
        _normalize_content(payload.get("output_text")),
        _normalize_content(payload.get("content")),
    ]
    content = next((c for c in candidates if c and c.strip()), None)
    if content is None:
        return None

    segments: List[str] = []
    for source in (message, choice, payload):
        if source.get("reasoning_content") is not None:
            segments.extend(_reasoning_strings(source["reasoning_content"]))
    if isinstance(payload.get("reasoning"), str):
        segments.extend(_reasoning_strings(payload["reasoning"]))

    model = payload.get("model")
    message_id = payload.get("id")
    return DeepSeekCompletion(
        content=content,
        reasoning_segments=segments,
        usage=map_usage(payload.get("usage")),
        model=model if isinstance(model, str) else "deepseek-chat",
        message_id=message_id if isinstance(message_id, str) else None,
    )
