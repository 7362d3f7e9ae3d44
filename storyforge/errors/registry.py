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
"""Lookup of the error processor for a provider."""

from functools import lru_cache
from typing import Dict, Type, Union

from storyforge.errors.base import BaseErrorProcessor
from storyforge.errors.deepseek import DeepSeekErrorProcessor
from storyforge.errors.gemini import GeminiErrorProcessor
from storyforge.errors.siliconflow import SiliconFlowErrorProcessor
from storyforge.models import AIProvider


class GenericErrorProcessor(BaseErrorProcessor):
    """Processor for providers without a dedicated table (OpenAI, Claude).

    Relies entirely on the generic exception, status and message heuristics.
    """


PROCESSOR_CLASSES: Dict[AIProvider, Type[BaseErrorProcessor]] = {
    AIProvider.DEEPSEEK: DeepSeekErrorProcessor,
    AIProvider.GEMINI: GeminiErrorProcessor,
    AIProvider.SILICONFLOW: SiliconFlowErrorProcessor,
}


@lru_cache
def _processor_for(provider: AIProvider) -> BaseErrorProcessor:
    processor_class = PROCESSOR_CLASSES.get(provider)
    if processor_class is None:
        return GenericErrorProcessor(provider=provider)
    return processor_class()


def get_error_processor(provider: Union[AIProvider, str]) -> BaseErrorProcessor:
    """Get the shared processor for a provider.

    Processors are stateless, so one instance per provider is reused.

    Args:
        provider: AIProvider or its string value

    Returns:
        Processor for the provider

    Raises:
        ValueError: If provider is not a known provider name
    """
    return _processor_for(AIProvider(provider))
