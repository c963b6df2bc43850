from __future__ import annotations

from productscribe.core.config import get_settings
from productscribe.core.errors import ProviderConfigError
from productscribe.providers.llm.base import DescriptionModel
from productscribe.providers.llm.fake import FakeDescriptionModel
from productscribe.providers.llm.openai_chat import OpenAIDescriptionModel


def get_description_model() -> DescriptionModel:
    settings = get_settings()
    provider = (settings.llm_provider or "openai").lower()

    if provider == "fake":
        return FakeDescriptionModel()
    if provider == "openai":
        return OpenAIDescriptionModel()

    raise ProviderConfigError(f"Unsupported LLM provider: {provider}")
