import os

from openai import AsyncAzureOpenAI
from typing_extensions import Self

from colloquy.llm_client import BaseOaiApiLLMClient, get_tokenizer, pricing_from_kwargs
from colloquy.registry import register_llm


@register_llm(name="azure")
class AzureOpenAIClient(BaseOaiApiLLMClient):
    @classmethod
    def create(cls, **kwargs) -> Self:
        api_key = kwargs.get("api_key", None)
        model = kwargs.get("model_name", "")
        api_version = kwargs.get("api_version", "")
        azure_endpoint = kwargs.get("endpoint", "")
        max_tokens = kwargs.get("model_max_tokens", 2048)
        max_repeat = kwargs.get("max_repeat", 3)

        client = AsyncAzureOpenAI(
            api_key=api_key,
            api_version=api_version,
            azure_endpoint=azure_endpoint or os.getenv("AZURE_OPENAI_ENDPOINT"),
        )

        return cls(
            client=client,
            model=model,
            tokenizer=get_tokenizer(model),
            max_tokens=max_tokens,
            max_repeat=max_repeat,
            pricing=pricing_from_kwargs(kwargs),
        )
