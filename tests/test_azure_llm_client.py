from unittest.mock import MagicMock, patch

from colloquy.azure_llm_client import AzureOpenAIClient
from colloquy.llm_client import TokenPricing
from colloquy.registry import LLM_REGISTRY


@patch("colloquy.azure_llm_client.get_tokenizer")
@patch("colloquy.azure_llm_client.AsyncAzureOpenAI")
def test_azure_openai_client_creation(mock_azure, mock_tokenizer):
    mock_azure.return_value = MagicMock()

    client = AzureOpenAIClient.create(
        api_key="mock_api_key",
        model_name="gpt-4o",
        api_version="2024-06-01",
        endpoint="https://mock-azure-openai-endpoint.com",
        max_repeat=5,
        pricing={"input_cost_per_1k": 0.005, "output_cost_per_1k": 0.015},
    )

    mock_azure.assert_called_once_with(
        api_key="mock_api_key",
        api_version="2024-06-01",
        azure_endpoint="https://mock-azure-openai-endpoint.com",
    )
    assert client.client is mock_azure.return_value
    assert client.model == "gpt-4o"
    assert client.max_repeat == 5
    assert client.pricing == TokenPricing(input_cost_per_1k=0.005, output_cost_per_1k=0.015)


@patch("colloquy.azure_llm_client.get_tokenizer")
@patch("colloquy.azure_llm_client.AsyncAzureOpenAI")
def test_azure_endpoint_falls_back_to_environment(mock_azure, mock_tokenizer, monkeypatch):
    monkeypatch.setenv("AZURE_OPENAI_ENDPOINT", "https://from-env.openai.azure.com")

    AzureOpenAIClient.create(api_key="key", model_name="gpt-4o", api_version="2024-06-01")

    assert mock_azure.call_args.kwargs["azure_endpoint"] == "https://from-env.openai.azure.com"


def test_azure_client_is_registered():
    assert LLM_REGISTRY["azure"] is AzureOpenAIClient
