import json
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Optional

import tiktoken
from openai import (
    APIError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    BadRequestError,
    PermissionDeniedError,
    RateLimitError,
    UnprocessableEntityError,
)
from openai.types.chat import ChatCompletion
from typing_extensions import Self

from colloquy.cancellation import CancellationToken, ensure_token
from colloquy.entities import (
    ChatMessage,
    ChatResponse,
    DataContent,
    Role,
    StreamChunk,
    TextContent,
    ToolCall,
    ToolDescription,
    UriContent,
)
from colloquy.errors import TransportError
from colloquy.logger_setup import get_logger
from colloquy.protocols import LLMClient
from colloquy.registry import register_llm
from colloquy.tools import map_python_type_to_json

DEFAULT_ENCODING = "o200k_base"


@dataclass
class TokenPricing:
    """
    Prices per thousand tokens. Cached input tokens are billed at their own rate.
    """

    input_cost_per_1k: float = 0.0
    output_cost_per_1k: float = 0.0
    cached_input_cost_per_1k: float = 0.0

    def cost(self, input_tokens: int, output_tokens: int, cached_input_tokens: int = 0) -> float:
        regular_input = max(input_tokens - cached_input_tokens, 0)
        return (
            regular_input * self.input_cost_per_1k
            + cached_input_tokens * self.cached_input_cost_per_1k
            + output_tokens * self.output_cost_per_1k
        ) / 1000


def get_tokenizer(model: str) -> tiktoken.Encoding:
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding(DEFAULT_ENCODING)


class BaseOaiApiLLMClient(LLMClient):
    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        tokenizer: Callable[[str], int] | tiktoken.Encoding,
        max_tokens: int,
        max_repeat: int = 3,
        pricing: Optional[TokenPricing] = None,
    ):
        """
        :param client: The OpenAI client instance used to interact
            with the OpenAI API.
        :param model: The model identifier string that specifies which
            version/model of the OpenAI API to use for generating responses.
        :param tokenizer: Used to count tokens when the provider reports no usage.
        :param max_tokens: Context size of the model.
        :param max_repeat: Number of attempts for retryable errors.
        :param pricing: Token prices used to compute the cost of a response.
        """
        self.client = client
        self.model = model
        self.tokenizer = tokenizer
        self.max_tokens = max_tokens
        self.max_repeat = max_repeat
        self.pricing = pricing or TokenPricing()
        self.logger = get_logger(f"colloquy.llm.{self.__class__.__name__}")

        self.logger.info(f"LLM client '{self.__class__.__name__}' initialized.")

    @classmethod
    @abstractmethod
    def create(cls, **kwargs) -> Self:
        pass

    async def send_request(self, body: dict[str, Any]) -> Any:
        self.logger.debug("Sending request to API.")
        completion = await self.client.chat.completions.create(**body)
        self.logger.debug("Received response from API.")
        return completion

    @staticmethod
    def format_tool_description_for_llm(tool: ToolDescription) -> dict[str, Any]:
        """
        Formats a ToolDescription object into a dictionary that can be sent to the LLM model.
        :param tool: Tool description to be formatted
        :return: JSON-serializable dictionary containing the tool data
        """
        properties = {
            arg_name: {
                "type": map_python_type_to_json(arg_data.get("type", "str")),
                "description": arg_data.get("description", ""),
            }
            for arg_name, arg_data in tool.arguments.items()
        }

        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description.strip(),
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": list(tool.arguments.keys()),
                },
            },
        }

    @staticmethod
    def _format_result(result: Any) -> str:
        if isinstance(result, str):
            return result
        return json.dumps(result, default=str)

    @staticmethod
    def _format_media(content: DataContent | UriContent) -> Optional[dict[str, Any]]:
        if isinstance(content, UriContent):
            return {"type": "image_url", "image_url": {"url": content.uri}}
        if content.media_type.startswith("image/"):
            return {"type": "image_url", "image_url": {"url": f"data:{content.media_type};base64,{content.data}"}}
        return None

    @classmethod
    def format_message_for_llm(cls, message: ChatMessage) -> list[dict[str, Any]]:
        """
        Formats a ChatMessage object into the dictionaries that can be sent to the LLM model.

        A tool message carrying several results expands into one dictionary per result, as the chat completions
        API expects exactly one ``tool_call_id`` per tool message.

        :param message: Message to be formatted
        :return: JSON-serializable dictionaries containing the message data
        """
        if message.role == Role.TOOL:
            return [
                {
                    "role": "tool",
                    "tool_call_id": result.tool_call_id,
                    "content": cls._format_result(result.result),
                }
                for result in message.tool_results
            ]

        name = {"name": message.name} if message.name else {}

        if message.role == Role.ASSISTANT:
            tool_calls = (
                {
                    "tool_calls": [
                        {
                            "id": tool_call.tool_call_id,
                            "type": "function",
                            "function": {
                                "name": tool_call.function_name,
                                "arguments": json.dumps(tool_call.arguments),
                            },
                        }
                        for tool_call in message.tool_calls
                    ]
                }
                if message.tool_calls
                else {}
            )
            return [{"role": "assistant", "content": message.text or None, **tool_calls, **name}]

        media_parts = [
            part
            for content in message.contents
            if isinstance(content, (DataContent, UriContent)) and (part := cls._format_media(content))
        ]
        if media_parts:
            text_parts = [{"type": "text", "text": c.text} for c in message.contents if isinstance(c, TextContent)]
            return [{"role": str(message.role), "content": text_parts + media_parts, **name}]

        return [{"role": str(message.role), "content": message.text, **name}]

    def format_messages_for_llm(self, messages: list[ChatMessage]) -> list[dict[str, Any]]:
        return [formatted for message in messages for formatted in self.format_message_for_llm(message)]

    def build_request_body(
        self, messages: list[ChatMessage], tools: Optional[list[ToolDescription]] = None
    ) -> dict[str, Any]:
        formatted_tools = {"tools": [self.format_tool_description_for_llm(tool) for tool in tools]} if tools else {}
        return {
            **formatted_tools,
            "model": self.model,
            "messages": self.format_messages_for_llm(messages),
        }

    def count_tokens(self, text: str) -> int:
        """
        Counts the number of tokens in a text string.
        :param text: The text string to tokenize.
        :return: The number of tokens in the text string.
        """
        return len(self.tokenizer.encode(text))

    def count_tokens_recursively(self, value) -> int:
        if isinstance(value, str):
            return self.count_tokens(value)
        elif isinstance(value, dict):
            return sum(self.count_tokens_recursively(k) + self.count_tokens_recursively(v) for k, v in value.items())
        elif isinstance(value, list):
            return sum(self.count_tokens_recursively(item) for item in value)
        elif value is None:
            return 0
        else:
            return self.count_tokens(str(value))

    def count_tokens_in_conversation(self, messages: list[dict]) -> int:
        """
        Count the number of tokens used by a list of formatted messages.
        The implementation is based on OpenAI's token counting guidelines.
        """
        tokens_per_message = 3
        tokens_per_name = 1
        num_tokens = 0
        for message in messages:
            num_tokens += tokens_per_message
            for key, value in message.items():
                if key == "name":
                    num_tokens += tokens_per_name
                num_tokens += self.count_tokens_recursively(value)
        num_tokens += 3  # every reply is primed with <|start|>assistant<|message|>
        return num_tokens

    def _usage_to_counts(self, usage: Any) -> tuple[int, int, int]:
        details = getattr(usage, "prompt_tokens_details", None)
        cached = (getattr(details, "cached_tokens", 0) or 0) if details else 0
        return usage.prompt_tokens or 0, usage.completion_tokens or 0, cached

    def _parse_arguments(self, raw_arguments: str, function_name: str) -> dict[str, Any]:
        if not raw_arguments:
            return {}
        try:
            arguments = json.loads(raw_arguments)
        except json.JSONDecodeError as e:
            self.logger.warning(f"Could not parse arguments of tool call '{function_name}': {e}")
            return {}
        return arguments if isinstance(arguments, dict) else {"value": arguments}

    def completion_to_response(self, completion: ChatCompletion, request_body: dict[str, Any]) -> ChatResponse:
        """
        Converts the completion returned by the API into a ChatResponse.

        :param completion: The response from the LLM model
        :param request_body: The request that produced it, used to count tokens if no usage was reported
        :return: The response with token usage and cost
        """
        choice = completion.choices[0]
        contents = [TextContent(choice.message.content)] if choice.message.content else []
        contents.extend(
            ToolCall(
                tool_call_id=tool_call.id,
                function_name=tool_call.function.name,
                arguments=self._parse_arguments(tool_call.function.arguments, tool_call.function.name),
            )
            for tool_call in choice.message.tool_calls or []
        )
        message = ChatMessage(role=Role.ASSISTANT, contents=contents)

        if completion.usage:
            input_tokens, output_tokens, cached_tokens = self._usage_to_counts(completion.usage)
        else:
            input_tokens = self.count_tokens_in_conversation(request_body["messages"])
            output_tokens = self.count_tokens_in_conversation(self.format_message_for_llm(message))
            cached_tokens = 0

        return ChatResponse(
            messages=[message],
            finish_reason=choice.finish_reason,
            model=completion.model or self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cached_input_tokens=cached_tokens,
            cost=self.pricing.cost(input_tokens, output_tokens, cached_tokens),
        )

    async def _send_with_retry(self, request_body: dict[str, Any], token: CancellationToken) -> Any:
        fail_counter = 0

        while fail_counter < self.max_repeat:
            token.raise_if_cancelled()
            try:
                return await self.send_request(request_body)

            except (
                UnprocessableEntityError,
                AuthenticationError,
                PermissionDeniedError,
                BadRequestError,
            ) as e:
                self.logger.error(f"Non-retryable error: {e}, aborting...")
                raise e

            except (
                APITimeoutError,
                APIError,
                RateLimitError,
            ) as e:
                fail_counter += 1
                self.logger.warning(
                    f"Retryable error encountered: {e}, retrying... ({fail_counter}/{self.max_repeat})"
                )

        raise TransportError("Failed to generate response after multiple attempts.")

    async def generate(
        self,
        messages: list[ChatMessage],
        tools: Optional[list[ToolDescription]] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> ChatResponse:
        """
        Generates a complete response for the given messages.

        :param messages: Request-ready messages.
        :param tools: Description of all the tools the model can use.
        :param cancellation_token: Token to observe for cooperative cancellation.
        :return: The response, including usage and cost.
        :raises TransportError: If all attempts failed with retryable errors.
        """
        request_body = self.build_request_body(messages, tools)
        completion = await self._send_with_retry(request_body, ensure_token(cancellation_token))
        return self.completion_to_response(completion, request_body)

    async def stream(
        self,
        messages: list[ChatMessage],
        tools: Optional[list[ToolDescription]] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Streams the response for the given messages.

        Text deltas are forwarded as they arrive. Tool call fragments are assembled by their index and emitted
        together with the finish reason and usage in the last chunk, once their arguments are complete.

        :param messages: Request-ready messages.
        :param tools: Description of all the tools the model can use.
        :param cancellation_token: Token to observe for cooperative cancellation.
        :return: An async iterator over stream chunks.
        """
        token = ensure_token(cancellation_token)
        request_body = {
            **self.build_request_body(messages, tools),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        response = await self._send_with_retry(request_body, token)

        fragments: dict[int, dict[str, str]] = {}
        text_parts = []
        finish_reason = None
        usage = None

        async for chunk in response:
            token.raise_if_cancelled()
            if chunk.usage:
                usage = chunk.usage
            if not chunk.choices:
                continue

            choice = chunk.choices[0]
            delta = choice.delta
            if delta and delta.content:
                text_parts.append(delta.content)
                yield StreamChunk(text=delta.content)

            for fragment in (delta.tool_calls if delta else None) or []:
                is_new = fragment.index not in fragments
                entry = fragments.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                if fragment.id:
                    entry["id"] = fragment.id
                if fragment.function:
                    entry["name"] += fragment.function.name or ""
                    entry["arguments"] += fragment.function.arguments or ""
                if is_new:
                    yield StreamChunk(pending_tool_call_id=entry["id"] or f"call_{fragment.index}")

            if choice.finish_reason:
                finish_reason = choice.finish_reason

        tool_calls = [
            ToolCall(
                tool_call_id=entry["id"],
                function_name=entry["name"],
                arguments=self._parse_arguments(entry["arguments"], entry["name"]),
            )
            for _, entry in sorted(fragments.items())
        ]

        if usage:
            input_tokens, output_tokens, cached_tokens = self._usage_to_counts(usage)
        else:
            input_tokens = self.count_tokens_in_conversation(request_body["messages"])
            output_tokens = self.count_tokens("".join(text_parts)) + sum(
                self.count_tokens(entry["name"] + entry["arguments"]) for entry in fragments.values()
            )
            cached_tokens = 0

        yield StreamChunk(
            tool_calls=tool_calls,
            finish_reason=finish_reason or "stop",
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cached_input_tokens=cached_tokens,
            cost=self.pricing.cost(input_tokens, output_tokens, cached_tokens),
        )


def pricing_from_kwargs(kwargs: dict[str, Any]) -> TokenPricing:
    pricing = kwargs.get("pricing") or {}
    if isinstance(pricing, TokenPricing):
        return pricing
    if not isinstance(pricing, dict):
        pricing = vars(pricing)
    return TokenPricing(
        input_cost_per_1k=pricing.get("input_cost_per_1k", 0.0),
        output_cost_per_1k=pricing.get("output_cost_per_1k", 0.0),
        cached_input_cost_per_1k=pricing.get("cached_input_cost_per_1k", 0.0),
    )


@register_llm(name="openai")
class OpenAILLMClient(BaseOaiApiLLMClient):
    @classmethod
    def create(cls, **kwargs) -> Self:
        api_key = kwargs.get("api_key", None)
        model = kwargs.get("model_name", "")
        base_url = kwargs.get("base_url", None)
        max_tokens = kwargs.get("model_max_tokens", 2048)
        max_repeat = kwargs.get("max_repeat", 3)

        client = AsyncOpenAI(api_key=api_key, base_url=base_url)

        return cls(
            client=client,
            model=model,
            tokenizer=get_tokenizer(model),
            max_tokens=max_tokens,
            max_repeat=max_repeat,
            pricing=pricing_from_kwargs(kwargs),
        )
