from typing import AsyncIterable, AsyncIterator

from colloquy.deduplication import deduplicate_tool_calls
from colloquy.entities import ChatMessage, Role, StreamChunk, StreamingFrame, TextContent, ToolCall
from colloquy.logger_setup import get_logger


class StreamingAccumulator:
    """
    Turns a stream of transport chunks into frames for the caller.

    Text is forwarded as it arrives until the first tool call fragment shows up. From then on the response is a
    tool turn and text is only buffered, so that the caller never sees half of a message that ends up being a
    tool call. The accumulator always drains to exactly one final frame carrying the assembled assistant message.
    """

    def __init__(self):
        self.logger = get_logger(__name__)

    async def process(self, chunks: AsyncIterable[StreamChunk]) -> AsyncIterator[StreamingFrame]:
        """
        :param chunks: Chunks as produced by the transport.
        :return: Frames with text deltas, followed by one final frame.
        """
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        media = []
        tool_call_detected = False
        streamed_to_user = False
        input_tokens = output_tokens = cached_input_tokens = 0
        cost = 0.0

        async for chunk in chunks:
            input_tokens += chunk.input_tokens
            output_tokens += chunk.output_tokens
            cached_input_tokens += chunk.cached_input_tokens
            cost += chunk.cost

            if chunk.tool_calls or chunk.pending_tool_call_id:
                if not tool_call_detected:
                    self.logger.debug("Tool call detected in stream, text is no longer forwarded")
                tool_call_detected = True
                tool_calls.extend(chunk.tool_calls)

            if chunk.contents:
                media.extend(chunk.contents)

            if chunk.text:
                text_parts.append(chunk.text)
                if not tool_call_detected:
                    streamed_to_user = True
                    yield StreamingFrame(text_delta=chunk.text, accumulated_text="".join(text_parts))

            if chunk.finish_reason:
                self.logger.debug(f"Stream finished with reason '{chunk.finish_reason}'")
                break

        text = "".join(text_parts)
        unique_calls = deduplicate_tool_calls(tool_calls)
        contents = [TextContent(text)] if text else []
        contents.extend(media)
        contents.extend(unique_calls)

        yield StreamingFrame(
            accumulated_text=text,
            final_message=ChatMessage(role=Role.ASSISTANT, contents=contents),
            tool_calls=unique_calls,
            streamed_to_user=streamed_to_user,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cached_input_tokens=cached_input_tokens,
            cost=cost,
        )
