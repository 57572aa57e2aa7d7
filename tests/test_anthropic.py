"""Tests for the Anthropic backend."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest
from anthropic import InternalServerError
from anthropic.types import TextBlock as SDKTextBlock
from anthropic.types import ToolUseBlock as SDKToolUseBlock

from chatloop.clients.anthropic import (
    AnthropicBackend,
    AnthropicConfig,
    AnthropicMessage,
    ImageBlock,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)
from chatloop.clients.base import ChatOptions
from chatloop.models.messages import ChatMessage, FilePart, FinishReason, ToolCallResult
from chatloop.models.steps import Step
from chatloop.services.chat import ChatAgent
from chatloop.utils.tokens import CharTokenizer

from tests.helpers import make_email_tool, tool_calls


def response(*content, stop_reason: str = "end_turn"):
    return SimpleNamespace(
        content=list(content),
        stop_reason=stop_reason,
        usage=SimpleNamespace(
            input_tokens=10, output_tokens=5, cache_creation_input_tokens=None, cache_read_input_tokens=None
        ),
    )


def text(value: str) -> SDKTextBlock:
    return SDKTextBlock(type="text", text=value)


@pytest.fixture
def anthropic_backend():
    """Anthropic backend with a mocked client."""
    with patch.dict("os.environ", {"ANTHROPIC_API_KEY": "test-key"}):
        backend = AnthropicBackend(config=AnthropicConfig(retry_delay=0.0), tokenizer=CharTokenizer())
    backend.client = Mock()
    backend.client.messages.create = AsyncMock(return_value=response(text("Hello!")))
    return backend


class TestAnthropicBackendSetup:
    """Tests for backend construction."""

    def test_requires_api_key(self):
        """An API key is required."""
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
                AnthropicBackend()

    def test_explicit_api_key(self):
        """An explicit key is enough."""
        with patch.dict("os.environ", {}, clear=True):
            backend = AnthropicBackend(api_key="key", tokenizer=CharTokenizer())

        assert backend.model == "claude-sonnet-4-5"


class TestAnthropicWireFormat:
    """Tests for message translation."""

    def test_text_messages(self, anthropic_backend):
        """User and bot text become user and assistant turns."""
        [user] = anthropic_backend.to_wire(ChatMessage.user("hi"))
        [bot] = anthropic_backend.to_wire(ChatMessage.bot("hello"))

        assert user == AnthropicMessage(role="user", content=[TextBlock(text="hi")])
        assert bot.role == "assistant"

    def test_developer_message_is_system(self, anthropic_backend):
        """Developer messages are system messages."""
        [message] = anthropic_backend.to_wire(ChatMessage.developer("Be terse"))

        assert message == anthropic_backend.system_message("Be terse")

    def test_tool_results(self, anthropic_backend):
        """A batch of results becomes one user turn of result blocks."""
        request = tool_calls(("a", "weather", {}), ("b", "weather", {}))
        results = [
            ToolCallResult.from_call(request.tool_calls[0], "sunny"),
            ToolCallResult.from_exception(request.tool_calls[1], RuntimeError("boom")),
        ]

        [message] = anthropic_backend.to_wire(ChatMessage.from_tool_results(results))

        assert message.role == "user"
        assert message.content == [
            ToolResultBlock(tool_use_id="a", content="sunny"),
            ToolResultBlock(tool_use_id="b", content="Error: boom", is_error=True),
        ]
        assert anthropic_backend.is_tool_result(message)
        assert not anthropic_backend.is_valid_head(message)

    def test_assistant_cannot_open_window(self, anthropic_backend):
        """Conversations must open with a user turn."""
        [bot] = anthropic_backend.to_wire(ChatMessage.bot("hello"))
        [user] = anthropic_backend.to_wire(ChatMessage.user("hi"))

        assert not anthropic_backend.is_valid_head(bot)
        assert anthropic_backend.is_valid_head(user)

    def test_tool_calls_rejected(self, anthropic_backend):
        """Tool calls cannot be sent."""
        with pytest.raises(ValueError):
            anthropic_backend.to_wire(tool_calls(("a", "weather", {})))

    def test_images(self, anthropic_backend):
        """Images are sent by URL or inline data."""
        message = ChatMessage.user(
            [
                "What is this?",
                FilePart.from_url("https://example.com/cat.png"),
                FilePart(mime_type="image/jpeg", data="aGVsbG8="),
            ]
        )

        [wire] = anthropic_backend.to_wire(message)

        assert wire.content[1] == ImageBlock(source={"type": "url", "url": "https://example.com/cat.png"})
        assert wire.content[2].source == {"type": "base64", "media_type": "image/jpeg", "data": "aGVsbG8="}

    def test_non_image_files_rejected(self, anthropic_backend):
        """Only images are supported."""
        with pytest.raises(ValueError, match="only supports image"):
            anthropic_backend.to_wire(ChatMessage.user([FilePart.from_url("https://example.com/report.pdf")]))

    def test_reply_with_tool_use(self, anthropic_backend):
        """Tool use blocks become resolved tool calls; text becomes reasoning."""
        tool = make_email_tool()
        reply = AnthropicMessage(
            role="assistant",
            content=[
                TextBlock(text="I will send it"),
                ToolUseBlock(id="toolu_1", name="send_email", input={"thought": "t", "to": "bob"}),
            ],
        )

        message = anthropic_backend.from_wire(reply, {"send_email": tool})

        [call] = message.tool_calls
        assert call.id == "toolu_1"
        assert call.tool is tool
        assert call.arguments == {"thought": "t", "to": "bob"}
        assert message.reasoning == "I will send it"

    def test_tool_definitions_cache_last(self, anthropic_backend):
        """Only the last tool definition carries cache control."""
        tools = [make_email_tool(), make_email_tool()]
        tools[1].id = "send_email_2"

        definitions = anthropic_backend.tool_definitions(tools)

        assert definitions[0].cache_control is None
        assert definitions[1].cache_control is not None
        assert definitions[0].input_schema["required"] == ["thought", "to"]


class TestAnthropicSend:
    """Tests for API calls."""

    @pytest.mark.asyncio
    async def test_system_is_hoisted(self, anthropic_backend):
        """System messages go into the system parameter."""
        window = [anthropic_backend.system_message("Be terse"), *anthropic_backend.to_wire(ChatMessage.user("hi"))]

        finish_reason, reply = await anthropic_backend.send(window, [], ChatOptions())

        kwargs = anthropic_backend.client.messages.create.call_args.kwargs
        assert kwargs["system"] == "Be terse"
        assert kwargs["messages"] == [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]
        assert "tools" not in kwargs
        assert finish_reason == FinishReason.COMPLETED
        assert reply.content == [TextBlock(text="Hello!")]
        assert anthropic_backend.usage.total_tokens == 15

    @pytest.mark.asyncio
    async def test_options(self, anthropic_backend):
        """Options override the configured defaults."""
        window = anthropic_backend.to_wire(ChatMessage.user("hi"))

        await anthropic_backend.send(window, [], ChatOptions(temperature=0.0, max_new_tokens=100))

        kwargs = anthropic_backend.client.messages.create.call_args.kwargs
        assert kwargs["temperature"] == 0.0
        assert kwargs["max_tokens"] == 100
        assert "system" not in kwargs

    @pytest.mark.asyncio
    async def test_response_format_adds_schema(self, anthropic_backend):
        """Structured output is requested through the system prompt."""
        window = anthropic_backend.to_wire(ChatMessage.user("hi"))

        await anthropic_backend.send(window, [], ChatOptions(response_format=Step))

        assert '"observation"' in anthropic_backend.client.messages.create.call_args.kwargs["system"]

    @pytest.mark.parametrize(
        "stop_reason,expected",
        [
            ("end_turn", FinishReason.COMPLETED),
            ("tool_use", FinishReason.COMPLETED),
            ("max_tokens", FinishReason.TRUNCATED),
            ("refusal", FinishReason.INAPPROPRIATE),
            ("something_new", FinishReason.OTHER),
        ],
    )
    @pytest.mark.asyncio
    async def test_stop_reasons(self, anthropic_backend, stop_reason, expected):
        """Stop reasons are normalized."""
        anthropic_backend.client.messages.create.return_value = response(text("..."), stop_reason=stop_reason)

        finish_reason, _ = await anthropic_backend.send(
            anthropic_backend.to_wire(ChatMessage.user("hi")), [], ChatOptions()
        )

        assert finish_reason == expected

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, anthropic_backend):
        """Server errors are retried."""
        error = InternalServerError(
            "overloaded",
            response=httpx.Response(500, request=httpx.Request("POST", "https://api.anthropic.com/v1/messages")),
            body=None,
        )
        anthropic_backend.client.messages.create.side_effect = [error, response(text("Hello!"))]

        with patch("chatloop.clients.anthropic.asyncio.sleep", new=AsyncMock()):
            _, reply = await anthropic_backend.send(
                anthropic_backend.to_wire(ChatMessage.user("hi")), [], ChatOptions()
            )

        assert reply.content == [TextBlock(text="Hello!")]
        assert anthropic_backend.client.messages.create.call_count == 2

    @pytest.mark.asyncio
    async def test_agent_tool_round_trip(self, anthropic_backend):
        """An agent can call a tool through the Anthropic backend."""
        sent: list[str] = []
        anthropic_backend.client.messages.create.side_effect = [
            response(
                text("Sending"),
                SDKToolUseBlock(type="tool_use", id="toolu_1", name="send_email", input={"thought": "t", "to": "bob"}),
                stop_reason="tool_use",
            ),
            response(text("Done")),
        ]
        agent = ChatAgent(anthropic_backend, personality="Be helpful")
        agent.add_tools([make_email_tool(sent)])

        completion = await agent.run("email bob")

        assert completion.text == "Done"
        assert sent == ["bob"]
        second = anthropic_backend.client.messages.create.call_args_list[1].kwargs
        assert second["system"] == "Be helpful"
        assert second["messages"][-1]["content"][0]["type"] == "tool_result"
        assert second["tools"][-1]["cache_control"] == {"type": "ephemeral", "ttl": "5m"}
