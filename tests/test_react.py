"""Tests for the ReAct executor, its critic and agent delegation."""

import json

import pytest

from chatloop.config import ReactConfig
from chatloop.errors import ToolContractError
from chatloop.models.messages import ChatMessage, FinishReason
from chatloop.models.steps import Step, StepStatus, ToolCallStep
from chatloop.react.agent import ReactAgent
from chatloop.react.critic import describe_tools
from chatloop.react.prompts import CONTINUE_SUGGESTION, INITIAL_SUGGESTION, KEEP_GOING_SUGGESTION
from chatloop.tools.base import FunctionTool
from chatloop.tools.capability import Toolset

from tests.helpers import PlainParams, ScriptedBackend, make_failing_tool, step_json, tool_calls


def no_review() -> ReactConfig:
    return ReactConfig(check_last_step=False)


class TestExecutor:
    """Tests for the executor loop."""

    @pytest.mark.asyncio
    async def test_completes_with_critic_agreeing(self, backend):
        """A completed step confirmed by the critic ends the run."""
        backend.queue(step_json("COMPLETED", "All done", "Nothing to do"), CONTINUE_SUGGESTION)
        agent = ReactAgent(backend, id="agent")

        step = await agent.execute("Say hello")

        assert step.status == StepStatus.COMPLETED
        assert step.observation == "Nothing to do"
        assert step.actor == "agent-executor"
        assert agent.command == "Say hello"
        assert len(agent.steps) == 2
        assert len(backend.windows) == 2

    @pytest.mark.asyncio
    async def test_first_turn(self, backend):
        """The first turn carries the start step and the initial suggestion."""
        backend.queue(step_json("COMPLETED"))
        agent = ReactAgent(backend, id="agent", config=no_review())

        await agent.execute("Say hello")

        personality, turn = backend.windows[0]
        assert "<user_command>\nSay hello\n</user_command>" in personality.content
        assert turn.content.startswith("<steps>\n")
        assert turn.content.endswith(f"Suggestion: {INITIAL_SUGGESTION}")
        start = agent.steps[0]
        assert start.status == StepStatus.IN_PROGRESS
        assert "Say hello" in start.thought
        assert start.observation == "Execution just started."
        assert backend.options_sent[0].response_format is Step
        assert backend.options_sent[0].temperature == 0.0

    @pytest.mark.asyncio
    async def test_step_ceiling(self, backend):
        """A model that never finishes is stopped with an error step."""
        backend.queue(*[step_json("IN_PROGRESS", f"thinking {i}") for i in range(10)])
        agent = ReactAgent(backend, config=ReactConfig(max_steps=5))

        step = await agent.execute("Loop forever")

        assert step.status == StepStatus.ERROR
        assert "exceeded maximum number of steps (5)" in step.thought
        assert len(agent.steps) == 6
        assert len(backend.windows) == 4
        assert backend.windows[1][1].content.endswith(f"Suggestion: {KEEP_GOING_SUGGESTION}")

    @pytest.mark.asyncio
    async def test_malformed_output(self, backend):
        """Replies that are not steps become an error step with the raw text."""
        backend.queue("I think I am done!")
        agent = ReactAgent(backend, config=no_review())

        step = await agent.execute("Say hello")

        assert step.status == StepStatus.ERROR
        assert step.thought.startswith("I stopped because I encountered this error")
        assert step.observation == "I think I am done!"

    @pytest.mark.asyncio
    async def test_fenced_output(self, backend):
        """Steps wrapped in a code fence are accepted."""
        backend.queue(f"```json\n{step_json('completed', 'ok', 'fine')}\n```")
        agent = ReactAgent(backend, config=no_review())

        step = await agent.execute("Say hello")

        assert step.status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_backend_failure(self, backend):
        """A failing backend ends the run with an error step instead of raising."""
        backend.queue(RuntimeError("service down"))
        agent = ReactAgent(backend)

        step = await agent.execute("Say hello")

        assert isinstance(step, ToolCallStep)
        assert step.status == StepStatus.ERROR
        assert "service down" in step.observation
        assert len(agent.steps) == 2

    @pytest.mark.asyncio
    async def test_incomplete_reply(self, backend):
        """A truncated reply ends the run with an error step."""
        backend.queue((FinishReason.TRUNCATED, ChatMessage.bot('{"status": "COMP')))
        agent = ReactAgent(backend)

        step = await agent.execute("Say hello")

        assert step.status == StepStatus.ERROR
        assert step.observation == "Response finish reason: truncated"

    @pytest.mark.asyncio
    async def test_new_command_resets_steps(self, backend):
        """Each command starts a fresh trail."""
        backend.queue(step_json("COMPLETED"), step_json("COMPLETED"))
        agent = ReactAgent(backend, config=no_review())

        await agent.execute("first")
        await agent.execute("second")

        assert len(agent.steps) == 2
        assert agent.command == "second"


class TestToolSteps:
    """Tests for tool calls made by the executor."""

    @pytest.mark.asyncio
    async def test_tool_call_step(self, backend, email_tool):
        """Tool calls are recorded with their thought, input and observation."""
        backend.queue(
            tool_calls(("c1", "send_email", {"thought": "Sending the email", "to": "bob"})),
            step_json("COMPLETED", "Sent", "Email sent to bob"),
        )
        agent = ReactAgent(backend, tools=[email_tool], config=no_review())

        step = await agent.execute("Email bob")

        assert step.status == StepStatus.COMPLETED
        assert email_tool.sent == ["bob"]
        tool_step = agent.steps[1]
        assert isinstance(tool_step, ToolCallStep)
        assert tool_step.thought == "Sending the email"
        assert tool_step.action == 'The tool "send_email" has been called'
        assert json.loads(tool_step.action_input) == {"to": "bob"}
        assert tool_step.observation == "Email sent to bob"
        assert tool_step.status == StepStatus.IN_PROGRESS
        assert backend.windows[1][1].content.endswith(f"Suggestion: {CONTINUE_SUGGESTION}")
        assert '"action": "The tool \\"send_email\\" has been called"' in backend.windows[1][1].content

    @pytest.mark.asyncio
    async def test_parallel_tool_calls(self, backend, email_tool):
        """Every call in a batch gets its own step."""
        backend.queue(
            tool_calls(
                ("c1", "send_email", {"thought": "first", "to": "ann"}),
                ("c2", "send_email", {"thought": "second", "to": "bob"}),
            ),
            step_json("COMPLETED"),
        )
        agent = ReactAgent(backend, tools=[email_tool], config=no_review())

        await agent.execute("Email ann and bob")

        assert sorted(email_tool.sent) == ["ann", "bob"]
        assert [s.thought for s in agent.steps[1:3]] == ["first", "second"]
        assert len(agent.steps) == 4

    @pytest.mark.asyncio
    async def test_tool_error_asks_critic(self, backend):
        """A failed tool call is reviewed and the suggestion passed on."""
        backend.queue(
            tool_calls(("c1", "lookup", {"thought": "Find the city", "city": "Atlantis"})),
            "Try Rome instead.",
            step_json("COMPLETED"),
            CONTINUE_SUGGESTION,
        )
        agent = ReactAgent(backend, tools=[make_failing_tool()])

        step = await agent.execute("Find Atlantis")

        assert step.status == StepStatus.COMPLETED
        assert agent.steps[1].observation == "Error: city Atlantis not found"
        critic_personality = backend.windows[1][0].content
        assert "keeps calling the same tool" in critic_personality
        assert "### Tool ID: lookup" in critic_personality
        assert backend.tool_definitions_sent[1] == []
        assert backend.windows[2][1].content.endswith("Suggestion: Try Rome instead.")

    @pytest.mark.asyncio
    async def test_unknown_tool(self, backend, email_tool):
        """Calls to tools the agent lacks are recorded as errors."""
        backend.queue(
            tool_calls(("c1", "fly", {"thought": "Going up"})),
            CONTINUE_SUGGESTION,
            step_json("ERROR", "Cannot fly", "No such tool"),
            CONTINUE_SUGGESTION,
        )
        agent = ReactAgent(backend, tools=[email_tool])

        step = await agent.execute("Fly")

        assert agent.steps[1].observation == "Error: Unknown tool fly"
        assert step.status == StepStatus.ERROR

    def test_tools_must_accept_thought(self, backend):
        """Tools without a thought parameter are rejected."""
        plain = FunctionTool("echo", "Echoes text.", PlainParams, lambda args: args.text)

        with pytest.raises(ToolContractError, match="thought"):
            ReactAgent(backend, tools=[plain])

    def test_rejected_capability_leaves_tools_unchanged(self, backend, email_tool):
        """A capability with one bad tool is not attached at all."""
        agent = ReactAgent(backend, tools=[email_tool])
        plain = FunctionTool("echo", "Echoes text.", PlainParams, lambda args: args.text)

        with pytest.raises(ToolContractError):
            agent.add_capability(Toolset([make_failing_tool(), plain], id="extra"))

        assert list(agent.executor.tools) == ["send_email"]

    def test_rejected_replacement_keeps_existing_tools(self, backend, email_tool):
        """Replacing the tool capability with a bad one keeps the current tools."""
        agent = ReactAgent(backend, tools=[email_tool])
        plain = FunctionTool("echo", "Echoes text.", PlainParams, lambda args: args.text)

        with pytest.raises(ToolContractError):
            agent.add_capability(Toolset([plain], id="tools"))

        assert list(agent.executor.tools) == ["send_email"]
        assert agent.executor.tools["send_email"].is_initialized

    def test_module_ids(self, backend):
        """Executor and critic ids derive from the agent id."""
        agent = ReactAgent(backend, id="helper")

        assert agent.executor.id == "helper-executor"
        assert agent.critic.id == "helper-critic"


class TestCritic:
    """Tests for the review of conclusions."""

    @pytest.mark.asyncio
    async def test_disagreement_reopens_the_run(self, backend, email_tool):
        """A completed step the critic disagrees with is downgraded and the suggestion followed."""
        backend.queue(
            step_json("COMPLETED", "I will send the email", "Email sent"),
            "You did not send the email; call send_email.",
            tool_calls(("c1", "send_email", {"thought": "Sending it now", "to": "bob"})),
            step_json("COMPLETED", "Sent", "Email sent to bob"),
            CONTINUE_SUGGESTION,
        )
        agent = ReactAgent(backend, tools=[email_tool])

        step = await agent.execute("Email bob")

        assert step.status == StepStatus.COMPLETED
        assert agent.steps[1].status == StepStatus.IN_PROGRESS
        assert email_tool.sent == ["bob"]
        assert len(agent.steps) == 4
        assert backend.windows[2][1].content.endswith("Suggestion: You did not send the email; call send_email.")
        assert "Do not believe" in backend.windows[1][0].content

    @pytest.mark.asyncio
    async def test_critic_sees_complete_steps(self, backend):
        """The critic gets the full trail, pretty printed."""
        backend.queue(step_json("ERROR", "Stuck", "Cannot proceed"), CONTINUE_SUGGESTION)
        agent = ReactAgent(backend)

        step = await agent.execute("Do something")

        assert step.status == StepStatus.ERROR
        critic_turn = backend.windows[1][1].content
        steps = json.loads(critic_turn.removeprefix("<steps>\n").removesuffix("\n</steps>"))
        assert [s["status"] for s in steps] == ["IN_PROGRESS", "ERROR"]
        assert backend.options_sent[1].temperature == 0.0
        assert backend.options_sent[1].response_format is None

    @pytest.mark.asyncio
    async def test_critic_failure_lets_executor_continue(self, backend):
        """If the critic cannot be reached the conclusion stands."""
        backend.queue(step_json("COMPLETED"), RuntimeError("critic down"))
        agent = ReactAgent(backend)

        step = await agent.execute("Say hello")

        assert step.status == StepStatus.COMPLETED
        assert len(agent.steps) == 2

    def test_describe_tools_hides_thought(self, email_tool):
        """The critic's tool descriptions leave out the thought parameter."""
        description = describe_tools([email_tool])

        assert "### Tool ID: send_email" in description
        assert '"to"' in description
        assert '"thought"' not in description


class TestDelegation:
    """Tests for agents used as tools by other agents."""

    @pytest.mark.asyncio
    async def test_nested_steps(self):
        """The delegate's steps are attached to the caller's tool step."""
        inner_backend = ScriptedBackend([step_json("COMPLETED", "Found", "Bob is in Rome")])
        inner = ReactAgent(inner_backend, id="finder", config=no_review())
        outer_backend = ScriptedBackend(
            [
                tool_calls(("c1", "people", {"thought": "Ask the finder", "question": "Where is Bob?"})),
                step_json("COMPLETED", "Done", "Bob is in Rome"),
            ]
        )
        outer = ReactAgent(outer_backend, tools=[inner.as_tool("Finds people", id="people")], config=no_review())

        step = await outer.execute("Locate Bob")

        assert step.status == StepStatus.COMPLETED
        assert inner.command == "Where is Bob?"
        tool_step = outer.steps[1]
        assert tool_step.observation == "Bob is in Rome"
        assert json.loads(tool_step.action_input) == {"question": "Where is Bob?"}
        assert [s.actor for s in tool_step.action_steps] == ["finder-executor", "finder-executor"]
        assert '"action_steps"' not in outer_backend.windows[1][1].content

    @pytest.mark.asyncio
    async def test_delegate_error(self):
        """A delegate ending in error produces an error result for the caller."""
        inner_backend = ScriptedBackend([step_json("ERROR", "Stuck", "No such person")])
        inner = ReactAgent(inner_backend, id="finder", config=no_review())
        outer_backend = ScriptedBackend(
            [
                tool_calls(("c1", "people", {"thought": "Ask the finder", "question": "Where is Zed?"})),
                CONTINUE_SUGGESTION,
                step_json("ERROR", "Nobody knows", "Zed could not be found"),
            ]
        )
        outer = ReactAgent(outer_backend, tools=[inner.as_tool("Finds people", id="people")], config=no_review())

        step = await outer.execute("Locate Zed")

        assert outer.steps[1].observation == "ERROR: No such person"
        assert step.observation == "Zed could not be found"
        assert len(outer_backend.windows) == 3
