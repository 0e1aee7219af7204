"""Agent loop: the model/tool graph and the driver that runs it."""

import asyncio

from langgraph.graph import END, StateGraph

from toolchat.clients.chat_model import ModelBackend
from toolchat.errors import BackendError, ConfigurationError
from toolchat.graphs.edges import route_agent_output, route_tool_output
from toolchat.graphs.nodes import agent_node, tools_node
from toolchat.graphs.state import AgentState, ChunkConsumer, RunContext
from toolchat.models.llm import AgentRunConfig, AgentRunResult, LLMMessage, RunStatus
from toolchat.models.messages import Message
from toolchat.tools.registry import ToolRegistry
from toolchat.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant with access to various tools. "
    "Use tools when appropriate to help answer questions. "
    "When you use a tool, carefully consider the required parameters and provide accurate values."
)


def create_agent_graph():
    """Create the agent graph.

    The agent node calls the model; the tools node runs the calls it asked
    for and loops back, until the model answers without tools, a
    return-direct tool answers, or the step limit is reached.

    Returns:
        Compiled LangGraph workflow
    """
    logger.info("Creating agent graph")

    workflow = StateGraph(AgentState)

    workflow.add_node("agent", agent_node)
    workflow.add_node("tools", tools_node)

    workflow.set_entry_point("agent")

    workflow.add_conditional_edges(
        "agent",
        route_agent_output,
        {
            "tools": "tools",
            "end": END,
        },
    )

    workflow.add_conditional_edges(
        "tools",
        route_tool_output,
        {
            "agent": "agent",
            "end": END,
        },
    )

    return workflow.compile()


_agent_graph = None


def get_agent_graph():
    """Get or create the compiled agent graph."""
    global _agent_graph
    if _agent_graph is None:
        _agent_graph = create_agent_graph()
    return _agent_graph


def to_llm_history(messages: list[Message], system_prompt: str | None = None) -> list[LLMMessage]:
    """Build the model history for a conversation.

    Status notices on interrupted replies are left out, and so are turns with
    nothing else in them.
    """
    history = [LLMMessage(role="system", content=system_prompt)] if system_prompt else []
    for message in messages:
        content = message.reply_content
        if content.strip():
            history.append(LLMMessage(role=message.role, content=content))
    return history


class AgentLoop:
    """Runs one user turn through the model, calling tools as requested."""

    def __init__(self, backend: ModelBackend, registry: ToolRegistry | None = None):
        self.backend = backend
        self.registry = registry
        self.graph = get_agent_graph()

    async def run(
        self,
        history: list[Message],
        config: AgentRunConfig | None = None,
        on_chunk: ChunkConsumer | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AgentRunResult:
        """Execute an agent run.

        Args:
            history: Conversation so far, ending with the user's message
            config: Step limit, system prompt, tool identifiers and return-direct tools
            on_chunk: Receives each content fragment as it arrives; enables streaming
            cancel_event: Set to stop the run and keep the partial reply

        Returns:
            The reply content, tool-call records and how the run ended

        Raises:
            ConfigurationError: If tools were resolved but the backend cannot call them
        """
        config = config or AgentRunConfig()

        tools, warnings = [], []
        if config.tool_ids and self.registry is not None:
            tools, warnings = self.registry.resolve(config.tool_ids)

        backend = self.backend
        if tools:
            if not backend.supports_tools():
                raise ConfigurationError(f"provider '{backend.provider.name}' does not support tool calling")
            backend = backend.with_tools(tools)

        run = RunContext(
            backend=backend,
            config=config,
            tools={tool.name: tool for tool in tools},
            on_chunk=on_chunk,
            warnings=warnings,
        )
        graph_config = {
            "configurable": {"run": run},
            # agent and tools nodes per step, plus the final agent call
            "recursion_limit": 2 * config.max_step + 5,
        }

        logger.info(
            f"Starting agent run with {len(history)} messages, {len(tools)} tools, max_step: {config.max_step}"
        )
        initial = {"messages": to_llm_history(history, config.system_prompt)}
        task = asyncio.create_task(self.graph.ainvoke(initial, graph_config))

        try:
            finished = await _wait_unless_cancelled(task, cancel_event)
        except BackendError as e:
            logger.error(f"Agent run failed after {run.model_calls} model calls: {e}")
            return run.result(RunStatus.FAILED, error=str(e))
        finally:
            if not task.done():
                task.cancel()

        if not finished:
            logger.info("Agent run cancelled")
            return run.result(RunStatus.CANCELLED)

        status = RunStatus.TRUNCATED if run.truncated else RunStatus.COMPLETED
        logger.info(f"Agent run {status.value} in {run.steps} steps ({run.model_calls} model calls)")
        return run.result(status)


async def _wait_unless_cancelled(task: asyncio.Task, cancel_event: asyncio.Event | None) -> bool:
    """Wait for the graph task; return False if ``cancel_event`` fired first."""
    if cancel_event is None:
        await task
        return True

    waiter = asyncio.create_task(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()

    if task in done:
        task.result()
        return True

    task.cancel()
    await asyncio.wait({task})
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Agent run raised while cancelling: {task.exception()}")
    return False
