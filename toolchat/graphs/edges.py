"""Edge routing for the agent graph."""

from typing import Literal

from toolchat.graphs.state import AgentState
from toolchat.utils.logging import get_logger

logger = get_logger(__name__)


def route_agent_output(state: AgentState) -> Literal["tools", "end"]:
    """Route from the agent node: dispatch pending tool calls or finish."""
    logger.debug(f"Routing from agent node. Next step: {state.next_step}")

    if state.next_step == "tools" and state.pending_tool_calls:
        return "tools"
    return "end"


def route_tool_output(state: AgentState) -> Literal["agent", "end"]:
    """Route from the tools node.

    Returns to the agent unless a return-direct tool supplied the answer.
    """
    if state.return_direct or state.next_step == "end":
        return "end"
    return "agent"
