"""Node implementations for the agent graph."""

import asyncio
from contextlib import aclosing
from typing import Any

from langchain_core.runnables import RunnableConfig

from toolchat.errors import ToolError
from toolchat.graphs.state import AgentState, RunContext, get_run_context
from toolchat.models.llm import LLMMessage, LLMResponse, ToolCallRequest
from toolchat.models.messages import ToolCallRecord
from toolchat.utils.logging import get_logger

logger = get_logger(__name__)


async def agent_node(state: AgentState, config: RunnableConfig) -> dict[str, Any]:
    """Call the model once and decide whether tools run next.

    When the model asks for tools after ``max_step`` dispatch cycles the run
    ends here, flagged as truncated.
    """
    run = get_run_context(config)
    run.model_calls += 1
    logger.debug(f"Model call {run.model_calls} with {len(state.messages)} messages")

    if run.streaming:
        response = await _stream_response(run, state.messages)
    else:
        response = await run.backend.generate(state.messages)
        run.emit(response.content)
    run.usage.add(response.usage)

    assistant = LLMMessage(role="assistant", content=response.content, tool_calls=response.tool_calls)

    if not response.tool_calls:
        return {"messages": [assistant], "pending_tool_calls": [], "next_step": "end"}

    if state.steps >= run.config.max_step:
        logger.warning(f"Stopping after the maximum of {run.config.max_step} tool steps")
        run.truncated = True
        return {"messages": [assistant], "pending_tool_calls": [], "next_step": "end", "truncated": True}

    logger.info(
        f"Model requested {len(response.tool_calls)} tool calls (step {state.steps + 1}/{run.config.max_step})"
    )
    return {"messages": [assistant], "pending_tool_calls": response.tool_calls, "next_step": "tools"}


async def _stream_response(run: RunContext, history: list[LLMMessage]) -> LLMResponse:
    parts: list[str] = []
    response = LLMResponse(content="")

    async with aclosing(run.backend.stream(history)) as chunks:
        async for chunk in chunks:
            if chunk.content:
                parts.append(chunk.content)
                run.emit(chunk.content)
            if chunk.done:
                response.tool_calls = chunk.tool_calls
                response.usage = chunk.usage

    response.content = "".join(parts)
    return response


async def tools_node(state: AgentState, config: RunnableConfig) -> dict[str, Any]:
    """Run the requested tools in request order and feed results back as observations.

    A failing tool becomes an error observation; the run continues.
    """
    run = get_run_context(config)
    observations: list[LLMMessage] = []
    direct_result: str | None = None

    for call in state.pending_tool_calls:
        record = ToolCallRecord(name=call.name, arguments=call.arguments)
        run.tool_calls.append(record)
        await _dispatch(run, call, record)

        observation = record.result if record.error is None else f"Error: {record.error}"
        observations.append(LLMMessage(role="tool", content=observation, tool_call_id=call.id, name=call.name))

        if record.succeeded and call.name in run.config.return_direct:
            direct_result = record.result

    run.steps = state.steps + 1
    update: dict[str, Any] = {"messages": observations, "pending_tool_calls": [], "steps": run.steps}

    if direct_result is not None:
        logger.info("Returning tool result directly")
        run.answer_directly(direct_result)
        return {**update, "return_direct": True, "next_step": "end"}

    return {**update, "next_step": "agent"}


async def _dispatch(run: RunContext, call: ToolCallRequest, record: ToolCallRecord) -> None:
    tool = run.tools.get(call.name)
    if tool is None:
        logger.warning(f"Model requested unknown tool: {call.name}")
        record.error = f"unknown tool: {call.name}"
        return

    logger.info(f"Calling tool {tool.display_name}")
    logger.debug(f"Tool {call.name} arguments: {call.arguments}")
    try:
        if run.config.tool_timeout:
            result = await asyncio.wait_for(tool.invoke(call.arguments), timeout=run.config.tool_timeout)
        else:
            result = await tool.invoke(call.arguments)
    except TimeoutError:
        record.error = f"tool {call.name} timed out after {run.config.tool_timeout}s"
        logger.warning(record.error)
    except ToolError as e:
        record.error = str(e)
        logger.warning(f"Tool {call.name} failed: {e}")
    else:
        record.result = result
        logger.debug(f"Tool {call.name} succeeded: {result[:100]}...")
