from typing import TypedDict, Annotated, Optional, List
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, SystemMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool
from langgraph.graph import StateGraph, START, END
from langgraph.graph.message import add_messages
import logging

from services.tool_binding import ToolForcing, tool_choice_for

logger = logging.getLogger(__name__)

# Nodes whose model output is relayed to the client as tokens.
RESPONDING_NODES = ("agent", "respond")

ATTACHMENTS_PREFIX = "Text extracted from files the user attached to this message:\n"
EXTRA_TOOL_CALL_NOTICE = "Skipped: only one web search is allowed per turn."


class State(TypedDict):
    messages: Annotated[list[BaseMessage], add_messages]
    # Per-turn fields below are overwritten by every turn's input and never
    # added to the message history.
    context_block: Optional[str]
    attachments_context: Optional[str]
    system_tip: Optional[str]
    tools_bound: bool
    forcing: str


def build_prompt(state: State) -> List[BaseMessage]:
    """Per-turn system messages followed by the checkpointed conversation."""
    prefix: List[BaseMessage] = []
    if state.get("context_block"):
        prefix.append(SystemMessage(content=state["context_block"]))
    if state.get("system_tip"):
        prefix.append(SystemMessage(content=state["system_tip"]))
    if state.get("attachments_context"):
        prefix.append(SystemMessage(content=ATTACHMENTS_PREFIX + state["attachments_context"]))
    return prefix + list(state["messages"])


def build_chat_graph(model: BaseChatModel, search_tool: BaseTool) -> StateGraph:
    """
    Build the chat graph: agent -> (tools -> respond) -> END.

    With the capability bound, `agent` runs under the turn's forcing policy,
    `tools` executes exactly one search and `respond` answers with tool use
    disabled, which caps capability use at one invocation per turn.
    """

    async def agent(state: State, config: RunnableConfig):
        prompt = build_prompt(state)
        if state.get("tools_bound"):
            forcing = ToolForcing(state.get("forcing") or ToolForcing.FORCED.value)
            runnable = model.bind_tools([search_tool], tool_choice=tool_choice_for(forcing, search_tool.name))
        else:
            runnable = model
        response = await runnable.ainvoke(prompt, config)
        return {"messages": [response]}

    async def tools(state: State, config: RunnableConfig):
        calls = state["messages"][-1].tool_calls
        first, extra = calls[0], calls[1:]
        logger.info(f"Running {search_tool.name} once ({len(extra)} extra calls skipped)")
        result = await search_tool.ainvoke(first["args"], config)
        messages = [ToolMessage(content=str(result), tool_call_id=first["id"], name=search_tool.name)]
        for call in extra:
            messages.append(ToolMessage(content=EXTRA_TOOL_CALL_NOTICE, tool_call_id=call["id"], name=search_tool.name))
        return {"messages": messages}

    async def respond(state: State, config: RunnableConfig):
        runnable = model.bind_tools([search_tool], tool_choice="none")
        response = await runnable.ainvoke(build_prompt(state), config)
        return {"messages": [response]}

    def route_after_agent(state: State) -> str:
        last = state["messages"][-1]
        if state.get("tools_bound") and getattr(last, "tool_calls", None):
            return "tools"
        return END

    return (
        StateGraph(State)
        .add_node("agent", agent)
        .add_node("tools", tools)
        .add_node("respond", respond)
        .add_edge(START, "agent")
        .add_conditional_edges("agent", route_after_agent, ["tools", END])
        .add_edge("tools", "respond")
        .add_edge("respond", END)
    )
