"""Per-turn decision on whether the model gets the web search capability."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ToolForcing(str, Enum):
    NONE = "none"      # no capability bound
    FORCED = "forced"  # the model must call the capability once
    AUTO = "auto"      # the model decides


@dataclass(frozen=True)
class ToolBinding:
    tools_bound: bool
    forcing: ToolForcing


WEB_SEARCH_TIP = (
    "Before answering, use the web_search tool to look up current information for this request. "
    "Base your answer on the results and cite the sources you used as markdown links."
)


class ToolBindingSelector:
    """Map the caller's per-turn flag to a binding and forcing policy."""

    def __init__(self, enabled_forcing: ToolForcing = ToolForcing.FORCED):
        if enabled_forcing == ToolForcing.NONE:
            raise ValueError("enabled_forcing must be 'forced' or 'auto'")
        self.enabled_forcing = ToolForcing(enabled_forcing)

    def select(self, flag: bool) -> ToolBinding:
        if not flag:
            return ToolBinding(tools_bound=False, forcing=ToolForcing.NONE)
        return ToolBinding(tools_bound=True, forcing=self.enabled_forcing)

    @staticmethod
    def system_tip(binding: ToolBinding) -> Optional[str]:
        return WEB_SEARCH_TIP if binding.tools_bound else None


def tool_choice_for(forcing: ToolForcing, tool_name: str) -> Optional[str]:
    """Translate a forcing policy to the chat model's `tool_choice` argument."""
    if forcing == ToolForcing.FORCED:
        return tool_name
    if forcing == ToolForcing.AUTO:
        return "auto"
    return None
