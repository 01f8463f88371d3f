"""Static tool registry consulted by the verifier and the executor.

Tool calls are simulated by the executor model; the registry only tells the
planner what it may ask for and lets the verifier reject unknown names.
"""

from typing import Dict, Iterable, List

from .schemas import ToolSpec


AVAILABLE_TOOLS: List[ToolSpec] = [
    ToolSpec(
        name="web_search",
        description="Search the web for information using a search query",
        parameters={"query": "string", "max_results": "number"},
    ),
    ToolSpec(
        name="fetch_url",
        description="Fetch and extract content from a specific URL",
        parameters={"url": "string"},
    ),
    ToolSpec(
        name="extract_data",
        description="Extract structured data from text",
        parameters={"text": "string", "schema": "object"},
    ),
    ToolSpec(
        name="calculate",
        description="Perform mathematical calculations",
        parameters={"expression": "string"},
    ),
]


def tool_names(tools: Iterable[ToolSpec] = AVAILABLE_TOOLS) -> List[str]:
    return [tool.name for tool in tools]


def tool_index(tools: Iterable[ToolSpec] = AVAILABLE_TOOLS) -> Dict[str, ToolSpec]:
    return {tool.name: tool for tool in tools}
