from .run_stats import format_cost, format_elapsed, format_model_name, format_token_count, run_stats_line
from .tool_call import ToolSummary, get_tool_input, get_tool_summary, summarize_tool

__all__ = [
    "ToolSummary",
    "format_cost",
    "format_elapsed",
    "format_model_name",
    "format_token_count",
    "get_tool_input",
    "get_tool_summary",
    "run_stats_line",
    "summarize_tool",
]
