from costlens.presentation.formatter import (
    OUTPUT_FORMATS,
    format_cost_results,
    format_history,
    format_plugin_list,
    format_recommendations,
    render_json,
    render_table,
)

__all__ = [
    "OUTPUT_FORMATS",
    "format_cost_results",
    "format_history",
    "format_plugin_list",
    "format_recommendations",
    "render_json",
    "render_table",
]
