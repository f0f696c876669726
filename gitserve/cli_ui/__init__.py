"""Terminal rendering for gitserve commands."""

from gitserve.cli_ui.instance_table import InstanceTableRenderer, render_stop_summary

__all__ = [
    "InstanceTableRenderer",
    "render_stop_summary",
]
