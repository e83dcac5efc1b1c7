"""
provswitch - provider switcher for AI command-line tools

Keeps saved provider profiles for Claude Code, Codex and Gemini CLI, measures
the latency of their candidate endpoints and writes the chosen one back into
each tool's own configuration format.

Quick Start:
    pip install -e .
    provswitch providers list
    provswitch speedtest my-provider --apply
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
