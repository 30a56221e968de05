"""
Command-line interface for the pediatric RAG engine.
"""

from .interactive import main, interactive_main, process_query_with_monitor

__all__ = [
    "main",
    "interactive_main",
    "process_query_with_monitor",
]
