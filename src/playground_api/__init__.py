"""Playground API: streaming chat completion relay with conversation history.

This package provides:
- A completion relay that streams upstream replies to the client verbatim
  and persists the assembled assistant message with its token usage
- A conversation store (SQL or in-memory) with starring and forking
- A FastAPI application exposing both

Last Grunted: 10/17/2026 04:45:00 PM UTC
"""

__version__ = "0.1.0"
