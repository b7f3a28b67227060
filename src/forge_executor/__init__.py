"""
forge-executor - package root.

File: src/forge_executor/__init__.py

Purpose
- Budget-constrained context assembly, a strict edit protocol with atomic
  per-file application, compiler-backed validation and a bounded self-heal loop
  for LLM-driven code modification.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
