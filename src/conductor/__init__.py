"""Conductor - execution orchestration for LLM-backed agents."""

__version__ = "0.1.0"
