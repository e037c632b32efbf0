"""Orchestrator components.

Provides:
- Settings loaded from .env
- Structured logging
- The relational store, task workflow and scheduler
- A small CLI surface
"""
