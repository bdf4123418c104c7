"""Kernel utilities shared across the ticket engine.

Rules:
- Kernel code must not import from presentation layers (e.g. FastAPI routes).
- Kernel utilities stay small and stable; no ticket business logic here.
"""
