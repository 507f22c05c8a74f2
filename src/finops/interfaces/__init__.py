"""
FinOps Interfaces Layer
=======================

Interface adapters (controllers) for the FinOps monitoring module.

Contains:
- Controllers: FastAPI route handlers

This is the outermost layer - handles HTTP requests/responses and
delegates to application services.
"""

from finops.interfaces.controllers import build_monitor, finops_router

__all__ = ["build_monitor", "finops_router"]
