"""
Shared Kernel Module
====================

This module contains shared infrastructure used across bounded contexts
(currently only FinOps monitoring).

Architecture Pattern: Modular Monolith
- Each module (finops) is a bounded context
- Shared kernel contains only generic infrastructure

DO NOT add FinOps business logic to the shared kernel.
"""

__version__ = "1.0.0"
