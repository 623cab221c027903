"""Sharad — narrative/state orchestration core for model-driven interactive fiction.

A language model narrates; structured function calls embedded in its text
are parsed, validated against a schema registry and committed atomically to
a canonical game state. See orchestrator.Session for the turn loop.
"""

__version__ = "0.1.0"
