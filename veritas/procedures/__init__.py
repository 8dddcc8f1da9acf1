"""
Procedure catalogue boundary.

Design intent:
- Single source of truth for procedure step lists and expected durations.
- Injected as a read-only repository so tests can substitute fixtures.
"""
