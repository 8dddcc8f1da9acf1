"""
HTTP API boundary for the Veritas service.

Design intent:
- Keep handlers thin and typed; delegate to assistant/live modules.
"""
