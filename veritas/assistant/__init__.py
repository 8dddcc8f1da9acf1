"""
Decision engine module boundary.

Design intent:
- Pull every safety-relevant rule into deterministic code around the model call.
- Fail silent: any internal failure degrades to a NONE action.
"""
