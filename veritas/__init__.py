"""
Veritas live session assistant package.

Design intent:
- Keep the live decision loop (catalogue/transcript/engine/reducer) importable without the API.
- Treat speech-to-text, language models and speech output as pluggable collaborators.
"""
