"""
Transcript module boundary for the live assistant.

Design intent:
- Hold speaker-tagged utterances for prompting and end-of-session analysis.
- Keep interim recognition churn out of the decision loop.
"""
