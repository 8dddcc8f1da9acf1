"""
Live session runner boundary.

Design intent:
- One session, one state, one writer at a time.
- Late results for ended sessions are dropped, never applied.
"""
