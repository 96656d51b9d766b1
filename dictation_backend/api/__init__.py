"""
API orchestration boundary for the dictation backend.

Design intent:
- Expose thin, typed endpoints over the provider registry.
- Map every provider failure to a predictable HTTP status.
"""
