"""
Dictation backend package.

Design intent:
- Keep speech-to-text engines behind one provider contract with an explicit model lifecycle.
- Keep the HTTP surface thin; providers are owned by a registry, not module globals.
"""
