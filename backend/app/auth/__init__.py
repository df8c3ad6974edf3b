"""External collaborators for the chat core.

Modules:
    - identity: resolves the authenticated display name and last room of a
      request or WebSocket.
    - passwords: hashes and verifies room secrets (passlib).
"""
