"""Room secret hashing.

Secrets are never stored in cleartext: each one is peppered with the
configured ``password_pepper`` and hashed with passlib (salted
``pbkdf2_sha256`` by default). Hashing is CPU-bound, so the async helpers
run it in a worker thread to keep the event loop responsive.
"""
import asyncio
import logging

from passlib.context import CryptContext

logger = logging.getLogger(__name__)


class PasswordHasher:
    """Hash and verify room secrets.

    Args:
        scheme: passlib scheme name.
        pepper: Server-side secret appended to every room secret.
    """

    def __init__(self, scheme: str = "pbkdf2_sha256", pepper: str = "") -> None:
        self._context = CryptContext(schemes=[scheme], deprecated="auto")
        self._pepper = pepper

    def hash(self, secret: str) -> str:
        return self._context.hash(secret + self._pepper)

    def verify(self, secret: str, hashed: str) -> bool:
        """Compare a secret with a stored hash. Unknown hash formats fail closed."""
        try:
            return self._context.verify(secret + self._pepper, hashed)
        except (ValueError, TypeError) as e:
            logger.warning(f"[Auth] Could not verify room secret: {e}")
            return False

    async def hash_async(self, secret: str) -> str:
        return await asyncio.to_thread(self.hash, secret)

    async def verify_async(self, secret: str, hashed: str) -> bool:
        return await asyncio.to_thread(self.verify, secret, hashed)
