from __future__ import annotations

import hashlib
import hmac
from typing import Iterable, Optional, Set

from .config import COMMON_PASSWORDS, breach_hash_salt


class BreachCredentialStore:
    """Set of salted email digests known from credential breaches.

    Emails are normalised (trimmed, lower-cased) and stored as HMAC-SHA256
    digests so the raw addresses never sit in memory.
    """

    def __init__(
        self,
        salt: Optional[str] = None,
        common_passwords: Iterable[str] = COMMON_PASSWORDS,
    ):
        self._salt = (salt if salt is not None else breach_hash_salt()).encode()
        self._breached: Set[str] = set()
        self.common_passwords = frozenset(password.lower() for password in common_passwords)

    def hash_email(self, email: str) -> str:
        normalized = email.strip().lower().encode()
        return hmac.new(self._salt, normalized, hashlib.sha256).hexdigest()

    def add_breached_email(self, email: str) -> None:
        self._breached.add(self.hash_email(email))

    def load_digests(self, digests: Iterable[str]) -> None:
        self._breached.update(digests)

    def is_breached(self, email: str) -> bool:
        return self.hash_email(email) in self._breached

    def is_common_password(self, password: str) -> bool:
        return password.lower() in self.common_passwords

    def __len__(self) -> int:
        return len(self._breached)
