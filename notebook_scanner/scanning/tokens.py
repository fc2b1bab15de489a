from __future__ import annotations

import secrets

TOKEN_PREFIX = "QN-"
TOKEN_LENGTH = 10
# Digits and uppercase letters without 0/O/1/I.
TOKEN_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


class TokenService:
    """
    Mints page tokens. Tokens carry no data; the registry is the only way to
    map one back to a page.
    """

    def __init__(self, prefix: str = TOKEN_PREFIX, length: int = TOKEN_LENGTH, alphabet: str = TOKEN_ALPHABET):
        self.prefix = prefix
        self.length = length
        self.alphabet = alphabet

    def generate(self) -> str:
        body = "".join(secrets.choice(self.alphabet) for _ in range(self.length))
        return f"{self.prefix}{body}"

    def is_well_formed(self, token: str) -> bool:
        if not token or not token.startswith(self.prefix):
            return False
        body = token[len(self.prefix):]
        return len(body) == self.length and all(ch in self.alphabet for ch in body)
