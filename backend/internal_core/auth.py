from __future__ import annotations

import hmac
from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional

from .errors import Unauthorized


class TokenResolver(ABC):
    @abstractmethod
    def resolve(self, token: str) -> str:
        """Return the owner id for `token` or raise `Unauthorized`."""


def parse_token_table(raw: str) -> Dict[str, str]:
    """Parse `token:owner,token2:owner2` into a lookup table."""
    table: Dict[str, str] = {}
    for item in (raw or "").split(","):
        item = item.strip()
        if not item:
            continue
        token, sep, owner = item.partition(":")
        token, owner = token.strip(), owner.strip()
        if not sep or not token or not owner:
            raise ValueError(f"Invalid SCRIBE_AUTH_TOKENS entry: {item!r}")
        table[token] = owner
    return table


class StaticTokenResolver(TokenResolver):
    def __init__(self, tokens: Mapping[str, str]):
        self._tokens = dict(tokens)

    def resolve(self, token: str) -> str:
        candidate = (token or "").strip()
        if not candidate:
            raise Unauthorized("No token provided")
        for known, owner in self._tokens.items():
            if hmac.compare_digest(known.encode("utf-8"), candidate.encode("utf-8")):
                return owner
        raise Unauthorized("Token is not valid or expired")


def bearer_token(authorization: Optional[str]) -> str:
    scheme, _, value = (authorization or "").strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        raise Unauthorized("No token provided")
    return value.strip()
