"""
Authenticated caller derived from a verified bearer token.

Never persisted; rebuilt from token claims (or the short-lived role cache)
on every request.
"""
from dataclasses import dataclass, field
from typing import FrozenSet


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: str
    roles: FrozenSet[str] = field(default_factory=frozenset)
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def grants(self) -> FrozenSet[str]:
        return self.roles | self.permissions

    def has_any(self, required: FrozenSet[str]) -> bool:
        return not required or bool(self.grants & required)
