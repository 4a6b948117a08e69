"""
shared/actor.py
The authenticated caller every service operation acts on behalf of.
"""

import uuid
from dataclasses import dataclass, field
from typing import Iterable, Optional

from shared.models.models import UserRole


@dataclass(frozen=True)
class Actor:
    user_id: Optional[uuid.UUID]
    roles: frozenset = field(default_factory=frozenset)

    @classmethod
    def of(cls, user_id: Optional[uuid.UUID], roles: Iterable[UserRole]) -> "Actor":
        return cls(user_id=user_id, roles=frozenset(UserRole(r) for r in roles))

    @classmethod
    def system(cls, user_id: Optional[uuid.UUID] = None) -> "Actor":
        """Admin actor used by scheduled jobs."""
        return cls(user_id=user_id, roles=frozenset({UserRole.ADMIN}))

    @property
    def is_admin(self) -> bool:
        return UserRole.ADMIN in self.roles

    @property
    def is_professional(self) -> bool:
        return UserRole.PROFESSIONAL in self.roles

    @property
    def label(self) -> str:
        """Identifier written into audit metadata."""
        return str(self.user_id) if self.user_id else "system"
