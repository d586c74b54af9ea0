"""Actor identity passed in by the authenticated caller, and the forbid helper"""

import enum
from dataclasses import dataclass

from errors import ForbiddenError


class Role(enum.Enum):
    CLIENT = 'CLIENT'
    FREELANCER = 'FREELANCER'
    ADMIN = 'ADMIN'


@dataclass(frozen=True)
class Actor:
    id: int
    role: Role

    @property
    def is_admin(self):
        return self.role == Role.ADMIN

    @classmethod
    def from_session(cls, user_id, role):
        return cls(id=int(user_id), role=Role(str(role).upper()))


def require(allowed, message):
    """Raise ForbiddenError unless a capability check passed"""
    if not allowed:
        raise ForbiddenError(message)
