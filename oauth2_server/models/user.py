from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID, uuid4


@dataclass(frozen=True, slots=True)
class User:
    id: UUID
    username: str
    password_hash: str
    is_active: bool = True

    @staticmethod
    def new(*, username: str, password_hash: str) -> User:
        return User(
            id=uuid4(),
            username=username.strip().lower(),
            password_hash=password_hash,
            is_active=True,
        )
