from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from lending.db.models import User


@dataclass(frozen=True)
class Actor:
    """Quién ejecuta la operación. Se pasa explícitamente a cada servicio."""

    user_id: int
    is_admin: bool = False

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, is_admin=bool(user.is_admin))


def get_user(db: Session, user_id: Optional[int]) -> Optional[User]:
    if user_id is None:
        return None
    return db.get(User, user_id)


def resolve_actor(db: Session, user_id: Optional[int]) -> Optional[Actor]:
    """Devuelve el Actor si el usuario existe, None si no."""
    user = get_user(db, user_id)
    if user is None:
        return None
    return Actor.from_user(user)
