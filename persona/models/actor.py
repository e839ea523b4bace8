from typing import Optional
from pydantic import ConfigDict

from persona.models.base import CamelModel

ROLES = ("user", "admin", "superadmin")
MODERATOR_ROLES = ("admin", "superadmin")


class Actor(CamelModel):
    """Authenticated caller as handed over by the identity provider."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: str = "user"
    name: str = "User"
    avatar: Optional[str] = None

    @property
    def is_moderator(self) -> bool:
        return self.role in MODERATOR_ROLES
