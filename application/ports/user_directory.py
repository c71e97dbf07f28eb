"""User lookup port; the user store belongs to the auth system."""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from application.dtos.payments import UserRef


@runtime_checkable
class UserDirectory(Protocol):
    async def get_user(self, user_id: int) -> Optional[UserRef]: ...
