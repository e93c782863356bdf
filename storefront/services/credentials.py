"""
CredentialStore - role-scoped bearer tokens and their user records.

Two slots coexist in storage, one per role:
- admin:    ``token`` / ``user``
- customer: ``customerToken`` / ``customerUser``
"""

import json
from enum import Enum

from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from storefront.datastore import KeyValueStore


class Role(str, Enum):
    """Credential slots."""

    ADMIN = "admin"
    CUSTOMER = "customer"


class UserRecord(BaseModel):
    """User record returned by the backend on login."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str | None = Field(default=None, validation_alias=AliasChoices("id", "_id"))
    role: str = "user"
    name: str | None = None
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class Credential(BaseModel):
    """A bearer token plus the user it belongs to, stored in a role slot."""

    role: Role
    token: str
    subject: UserRecord


SLOT_KEYS: dict[Role, tuple[str, str]] = {
    Role.ADMIN: ("token", "user"),
    Role.CUSTOMER: ("customerToken", "customerUser"),
}


class CredentialStore:
    """Reads and writes credential slots on a KeyValueStore."""

    def __init__(self, storage: KeyValueStore):
        self._storage = storage

    async def load(self, role: Role) -> Credential | None:
        """Return the credential in ``role``'s slot, or None if absent or malformed."""
        token_key, user_key = SLOT_KEYS[role]
        token = await self._storage.get(token_key)
        raw_user = await self._storage.get(user_key)
        if not token or not raw_user:
            return None

        try:
            subject = UserRecord.model_validate(json.loads(raw_user))
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.warning(f"Error parsing {role.value} user data: {e}")
            return None

        return Credential(role=role, token=token, subject=subject)

    async def load_token(self, role: Role) -> str | None:
        """Raw token in ``role``'s slot, regardless of the user record."""
        return await self._storage.get(SLOT_KEYS[role][0])

    async def save(self, credential: Credential) -> None:
        token_key, user_key = SLOT_KEYS[credential.role]
        await self._storage.set(token_key, credential.token)
        await self._storage.set(
            user_key, credential.subject.model_dump_json(exclude_none=True)
        )

    async def update_token(self, role: Role, token: str) -> None:
        await self._storage.set(SLOT_KEYS[role][0], token)

    async def clear(self, role: Role) -> None:
        for key in SLOT_KEYS[role]:
            await self._storage.delete(key)

    async def clear_all(self) -> None:
        """Remove both slots."""
        for role in Role:
            await self.clear(role)
        logger.debug("Cleared all stored credentials")
