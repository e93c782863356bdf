"""
TokenResolver - picks the credential to attach to an outgoing request.

Admin-scoped endpoints only ever get a credential whose user has role
"admin" (from the admin slot, or from the customer slot when an admin signed
in through the customer flow). Other endpoints get the slot preferred by the
page context, falling back to the other slot.
"""

from loguru import logger

from storefront.services.credentials import Credential, CredentialStore, Role
from storefront.utils import is_admin_context


class TokenResolver:
    def __init__(
        self,
        credentials: CredentialStore,
        admin_page_patterns: list[str],
        admin_route_prefix: str = "/admin/",
    ):
        self._credentials = credentials
        self._admin_page_patterns = admin_page_patterns
        self._admin_route_prefix = admin_route_prefix

    def is_admin_endpoint(self, endpoint: str) -> bool:
        return endpoint.startswith(self._admin_route_prefix)

    def is_admin_context(self, page_context: str | None) -> bool:
        return is_admin_context(page_context, self._admin_page_patterns)

    async def resolve_credential(
        self, endpoint: str, page_context: str | None
    ) -> Credential | None:
        """Return the credential for ``endpoint`` or None (unauthenticated)."""
        try:
            if self.is_admin_endpoint(endpoint):
                return await self._resolve_admin()
            if self.is_admin_context(page_context):
                order = (Role.ADMIN, Role.CUSTOMER)
            else:
                order = (Role.CUSTOMER, Role.ADMIN)
            for role in order:
                credential = await self._load_any(role)
                if credential is not None:
                    return credential
        except Exception as e:
            logger.warning(f"Credential resolution failed for {endpoint}: {e}")
        return None

    async def _resolve_admin(self) -> Credential | None:
        admin = await self._credentials.load(Role.ADMIN)
        if admin is not None and admin.subject.is_admin:
            return admin

        customer = await self._credentials.load(Role.CUSTOMER)
        if customer is not None and customer.subject.is_admin:
            return customer

        # No admin-capable credential; backend rejects with 401/403
        return None

    async def _load_any(self, role: Role) -> Credential | None:
        credential = await self._credentials.load(role)
        if credential is not None:
            return credential

        # A bare token without a readable user record still authenticates
        token = await self._credentials.load_token(role)
        if token:
            return Credential.model_validate(
                {"role": role, "token": token, "subject": {}}
            )
        return None
