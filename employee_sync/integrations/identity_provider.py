"""
Identity provider gateway with a Keycloak admin REST implementation.

Implements:
- Account create / update / delete / fetch / restore
- Group membership by group name
- Client-credentials admin token, cached until shortly before expiry
- Status classification into the provider error kinds
- Retry with exponential backoff for idempotent reads
"""
import time
from typing import Any, Dict, Optional, Protocol

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from employee_sync.config import Settings, get_settings
from employee_sync.core.exceptions import (
    ExternalProviderError,
    ProviderBadRequestError,
    ProviderConflictError,
    ProviderNotFoundError,
    ProviderTransportError,
)
from employee_sync.core.schemas import CreateEmployeeRequest, UpdateEmployeeRequest
from employee_sync.monitoring import metrics

logger = structlog.get_logger(__name__)

SETUP_ACTIONS = ["UPDATE_PASSWORD", "VERIFY_EMAIL"]

# Refresh the admin token this many seconds before it expires
TOKEN_EXPIRY_MARGIN_SECONDS = 30


class IdentityProviderGateway(Protocol):
    """Operations the sagas need from the external identity provider."""

    async def create(self, profile: CreateEmployeeRequest) -> str:
        """Create an account and return its external id."""
        ...

    async def update(self, account_id: str, profile: UpdateEmployeeRequest) -> None:
        """Overwrite the account's name fields and username."""
        ...

    async def delete(self, account_id: str) -> bool:
        """Remove an account. Never raises; returns False on failure."""
        ...

    async def fetch(self, account_id: str) -> Dict[str, Any]:
        """Return the account's current representation."""
        ...

    async def restore(self, account_id: str, snapshot: Dict[str, Any]) -> None:
        """Write a previously fetched representation back."""
        ...

    async def assign_group(self, account_id: str, group_name: str) -> None:
        """Add the account to the named group."""
        ...

    async def remove_group(self, account_id: str, group_name: str) -> None:
        """Remove the account from the named group."""
        ...


class KeycloakGateway:
    """
    Keycloak admin API client.

    Every call maps the HTTP outcome onto the provider error kinds:
    409 is a conflict, 404 a missing user or group, 400 a rejected request,
    anything else unexpected (including connection failures) a transport
    error.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the gateway.

        Args:
            settings: Application settings (defaults to the cached settings)
            http_client: Client to send requests with; one is created if omitted
        """
        self.settings = settings or get_settings()
        self.http_client = http_client or httpx.AsyncClient(
            timeout=self.settings.keycloak_timeout_seconds
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

        base = self.settings.keycloak_server_url.rstrip("/")
        self.token_url = f"{base}/realms/{self.settings.keycloak_realm}/protocol/openid-connect/token"
        self.users_url = f"{base}/admin/realms/{self.settings.keycloak_realm}/users"
        self.groups_url = f"{base}/admin/realms/{self.settings.keycloak_realm}/groups"

        logger.info(
            "keycloak_gateway_initialized",
            server_url=base,
            realm=self.settings.keycloak_realm,
        )

    async def close(self) -> None:
        await self.http_client.aclose()

    async def _admin_token(self) -> str:
        """Get a cached admin token, requesting a new one when close to expiry."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        try:
            response = await self.http_client.post(
                self.token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.settings.keycloak_client_id,
                    "client_secret": self.settings.keycloak_client_secret,
                },
            )
        except httpx.HTTPError as e:
            raise ProviderTransportError("Keycloak token request failed", original_error=e) from e

        if response.status_code != 200:
            raise ProviderTransportError(
                f"Keycloak token request rejected. Status: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
            token = body["access_token"]
            expires_in = int(body.get("expires_in", 60))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ProviderTransportError(
                "Keycloak token response unreadable", status_code=200, original_error=e
            ) from e

        self._token = token
        self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        return self._token

    async def _request(self, operation: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        token = await self._admin_token()
        headers = {"Authorization": f"Bearer {token}"}
        try:
            return await self.http_client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            metrics.identity_provider_requests_total.labels(
                operation=operation, status="transport_error"
            ).inc()
            logger.error("keycloak_connection_error", operation=operation, error=str(e))
            raise ProviderTransportError("Keycloak connection error", original_error=e) from e

    @staticmethod
    def _classify(operation: str, response: httpx.Response) -> ExternalProviderError:
        """
        Map a non-success response onto a provider error.

        Args:
            operation: Gateway operation name (for logs and metrics)
            response: Failed response

        Returns:
            ExternalProviderError: Error to raise
        """
        status = response.status_code
        if status == 409:
            label = "conflict"
            error: ExternalProviderError = ProviderConflictError(
                "Username or email already exists in Keycloak.", status_code=status
            )
        elif status == 404:
            label = "not_found"
            error = ProviderNotFoundError(
                f"Keycloak resource not found: {response.request.url.path}", status_code=status
            )
        elif status == 400:
            label = "bad_request"
            error = ProviderBadRequestError(
                f"Keycloak validation error: {response.text}", status_code=status
            )
        else:
            label = "transport_error"
            error = ProviderTransportError(
                f"Unexpected Keycloak response. Status: {status}", status_code=status
            )

        metrics.identity_provider_requests_total.labels(operation=operation, status=label).inc()
        logger.error(
            "keycloak_request_failed",
            operation=operation,
            status_code=status,
            body=response.text,
        )
        return error

    @staticmethod
    def _success(operation: str) -> None:
        metrics.identity_provider_requests_total.labels(operation=operation, status="success").inc()

    def _user_representation(self, profile: CreateEmployeeRequest) -> Dict[str, Any]:
        return {
            "username": profile.account_name,
            "email": profile.email,
            "firstName": profile.first_name,
            "lastName": profile.last_name,
            "enabled": True,
            "emailVerified": False,
            "requiredActions": ["UPDATE_PASSWORD"],
            "credentials": [
                {
                    "type": "password",
                    "value": self.settings.keycloak_temporary_password,
                    "temporary": True,
                }
            ],
        }

    async def create(self, profile: CreateEmployeeRequest) -> str:
        """
        Create a Keycloak user with a temporary password.

        Args:
            profile: Employee profile (account name becomes the username)

        Returns:
            str: Keycloak id of the new user, taken from the Location header

        Raises:
            ProviderConflictError: User already exists (409)
            ProviderBadRequestError: Keycloak rejected the representation (400)
            ProviderTransportError: Connection failure or unexpected status
        """
        logger.info("keycloak_user_creating", email=profile.email, username=profile.account_name)

        response = await self._request(
            "create", "POST", self.users_url, json=self._user_representation(profile)
        )
        if response.status_code != 201:
            raise self._classify("create", response)

        location = response.headers.get("Location", "")
        account_id = location.rstrip("/").rsplit("/", 1)[-1]
        if not account_id:
            raise ProviderTransportError(
                "Keycloak created the user but returned no Location header", status_code=201
            )

        self._success("create")
        logger.info("keycloak_user_created", account_id=account_id)

        await self._send_setup_email(account_id)
        return account_id

    async def _send_setup_email(self, account_id: str) -> None:
        """Ask Keycloak to email password-setup and verification links. Best-effort."""
        try:
            response = await self._request(
                "setup_email",
                "PUT",
                f"{self.users_url}/{account_id}/execute-actions-email",
                json=SETUP_ACTIONS,
            )
            if response.status_code >= 300:
                raise self._classify("setup_email", response)
            self._success("setup_email")
            logger.info("keycloak_setup_email_sent", account_id=account_id)
        except ExternalProviderError as e:
            # Account exists; the email can be resent from the admin console
            logger.error("keycloak_setup_email_failed", account_id=account_id, error=str(e))

    @retry(
        retry=retry_if_exception_type(ProviderTransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, max=2),
        reraise=True,
    )
    async def fetch(self, account_id: str) -> Dict[str, Any]:
        """
        Fetch the current user representation.

        Used as the snapshot for update compensation. Safe to retry.

        Raises:
            ExternalProviderError: If the user cannot be read
        """
        response = await self._request("fetch", "GET", f"{self.users_url}/{account_id}")
        if response.status_code != 200:
            raise self._classify("fetch", response)
        self._success("fetch")
        return response.json()

    async def update(self, account_id: str, profile: UpdateEmployeeRequest) -> None:
        """
        Update username and names of an existing user.

        The current representation is read first so unrelated attributes
        are written back unchanged.

        Raises:
            ProviderConflictError: New username or email already taken (409)
            ProviderBadRequestError: Keycloak rejected the values (400)
            ProviderTransportError: Connection failure or unexpected status
        """
        logger.info("keycloak_user_updating", account_id=account_id)

        representation = await self.fetch(account_id)
        representation["username"] = profile.account_name
        representation["firstName"] = profile.first_name
        representation["lastName"] = profile.last_name

        response = await self._request(
            "update", "PUT", f"{self.users_url}/{account_id}", json=representation
        )
        if response.status_code >= 300:
            raise self._classify("update", response)

        self._success("update")
        logger.info("keycloak_user_updated", account_id=account_id)

    async def restore(self, account_id: str, snapshot: Dict[str, Any]) -> None:
        """
        Write a snapshot taken before an update back to Keycloak.

        Raises:
            ExternalProviderError: If Keycloak rejects the write
        """
        logger.warning("keycloak_user_restoring", account_id=account_id)

        response = await self._request(
            "restore", "PUT", f"{self.users_url}/{account_id}", json=snapshot
        )
        if response.status_code >= 300:
            raise self._classify("restore", response)

        self._success("restore")
        logger.info("keycloak_user_restored", account_id=account_id)

    async def delete(self, account_id: str) -> bool:
        """
        Delete a user.

        Never raises so it cannot mask the error that triggered the delete.

        Returns:
            bool: True if Keycloak removed the user
        """
        logger.warning("keycloak_user_deleting", account_id=account_id)
        try:
            response = await self._request("delete", "DELETE", f"{self.users_url}/{account_id}")
            if response.status_code >= 300:
                raise self._classify("delete", response)
        except ExternalProviderError as e:
            logger.error(
                "keycloak_user_delete_failed",
                account_id=account_id,
                error=str(e),
                manual_cleanup_required=True,
            )
            return False

        self._success("delete")
        logger.info("keycloak_user_deleted", account_id=account_id)
        return True

    async def _find_group_id(self, group_name: str) -> str:
        """
        Resolve a group name to its Keycloak id.

        The search endpoint matches substrings, so the exact name is picked
        from the results, ignoring case.

        Raises:
            ProviderNotFoundError: No group with that name exists
        """
        response = await self._request(
            "find_group", "GET", self.groups_url, params={"search": group_name}
        )
        if response.status_code != 200:
            raise self._classify("find_group", response)

        for group in response.json():
            if group.get("name", "").lower() == group_name.lower():
                self._success("find_group")
                return group["id"]

        metrics.identity_provider_requests_total.labels(
            operation="find_group", status="not_found"
        ).inc()
        raise ProviderNotFoundError(f"Group not found in Keycloak: {group_name}")

    async def assign_group(self, account_id: str, group_name: str) -> None:
        """
        Add a user to a group.

        Raises:
            ProviderNotFoundError: Unknown group or user
            ExternalProviderError: Keycloak rejected or failed the call
        """
        logger.info("keycloak_group_assigning", account_id=account_id, group=group_name)

        group_id = await self._find_group_id(group_name)
        response = await self._request(
            "assign_group", "PUT", f"{self.users_url}/{account_id}/groups/{group_id}"
        )
        if response.status_code >= 300:
            raise self._classify("assign_group", response)

        self._success("assign_group")
        logger.info("keycloak_group_assigned", account_id=account_id, group=group_name)

    async def remove_group(self, account_id: str, group_name: str) -> None:
        """
        Remove a user from a group.

        Raises:
            ProviderNotFoundError: Unknown group or user
            ExternalProviderError: Keycloak rejected or failed the call
        """
        logger.info("keycloak_group_removing", account_id=account_id, group=group_name)

        group_id = await self._find_group_id(group_name)
        response = await self._request(
            "remove_group", "DELETE", f"{self.users_url}/{account_id}/groups/{group_id}"
        )
        if response.status_code >= 300:
            raise self._classify("remove_group", response)

        self._success("remove_group")
        logger.info("keycloak_group_removed", account_id=account_id, group=group_name)
