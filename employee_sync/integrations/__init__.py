"""External service integrations."""
from employee_sync.integrations.identity_provider import IdentityProviderGateway, KeycloakGateway

__all__ = ["IdentityProviderGateway", "KeycloakGateway"]
