"""
Authentication of outgoing requests.

`ApiAuthenticator.prepare_auth` picks the security requirements that apply to
an operation and lets one authenticator per security definition decorate the
request's `AuthContext`.
"""

import logging
from typing import Any, Dict, Optional, Sequence
from urllib.parse import urlencode, urlsplit

from .errors import AuthConfigMissing, AuthRefreshFailed, HttpTransportError
from .http_client import HttpClient
from .models import (
    API_KEY_HEADER,
    API_KEY_QUERY,
    REFRESH_TOKEN,
    AuthContext,
    SecurityDefinition,
)

logger = logging.getLogger(__name__)

AUTHORIZATION_HEADER = "Authorization"
BEARER_SCHEME = "Bearer"


def bearer_value(value: str) -> str:
    if value.startswith(f"{BEARER_SCHEME} "):
        return value
    return f"{BEARER_SCHEME} {value}"


class BaseAuthenticator:
    """Decorates an AuthContext with the credential of one security definition."""

    def __init__(self, definition: SecurityDefinition, value: str):
        self.definition = definition
        self.value = value

    def build_value(self) -> str:
        return bearer_value(self.value) if self.definition.bearer else self.value

    def prepare(self, context: AuthContext, method: str):
        raise NotImplementedError


class ApiKeyHeaderAuthenticator(BaseAuthenticator):
    def prepare(self, context: AuthContext, method: str):
        context.headers[self.definition.parameter_name] = self.build_value()


class ApiKeyQueryAuthenticator(BaseAuthenticator):
    def prepare(self, context: AuthContext, method: str):
        separator = "&" if urlsplit(context.url).query else "?"
        query = urlencode({self.definition.parameter_name: self.build_value()})
        context.url = f"{context.url}{separator}{query}"
        context.secret_query_params.append(self.definition.parameter_name)


class RefreshTokenAuthenticator(BaseAuthenticator):
    """
    Exchanges the configured refresh token for an access token before each
    call. The refresh endpoint is expected to return the access token in its
    Authorization response header.
    """

    def __init__(
        self, definition: SecurityDefinition, value: str, http_client: HttpClient
    ):
        super().__init__(definition, value)
        self.http_client = http_client

    def prepare(self, context: AuthContext, method: str):
        refresh_url = self.definition.refresh_url
        try:
            response = self.http_client.get(
                refresh_url, headers={AUTHORIZATION_HEADER: bearer_value(self.value)}
            )
        except HttpTransportError as e:
            raise AuthRefreshFailed(
                f"refresh token exchange failed: {e.message}",
                method="GET",
                url=refresh_url,
            ) from e
        if response.status_code not in (200, 201, 204):
            raise AuthRefreshFailed(
                f"refresh token exchange returned HTTP {response.status_code}",
                method="GET",
                url=refresh_url,
            )
        access_token = response.header(AUTHORIZATION_HEADER)
        if not access_token:
            raise AuthRefreshFailed(
                "refresh token response is missing the access token",
                method="GET",
                url=refresh_url,
            )
        logger.debug("Exchanged refresh token for an access token at '%s'", refresh_url)
        context.headers[AUTHORIZATION_HEADER] = access_token


class ApiAuthenticator:
    """
    Resolves the security requirements of an operation against the provider
    configuration.

    When an operation declares a non-empty security list, only its first entry
    applies; the policies named inside that entry are all applied. Otherwise
    the first entry of the document's global security applies.
    """

    def __init__(
        self,
        security_definitions: Dict[str, SecurityDefinition],
        global_security: Sequence[Dict[str, Any]] = (),
        http_client: Optional[HttpClient] = None,
    ):
        self.security_definitions = security_definitions
        self.global_security = tuple(global_security or ())
        self.http_client = http_client or HttpClient()

    def required_policies(self, url: str, op_security) -> Sequence[str]:
        if op_security:
            logger.debug(
                "Operation security found for '%s', overriding global security: %s",
                url,
                op_security[0],
            )
            return list(op_security[0])
        if self.global_security:
            logger.debug(
                "Using global security for '%s': %s", url, self.global_security[0]
            )
            return list(self.global_security[0])
        return []

    def authenticator_for(self, name: str, provider_config) -> BaseAuthenticator:
        definition = self.security_definitions.get(name)
        if definition is None:
            raise AuthConfigMissing(
                f"operation's security policy '{name}' is not defined, please make "
                "sure the document contains a security definition named "
                f"'{name}' under the securityDefinitions section"
            )
        value = provider_config.security_value(definition.terraform_name)
        if value is None or value == "":
            raise AuthConfigMissing(
                f"security policy '{name}' requires the provider field "
                f"'{definition.terraform_name}' to be configured"
            )
        if definition.kind == REFRESH_TOKEN:
            return RefreshTokenAuthenticator(definition, value, self.http_client)
        if definition.kind == API_KEY_QUERY:
            return ApiKeyQueryAuthenticator(definition, value)
        if definition.kind == API_KEY_HEADER:
            return ApiKeyHeaderAuthenticator(definition, value)
        raise AuthConfigMissing(
            f"security definition '{name}' has unsupported kind '{definition.kind}'"
        )

    def prepare_auth(
        self, op_id: str, url: str, op_security, provider_config, method: str = ""
    ) -> AuthContext:
        """
        Builds the AuthContext of one request.

        Raises:
            AuthConfigMissing: A required policy has no definition or no value.
            AuthRefreshFailed: A refresh-token exchange failed.
        """
        context = AuthContext(url=url)
        for name in self.required_policies(url, op_security):
            try:
                authenticator = self.authenticator_for(name, provider_config)
            except AuthConfigMissing as e:
                raise AuthConfigMissing(e.message, method=method, url=url) from e
            authenticator.prepare(context, method)
        logger.debug("Prepared authentication for operation '%s'", op_id)
        return context
