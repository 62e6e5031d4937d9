"""
Exception hierarchy raised by the provider.

Errors raised while talking to the API carry the HTTP method and the target URL
so callers can report which request failed. Query-string credentials are masked
before the URL is stored on the exception.
"""

from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .helpers import REDACTED


def redact_url(url: Optional[str], secret_params=()) -> Optional[str]:
    """Masks the values of the given query parameters in `url`."""
    if not url or not secret_params:
        return url
    parts = urlsplit(url)
    if not parts.query:
        return url
    query = [
        (key, REDACTED if key in secret_params else value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(query, safe="*")))


class OpenAPIProviderError(Exception):
    """Base class for every error raised by this package."""


class SpecLoadError(OpenAPIProviderError):
    """The OpenAPI document could not be fetched or parsed."""


class UnsupportedSpec(OpenAPIProviderError):
    """The document is not a Swagger 2.0 document."""


class InvalidResource(OpenAPIProviderError):
    """A path looks like a resource but its operations are malformed."""


class MissingIdentifier(InvalidResource):
    """A resource schema has neither an 'id' nor an 'x-terraform-id' property."""


class InvalidSchema(OpenAPIProviderError):
    """A schema definition violates the property attribute rules."""


class ConfigLoadError(OpenAPIProviderError):
    """The plugin configuration file is missing, unreadable or invalid."""


class SecretResolutionError(ConfigLoadError):
    """An external configuration file could not provide the requested value."""


class InvalidConfiguration(OpenAPIProviderError):
    """User-supplied resource or provider values do not fit the schema."""


class UnsupportedOp(OpenAPIProviderError):
    """The resource does not declare the operation being invoked."""


class OperationCancelled(OpenAPIProviderError):
    """The host cancelled a lifecycle call while it was waiting."""


class RequestError(OpenAPIProviderError):
    """Base class for errors tied to a specific HTTP request."""

    def __init__(self, message: str, method: str = "", url: str = ""):
        self.method = method
        self.url = url
        prefix = f"{method} {url}: " if method or url else ""
        super().__init__(f"{prefix}{message}")
        self.message = message


class AuthError(RequestError):
    """Base class for authentication failures."""


class AuthConfigMissing(AuthError):
    """A security scheme required by the operation has no configured value."""


class AuthRefreshFailed(AuthError):
    """The refresh token could not be exchanged for an access token."""


class HttpTransportError(RequestError):
    """The request never produced an HTTP response."""


class UnexpectedStatus(RequestError):
    """The API answered with a status code the operation does not accept."""

    def __init__(
        self,
        status_code: int,
        method: str = "",
        url: str = "",
        body: Optional[str] = None,
        expected=(),
    ):
        self.status_code = status_code
        self.body = body
        self.expected = tuple(expected)
        if status_code == 401:
            message = (
                f"HTTP Response Status Code {status_code} - Unauthorized: API access "
                "is denied due to invalid credentials"
            )
        else:
            message = (
                f"HTTP Response Status Code {status_code} not matching "
                f"expected one {list(self.expected)}"
            )
        if body:
            message = f"{message} ({body})"
        super().__init__(message, method=method, url=url)


class ResourceGone(UnexpectedStatus):
    """The resource no longer exists on the API (404)."""

    def __init__(self, method: str = "", url: str = "", body: Optional[str] = None):
        super().__init__(404, method=method, url=url, body=body, expected=(200,))


class ImmutableViolation(OpenAPIProviderError):
    """An update tried to change a property that may not change after create."""

    def __init__(
        self, resource_name: str, property_name: str, remote_value, local_value
    ):
        self.resource_name = resource_name
        self.property_name = property_name
        self.remote_value = remote_value
        self.local_value = local_value
        super().__init__(
            f"[resource='{resource_name}'] property '{property_name}' is immutable and "
            "therefore can not be updated. Update operation was aborted; no updates "
            f"were performed (remote value '{remote_value}', "
            f"requested value '{local_value}')"
        )


class AsyncError(OpenAPIProviderError):
    """Base class for failures while waiting on an asynchronous operation."""

    def __init__(self, message: str, last_status: Optional[str] = None):
        self.last_status = last_status
        super().__init__(message)


class AsyncTimeout(AsyncError):
    """The resource did not reach a completion status before the deadline."""


class AsyncFailed(AsyncError):
    """The resource reached a declared failure status or an unknown one."""
