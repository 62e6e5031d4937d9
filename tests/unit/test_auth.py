import pytest

from openapi_resource_provider.auth import ApiAuthenticator, bearer_value
from openapi_resource_provider.errors import AuthConfigMissing, AuthRefreshFailed
from openapi_resource_provider.models import API_KEY_HEADER, API_KEY_QUERY, REFRESH_TOKEN, SecurityDefinition
from openapi_resource_provider.provider_config import ProviderConfiguration

URL = "https://api.example.com/v1/cdns"


@pytest.fixture
def definitions():
    return {
        "apikey_auth": SecurityDefinition("apikey_auth", API_KEY_HEADER, "X-API-Key"),
        "bearer_auth": SecurityDefinition("bearer_auth", API_KEY_HEADER, "Authorization", bearer=True),
        "query_auth": SecurityDefinition("query_auth", API_KEY_QUERY, "api_key"),
        "query_bearer": SecurityDefinition("query_bearer", API_KEY_QUERY, "access_token", bearer=True),
        "refresh_auth": SecurityDefinition(
            "refresh_auth", REFRESH_TOKEN, "Authorization", True, "https://auth.example.com/refresh"
        ),
    }


def config(**values):
    return ProviderConfiguration(values)


class TestApiAuthenticator:
    def test_header_api_key(self, definitions):
        authenticator = ApiAuthenticator(definitions, [{"apikey_auth": []}])

        context = authenticator.prepare_auth("create", URL, None, config(apikey_auth="secret"))

        assert context.headers == {"X-API-Key": "secret"}
        assert context.url == URL

    def test_bearer_header_adds_scheme_once(self, definitions):
        authenticator = ApiAuthenticator(definitions, [{"bearer_auth": []}])

        plain = authenticator.prepare_auth("op", URL, None, config(bearer_auth="token"))
        prefixed = authenticator.prepare_auth("op", URL, None, config(bearer_auth="Bearer token"))

        assert plain.headers["Authorization"] == "Bearer token"
        assert prefixed.headers["Authorization"] == "Bearer token"

    def test_query_api_key_is_appended_and_marked_secret(self, definitions):
        authenticator = ApiAuthenticator(definitions, [{"query_auth": []}])

        context = authenticator.prepare_auth("op", f"{URL}?page=2", None, config(query_auth="secret"))

        assert context.url == f"{URL}?page=2&api_key=secret"
        assert context.secret_query_params == ["api_key"]
        assert context.headers == {}

    def test_query_bearer_uses_access_token_parameter(self, definitions):
        authenticator = ApiAuthenticator(definitions, [{"query_bearer": []}])

        context = authenticator.prepare_auth("op", URL, None, config(query_bearer="token"))

        assert context.url == f"{URL}?access_token=Bearer+token"

    def test_operation_security_overrides_global(self, definitions):
        authenticator = ApiAuthenticator(definitions, [{"apikey_auth": []}])

        context = authenticator.prepare_auth(
            "op", URL, ({"query_auth": []},), config(apikey_auth="global", query_auth="local")
        )

        assert "X-API-Key" not in context.headers
        assert context.url.endswith("api_key=local")

    def test_only_first_requirement_applies_but_all_its_policies(self, definitions):
        authenticator = ApiAuthenticator(definitions)
        security = ({"apikey_auth": [], "query_auth": []}, {"bearer_auth": []})

        context = authenticator.prepare_auth(
            "op", URL, security, config(apikey_auth="a", query_auth="q", bearer_auth="b")
        )

        assert context.headers == {"X-API-Key": "a"}
        assert context.url.endswith("api_key=q")

    def test_no_security_means_no_credentials(self, definitions):
        context = ApiAuthenticator(definitions).prepare_auth("op", URL, None, config())

        assert context.headers == {} and context.url == URL

    def test_missing_value_is_reported_with_request(self, definitions):
        authenticator = ApiAuthenticator(definitions, [{"apikey_auth": []}])

        with pytest.raises(AuthConfigMissing) as exc_info:
            authenticator.prepare_auth("op", URL, None, config(), method="POST")

        assert exc_info.value.method == "POST"
        assert exc_info.value.url == URL
        assert "apikey_auth" in str(exc_info.value)

    def test_undefined_policy_is_reported(self, definitions):
        authenticator = ApiAuthenticator(definitions)

        with pytest.raises(AuthConfigMissing):
            authenticator.prepare_auth("op", URL, ({"unknown": []},), config())


class TestRefreshToken:
    def test_exchanges_refresh_token_for_access_token(self, definitions, http_client):
        # Arrange
        http_client.queue(200, headers={"Authorization": "Bearer access"})
        authenticator = ApiAuthenticator(definitions, [{"refresh_auth": []}], http_client)

        # Act
        context = authenticator.prepare_auth("op", URL, None, config(refresh_auth="refresh"))

        # Assert
        assert context.headers["Authorization"] == "Bearer access"
        call = http_client.calls[0]
        assert call["method"] == "GET"
        assert call["url"] == "https://auth.example.com/refresh"
        assert call["headers"]["Authorization"] == "Bearer refresh"

    def test_failed_exchange_raises(self, definitions, http_client):
        http_client.queue(401)
        authenticator = ApiAuthenticator(definitions, [{"refresh_auth": []}], http_client)

        with pytest.raises(AuthRefreshFailed):
            authenticator.prepare_auth("op", URL, None, config(refresh_auth="refresh"))

    def test_missing_access_token_header_raises(self, definitions, http_client):
        http_client.queue(200)
        authenticator = ApiAuthenticator(definitions, [{"refresh_auth": []}], http_client)

        with pytest.raises(AuthRefreshFailed):
            authenticator.prepare_auth("op", URL, None, config(refresh_auth="refresh"))


def test_bearer_value():
    assert bearer_value("abc") == "Bearer abc"
    assert bearer_value("Bearer abc") == "Bearer abc"
