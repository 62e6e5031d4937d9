import copy
import json

import pytest

from openapi_resource_provider.auth import ApiAuthenticator
from openapi_resource_provider.client import OpenAPIClient
from openapi_resource_provider.http_client import HttpClient, HttpResponse
from openapi_resource_provider.provider_config import ProviderConfiguration


def _response(status_code, body=None, headers=None):
    raw = b"" if body is None else json.dumps(body).encode()
    return HttpResponse(status_code=status_code, headers=dict(headers or {}), body=raw)


class RecordingHttpClient(HttpClient):
    """Replays queued responses and records every request made through it."""

    def __init__(self, responses=()):
        super().__init__()
        self.responses = list(responses)
        self.calls = []

    def queue(self, status_code, body=None, headers=None):
        self.responses.append(_response(status_code, body, headers))
        return self

    def request(self, method, url, headers=None, payload=None, secret_query_params=(), timeout=None):
        self.calls.append(
            {"method": method, "url": url, "headers": dict(headers or {}), "payload": payload}
        )
        if not self.responses:
            raise AssertionError(f"unexpected request: {method} {url}")
        return self.responses.pop(0)


@pytest.fixture
def make_response():
    """Builds an HttpResponse with a JSON body."""
    return _response


@pytest.fixture
def http_client():
    return RecordingHttpClient()


CDN_DOCUMENT = {
    "swagger": "2.0",
    "host": "api.example.com",
    "schemes": ["https"],
    "paths": {
        "/v1/cdns": {
            "post": {
                "operationId": "ContentDeliveryNetworkCreateV1",
                "parameters": [
                    {
                        "in": "body",
                        "name": "ContentDeliveryNetwork",
                        "required": True,
                        "schema": {"$ref": "#/definitions/ContentDeliveryNetwork"},
                    }
                ],
                "responses": {
                    "201": {"schema": {"$ref": "#/definitions/ContentDeliveryNetwork"}}
                },
            }
        },
        "/v1/cdns/{id}": {
            "get": {
                "operationId": "ContentDeliveryNetworkGetV1",
                "parameters": [{"in": "path", "name": "id", "type": "string", "required": True}],
                "responses": {
                    "200": {"schema": {"$ref": "#/definitions/ContentDeliveryNetwork"}}
                },
            },
            "put": {
                "operationId": "ContentDeliveryNetworkUpdateV1",
                "parameters": [
                    {"in": "path", "name": "id", "type": "string", "required": True},
                    {
                        "in": "body",
                        "name": "ContentDeliveryNetwork",
                        "schema": {"$ref": "#/definitions/ContentDeliveryNetwork"},
                    },
                ],
                "responses": {
                    "200": {"schema": {"$ref": "#/definitions/ContentDeliveryNetwork"}}
                },
            },
            "delete": {
                "operationId": "ContentDeliveryNetworkDeleteV1",
                "parameters": [{"in": "path", "name": "id", "type": "string", "required": True}],
                "responses": {"204": {"description": "deleted"}},
            },
        },
    },
    "definitions": {
        "ContentDeliveryNetwork": {
            "type": "object",
            "required": ["label"],
            "properties": {
                "id": {"type": "string", "readOnly": True},
                "label": {"type": "string"},
            },
        }
    },
}


@pytest.fixture
def cdn_document():
    """A fresh copy of a minimal CDN document for each test."""
    return copy.deepcopy(CDN_DOCUMENT)


@pytest.fixture
def make_client():
    """Builds an OpenAPIClient over an analysed document and a recording HTTP client."""

    def build(analyser, http_client, values=None, endpoints=None):
        authenticator = ApiAuthenticator(
            analyser.security_definitions(), analyser.global_security(), http_client
        )
        provider_config = ProviderConfiguration(dict(values or {}), endpoints)
        return OpenAPIClient(
            analyser.backend_configuration(), authenticator, provider_config, http_client
        )

    return build


@pytest.fixture
def firewall_document():
    """A document with a firewall sub-resource nested under a CDN."""
    schema = {
        "type": "object",
        "required": ["label"],
        "properties": {"id": {"type": "string", "readOnly": True}, "label": {"type": "string"}},
    }
    return {
        "swagger": "2.0",
        "host": "api.example.com",
        "paths": {
            "/v1/cdns/{parent_id}/v1/firewalls": {
                "post": {
                    "parameters": [{"in": "body", "name": "body", "schema": {"$ref": "#/definitions/Firewall"}}],
                    "responses": {"201": {"schema": {"$ref": "#/definitions/Firewall"}}},
                }
            },
            "/v1/cdns/{parent_id}/v1/firewalls/{id}": {
                "get": {"responses": {"200": {"schema": {"$ref": "#/definitions/Firewall"}}}},
                "delete": {"responses": {"204": {}}},
            },
        },
        "definitions": {"Firewall": schema},
    }
