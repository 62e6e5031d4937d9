import copy
from unittest.mock import patch

import pytest

from openapi_resource_provider.api_parser import (
    ApiSpecAnalyser,
    parse_timeout,
    resource_name_from_path,
)
from openapi_resource_provider.errors import InvalidResource, SpecLoadError, UnsupportedSpec
from openapi_resource_provider.models import API_KEY_HEADER, API_KEY_QUERY, REFRESH_TOKEN


def monitors_document(**root_extensions):
    document = {
        "swagger": "2.0",
        "host": "api.example.com",
        "paths": {
            "/v1/monitors": {
                "post": {
                    "parameters": [
                        {
                            "in": "body",
                            "name": "body",
                            "schema": {
                                "type": "object",
                                "properties": {"id": {"type": "string", "readOnly": True}, "name": {"type": "string"}},
                            },
                        }
                    ],
                    "responses": {"201": {}},
                }
            },
            "/v1/monitors/{id}": {"get": {"responses": {"200": {}}}},
        },
    }
    document.update(root_extensions)
    return document


class TestResourceDiscovery:
    def test_simple_resource_is_found(self, cdn_document):
        # Act
        resources = ApiSpecAnalyser(cdn_document).terraform_compliant_resources()

        # Assert
        assert [r.name for r in resources] == ["cdns_v1"]
        resource = resources[0]
        assert resource.root_path == "/v1/cdns"
        assert resource.instance_path == "/v1/cdns/{id}"
        assert resource.create_op.method == "POST"
        assert resource.get_op.method == "GET"
        assert resource.put_op.method == "PUT"
        assert resource.delete_op.method == "DELETE"
        assert resource.schema_definition.identifier_property().name == "id"

    def test_classification_does_not_depend_on_path_order(self, cdn_document, firewall_document):
        reversed_document = copy.deepcopy(cdn_document)
        reversed_document["paths"] = dict(reversed(list(cdn_document["paths"].items())))
        reversed_document["paths"].update(firewall_document["paths"])
        reversed_document["definitions"].update(firewall_document["definitions"])
        forward_document = copy.deepcopy(reversed_document)
        forward_document["paths"] = dict(sorted(reversed_document["paths"].items()))

        forward = ApiSpecAnalyser(forward_document).terraform_compliant_resources()
        backward = ApiSpecAnalyser(reversed_document).terraform_compliant_resources()

        assert {r.name for r in forward} == {r.name for r in backward} == {"cdns_v1", "cdns_v1_firewalls_v1"}

    def test_trailing_slash_root_path_is_preferred(self, cdn_document):
        cdn_document["paths"]["/v1/cdns/"] = cdn_document["paths"].pop("/v1/cdns")

        resources = ApiSpecAnalyser(cdn_document).terraform_compliant_resources()

        assert resources[0].root_path == "/v1/cdns/"

    def test_sub_resource_gets_parent_properties(self, firewall_document):
        resources = ApiSpecAnalyser(firewall_document).terraform_compliant_resources()

        assert [r.name for r in resources] == ["cdns_v1_firewalls_v1"]
        resource = resources[0]
        assert resource.parent_property_names == ("cdns_v1_id",)
        parent = resource.schema_definition.get_property("cdns_v1_id")
        assert parent.required and parent.is_parent and parent.type == "string"
        assert resource.put_op is None

    def test_preferred_resource_name_extension(self, cdn_document):
        cdn_document["paths"]["/v1/cdns"]["post"]["x-terraform-resource-name"] = "contentDelivery"

        resources = ApiSpecAnalyser(cdn_document).terraform_compliant_resources()

        assert [r.name for r in resources] == ["content_delivery_v1"]

    def test_excluded_resource_is_omitted(self, cdn_document):
        cdn_document["paths"]["/v1/cdns"]["post"]["x-terraform-exclude-resource"] = True

        assert ApiSpecAnalyser(cdn_document).terraform_compliant_resources() == []

    def test_post_without_body_is_skipped_and_reported(self, cdn_document):
        cdn_document["paths"]["/v1/cdns"]["post"]["parameters"] = []
        analyser = ApiSpecAnalyser(cdn_document)

        assert analyser.terraform_compliant_resources() == []
        assert analyser.collector.has_errors
        assert "missing required 'body'" in analyser.collector.errors[0]

    def test_post_with_two_bodies_is_skipped(self, cdn_document):
        body = cdn_document["paths"]["/v1/cdns"]["post"]["parameters"][0]
        cdn_document["paths"]["/v1/cdns"]["post"]["parameters"].append(dict(body, name="other"))

        assert ApiSpecAnalyser(cdn_document).terraform_compliant_resources() == []

    def test_schema_without_identifier_is_skipped(self, cdn_document):
        del cdn_document["definitions"]["ContentDeliveryNetwork"]["properties"]["id"]
        analyser = ApiSpecAnalyser(cdn_document)

        assert analyser.terraform_compliant_resources() == []
        assert "identifies the resource" in analyser.collector.errors[0]

    def test_x_terraform_id_marks_the_identifier(self, cdn_document):
        properties = cdn_document["definitions"]["ContentDeliveryNetwork"]["properties"]
        del properties["id"]
        properties["name"] = {"type": "string", "readOnly": True, "x-terraform-id": True}

        resource = ApiSpecAnalyser(cdn_document).terraform_compliant_resources()[0]

        assert resource.schema_definition.identifier_property().name == "name"

    def test_paths_without_post_are_not_resources(self, cdn_document):
        del cdn_document["paths"]["/v1/cdns"]["post"]

        assert ApiSpecAnalyser(cdn_document).terraform_compliant_resources() == []

    def test_unsupported_swagger_version_aborts(self, cdn_document):
        cdn_document["swagger"] = "3.0"

        with pytest.raises(UnsupportedSpec):
            ApiSpecAnalyser(cdn_document).terraform_compliant_resources()

    def test_response_only_properties_become_optional_computed(self, cdn_document):
        cdn_document["definitions"]["Extended"] = {
            "type": "object",
            "properties": {
                "id": {"type": "string", "readOnly": True},
                "label": {"type": "string"},
                "created_at": {"type": "string", "readOnly": True},
                "region": {"type": "string"},
            },
        }
        cdn_document["paths"]["/v1/cdns/{id}"]["get"]["responses"]["200"]["schema"] = {
            "$ref": "#/definitions/Extended"
        }

        definition = ApiSpecAnalyser(cdn_document).terraform_compliant_resources()[0].schema_definition

        assert definition.get_property("created_at").read_only
        assert definition.get_property("region").optional_computed
        assert not definition.get_property("region").required


class TestRegions:
    def test_provider_regions_expand_resources(self):
        document = monitors_document(
            **{
                "x-terraform-provider-multiregion-fqdn": "service.api.${region}.hostname.com",
                "x-terraform-provider-regions": "rst1,dub1",
            }
        )
        analyser = ApiSpecAnalyser(document)

        resources = analyser.terraform_compliant_resources()
        backend = analyser.backend_configuration()

        assert [r.name for r in resources] == ["monitors_v1_rst1", "monitors_v1_dub1"]
        assert [r.region for r in resources] == ["rst1", "dub1"]
        assert backend.is_multi_region
        assert backend.host_for_region("dub1") == "service.api.dub1.hostname.com"
        assert backend.default_region() == "rst1"

    def test_multiregion_fqdn_requires_placeholder(self):
        document = monitors_document(
            **{
                "x-terraform-provider-multiregion-fqdn": "service.api.hostname.com",
                "x-terraform-provider-regions": "rst1",
            }
        )

        with pytest.raises(UnsupportedSpec):
            ApiSpecAnalyser(document).backend_configuration()

    def test_multiregion_requires_region_list(self):
        document = monitors_document(**{"x-terraform-provider-multiregion-fqdn": "api.${region}.example.com"})

        with pytest.raises(UnsupportedSpec):
            ApiSpecAnalyser(document).backend_configuration()

    def test_resource_host_regions(self):
        document = monitors_document(**{"x-terraform-resource-regions-zone": "eu, us"})
        document["paths"]["/v1/monitors"]["post"]["x-terraform-resource-host"] = "monitors.${zone}.example.com"

        resources = ApiSpecAnalyser(document).terraform_compliant_resources()

        assert [r.name for r in resources] == ["monitors_v1_eu", "monitors_v1_us"]
        assert resources[0].host_override == "monitors.${zone}.example.com"
        assert resources[1].host_regions == ("eu", "us")

    def test_resource_host_placeholder_without_regions_is_skipped(self):
        document = monitors_document()
        document["paths"]["/v1/monitors"]["post"]["x-terraform-resource-host"] = "monitors.${zone}.example.com"
        analyser = ApiSpecAnalyser(document)

        assert analyser.terraform_compliant_resources() == []
        assert analyser.collector.has_errors


class TestDataSources:
    def test_list_endpoint_becomes_data_source(self, cdn_document):
        cdn_document["paths"]["/v1/cdns"]["get"] = {
            "responses": {
                "200": {"schema": {"type": "array", "items": {"$ref": "#/definitions/ContentDeliveryNetwork"}}}
            }
        }

        data_sources = ApiSpecAnalyser(cdn_document).data_sources()

        assert [d.name for d in data_sources] == ["cdns_v1"]
        assert data_sources[0].list_op.method == "GET"
        assert data_sources[0].get_op is data_sources[0].list_op

    def test_non_array_list_response_is_not_a_data_source(self, cdn_document):
        cdn_document["paths"]["/v1/cdns"]["get"] = {
            "responses": {"200": {"schema": {"$ref": "#/definitions/ContentDeliveryNetwork"}}}
        }

        assert ApiSpecAnalyser(cdn_document).data_sources() == []

    def test_every_resource_has_an_instance_data_source(self, cdn_document):
        instances = ApiSpecAnalyser(cdn_document).data_source_instances()

        assert [i.name for i in instances] == ["cdns_v1_instance"]

    def test_instances_reuse_already_classified_resources(self, cdn_document):
        # Arrange
        analyser = ApiSpecAnalyser(cdn_document)
        resources = analyser.terraform_compliant_resources()

        # Act
        with patch.object(analyser, "terraform_compliant_resources") as mock_classify:
            instances = analyser.data_source_instances(resources)

        # Assert
        mock_classify.assert_not_called()
        assert [i.name for i in instances] == ["cdns_v1_instance"]


class TestOperations:
    def test_polling_and_timeout_extensions(self, cdn_document):
        post = cdn_document["paths"]["/v1/cdns"]["post"]
        post["x-terraform-resource-timeout"] = "30s"
        post["responses"]["202"] = {
            "x-terraform-resource-poll-enabled": True,
            "x-terraform-resource-poll-completed-statuses": "deployed",
            "x-terraform-resource-poll-pending-statuses": "pending, deploying",
            "x-terraform-resource-poll-failed-statuses": "failed",
        }

        resource = ApiSpecAnalyser(cdn_document).terraform_compliant_resources()[0]

        response = resource.create_op.get_response(202)
        assert response.poll_enabled
        assert response.completed_statuses == ("deployed",)
        assert response.pending_statuses == ("pending", "deploying")
        assert response.failed_statuses == ("failed",)
        assert resource.timeout("create") == 30
        assert resource.timeout("delete") == 600

    def test_invalid_timeout_skips_the_resource(self, cdn_document):
        cdn_document["paths"]["/v1/cdns"]["post"]["x-terraform-resource-timeout"] = "10 minutes"

        assert ApiSpecAnalyser(cdn_document).terraform_compliant_resources() == []

    @pytest.mark.parametrize("value, expected", [("30s", 30), ("10m", 600), ("1.5h", 5400), (None, None)])
    def test_parse_timeout(self, value, expected):
        assert parse_timeout(value, "test") == expected

    def test_parse_timeout_rejects_other_units(self):
        with pytest.raises(InvalidResource):
            parse_timeout("3d", "test")

    def test_header_parameters_are_collected_once(self, cdn_document):
        header = {"in": "header", "name": "X-Request-ID", "type": "string", "required": True}
        cdn_document["paths"]["/v1/cdns"]["post"]["parameters"].append(header)
        cdn_document["paths"]["/v1/cdns/{id}"]["get"]["parameters"].append(header)

        headers = ApiSpecAnalyser(cdn_document).header_parameters()

        assert [(h.name, h.terraform_name, h.required) for h in headers] == [("X-Request-ID", "x_request_id", True)]

    def test_resource_name_from_path(self):
        assert resource_name_from_path("/v1/cdns") == ("cdns", "v1")
        assert resource_name_from_path("/users/") == ("users", None)
        with pytest.raises(InvalidResource):
            resource_name_from_path("/")


class TestProviderInputs:
    def test_security_definitions(self, cdn_document):
        cdn_document["securityDefinitions"] = {
            "apikey_auth": {"type": "apiKey", "in": "header", "name": "X-API-Key"},
            "bearer_auth": {"type": "apiKey", "in": "header", "name": "ignored", "x-terraform-authentication-scheme-bearer": True},
            "query_auth": {"type": "apiKey", "in": "query", "name": "api_key"},
            "query_bearer": {"type": "apiKey", "in": "query", "name": "ignored", "x-terraform-authentication-scheme-bearer": True},
            "refresh_auth": {"type": "apiKey", "in": "header", "name": "ignored", "x-terraform-refresh-token-url": "https://auth/refresh"},
            "basic": {"type": "basic"},
        }

        definitions = ApiSpecAnalyser(cdn_document).security_definitions()

        assert set(definitions) == {"apikey_auth", "bearer_auth", "query_auth", "query_bearer", "refresh_auth"}
        assert (definitions["apikey_auth"].kind, definitions["apikey_auth"].parameter_name) == (API_KEY_HEADER, "X-API-Key")
        assert (definitions["bearer_auth"].parameter_name, definitions["bearer_auth"].bearer) == ("Authorization", True)
        assert (definitions["query_auth"].kind, definitions["query_auth"].parameter_name) == (API_KEY_QUERY, "api_key")
        assert definitions["query_bearer"].parameter_name == "access_token"
        assert definitions["refresh_auth"].kind == REFRESH_TOKEN
        assert definitions["refresh_auth"].refresh_url == "https://auth/refresh"

    def test_global_security_must_reference_known_definitions(self, cdn_document):
        cdn_document["security"] = [{"unknown": []}]

        with pytest.raises(UnsupportedSpec):
            ApiSpecAnalyser(cdn_document).global_security()

    def test_backend_configuration(self, cdn_document):
        cdn_document["basePath"] = "/api/"

        backend = ApiSpecAnalyser(cdn_document).backend_configuration()

        assert backend.host == "api.example.com"
        assert backend.base_path == "/api"
        assert backend.scheme == "https"
        assert not backend.is_multi_region

    def test_host_falls_back_to_document_url(self, cdn_document):
        del cdn_document["host"]

        backend = ApiSpecAnalyser(cdn_document, document_url="http://docs.example.com:8080/swagger.json").backend_configuration()

        assert backend.host == "docs.example.com:8080"

    def test_missing_host_without_document_url_fails(self, cdn_document):
        del cdn_document["host"]

        with pytest.raises(SpecLoadError):
            ApiSpecAnalyser(cdn_document).backend_configuration()
