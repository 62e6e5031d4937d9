import json
import subprocess
from unittest.mock import patch

import pytest

from openapi_resource_provider.errors import ConfigLoadError, SecretResolutionError
from openapi_resource_provider.plugin_config import (
    ExternalConfiguration,
    PluginConfiguration,
    SchemaPropertyConfiguration,
    ServiceConfig,
    lookup_json_key,
)

CONFIG = """
version: '1'
services:
  cdn:
    swagger-url: https://api.example.com/swagger.yaml
    insecure_skip_verify: true
    schema_configuration:
      - schema_property_name: apikey_auth
        default_value: fallback
"""


@pytest.fixture
def config_file(tmp_path):
    def write(content=CONFIG):
        path = tmp_path / "plugin.yaml"
        path.write_text(content)
        return {"OTF_VAR_cdn_PLUGIN_CONFIGURATION_FILE": str(path)}

    return write


class TestLookupJsonKey:
    @pytest.mark.parametrize(
        "key, expected",
        [("$.auth.token", "t"), ("/auth/token", "t"), ("$.tokens[1]", "b"), ("auth.token", "t")],
    )
    def test_lookup(self, key, expected):
        document = {"auth": {"token": "t"}, "tokens": ["a", "b"]}

        assert lookup_json_key(document, key) == expected

    def test_missing_key_raises(self):
        with pytest.raises(KeyError):
            lookup_json_key({"auth": {}}, "$.auth.token")


class TestExternalConfiguration:
    def test_raw_file_is_stripped(self, tmp_path):
        path = tmp_path / "token"
        path.write_text("  secret\n")

        assert ExternalConfiguration(file=str(path)).read_value() == "secret"

    def test_json_key_lookup(self, tmp_path):
        path = tmp_path / "token.json"
        path.write_text(json.dumps({"auth": {"token": "secret", "ttl": 30}}))

        token = ExternalConfiguration(file=str(path), key_name="$.auth.token", content_type="json")
        ttl = ExternalConfiguration(file=str(path), key_name="/auth/ttl", content_type="json")

        assert token.read_value() == "secret"
        assert ttl.read_value() == "30"

    def test_missing_key_is_a_resolution_error(self, tmp_path):
        path = tmp_path / "token.json"
        path.write_text("{}")

        with pytest.raises(SecretResolutionError):
            ExternalConfiguration(file=str(path), key_name="$.token", content_type="json").read_value()

    def test_missing_file_is_a_resolution_error(self, tmp_path):
        with pytest.raises(SecretResolutionError):
            ExternalConfiguration(file=str(tmp_path / "missing")).read_value()

    def test_json_requires_key_name(self):
        with pytest.raises(ValueError):
            ExternalConfiguration(file="x", content_type="json")

    def test_unknown_content_type_is_rejected(self):
        with pytest.raises(ValueError):
            ExternalConfiguration(file="x", content_type="xml")


class TestSchemaPropertyConfiguration:
    def test_external_file_wins_over_default(self, tmp_path):
        path = tmp_path / "token"
        path.write_text("from-file")
        property_config = SchemaPropertyConfiguration(
            schema_property_name="token",
            default_value="literal",
            schema_property_external_configuration={"file": str(path)},
        )

        assert property_config.get_default_value() == "from-file"

    def test_default_value_without_external_file(self):
        property_config = SchemaPropertyConfiguration(schema_property_name="token", default_value="literal")

        assert property_config.get_default_value() == "literal"

    @patch("openapi_resource_provider.plugin_config.subprocess.run")
    def test_command_runs_with_timeout(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(["login"], 0, "", "")
        property_config = SchemaPropertyConfiguration(schema_property_name="token", cmd=["login"], cmd_timeout=5)

        property_config.execute_command()

        args, kwargs = mock_run.call_args
        assert args[0] == ["login"]
        assert kwargs["timeout"] == 5

    @patch("openapi_resource_provider.plugin_config.logger.warning")
    @patch("openapi_resource_provider.plugin_config.subprocess.run")
    def test_command_failures_are_logged(self, mock_run, mock_warning):
        mock_run.side_effect = subprocess.TimeoutExpired(["login"], 5)
        property_config = SchemaPropertyConfiguration(schema_property_name="token", cmd=["login"])

        property_config.execute_command()

        mock_warning.assert_called_once()

    def test_cmd_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            SchemaPropertyConfiguration(schema_property_name="token", cmd_timeout=0)


class TestPluginConfiguration:
    def test_service_configuration_from_file(self, config_file):
        environ = config_file()

        service = PluginConfiguration.from_env("cdn", environ).service_configuration()

        assert service.swagger_url == "https://api.example.com/swagger.yaml"
        assert service.insecure_skip_verify is True
        assert service.get_schema_property_configuration("apikey_auth").default_value == "fallback"
        assert service.get_schema_property_configuration("unknown") is None

    def test_environment_url_overrides_file(self, config_file):
        environ = config_file()
        environ["OTF_VAR_CDN_SWAGGER_URL"] = "https://other.example.com/swagger.json"

        service = PluginConfiguration.from_env("cdn", environ).service_configuration()

        assert service.swagger_url == "https://other.example.com/swagger.json"
        assert service.get_schema_property_configuration("apikey_auth") is not None

    def test_environment_url_without_file(self, tmp_path):
        environ = {
            "OTF_VAR_cdn_PLUGIN_CONFIGURATION_FILE": str(tmp_path / "missing.yaml"),
            "OTF_VAR_cdn_SWAGGER_URL": "https://api.example.com/swagger.yaml",
        }

        service = PluginConfiguration.from_env("cdn", environ).service_configuration()

        assert service.swagger_url == "https://api.example.com/swagger.yaml"
        assert service.schema_configuration == []

    def test_unknown_service_without_url_is_an_error(self):
        with pytest.raises(ConfigLoadError):
            PluginConfiguration("other", CONFIG, environ={}).service_configuration()

    def test_insecure_skip_verify_environment_override(self, config_file):
        environ = config_file()
        environ["OTF_INSECURE_SKIP_VERIFY"] = "false"

        service = PluginConfiguration.from_env("cdn", environ).service_configuration()

        assert service.insecure_skip_verify is False

    def test_root_telemetry_applies_to_services_without_their_own(self):
        content = CONFIG + "telemetry:\n  graphite:\n    host: localhost\n    port: 8125\n"

        service = PluginConfiguration("cdn", content, environ={}).service_configuration()

        assert service.telemetry.graphite.port == 8125
        assert list(service.telemetry.sink_configurations()) == ["graphite"]

    @pytest.mark.parametrize(
        "content",
        [
            "version: '2'\nservices: {}\n",
            "services: {}\n",
            "version: '1'\nservices:\n  cdn:\n    telemetry:\n      graphite: {host: h, port: 0}\n",
            "version: '1'\ntelemetry:\n  graphite: {host: h, port: 1}\n  http_endpoint: {url: 'http://m'}\n",
            "version: '1'\ntelemetry:\n  http_endpoint: {url: 'ftp://m'}\n",
            "- not\n- a mapping\n",
            "version: [unclosed\n",
        ],
    )
    def test_invalid_files_are_rejected(self, content):
        with pytest.raises(ConfigLoadError):
            PluginConfiguration("cdn", content, environ={}).parse()

    def test_validation_errors_name_the_source(self):
        with pytest.raises(ConfigLoadError) as exc_info:
            PluginConfiguration("cdn", "version: '2'\n", source="plugin.yaml", environ={}).parse()

        assert "plugin.yaml" in str(exc_info.value)


class TestServiceConfig:
    def test_accepts_field_name_or_alias(self):
        assert ServiceConfig(swagger_url="a").swagger_url == "a"
        assert ServiceConfig.model_validate({"swagger-url": "b"}).swagger_url == "b"

    @patch("openapi_resource_provider.plugin_config.subprocess.run")
    def test_execute_commands_runs_each_command(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess([], 0, "", "")
        service = ServiceConfig(
            swagger_url="a",
            schema_configuration=[
                {"schema_property_name": "one", "cmd": ["a"]},
                {"schema_property_name": "two"},
                {"schema_property_name": "three", "cmd": ["b"]},
            ],
        )

        service.execute_commands()

        assert [c.args[0] for c in mock_run.call_args_list] == [["a"], ["b"]]
