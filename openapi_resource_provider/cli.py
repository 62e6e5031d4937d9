#!/usr/bin/env python

import argparse
import json
import logging
import sys

import yaml

from .errors import OpenAPIProviderError
from .loader import load_document
from .provider import Provider


def describe(provider: Provider) -> dict:
    """Summarizes the provider, its resources and data sources with their schemas."""
    return {
        "provider": {
            "name": provider.name,
            "host": provider.backend.host,
            "base_path": provider.backend.base_path,
            "regions": list(provider.backend.regions),
            "schema": provider.schema.to_dict(),
        },
        "resources": {
            name: {
                "root_path": resource.root_path,
                "instance_path": resource.instance_path,
                "schema": schema.to_dict(),
            }
            for name, (resource, schema) in sorted(provider.resources.items())
        },
        "data_sources": {
            name: schema.to_dict()
            for name, schema in sorted(provider.data_source_schemas().items())
        },
    }


def main(argv=None):
    """
    Loads an OpenAPI document and prints the resources, data sources and
    schemas a provider built from it would expose.
    """
    # 1. Initialize the ArgumentParser
    parser = argparse.ArgumentParser(
        prog="openapi-resource-provider",
        description=(
            "Inspect the declarative resources described by an OpenAPI 2.0 document."
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    # 2. Define the command-line arguments
    parser.add_argument(
        "--api-spec",
        help=(
            "Path or URL of the OpenAPI document. "
            "When omitted, the plugin configuration is used."
        ),
    )
    parser.add_argument(
        "--provider-name",
        default="openapi",
        help="Name of the provider; selects the service in the plugin configuration.",
    )
    parser.add_argument(
        "--insecure-skip-verify",
        action="store_true",
        help="Do not verify TLS certificates when fetching the document.",
    )
    parser.add_argument(
        "--format",
        choices=("yaml", "json"),
        default="yaml",
        help="Output format.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")

    # 3. Parse the arguments from the command line
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # 4. Build the provider and print its description
    try:
        if args.api_spec:
            document = load_document(
                args.api_spec, insecure_skip_verify=args.insecure_skip_verify
            )
            provider = Provider(
                args.provider_name, document, document_url=args.api_spec
            )
        else:
            provider = Provider.from_plugin_configuration(args.provider_name)
    except OpenAPIProviderError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    description = describe(provider)
    if args.format == "json":
        print(json.dumps(description, indent=2, sort_keys=True))
    else:
        print(yaml.safe_dump(description, sort_keys=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
