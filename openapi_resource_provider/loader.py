import json
import logging
import os
from typing import Any, Dict, Optional

import yaml

from .errors import HttpTransportError, SpecLoadError
from .http_client import HttpClient

logger = logging.getLogger(__name__)


def _parse(content: str, location: str) -> Dict[str, Any]:
    # JSON is tried first so that JSON documents keep their exact scalar types.
    try:
        document = json.loads(content)
    except ValueError:
        try:
            document = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise SpecLoadError(
                f"Failed to parse OpenAPI document '{location}': {e}"
            ) from e
    if not isinstance(document, dict):
        raise SpecLoadError(f"OpenAPI document '{location}' is not a JSON/YAML object")
    return document


def load_document(
    location: str,
    insecure_skip_verify: bool = False,
    http_client: Optional[HttpClient] = None,
) -> Dict[str, Any]:
    """
    Loads an OpenAPI document, in JSON or YAML, from an http(s) URL or a local
    file path.

    Raises:
        SpecLoadError: If the document can not be fetched or parsed.
    """
    if not location:
        raise SpecLoadError("No OpenAPI document location was provided")

    if location.startswith(("http://", "https://")):
        client = http_client or HttpClient(insecure_skip_verify=insecure_skip_verify)
        try:
            response = client.get(location)
        except HttpTransportError as e:
            raise SpecLoadError(
                f"Failed to fetch OpenAPI document '{location}': {e}"
            ) from e
        if response.status_code != 200:
            raise SpecLoadError(
                f"Failed to fetch OpenAPI document '{location}': "
                f"HTTP {response.status_code}"
            )
        content = response.text
    else:
        path = location[len("file://"):] if location.startswith("file://") else location
        try:
            with open(os.path.expanduser(path), "r", encoding="utf-8") as f:
                content = f.read()
        except OSError as e:
            raise SpecLoadError(
                f"Failed to read OpenAPI document '{location}': {e}"
            ) from e

    logger.info("Loaded OpenAPI document from '%s'", location)
    return _parse(content, location)
