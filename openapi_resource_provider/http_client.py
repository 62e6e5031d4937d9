import http.client
import json
import logging
import socket
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.error import HTTPError, URLError

from ansible.module_utils.urls import ConnectionError as UrlsConnectionError
from ansible.module_utils.urls import open_url

from .errors import HttpTransportError, redact_url
from .helpers import user_agent

logger = logging.getLogger(__name__)

CONTENT_TYPE_JSON = "application/json; charset=UTF-8"
DEFAULT_TIMEOUT = 30


@dataclass
class HttpResponse:
    """Status, headers and raw body of a completed HTTP exchange."""

    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def text(self) -> str:
        return self.body.decode(errors="ignore") if self.body else ""

    def json(self) -> Any:
        """Decodes the body as JSON; an empty body decodes to None."""
        if not self.body or not self.body.strip():
            return None
        return json.loads(self.body)


class HttpClient:
    """
    A small JSON-over-HTTP wrapper around Ansible's `open_url`.

    Every response that carries an HTTP status, including 4xx and 5xx ones, is
    returned as an `HttpResponse` so that callers decide which codes are
    acceptable. Only failures that never produced a response (DNS, TLS,
    refused connections, timeouts) raise `HttpTransportError`.
    """

    def __init__(
        self,
        insecure_skip_verify: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        agent: Optional[str] = None,
    ):
        self.validate_certs = not insecure_skip_verify
        self.timeout = timeout
        self.user_agent = agent or user_agent()

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        payload: Any = None,
        secret_query_params=(),
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        request_headers = {
            "Content-Type": CONTENT_TYPE_JSON,
            "User-Agent": self.user_agent,
        }
        request_headers.update(headers or {})

        data = None
        if payload is not None:
            data = payload if isinstance(payload, (str, bytes)) else json.dumps(payload)

        safe_url = redact_url(url, secret_query_params)
        logger.debug("%s %s", method, safe_url)

        try:
            response = open_url(
                url,
                data=data,
                headers=request_headers,
                method=method,
                validate_certs=self.validate_certs,
                timeout=timeout or self.timeout,
                http_agent=self.user_agent,
            )
        except HTTPError as e:
            # The server answered; hand the status back to the caller.
            body = e.read() if e.fp is not None else b""
            return HttpResponse(
                status_code=e.code, headers=dict(e.headers or {}), body=body or b""
            )
        except (
            URLError,
            UrlsConnectionError,
            http.client.HTTPException,
            socket.timeout,
            OSError,
        ) as e:
            raise HttpTransportError(str(e), method=method, url=safe_url) from e

        with response:
            status_code = response.getcode()
            body = response.read()
            response_headers = dict(response.headers or {})

        logger.debug("%s %s returned %s", method, safe_url, status_code)
        return HttpResponse(
            status_code=status_code, headers=response_headers, body=body
        )

    def get(self, url, headers=None, **kwargs) -> HttpResponse:
        return self.request("GET", url, headers=headers, **kwargs)

    def post_json(self, url, payload=None, headers=None, **kwargs) -> HttpResponse:
        return self.request("POST", url, headers=headers, payload=payload, **kwargs)
