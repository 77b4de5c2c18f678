"""HTTP transport for talking to a Time Stamping Authority.

RFC 3161 section 3.4 carries requests as an HTTP POST with
``Content-Type: application/timestamp-query``; the TSA answers with an
``application/timestamp-reply`` body. This module is the only place in
SKStamp that performs network I/O. Everything it exchanges is raw binary.

:func:`send` is the replaceable primitive (tests and alternative HTTP
stacks pass their own callable with the same signature);
:func:`submit_request` layers the protocol headers and status checks on
top of it.

Usage::

    from skstamp.transport import submit_request

    reply = submit_request(request_der, "https://freetsa.org/tsr", timeout=10)
"""

from __future__ import annotations

import base64
import logging
import urllib.error
import urllib.request
from typing import Callable, Optional

from .errors import TransportFailure, TransportTimeout

logger = logging.getLogger("skstamp.transport")

QUERY_CONTENT_TYPE = "application/timestamp-query"
REPLY_CONTENT_TYPE = "application/timestamp-reply"

DEFAULT_TIMEOUT = 10.0

Auth = Optional[tuple[str, str]]
Transport = Callable[[str, bytes, dict[str, str], float, Auth], tuple[int, bytes]]


def _basic_auth(auth: tuple[str, str]) -> str:
    user, password = auth
    token = base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def send(
    url: str,
    data: bytes,
    headers: dict[str, str],
    timeout: float,
    auth: Auth = None,
) -> tuple[int, bytes]:
    """POST ``data`` to ``url`` and return ``(http_status, body)``.

    HTTP error statuses are returned, not raised, so the caller decides
    what they mean.

    Raises:
        TransportTimeout: If the TSA does not answer within ``timeout``.
        TransportFailure: If the connection cannot be made.
    """
    request_headers = dict(headers)
    if auth is not None:
        request_headers["Authorization"] = _basic_auth(auth)

    req = urllib.request.Request(url, data=data, headers=request_headers, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            content_type = resp.headers.get("Content-Type") or ""
            if content_type.split(";")[0].strip().lower() != REPLY_CONTENT_TYPE:
                logger.warning(
                    "TSA %s answered with content type %r, expected %s",
                    url,
                    content_type,
                    REPLY_CONTENT_TYPE,
                )
            return resp.status, resp.read()
    except urllib.error.HTTPError as exc:
        body = exc.read() if exc.fp is not None else b""
        return exc.code, body
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, TimeoutError):
            raise TransportTimeout(
                f"TSA request to {url} timed out after {timeout}s"
            ) from exc
        raise TransportFailure(f"TSA request to {url} failed: {exc.reason}") from exc
    except TimeoutError as exc:
        raise TransportTimeout(f"TSA request to {url} timed out after {timeout}s") from exc
    except OSError as exc:
        raise TransportFailure(f"TSA request to {url} failed: {exc}") from exc


def submit_request(
    request_der: bytes,
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    headers: Optional[dict[str, str]] = None,
    auth: Auth = None,
    transport: Transport = send,
) -> bytes:
    """Send a DER TimeStampReq to a TSA and return the raw reply body.

    Args:
        request_der: Output of :func:`~skstamp.request.encode_request`.
        url: TSA endpoint.
        timeout: Seconds to wait for the TSA.
        headers: Extra HTTP headers (account tokens and the like).
        auth: ``(user, password)`` for HTTP basic auth.
        transport: Replacement for :func:`send`.

    Returns:
        The DER TimeStampResp bytes, unparsed.

    Raises:
        TransportFailure: On a non-200 status or an empty body.
        TransportTimeout: If the TSA does not answer in time.
    """
    all_headers = {
        "Content-Type": QUERY_CONTENT_TYPE,
        "Accept": REPLY_CONTENT_TYPE,
    }
    all_headers.update(headers or {})

    logger.info("Submitting timestamp request to %s", url)
    status, body = transport(url, request_der, all_headers, timeout, auth)
    if status != 200:
        logger.error("TSA %s answered HTTP %d", url, status)
        raise TransportFailure(f"TSA {url} answered HTTP {status}", http_status=status)
    if not body:
        raise TransportFailure(f"TSA {url} returned an empty body", http_status=status)
    logger.debug("Received %d byte reply from %s", len(body), url)
    return body
