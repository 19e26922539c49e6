"""Return override evaluation.

A hook short-circuits the pipeline by filling ``request.return_overrides``:
- response_code -> status (200 if only other fields are set, or if the
  code is not a valid HTTP status such as 0)
- response_body -> body, verbatim
- response_error -> body when no response_body is set
- response_headers -> merged over the default headers
"""

from __future__ import annotations

import logging

from hookgate.models import Response
from hookgate.objects import RequestObject, ReturnOverrides, canonical_header_key

logger = logging.getLogger(__name__)

DEFAULT_OVERRIDE_STATUS = 200
DEFAULT_OVERRIDE_HEADERS = {"Content-Type": "text/plain; charset=utf-8"}


def check_override(obj: RequestObject) -> ReturnOverrides | None:
    """Return the override requested on a request object, if any.

    Pure inspection: the object is not modified.

    Args:
        obj: Request object returned by a hook

    Returns:
        The ReturnOverrides when at least one field is set, else None
    """
    overrides = obj.return_overrides
    if not overrides.is_set():
        return None
    return overrides


def render_override(overrides: ReturnOverrides, default_headers: dict[str, str] | None = None) -> Response:
    """Render an override into the response sent to the client.

    Args:
        overrides: Override fields set by a hook
        default_headers: Headers the override headers are merged over

    Returns:
        Response built from exactly the override's fields
    """
    status = overrides.response_code if overrides.response_code is not None else DEFAULT_OVERRIDE_STATUS
    if not 100 <= status <= 599:
        # Still an override trigger, but no listener can send it
        logger.warning("Override status %d is not a valid HTTP status, sending %d", status, DEFAULT_OVERRIDE_STATUS)
        status = DEFAULT_OVERRIDE_STATUS

    if overrides.response_body is not None:
        body = overrides.response_body
    elif overrides.response_error is not None:
        body = overrides.response_error
    else:
        body = ""

    headers = dict(DEFAULT_OVERRIDE_HEADERS if default_headers is None else default_headers)
    for name, value in (overrides.response_headers or {}).items():
        headers[canonical_header_key(name)] = value

    encoded = body.encode("utf-8")
    headers["Content-Length"] = str(len(encoded))
    logger.debug("Rendering override response with status %d", status)
    return Response(status_code=status, body=encoded, headers=headers)
