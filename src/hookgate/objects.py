"""Transferable objects exchanged with hook runtimes.

These are plain value objects: no references to live gateway state, JSON-safe
through ``to_dict``/``from_dict``. ``None`` always means "unset" and is kept
distinct from empty strings and zero.
"""

from __future__ import annotations

import base64
import copy
from dataclasses import dataclass, field
from typing import Any


def canonical_header_key(name: str) -> str:
    """Canonical MIME header casing: ``x-api-key`` -> ``X-Api-Key``."""
    return "-".join(part[:1].upper() + part[1:].lower() for part in name.strip().split("-"))


def _optional(cast: Any, value: Any) -> Any:
    return None if value is None else cast(value)


@dataclass
class ReturnOverrides:
    """Synthetic response requested by a hook.

    Attributes:
        response_code: HTTP status to return
        response_error: Error message used as body when no body is set
        response_body: Body returned verbatim
        response_headers: Headers merged over the defaults
    """

    response_code: int | None = None
    response_error: str | None = None
    response_body: str | None = None
    response_headers: dict[str, str] | None = None

    def is_set(self) -> bool:
        return (
            self.response_code is not None
            or self.response_error is not None
            or self.response_body is not None
            or bool(self.response_headers)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "response_code": self.response_code,
            "response_error": self.response_error,
            "response_body": self.response_body,
            "response_headers": dict(self.response_headers) if self.response_headers is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ReturnOverrides:
        data = data or {}
        headers = data.get("response_headers")
        return cls(
            response_code=_optional(int, data.get("response_code")),
            response_error=_optional(str, data.get("response_error")),
            response_body=_optional(str, data.get("response_body")),
            response_headers={str(k): str(v) for k, v in headers.items()} if headers is not None else None,
        )


@dataclass
class RequestObject:
    """Snapshot of an HTTP request that crosses the process boundary.

    Attributes:
        method: HTTP method
        url: Path and query as seen by the API (listen path stripped)
        raw_url: Original request URI
        headers: Header map with canonical keys
        set_headers: Headers to add or replace after ``headers`` is applied
        delete_headers: Header names to remove after ``set_headers``
        body: Body as text, empty when the body is not valid UTF-8
        raw_body: Body bytes, always populated
        scheme: URL scheme of the inbound request
        return_overrides: Short-circuit instruction
        hook_type: Stage of the hook being called
        hook_name: Name of the hook being called
    """

    method: str = "GET"
    url: str = "/"
    raw_url: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    set_headers: dict[str, str] = field(default_factory=dict)
    delete_headers: list[str] = field(default_factory=list)
    body: str = ""
    raw_body: bytes = b""
    scheme: str = "http"
    return_overrides: ReturnOverrides = field(default_factory=ReturnOverrides)
    hook_type: str = ""
    hook_name: str = ""

    def get_header(self, name: str, default: str = "") -> str:
        """Get header value (case-insensitive)."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return default

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "url": self.url,
            "raw_url": self.raw_url,
            "headers": dict(self.headers),
            "set_headers": dict(self.set_headers),
            "delete_headers": list(self.delete_headers),
            "body": self.body,
            "raw_body": base64.b64encode(self.raw_body).decode("ascii"),
            "scheme": self.scheme,
            "return_overrides": self.return_overrides.to_dict(),
            "hook_type": self.hook_type,
            "hook_name": self.hook_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RequestObject:
        raw_body = data.get("raw_body") or ""
        if isinstance(raw_body, str):
            raw_body = base64.b64decode(raw_body)
        return cls(
            method=str(data.get("method") or "GET"),
            url=str(data.get("url") or "/"),
            raw_url=str(data.get("raw_url") or ""),
            headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
            set_headers={str(k): str(v) for k, v in (data.get("set_headers") or {}).items()},
            delete_headers=[str(h) for h in data.get("delete_headers") or []],
            body=str(data.get("body") or ""),
            raw_body=bytes(raw_body),
            scheme=str(data.get("scheme") or "http"),
            return_overrides=ReturnOverrides.from_dict(data.get("return_overrides")),
            hook_type=str(data.get("hook_type") or ""),
            hook_name=str(data.get("hook_name") or ""),
        )


@dataclass
class SessionObject:
    """Authentication, quota and metadata state exchanged with hooks.

    A fresh object has every limit unset. An auth hook authorizes a request by
    filling in limits or naming a policy to apply.
    """

    rate: float | None = None
    per: float | None = None
    quota_max: int | None = None
    quota_remaining: int | None = None
    quota_renewal_rate: int | None = None
    apply_policy_id: str | None = None
    alias: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    is_authorized: bool = False

    def has_limits(self) -> bool:
        return any(v is not None for v in (self.rate, self.per, self.quota_max, self.quota_renewal_rate))

    def to_dict(self) -> dict[str, Any]:
        return {
            "rate": self.rate,
            "per": self.per,
            "quota_max": self.quota_max,
            "quota_remaining": self.quota_remaining,
            "quota_renewal_rate": self.quota_renewal_rate,
            "apply_policy_id": self.apply_policy_id,
            "alias": self.alias,
            "metadata": copy.deepcopy(self.metadata),
            "is_authorized": self.is_authorized,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SessionObject:
        data = data or {}
        return cls(
            rate=_optional(float, data.get("rate")),
            per=_optional(float, data.get("per")),
            quota_max=_optional(int, data.get("quota_max")),
            quota_remaining=_optional(int, data.get("quota_remaining")),
            quota_renewal_rate=_optional(int, data.get("quota_renewal_rate")),
            apply_policy_id=data.get("apply_policy_id") or None,
            alias=_optional(str, data.get("alias")),
            metadata=copy.deepcopy(data.get("metadata") or {}),
            is_authorized=bool(data.get("is_authorized", False)),
        )
