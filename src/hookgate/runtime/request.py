"""Request wrapper handed to hook functions."""

from __future__ import annotations

from hookgate.objects import RequestObject, canonical_header_key


class HookRequest:
    """Wraps a RequestObject with header helpers.

    The raw object is available as ``request.object``; hooks short-circuit by
    setting ``request.object.return_overrides.response_code``.
    """

    def __init__(self, obj: RequestObject) -> None:
        self.object = obj

    def get_header(self, name: str, default: str = "") -> str:
        """Get header value (case-insensitive)."""
        return self.object.get_header(name, default)

    def add_header(self, name: str, value: str) -> None:
        key = canonical_header_key(name)
        self.object.headers[key] = value
        self.object.set_headers[key] = value
        if key in self.object.delete_headers:
            self.object.delete_headers.remove(key)

    def delete_header(self, name: str) -> None:
        key = canonical_header_key(name)
        self.object.headers.pop(key, None)
        self.object.set_headers.pop(key, None)
        if key not in self.object.delete_headers:
            self.object.delete_headers.append(key)
