"""Decorators for bundle hook functions."""

from __future__ import annotations

import functools
import inspect
from collections.abc import Callable
from typing import Any


class Hook:
    """Marks a function as a bundle hook.

    Hooks take either four arguments and return three values:

        @Hook
        def MyAuthHook(request, session, metadata, spec):
            return request, session, metadata

    or three arguments and return two:

        @Hook
        def MyPostHook(request, session, spec):
            return request, session
    """

    def __init__(self, fn: Callable[..., Any]) -> None:
        functools.update_wrapper(self, fn)
        self.fn = fn
        self.arg_count = len(inspect.signature(fn).parameters)
        if self.arg_count not in (3, 4):
            raise TypeError(f"Hook {fn.__name__} must take 3 or 4 arguments, not {self.arg_count}")

    def __call__(
        self, request: Any, session: Any, metadata: dict[str, Any], spec: dict[str, Any]
    ) -> tuple[Any, Any, dict[str, Any]]:
        if self.arg_count == 4:
            result = self.fn(request, session, metadata, spec)
            if not isinstance(result, tuple) or len(result) != 3:
                raise TypeError(f"Hook {self.fn.__name__} must return (request, session, metadata)")
            request, session, metadata = result
        else:
            result = self.fn(request, session, spec)
            if not isinstance(result, tuple) or len(result) != 2:
                raise TypeError(f"Hook {self.fn.__name__} must return (request, session)")
            request, session = result
        return request, session, metadata
