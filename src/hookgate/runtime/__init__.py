"""Runtime side of the python driver.

Bundle code imports its helpers from here:

    from hookgate.runtime import Hook

    @Hook
    def MyPreHook(request, session, metadata, spec):
        if not request.get_header("X-Tenant"):
            request.object.return_overrides.response_code = 400
            request.object.return_overrides.response_error = "missing tenant"
        return request, session, metadata
"""

from hookgate.runtime.decorators import Hook
from hookgate.runtime.request import HookRequest

__all__ = ["Hook", "HookRequest"]
