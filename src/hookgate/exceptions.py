"""Exception hierarchy for hookgate.

Load-time problems raise ManifestError and keep an API out of service.
Request-time problems raise a HookExecutionError subclass, which the pipeline
orchestrator converts into an HTTP-class outcome at the stage boundary.
"""

from __future__ import annotations


class HookGateError(Exception):
    """Base exception for hookgate."""

    pass


class ManifestError(HookGateError):
    """Raised when a bundle manifest or one of its files is invalid."""

    def __init__(self, bundle_dir: str, detail: str):
        self.bundle_dir = bundle_dir
        self.detail = detail
        super().__init__(f"Invalid bundle at {bundle_dir}: {detail}")


class UnknownDriverError(ManifestError):
    """Raised when a manifest names a driver that is not registered."""

    def __init__(self, bundle_dir: str, driver: str):
        self.driver = driver
        super().__init__(bundle_dir, f"unknown driver '{driver}'")


class HookExecutionError(HookGateError):
    """Raised when an out-of-process hook call does not complete normally."""

    def __init__(self, driver: str, stage: str, hook_name: str, detail: str):
        self.driver = driver
        self.stage = stage
        self.hook_name = hook_name
        self.detail = detail
        super().__init__(f"{driver} hook '{hook_name}' ({stage}) failed: {detail}")


class RuntimeUnavailableError(HookExecutionError):
    """The external runtime could not be reached or died mid-call."""


class HookNotFoundError(HookExecutionError):
    """The hook name no longer resolves inside the runtime."""

    def __init__(self, driver: str, stage: str, hook_name: str):
        super().__init__(driver, stage, hook_name, "hook not found")


class HookTimeoutError(HookExecutionError):
    """The call exceeded its timeout."""

    def __init__(self, driver: str, stage: str, hook_name: str, timeout: float):
        self.timeout = timeout
        super().__init__(driver, stage, hook_name, f"timed out after {timeout:g}s")


class HookCancelledError(HookExecutionError):
    """The enclosing request was cancelled while the call was pending."""

    def __init__(self, driver: str, stage: str, hook_name: str):
        super().__init__(driver, stage, hook_name, "cancelled")


class HookFaultError(HookExecutionError):
    """The hook itself raised inside the runtime."""


class AuthRejected(HookGateError):
    """Raised when authentication does not produce an authorized session."""

    def __init__(self, reason: str, status_code: int = 403):
        self.reason = reason
        self.status_code = status_code
        super().__init__(reason)


class PolicyNotFoundError(HookGateError):
    """Raised when a policy ID cannot be resolved."""

    def __init__(self, policy_id: str):
        self.policy_id = policy_id
        super().__init__(f"Policy not found: {policy_id}")
