"""Session and policy stores.

The gateway owns session and policy state; hooks only ever see copies of it.
The in-memory implementations here back the gateway facade and the tests.
Any object implementing ``SessionStore``/``PolicyStore`` can replace them.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel

from hookgate.exceptions import PolicyNotFoundError

logger = logging.getLogger(__name__)

UNLIMITED = -1


@dataclass
class SessionState:
    """Session record as kept by the session store.

    ``quota_max == -1`` means the session has no quota.
    """

    rate: float = 0.0
    per: float = 0.0
    quota_max: int = UNLIMITED
    quota_remaining: int = 0
    quota_renewal_rate: int = 0
    quota_renews: float = 0.0
    apply_policies: list[str] = field(default_factory=list)
    alias: str = ""
    meta_data: dict[str, Any] = field(default_factory=dict)
    last_updated: float = 0.0


class Policy(BaseModel):
    """Rate and quota template applied to sessions by ID."""

    id: str
    name: str = ""
    rate: float = 0.0
    per: float = 0.0
    quota_max: int = UNLIMITED
    quota_renewal_rate: int = 0


def apply_policy(state: SessionState, policy: Policy) -> SessionState:
    """Overwrite the session's limits with the policy's."""
    state.rate = policy.rate
    state.per = policy.per
    state.quota_max = policy.quota_max
    state.quota_renewal_rate = policy.quota_renewal_rate
    state.apply_policies = [policy.id]
    return state


def carry_quota_usage(state: SessionState, existing: SessionState | None, now: float | None = None) -> SessionState:
    """Keep quota usage of an existing record when re-authenticating.

    A freshly authenticated session would otherwise start with a full quota on
    every request. Usage is carried over while the quota size is unchanged.
    """
    now = time.time() if now is None else now
    if existing is not None and existing.quota_max == state.quota_max:
        state.quota_remaining = existing.quota_remaining
        state.quota_renews = existing.quota_renews
    else:
        state.quota_remaining = state.quota_max
        state.quota_renews = now + state.quota_renewal_rate
    return state


class SessionStore(Protocol):
    def get(self, key: str) -> SessionState | None: ...

    def set(self, key: str, state: SessionState) -> None: ...

    def merge(self, key: str, state: SessionState) -> SessionState: ...

    def consume_quota(self, key: str) -> bool: ...


class PolicyStore(Protocol):
    def resolve(self, policy_id: str) -> Policy: ...


class InMemorySessionStore:
    """Thread-safe session store.

    Records are copied on the way in and out, so a caller mutating its copy
    never exposes a half-written record to other requests.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, SessionState] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> SessionState | None:
        with self._lock:
            state = self._sessions.get(key)
            return copy.deepcopy(state) if state is not None else None

    def set(self, key: str, state: SessionState) -> None:
        record = copy.deepcopy(state)
        record.last_updated = time.time()
        with self._lock:
            self._sessions[key] = record

    def merge(self, key: str, state: SessionState, now: float | None = None) -> SessionState:
        """Store a re-authenticated session, keeping the stored quota usage.

        The read of the existing record and the write happen under one lock,
        so concurrent re-auths of a key cannot restore spent quota.
        """
        record = copy.deepcopy(state)
        with self._lock:
            carry_quota_usage(record, self._sessions.get(key), now)
            record.last_updated = time.time()
            self._sessions[key] = record
            return copy.deepcopy(record)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._sessions.pop(key, None) is not None

    def consume_quota(self, key: str, now: float | None = None) -> bool:
        """Take one request from the session's quota.

        Returns:
            False if the session is unknown or its quota is exhausted
        """
        now = time.time() if now is None else now
        with self._lock:
            state = self._sessions.get(key)
            if state is None:
                return False
            if state.quota_max == UNLIMITED:
                return True
            if state.quota_renewal_rate > 0 and now >= state.quota_renews:
                state.quota_remaining = state.quota_max
                state.quota_renews = now + state.quota_renewal_rate
            if state.quota_remaining <= 0:
                logger.debug("Quota exhausted for session", extra={"event": "quota_exceeded"})
                return False
            state.quota_remaining -= 1
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class InMemoryPolicyStore:
    """Policy lookup table."""

    def __init__(self, policies: list[Policy] | None = None) -> None:
        self._policies: dict[str, Policy] = {p.id: p for p in policies or []}
        self._lock = threading.Lock()

    def add(self, policy: Policy) -> None:
        with self._lock:
            self._policies[policy.id] = policy

    def resolve(self, policy_id: str) -> Policy:
        with self._lock:
            policy = self._policies.get(policy_id)
        if policy is None:
            raise PolicyNotFoundError(policy_id)
        return policy
