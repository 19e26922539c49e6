"""Object codec between live gateway state and transferable objects.

encode_* snapshots live state into objects a runtime can receive; decode_*
applies a runtime's returned object back onto live state in place.
"""

from __future__ import annotations

import copy

from hookgate.bundle import Stage
from hookgate.models import LiveRequest
from hookgate.objects import RequestObject, SessionObject, canonical_header_key
from hookgate.stores import SessionState


def _as_text(body: bytes) -> str:
    """Body as text, or empty when it is not valid UTF-8."""
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError:
        return ""


def encode_request(live: LiveRequest, stage: Stage | None = None, hook_name: str = "") -> RequestObject:
    """Snapshot a live request.

    Binary bodies are carried in ``raw_body`` only; ``body`` is then empty.
    """
    return RequestObject(
        method=live.method.upper(),
        url=live.url,
        raw_url=live.raw_url or live.url,
        headers={canonical_header_key(k): v for k, v in live.headers.items()},
        body=_as_text(live.body),
        raw_body=bytes(live.body),
        scheme=live.scheme,
        hook_type=stage.value if stage is not None else "",
        hook_name=hook_name,
    )


def decode_request(obj: RequestObject, live: LiveRequest) -> LiveRequest:
    """Apply a returned request object onto the live request.

    Method, URL, headers and body are replaced; everything else on the live
    request is left untouched. An edited text body wins over the raw body; an
    edited raw body wins over an untouched one.
    """
    if obj.method:
        live.method = obj.method.upper()
    if obj.url:
        live.url = obj.url

    headers = {canonical_header_key(k): v for k, v in obj.headers.items()}
    for name, value in obj.set_headers.items():
        headers[canonical_header_key(name)] = value
    for name in obj.delete_headers:
        headers.pop(canonical_header_key(name), None)

    body_changed = False
    if obj.body != _as_text(live.body):
        live.body = obj.body.encode("utf-8")
        body_changed = True
    elif obj.raw_body != live.body:
        live.body = obj.raw_body
        body_changed = True

    if body_changed and "Content-Length" in headers:
        headers["Content-Length"] = str(len(live.body))
    live.headers = headers
    return live


def encode_session(state: SessionState | None) -> SessionObject:
    """Snapshot a stored session; ``None`` yields a fresh, unauthorized object."""
    if state is None:
        return SessionObject()
    return SessionObject(
        rate=state.rate,
        per=state.per,
        quota_max=state.quota_max,
        quota_remaining=state.quota_remaining,
        quota_renewal_rate=state.quota_renewal_rate,
        apply_policy_id=state.apply_policies[0] if state.apply_policies else None,
        alias=state.alias or None,
        metadata=copy.deepcopy(state.meta_data),
        is_authorized=True,
    )


def decode_session(obj: SessionObject, state: SessionState | None = None) -> SessionState:
    """Apply a returned session object onto a session record.

    Unset fields keep the record's value. Policies are only recorded here;
    resolving them needs the policy store and is the orchestrator's job.
    """
    state = state if state is not None else SessionState()
    if obj.rate is not None:
        state.rate = obj.rate
    if obj.per is not None:
        state.per = obj.per
    if obj.quota_max is not None:
        state.quota_max = obj.quota_max
    if obj.quota_remaining is not None:
        state.quota_remaining = obj.quota_remaining
    if obj.quota_renewal_rate is not None:
        state.quota_renewal_rate = obj.quota_renewal_rate
    if obj.apply_policy_id:
        state.apply_policies = [obj.apply_policy_id]
    if obj.alias is not None:
        state.alias = obj.alias
    state.meta_data = copy.deepcopy(obj.metadata)
    return state
