"""Hook pipeline for hookgate.

This package sequences bundle hooks around a live request:
- codec: live request/session <-> transferable objects
- overrides: detection and rendering of hook-requested responses
- orchestrator: the PRE -> AUTH -> POST_AUTH -> POST state machine

Formal Model:
    stage sᵢ ∈ {pre, auth, post_key_auth, post}
    run(r) = proxy(r')            if no hook sets return_overrides
           = render(overrides)    otherwise, at the first hook that does
"""

from hookgate.pipeline.codec import decode_request, decode_session, encode_request, encode_session
from hookgate.pipeline.orchestrator import PipelineOrchestrator, PipelineResult, PipelineState, TerminationReason
from hookgate.pipeline.overrides import check_override, render_override

__all__ = [
    "PipelineOrchestrator",
    "PipelineResult",
    "PipelineState",
    "TerminationReason",
    "check_override",
    "decode_request",
    "decode_session",
    "encode_request",
    "encode_session",
    "render_override",
]
