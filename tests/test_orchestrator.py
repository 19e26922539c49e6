"""Tests for the pipeline orchestrator."""

import json
import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from hookgate.bundle import Bundle, HookBinding, Stage
from hookgate.config import ApiDefinition, CoProcessConfig
from hookgate.drivers.base import Driver, HookCall, HookResult
from hookgate.exceptions import HookFaultError, HookTimeoutError, ManifestError
from hookgate.models import LiveRequest
from hookgate.objects import ReturnOverrides
from hookgate.pipeline import PipelineOrchestrator, PipelineState, TerminationReason
from hookgate.stores import InMemoryPolicyStore, InMemorySessionStore, Policy, SessionState

HookFn = Callable[[HookCall], HookResult]


class FakeDriver(Driver):
    """Driver running hook functions in-process and recording calls."""

    name = "fake"

    def __init__(self, hooks: dict[str, HookFn]) -> None:
        super().__init__(CoProcessConfig())
        self.hooks = hooks
        self.calls: list[HookCall] = []

    def available_hooks(self, bundle: Bundle) -> set[str]:
        return set(self.hooks)

    def invoke(self, call, timeout, cancel=None) -> HookResult:
        self.calls.append(call)
        return self.hooks[call.hook_name](call)

    @property
    def called(self) -> list[str]:
        return [call.hook_name for call in self.calls]


def passthrough(call: HookCall) -> HookResult:
    return HookResult(request=call.request, session=call.session, metadata=call.metadata)


def override(**fields) -> HookFn:
    def hook(call: HookCall) -> HookResult:
        call.request.return_overrides = ReturnOverrides(**fields)
        return passthrough(call)

    return hook


def authorize(call: HookCall) -> HookResult:
    """Authorize requests carrying 'valid_token', like the usual auth fixture."""
    if call.request.get_header("Authorization") == "valid_token":
        call.session.rate = 1000.0
        call.session.per = 1.0
        call.session.quota_max = 60
        call.session.quota_renewal_rate = 60
        call.metadata["token"] = "valid_token"
    return passthrough(call)


def bundle_with(tmp_path: Path, **stages: list[str]) -> Bundle:
    hooks = []
    for stage_name, names in stages.items():
        stage = Stage(stage_name)
        hooks.extend(HookBinding(stage, name, order) for order, name in enumerate(names))
    return Bundle(id="b", base_dir=tmp_path, file_list=("m.py",), driver="fake", hooks=tuple(hooks))


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def policy_store() -> InMemoryPolicyStore:
    return InMemoryPolicyStore([Policy(id="gold", rate=50, per=1, quota_max=2, quota_renewal_rate=3600)])


@pytest.fixture
def make_pipeline(tmp_path: Path, session_store, policy_store):
    def _make(hooks: dict[str, HookFn], api: ApiDefinition | None = None, route=None, **stages):
        driver = FakeDriver(hooks)
        pipeline = PipelineOrchestrator(
            api=api or ApiDefinition(name="test"),
            bundle=bundle_with(tmp_path, **stages),
            driver=driver,
            session_store=session_store,
            policy_store=policy_store,
            hook_timeout=1.0,
            route=route,
        )
        return pipeline, driver

    return _make


AUTH_API = ApiDefinition(name="secure", use_keyless_access=False, enable_coprocess_auth=True)


class TestKeylessPipeline:
    """Test PRE -> POST -> PROXY."""

    def test_stages_run_in_order(self, make_pipeline) -> None:
        hooks = {name: passthrough for name in ("Pre1", "Pre2", "Post1")}
        pipeline, driver = make_pipeline(hooks, pre=["Pre1", "Pre2"], post=["Post1"])

        result = pipeline.run(LiveRequest(url="/get"))

        assert result.state is PipelineState.PROXY
        assert not result.terminated
        assert result.response is None
        assert result.session is None
        assert driver.called == ["Pre1", "Pre2", "Post1"]
        assert [c.stage for c in driver.calls] == [Stage.PRE, Stage.PRE, Stage.POST]

    def test_mutations_chain(self, make_pipeline) -> None:
        """Test each hook sees the previous hook's changes."""

        def add_header(call: HookCall) -> HookResult:
            call.request.set_headers["X-Step"] = call.request.get_header("X-Step") + call.hook_name
            return passthrough(call)

        pipeline, _ = make_pipeline({"A": add_header, "B": add_header}, pre=["A"], post=["B"])
        result = pipeline.run(LiveRequest(url="/get"))
        assert result.request.headers["X-Step"] == "AB"

    def test_metadata_threads_through(self, make_pipeline) -> None:
        def put(call: HookCall) -> HookResult:
            call.metadata["from_pre"] = {"nested": [1]}
            return passthrough(call)

        pipeline, driver = make_pipeline({"Put": put, "Read": passthrough}, pre=["Put"], post=["Read"])
        pipeline.run(LiveRequest())
        assert driver.calls[1].metadata == {"from_pre": {"nested": [1]}}

    def test_spec_context(self, make_pipeline) -> None:
        pipeline, driver = make_pipeline({"P": passthrough}, pre=["P"])
        pipeline.run(LiveRequest())
        assert driver.calls[0].spec == {"api_name": "test", "listen_path": "/", "bundle_id": "b"}

    def test_route_applied_before_post(self, make_pipeline) -> None:
        """Test routing decisions are visible to post hooks only."""

        def route(live: LiveRequest) -> None:
            live.url = "/test2"
            live.method = "POST"

        pipeline, driver = make_pipeline(
            {"Pre": passthrough, "Post": passthrough}, route=route, pre=["Pre"], post=["Post"]
        )
        result = pipeline.run(LiveRequest(url="/get"))

        assert driver.calls[0].request.url == "/get"
        assert driver.calls[1].request.url == "/test2"
        assert driver.calls[1].request.method == "POST"
        assert result.request.url == "/test2"

    def test_no_bundle(self, session_store, policy_store) -> None:
        pipeline = PipelineOrchestrator(ApiDefinition(), None, None, session_store, policy_store)
        assert pipeline.run(LiveRequest()).state is PipelineState.PROXY


class TestOverrides:
    """Test override precedence in each stage."""

    def test_pre_override(self, make_pipeline) -> None:
        hooks = {"Stop": override(response_code=400, response_error="bad"), "Later": passthrough}
        pipeline, driver = make_pipeline(hooks, pre=["Stop", "Later"], post=["Later"])

        result = pipeline.run(LiveRequest())

        assert result.state is PipelineState.OVERRIDE
        assert result.termination_reason is TerminationReason.OVERRIDE
        assert result.response.status_code == 400
        assert result.response.text == "bad"
        assert driver.called == ["Stop"]

    def test_auth_override(self, make_pipeline, session_store) -> None:
        hooks = {"Auth": override(response_code=401, response_body='{"error": "login"}'), "Post": passthrough}
        pipeline, driver = make_pipeline(hooks, api=AUTH_API, auth=["Auth"], post=["Post"])

        result = pipeline.run(LiveRequest(headers={"Authorization": "valid_token"}))

        assert result.state is PipelineState.OVERRIDE
        assert result.response.status_code == 401
        assert result.response.text == '{"error": "login"}'
        assert driver.called == ["Auth"]
        assert len(session_store) == 0

    def test_post_override(self, make_pipeline) -> None:
        hooks = {"Post": override(response_code=200, response_body="cached", response_headers={"x-cache": "hit"})}
        pipeline, _ = make_pipeline(hooks, post=["Post"])

        result = pipeline.run(LiveRequest())

        assert result.response.status_code == 200
        assert result.response.text == "cached"
        assert result.response.headers["X-Cache"] == "hit"

    def test_zero_code_is_an_override(self, make_pipeline) -> None:
        pipeline, _ = make_pipeline({"Pre": override(response_code=0)}, pre=["Pre"])
        result = pipeline.run(LiveRequest())
        assert result.state is PipelineState.OVERRIDE
        assert result.response.status_code == 200


class TestCoprocessAuth:
    """Test PRE -> AUTH -> POST_AUTH."""

    def test_valid_credential(self, make_pipeline, session_store) -> None:
        hooks = {"Auth": authorize, "PostKey": passthrough, "Post": passthrough}
        pipeline, driver = make_pipeline(hooks, api=AUTH_API, auth=["Auth"], post_key_auth=["PostKey"], post=["Post"])

        result = pipeline.run(LiveRequest(headers={"Authorization": "valid_token"}))

        assert result.state is PipelineState.PROXY
        assert result.session_key == "valid_token"
        assert result.session.rate == 1000.0
        assert result.session.meta_data == {"token": "valid_token"}
        assert driver.called == ["Auth", "PostKey", "Post"]

        stored = session_store.get("valid_token")
        assert stored.quota_max == 60
        assert stored.quota_remaining == 59

    def test_auth_hook_gets_fresh_session(self, make_pipeline) -> None:
        def pre(call: HookCall) -> HookResult:
            call.session.rate = 99.0
            return passthrough(call)

        pipeline, driver = make_pipeline({"Pre": pre, "Auth": authorize}, api=AUTH_API, pre=["Pre"], auth=["Auth"])
        pipeline.run(LiveRequest(headers={"Authorization": "valid_token"}))
        assert driver.calls[1].session.rate is None

    def test_post_hooks_see_authorized_session(self, make_pipeline) -> None:
        pipeline, driver = make_pipeline(
            {"Auth": authorize, "Post": passthrough}, api=AUTH_API, auth=["Auth"], post=["Post"]
        )
        pipeline.run(LiveRequest(headers={"Authorization": "valid_token"}))
        post_session = driver.calls[1].session
        assert post_session.is_authorized
        assert post_session.metadata == {"token": "valid_token"}

    def test_invalid_credential(self, make_pipeline, session_store) -> None:
        pipeline, driver = make_pipeline(
            {"Auth": authorize, "Post": passthrough}, api=AUTH_API, auth=["Auth"], post=["Post"]
        )

        result = pipeline.run(LiveRequest(headers={"Authorization": "invalid_token"}))

        assert result.state is PipelineState.REJECTED
        assert result.termination_reason is TerminationReason.AUTH_REJECTED
        assert result.response.status_code == 403
        assert json.loads(result.response.body) == {"error": "Key not authorised"}
        assert driver.called == ["Auth"]
        assert len(session_store) == 0

    def test_is_authorized_from_hook_is_ignored(self, make_pipeline) -> None:
        def claims(call: HookCall) -> HookResult:
            call.session.is_authorized = True
            return passthrough(call)

        pipeline, _ = make_pipeline({"Auth": claims}, api=AUTH_API, auth=["Auth"])
        assert pipeline.run(LiveRequest(headers={"Authorization": "x"})).state is PipelineState.REJECTED

    def test_auth_hook_error_rejects(self, make_pipeline) -> None:
        def fails(call: HookCall) -> HookResult:
            raise HookTimeoutError("fake", "auth", call.hook_name, 1.0)

        pipeline, _ = make_pipeline({"Auth": fails}, api=AUTH_API, auth=["Auth"])
        result = pipeline.run(LiveRequest(headers={"Authorization": "valid_token"}))
        assert result.state is PipelineState.REJECTED
        assert result.termination_reason is TerminationReason.AUTH_REJECTED
        assert result.response.status_code == 403

    def test_policy_applied(self, make_pipeline, session_store) -> None:
        def with_policy(call: HookCall) -> HookResult:
            call.session.apply_policy_id = "gold"
            call.metadata["token"] = "policy-key"
            return passthrough(call)

        pipeline, _ = make_pipeline({"Auth": with_policy}, api=AUTH_API, auth=["Auth"])

        result = pipeline.run(LiveRequest())

        assert result.state is PipelineState.PROXY
        stored = session_store.get("policy-key")
        assert (stored.rate, stored.per, stored.quota_max, stored.quota_renewal_rate) == (50, 1, 2, 3600)
        assert stored.apply_policies == ["gold"]

    def test_quota_exhaustion_across_reauth(self, make_pipeline) -> None:
        """Test re-authenticating does not refill the quota."""

        def with_policy(call: HookCall) -> HookResult:
            call.session.apply_policy_id = "gold"
            call.metadata["token"] = "policy-key"
            return passthrough(call)

        pipeline, _ = make_pipeline({"Auth": with_policy}, api=AUTH_API, auth=["Auth"])

        states = [pipeline.run(LiveRequest()).state for _ in range(3)]

        assert states == [PipelineState.PROXY, PipelineState.PROXY, PipelineState.REJECTED]
        result = pipeline.run(LiveRequest())
        assert json.loads(result.response.body) == {"error": "Quota exceeded"}

    def test_concurrent_reauth_shares_quota(self, make_pipeline) -> None:
        """Test two requests authenticating at once cannot both spend one unit."""
        barrier = threading.Barrier(2)

        def single_use(call: HookCall) -> HookResult:
            call.session.rate = 1.0
            call.session.quota_max = 1
            call.metadata["token"] = "single-key"
            barrier.wait(timeout=5)
            return passthrough(call)

        pipeline, _ = make_pipeline({"Auth": single_use}, api=AUTH_API, auth=["Auth"])
        states = []
        threads = [threading.Thread(target=lambda: states.append(pipeline.run(LiveRequest()).state)) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert sorted(s.value for s in states) == ["proxy", "rejected"]

    def test_unknown_policy_rejects(self, make_pipeline) -> None:
        def bad_policy(call: HookCall) -> HookResult:
            call.session.apply_policy_id = "platinum"
            call.metadata["token"] = "k"
            return passthrough(call)

        pipeline, _ = make_pipeline({"Auth": bad_policy}, api=AUTH_API, auth=["Auth"])
        assert pipeline.run(LiveRequest()).response.status_code == 403

    def test_session_key_falls_back_to_header(self, make_pipeline, session_store) -> None:
        def limits_only(call: HookCall) -> HookResult:
            call.session.rate = 5.0
            return passthrough(call)

        pipeline, _ = make_pipeline({"Auth": limits_only}, api=AUTH_API, auth=["Auth"])
        result = pipeline.run(LiveRequest(headers={"Authorization": "header-key"}))
        assert result.session_key == "header-key"
        assert session_store.get("header-key").rate == 5.0

    def test_no_session_key_rejects(self, make_pipeline) -> None:
        def limits_only(call: HookCall) -> HookResult:
            call.session.rate = 5.0
            return passthrough(call)

        pipeline, _ = make_pipeline({"Auth": limits_only}, api=AUTH_API, auth=["Auth"])
        assert pipeline.run(LiveRequest()).state is PipelineState.REJECTED

    def test_requires_auth_hook(self, tmp_path: Path, session_store, policy_store) -> None:
        """Test coprocess auth without an auth_check binding is a load error."""
        with pytest.raises(ManifestError):
            PipelineOrchestrator(
                AUTH_API, bundle_with(tmp_path, pre=["Pre"]), FakeDriver({}), session_store, policy_store
            )


class TestBuiltinAuth:
    """Test PRE -> POST_AUTH with the session store as authenticator."""

    API = ApiDefinition(name="keyed", use_keyless_access=False)

    def test_known_key(self, make_pipeline, session_store) -> None:
        session_store.set("k1", SessionState(rate=10, per=1, meta_data={"owner": "ops"}))
        pipeline, driver = make_pipeline({"PostKey": passthrough}, api=self.API, post_key_auth=["PostKey"])

        result = pipeline.run(LiveRequest(headers={"Authorization": "k1"}))

        assert result.state is PipelineState.PROXY
        assert driver.calls[0].session.metadata == {"owner": "ops"}

    def test_missing_header(self, make_pipeline) -> None:
        pipeline, _ = make_pipeline({}, api=self.API)
        result = pipeline.run(LiveRequest())
        assert result.response.status_code == 401

    def test_unknown_key(self, make_pipeline) -> None:
        pipeline, driver = make_pipeline({"PostKey": passthrough}, api=self.API, post_key_auth=["PostKey"])
        result = pipeline.run(LiveRequest(headers={"Authorization": "nope"}))
        assert result.response.status_code == 403
        assert driver.called == []


class TestHookErrors:
    """Test hook failures outside auth."""

    @pytest.mark.parametrize("stage", ["pre", "post"])
    def test_hook_error_is_500(self, make_pipeline, stage: str) -> None:
        def fails(call: HookCall) -> HookResult:
            raise HookFaultError("fake", stage, call.hook_name, "Traceback: secret detail")

        pipeline, _ = make_pipeline({"Boom": fails}, **{stage: ["Boom"]})

        result = pipeline.run(LiveRequest())

        assert result.state is PipelineState.REJECTED
        assert result.termination_reason is TerminationReason.HOOK_ERROR
        assert result.response.status_code == 500
        assert "secret" not in result.response.text
