"""
Tests for the task handlers and the GitHub / CircleCI clients they use
"""
import json
from unittest.mock import MagicMock

import httpx
import pytest

from reviewbot.core.exceptions import (
    CircuitBreakerOpenError,
    ExternalServiceError,
    PermanentExecutionError,
    ServiceTimeoutError,
    TransientExecutionError,
    UnknownTaskTypeError,
)
from reviewbot.domain.envelope import TaskEnvelope, TaskType
from reviewbot.domain.handlers import (
    CredentialScope,
    HandlerRegistry,
    TaskContext,
    handlers,
)
from reviewbot.domain.services.circleci_client import pipeline_branch
from reviewbot.domain.services.commit_signer import CommitSigner, bot_identity, build_commit_object
from reviewbot.domain.services.github_client import GitHubClient, is_transient_response
from tests.factories import TEST_CI_TOKEN, TEST_REPOSITORY
from tests.fakes import REPO_PATH, TEST_INSTALLATION_TOKEN, FakeGitHub, RecordingTransport, installation_token


def _context(task_type: TaskType, payload: dict, transport, **kwargs) -> TaskContext:
    envelope = TaskEnvelope(
        delivery_id="d-1", task_type=task_type, payload=payload, installation_id=42, attempt=1,
    )
    return TaskContext(envelope=envelope, transport=transport, **kwargs)


async def _run(ctx: TaskContext) -> list[TaskEnvelope]:
    return await handlers.get(ctx.envelope.task_type).func(ctx)


class TestRegistry:
    @pytest.mark.unit
    def test_every_task_type_has_a_handler(self):
        assert set(handlers.task_types()) == set(TaskType)

    @pytest.mark.unit
    def test_declared_scopes(self):
        assert handlers.get(TaskType.TRIGGER_CI).scopes == (CredentialScope.CI_TOKEN,)
        assert handlers.get(TaskType.SIGN_COMMIT).scopes == (
            CredentialScope.INSTALLATION_TOKEN,
            CredentialScope.SIGNING_KEY,
        )

    @pytest.mark.unit
    def test_unknown_task_type_is_permanent(self):
        registry = HandlerRegistry()

        with pytest.raises(UnknownTaskTypeError) as exc_info:
            registry.get(TaskType.MERGE)

        assert isinstance(exc_info.value, PermanentExecutionError)
        assert TaskType.MERGE not in registry


class TestCommentAndLabel:
    @pytest.mark.unit
    async def test_post_comment(self):
        transport = RecordingTransport(lambda r: httpx.Response(201, json={"id": 1}))
        ctx = _context(
            TaskType.COMMENT,
            {"repository": TEST_REPOSITORY, "number": 7, "body": "hello"},
            transport,
            installation_token=installation_token(),
        )

        assert await _run(ctx) == []

        (request,) = transport.requests
        assert request.method == "POST"
        assert request.url.path == f"{REPO_PATH}/issues/7/comments"
        assert json.loads(request.content) == {"body": "hello"}
        assert request.headers["Authorization"] == f"token {TEST_INSTALLATION_TOKEN}"

    @pytest.mark.unit
    async def test_add_labels(self):
        transport = RecordingTransport(lambda r: httpx.Response(200, json=[{"name": "needs-review"}]))
        ctx = _context(
            TaskType.LABEL,
            {"repository": TEST_REPOSITORY, "number": 7, "labels": ["needs-review"]},
            transport,
            installation_token=installation_token(),
        )

        await _run(ctx)

        (request,) = transport.requests_to("POST", "/issues/7/labels")
        assert json.loads(request.content) == {"labels": ["needs-review"]}

    @pytest.mark.unit
    async def test_missing_payload_field_is_permanent(self):
        transport = RecordingTransport(lambda r: httpx.Response(201))
        ctx = _context(
            TaskType.COMMENT, {"repository": TEST_REPOSITORY, "number": 7}, transport,
            installation_token=installation_token(),
        )

        with pytest.raises(PermanentExecutionError, match="body"):
            await _run(ctx)
        assert transport.requests == []


class TestTriggerCI:
    @pytest.mark.unit
    async def test_triggers_pipeline_for_pull_request_ref(self):
        transport = RecordingTransport(lambda r: httpx.Response(201, json={"number": 99, "state": "created"}))
        ctx = _context(
            TaskType.TRIGGER_CI,
            {"repository": TEST_REPOSITORY, "number": 7, "head_ref": "feature/x"},
            transport,
            ci_token=TEST_CI_TOKEN,
        )

        await _run(ctx)

        (request,) = transport.requests
        assert request.url.path == f"/api/v2/project/gh/{TEST_REPOSITORY}/pipeline"
        assert request.headers["Circle-Token"] == TEST_CI_TOKEN
        assert json.loads(request.content) == {"branch": "pull/7/head"}

    @pytest.mark.unit
    def test_pipeline_branch_falls_back_to_head_ref(self):
        assert pipeline_branch(None, "feature/x") == "feature/x"
        with pytest.raises(ValueError):
            pipeline_branch(None, None)

    @pytest.mark.unit
    async def test_server_error_is_transient(self):
        transport = RecordingTransport(lambda r: httpx.Response(503, text="maintenance"))
        ctx = _context(
            TaskType.TRIGGER_CI, {"repository": TEST_REPOSITORY, "number": 7}, transport, ci_token=TEST_CI_TOKEN,
        )

        with pytest.raises(ExternalServiceError):
            await _run(ctx)

    @pytest.mark.unit
    async def test_missing_ci_token_is_permanent(self):
        transport = RecordingTransport(lambda r: httpx.Response(201, json={}))
        ctx = _context(TaskType.TRIGGER_CI, {"repository": TEST_REPOSITORY, "number": 7}, transport)

        with pytest.raises(PermanentExecutionError):
            await _run(ctx)


class TestGitHubClientErrors:
    def _client(self, handler) -> GitHubClient:
        return GitHubClient("token x", api_url="https://api.github.test", transport=httpx.MockTransport(handler))

    @pytest.mark.unit
    async def test_rate_limited_403_is_transient_with_retry_after(self):
        def handler(request):
            return httpx.Response(403, headers={"X-RateLimit-Remaining": "0", "Retry-After": "30"})

        with pytest.raises(ExternalServiceError) as exc_info:
            await self._client(handler).get_pull_request(TEST_REPOSITORY, 7)

        assert exc_info.value.retry_after == 30

    @pytest.mark.unit
    async def test_plain_403_is_permanent(self):
        with pytest.raises(PermanentExecutionError):
            await self._client(lambda r: httpx.Response(403)).get_pull_request(TEST_REPOSITORY, 7)

    @pytest.mark.unit
    async def test_422_is_permanent(self):
        with pytest.raises(PermanentExecutionError):
            await self._client(lambda r: httpx.Response(422)).create_comment(TEST_REPOSITORY, 7, "x")

    @pytest.mark.unit
    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ExternalServiceError):
            await self._client(handler).create_comment(TEST_REPOSITORY, 7, "x")

    @pytest.mark.unit
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(ServiceTimeoutError):
            await self._client(handler).create_comment(TEST_REPOSITORY, 7, "x")

    @pytest.mark.unit
    async def test_repeated_failures_open_the_circuit(self):
        client = self._client(lambda r: httpx.Response(502))

        for _ in range(5):
            with pytest.raises(ExternalServiceError):
                await client.get_pull_request(TEST_REPOSITORY, 7)

        with pytest.raises(CircuitBreakerOpenError):
            await client.get_pull_request(TEST_REPOSITORY, 7)

    @pytest.mark.unit
    async def test_permanent_errors_do_not_open_the_circuit(self):
        client = self._client(lambda r: httpx.Response(404))

        for _ in range(10):
            with pytest.raises(PermanentExecutionError):
                await client.get_pull_request(TEST_REPOSITORY, 7)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "status,headers,expected",
        [
            (500, {}, True),
            (429, {}, True),
            (403, {"X-RateLimit-Remaining": "0"}, True),
            (403, {"X-RateLimit-Remaining": "10"}, False),
            (404, {}, False),
        ],
    )
    def test_is_transient_response(self, status, headers, expected):
        assert is_transient_response(httpx.Response(status, headers=headers)) is expected


class TestMerge:
    @pytest.mark.unit
    async def test_prepare_merge_emits_sign_commit(self):
        github = FakeGitHub()
        ctx = _context(
            TaskType.MERGE,
            {"repository": TEST_REPOSITORY, "number": 7, "sender": "alice"},
            RecordingTransport(github),
            installation_token=installation_token(),
        )

        (follow_up,) = await _run(ctx)

        assert follow_up.task_type == TaskType.SIGN_COMMIT
        assert follow_up.delivery_id == "d-1/merge"
        assert follow_up.installation_id == 42
        assert follow_up.payload["tree"] == "tree111"
        assert follow_up.payload["parents"] == ["base000"]
        assert follow_up.payload["message"] == "Add widgets (#7)\n\nAdds the widgets."
        assert follow_up.payload["sender"] == "alice"
        assert isinstance(follow_up.payload["timestamp"], int)

    @pytest.mark.unit
    async def test_unknown_mergeability_is_transient(self):
        ctx = _context(
            TaskType.MERGE, {"repository": TEST_REPOSITORY, "number": 7},
            RecordingTransport(FakeGitHub(mergeable=None)), installation_token=installation_token(),
        )

        with pytest.raises(TransientExecutionError) as exc_info:
            await _run(ctx)

        assert exc_info.value.retry_after == 10

    @pytest.mark.unit
    async def test_conflicting_pull_request_is_permanent(self):
        ctx = _context(
            TaskType.MERGE, {"repository": TEST_REPOSITORY, "number": 7},
            RecordingTransport(FakeGitHub(mergeable=False)), installation_token=installation_token(),
        )

        with pytest.raises(PermanentExecutionError, match="conflicts"):
            await _run(ctx)

    @pytest.mark.unit
    async def test_closed_pull_request_is_permanent(self):
        ctx = _context(
            TaskType.MERGE, {"repository": TEST_REPOSITORY, "number": 7},
            RecordingTransport(FakeGitHub(state="closed")), installation_token=installation_token(),
        )

        with pytest.raises(PermanentExecutionError, match="not open"):
            await _run(ctx)


def _sign_payload() -> dict:
    return {
        "repository": TEST_REPOSITORY,
        "number": 7,
        "tree": "tree111",
        "parents": ["base000"],
        "base_ref": "main",
        "head_sha": "head999",
        "message": "Add widgets (#7)",
        "timestamp": 1700000000,
    }


class TestSignAndMerge:
    @pytest.fixture
    def signer(self) -> MagicMock:
        signer = MagicMock(spec=CommitSigner)
        signer.sign.return_value = "-----BEGIN PGP SIGNATURE-----\nsig\n-----END PGP SIGNATURE-----\n"
        return signer

    @pytest.mark.unit
    async def test_creates_signed_commit_and_fast_forwards(self, signer):
        github = FakeGitHub()
        ctx = _context(
            TaskType.SIGN_COMMIT, _sign_payload(), RecordingTransport(github),
            installation_token=installation_token(), signer=signer,
        )

        (notice,) = await _run(ctx)

        (created,) = github.created
        assert created["signature"].startswith("-----BEGIN PGP SIGNATURE-----")
        assert created["parents"] == ["base000"]
        assert created["author"]["date"] == "2023-11-14T22:13:20Z"
        assert github.refs["main"] == "merged0"
        assert github.closed
        assert notice.task_type == TaskType.COMMENT
        assert notice.delivery_id == "d-1/sign_commit"
        assert "merged0" in notice.payload["body"]

        identity = bot_identity(1700000000)
        signer.sign.assert_called_once_with(
            build_commit_object(
                tree="tree111", parents=["base000"], author=identity, committer=identity,
                message="Add widgets (#7)",
            )
        )

    @pytest.mark.unit
    async def test_retry_after_branch_already_moved_by_us_does_not_commit_twice(self, signer):
        github = FakeGitHub()
        first = _context(
            TaskType.SIGN_COMMIT, _sign_payload(), RecordingTransport(github),
            installation_token=installation_token(), signer=signer,
        )
        await _run(first)
        github.closed = False

        retry = _context(
            TaskType.SIGN_COMMIT, _sign_payload(), RecordingTransport(github),
            installation_token=installation_token(), signer=signer,
        )
        (notice,) = await _run(retry)

        assert len(github.created) == 1
        assert github.closed
        assert "merged0" in notice.payload["body"]

    @pytest.mark.unit
    async def test_branch_moved_by_someone_else_is_permanent(self, signer):
        github = FakeGitHub()
        github.refs["main"] = "other555"
        github.commits["other555"] = {"sha": "other555", "tree": {"sha": "unrelated"}, "parents": [{"sha": "base000"}]}
        ctx = _context(
            TaskType.SIGN_COMMIT, _sign_payload(), RecordingTransport(github),
            installation_token=installation_token(), signer=signer,
        )

        with pytest.raises(PermanentExecutionError, match="moved"):
            await _run(ctx)
        assert github.created == []
        assert not github.closed

    @pytest.mark.unit
    async def test_requires_signer(self):
        ctx = _context(
            TaskType.SIGN_COMMIT, _sign_payload(), RecordingTransport(FakeGitHub()),
            installation_token=installation_token(),
        )

        with pytest.raises(PermanentExecutionError, match="signing key"):
            await _run(ctx)


class TestCommitObject:
    @pytest.mark.unit
    def test_raw_commit_layout(self):
        identity = bot_identity(1700000000)

        raw = build_commit_object(
            tree="t1", parents=["p1", "p2"], author=identity, committer=identity, message="msg",
        )

        lines = raw.split("\n")
        assert lines[0] == "tree t1"
        assert lines[1:3] == ["parent p1", "parent p2"]
        assert lines[3].startswith("author reviewbot <")
        assert lines[3].endswith(" 1700000000 +0000")
        assert raw.endswith("\n\nmsg")
