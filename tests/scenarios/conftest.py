"""
Fixtures and helpers for end-to-end pipeline scenarios.

Provides:
- a GitHub/CircleCI fake whose responses can be scripted per call
- an executor wired to the fake broker, SQLite ledger and fake issuer
- drain(): consume the fake broker like a worker until nothing is left
"""
from collections import defaultdict
from typing import Callable

import httpx
import pytest
from prometheus_client import REGISTRY

from reviewbot.domain.envelope import TaskEnvelope
from reviewbot.domain.services.executor import ExecutionOutcome, TaskExecutor
from reviewbot.domain.services.retry_policy import RetryPolicy
from tests.fakes import FakeBroker, RecordingTransport


def counter(name: str, task_type: str) -> float:
    return REGISTRY.get_sample_value(f"reviewbot_tasks_{name}_total", {"task_type": task_type}) or 0.0


class ScriptedUpstream:
    """
    Answers GitHub and CircleCI calls. Responses for a (method, path suffix)
    can be queued; once the queue is empty the default answer is used.
    """

    def __init__(self) -> None:
        self.scripts: dict[tuple[str, str], list] = defaultdict(list)
        self.transport = RecordingTransport(self._handle)

    def script(self, method: str, path_suffix: str, *responses) -> None:
        self.scripts[(method, path_suffix)].extend(responses)

    def calls(self, method: str, path_suffix: str) -> int:
        return len(self.transport.requests_to(method, path_suffix))

    def _handle(self, request: httpx.Request) -> httpx.Response:
        for (method, suffix), queue in self.scripts.items():
            if request.method == method and request.url.path.endswith(suffix) and queue:
                response = queue.pop(0)
                if isinstance(response, Exception):
                    raise response
                return response
        if request.url.path.endswith("/pipeline"):
            return httpx.Response(201, json={"number": 1, "state": "created"})
        if request.url.path.endswith("/labels"):
            return httpx.Response(200, json=[])
        if request.url.path.endswith("/comments"):
            return httpx.Response(201, json={"id": 1})
        return httpx.Response(404)


@pytest.fixture
def upstream() -> ScriptedUpstream:
    return ScriptedUpstream()


@pytest.fixture
def make_executor(fake_broker, session_factory, fake_issuer, secret_store, upstream) -> Callable[..., TaskExecutor]:
    def _make(**overrides) -> TaskExecutor:
        kwargs = dict(
            broker=fake_broker,
            session_factory=session_factory,
            issuer=fake_issuer,
            secret_store=secret_store,
            retry_policy=RetryPolicy(max_attempts=5, base_delay=1, max_delay=10, jitter=0),
            worker_id="worker-1",
            task_timeout=5,
            lease_seconds=60,
            contention_delay=3,
            transport=upstream.transport,
        )
        kwargs.update(overrides)
        return TaskExecutor(**kwargs)

    return _make


@pytest.fixture
def executor(make_executor) -> TaskExecutor:
    return make_executor()


async def drain(executor: TaskExecutor, broker: FakeBroker, limit: int = 50) -> list[tuple[TaskEnvelope, ExecutionOutcome]]:
    """
    Deliver every published and requeued envelope to the executor, in order,
    the way a single worker would. Delays are ignored.
    """
    results = []
    pending = [envelope for envelope, _ in broker.published]
    broker.published.clear()
    while pending and len(results) < limit:
        envelope = pending.pop(0)
        outcome = await executor.process(envelope)
        results.append((envelope, outcome))
        pending.extend(envelope for envelope, _ in broker.requeued)
        broker.requeued.clear()
        pending.extend(envelope for envelope, _ in broker.published)
        broker.published.clear()
    return results
