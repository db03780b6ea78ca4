"""
Shared fixtures: keys, a controllable clock, in-memory repositories and the
services wired on top of them.
"""
from datetime import datetime, timedelta, timezone

import pytest

from guardian_vault.access import SecretAccessService
from guardian_vault.approval import ApprovalWorkflow
from guardian_vault.audit import AuditLog
from guardian_vault.guardians import GuardianRegistry
from guardian_vault.memory import create_memory_repositories
from guardian_vault.notifications import Notifier, OutcomeDispatcher
from guardian_vault.policy import AccessPolicyEvaluator
from guardian_vault.ratelimit import RateLimiter
from guardian_vault.resources import ResourceService
from guardian_vault.vault.secret_store import SecretStore

K1_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
K2_HEX = "ffeeddccbbaa99887766554433221100ffeeddccbbaa99887766554433221100"
K1 = bytes.fromhex(K1_HEX)
K2 = bytes.fromhex(K2_HEX)

TOTP_SEED = "JBSWY3DPEHPK3PXP"


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.current = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class MonotonicClock:
    """Monotonic seconds counter for the rate limiter."""

    def __init__(self):
        self.current = 1000.0

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class RecordingNotifier(Notifier):

    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    async def notify(self, actor_id: str, message: str) -> None:
        if self.fail:
            raise ConnectionError("notification relay unreachable")
        self.sent.append((actor_id, message))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return MonotonicClock()


@pytest.fixture
def repos():
    return create_memory_repositories()


@pytest.fixture
def audit(repos, clock):
    return AuditLog(repos.audit, now=clock)


@pytest.fixture
def registry(repos, audit):
    return GuardianRegistry(repos.resources, repos.guardians, audit=audit)


@pytest.fixture
def resource_service(repos):
    return ResourceService(repos)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def dispatcher(notifier):
    dispatcher = OutcomeDispatcher(notifier)
    yield dispatcher
    await dispatcher.drain()


@pytest.fixture
def workflow(repos, dispatcher, audit, clock):
    return ApprovalWorkflow(repos, dispatcher=dispatcher, audit=audit, now=clock)


@pytest.fixture
def evaluator(repos, clock):
    return AccessPolicyEvaluator(repos.approvals, now=clock)


@pytest.fixture
def store(repos):
    return SecretStore(repos.fields, repos.totp, K1)


@pytest.fixture
def limiter(monotonic):
    return RateLimiter(window=60.0, max_requests=3, clock=monotonic)


@pytest.fixture
def access(repos, registry, evaluator, workflow, store, limiter, audit):
    return SecretAccessService(
        repos.resources, registry, evaluator, workflow, store, limiter, audit,
    )


@pytest.fixture
async def resource(resource_service):
    """Resource 'shared-github' owned by alice."""
    outcome = await resource_service.create_resource("shared-github", "alice")
    assert outcome.success
    return outcome.value


@pytest.fixture
async def guarded_resource(resource, registry):
    outcome = await registry.grant(resource.id, "bob", acting_actor_id="alice")
    assert outcome.success
    return resource
