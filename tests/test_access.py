"""
Tests for the live read path: throttle, evaluate, read, audit.
"""
import pytest

from guardian_vault.exceptions import (
    DecryptionError,
    DuplicateError,
    ResourceNotFoundError,
    TOTPAccountNotFoundError,
)
from guardian_vault.models import AuditAction, FieldAccessContext, TotpAccessContext
from guardian_vault.policy import REASON_GUARDIAN, REASON_PENDING
from guardian_vault.vault.crypto import encrypt_value

from conftest import K2, TOTP_SEED


@pytest.fixture
async def with_secrets(guarded_resource, store, resource_service):
    await store.set_field(guarded_resource.id, "password", "hunter2")
    account = await store.create_totp_account("alice", "github", TOTP_SEED)
    await resource_service.link_totp_account(guarded_resource.id, account.id)
    return guarded_resource


async def actions(repos, resource_id):
    return [e.action for e in await repos.audit.list_by_resource(resource_id)]


class TestReadField:

    async def test_guardian_reads(self, with_secrets, access, repos):
        result = await access.read_field(with_secrets.id, "bob", "password")
        assert result.allowed
        assert result.value.value == "hunter2"
        assert result.decision.reason == REASON_GUARDIAN
        assert AuditAction.FIELD_READ in await actions(repos, with_secrets.id)

    async def test_non_guardian_gets_nothing(self, with_secrets, access, repos):
        result = await access.read_field(with_secrets.id, "carol", "password")
        assert not result.allowed
        assert result.value is None
        assert result.decision.requires_approval is True
        assert AuditAction.FIELD_READ not in await actions(repos, with_secrets.id)

    async def test_approved_requester_reads(self, with_secrets, access, workflow):
        requested = await access.request_access(
            with_secrets.id,
            FieldAccessContext(requester_id="carol", field_name="password"),
        )
        await workflow.approve(requested.request.id, "bob")
        result = await access.read_field(with_secrets.id, "carol", "password")
        assert result.allowed
        assert result.value.value == "hunter2"

    async def test_missing_field_audited_as_not_found(self, with_secrets, access, repos):
        result = await access.read_field(with_secrets.id, "alice", "nope")
        assert result.allowed
        assert result.value is None
        events = await repos.audit.list_by_resource(with_secrets.id)
        assert events[-1].status == "NOT_FOUND"

    async def test_unknown_resource(self, access):
        result = await access.read_field("missing", "alice", "password")
        assert not result.allowed
        assert isinstance(result.error, ResourceNotFoundError)

    async def test_decryption_failure_propagates(self, with_secrets, access, repos):
        record = next(iter(repos.fields.records.values()))
        record.ciphertext = encrypt_value("hunter2", K2)
        with pytest.raises(DecryptionError):
            await access.read_field(with_secrets.id, "alice", "password")


class TestReadTotp:

    async def test_guardian_reads_seed(self, with_secrets, access, repos):
        result = await access.read_totp(with_secrets.id, "alice")
        assert result.allowed
        assert result.value.secret == TOTP_SEED
        assert AuditAction.TOTP_READ in await actions(repos, with_secrets.id)

    async def test_unlinked_resource(self, guarded_resource, access):
        result = await access.read_totp(guarded_resource.id, "alice")
        assert result.value is None
        assert isinstance(result.error, TOTPAccountNotFoundError)
        assert not result.allowed


class TestThrottling:

    async def test_throttled_after_limit(self, with_secrets, access, repos, monotonic):
        for _ in range(3):
            assert (await access.read_totp(with_secrets.id, "alice")).allowed
        result = await access.read_totp(with_secrets.id, "alice")
        assert result.throttled
        assert not result.allowed
        assert result.value is None
        assert AuditAction.ACCESS_THROTTLED in await actions(repos, with_secrets.id)

        monotonic.advance(60)
        assert (await access.read_totp(with_secrets.id, "alice")).allowed

    async def test_limits_are_per_actor_and_action(self, with_secrets, access):
        for _ in range(3):
            await access.read_totp(with_secrets.id, "alice")
        assert (await access.read_totp(with_secrets.id, "bob")).allowed
        assert (await access.read_field(with_secrets.id, "alice", "password")).allowed


class TestRequestAccess:

    async def test_guardian_needs_no_request(self, guarded_resource, access):
        result = await access.request_access(
            guarded_resource.id, TotpAccessContext(requester_id="bob"),
        )
        assert result.decision.allowed
        assert result.request is None

    async def test_creates_request(self, guarded_resource, access):
        result = await access.request_access(
            guarded_resource.id, TotpAccessContext(requester_id="carol"), ttl=300,
        )
        assert result.request is not None
        assert result.decision.approval_request_id == result.request.id
        assert result.request.expires_at is not None

    async def test_second_request_reports_pending(self, guarded_resource, access):
        first = await access.request_access(
            guarded_resource.id, TotpAccessContext(requester_id="carol"),
        )
        second = await access.request_access(
            guarded_resource.id, TotpAccessContext(requester_id="carol"),
        )
        assert isinstance(second.error, DuplicateError)
        assert second.decision.reason == REASON_PENDING
        assert second.decision.approval_request_id == first.request.id
