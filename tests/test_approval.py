"""
Tests for the approval request state machine.
"""
from datetime import timedelta

import pytest
from pydantic import ValidationError

from guardian_vault.approval import ApprovalWorkflow
from guardian_vault.exceptions import (
    DuplicateError,
    NoGuardiansError,
    PermissionDeniedError,
    RequestExpiredError,
    RequestNotFoundError,
    RequestNotPendingError,
    ResourceNotFoundError,
)
from guardian_vault.models import (
    ApprovalDecision,
    ApprovalRequest,
    ApprovalStatus,
    AuditAction,
    FieldAccessContext,
    ManualRequestContext,
    Resource,
    TotpAccessContext,
    request_context_adapter,
)
from guardian_vault.notifications import OutcomeDispatcher

from conftest import RecordingNotifier


def manual(requester: str = "carol", reason: str = "on-call rotation") -> ManualRequestContext:
    return ManualRequestContext(requester_id=requester, reason=reason)


class TestRequestContexts:
    """Request contexts are a closed, validated tagged union."""

    def test_parse_by_kind(self):
        context = request_context_adapter.validate_python(
            {"kind": "FIELD_ACCESS", "requester_id": "carol", "field_name": "password"},
        )
        assert isinstance(context, FieldAccessContext)
        assert context.describe() == "read field 'password'"

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            request_context_adapter.validate_python({"kind": "SUDO", "requester_id": "carol"})

    def test_manual_request_needs_reason(self):
        with pytest.raises(ValidationError):
            ManualRequestContext(requester_id="carol", reason="")

    def test_request_exposes_requester(self):
        request = ApprovalRequest(resource_id="r", context=TotpAccessContext(requester_id="carol"))
        assert request.requester_id == "carol"
        assert request.status is ApprovalStatus.PENDING


class TestCreateRequest:

    async def test_create_pending(self, guarded_resource, workflow, clock):
        outcome = await workflow.create_request(guarded_resource.id, manual())
        assert outcome.success
        request = outcome.value
        assert request.status is ApprovalStatus.PENDING
        assert request.created_at == clock()
        assert request.expires_at is None

    async def test_ttl_sets_expiry(self, guarded_resource, workflow, clock):
        outcome = await workflow.create_request(
            guarded_resource.id, manual(), ttl=timedelta(milliseconds=1000),
        )
        assert outcome.value.expires_at == clock() + timedelta(seconds=1)

    async def test_ttl_in_seconds(self, guarded_resource, workflow, clock):
        outcome = await workflow.create_request(guarded_resource.id, manual(), ttl=90)
        assert outcome.value.expires_at == clock() + timedelta(seconds=90)

    async def test_default_ttl(self, guarded_resource, repos, clock):
        workflow = ApprovalWorkflow(repos, now=clock, default_ttl=300)
        outcome = await workflow.create_request(guarded_resource.id, manual())
        assert outcome.value.expires_at == clock() + timedelta(minutes=5)

    async def test_unknown_resource(self, workflow):
        outcome = await workflow.create_request("missing", manual())
        assert isinstance(outcome.error, ResourceNotFoundError)

    async def test_resource_without_guardians(self, repos, workflow):
        orphan = await repos.resources.create(Resource(name="orphan", api_key="k"))
        outcome = await workflow.create_request(orphan.id, manual())
        assert isinstance(outcome.error, NoGuardiansError)

    async def test_duplicate_pending_rejected(self, guarded_resource, workflow, clock):
        first = await workflow.create_request(guarded_resource.id, manual())
        clock.advance(seconds=1)
        second = await workflow.create_request(guarded_resource.id, manual(reason="again"))
        assert first.success
        assert isinstance(second.error, DuplicateError)
        assert len(await workflow.list_pending(guarded_resource.id)) == 1

    async def test_other_requesters_not_affected(self, guarded_resource, workflow):
        assert (await workflow.create_request(guarded_resource.id, manual("carol"))).success
        assert (await workflow.create_request(guarded_resource.id, manual("dave"))).success

    async def test_expired_pending_does_not_block(self, guarded_resource, workflow, clock):
        """A stale PENDING request is expired before a new one is created."""
        first = await workflow.create_request(guarded_resource.id, manual(), ttl=60)
        clock.advance(seconds=61)
        second = await workflow.create_request(guarded_resource.id, manual())
        assert second.success
        assert (await workflow.get_request(first.value.id)).status is ApprovalStatus.EXPIRED

    async def test_request_is_audited(self, guarded_resource, workflow, repos):
        outcome = await workflow.create_request(guarded_resource.id, manual())
        events = await repos.audit.list_by_resource(guarded_resource.id)
        created = [e for e in events if e.action is AuditAction.ACCESS_REQUESTED]
        assert created[0].context["request_id"] == outcome.value.id
        assert created[0].context["request"]["kind"] == "MANUAL_REQUEST"


class TestDecisions:

    @pytest.fixture
    async def pending(self, guarded_resource, workflow):
        outcome = await workflow.create_request(guarded_resource.id, manual())
        return outcome.value

    async def test_guardian_approves(self, pending, workflow, clock):
        outcome = await workflow.approve(pending.id, "bob")
        assert outcome.success
        assert outcome.value.status is ApprovalStatus.APPROVED
        assert outcome.value.resolved_by == "bob"
        assert outcome.value.resolved_at == clock()
        stored = await workflow.get_request(pending.id)
        assert stored.status is ApprovalStatus.APPROVED

    async def test_owner_denies(self, pending, workflow):
        outcome = await workflow.record_decision(pending.id, ApprovalDecision.DENY, "alice")
        assert outcome.value.status is ApprovalStatus.DENIED

    async def test_decision_is_final(self, pending, workflow):
        """A second decision is rejected and the status is left unchanged."""
        await workflow.approve(pending.id, "bob")
        outcome = await workflow.deny(pending.id, "alice")
        assert not outcome.success
        assert isinstance(outcome.error, RequestNotPendingError)
        assert outcome.error.status == "APPROVED"
        assert "no longer pending (status: APPROVED)" in outcome.message
        assert outcome.value.status is ApprovalStatus.APPROVED
        assert (await workflow.get_request(pending.id)).resolved_by == "bob"

    async def test_non_guardian_cannot_decide(self, pending, workflow):
        outcome = await workflow.approve(pending.id, "carol")
        assert isinstance(outcome.error, PermissionDeniedError)
        assert (await workflow.get_request(pending.id)).status is ApprovalStatus.PENDING

    async def test_unknown_request(self, workflow):
        outcome = await workflow.approve("missing", "bob")
        assert isinstance(outcome.error, RequestNotFoundError)

    async def test_decision_after_expiry(self, guarded_resource, workflow, clock):
        """Past expiresAt a decision expires the request instead of resolving it."""
        created = await workflow.create_request(
            guarded_resource.id, manual(), ttl=timedelta(milliseconds=1000),
        )
        clock.advance(milliseconds=1001)
        outcome = await workflow.approve(created.value.id, "bob")
        assert not outcome.success
        assert isinstance(outcome.error, RequestExpiredError)
        assert outcome.value.status is ApprovalStatus.EXPIRED
        stored = await workflow.get_request(created.value.id)
        assert stored.status is ApprovalStatus.EXPIRED
        assert stored.resolved_by is None

        again = await workflow.deny(created.value.id, "bob")
        assert isinstance(again.error, RequestNotPendingError)
        assert again.error.status == "EXPIRED"

    async def test_decision_exactly_at_expiry_allowed(self, guarded_resource, workflow, clock):
        created = await workflow.create_request(guarded_resource.id, manual(), ttl=1)
        clock.advance(seconds=1)
        assert (await workflow.approve(created.value.id, "bob")).success

    async def test_decision_is_audited(self, pending, workflow, repos):
        await workflow.approve(pending.id, "bob")
        events = await repos.audit.list_by_resource(pending.resource_id)
        decision = [e for e in events if e.action is AuditAction.DECISION_MADE][0]
        assert decision.status == "APPROVED"
        assert decision.resolver_id == "bob"
        assert decision.actor_id == "carol"


class TestNotifications:

    async def test_requester_notified(self, guarded_resource, workflow, dispatcher, notifier):
        created = await workflow.create_request(guarded_resource.id, manual())
        await workflow.approve(created.value.id, "bob")
        await dispatcher.drain()
        assert notifier.sent[0][0] == "carol"
        assert "APPROVED" in notifier.sent[0][1]

    async def test_failed_notification_does_not_fail_decision(
        self, guarded_resource, repos, clock,
    ):
        dispatcher = OutcomeDispatcher(RecordingNotifier(fail=True), timeout=0.5)
        workflow = ApprovalWorkflow(repos, dispatcher=dispatcher, now=clock)
        created = await workflow.create_request(
            guarded_resource.id, manual(), callback_url="http://127.0.0.1:9/unreachable",
        )
        outcome = await workflow.approve(created.value.id, "bob")
        assert outcome.success
        await dispatcher.drain()
        assert dispatcher.pending == 0
        assert (await workflow.get_request(created.value.id)).status is ApprovalStatus.APPROVED

    async def test_rejected_decision_sends_nothing(self, guarded_resource, workflow, dispatcher, notifier):
        created = await workflow.create_request(guarded_resource.id, manual())
        await workflow.approve(created.value.id, "carol")
        await dispatcher.drain()
        assert notifier.sent == []


class TestExpirySweep:

    async def test_expire_overdue(self, guarded_resource, workflow, clock):
        short = await workflow.create_request(guarded_resource.id, manual("carol"), ttl=10)
        long = await workflow.create_request(guarded_resource.id, manual("dave"), ttl=3600)
        forever = await workflow.create_request(guarded_resource.id, manual("erin"))
        clock.advance(seconds=11)

        assert await workflow.expire_overdue() == 1
        assert (await workflow.get_request(short.value.id)).status is ApprovalStatus.EXPIRED
        assert (await workflow.get_request(long.value.id)).status is ApprovalStatus.PENDING
        assert (await workflow.get_request(forever.value.id)).status is ApprovalStatus.PENDING
        assert await workflow.expire_overdue() == 0
