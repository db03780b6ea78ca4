"""
Service wiring: builds the vault's services from a VaultConfig.

    config = VaultConfig.from_env()
    services = build_services(config, create_memory_repositories())
    result = await services.access.read_totp(resource_id, actor_id)

The master key is checked with an encrypt/decrypt round trip before any
service is built, so a bad key fails at startup rather than on first read.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .access import SecretAccessService
from .approval import ApprovalWorkflow
from .audit import AuditLog
from .guardians import GuardianRegistry
from .models import utc_now
from .notifications import Notifier, OutcomeDispatcher
from .policy import AccessPolicyEvaluator
from .ratelimit import RateLimiter
from .repositories import Repositories
from .resources import ResourceService
from .vault.config import VaultConfig, validate_encryption_config
from .vault.secret_store import SecretStore

logger = logging.getLogger("guardian_vault")


@dataclass
class VaultServices:
    config: VaultConfig
    repositories: Repositories
    audit: AuditLog
    registry: GuardianRegistry
    resources: ResourceService
    dispatcher: OutcomeDispatcher
    workflow: ApprovalWorkflow
    evaluator: AccessPolicyEvaluator
    store: SecretStore
    rate_limiter: RateLimiter
    access: SecretAccessService


def build_services(
    config: VaultConfig,
    repositories: Repositories,
    notifier: Optional[Notifier] = None,
    now: Callable[[], datetime] = utc_now,
    clock: Callable[[], float] = time.monotonic,
) -> VaultServices:
    """Wire every service over ``repositories`` using ``config``.

    Args:
        config: Validated settings (key, rate limit, approval TTL).
        repositories: In-memory or PostgreSQL repository bundle.
        notifier: Guardian notification channel (default: log only).
        now: Wall clock for audit entries and request expiry.
        clock: Monotonic clock for the rate limiter.

    Raises:
        ConfigurationError: If the configured key fails the round trip.
    """
    validate_encryption_config(config.encryption_key)

    audit = AuditLog(repositories.audit, now=now)
    registry = GuardianRegistry(repositories.resources, repositories.guardians, audit=audit)
    dispatcher = OutcomeDispatcher(notifier)
    workflow = ApprovalWorkflow(
        repositories,
        dispatcher=dispatcher,
        audit=audit,
        now=now,
        default_ttl=config.default_request_ttl,
    )
    evaluator = AccessPolicyEvaluator(repositories.approvals, now=now)
    store = SecretStore(repositories.fields, repositories.totp, config.encryption_key)
    limiter = RateLimiter(
        window=config.rate_limit_window,
        max_requests=config.rate_limit_max_requests,
        clock=clock,
    )
    access = SecretAccessService(
        repositories.resources, registry, evaluator, workflow, store, limiter, audit,
    )
    logger.info(
        "Vault services ready (rate limit %d per %.0fs, approval TTL %s)",
        config.rate_limit_max_requests,
        config.rate_limit_window,
        config.default_request_ttl or "none",
    )
    return VaultServices(
        config=config,
        repositories=repositories,
        audit=audit,
        registry=registry,
        resources=ResourceService(repositories),
        dispatcher=dispatcher,
        workflow=workflow,
        evaluator=evaluator,
        store=store,
        rate_limiter=limiter,
        access=access,
    )
