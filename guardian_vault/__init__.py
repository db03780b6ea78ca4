"""Guardian Vault.

Shared credentials (TOTP seeds, named secrets) encrypted at rest, readable
immediately by a resource's guardians and by anyone else only after a
guardian approved their request.
"""
from .version import __version__
from .exceptions import (
    ConfigurationError,
    DecryptionError,
    DomainError,
    VaultError,
)
from .models import (
    AccessDecision,
    ApprovalDecision,
    ApprovalRequest,
    ApprovalStatus,
    FieldAccessContext,
    GuardianRole,
    ManualRequestContext,
    Outcome,
    TotpAccessContext,
)
from .repositories import Repositories
from .memory import create_memory_repositories
from .audit import AuditLog
from .ratelimit import RateLimiter
from .notifications import LogNotifier, Notifier, OutcomeDispatcher, WebhookNotifier
from .guardians import GuardianRegistry
from .resources import ResourceService
from .approval import ApprovalWorkflow
from .policy import AccessPolicyEvaluator
from .access import AccessResult, SecretAccessService
from .vault import SecretStore, VaultConfig
from .services import VaultServices, build_services

__all__ = [
    "__version__",
    "VaultError",
    "ConfigurationError",
    "DecryptionError",
    "DomainError",
    "AccessDecision",
    "ApprovalDecision",
    "ApprovalRequest",
    "ApprovalStatus",
    "FieldAccessContext",
    "TotpAccessContext",
    "ManualRequestContext",
    "GuardianRole",
    "Outcome",
    "Repositories",
    "create_memory_repositories",
    "AuditLog",
    "RateLimiter",
    "Notifier",
    "LogNotifier",
    "WebhookNotifier",
    "OutcomeDispatcher",
    "GuardianRegistry",
    "ResourceService",
    "ApprovalWorkflow",
    "AccessPolicyEvaluator",
    "SecretAccessService",
    "AccessResult",
    "SecretStore",
    "VaultConfig",
    "VaultServices",
    "build_services",
]
