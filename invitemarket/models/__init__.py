from invitemarket.models.base import Base  # noqa: F401

from invitemarket.models.listing import Listing  # noqa: F401
from invitemarket.models.transaction import Transaction  # noqa: F401
from invitemarket.models.idempotency import IdempotencyKey  # noqa: F401
from invitemarket.models.outbox import OutboxEvent  # noqa: F401
from invitemarket.models.audit_log import AuditLog  # noqa: F401
from invitemarket.models.resolved_address import ResolvedAddress  # noqa: F401
