"""Database infrastructure: engine, ORM models, and SQL record stores."""

from tradie_escrow.infrastructure.database.engine import (
    close_db,
    get_session_factory,
    init_db,
    ping_db,
)
from tradie_escrow.infrastructure.database.orm_models import (
    Base,
    EscrowEventRow,
    EscrowPaymentRow,
    JobRow,
    ProposalRow,
    ProviderPayoutAccountRow,
)
from tradie_escrow.infrastructure.database.repositories import (
    SqlEventLog,
    SqlJobStore,
    SqlPaymentStore,
    SqlProposalStore,
    SqlProviderAccountStore,
)

__all__ = [
    "Base",
    "EscrowEventRow",
    "EscrowPaymentRow",
    "JobRow",
    "ProposalRow",
    "ProviderPayoutAccountRow",
    "SqlEventLog",
    "SqlJobStore",
    "SqlPaymentStore",
    "SqlProposalStore",
    "SqlProviderAccountStore",
    "get_session_factory",
    "init_db",
    "close_db",
    "ping_db",
]
