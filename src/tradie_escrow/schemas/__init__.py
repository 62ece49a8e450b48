"""Pydantic API schemas."""

from tradie_escrow.schemas.escrow import (
    AcceptProposalRequest,
    CancelJobRequest,
    CreateJobRequest,
    EscrowEventResponse,
    EscrowSummaryResponse,
    HealthResponse,
    HoldResponse,
    JobResponse,
    PaymentSummary,
    ProposalResponse,
    RaiseDisputeRequest,
    RefundRequest,
    RejectProposalRequest,
    ReleaseRequest,
    SettlementResponse,
    SubmitProposalRequest,
    SubmitWorkRequest,
    WebhookAck,
)

__all__ = [
    "AcceptProposalRequest",
    "CancelJobRequest",
    "CreateJobRequest",
    "EscrowEventResponse",
    "EscrowSummaryResponse",
    "HealthResponse",
    "HoldResponse",
    "JobResponse",
    "PaymentSummary",
    "ProposalResponse",
    "RaiseDisputeRequest",
    "RefundRequest",
    "RejectProposalRequest",
    "ReleaseRequest",
    "SettlementResponse",
    "SubmitProposalRequest",
    "SubmitWorkRequest",
    "WebhookAck",
]
