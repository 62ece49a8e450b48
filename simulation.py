#!/usr/bin/env python3
"""Tradie Escrow: End-to-End Simulation.

Runs the escrow lifecycle against the mock payment gateway:

    Scenario 1: Happy Path
        - Customer posts a job, a tradie quotes, the customer accepts
        - Hold is confirmed immediately -> job IN_PROGRESS
        - Tradie submits work, customer releases -> COMPLETED + RELEASED

    Scenario 2: Webhook-Confirmed Hold and Dispute
        - Hold needs client confirmation -> payment stays PENDING
        - Gateway webhook confirms it (delivered twice; second is a duplicate)
        - Customer disputes, admin refunds -> CANCELLED + REFUNDED

    Scenario 3: Capture Failure
        - Gateway declines the first capture -> funds remain held
        - Customer retries the release -> COMPLETED

Usage:
    # In-memory stores (instant, no Docker):
    uv run python simulation.py

    # SQLite file via the SQL stores:
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --scenario 2
"""

from __future__ import annotations

import argparse
import asyncio
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from tradie_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from tradie_escrow.bootstrap import ServiceContainer, build_container  # noqa: E402
from tradie_escrow.config import Settings  # noqa: E402
from tradie_escrow.domain.exceptions import GatewayError  # noqa: E402
from tradie_escrow.gateways.mock import MockGateway  # noqa: E402

if TYPE_CHECKING:
    import uuid

CUSTOMER = "cust_alice"
TRADIE = "tradie_bob"
ADMIN = "admin_ops"


def build_settings(use_sqlite: bool, workdir: Path) -> Settings:
    if use_sqlite:
        return Settings(
            app_env="test",
            store_backend="sql",
            database_url=f"sqlite+aiosqlite:///{workdir / 'simulation.db'}",
            outbox_backend="memory",
            gateway_mode="mock",
        )
    return Settings(
        app_env="test", store_backend="memory", outbox_backend="memory", gateway_mode="mock"
    )


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


async def print_status(container: ServiceContainer, job_id: uuid.UUID) -> None:
    summary = await container.orchestrator().get_escrow_summary(job_id)
    payment = summary["payment"] or {}
    print(f"  Job: {summary['job_status']}")
    if payment:
        print(
            f"  Payment: {payment['status']} "
            f"({payment['amount']} {payment['currency']}, ref {payment['gateway_reference']})"
        )


async def print_audit_trail(container: ServiceContainer, job_id: uuid.UUID) -> None:
    """Print the full audit trail for a job."""
    events = await container.orchestrator().get_events(job_id)
    print("\n  Audit Trail:")
    for i, evt in enumerate(events, 1):
        old = evt.old_status or "-"
        print(f"    {i}. [{evt.event_type}] {old} -> {evt.new_status} (by {evt.actor})")
    print()


async def post_job_with_quote(
    container: ServiceContainer, title: str, price: int
) -> tuple[uuid.UUID, uuid.UUID]:
    marketplace = container.marketplace()
    job = await marketplace.create_job(CUSTOMER, title, budget_min=price // 2, budget_max=price * 2)
    print(f"  Customer posted job {job.id}: {title}")
    proposal = await marketplace.submit_proposal(job.id, TRADIE, price, "Can start Monday")
    print(f"  Tradie quoted {price} (proposal {proposal.id})")
    return job.id, proposal.id


# ===========================================================================
# Scenario 1: Happy Path
# ===========================================================================
async def scenario_1_happy_path(settings: Settings) -> None:
    banner("SCENARIO 1: Happy Path")
    container = await build_container(settings, gateway=MockGateway())
    try:
        orchestrator = container.orchestrator()

        section("Step 1: Job and quote")
        job_id, proposal_id = await post_job_with_quote(container, "Fix leaking tap", 25_000)

        section("Step 2: Customer accepts and pays into escrow")
        hold = await orchestrator.accept_proposal(proposal_id, payer_id=CUSTOMER)
        print(f"  Payment {hold.payment_id}: {hold.payment_status}, job {hold.job_status}")

        section("Step 3: Tradie submits the work")
        await orchestrator.submit_work(job_id, provider_id=TRADIE)

        section("Step 4: Customer releases the funds")
        outcome = await orchestrator.release(job_id, requested_by=CUSTOMER)
        print(f"  Payment {outcome.payment_status}, job {outcome.job_status}")

        await print_status(container, job_id)
        await print_audit_trail(container, job_id)
    finally:
        await container.close()


# ===========================================================================
# Scenario 2: Webhook-Confirmed Hold and Dispute
# ===========================================================================
async def scenario_2_webhook_and_dispute(settings: Settings) -> None:
    banner("SCENARIO 2: Webhook-Confirmed Hold and Dispute")
    gateway = MockGateway(webhook_secret=settings.stripe_webhook_secret, auto_confirm=False)
    container = await build_container(settings, gateway=gateway)
    try:
        orchestrator = container.orchestrator()

        section("Step 1: Job and quote")
        job_id, proposal_id = await post_job_with_quote(container, "Rewire garage", 180_000)

        section("Step 2: Customer accepts; card needs confirmation")
        hold = await orchestrator.accept_proposal(proposal_id, payer_id=CUSTOMER)
        print(f"  Payment {hold.payment_status}, client token {hold.client_token}")
        await print_status(container, job_id)

        section("Step 3: Gateway webhook confirms the hold (delivered twice)")
        summary = await orchestrator.get_escrow_summary(job_id)
        reference = summary["payment"]["gateway_reference"]
        gateway.confirm(reference)
        payload, signature = gateway.build_event(
            "payment_intent.amount_capturable_updated", reference, event_id="evt_sim_hold"
        )
        for delivery in (1, 2):
            outcome = await orchestrator.apply_gateway_event(payload, signature)
            print(f"  Delivery {delivery}: {outcome}")
        await print_status(container, job_id)

        section("Step 4: Customer disputes, admin refunds")
        await orchestrator.raise_dispute(job_id, raised_by=CUSTOMER, reason="Left half done")
        outcome = await orchestrator.refund(
            job_id, reason="Dispute upheld", requested_by=ADMIN, admin_override=True
        )
        print(f"  Payment {outcome.payment_status}, job {outcome.job_status}")

        await print_audit_trail(container, job_id)
    finally:
        await container.close()


# ===========================================================================
# Scenario 3: Capture Failure
# ===========================================================================
async def scenario_3_capture_failure(settings: Settings) -> None:
    banner("SCENARIO 3: Capture Failure")
    gateway = MockGateway()
    container = await build_container(settings, gateway=gateway)
    try:
        orchestrator = container.orchestrator()

        section("Step 1: Job, quote, hold, work submitted")
        job_id, proposal_id = await post_job_with_quote(container, "Paint fence", 60_000)
        await orchestrator.accept_proposal(proposal_id, payer_id=CUSTOMER)
        await orchestrator.submit_work(job_id, provider_id=TRADIE)

        section("Step 2: Gateway declines the capture")
        gateway.fail_next("capture", message="processing_error")
        try:
            await orchestrator.release(job_id, requested_by=CUSTOMER)
        except GatewayError as exc:
            print(f"  Release failed: {exc.user_message}")
        await print_status(container, job_id)

        section("Step 3: Customer retries")
        outcome = await orchestrator.release(job_id, requested_by=CUSTOMER)
        print(f"  Payment {outcome.payment_status}, job {outcome.job_status}")

        await print_audit_trail(container, job_id)
    finally:
        await container.close()


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_webhook_and_dispute,
    3: scenario_3_capture_failure,
}


async def run(scenario: int = 0, use_sqlite: bool = False) -> None:
    with tempfile.TemporaryDirectory() as workdir:
        settings = build_settings(use_sqlite, Path(workdir))
        print("\n" + "#" * 70)
        print("  TRADIE ESCROW: SIMULATION")
        print(f"  Stores: {'SQLite' if use_sqlite else 'in-memory'}")
        print("#" * 70 + "\n")

        if scenario:
            if scenario not in SCENARIOS:
                print(f"Unknown scenario {scenario}. Available: {', '.join(map(str, SCENARIOS))}")
                return
            await SCENARIOS[scenario](settings)
            return

        for run_scenario in SCENARIOS.values():
            await run_scenario(settings)

        print("\n" + "=" * 70)
        print("  ALL SCENARIOS COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Tradie Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1, 2, or 3). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use the SQL stores on a temporary SQLite file.",
    )
    args = parser.parse_args()
    asyncio.run(run(args.scenario, use_sqlite=args.sqlite))
