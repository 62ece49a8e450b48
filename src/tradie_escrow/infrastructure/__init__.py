"""Store, outbox and database adapters."""
