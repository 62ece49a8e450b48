"""Tradie Escrow: escrow payments and job lifecycle for a trades marketplace."""

__version__ = "0.1.0"
