"""Test doubles for coordinator collaborators."""

from coordinator.testing.escrow import FakeEscrowClient, LedgerCall

__all__ = ["FakeEscrowClient", "LedgerCall"]
