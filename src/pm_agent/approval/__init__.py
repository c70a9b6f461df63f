"""Approval-gated actions: pending store, queue lifecycle and `gh` executor."""
