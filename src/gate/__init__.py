"""Admission and unlock checks run before any command touches stored data."""

from .access import AccessGate, Admission, UnlockOutcome, UnlockResult

__all__ = ["AccessGate", "Admission", "UnlockOutcome", "UnlockResult"]
