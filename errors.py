# errors.py
"""Claim / payout error taxonomy. `kind` and `user_message` feed the HTTP layer."""

from __future__ import annotations
from typing import Optional


class ClaimError(Exception):
    kind = "claim_error"
    user_message = "Failed to claim reward. Please try again."

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        if user_message:
            self.user_message = user_message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "error": self.user_message, "technical_error": str(self)}


class NotFound(ClaimError):
    kind = "not_found"
    user_message = "Game entry not found."


class Forbidden(ClaimError):
    kind = "forbidden"
    user_message = "You can only claim rewards for your own wallet address."


class NotEligible(ClaimError):
    kind = "not_eligible"
    user_message = "You are not eligible for a reward in this game."


class AlreadyClaimed(ClaimError):
    kind = "already_claimed"
    user_message = "This reward has already been claimed."

    def __init__(self, entry_id: str, transaction_ref: Optional[str]):
        super().__init__(f"Reward already claimed for {entry_id}. Transaction hash: {transaction_ref or 'N/A'}")
        self.transaction_ref = transaction_ref

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["transaction_signature"] = self.transaction_ref
        return d


class InvalidAmount(ClaimError):
    kind = "invalid_amount"
    user_message = "This reward has no claimable amount."


class ConfigurationError(ClaimError):
    kind = "configuration_error"
    user_message = "System configuration error. Please contact support."


class InsufficientFunds(ClaimError):
    kind = "insufficient_funds"
    user_message = "Insufficient funds in the prize pool. Please contact support."


class PayoutError(ClaimError):
    kind = "payout_error"
    user_message = "The payout transaction could not be sent. Please try again."


class RollbackFailed(ClaimError):
    """Transfer failed and the claim lock could not be released. Needs manual repair."""
    kind = "rollback_failed"
    user_message = "Your claim is stuck and needs manual review. Please contact support."
