"""
Error taxonomy for the messaging automation core.

Verification errors are terminal for the request that produced them. Every
other error here is isolated to one item (an entry, a rule, an AI attempt)
and is logged rather than propagated to the webhook caller.
"""
from __future__ import annotations


class VerificationError(ValueError):
    """Inbound webhook could not be authenticated."""

    code = "verification_failed"


class MalformedToken(VerificationError):
    code = "malformed_token"


class InvalidSignature(VerificationError):
    code = "invalid_signature"


class InvalidPayload(VerificationError):
    code = "invalid_payload"


class NormalizationSkipped(Exception):
    """One webhook entry could not be turned into an event; the batch continues."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class RuleExecutionFailed(RuntimeError):
    def __init__(self, rule_id: str, message: str) -> None:
        super().__init__(f"rule {rule_id}: {message}")
        self.rule_id = rule_id


class ProviderCallFailed(RuntimeError):
    """AI provider call failed or timed out; no usage is recorded."""


class ChannelSendFailed(RuntimeError):
    """Outbound message could not be delivered to the channel API."""


class RateLimited(RuntimeError):
    """Advisory: the caller should back off for ``retry_after`` seconds."""

    def __init__(self, key: str, retry_after: float) -> None:
        super().__init__(f"rate limited: {key}")
        self.key = key
        self.retry_after = retry_after
