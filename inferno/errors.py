"""Exception hierarchy for the burn pipeline."""
from typing import Any, Dict, Optional


class InfernoError(Exception):
    """Base exception for all pipeline errors."""
    code: str = "SYS_001"

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ConfigurationError(InfernoError):
    """Missing or malformed configuration. Fatal at startup."""
    code = "CFG_001"


class RemoteError(InfernoError):
    """Remote ledger call failed."""
    code = "EXT_001"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        reference: Optional[str] = None,
        retryable: Optional[bool] = None,
        details: Dict[str, Any] = None,
    ):
        details = dict(details or {})
        if reference:
            details["reference"] = reference
        super().__init__(message, details)
        self.reference = reference
        if retryable is not None:
            self.retryable = retryable


class RemoteTimeout(RemoteError):
    """Remote call exceeded its timeout. The action may still land later."""
    code = "NET_002"
    retryable = True


class RemoteRejected(RemoteError):
    """Remote ledger rejected the action."""
    code = "EXT_002"


class VerificationUnavailable(InfernoError):
    """Could not reach a verdict on whether a reference finalized."""
    code = "NET_003"

    def __init__(self, message: str, reference: Optional[str] = None):
        super().__init__(message, {"reference": reference})
        self.reference = reference


class DuplicateReference(InfernoError):
    """An action record with this external reference already exists."""
    code = "DB_002"

    def __init__(self, reference: str):
        super().__init__(f"Duplicate external reference: {reference}", {"reference": reference})
        self.reference = reference


class InsufficientFunds(InfernoError):
    """Operating wallet holds less than the action requires."""
    code = "TRADE_001"

    def __init__(self, message: str, required: int = 0, available: int = 0):
        super().__init__(message, {"required": required, "available": available})
        self.required = required
        self.available = available


class QuoteUnavailable(InfernoError):
    """A single quote source failed to produce a usable price."""
    code = "PROV_001"

    def __init__(self, message: str, source: str = None):
        super().__init__(message, {"source": source})
        self.source = source
