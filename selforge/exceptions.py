"""Custom exception hierarchy for selforge."""


class SelforgeError(Exception):
    """Base for all selforge errors."""


class QuotaExceededError(SelforgeError):
    """An outbound model call was refused by a rate or quota ceiling."""


class SyntaxGateError(SelforgeError):
    """Content for a code file failed to parse."""

    def __init__(self, path: str, detail: str):
        super().__init__(f"{path}: {detail}")
        self.path = path
        self.detail = detail


class ProtocolError(SelforgeError):
    """An actor response was missing a required tag or was malformed."""


class LLMBackendError(SelforgeError):
    """The model backend failed for a reason other than quota."""


class LedgerOrderError(SelforgeError):
    """A ledger node was appended out of sequence."""


class CrossPathDiffError(SelforgeError):
    """Two ledger nodes for different files were compared."""


class StatusTransitionError(SelforgeError):
    """Invalid orchestrator status transition."""


class FetchError(SelforgeError):
    """The fetch proxy could not retrieve a URL."""


class StateFileError(SelforgeError):
    """A persisted state file or export bundle is unreadable or incomplete."""
