from typing import Dict, List, Optional


class ShelterError(Exception):
    """Base class for every error the admin core reports."""


class ValidationError(ShelterError):
    """Local, pre-submission failure. Never sent to the backend."""

    def __init__(self, errors: Dict[str, str]):
        self.errors = dict(errors)
        summary = "; ".join(f"{field}: {message}" for field, message in self.errors.items())
        super().__init__(summary or "Invalid input")


class ResourceError(ShelterError):
    """A backend call failed. `collection` names the table involved, if known."""

    def __init__(self, message: str, collection: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.collection = collection


class TransportError(ResourceError):
    """Network or availability failure; the user has to re-trigger the action."""


class PolicyError(ResourceError):
    """Permission or constraint violation reported by the backend (message kept verbatim)."""


def describe_failures(failed: Dict[str, ResourceError], skipped: Optional[List[str]] = None) -> str:
    text = ", ".join(f"{name} ({err.message})" for name, err in failed.items())
    if skipped:
        text += f"; not attempted: {', '.join(skipped)}"
    return text


class WriteFailedError(ResourceError):
    """Every write an action attempted failed, so nothing was applied."""

    def __init__(self, action: str, failed: Dict[str, ResourceError], skipped: Optional[List[str]] = None):
        self.action = action
        self.failed = dict(failed)
        self.skipped = list(skipped or [])
        super().__init__(f"{action} failed on {describe_failures(self.failed, self.skipped)}. Nothing was changed.")

    @property
    def failed_collections(self) -> List[str]:
        return list(self.failed.keys())


class PartialFailureError(ShelterError):
    """Some of the writes a single action needed went through, others did not.

    Nothing is rolled back, so the records behind one logical entity may now
    disagree with each other.
    """

    def __init__(
        self,
        action: str,
        succeeded: List[str],
        failed: Dict[str, ResourceError],
        skipped: Optional[List[str]] = None,
    ):
        self.action = action
        self.succeeded = list(succeeded)
        self.failed = dict(failed)
        self.skipped = list(skipped or [])
        super().__init__(self.describe())

    @property
    def failed_collections(self) -> List[str]:
        return list(self.failed.keys())

    def describe(self) -> str:
        failed = describe_failures(self.failed)
        tail = f"; not attempted: {', '.join(self.skipped)}" if self.skipped else ""
        return (
            f"{self.action} partially applied: failed on {failed}; "
            f"succeeded on {', '.join(self.succeeded)}{tail}. "
            "Records may need manual reconciliation."
        )


class ControllerBusyError(ShelterError):
    """A load or mutation is already running for this section."""


class NotFoundError(ShelterError):
    """No record or entity matches the requested key."""
