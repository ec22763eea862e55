"""
Error taxonomy for the image backup controller.

Every failure raised inside a reconciliation pass is one of these. The
worker loop only needs to know whether an error is retryable and whether it
is a permanent configuration problem.
"""

from typing import Optional


class ControllerError(Exception):
    """Base class for all controller errors"""
    retryable = True
    permanent = False


class NotFound(ControllerError):
    """The requested cluster object does not exist"""
    retryable = False


class TransientInfraError(ControllerError):
    """Network, API or registry hiccup that is expected to go away"""


class ClusterAPIError(TransientInfraError):
    pass


class UpdateConflict(TransientInfraError):
    """The object changed underneath us (HTTP 409)"""


class UpdateFailed(TransientInfraError):
    pass


class SecretCreateFailed(TransientInfraError):
    pass


class RegistryUnreachable(TransientInfraError):
    pass


class PushFailure(TransientInfraError):
    pass


class AuthFailure(ControllerError):
    """Registry rejected our credentials"""


class PermanentConfigError(ControllerError):
    """Bad configuration or input that retrying alone will not fix"""
    permanent = True


class InvalidReference(PermanentConfigError):
    pass


class ImageNotFound(PermanentConfigError):
    """Source registry has no manifest for the reference"""


class ReconcileError(ControllerError):
    """Wraps a step failure with the work item and step it happened in"""

    def __init__(self, item, step: str, cause: Optional[BaseException] = None):
        self.item = item
        self.step = step
        self.cause = cause
        super().__init__(f"{item}: {step} failed: {cause}")

    @property
    def retryable(self) -> bool:
        return getattr(self.cause, "retryable", True)

    @property
    def permanent(self) -> bool:
        return getattr(self.cause, "permanent", False)
