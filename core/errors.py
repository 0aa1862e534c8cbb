from fastapi import HTTPException


class VMError(HTTPException):
    """
    Base class for every failure raised by the provisioning core.

    Errors carry an HTTP status so the API layer can re-raise them as-is,
    while the CLI only looks at ``detail``.
    """

    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=self.status_code, detail=detail)

    def __str__(self) -> str:
        return str(self.detail)


class BackendError(VMError):
    """libvirt call failed for a reason other than a missing object."""

    status_code = 500


class NotFoundError(VMError):
    """A domain, volume or address does not exist."""

    status_code = 404


class PreconditionError(VMError):
    """The requested operation is not valid for the current VM state."""

    status_code = 409


class DeadlineExceeded(VMError):
    status_code = 504


class RemoteExecutionError(VMError):
    """A command, copy or container failed on one provisioning target."""

    status_code = 502
