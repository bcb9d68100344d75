from __future__ import annotations


class VaultOpsError(Exception):
    """Base error for vaultops."""

    code = "VAULTOPS_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(VaultOpsError):
    """A precondition was violated (bad id, invalid transition, policy rejection)."""

    code = "VALIDATION_ERROR"


class ConflictError(ValidationError):
    """Another operation of the same kind is already in flight for the client."""

    code = "CONFLICT"


class NotFoundError(VaultOpsError):
    """Client, job or backup does not exist."""

    code = "NOT_FOUND"


class ProvisioningError(VaultOpsError):
    """Provisioning tool exited nonzero or could not be spawned."""

    code = "PROVISIONING_FAILED"

    def __init__(
        self,
        message: str,
        *,
        command: str | None = None,
        exit_code: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.output = output


class ProviderError(VaultOpsError):
    """A cloud provider call failed; the reason is opaque to the core."""

    code = "PROVIDER_FAILED"

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.reason = message
