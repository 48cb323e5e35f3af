"""Error taxonomy shared by the backend adapters and the stores.

``NetworkError`` is transient and safe to retry. ``ConflictError`` is resolved
by re-fetching, never surfaced to the user. ``PermissionDenied`` is terminal
for the attempted action. ``ValidationError`` is raised before any network
call is made.
"""


class MessagingError(RuntimeError):
    """Base class for every error raised by convosync."""


class NetworkError(MessagingError):
    """Backend or transport failure; retry with backoff."""


class FetchError(NetworkError):
    """A full load of the conversation list could not complete."""


class ConflictError(MessagingError):
    """A uniqueness constraint rejected an insert."""


class PermissionDenied(MessagingError):
    """The caller is not allowed to perform the action."""


class NotFoundError(MessagingError):
    """The addressed row does not exist."""


class ValidationError(MessagingError, ValueError):
    """Input rejected locally before reaching the backend."""


class UploadError(MessagingError):
    """Object storage refused or failed the upload."""
