from typing import Optional


class ServiceError(ValueError):
    code = "error"
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotAuthenticated(ServiceError):
    code = "not_authenticated"
    default_message = "Not authenticated"


class NotFound(ServiceError):
    code = "not_found"
    default_message = "Not found"


class Unauthorized(ServiceError):
    code = "unauthorized"
    default_message = "Unauthorized"


class ValidationFailed(ServiceError):
    code = "validation_error"
    default_message = "Invalid input"


class Conflict(ServiceError):
    code = "conflict"
    default_message = "Conflict"


class AlreadyMember(Conflict):
    code = "already_member"
    default_message = "You are already a member of this group"


class Expired(ServiceError):
    code = "expired"
    default_message = "This invite has expired"


class CannotRemoveCreator(ServiceError):
    code = "cannot_remove_creator"
    default_message = (
        "The group creator can only leave once all other members have left"
    )


class OperationFailed(ServiceError):
    code = "operation_failed"
    default_message = "Operation failed"

    def __init__(
        self, message: Optional[str] = None, *, retryable: bool = False
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
