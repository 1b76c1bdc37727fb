from __future__ import annotations


class CoreError(Exception):
    code = "CoreError"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationError(CoreError):
    code = "ValidationError"
    status_code = 400


class DuplicateParticipant(ValidationError):
    code = "DuplicateParticipant"


class UnregisteredIdentifier(ValidationError):
    code = "UnregisteredIdentifier"


class SelfInvite(ValidationError):
    code = "SelfInvite"


class AuthorizationError(CoreError):
    code = "AuthorizationError"
    status_code = 403


class NotFound(CoreError):
    code = "NotFound"
    status_code = 404


class StateConflict(CoreError):
    code = "StateConflict"
    status_code = 409


class SessionInactive(StateConflict):
    code = "SessionInactive"


class AlreadyResolved(StateConflict):
    code = "AlreadyResolved"


class InsufficientFunds(CoreError):
    code = "InsufficientFunds"
    status_code = 402


class CredentialMismatch(CoreError):
    code = "CredentialMismatch"
    status_code = 401
