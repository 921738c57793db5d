from __future__ import annotations


class DomainError(Exception):
    """Base for errors raised by the dine-in managers; carries its HTTP status."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(DomainError):
    status_code = 404

    def __init__(self, entity: str, entity_id: str | None = None):
        msg = f"{entity} not found" if entity_id is None else f"{entity} {entity_id} not found"
        super().__init__(msg)
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(DomainError):
    status_code = 400


class InvalidStateError(DomainError):
    status_code = 409


class ConflictError(DomainError):
    status_code = 409


class GatewayError(DomainError):
    """The payment gateway rejected a call or could not be reached."""

    status_code = 502

    def __init__(self, message: str, code: str | None = None, upstream_status: int | None = None):
        super().__init__(message)
        self.code = code
        self.upstream_status = upstream_status
