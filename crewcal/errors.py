from __future__ import annotations


class CrewcalError(Exception):
    kind = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(CrewcalError):
    kind = "validation"


class DuplicateDateError(ValidationError):
    def __init__(self, message: str, dates: list[str] | None = None) -> None:
        super().__init__(message)
        self.dates = list(dates or [])


class InvalidRangeError(ValidationError):
    pass


class InvalidStateError(ValidationError):
    """Stored status is not part of the active booking cycle."""


class UnsupportedStatusError(ValidationError):
    """Requested target status is not a valid booking status."""


class DuplicateAssignmentError(CrewcalError):
    kind = "conflict"


class NotFoundError(CrewcalError):
    kind = "not_found"

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class IntegrationError(CrewcalError):
    kind = "integration"


class OAuthError(IntegrationError):
    pass


class TokenRefreshError(IntegrationError):
    pass


class ProviderError(IntegrationError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404
