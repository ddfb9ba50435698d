from __future__ import annotations


class ServiceError(Exception):
    """Base class for failures a panel handler turns into a notice."""


class NotFound(ServiceError):
    def __init__(self, kind: str, item_id: object = None) -> None:
        self.kind = kind
        self.item_id = item_id
        super().__init__(f"{kind} not found")


class Forbidden(ServiceError):
    def __init__(self, kind: str = "resource") -> None:
        self.kind = kind
        super().__init__(f"Not allowed to modify {kind}")


class Conflict(ServiceError):
    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or reason)


class InvalidState(ServiceError):
    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or reason)


class Unavailable(ServiceError):
    """A backing service (broker, provider) refused the request."""

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message or reason)


class ValidationFailed(ServiceError):
    def __init__(self, errors: dict[str, list[str]]) -> None:
        self.errors = {field: list(messages) for field, messages in errors.items()}
        super().__init__(self.format())

    def format(self) -> str:
        parts = [
            f"{field}: {', '.join(messages)}"
            for field, messages in self.errors.items()
            if messages
        ]
        return "; ".join(parts) or "Invalid input"


class Validator:
    """Collects per-field messages; ``check()`` raises once at the end."""

    def __init__(self) -> None:
        self.errors: dict[str, list[str]] = {}

    def add(self, field: str, message: str) -> None:
        self.errors.setdefault(field, []).append(message)

    def required(self, field: str, value: object) -> None:
        if value is None or (isinstance(value, str) and not value.strip()):
            self.add(field, "can't be blank")

    def inclusion(self, field: str, value: object, allowed) -> None:
        if value is not None and value not in allowed:
            self.add(field, "is invalid")

    def positive_int(self, field: str, value: object) -> None:
        if value is None:
            return
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            self.add(field, "must be greater than 0")

    def check(self) -> None:
        if self.errors:
            raise ValidationFailed(self.errors)
