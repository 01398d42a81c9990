from __future__ import annotations

import typing as t


class BuddyError(Exception):
    status_code: int = 500
    message: str = "Unexpected error"

    def __init__(self, detail: str | None = None, *, message: str | None = None) -> None:
        super().__init__(detail or message or self.message)
        if message:
            self.message = message

    def to_json(self) -> dict[str, t.Any]:
        return {"error": self.message}


class InvalidPayloadError(BuddyError):
    status_code = 400
    message = "Invalid request"

    def __init__(self, details: dict[str, str], *, message: str | None = None) -> None:
        super().__init__(f"invalid fields: {sorted(details)}", message=message)
        self.details = details

    def to_json(self) -> dict[str, t.Any]:
        return {"error": self.message, "details": self.details}


class UnparseableAnswerError(BuddyError):
    status_code = 422
    message = "We couldn't find a number in your answer. Please write it as a number, like 12, 3/4 or 25%."


class NonNumericAnswerError(BuddyError):
    status_code = 422
    message = "The generated answer could not be stored as a number."


class SessionNotFoundError(BuddyError):
    status_code = 404
    message = "Session not found"


class GenerationError(BuddyError):
    """The generative backend returned nothing usable for an operation."""

    status_code = 500
    message = "The tutor could not produce a response. Please try again."

    def __init__(self, detail: str, *, operation: str | None = None, model: str | None = None) -> None:
        super().__init__(detail)
        self.operation = operation
        self.model = model


class NotConfiguredError(BuddyError):
    status_code = 500

    def __init__(self, backend: str, detail: str) -> None:
        super().__init__(detail, message=f"{backend} is not configured.")
        self.backend = backend
