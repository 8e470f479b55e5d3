from __future__ import annotations


class ApiError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationRequired(ApiError):
    status_code = 401


class AuthenticationInvalid(ApiError):
    status_code = 403


class InvalidCredentials(ApiError):
    status_code = 401


class Forbidden(ApiError):
    status_code = 403


class NotFound(ApiError):
    status_code = 404


class ValidationFailed(ApiError, ValueError):
    status_code = 400


class StorageFailure(ApiError):
    status_code = 500
