from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable, upper-case
    ``error_code`` that clients branch on. Failures are raised where they are
    detected and translated to a response envelope once, in
    ``tenantauth.api.error_handling``.
    """

    status_code: int = 400
    error_code: str = "BAD_REQUEST"
    default_message: str = "Bad request."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class WrongSignInCredentials(ServiceError):
    """Unknown email, wrong password, or disabled account (uniform on purpose)."""

    error_code = "WRONG_SIGN_IN_CREDENTIALS"
    default_message = "Wrong user email or password."

    def __init__(self, email: Optional[str] = None) -> None:
        super().__init__(detail={"email": email} if email else None)


class WrongSignInMethod(ServiceError):
    """Account exists but has no password set."""

    error_code = "WRONG_SIGN_IN_METHOD"
    default_message = (
        "You are trying to sign in by a different method than you signed up with."
    )


class InvalidEmail(ServiceError):
    error_code = "INVALID_EMAIL"

    def __init__(self, email: str) -> None:
        super().__init__(f"An invalid email provided: {email}", detail={"email": email})


class SignUpForbidden(ServiceError):
    status_code = 403
    error_code = "SIGN_UP_FORBIDDEN"
    default_message = "You are not allowed to sign up."


class ActionForbidden(ServiceError):
    status_code = 403
    error_code = "ACTION_FORBIDDEN"
    default_message = "You do not have permission to perform this action."


class AuthenticationRequired(ServiceError):
    status_code = 401
    error_code = "AUTHENTICATION_REQUIRED"
    default_message = "You must sign in first to access this resource."


class InvalidAuthState(ServiceError):
    error_code = "INVALID_AUTH_STATE"
    default_message = (
        "Invalid auth state. You might start the auth progress from another device."
    )


class InvalidEmailToken(ServiceError):
    error_code = "INVALID_EMAIL_TOKEN"
    default_message = "An invalid email token provided."


class EmailTokenNotFound(ServiceError):
    error_code = "EMAIL_TOKEN_NOT_FOUND"
    default_message = "The email token provided is not found."


class UnsupportedClientVersion(ServiceError):
    status_code = 403
    error_code = "UNSUPPORTED_CLIENT_VERSION"

    def __init__(self, client_version: Optional[str], required_version: str) -> None:
        super().__init__(
            f"Unsupported client with version [{client_version or 'unset_or_invalid'}], "
            f"required version is [{required_version}].",
            detail={
                "client_version": client_version,
                "required_version": required_version,
            },
        )


class UnknownOAuthProvider(ServiceError):
    error_code = "UNKNOWN_OAUTH_PROVIDER"

    def __init__(self, name: Optional[str]) -> None:
        super().__init__(
            f"Unknown authentication provider {name}.", detail={"name": name}
        )


class MissingOAuthQueryParameter(ServiceError):
    error_code = "MISSING_OAUTH_QUERY_PARAMETER"

    def __init__(self, name: str) -> None:
        super().__init__(f"Missing query parameter `{name}`.", detail={"name": name})


class OAuthStateExpired(ServiceError):
    error_code = "OAUTH_STATE_EXPIRED"
    default_message = "OAuth state expired, please try again."


class InvalidOAuthCallbackState(ServiceError):
    error_code = "INVALID_OAUTH_CALLBACK_STATE"
    default_message = "Invalid callback state parameter."


class OAuthExchangeFailed(ServiceError):
    """The provider rejected the authorization code or returned no identity."""

    status_code = 502
    error_code = "OAUTH_EXCHANGE_FAILED"
    default_message = "Failed to complete sign in with the provider."


__all__ = [
    "ServiceError",
    "WrongSignInCredentials",
    "WrongSignInMethod",
    "InvalidEmail",
    "SignUpForbidden",
    "ActionForbidden",
    "AuthenticationRequired",
    "InvalidAuthState",
    "InvalidEmailToken",
    "EmailTokenNotFound",
    "UnsupportedClientVersion",
    "UnknownOAuthProvider",
    "MissingOAuthQueryParameter",
    "OAuthStateExpired",
    "InvalidOAuthCallbackState",
    "OAuthExchangeFailed",
]
