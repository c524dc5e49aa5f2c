"""
mgit_server/errors.py

Failure taxonomy of the login subsystem.

Every AuthError carries a machine-readable `reason` and the HTTP status it
maps to. main.py renders them as {"status": "error", "reason": ...}.

Enrichment failures are EnrichmentError subclasses; they never leave
metadata.py.
"""


class AuthError(Exception):
    status_code = 400
    reason = "Authentication failed"

    def __init__(self, reason: str | None = None):
        if reason is not None:
            self.reason = reason
        super().__init__(self.reason)


class MalformedAssertion(AuthError):
    reason = "Invalid event format"


class InvalidSignature(AuthError):
    reason = "Invalid signature"


class ChallengeNotFound(AuthError):
    reason = "Challenge not found"


class ChallengeKindMismatch(AuthError):
    reason = "Invalid challenge type"


class AlreadyVerified(AuthError):
    status_code = 409
    reason = "Challenge already verified"


class MissingToken(AuthError):
    status_code = 401
    reason = "No authentication token provided"


class InvalidToken(AuthError):
    status_code = 403
    reason = "Invalid token"


class ExpiredToken(AuthError):
    status_code = 403
    reason = "Token expired"


class EnrichmentError(Exception):
    pass


class MetadataFetchTimeout(EnrichmentError):
    pass


class UpstreamUnavailable(EnrichmentError):
    pass
