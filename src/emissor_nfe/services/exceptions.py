from __future__ import annotations


class CredentialError(Exception):
    """The tenant's certificate bundle cannot be used for signing or mTLS."""


class InvalidCertificateBundle(CredentialError):
    """The uploaded data is not a readable PKCS#12 container."""


class WrongPassword(CredentialError):
    """The PKCS#12 container is well-formed but the password does not open it."""


class NoCertificateFound(CredentialError):
    pass


class NoPrivateKeyFound(CredentialError):
    pass


class CertificateExpired(CredentialError):
    def __init__(self, message: str, not_after=None) -> None:
        super().__init__(message)
        self.not_after = not_after


class BusinessRuleError(Exception):
    """A local rule forbids the requested operation; nothing was sent to SEFAZ."""

    def __init__(self, message: str, code: str = "business_rule") -> None:
        super().__init__(message)
        self.code = code


class SubmissionInFlight(BusinessRuleError):
    """Another call already holds the submission guard for this document."""

    def __init__(self, document_id: str) -> None:
        super().__init__(
            f"Já existe um envio em andamento para o documento {document_id}",
            code="in_flight",
        )
        self.document_id = document_id


class TransportError(Exception):
    """SEFAZ could not be reached or answered in an unexpected shape."""

    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code
