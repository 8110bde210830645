# timbrado/domain/errors.py
from typing import Optional


class StampingError(Exception):
    """Error base de todo el subsistema de timbrado."""


# --- Errores de preparación (nunca llegan a la red) ---

class PreparationError(StampingError):
    """El documento no pudo convertirse en un CFDI firmado."""


class CanonicalizationError(PreparationError):
    """Falta un campo requerido, el XML es inválido o no existe la XSLT de la versión."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class SigningError(PreparationError):
    """La llave privada no pudo descifrarse o la firma no pudo generarse."""


class SignatureVerificationError(SigningError):
    """El sello generado no verifica contra el certificado."""


# --- Errores de credenciales (CSD) ---

class CredentialError(StampingError):
    pass


class CredentialNotFoundError(CredentialError):
    pass


class CredentialExpiredError(CredentialError):
    pass


class CredentialMismatchError(CredentialError):
    pass


class CredentialFormatError(CredentialError):
    pass


class CredentialAlreadyRegisteredError(CredentialError):
    pass


# --- Errores de comunicación con el PAC ---

class TransportError(StampingError):
    """Timeout, error de conexión o respuesta ilegible del PAC."""


class CallInterrupted(StampingError):
    """El solicitante canceló mientras la llamada al PAC seguía en curso."""


class AuthorityRejection(StampingError):
    """Rechazo definitivo del PAC o del SAT."""

    def __init__(self, code: str, message: str):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message


class RetriesExhausted(StampingError):
    def __init__(self, attempts: int, last_reason: str):
        super().__init__(f"Se agotaron {attempts} intentos de timbrado: {last_reason}")
        self.attempts = attempts
        self.last_reason = last_reason


class InvalidTransitionError(StampingError):
    def __init__(self, current, target):
        super().__init__(f"Transición inválida: {current} -> {target}")
        self.current = current
        self.target = target


class InvalidCancellationRequest(StampingError):
    """Motivo de cancelación fuera del catálogo o sin el UUID sustituto."""
