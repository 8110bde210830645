# timbrado/domain/ports/pac_gateway.py
from abc import ABC, abstractmethod
import threading
from decimal import Decimal
from typing import Optional

from timbrado.domain.models.results import (
    CancelResult,
    DocumentStatus,
    RegistrationResult,
    RegistrationStatus,
    StampResult,
    UploadResult,
)
from timbrado.domain.models.stamping import FiscalStamp, SignedDocument


class PACGateway(ABC):
    """
    Contrato con el Proveedor Autorizado de Certificación (PAC).
    Ninguna operación reintenta por su cuenta: la política de reintentos
    pertenece al orquestador.
    """

    @abstractmethod
    def stamp(self, signed: SignedDocument, idempotency_key: str, cancel_event: Optional[threading.Event] = None) -> StampResult:
        """
        Envía el CFDI firmado. Nunca lanza excepciones de transporte:
        las reporta como TransientFailure. Si `cancel_event` se activa con
        la llamada en curso, la abandona y lanza CallInterrupted.
        """
        pass

    @abstractmethod
    def query_stamp(self, signed_xml: bytes, idempotency_key: str) -> Optional[FiscalStamp]:
        """
        Consulta si el PAC ya timbró ese XML. Retorna None si no existe.
        Lanza TransportError si no se pudo consultar.
        """
        pass

    @abstractmethod
    def cancel(self, uuid: str, tax_id: str, reason: str, substitution_uuid: Optional[str] = None) -> CancelResult:
        """Solicita la cancelación de un CFDI timbrado. Lanza TransportError ante fallas de red."""
        pass

    @abstractmethod
    def register_tax_id(self, tax_id: str) -> RegistrationResult:
        """Da de alta al emisor en la cuenta del PAC."""
        pass

    @abstractmethod
    def registration_status(self, tax_id: str) -> RegistrationStatus:
        """Consulta si el emisor está dado de alta y activo."""
        pass

    @abstractmethod
    def upload_credential(self, tax_id: str, certificate_b64: str, key_b64: str, passphrase: str) -> UploadResult:
        """Carga el CSD del emisor en el PAC."""
        pass

    @abstractmethod
    def document_status(self, uuid: str, emitter_tax_id: str, receiver_tax_id: str, total: Decimal) -> DocumentStatus:
        """Consulta el estatus del CFDI ante el SAT."""
        pass
