# timbrado/domain/models/fiscal_document.py
import hashlib
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Espacio de nombres fijo para derivar las llaves de idempotencia
IDEMPOTENCY_NAMESPACE = uuid.UUID("6f1c7a52-3c1e-4b8e-9d0a-5d2f0c4b7e11")


class Emitter(BaseModel):
    tax_id: str
    name: str
    tax_regime: str

    model_config = ConfigDict(frozen=True)


class Receiver(BaseModel):
    tax_id: str
    name: str
    postal_code: str
    tax_regime: str
    cfdi_use: str = "G03"

    model_config = ConfigDict(frozen=True)


class TaxLine(BaseModel):
    """
    Traslado o retención. En las retenciones globales solo se usan
    `tax` e `amount`; en los traslados exentos no hay tasa ni importe.
    """
    tax: str = "002"
    base: Optional[Decimal] = None
    factor_type: Optional[str] = "Tasa"
    rate: Optional[Decimal] = None
    amount: Optional[Decimal] = None

    model_config = ConfigDict(frozen=True)


class ConceptLine(BaseModel):
    product_code: str
    quantity: Decimal
    unit_code: str
    description: str
    unit_value: Decimal
    amount: Decimal
    id_number: Optional[str] = None
    unit: Optional[str] = None
    discount: Optional[Decimal] = None
    tax_object: str = "02"
    transfers: List[TaxLine] = Field(default_factory=list)
    withholdings: List[TaxLine] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class DocumentTaxes(BaseModel):
    total_transferred: Optional[Decimal] = None
    total_withheld: Optional[Decimal] = None
    transfers: List[TaxLine] = Field(default_factory=list)
    withholdings: List[TaxLine] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class RelatedDocumentPayment(BaseModel):
    """Factura PPD que se liquida (total o parcialmente) con un pago."""
    uuid: str
    folio: str
    currency: str = "MXN"
    installment: int = 1
    previous_balance: Decimal
    amount_paid: Decimal
    remaining_balance: Decimal
    series: Optional[str] = None
    tax_base: Optional[Decimal] = None
    tax_amount: Optional[Decimal] = None

    model_config = ConfigDict(frozen=True)


class Payment(BaseModel):
    paid_at: datetime
    payment_form: str
    amount: Decimal
    currency: str = "MXN"
    exchange_rate: Optional[Decimal] = None
    related_documents: List[RelatedDocumentPayment] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)


class PaymentComplement(BaseModel):
    payments: List[Payment]

    model_config = ConfigDict(frozen=True)


class FiscalDocument(BaseModel):
    """
    Comprobante fiscal tal como lo construye la aplicación, antes de firmar.
    Es inmutable: cualquier cambio produce una copia con otra huella.
    """
    document_id: str
    emitter: Emitter
    receiver: Receiver
    issued_at: datetime
    place_of_issue: str
    version: str = "4.0"
    series: Optional[str] = None
    folio: Optional[str] = None
    payment_form: Optional[str] = None
    payment_method: Optional[str] = None
    currency: str = "MXN"
    exchange_rate: Optional[Decimal] = None
    # Los totales son opcionales para que la cadena original detecte su ausencia
    subtotal: Optional[Decimal] = None
    discount: Optional[Decimal] = None
    total: Optional[Decimal] = None
    document_type: str = "I"
    export_code: str = "01"
    concepts: List[ConceptLine] = Field(default_factory=list)
    taxes: Optional[DocumentTaxes] = None
    payment_complement: Optional[PaymentComplement] = None

    model_config = ConfigDict(frozen=True)

    def fingerprint(self) -> str:
        """SHA-256 del contenido del documento; cambia con cualquier modificación."""
        return hashlib.sha256(self.model_dump_json().encode("utf-8")).hexdigest()

    def idempotency_key(self) -> str:
        return build_idempotency_key(self.emitter.tax_id, self.document_id)


def build_idempotency_key(emitter_tax_id: str, document_id: str) -> str:
    """Llave estable por documento, la misma en todos los intentos de timbrado."""
    return str(uuid.uuid5(IDEMPOTENCY_NAMESPACE, f"{emitter_tax_id.upper()}:{document_id}"))
