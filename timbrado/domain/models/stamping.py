# timbrado/domain/models/stamping.py
import re
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from timbrado.domain.errors import InvalidTransitionError
from timbrado.domain.models.fiscal_document import FiscalDocument

UUID_PATTERN = re.compile(r"^[0-9A-F]{8}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{12}$")


class CanonicalString(BaseModel):
    """Cadena original `||campo|campo|...||` de un comprobante."""
    text: str
    transform_version: str

    model_config = ConfigDict(frozen=True)

    @property
    def encoded(self) -> bytes:
        return self.text.encode("utf-8")


class SignedDocument(BaseModel):
    document: FiscalDocument
    fingerprint: str
    canonical: CanonicalString
    signature: str
    certificate_number: str
    certificate_b64: str
    xml: bytes

    model_config = ConfigDict(frozen=True)


class FiscalStamp(BaseModel):
    """Timbre Fiscal Digital devuelto por el PAC."""
    uuid: str
    issued_at: datetime
    authority_signature: str
    authority_certificate_number: str
    stamped_xml: str
    tfd_original_string: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_ack: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("uuid")
    @classmethod
    def _normalize_uuid(cls, value: str) -> str:
        value = value.strip().upper()
        if not UUID_PATTERN.match(value):
            raise ValueError(f"UUID de timbre inválido: {value}")
        return value


class StampingState(str, Enum):
    DRAFT = "DRAFT"
    CANONICALIZATION_PENDING = "CANONICALIZATION_PENDING"
    SIGNED = "SIGNED"
    SUBMITTING = "SUBMITTING"
    AWAITING_RETRY = "AWAITING_RETRY"
    STAMPED = "STAMPED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


# Un documento REJECTED solo vuelve a DRAFT como una corrida nueva
# (contenido distinto o reintento manual tras agotar intentos).
# SUBMITTING/AWAITING_RETRY vuelven a DRAFT cuando la conciliación
# confirma que el PAC nunca emitió timbre.
ALLOWED_TRANSITIONS: Dict[StampingState, FrozenSet[StampingState]] = {
    StampingState.DRAFT: frozenset({StampingState.CANONICALIZATION_PENDING}),
    StampingState.CANONICALIZATION_PENDING: frozenset({StampingState.SIGNED, StampingState.REJECTED}),
    StampingState.SIGNED: frozenset({StampingState.SUBMITTING}),
    StampingState.SUBMITTING: frozenset({
        StampingState.STAMPED,
        StampingState.REJECTED,
        StampingState.AWAITING_RETRY,
        StampingState.DRAFT,
    }),
    StampingState.AWAITING_RETRY: frozenset({
        StampingState.SUBMITTING,
        StampingState.STAMPED,
        StampingState.REJECTED,
        StampingState.DRAFT,
    }),
    StampingState.STAMPED: frozenset({StampingState.CANCELLED}),
    StampingState.REJECTED: frozenset({StampingState.DRAFT}),
    StampingState.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset({StampingState.STAMPED, StampingState.REJECTED, StampingState.CANCELLED})


def ensure_transition(current: StampingState, target: StampingState) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)


class ErrorKind(str, Enum):
    PREPARATION = "PREPARATION"
    CREDENTIAL = "CREDENTIAL"
    TRANSPORT = "TRANSPORT"
    AUTHORITY_REJECTION = "AUTHORITY_REJECTION"
    RETRIES_EXHAUSTED = "RETRIES_EXHAUSTED"


class StampingProcess(BaseModel):
    """Estado persistido de la máquina de timbrado de un documento."""
    idempotency_key: str
    document_id: str
    emitter_tax_id: str
    fingerprint: str
    state: StampingState = StampingState.DRAFT
    error_kind: Optional[ErrorKind] = None
    code: Optional[str] = None
    message: Optional[str] = None
    signed_xml: Optional[str] = None
    certificate_number: Optional[str] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    def transition(self, target: StampingState, **changes) -> "StampingProcess":
        ensure_transition(self.state, target)
        return self.model_copy(update={"state": target, **changes})


class AttemptOutcome(str, Enum):
    PENDING = "pending"
    STAMPED = "stamped"
    REJECTED = "rejected"
    TRANSIENT_ERROR = "transient_error"


class StampingAttempt(BaseModel):
    idempotency_key: str
    attempt_number: int
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    code: Optional[str] = None
    message: Optional[str] = None
    id: Optional[int] = None

    model_config = ConfigDict(frozen=True)


class RetryPolicy(BaseModel):
    """Reintentos acotados con espera exponencial entre envíos."""
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=2.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)

    model_config = ConfigDict(frozen=True)

    def delay_for(self, attempt_number: int) -> float:
        """Espera antes del intento `attempt_number + 1`."""
        return min(self.base_delay * (self.multiplier ** (attempt_number - 1)), self.max_delay)

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts


class Diagnostic(BaseModel):
    code: str
    title: str
    description: str
    action: str
    field: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class StampingOutcome(BaseModel):
    idempotency_key: str
    document_id: str
    state: StampingState
    stamp: Optional[FiscalStamp] = None
    error_kind: Optional[ErrorKind] = None
    code: Optional[str] = None
    message: Optional[str] = None
    diagnostic: Optional[Diagnostic] = None
    retryable: bool = False
    interrupted: bool = False
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.state == StampingState.STAMPED and self.stamp is not None


class CancellationOutcome(BaseModel):
    document_id: str
    uuid: str
    state: StampingState
    cancelled: bool
    already_cancelled: bool = False
    code: Optional[str] = None
    message: Optional[str] = None
    acknowledgement: Optional[str] = None
    diagnostic: Optional[Diagnostic] = None


class StampingStatus(BaseModel):
    process: Optional[StampingProcess] = None
    attempts: List[StampingAttempt] = Field(default_factory=list)
    stamp: Optional[FiscalStamp] = None
