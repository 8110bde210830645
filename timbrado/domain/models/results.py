# timbrado/domain/models/results.py
from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from timbrado.domain.models.stamping import FiscalStamp


# --- Resultado de timbrado: variantes cerradas ---

class Stamped(BaseModel):
    kind: Literal["stamped"] = "stamped"
    stamp: FiscalStamp

    model_config = ConfigDict(frozen=True)


class AlreadyStamped(BaseModel):
    """El PAC ya había timbrado este mismo comprobante (código 307)."""
    kind: Literal["already_stamped"] = "already_stamped"
    stamp: FiscalStamp

    model_config = ConfigDict(frozen=True)


class Rejected(BaseModel):
    kind: Literal["rejected"] = "rejected"
    code: str
    message: str

    model_config = ConfigDict(frozen=True)


class TransientFailure(BaseModel):
    kind: Literal["transient_failure"] = "transient_failure"
    reason: str
    code: Optional[str] = None

    model_config = ConfigDict(frozen=True)


StampResult = Annotated[
    Union[Stamped, AlreadyStamped, Rejected, TransientFailure],
    Field(discriminator="kind"),
]


# --- Resultado de cancelación ---

class Cancelled(BaseModel):
    kind: Literal["cancelled"] = "cancelled"
    uuid: str
    cancelled_at: Optional[datetime] = None
    acknowledgement: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class AlreadyCancelled(BaseModel):
    kind: Literal["already_cancelled"] = "already_cancelled"
    uuid: str
    cancelled_at: Optional[datetime] = None
    acknowledgement: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class CancelRejected(BaseModel):
    kind: Literal["cancel_rejected"] = "cancel_rejected"
    uuid: str
    code: str
    message: str

    model_config = ConfigDict(frozen=True)


CancelResult = Annotated[
    Union[Cancelled, AlreadyCancelled, CancelRejected],
    Field(discriminator="kind"),
]


# --- Registro de emisores y consulta de estatus ---

class RegistrationResult(BaseModel):
    tax_id: str
    success: bool
    already_exists: bool = False
    message: str = ""


class RegistrationStatus(BaseModel):
    """Estado del emisor en el PAC: 'A' activo, 'S' suspendido."""
    tax_id: str
    found: bool
    status: Optional[str] = None
    credit: Optional[int] = None
    counter: Optional[int] = None
    message: str = ""

    @property
    def active(self) -> bool:
        return self.found and self.status == "A"


class UploadResult(BaseModel):
    tax_id: str
    success: bool
    message: str = ""


class DocumentStatus(BaseModel):
    uuid: str
    status: Literal["Vigente", "Cancelado", "No Encontrado"]
    cancellable: Optional[str] = None
    cancellation_status: Optional[str] = None
    code: Optional[str] = None
