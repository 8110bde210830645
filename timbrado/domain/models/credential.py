# timbrado/domain/models/credential.py
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, SecretStr

from timbrado.domain.errors import CredentialExpiredError, CredentialMismatchError


class Credential(BaseModel):
    """
    Certificado de Sello Digital (CSD) de un emisor: certificado DER,
    llave privada cifrada (PKCS#8 DER) y su contraseña.
    """
    tax_id: str
    certificate_der: bytes
    encrypted_key: bytes
    passphrase: SecretStr
    certificate_number: str
    not_before: datetime
    not_after: datetime
    registered_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    def is_valid_at(self, moment: datetime) -> bool:
        return self.not_before <= moment <= self.not_after

    def ensure_usable_for(self, tax_id: str, moment: datetime) -> None:
        if tax_id.upper() != self.tax_id.upper():
            raise CredentialMismatchError(
                f"El CSD pertenece a {self.tax_id} y el emisor del comprobante es {tax_id}"
            )
        if not self.is_valid_at(moment):
            raise CredentialExpiredError(
                f"El CSD {self.certificate_number} de {self.tax_id} no está vigente "
                f"({self.not_before.isoformat()} - {self.not_after.isoformat()})"
            )


class CredentialRegistration(BaseModel):
    tax_id: str
    certificate_number: str
    not_before: datetime
    not_after: datetime
    replaced: bool = False


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
