# timbrado/application/use_cases/provision_credential.py
import base64
import logging
from typing import Optional

from pydantic import BaseModel

from timbrado.application.services.credential_store import CredentialStore
from timbrado.domain.errors import TransportError
from timbrado.domain.models.credential import CredentialRegistration
from timbrado.domain.models.results import RegistrationResult, UploadResult
from timbrado.domain.ports.pac_gateway import PACGateway

logger = logging.getLogger(__name__)


class ProvisioningResult(BaseModel):
    registration: CredentialRegistration
    remote_registration: Optional[RegistrationResult] = None
    remote_upload: Optional[UploadResult] = None
    remote_error: Optional[str] = None

    @property
    def remote_ready(self) -> bool:
        return bool(
            self.remote_registration is not None
            and self.remote_registration.success
            and self.remote_upload is not None
            and self.remote_upload.success
        )


class ProvisionCredentialUseCase:
    """
    Alta completa de un emisor: guarda el CSD localmente y después lo da
    de alta en el PAC. El paso remoto es informativo; si falla, el CSD
    local queda registrado y se puede repetir el alta.
    """

    def __init__(self, credential_store: CredentialStore, pac_gateway: PACGateway):
        self.credential_store = credential_store
        self.pac_gateway = pac_gateway

    def execute(
        self,
        tax_id: str,
        certificate_bytes: bytes,
        encrypted_key_bytes: bytes,
        passphrase: str,
        replace: bool = False,
    ) -> ProvisioningResult:
        registration = self.credential_store.register(
            tax_id, certificate_bytes, encrypted_key_bytes, passphrase, replace=replace,
        )
        result = ProvisioningResult(registration=registration)

        try:
            remote_registration = self.pac_gateway.register_tax_id(registration.tax_id)
            result = result.model_copy(update={"remote_registration": remote_registration})
            if not remote_registration.success:
                logger.warning(f"Finkok no registró {registration.tax_id}: {remote_registration.message}")
                return result

            remote_upload = self.pac_gateway.upload_credential(
                registration.tax_id,
                base64.b64encode(certificate_bytes).decode("ascii"),
                base64.b64encode(encrypted_key_bytes).decode("ascii"),
                passphrase,
            )
            result = result.model_copy(update={"remote_upload": remote_upload})
            if not remote_upload.success:
                logger.warning(f"Finkok no aceptó el CSD de {registration.tax_id}: {remote_upload.message}")
        except TransportError as e:
            logger.warning(f"No se pudo dar de alta {registration.tax_id} en Finkok: {e}")
            result = result.model_copy(update={"remote_error": str(e)})

        return result
