# timbrado/domain/ports/credential_repository.py
from abc import ABC, abstractmethod
from typing import Optional

from timbrado.domain.models.credential import Credential


class CredentialRepository(ABC):

    @abstractmethod
    def find(self, tax_id: str) -> Optional[Credential]:
        """Busca el CSD vigente registrado para un RFC."""
        pass

    @abstractmethod
    def save(self, credential: Credential) -> None:
        """Guarda el CSD; si ya existe uno para el RFC lo reemplaza."""
        pass
