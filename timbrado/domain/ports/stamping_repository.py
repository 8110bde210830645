# timbrado/domain/ports/stamping_repository.py
from abc import ABC, abstractmethod
from typing import List, Optional

from timbrado.domain.models.stamping import FiscalStamp, StampingAttempt, StampingProcess


class StampingRepository(ABC):
    """
    Persistencia del proceso de timbrado: estado del documento, bitácora
    de intentos y el timbre emitido.
    """

    @abstractmethod
    def get_process(self, idempotency_key: str) -> Optional[StampingProcess]:
        pass

    @abstractmethod
    def save_process(self, process: StampingProcess) -> StampingProcess:
        """Inserta o actualiza el estado del proceso."""
        pass

    @abstractmethod
    def start_attempt(self, attempt: StampingAttempt) -> StampingAttempt:
        """Registra un intento en curso y lo retorna con su id."""
        pass

    @abstractmethod
    def finish_attempt(self, attempt: StampingAttempt) -> None:
        """Cierra un intento con su resultado. Los intentos nunca se borran."""
        pass

    @abstractmethod
    def list_attempts(self, idempotency_key: str) -> List[StampingAttempt]:
        pass

    @abstractmethod
    def save_stamp(self, idempotency_key: str, stamp: FiscalStamp) -> FiscalStamp:
        """
        Guarda el timbre del documento. Si otro proceso ya guardó uno para la
        misma llave, retorna el existente en lugar del nuevo.
        """
        pass

    @abstractmethod
    def find_stamp(self, idempotency_key: str) -> Optional[FiscalStamp]:
        pass

    @abstractmethod
    def mark_stamp_cancelled(self, idempotency_key: str, stamp: FiscalStamp) -> None:
        """Registra la fecha y el acuse de cancelación del timbre."""
        pass
