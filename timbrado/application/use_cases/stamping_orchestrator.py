# timbrado/application/use_cases/stamping_orchestrator.py
import logging
import threading
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from lxml import etree

from timbrado.application.services.credential_store import CredentialStore
from timbrado.application.services.keyed_lock import KeyedLock
from timbrado.application.services.signer import Signer
from timbrado.domain.error_catalog import CANCELLATION_REASONS, describe
from timbrado.domain.errors import (
    AuthorityRejection,
    CallInterrupted,
    CredentialError,
    InvalidCancellationRequest,
    InvalidTransitionError,
    PreparationError,
    TransportError,
)
from timbrado.domain.models.credential import utc_now
from timbrado.domain.models.fiscal_document import FiscalDocument, build_idempotency_key
from timbrado.domain.models.results import (
    AlreadyCancelled,
    AlreadyStamped,
    Cancelled,
    DocumentStatus,
    Rejected,
    Stamped,
)
from timbrado.domain.models.stamping import (
    AttemptOutcome,
    CancellationOutcome,
    ErrorKind,
    FiscalStamp,
    RetryPolicy,
    SignedDocument,
    StampingAttempt,
    StampingOutcome,
    StampingProcess,
    StampingState,
    StampingStatus,
    ensure_transition,
)
from timbrado.domain.ports.pac_gateway import PACGateway
from timbrado.domain.ports.stamping_repository import StampingRepository
from timbrado.infrastructure.xml.namespaces import strip_namespaces

logger = logging.getLogger(__name__)

# Estados que dejan un envío en el aire: antes de reenviar hay que conciliar
IN_FLIGHT_STATES = (StampingState.SUBMITTING, StampingState.AWAITING_RETRY)
# Restos de una corrida interrumpida antes de llegar al PAC
PRE_SUBMISSION_STATES = (StampingState.DRAFT, StampingState.CANONICALIZATION_PENDING, StampingState.SIGNED)


class StampingOrchestrator:
    """
    Único punto de entrada del timbrado. Conduce la máquina de estados
    DRAFT -> CANONICALIZATION_PENDING -> SIGNED -> SUBMITTING ->
    STAMPED | REJECTED | AWAITING_RETRY, persiste cada transición y
    garantiza a lo más un timbre por documento.
    """

    def __init__(
        self,
        credential_store: CredentialStore,
        signer: Signer,
        pac_gateway: PACGateway,
        repository: StampingRepository,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
        locks: Optional[KeyedLock] = None,
    ):
        self.credential_store = credential_store
        self.signer = signer
        self.pac_gateway = pac_gateway
        self.repository = repository
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock
        self.locks = locks or KeyedLock()

    # --- Timbrado ---

    def stamp(self, document: FiscalDocument, cancel_event: Optional[threading.Event] = None) -> StampingOutcome:
        key = document.idempotency_key()
        with self.locks.hold(key):
            return self._stamp_locked(document, key, cancel_event or threading.Event())

    def _stamp_locked(self, document: FiscalDocument, key: str, cancel_event: threading.Event) -> StampingOutcome:
        fingerprint = document.fingerprint()
        process = self.repository.get_process(key)

        stored = self.repository.find_stamp(key)
        if stored is not None:
            logger.info(f"[{document.document_id}] Ya timbrado con UUID {stored.uuid}; no se reenvía")
            state = process.state if process is not None else StampingState.STAMPED
            return self._stamped_outcome(key, document.document_id, stored, state=state)

        if process is not None:
            if (
                process.state == StampingState.REJECTED
                and process.fingerprint == fingerprint
                and process.error_kind == ErrorKind.AUTHORITY_REJECTION
            ):
                # Solo el rechazo del PAC es definitivo para el mismo documento
                logger.info(f"[{document.document_id}] Rechazo previo del PAC sin cambios en el documento; no se reenvía")
                return self._outcome_from_process(process)

            if process.state in IN_FLIGHT_STATES or (
                process.state == StampingState.REJECTED and process.error_kind == ErrorKind.RETRIES_EXHAUSTED
            ):
                reconciled = self._reconcile(process)
                if reconciled is not None:
                    return reconciled

        return self._run(document, key, fingerprint, process, cancel_event)

    def _reconcile(self, process: StampingProcess) -> Optional[StampingOutcome]:
        """
        Pregunta al PAC si un envío previo sí se timbró. Retorna None si no
        hubo timbre y es seguro enviar de nuevo.
        """
        if not process.signed_xml:
            return None
        logger.info(f"[{process.document_id}] Conciliando envío previo en estado {process.state.value}")
        try:
            previous = self.pac_gateway.query_stamp(process.signed_xml.encode("utf-8"), process.idempotency_key)
        except (TransportError, AuthorityRejection) as e:
            logger.warning(f"[{process.document_id}] No se pudo conciliar con el PAC: {e}")
            return StampingOutcome(
                idempotency_key=process.idempotency_key,
                document_id=process.document_id,
                state=process.state,
                error_kind=ErrorKind.TRANSPORT,
                code=getattr(e, "code", None),
                message=str(e),
                retryable=True,
            )
        if previous is None:
            return None

        stored = self.repository.save_stamp(process.idempotency_key, previous)
        if process.state == StampingState.REJECTED:
            process = process.transition(StampingState.DRAFT)
            process = self.repository.save_process(process.transition(StampingState.CANONICALIZATION_PENDING))
            process = self.repository.save_process(process.transition(StampingState.SIGNED))
            process = self.repository.save_process(process.transition(StampingState.SUBMITTING))
        self.repository.save_process(process.transition(
            StampingState.STAMPED, error_kind=None, code=None, message=None,
        ))
        logger.info(f"[{process.document_id}] Conciliado: el PAC ya había emitido el UUID {stored.uuid}")
        return self._stamped_outcome(process.idempotency_key, process.document_id, stored)

    def _begin_run(self, document: FiscalDocument, key: str, fingerprint: str, previous: Optional[StampingProcess]) -> StampingProcess:
        if previous is not None and previous.state not in PRE_SUBMISSION_STATES:
            process = previous.transition(
                StampingState.DRAFT,
                fingerprint=fingerprint,
                error_kind=None,
                code=None,
                message=None,
                signed_xml=None,
                certificate_number=None,
            )
        else:
            process = StampingProcess(
                idempotency_key=key,
                document_id=document.document_id,
                emitter_tax_id=document.emitter.tax_id,
                fingerprint=fingerprint,
            )
        return self.repository.save_process(process)

    def _run(
        self,
        document: FiscalDocument,
        key: str,
        fingerprint: str,
        previous: Optional[StampingProcess],
        cancel_event: threading.Event,
    ) -> StampingOutcome:
        process = self._begin_run(document, key, fingerprint, previous)
        process = self.repository.save_process(process.transition(StampingState.CANONICALIZATION_PENDING))

        try:
            credential = self.credential_store.get(document.emitter.tax_id)
            signed = self.signer.sign(document, credential)
        except CredentialError as e:
            logger.error(f"[{document.document_id}] CSD no utilizable: {e}")
            return self._reject(process, ErrorKind.CREDENTIAL, type(e).__name__, str(e))
        except PreparationError as e:
            logger.error(f"[{document.document_id}] No se pudo preparar el comprobante: {e}")
            return self._reject(process, ErrorKind.PREPARATION, type(e).__name__, str(e))

        if signed.fingerprint != fingerprint:
            return self._reject(
                process, ErrorKind.PREPARATION, "FINGERPRINT_MISMATCH",
                "El documento firmado no corresponde al documento a timbrar",
            )

        process = self.repository.save_process(process.transition(
            StampingState.SIGNED,
            signed_xml=signed.xml.decode("utf-8"),
            certificate_number=signed.certificate_number,
        ))
        return self._submit(process, signed, cancel_event)

    def _submit(self, process: StampingProcess, signed: SignedDocument, cancel_event: threading.Event) -> StampingOutcome:
        key = process.idempotency_key
        attempt_number = 0
        while True:
            if cancel_event.is_set():
                return self._interrupted(process, attempt_number)

            attempt_number += 1
            process = self.repository.save_process(process.transition(StampingState.SUBMITTING))
            attempt = self.repository.start_attempt(StampingAttempt(
                idempotency_key=key,
                attempt_number=attempt_number,
                started_at=self.clock(),
            ))
            logger.info(f"[{process.document_id}] Intento {attempt_number}/{self.retry_policy.max_attempts} de timbrado")

            try:
                result = self.pac_gateway.stamp(signed, key, cancel_event=cancel_event)
            except CallInterrupted as e:
                # Sin respuesta no se sabe si hubo timbre: queda SUBMITTING y se concilia después
                self._finish(attempt, AttemptOutcome.TRANSIENT_ERROR, "INTERRUPTED", str(e))
                return self._interrupted(process, attempt_number)

            if isinstance(result, (Stamped, AlreadyStamped)):
                self._finish(attempt, AttemptOutcome.STAMPED)
                stored = self.repository.save_stamp(key, result.stamp)
                self.repository.save_process(process.transition(
                    StampingState.STAMPED, error_kind=None, code=None, message=None,
                ))
                logger.info(f"[{process.document_id}] ¡ÉXITO! Timbrado con UUID {stored.uuid}")
                return self._stamped_outcome(key, process.document_id, stored, attempts=attempt_number)

            if isinstance(result, Rejected):
                self._finish(attempt, AttemptOutcome.REJECTED, result.code, result.message)
                logger.error(f"[{process.document_id}] Rechazado por el PAC: {result.message}")
                process = self.repository.save_process(process.transition(
                    StampingState.REJECTED,
                    error_kind=ErrorKind.AUTHORITY_REJECTION,
                    code=result.code,
                    message=result.message,
                ))
                return self._outcome_from_process(process, attempts=attempt_number)

            self._finish(attempt, AttemptOutcome.TRANSIENT_ERROR, result.code, result.reason)
            logger.warning(f"[{process.document_id}] Falla transitoria en el intento {attempt_number}: {result.reason}")

            if not self.retry_policy.should_retry(attempt_number):
                process = self.repository.save_process(process.transition(
                    StampingState.REJECTED,
                    error_kind=ErrorKind.RETRIES_EXHAUSTED,
                    code=result.code,
                    message=f"Se agotaron {attempt_number} intentos de timbrado: {result.reason}",
                ))
                return self._outcome_from_process(process, attempts=attempt_number)

            process = self.repository.save_process(process.transition(
                StampingState.AWAITING_RETRY,
                error_kind=ErrorKind.TRANSPORT,
                code=result.code,
                message=result.reason,
            ))
            if cancel_event.wait(self.retry_policy.delay_for(attempt_number)):
                return self._interrupted(process, attempt_number)

    def _finish(self, attempt: StampingAttempt, outcome: AttemptOutcome, code: Optional[str] = None, message: Optional[str] = None) -> None:
        self.repository.finish_attempt(attempt.model_copy(update={
            "finished_at": self.clock(),
            "outcome": outcome,
            "code": code,
            "message": message,
        }))

    def _reject(self, process: StampingProcess, kind: ErrorKind, code: str, message: str) -> StampingOutcome:
        process = self.repository.save_process(process.transition(
            StampingState.REJECTED, error_kind=kind, code=code, message=message,
        ))
        return self._outcome_from_process(process)

    # --- Construcción de resultados ---

    def _stamped_outcome(self, key: str, document_id: str, stamp: FiscalStamp, state: StampingState = StampingState.STAMPED, attempts: int = 0) -> StampingOutcome:
        return StampingOutcome(idempotency_key=key, document_id=document_id, state=state, stamp=stamp, attempts=attempts)

    def _outcome_from_process(self, process: StampingProcess, attempts: int = 0) -> StampingOutcome:
        diagnostic = None
        if process.state == StampingState.REJECTED:
            diagnostic = describe(process.code, process.message or "")
        return StampingOutcome(
            idempotency_key=process.idempotency_key,
            document_id=process.document_id,
            state=process.state,
            error_kind=process.error_kind,
            code=process.code,
            message=process.message,
            diagnostic=diagnostic,
            retryable=process.error_kind == ErrorKind.RETRIES_EXHAUSTED,
            attempts=attempts,
        )

    def _interrupted(self, process: StampingProcess, attempts: int) -> StampingOutcome:
        logger.warning(f"[{process.document_id}] Timbrado interrumpido en estado {process.state.value}")
        outcome = self._outcome_from_process(process, attempts=attempts)
        return outcome.model_copy(update={"interrupted": True, "retryable": True})

    # --- Cancelación y consulta ---

    def cancel(self, emitter_tax_id: str, document_id: str, reason: str, substitution_uuid: Optional[str] = None) -> CancellationOutcome:
        """
        Cancela un CFDI timbrado. Las fallas de red se propagan como
        TransportError; el documento sigue STAMPED.
        """
        if reason not in CANCELLATION_REASONS:
            raise InvalidCancellationRequest(f"Motivo de cancelación inválido: {reason}")
        if reason == "01" and not substitution_uuid:
            raise InvalidCancellationRequest("El motivo 01 requiere UUID de sustitución")

        key = build_idempotency_key(emitter_tax_id, document_id)
        with self.locks.hold(key):
            process = self.repository.get_process(key)
            stamp = self.repository.find_stamp(key)
            if process is None or stamp is None:
                current = process.state.value if process is not None else "SIN_PROCESO"
                raise InvalidTransitionError(current, StampingState.CANCELLED.value)

            if process.state == StampingState.CANCELLED:
                return CancellationOutcome(
                    document_id=document_id, uuid=stamp.uuid, state=process.state,
                    cancelled=True, already_cancelled=True, acknowledgement=stamp.cancellation_ack,
                )
            ensure_transition(process.state, StampingState.CANCELLED)

            result = self.pac_gateway.cancel(stamp.uuid, emitter_tax_id.upper(), reason, substitution_uuid)

            if isinstance(result, (Cancelled, AlreadyCancelled)):
                cancelled = stamp.model_copy(update={
                    "cancelled_at": result.cancelled_at or self.clock(),
                    "cancellation_ack": result.acknowledgement,
                })
                self.repository.mark_stamp_cancelled(key, cancelled)
                process = self.repository.save_process(process.transition(StampingState.CANCELLED))
                logger.info(f"[{document_id}] CFDI {stamp.uuid} cancelado (motivo {reason})")
                return CancellationOutcome(
                    document_id=document_id,
                    uuid=stamp.uuid,
                    state=process.state,
                    cancelled=True,
                    already_cancelled=isinstance(result, AlreadyCancelled),
                    acknowledgement=result.acknowledgement,
                )

            logger.error(f"[{document_id}] Cancelación rechazada: {result.message}")
            return CancellationOutcome(
                document_id=document_id,
                uuid=stamp.uuid,
                state=process.state,
                cancelled=False,
                code=result.code,
                message=result.message,
                diagnostic=describe(result.code, result.message),
            )

    def status(self, emitter_tax_id: str, document_id: str) -> StampingStatus:
        key = build_idempotency_key(emitter_tax_id, document_id)
        return StampingStatus(
            process=self.repository.get_process(key),
            attempts=self.repository.list_attempts(key),
            stamp=self.repository.find_stamp(key),
        )

    def authority_status(self, emitter_tax_id: str, document_id: str) -> Optional[DocumentStatus]:
        """Estatus del CFDI ante el SAT, con receptor y total tomados del XML timbrado."""
        stamp = self.repository.find_stamp(build_idempotency_key(emitter_tax_id, document_id))
        if stamp is None:
            return None
        root = etree.fromstring(strip_namespaces(stamp.stamped_xml.encode("utf-8")))
        receiver = root.find("Receptor")
        return self.pac_gateway.document_status(
            stamp.uuid,
            emitter_tax_id.upper(),
            receiver.get("Rfc") if receiver is not None else "",
            Decimal(root.get("Total") or "0"),
        )
