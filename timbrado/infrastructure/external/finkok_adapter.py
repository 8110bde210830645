# timbrado/infrastructure/external/finkok_adapter.py
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from lxml import etree

import config
from timbrado.domain.errors import AuthorityRejection, CallInterrupted, TransportError
from timbrado.domain.models.results import (
    AlreadyStamped,
    CancelRejected,
    CancelResult,
    DocumentStatus,
    RegistrationResult,
    RegistrationStatus,
    Rejected,
    StampResult,
    TransientFailure,
    UploadResult,
)
from timbrado.domain.models.stamping import FiscalStamp, SignedDocument
from timbrado.domain.ports.pac_gateway import PACGateway
from timbrado.infrastructure.external import finkok_classifier as classifier
from timbrado.infrastructure.external.soap import build_envelope, parse_response

logger = logging.getLogger(__name__)

SERVICE_NAMESPACES = {
    "stamp": "http://facturacion.finkok.com/stamp",
    "cancel": "http://facturacion.finkok.com/cancel",
    "registration": "http://facturacion.finkok.com/registration",
}

# Cada cuánto se revisa si el solicitante canceló una llamada en curso
INTERRUPT_POLL_SECONDS = 0.05


class FinkokAdapter(PACGateway):
    """
    Adaptador SOAP para los servicios de Finkok. Cada llamada tiene un
    tiempo máximo de espera y ninguna se reintenta aquí.
    """

    def __init__(
        self,
        username: Optional[str] = None,
        password: Optional[str] = None,
        environment: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
        reseller_username: Optional[str] = None,
        reseller_password: Optional[str] = None,
    ):
        self.username = username if username is not None else config.FINKOK_USER
        self.password = password if password is not None else config.FINKOK_PASSWORD
        self.reseller_username = reseller_username if reseller_username is not None else config.FINKOK_RESELLER_USER
        self.reseller_password = reseller_password if reseller_password is not None else config.FINKOK_RESELLER_PASSWORD
        self.environment = environment or config.FINKOK_ENVIRONMENT
        if self.environment not in config.FINKOK_URLS:
            raise ValueError(f"Ambiente de Finkok desconocido: {self.environment}")
        self.urls = config.FINKOK_URLS[self.environment]
        self.timeout = timeout if timeout is not None else config.FINKOK_TIMEOUT_SECONDS
        self.session = session or requests.Session()
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="finkok")

    @property
    def configured(self) -> bool:
        return bool(self.username and self.password)

    def endpoint(self, service: str) -> str:
        return self.urls[service].replace(".wsdl", "")

    def _post(self, url: str, envelope: bytes, headers: Dict[str, str], cancel_event: Optional[threading.Event]) -> requests.Response:
        if cancel_event is None:
            return self.session.post(url, data=envelope, headers=headers, timeout=self.timeout)

        future = self._executor.submit(self.session.post, url, data=envelope, headers=headers, timeout=self.timeout)
        while True:
            try:
                return future.result(timeout=INTERRUPT_POLL_SECONDS)
            except FutureTimeout:
                if cancel_event.is_set():
                    future.cancel()
                    # Cierra las conexiones del pool; la sesión se puede seguir usando
                    self.session.close()
                    logger.warning(f"Llamada a {url} abandonada por cancelación del solicitante")
                    raise CallInterrupted(f"Se canceló la llamada a {url} antes de recibir respuesta")

    def _call(
        self,
        service: str,
        operation: str,
        params: Dict[str, Any],
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """
        Ejecuta una operación SOAP. Lanza TransportError en fallas transitorias
        y AuthorityRejection en rechazos de protocolo (HTTP 4xx, fault de cliente).
        Con `cancel_event`, la espera termina en cuanto el evento se activa
        (CallInterrupted).
        """
        envelope = build_envelope(SERVICE_NAMESPACES[service], operation, params)
        headers = {"Content-Type": "text/xml; charset=utf-8", "SOAPAction": f'"{operation}"'}
        try:
            response = self._post(self.endpoint(service), envelope, headers, cancel_event)
        except requests.exceptions.RequestException as e:
            logger.error(f"Finkok {service}.{operation} sin respuesta: {e}")
            raise classifier.classify_request_exception(e) from e

        try:
            result, fault = parse_response(response.content, operation)
        except (etree.XMLSyntaxError, ValueError) as e:
            failure = classifier.classify_http_status(response.status_code)
            if failure is not None:
                raise failure from e
            raise TransportError(f"Respuesta ilegible de Finkok ({operation}): {e}") from e

        if fault is not None:
            raise classifier.classify_soap_fault(*fault)
        failure = classifier.classify_http_status(response.status_code)
        if failure is not None:
            raise failure
        return result

    # --- Timbrado ---

    def stamp(self, signed: SignedDocument, idempotency_key: str, cancel_event: Optional[threading.Event] = None) -> StampResult:
        if not self.configured:
            return Rejected(code="CONFIG_ERROR", message="Faltan credenciales de Finkok")

        logger.info(f"[{idempotency_key}] Enviando CFDI a Finkok ({self.environment})")
        try:
            result = self._call("stamp", "stamp", {
                "xml": signed.xml,
                "username": self.username,
                "password": self.password,
            }, cancel_event=cancel_event)
        except TransportError as e:
            return TransientFailure(reason=str(e))
        except AuthorityRejection as e:
            return Rejected(code=e.code, message=e.message)

        outcome = classifier.classify_stamp_result(result)
        if isinstance(outcome, Rejected) and outcome.code in classifier.ALREADY_STAMPED_CODES:
            logger.info(f"[{idempotency_key}] Finkok reporta 307, recuperando el timbre previo")
            try:
                previous = self.query_stamp(signed.xml, idempotency_key)
            except TransportError as e:
                return TransientFailure(reason=str(e), code="307")
            except AuthorityRejection as e:
                return Rejected(code=e.code, message=e.message)
            if previous is not None:
                return AlreadyStamped(stamp=previous)
        return outcome

    def query_stamp(self, signed_xml: bytes, idempotency_key: str) -> Optional[FiscalStamp]:
        if not self.configured:
            raise AuthorityRejection("CONFIG_ERROR", "Faltan credenciales de Finkok")
        logger.info(f"[{idempotency_key}] Consultando en Finkok si el CFDI ya fue timbrado")
        result = self._call("stamp", "stamped", {
            "xml": signed_xml,
            "username": self.username,
            "password": self.password,
        })
        return classifier.classify_stamped_query(result)

    # --- Cancelación ---

    def cancel(self, uuid: str, tax_id: str, reason: str, substitution_uuid: Optional[str] = None) -> CancelResult:
        uuid = uuid.upper()
        if not self.configured:
            return CancelRejected(uuid=uuid, code="CONFIG_ERROR", message="Faltan credenciales de Finkok")
        params = {
            "username": self.username,
            "password": self.password,
            "rfcemisor": tax_id,
            "uuid": uuid,
            "motivo": reason,
        }
        if reason == "01" and substitution_uuid:
            params["foliosustitucion"] = substitution_uuid.upper()

        logger.info(f"Solicitando cancelación de {uuid} (motivo {reason})")
        try:
            result = self._call("cancel", "cancel", params)
        except AuthorityRejection as e:
            return CancelRejected(uuid=uuid, code=e.code, message=e.message)
        return classifier.classify_cancel_result(result, uuid)

    def document_status(self, uuid: str, emitter_tax_id: str, receiver_tax_id: str, total: Decimal) -> DocumentStatus:
        uuid = uuid.upper()
        result = self._call("cancel", "get_sat_status", {
            "username": self.username,
            "password": self.password,
            "uuid": uuid,
            "rfce": emitter_tax_id,
            "rfcr": receiver_tax_id,
            "total": str(total),
        })
        return classifier.document_status_from(result, uuid)

    # --- Registro de emisores ---

    def register_tax_id(self, tax_id: str) -> RegistrationResult:
        logger.info(f"Registrando {tax_id} en Finkok")
        try:
            result = self._call("registration", "add", {
                "reseller_username": self.reseller_username,
                "reseller_password": self.reseller_password,
                "taxpayer_id": tax_id,
                "type_user": "O",
            })
        except AuthorityRejection as e:
            return RegistrationResult(tax_id=tax_id, success=False, message=str(e))
        return classifier.classify_registration_result(result, tax_id)

    def registration_status(self, tax_id: str) -> RegistrationStatus:
        result = self._call("registration", "get", {
            "reseller_username": self.reseller_username,
            "reseller_password": self.reseller_password,
            "taxpayer_id": tax_id,
        })
        return classifier.registration_status_from(result, tax_id)

    def upload_credential(self, tax_id: str, certificate_b64: str, key_b64: str, passphrase: str) -> UploadResult:
        logger.info(f"Cargando CSD de {tax_id} en Finkok")
        try:
            result = self._call("registration", "edit", {
                "reseller_username": self.reseller_username,
                "reseller_password": self.reseller_password,
                "taxpayer_id": tax_id,
                "status": "A",
                "cer": certificate_b64,
                "key": key_b64,
                "passphrase": passphrase,
            })
        except AuthorityRejection as e:
            return UploadResult(tax_id=tax_id, success=False, message=str(e))
        return classifier.classify_upload_result(result, tax_id)
