# timbrado/infrastructure/external/finkok_classifier.py
"""
Traducción de las respuestas de Finkok a los resultados del dominio.
Funciones puras: no hacen red ni reintentan.
"""
import logging
from typing import Any, Dict, List, Optional, Union

import requests
from lxml import etree
from pydantic import ValidationError

from timbrado.domain.errors import AuthorityRejection, TransportError
from timbrado.domain.models.results import (
    AlreadyCancelled,
    AlreadyStamped,
    Cancelled,
    CancelRejected,
    DocumentStatus,
    RegistrationResult,
    RegistrationStatus,
    Rejected,
    Stamped,
    TransientFailure,
    UploadResult,
)
from timbrado.domain.models.stamping import FiscalStamp

logger = logging.getLogger(__name__)

# Finkok no pudo comunicarse con el SAT; el mismo XML puede reenviarse
TRANSIENT_CODES = frozenset({"708"})
# El comprobante ya fue timbrado antes
ALREADY_STAMPED_CODES = frozenset({"307"})
CANCELLED_STATUS = "201"
ALREADY_CANCELLED_STATUS = "202"


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def is_true(value: Any) -> bool:
    return str(value).strip().lower() in ("true", "1")


def extract_incidents(result: Optional[Dict[str, Any]]) -> List[Dict[str, str]]:
    if not result:
        return []
    incidents = result.get("Incidencias")
    if not isinstance(incidents, dict):
        return []
    return [item for item in as_list(incidents.get("Incidencia")) if isinstance(item, dict)]


def format_incidents(incidents: List[Dict[str, str]]) -> str:
    return "; ".join(f"[{item.get('CodigoError')}] {item.get('MensajeIncidencia')}" for item in incidents) or "Error desconocido"


# --- Fallas de transporte y de protocolo ---

def classify_request_exception(exc: requests.exceptions.RequestException) -> TransportError:
    if isinstance(exc, requests.exceptions.Timeout):
        return TransportError(f"Tiempo de espera agotado al llamar a Finkok: {exc}")
    if isinstance(exc, requests.exceptions.ConnectionError):
        return TransportError(f"Error de conexión con Finkok: {exc}")
    return TransportError(f"Error en la petición a Finkok: {exc}")


def classify_http_status(status_code: int) -> Optional[Exception]:
    """HTTP 5xx es transitorio; cualquier otro 4xx es un rechazo con código HTTP<status>."""
    if status_code >= 500:
        return TransportError(f"Finkok respondió HTTP {status_code}")
    if status_code >= 400:
        return AuthorityRejection(f"HTTP{status_code}", f"Finkok respondió HTTP {status_code}")
    return None


def classify_soap_fault(fault_code: str, fault_message: str) -> Exception:
    """Un fault del servidor es transitorio; uno del cliente es rechazo."""
    local_code = fault_code.split(":")[-1]
    if local_code.lower().startswith("server"):
        return TransportError(f"SOAP Fault {fault_code}: {fault_message}")
    return AuthorityRejection(local_code or "SOAP_FAULT", fault_message or "SOAP Fault sin detalle")


# --- Timbrado ---

def _find_tfd(stamped_xml: str):
    if not stamped_xml:
        return None
    try:
        root = etree.fromstring(stamped_xml.encode("utf-8"), etree.XMLParser(resolve_entities=False, no_network=True))
    except etree.XMLSyntaxError:
        logger.warning("El XML timbrado devuelto por Finkok no pudo leerse")
        return None
    for element in root.iter():
        if isinstance(element.tag, str) and etree.QName(element).localname == "TimbreFiscalDigital":
            return element
    return None


def tfd_original_string(tfd) -> str:
    """Cadena original del complemento de certificación digital del SAT."""
    parts = [
        tfd.get("Version") or "1.1",
        tfd.get("UUID") or "",
        tfd.get("FechaTimbrado") or "",
        tfd.get("RfcProvCertif") or "",
    ]
    if tfd.get("Leyenda"):
        parts.append(tfd.get("Leyenda"))
    parts.extend([tfd.get("SelloCFD") or "", tfd.get("NoCertificadoSAT") or ""])
    return "||" + "|".join(parts) + "||"


def stamp_from_result(result: Dict[str, Any]) -> Optional[FiscalStamp]:
    """Arma el timbre con los campos de la respuesta y, si faltan, con el TFD del XML."""
    stamped_xml = result.get("xml") or ""
    tfd = _find_tfd(stamped_xml)
    tfd_value = (lambda name: tfd.get(name)) if tfd is not None else (lambda name: None)

    uuid = result.get("UUID") or tfd_value("UUID")
    if not uuid:
        return None
    try:
        return FiscalStamp(
            uuid=uuid,
            issued_at=result.get("Fecha") or tfd_value("FechaTimbrado"),
            authority_signature=result.get("SatSeal") or tfd_value("SelloSAT") or "",
            authority_certificate_number=result.get("NoCertificadoSAT") or tfd_value("NoCertificadoSAT") or "",
            stamped_xml=stamped_xml,
            tfd_original_string=tfd_original_string(tfd) if tfd is not None else None,
        )
    except ValidationError as e:
        logger.warning(f"Timbre devuelto por Finkok con datos inválidos: {e}")
        return None


def classify_stamp_result(result: Dict[str, Any]) -> Union[Stamped, AlreadyStamped, Rejected, TransientFailure]:
    """
    Clasifica la respuesta de `stamp`. Un 307 sin el timbre anterior se
    devuelve como Rejected('307'); el adaptador lo recupera con `stamped`.
    """
    incidents = extract_incidents(result)
    if incidents:
        codes = [str(item.get("CodigoError") or "") for item in incidents]
        message = format_incidents(incidents)
        if any(code in ALREADY_STAMPED_CODES for code in codes):
            previous = stamp_from_result(result)
            if previous is not None:
                return AlreadyStamped(stamp=previous)
            return Rejected(code="307", message=message)
        if all(code in TRANSIENT_CODES for code in codes):
            return TransientFailure(reason=message, code=codes[0])
        return Rejected(code=codes[0] or "UNKNOWN", message=message)

    stamp = stamp_from_result(result)
    if stamp is None:
        return Rejected(code="NO_UUID", message="No se pudo obtener el UUID del timbrado")
    return Stamped(stamp=stamp)


def classify_stamped_query(result: Dict[str, Any]) -> Optional[FiscalStamp]:
    """
    Respuesta de `stamped`: el timbre previo, o None si nunca se timbró
    (Finkok lo reporta con el código 307).
    """
    incidents = extract_incidents(result)
    if incidents:
        codes = [str(item.get("CodigoError") or "") for item in incidents]
        if any(code in ALREADY_STAMPED_CODES for code in codes):
            return None
        if all(code in TRANSIENT_CODES for code in codes):
            raise TransportError(format_incidents(incidents))
        raise AuthorityRejection(codes[0] or "UNKNOWN", format_incidents(incidents))
    return stamp_from_result(result)


# --- Cancelación y estatus ---

def classify_cancel_result(result: Dict[str, Any], uuid: str) -> Union[Cancelled, AlreadyCancelled, CancelRejected]:
    incidents = extract_incidents(result)
    if incidents:
        return CancelRejected(uuid=uuid, code=str(incidents[0].get("CodigoError") or "UNKNOWN"), message=format_incidents(incidents))

    folios = result.get("Folios") if isinstance(result.get("Folios"), dict) else {}
    candidates = [item for item in as_list(folios.get("Folio")) if isinstance(item, dict)]
    folio = next((item for item in candidates if (item.get("UUID") or "").upper() == uuid), None)
    if folio is None and candidates:
        folio = candidates[0]

    acknowledgement = result.get("Acuse")
    cancelled_at = result.get("Fecha")
    status = (folio or {}).get("EstatusUUID")
    if status is None or status == CANCELLED_STATUS:
        return Cancelled(uuid=uuid, cancelled_at=cancelled_at, acknowledgement=acknowledgement)
    if status == ALREADY_CANCELLED_STATUS:
        return AlreadyCancelled(uuid=uuid, cancelled_at=cancelled_at, acknowledgement=acknowledgement)
    detail = folio.get("EstatusCancelacion") or status
    return CancelRejected(uuid=uuid, code=status, message=f"No se pudo cancelar: {detail}")


def document_status_from(result: Dict[str, Any], uuid: str) -> DocumentStatus:
    if result.get("error"):
        raise AuthorityRejection("SAT_STATUS", str(result["error"]))
    sat = result.get("sat")
    if not isinstance(sat, dict):
        raise AuthorityRejection("SAT_STATUS", "No se obtuvo respuesta del SAT")
    status = sat.get("Estado")
    if status not in ("Vigente", "Cancelado"):
        status = "No Encontrado"
    return DocumentStatus(
        uuid=uuid,
        status=status,
        cancellable=sat.get("EsCancelable"),
        cancellation_status=sat.get("EstatusCancelacion"),
        code=sat.get("CodigoEstatus"),
    )


# --- Registro de emisores ---

def _already_exists(message: str) -> bool:
    lowered = message.lower()
    return "ya existe" in lowered or "already" in lowered or "registrado previamente" in lowered


def classify_registration_result(result: Dict[str, Any], tax_id: str) -> RegistrationResult:
    message = str(result.get("message") or "")
    if is_true(result.get("success")):
        return RegistrationResult(tax_id=tax_id, success=True, message=message)
    if _already_exists(message):
        return RegistrationResult(tax_id=tax_id, success=True, already_exists=True, message=message)
    return RegistrationResult(tax_id=tax_id, success=False, message=message or "Finkok rechazó el alta del RFC")


def classify_upload_result(result: Dict[str, Any], tax_id: str) -> UploadResult:
    message = str(result.get("message") or "")
    return UploadResult(tax_id=tax_id, success=is_true(result.get("success")), message=message)


def registration_status_from(result: Dict[str, Any], tax_id: str) -> RegistrationStatus:
    users = result.get("users") if isinstance(result.get("users"), dict) else {}
    entries = [item for item in as_list(users.get("ResellerUser")) if isinstance(item, dict)]
    user = next((item for item in entries if (item.get("taxpayer_id") or "").upper() == tax_id), None)
    if user is None:
        return RegistrationStatus(tax_id=tax_id, found=False, message=str(result.get("message") or ""))
    return RegistrationStatus(
        tax_id=tax_id,
        found=True,
        status=user.get("status") or "S",
        credit=_as_int(user.get("credit")),
        counter=_as_int(user.get("counter")),
        message=str(result.get("message") or ""),
    )


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
