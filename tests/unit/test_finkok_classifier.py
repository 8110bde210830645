# tests/unit/test_finkok_classifier.py
"""
Pruebas de la clasificación de respuestas de Finkok en resultados del
dominio: timbrado, 307, fallas transitorias, cancelación y registro.
"""
import pytest
import requests

from tests.conftest import STAMP_UUID
from timbrado.domain.errors import AuthorityRejection, TransportError
from timbrado.domain.models.results import (
    AlreadyCancelled,
    AlreadyStamped,
    Cancelled,
    CancelRejected,
    Rejected,
    Stamped,
    TransientFailure,
)
from timbrado.infrastructure.external import finkok_classifier as classifier

TFD_XML = (
    '<cfdi:Comprobante xmlns:cfdi="http://www.sat.gob.mx/cfd/4" '
    'xmlns:tfd="http://www.sat.gob.mx/TimbreFiscalDigital" Version="4.0">'
    '<cfdi:Complemento><tfd:TimbreFiscalDigital Version="1.1" '
    f'UUID="{STAMP_UUID.lower()}" FechaTimbrado="2024-01-15T10:31:00" RfcProvCertif="CVD110412TF6" '
    'SelloCFD="c2VsbG9DRkQ=" NoCertificadoSAT="00001000000505142236" SelloSAT="c2VsbG9TQVQ="/>'
    '</cfdi:Complemento></cfdi:Comprobante>'
)


def incidents(*codes):
    return {"Incidencias": {"Incidencia": [
        {"CodigoError": code, "MensajeIncidencia": f"mensaje {code}"} for code in codes
    ]}}


class TestStampResult:
    def test_success_with_response_fields(self):
        result = classifier.classify_stamp_result({
            "UUID": STAMP_UUID,
            "Fecha": "2024-01-15T10:31:00",
            "SatSeal": "c2VsbG9TQVQ=",
            "NoCertificadoSAT": "00001000000505142236",
            "xml": TFD_XML,
        })

        assert isinstance(result, Stamped)
        assert result.stamp.uuid == STAMP_UUID
        assert result.stamp.authority_signature == "c2VsbG9TQVQ="
        assert result.stamp.tfd_original_string.startswith(f"||1.1|{STAMP_UUID.lower()}|2024-01-15T10:31:00|")

    def test_missing_fields_are_read_from_the_tfd(self):
        result = classifier.classify_stamp_result({"xml": TFD_XML})

        assert isinstance(result, Stamped)
        assert result.stamp.uuid == STAMP_UUID
        assert result.stamp.authority_certificate_number == "00001000000505142236"

    def test_response_without_uuid_is_rejected(self):
        result = classifier.classify_stamp_result({"xml": None})
        assert isinstance(result, Rejected)
        assert result.code == "NO_UUID"

    def test_validation_incident_is_a_rejection(self):
        result = classifier.classify_stamp_result(incidents("CFDI40161"))
        assert isinstance(result, Rejected)
        assert result.code == "CFDI40161"
        assert "[CFDI40161]" in result.message

    def test_sat_unreachable_is_transient(self):
        result = classifier.classify_stamp_result(incidents("708"))
        assert isinstance(result, TransientFailure)
        assert result.code == "708"

    def test_mixed_incidents_are_a_rejection(self):
        assert isinstance(classifier.classify_stamp_result(incidents("708", "302")), Rejected)

    def test_already_stamped_with_previous_stamp(self):
        result = classifier.classify_stamp_result({**incidents("307"), "xml": TFD_XML})
        assert isinstance(result, AlreadyStamped)
        assert result.stamp.uuid == STAMP_UUID

    def test_already_stamped_without_previous_stamp(self):
        result = classifier.classify_stamp_result(incidents("307"))
        assert isinstance(result, Rejected)
        assert result.code == "307"


class TestStampedQuery:
    def test_not_stamped_is_none(self):
        assert classifier.classify_stamped_query(incidents("307")) is None

    def test_found_stamp(self):
        assert classifier.classify_stamped_query({"xml": TFD_XML}).uuid == STAMP_UUID

    def test_transient_incident_raises_transport_error(self):
        with pytest.raises(TransportError):
            classifier.classify_stamped_query(incidents("708"))

    def test_other_incident_raises_rejection(self):
        with pytest.raises(AuthorityRejection) as error:
            classifier.classify_stamped_query(incidents("705"))
        assert error.value.code == "705"


class TestTransportClassification:
    def test_timeout(self):
        error = classifier.classify_request_exception(requests.exceptions.Timeout("lento"))
        assert isinstance(error, TransportError)
        assert "Tiempo de espera" in str(error)

    def test_connection_error(self):
        error = classifier.classify_request_exception(requests.exceptions.ConnectionError("caído"))
        assert "conexión" in str(error)

    def test_http_status(self):
        assert isinstance(classifier.classify_http_status(503), TransportError)
        rejection = classifier.classify_http_status(401)
        assert isinstance(rejection, AuthorityRejection)
        assert rejection.code == "HTTP401"
        assert classifier.classify_http_status(200) is None

    def test_soap_faults(self):
        assert isinstance(classifier.classify_soap_fault("soap:Server", "fallo interno"), TransportError)
        rejection = classifier.classify_soap_fault("soap:Client", "petición inválida")
        assert isinstance(rejection, AuthorityRejection)
        assert rejection.code == "Client"


class TestCancelResult:
    def test_cancelled(self):
        result = classifier.classify_cancel_result({
            "Folios": {"Folio": {"UUID": STAMP_UUID, "EstatusUUID": "201"}},
            "Acuse": "<Acuse/>",
        }, STAMP_UUID)
        assert isinstance(result, Cancelled)
        assert result.acknowledgement == "<Acuse/>"

    def test_already_cancelled(self):
        result = classifier.classify_cancel_result({"Folios": {"Folio": {"UUID": STAMP_UUID, "EstatusUUID": "202"}}}, STAMP_UUID)
        assert isinstance(result, AlreadyCancelled)

    def test_other_status_is_rejected(self):
        result = classifier.classify_cancel_result({
            "Folios": {"Folio": {"UUID": STAMP_UUID, "EstatusUUID": "205", "EstatusCancelacion": "No encontrado"}},
        }, STAMP_UUID)
        assert isinstance(result, CancelRejected)
        assert result.code == "205"

    def test_incident_is_rejected(self):
        result = classifier.classify_cancel_result(incidents("300"), STAMP_UUID)
        assert isinstance(result, CancelRejected)
        assert result.code == "300"


class TestStatusAndRegistration:
    def test_document_status(self):
        status = classifier.document_status_from({"sat": {
            "Estado": "Vigente", "EsCancelable": "Cancelable sin aceptación", "CodigoEstatus": "S - Comprobante obtenido satisfactoriamente.",
        }}, STAMP_UUID)
        assert status.status == "Vigente"
        assert status.cancellable == "Cancelable sin aceptación"

    def test_unknown_document_status(self):
        assert classifier.document_status_from({"sat": {"Estado": "Otro"}}, STAMP_UUID).status == "No Encontrado"

    def test_document_status_error(self):
        with pytest.raises(AuthorityRejection):
            classifier.document_status_from({"error": "UUID inválido"}, STAMP_UUID)

    def test_registration_already_exists_counts_as_success(self):
        result = classifier.classify_registration_result(
            {"success": "false", "message": "El RFC ya existe"}, "AAA010101AAA",
        )
        assert result.success is True
        assert result.already_exists is True

    def test_registration_failure(self):
        result = classifier.classify_registration_result({"success": "false", "message": "RFC inválido"}, "AAA010101AAA")
        assert result.success is False

    def test_registration_status(self):
        status = classifier.registration_status_from({"users": {"ResellerUser": [
            {"taxpayer_id": "BBB020202BBB", "status": "S"},
            {"taxpayer_id": "AAA010101AAA", "status": "A", "credit": "10", "counter": "3"},
        ]}}, "AAA010101AAA")
        assert status.active is True
        assert status.credit == 10
        assert status.counter == 3

    def test_registration_status_not_found(self):
        status = classifier.registration_status_from({"users": None, "message": "No encontrado"}, "AAA010101AAA")
        assert status.found is False
        assert status.active is False
