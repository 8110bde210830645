# timbrado/infrastructure/api/routers/cfdi_router.py
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel

from timbrado.application.services.canonicalizer import Canonicalizer
from timbrado.application.services.credential_store import CredentialStore
from timbrado.application.use_cases.provision_credential import ProvisionCredentialUseCase
from timbrado.application.use_cases.stamping_orchestrator import StampingOrchestrator
from timbrado.domain.errors import (
    AuthorityRejection,
    CanonicalizationError,
    CredentialAlreadyRegisteredError,
    CredentialError,
    CredentialNotFoundError,
    InvalidCancellationRequest,
    InvalidTransitionError,
    TransportError,
)
from timbrado.domain.models.fiscal_document import FiscalDocument
from timbrado.domain.models.stamping import CancellationOutcome, StampingOutcome, StampingStatus
from timbrado.infrastructure.celery.worker import celery_app
from timbrado.infrastructure.dependencies import (
    get_canonicalizer,
    get_credential_store,
    get_orchestrator,
    get_provisioning,
)
from timbrado.infrastructure.xml.cfdi_builder import build_cfdi_xml

router = APIRouter(prefix="/api/v1/cfdi", tags=["CFDI"])


class CancelRequest(BaseModel):
    emitter_tax_id: str
    document_id: str
    reason: str
    substitution_uuid: Optional[str] = None


@router.post("/timbrar", response_model=StampingOutcome, summary="Timbrar un comprobante")
def stamp_document(document: FiscalDocument, orchestrator: StampingOrchestrator = Depends(get_orchestrator)):
    """
    Firma y timbra el comprobante en la misma petición. Volver a enviar el
    mismo documento regresa el timbre ya emitido sin llamar al PAC.
    """
    return orchestrator.stamp(document)


@router.post("/preview", summary="Previsualizar el pre-CFDI sin timbrar")
def preview_document(document: FiscalDocument, canonicalizer: Canonicalizer = Depends(get_canonicalizer)):
    """
    Construye el pre-CFDI y su cadena original sin firmar ni llamar al PAC.
    Un campo faltante responde 422 indicando cuál es.
    """
    try:
        original = canonicalizer.canonicalize(document)
    except CanonicalizationError as e:
        raise HTTPException(status_code=422, detail={"message": str(e), "field": e.field})
    return {
        "document_id": document.document_id,
        "xml": build_cfdi_xml(document).decode("utf-8"),
        "original_string": original.text,
        "transform_version": original.transform_version,
    }


@router.post("/reintentar", status_code=202, summary="Encolar el timbrado en segundo plano")
def queue_stamp(document: FiscalDocument):
    celery_app.send_task('tasks.stamp_document', args=[document.model_dump_json()])
    return {
        "status": "stamping_queued",
        "document_id": document.document_id,
        "idempotency_key": document.idempotency_key(),
    }


@router.post("/cancelar", response_model=CancellationOutcome, summary="Cancelar un CFDI timbrado")
def cancel_document(request: CancelRequest, orchestrator: StampingOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.cancel(
            request.emitter_tax_id, request.document_id, request.reason, request.substitution_uuid,
        )
    except InvalidCancellationRequest as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except TransportError as e:
        raise HTTPException(status_code=502, detail=f"Finkok no respondió: {e}")


@router.post("/csd", summary="Registrar el CSD de un emisor")
async def upload_credential(
    rfc: str = Form(..., description="RFC del emisor."),
    password: str = Form(..., description="Contraseña de la llave privada."),
    cer_file: UploadFile = File(..., description="Certificado .cer"),
    key_file: UploadFile = File(..., description="Llave privada .key"),
    replace: bool = Form(False, description="Sustituir el CSD vigente."),
    provisioning: ProvisionCredentialUseCase = Depends(get_provisioning),
):
    if not (cer_file.filename or "").lower().endswith(".cer"):
        raise HTTPException(status_code=400, detail="El certificado debe tener extensión .cer")
    if not (key_file.filename or "").lower().endswith(".key"):
        raise HTTPException(status_code=400, detail="La llave privada debe tener extensión .key")
    if not password.strip():
        raise HTTPException(status_code=400, detail="La contraseña de la llave es obligatoria")

    certificate_bytes = await cer_file.read()
    key_bytes = await key_file.read()
    try:
        result = provisioning.execute(rfc, certificate_bytes, key_bytes, password, replace=replace)
    except CredentialAlreadyRegisteredError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except CredentialError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return {
        "status": "registered",
        "registration": result.registration.model_dump(mode="json"),
        "finkok_ready": result.remote_ready,
        "finkok_error": result.remote_error,
    }


@router.get("/csd", summary="Consultar el CSD registrado de un emisor")
def get_credential(
    rfc: str,
    store: CredentialStore = Depends(get_credential_store),
):
    try:
        credential = store.get(rfc)
    except CredentialNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CredentialError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return {
        "rfc": credential.tax_id,
        "certificate_number": credential.certificate_number,
        "not_before": credential.not_before.isoformat(),
        "not_after": credential.not_after.isoformat(),
        "finkok_active": store.verify_remote(credential.tax_id),
    }


@router.get("/status/{emitter_tax_id}/{document_id}", response_model=StampingStatus, summary="Estado del timbrado")
def stamping_status(emitter_tax_id: str, document_id: str, orchestrator: StampingOrchestrator = Depends(get_orchestrator)):
    status = orchestrator.status(emitter_tax_id, document_id)
    if status.process is None:
        raise HTTPException(status_code=404, detail=f"No hay timbrado para {document_id}")
    return status


@router.get("/status/{emitter_tax_id}/{document_id}/sat", summary="Estatus del CFDI ante el SAT")
def authority_status(emitter_tax_id: str, document_id: str, orchestrator: StampingOrchestrator = Depends(get_orchestrator)):
    try:
        status = orchestrator.authority_status(emitter_tax_id, document_id)
    except (TransportError, AuthorityRejection) as e:
        raise HTTPException(status_code=502, detail=str(e))
    if status is None:
        raise HTTPException(status_code=404, detail=f"{document_id} no está timbrado")
    return status
