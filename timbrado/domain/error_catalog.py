# timbrado/domain/error_catalog.py
"""
Catálogo de errores conocidos del SAT y de Finkok con mensajes legibles
y la acción sugerida al usuario.
"""
import re
from typing import Dict, Optional

from timbrado.domain.models.stamping import Diagnostic

GENERIC_ACTION = "Revisar los datos de la factura e intentar nuevamente"

CFDI_ERROR_CATALOG: Dict[str, Dict[str, str]] = {
    # Estructura XML
    "301": {
        "title": "XML mal formado",
        "description": "El documento XML no cumple con la estructura requerida por el SAT",
        "action": "Contactar soporte tecnico",
    },
    "302": {
        "title": "Sello invalido",
        "description": "La firma digital del comprobante no es valida",
        "action": "Verificar que los CSD esten vigentes y correctamente configurados",
        "field": "Sello",
    },
    "303": {
        "title": "Sello no corresponde",
        "description": "El sello digital no corresponde con los datos del comprobante",
        "action": "Regenerar el XML y volver a intentar",
    },
    "305": {
        "title": "Certificado revocado o caducado",
        "description": "El Certificado de Sello Digital ha sido revocado o ya expiro",
        "action": "Renovar los CSD en el portal del SAT y actualizarlos en la configuracion",
        "field": "Certificado",
    },
    "307": {
        "title": "CFDI ya timbrado",
        "description": "Este comprobante ya fue timbrado anteriormente con el mismo contenido",
        "action": "Recuperar el UUID existente del timbrado anterior",
    },
    # Validaciones CFDI 4.0
    "CFDI40102": {
        "title": "Fecha fuera de rango",
        "description": "La fecha del comprobante esta fuera del rango permitido (72 horas)",
        "action": "Verificar que la fecha del comprobante sea reciente",
        "field": "Fecha",
    },
    "CFDI40138": {
        "title": "Regimen fiscal incompatible",
        "description": "El regimen fiscal del receptor no es compatible con el uso de CFDI seleccionado",
        "action": "Verificar que el uso de CFDI sea compatible con el regimen fiscal del cliente",
        "field": "UsoCFDI",
    },
    "CFDI40161": {
        "title": "RFC del receptor invalido",
        "description": "El RFC del receptor no esta registrado en la lista del SAT (LRFC)",
        "action": "Verificar que el RFC del cliente sea correcto y este dado de alta en el SAT",
        "field": "RFC",
    },
    # Validaciones heredadas de CFDI 3.3
    "CFDI33101": {
        "title": "Certificado no vigente",
        "description": "El certificado del emisor no esta vigente para la fecha del comprobante",
        "action": "Renovar los CSD del emisor",
        "field": "NoCertificado",
    },
    "CFDI33102": {
        "title": "RFC del emisor no corresponde",
        "description": "El RFC del emisor no corresponde con el certificado",
        "action": "Verificar que el RFC del emisor coincida con los CSD configurados",
        "field": "RFC Emisor",
    },
    "CFDI33103": {
        "title": "Fecha fuera de vigencia del CSD",
        "description": "La fecha del comprobante no esta dentro de la vigencia del certificado",
        "action": "Verificar vigencia de los CSD o actualizar la fecha",
    },
    "CFDI33105": {
        "title": "Codigo postal invalido",
        "description": "El codigo postal del lugar de expedicion no existe en el catalogo del SAT",
        "action": "Corregir el codigo postal del emisor en la configuracion",
        "field": "LugarExpedicion",
    },
    "CFDI33106": {
        "title": "Regimen fiscal invalido",
        "description": "El regimen fiscal del emisor no corresponde con su tipo de RFC",
        "action": "Verificar el regimen fiscal del emisor",
        "field": "RegimenFiscal",
    },
    "CFDI33111": {
        "title": "Clave de producto invalida",
        "description": "La clave de producto/servicio no existe en el catalogo del SAT",
        "action": "Corregir la clave de producto (ClaveProdServ) en los items de la factura",
        "field": "ClaveProdServ",
    },
    "CFDI33112": {
        "title": "Clave de unidad invalida",
        "description": "La clave de unidad no existe en el catalogo del SAT",
        "action": "Corregir la clave de unidad (ClaveUnidad) en los items de la factura",
        "field": "ClaveUnidad",
    },
    # Finkok
    "705": {
        "title": "Usuario no autorizado",
        "description": "Las credenciales de Finkok no son validas o el servicio esta suspendido",
        "action": "Verificar las credenciales de Finkok en la configuracion",
    },
    "720": {
        "title": "CSD no registrados en Finkok",
        "description": "No hay Certificados de Sello Digital activos para este RFC en Finkok",
        "action": "Cargar los CSD del emisor en la seccion de configuracion CFDI",
        "field": "CSD",
    },
    # Complemento de pago
    "PAGO10101": {
        "title": "UUID de documento invalido",
        "description": "El UUID del documento relacionado no corresponde a un CFDI timbrado",
        "action": "Verificar que la factura asociada este timbrada correctamente",
        "field": "IdDocumento",
    },
    "PAGO10104": {
        "title": "Monto excede saldo",
        "description": "El monto del pago excede el saldo pendiente del documento",
        "action": "Verificar el saldo pendiente de la factura",
        "field": "ImpPagado",
    },
}

_BRACKET_CODE = re.compile(r"\[([A-Z0-9]+)\]")
_LEADING_CODE = re.compile(r"^(\d{3})\s*[-:]?\s*")


def lookup(code: Optional[str]) -> Optional[Diagnostic]:
    if not code:
        return None
    entry = CFDI_ERROR_CATALOG.get(code)
    if entry is None:
        return None
    return Diagnostic(code=code, **entry)


def extract_code(message: str) -> Optional[str]:
    """
    Busca el código en un mensaje del PAC: primero `[CODIGO]`, luego
    un código numérico al inicio y por último el título del catálogo.
    """
    if not message:
        return None
    match = _BRACKET_CODE.search(message)
    if match:
        return match.group(1)
    match = _LEADING_CODE.match(message)
    if match:
        return match.group(1)
    lowered = message.lower()
    for code, entry in CFDI_ERROR_CATALOG.items():
        if entry["title"].lower() in lowered:
            return code
    return None


def describe(code: Optional[str], message: str = "") -> Diagnostic:
    """Diagnóstico legible para un rechazo; nunca falla aunque el código sea desconocido."""
    diagnostic = lookup(code) or lookup(extract_code(message))
    if diagnostic is not None:
        return diagnostic
    return Diagnostic(
        code=code or extract_code(message) or "UNKNOWN",
        title="Error de timbrado",
        description=message or "Error desconocido",
        action=GENERIC_ACTION,
    )


# Motivos de cancelación del SAT; el 01 exige el UUID que sustituye al cancelado
CANCELLATION_REASONS: Dict[str, str] = {
    "01": "Comprobante emitido con errores con relacion",
    "02": "Comprobante emitido con errores sin relacion",
    "03": "No se llevo a cabo la operacion",
    "04": "Operacion nominativa relacionada en una factura global",
}
