# timbrado/infrastructure/xml/cfdi_builder.py
"""
Genera el XML CFDI 4.0 (y el Complemento de Pago 2.0 para comprobantes
tipo P) a partir de un FiscalDocument.
"""
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from lxml import etree

from timbrado.domain.models.fiscal_document import (
    ConceptLine,
    FiscalDocument,
    PaymentComplement,
    RelatedDocumentPayment,
    TaxLine,
)

CFDI_NS = "http://www.sat.gob.mx/cfd/4"
PAGO20_NS = "http://www.sat.gob.mx/Pagos20"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"

CFDI_SCHEMA_LOCATION = "http://www.sat.gob.mx/cfd/4 http://www.sat.gob.mx/sitio_internet/cfd/4/cfdv40.xsd"
PAGO20_SCHEMA_LOCATION = "http://www.sat.gob.mx/Pagos20 http://www.sat.gob.mx/sitio_internet/cfd/Pagos/Pagos20.xsd"

# Hora del centro de México, sin horario de verano desde 2022
MEXICO_TZ = timezone(timedelta(hours=-6))

IVA_RATE = Decimal("0.16")


def format_decimal(value, decimals: int = 2) -> str:
    quantum = Decimal(1).scaleb(-decimals)
    return str(Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP))


def format_cfdi_date(moment: datetime) -> str:
    """Formato del SAT: YYYY-MM-DDTHH:MM:SS en hora local de México."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(MEXICO_TZ)
    return moment.strftime("%Y-%m-%dT%H:%M:%S")


def _cfdi(tag: str) -> str:
    return f"{{{CFDI_NS}}}{tag}"


def _pago(tag: str) -> str:
    return f"{{{PAGO20_NS}}}{tag}"


def _set_optional(element, name: str, value) -> None:
    if value is not None and value != "":
        element.set(name, value)


def _tax_attributes(element, line: TaxLine, with_base: bool = True) -> None:
    if with_base and line.base is not None:
        element.set("Base", format_decimal(line.base))
    element.set("Impuesto", line.tax)
    if line.factor_type:
        element.set("TipoFactor", line.factor_type)
    if line.rate is not None:
        element.set("TasaOCuota", format_decimal(line.rate, 6))
    if line.amount is not None:
        element.set("Importe", format_decimal(line.amount))


def _add_concept(parent, concept: ConceptLine) -> None:
    node = etree.SubElement(parent, _cfdi("Concepto"))
    node.set("ClaveProdServ", concept.product_code)
    _set_optional(node, "NoIdentificacion", concept.id_number)
    node.set("Cantidad", format_decimal(concept.quantity, 6))
    node.set("ClaveUnidad", concept.unit_code)
    _set_optional(node, "Unidad", concept.unit)
    node.set("Descripcion", concept.description)
    node.set("ValorUnitario", format_decimal(concept.unit_value, 6))
    node.set("Importe", format_decimal(concept.amount))
    if concept.discount:
        node.set("Descuento", format_decimal(concept.discount))
    node.set("ObjetoImp", concept.tax_object)

    if not concept.transfers and not concept.withholdings:
        return
    taxes = etree.SubElement(node, _cfdi("Impuestos"))
    if concept.transfers:
        transfers = etree.SubElement(taxes, _cfdi("Traslados"))
        for line in concept.transfers:
            _tax_attributes(etree.SubElement(transfers, _cfdi("Traslado")), line)
    if concept.withholdings:
        withholdings = etree.SubElement(taxes, _cfdi("Retenciones"))
        for line in concept.withholdings:
            _tax_attributes(etree.SubElement(withholdings, _cfdi("Retencion")), line)


def _add_document_taxes(parent, document: FiscalDocument) -> None:
    taxes = document.taxes
    if taxes is None:
        return
    node = etree.SubElement(parent, _cfdi("Impuestos"))
    if taxes.total_withheld is not None:
        node.set("TotalImpuestosRetenidos", format_decimal(taxes.total_withheld))
    if taxes.total_transferred is not None:
        node.set("TotalImpuestosTrasladados", format_decimal(taxes.total_transferred))
    # En el comprobante las retenciones van antes que los traslados
    if taxes.withholdings:
        withholdings = etree.SubElement(node, _cfdi("Retenciones"))
        for line in taxes.withholdings:
            retention = etree.SubElement(withholdings, _cfdi("Retencion"))
            retention.set("Impuesto", line.tax)
            retention.set("Importe", format_decimal(line.amount or 0))
    if taxes.transfers:
        transfers = etree.SubElement(node, _cfdi("Traslados"))
        for line in taxes.transfers:
            _tax_attributes(etree.SubElement(transfers, _cfdi("Traslado")), line)


def _related_tax(related: RelatedDocumentPayment):
    base = related.tax_base if related.tax_base is not None else related.amount_paid / (1 + IVA_RATE)
    amount = related.tax_amount if related.tax_amount is not None else base * IVA_RATE
    return base, amount


def _add_payment_complement(parent, complement: PaymentComplement) -> None:
    total_paid = Decimal(0)
    total_base = Decimal(0)
    total_tax = Decimal(0)
    for payment in complement.payments:
        total_paid += payment.amount
        for related in payment.related_documents:
            base, amount = _related_tax(related)
            total_base += base
            total_tax += amount

    complement_node = etree.SubElement(parent, _cfdi("Complemento"))
    pagos = etree.SubElement(complement_node, _pago("Pagos"), nsmap={"pago20": PAGO20_NS})
    pagos.set("Version", "2.0")
    totals = etree.SubElement(pagos, _pago("Totales"))
    totals.set("TotalTrasladosBaseIVA16", format_decimal(total_base))
    totals.set("TotalTrasladosImpuestoIVA16", format_decimal(total_tax))
    totals.set("MontoTotalPagos", format_decimal(total_paid))

    for payment in complement.payments:
        node = etree.SubElement(pagos, _pago("Pago"))
        node.set("FechaPago", format_cfdi_date(payment.paid_at))
        node.set("FormaDePagoP", payment.payment_form)
        node.set("MonedaP", payment.currency)
        if payment.currency == "MXN":
            node.set("TipoCambioP", "1")
        elif payment.exchange_rate is not None:
            node.set("TipoCambioP", format_decimal(payment.exchange_rate, 4))
        node.set("Monto", format_decimal(payment.amount))

        payment_base = Decimal(0)
        payment_tax = Decimal(0)
        for related in payment.related_documents:
            base, amount = _related_tax(related)
            payment_base += base
            payment_tax += amount

            if related.currency == payment.currency or payment.exchange_rate is None:
                equivalence = "1"
            else:
                equivalence = format_decimal(payment.exchange_rate, 4)

            doc = etree.SubElement(node, _pago("DoctoRelacionado"))
            doc.set("IdDocumento", related.uuid.upper())
            _set_optional(doc, "Serie", related.series)
            doc.set("Folio", "".join(ch for ch in related.folio if ch.isdigit()))
            doc.set("MonedaDR", related.currency)
            doc.set("EquivalenciaDR", equivalence)
            doc.set("NumParcialidad", str(related.installment))
            doc.set("ImpSaldoAnt", format_decimal(related.previous_balance))
            doc.set("ImpPagado", format_decimal(related.amount_paid))
            doc.set("ImpSaldoInsoluto", format_decimal(related.remaining_balance))
            doc.set("ObjetoImpDR", "02")
            transfers_dr = etree.SubElement(etree.SubElement(doc, _pago("ImpuestosDR")), _pago("TrasladosDR"))
            transfer_dr = etree.SubElement(transfers_dr, _pago("TrasladoDR"))
            transfer_dr.set("BaseDR", format_decimal(base))
            transfer_dr.set("ImpuestoDR", "002")
            transfer_dr.set("TipoFactorDR", "Tasa")
            transfer_dr.set("TasaOCuotaDR", "0.160000")
            transfer_dr.set("ImporteDR", format_decimal(amount))

        transfers_p = etree.SubElement(etree.SubElement(node, _pago("ImpuestosP")), _pago("TrasladosP"))
        transfer_p = etree.SubElement(transfers_p, _pago("TrasladoP"))
        transfer_p.set("BaseP", format_decimal(payment_base))
        transfer_p.set("ImpuestoP", "002")
        transfer_p.set("TipoFactorP", "Tasa")
        transfer_p.set("TasaOCuotaP", "0.160000")
        transfer_p.set("ImporteP", format_decimal(payment_tax))


def build_cfdi_xml(
    document: FiscalDocument,
    certificate_number: Optional[str] = None,
    certificate_b64: Optional[str] = None,
    seal: Optional[str] = None,
) -> bytes:
    """
    Construye el XML del comprobante. Sin certificado ni sello produce el
    pre-CFDI; el Signer lo vuelve a construir con `NoCertificado`,
    `Certificado` y `Sello`. Los totales ausentes no se escriben, para que
    la cadena original los reporte como faltantes.
    """
    is_payment = document.document_type == "P"
    nsmap = {"cfdi": CFDI_NS, "xsi": XSI_NS}
    schema_locations: List[str] = [CFDI_SCHEMA_LOCATION]
    if is_payment:
        nsmap["pago20"] = PAGO20_NS
        schema_locations.append(PAGO20_SCHEMA_LOCATION)

    root = etree.Element(_cfdi("Comprobante"), nsmap=nsmap)
    root.set(f"{{{XSI_NS}}}schemaLocation", " ".join(schema_locations))
    root.set("Version", document.version)
    _set_optional(root, "Serie", document.series)
    if document.folio:
        root.set("Folio", "".join(ch for ch in document.folio if ch.isdigit()) or document.folio)
    root.set("Fecha", format_cfdi_date(document.issued_at))
    _set_optional(root, "Sello", seal)
    if not is_payment:
        _set_optional(root, "FormaPago", document.payment_form)
    _set_optional(root, "NoCertificado", certificate_number)
    _set_optional(root, "Certificado", certificate_b64)

    if is_payment:
        root.set("SubTotal", "0")
        root.set("Moneda", "XXX")
        root.set("Total", "0")
    else:
        if document.subtotal is not None:
            root.set("SubTotal", format_decimal(document.subtotal))
        if document.discount:
            root.set("Descuento", format_decimal(document.discount))
        root.set("Moneda", document.currency)
        if document.currency not in ("MXN", "XXX") and document.exchange_rate is not None:
            root.set("TipoCambio", format_decimal(document.exchange_rate, 4))
        if document.total is not None:
            root.set("Total", format_decimal(document.total))

    root.set("TipoDeComprobante", document.document_type)
    root.set("Exportacion", document.export_code)
    if not is_payment:
        _set_optional(root, "MetodoPago", document.payment_method)
    root.set("LugarExpedicion", document.place_of_issue)

    emitter = etree.SubElement(root, _cfdi("Emisor"))
    emitter.set("Rfc", document.emitter.tax_id)
    emitter.set("Nombre", document.emitter.name)
    emitter.set("RegimenFiscal", document.emitter.tax_regime)

    receiver = etree.SubElement(root, _cfdi("Receptor"))
    receiver.set("Rfc", document.receiver.tax_id)
    receiver.set("Nombre", document.receiver.name)
    receiver.set("DomicilioFiscalReceptor", document.receiver.postal_code)
    receiver.set("RegimenFiscalReceptor", document.receiver.tax_regime)
    receiver.set("UsoCFDI", "CP01" if is_payment else document.receiver.cfdi_use)

    concepts = etree.SubElement(root, _cfdi("Conceptos"))
    if is_payment:
        # Concepto fijo de los comprobantes de pago
        concept = etree.SubElement(concepts, _cfdi("Concepto"))
        concept.set("ClaveProdServ", "84111506")
        concept.set("Cantidad", "1")
        concept.set("ClaveUnidad", "ACT")
        concept.set("Descripcion", "Pago")
        concept.set("ValorUnitario", "0")
        concept.set("Importe", "0")
        concept.set("ObjetoImp", "01")
    else:
        for line in document.concepts:
            _add_concept(concepts, line)
        _add_document_taxes(root, document)

    if is_payment and document.payment_complement is not None:
        _add_payment_complement(root, document.payment_complement)

    return etree.tostring(root, encoding="UTF-8", xml_declaration=True)
