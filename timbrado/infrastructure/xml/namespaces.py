# timbrado/infrastructure/xml/namespaces.py
from lxml import etree

XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"


def strip_namespaces(xml: bytes) -> bytes:
    """
    Quita prefijos y declaraciones de namespace de un XML (cfdi:, pago20:, ...)
    y elimina los atributos xsi:* como schemaLocation. Conserva el orden de los
    elementos, los atributos y el texto. Aplicarla dos veces da el mismo resultado.
    """
    parser = etree.XMLParser(resolve_entities=False, no_network=True)
    root = etree.fromstring(xml, parser)

    for element in root.iter():
        # Comentarios e instrucciones de procesamiento no tienen tag de texto
        if not isinstance(element.tag, str):
            continue
        element.tag = etree.QName(element).localname
        for name in list(element.attrib):
            qname = etree.QName(name)
            if qname.namespace is None:
                continue
            value = element.attrib.pop(name)
            if qname.namespace != XSI_NS:
                element.set(qname.localname, value)

    etree.cleanup_namespaces(root)
    return etree.tostring(root, encoding="UTF-8", xml_declaration=True)
