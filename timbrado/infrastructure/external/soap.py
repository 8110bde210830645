# timbrado/infrastructure/external/soap.py
import base64
from typing import Any, Dict, Optional, Tuple

from lxml import etree

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"


def build_envelope(namespace: str, operation: str, params: Dict[str, Any]) -> bytes:
    """Sobre SOAP 1.1 con los parámetros como hijos de la operación. Los bytes viajan en Base64."""
    envelope = etree.Element(f"{{{SOAP_ENV_NS}}}Envelope", nsmap={"soapenv": SOAP_ENV_NS, "ns": namespace})
    etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Header")
    body = etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    call = etree.SubElement(body, f"{{{namespace}}}{operation}")
    for name, value in params.items():
        if value is None:
            continue
        child = etree.SubElement(call, f"{{{namespace}}}{name}")
        if isinstance(value, bytes):
            child.text = base64.b64encode(value).decode("ascii")
        else:
            child.text = str(value)
    return etree.tostring(envelope, encoding="UTF-8", xml_declaration=True)


def element_to_dict(element) -> Any:
    """Convierte un nodo de respuesta en dicts/listas usando nombres locales."""
    children = [child for child in element if isinstance(child.tag, str)]
    if not children:
        text = (element.text or "").strip()
        return text or None
    result: Dict[str, Any] = {}
    for child in children:
        name = etree.QName(child).localname
        value = element_to_dict(child)
        if name in result:
            if not isinstance(result[name], list):
                result[name] = [result[name]]
            result[name].append(value)
        else:
            result[name] = value
    return result


def parse_response(content: bytes, operation: str) -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[str, str]]]:
    """
    Retorna (resultado, None) o (None, (faultcode, faultstring)).
    Lanza etree.XMLSyntaxError o ValueError si la respuesta no es SOAP.
    """
    parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)
    root = etree.fromstring(content, parser)
    body = root.find(f"{{{SOAP_ENV_NS}}}Body")
    if body is None or len(body) == 0:
        raise ValueError("La respuesta no contiene un Body SOAP")

    payload = body[0]
    if etree.QName(payload).localname == "Fault":
        code = payload.findtext("faultcode") or ""
        message = payload.findtext("faultstring") or ""
        return None, (code.strip(), message.strip())

    content_node = payload
    for child in payload:
        if isinstance(child.tag, str) and etree.QName(child).localname == f"{operation}Result":
            content_node = child
            break
    result = element_to_dict(content_node)
    return (result if isinstance(result, dict) else {}), None
