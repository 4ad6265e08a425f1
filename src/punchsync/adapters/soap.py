"""SOAP 1.1 / 1.2 envelope codec for the legacy device-controller web service.

Covers the three things the source client needs from SOAP:

    build_envelope()  — request body for one {action, version} combination
    parse_response()  — unwrap ``<ActionResult>`` into rows or a JSON payload
    parse_wsdl()      — target namespace, operations and soapActions from ?wsdl

Deployments disagree on how the result is carried: JSON text, XML escaped
into text, child-element rows, or a .NET DataSet diffgram.  All four are
accepted; the schema subtree of a diffgram is skipped.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping
from xml.etree import ElementTree as ET

logger = logging.getLogger("punchsync.source.soap")

SOAP11_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP12_ENV_NS = "http://www.w3.org/2003/05/soap-envelope"

_ENV_NS = {"1.1": SOAP11_ENV_NS, "1.2": SOAP12_ENV_NS}


class SoapFault(ValueError):
    """The service answered with a <Fault> element."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class MalformedResponse(ValueError):
    """The body is not parseable as the expected XML/JSON."""


def _local(tag: str) -> str:
    """Strip the ``{namespace}`` prefix ElementTree puts on tags."""
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _child(elem: ET.Element, name: str) -> ET.Element | None:
    for c in elem:
        if _local(c.tag) == name:
            return c
    return None


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


def soap_action_uri(namespace: str, action: str) -> str:
    if namespace.endswith("/"):
        return f"{namespace}{action}"
    return f"{namespace}/{action}"


def build_envelope(
    action: str, namespace: str, params: Mapping[str, Any], version: str = "1.1"
) -> bytes:
    """Serialize a SOAP request envelope.

    Args:
        action:    Operation name, used as the body element tag.
        namespace: Service target namespace (``http://tempuri.org/`` by default).
        params:    Operation parameters, written as child elements in order.
        version:   ``"1.1"`` or ``"1.2"``.

    Returns:
        UTF-8 encoded XML with declaration.
    """
    env_ns = _ENV_NS.get(version)
    if env_ns is None:
        raise ValueError(f"unsupported SOAP version {version!r}")

    ET.register_namespace("soap" if version == "1.1" else "soap12", env_ns)
    envelope = ET.Element(f"{{{env_ns}}}Envelope")
    body = ET.SubElement(envelope, f"{{{env_ns}}}Body")
    op = ET.SubElement(body, action, {"xmlns": namespace})
    for key, value in params.items():
        ET.SubElement(op, key).text = "" if value is None else str(value)
    return ET.tostring(envelope, encoding="utf-8", xml_declaration=True)


def soap_headers(action: str, namespace: str, version: str, soap_action: str | None = None) -> dict[str, str]:
    """HTTP headers for a SOAP request.

    SOAP 1.1 carries the action in a quoted ``SOAPAction`` header; SOAP 1.2
    carries it as the ``action`` parameter of the content type.
    """
    uri = soap_action or soap_action_uri(namespace, action)
    if version == "1.2":
        return {"Content-Type": f'application/soap+xml; charset=utf-8; action="{uri}"'}
    return {"Content-Type": "text/xml; charset=utf-8", "SOAPAction": f'"{uri}"'}


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


def _fault_message(fault: ET.Element) -> tuple[str, str | None]:
    # 1.1: faultcode/faultstring; 1.2: Code/Value + Reason/Text
    code = None
    message = None
    for el in fault.iter():
        name = _local(el.tag)
        if name in ("faultcode", "Value") and code is None and el.text:
            code = el.text.strip()
        elif name in ("faultstring", "Text") and message is None and el.text:
            message = el.text.strip()
    return message or "SOAP fault", code


def _is_leaf(elem: ET.Element) -> bool:
    return len(elem) == 0


def extract_rows(elem: ET.Element) -> list[dict[str, str]]:
    """Collect record-like elements beneath ``elem`` in document order.

    A row is an element whose children are all leaves.  Schema subtrees
    (``xs:schema`` in DataSet diffgrams) are ignored.
    """
    rows: list[dict[str, str]] = []
    for child in elem:
        if _local(child.tag) == "schema" or _is_leaf(child):
            continue
        if all(_is_leaf(g) for g in child):
            rows.append({_local(g.tag): (g.text or "").strip() for g in child})
        else:
            rows.extend(extract_rows(child))
    return rows


def _decode_text(text: str) -> Any:
    stripped = text.strip()
    if not stripped:
        return []
    if stripped[0] in "[{":
        try:
            return json.loads(stripped)
        except json.JSONDecodeError as exc:
            raise MalformedResponse(f"result text is not valid JSON: {exc}") from exc
    if stripped[0] == "<":
        try:
            inner = ET.fromstring(stripped)
        except ET.ParseError as exc:
            raise MalformedResponse(f"result text is not valid XML: {exc}") from exc
        if all(_is_leaf(c) for c in inner) and len(inner):
            return [{_local(c.tag): (c.text or "").strip() for c in inner}]
        return extract_rows(inner)
    raise MalformedResponse(f"unrecognised result text: {stripped[:60]!r}")


def parse_response(body: bytes | str, action: str) -> Any:
    """Decode a SOAP response body.

    Returns either a list of row dicts or a decoded JSON value, which the
    source client unwraps the same way as a JSON-dialect response.

    Raises:
        SoapFault:         The body is a SOAP fault.
        MalformedResponse: The body is not a SOAP envelope we understand.
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as exc:
        raise MalformedResponse(f"invalid XML: {exc}") from exc

    if _local(root.tag) != "Envelope":
        raise MalformedResponse(f"expected Envelope, got <{_local(root.tag)}>")
    soap_body = _child(root, "Body")
    if soap_body is None:
        raise MalformedResponse("envelope has no Body")

    fault = _child(soap_body, "Fault")
    if fault is not None:
        message, code = _fault_message(fault)
        raise SoapFault(message, code)

    response = _child(soap_body, f"{action}Response")
    if response is None:
        response = soap_body[0] if len(soap_body) else None
    if response is None:
        raise MalformedResponse("Body is empty")

    result = _child(response, f"{action}Result")
    if result is None:
        result = next((c for c in response if _local(c.tag).endswith("Result")), response)

    if _is_leaf(result):
        return _decode_text(result.text or "")
    return extract_rows(result)


def response_has_fault(body: bytes | str) -> bool:
    """True if ``body`` parses as a SOAP envelope carrying a Fault."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return False
    soap_body = _child(root, "Body")
    return soap_body is not None and _child(soap_body, "Fault") is not None


# ---------------------------------------------------------------------------
# WSDL
# ---------------------------------------------------------------------------


@dataclass
class ServiceDescription:
    """What a ``?wsdl`` document told us about the service.

    Attributes:
        namespace:    targetNamespace of the service.
        operations:   Operation names in document order.
        soap_actions: Operation name → soapAction URI from the bindings.
    """

    namespace: str | None
    operations: list[str] = field(default_factory=list)
    soap_actions: dict[str, str] = field(default_factory=dict)


def parse_wsdl(text: bytes | str) -> ServiceDescription:
    """Parse a WSDL 1.1 document.

    Raises:
        MalformedResponse: The document is not a WSDL definitions element.
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise MalformedResponse(f"invalid WSDL: {exc}") from exc
    if _local(root.tag) != "definitions":
        raise MalformedResponse(f"expected wsdl:definitions, got <{_local(root.tag)}>")

    description = ServiceDescription(namespace=root.get("targetNamespace"))
    for el in root.iter():
        name = _local(el.tag)
        if name == "portType":
            for op in el:
                op_name = op.get("name")
                if _local(op.tag) == "operation" and op_name and op_name not in description.operations:
                    description.operations.append(op_name)
        elif name == "binding":
            for op in el:
                op_name = op.get("name")
                if _local(op.tag) != "operation" or not op_name:
                    continue
                for sub in op:
                    action = sub.get("soapAction")
                    if action:
                        description.soap_actions.setdefault(op_name, action)
    return description
