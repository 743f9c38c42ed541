"""
Readers that turn a raw export into a flat list of Tally records.

XML and JSON exports share the same envelope shape, so both readers
produce ``RecordView`` objects with one access API. The normalizer only
ever talks to RecordView and never needs to know which format it came from.

Supported shapes:
- ENVELOPE/BODY/IMPORTDATA|DATA/REQUESTDATA/TALLYMESSAGE/*
- ENVELOPE/BODY/DATA/COLLECTION/* (export via the XML API)
- ENVELOPE/BODY/TALLYMESSAGE/*
- bare TALLYMESSAGE/*
"""
from __future__ import annotations
import json
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional
from lxml import etree
from loguru import logger

from ..errors import ParseError
from .base import decode_export, sanitize_xml


class RecordView:
    """Uniform read access to one Tally record (XML element or JSON object)."""

    tag: str

    def attr(self, name: str) -> Optional[str]:
        raise NotImplementedError

    def text(self, *tags: str, default: Optional[str] = None) -> Optional[str]:
        """Text of the first listed child tag that has a non-empty value."""
        raise NotImplementedError

    def children(self, *tags: str) -> list["RecordView"]:
        """Direct children with any of the given tags, in document order."""
        raise NotImplementedError

    def iter_descendants(self, tag: str) -> Iterator["RecordView"]:
        raise NotImplementedError

    def deep_text(self, tag: str) -> Optional[str]:
        """Text of the first descendant with the tag that has a value."""
        for node in self.iter_descendants(tag):
            value = node.value()
            if value:
                return value
        return None

    def value(self) -> Optional[str]:
        raise NotImplementedError

    def name(self) -> Optional[str]:
        """Record name: NAME attribute, NAME child, or NAME.LIST/NAME."""
        name = self.attr("NAME") or self.text("NAME")
        if name:
            return name
        for name_list in self.children("NAME.LIST", "LANGUAGENAME.LIST"):
            name = name_list.text("NAME")
            if name:
                return name
            for nested in name_list.children("NAME.LIST"):
                name = nested.text("NAME")
                if name:
                    return name
        return None

    def guid(self) -> str:
        return self.text("GUID") or self.attr("GUID") or ""


class XmlRecord(RecordView):
    def __init__(self, element: etree._Element):
        self.element = element
        self.tag = element.tag if isinstance(element.tag, str) else ""

    def attr(self, name: str) -> Optional[str]:
        val = self.element.get(name)
        if val is None:
            return None
        return val.strip() or None

    def text(self, *tags: str, default: Optional[str] = None) -> Optional[str]:
        for tag in tags:
            child = self.element.find(tag)
            if child is not None and child.text is not None and child.text.strip():
                return child.text.strip()
        return default

    def children(self, *tags: str) -> list[RecordView]:
        wanted = set(tags)
        return [XmlRecord(child) for child in self.element if child.tag in wanted]

    def iter_descendants(self, tag: str) -> Iterator[RecordView]:
        for child in self.element.iter(tag):
            if child is not self.element:
                yield XmlRecord(child)

    def value(self) -> Optional[str]:
        if self.element.text is None:
            return None
        return self.element.text.strip() or None


def _norm_key(key: str) -> str:
    key = key.upper().lstrip("@")
    return key[:-5] if key.endswith(".LIST") else key


def _singular(tag: str) -> str:
    """Map plural collection keys (LEDGERS, CURRENCIES) onto record tags."""
    if tag in KNOWN_RECORD_TAGS:
        return tag
    if tag.endswith("IES") and tag[:-3] + "Y" in KNOWN_RECORD_TAGS:
        return tag[:-3] + "Y"
    if tag.endswith("S") and tag[:-1] in KNOWN_RECORD_TAGS:
        return tag[:-1]
    return tag


def _scalar(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        for key in ("#text", "value", "$"):
            if key in value:
                return _scalar(value[key])
        return None
    if isinstance(value, list) and value:
        return _scalar(value[0])
    return None


class JsonRecord(RecordView):
    """
    JSON counterpart of XmlRecord.

    Keys are matched case-insensitively and with or without the
    ``.LIST`` suffix; ``@NAME`` style keys hold attributes.
    """

    def __init__(self, tag: str, obj: dict):
        self.tag = tag.upper()
        self.obj = obj
        self._index: dict[str, list[Any]] = {}
        self._attrs: dict[str, Any] = {}
        for key, value in obj.items():
            if key.startswith("@"):
                self._attrs[key[1:].upper()] = value
            self._index.setdefault(_norm_key(key), []).append(value)

    def attr(self, name: str) -> Optional[str]:
        return _scalar(self._attrs.get(name.upper()))

    def _values(self, tag: str) -> list[Any]:
        return self._index.get(_norm_key(tag), [])

    def text(self, *tags: str, default: Optional[str] = None) -> Optional[str]:
        for tag in tags:
            for value in self._values(tag):
                result = _scalar(value)
                if result:
                    return result
        return default

    def children(self, *tags: str) -> list[RecordView]:
        result: list[RecordView] = []
        for tag in tags:
            for value in self._values(tag):
                items = value if isinstance(value, list) else [value]
                result.extend(JsonRecord(tag, item) for item in items if isinstance(item, dict))
        return result

    def iter_descendants(self, tag: str) -> Iterator[RecordView]:
        wanted = _norm_key(tag)
        stack: list[Any] = [self.obj]
        while stack:
            current = stack.pop(0)
            if isinstance(current, dict):
                for key, value in current.items():
                    if _norm_key(key) == wanted:
                        for item in (value if isinstance(value, list) else [value]):
                            if isinstance(item, dict):
                                yield JsonRecord(tag, item)
                            else:
                                yield _JsonScalar(tag, item)
                    if isinstance(value, (dict, list)):
                        stack.append(value)
            elif isinstance(current, list):
                stack.extend(current)

    def value(self) -> Optional[str]:
        return _scalar(self.obj)


class _JsonScalar(JsonRecord):
    """A leaf value found by a descendant search."""

    def __init__(self, tag: str, raw: Any):
        super().__init__(tag, {})
        self.raw = raw

    def value(self) -> Optional[str]:
        return _scalar(self.raw)


@dataclass
class ExportDocument:
    """Records of one export plus the envelope-level company name."""

    format: str
    records: list[RecordView] = field(default_factory=list)
    company_name: Optional[str] = None


MESSAGE_CONTAINERS = ("TALLYMESSAGE", "COLLECTION")


def read_xml(data: bytes) -> ExportDocument:
    """
    Read an XML export.

    Raises:
        ParseError: If the document is not well-formed or has no
            ENVELOPE/TALLYMESSAGE root
    """
    text = sanitize_xml(decode_export(data))
    if not text.strip():
        raise ParseError("Export file is empty")

    parser = etree.XMLParser(huge_tree=True, resolve_entities=False)
    try:
        root = etree.fromstring(text.encode("utf-8"), parser=parser)
    except etree.XMLSyntaxError as e:
        raise ParseError(f"Malformed XML: {e}") from e

    if root.tag not in ("ENVELOPE", "TALLYMESSAGE"):
        raise ParseError(f"Missing ENVELOPE or TALLYMESSAGE (root element is {root.tag})")

    doc = ExportDocument(format="xml")
    company = root.find(".//STATICVARIABLES/SVCURRENTCOMPANY")
    if company is not None and company.text:
        doc.company_name = company.text.strip()

    containers = [root] if root.tag == "TALLYMESSAGE" else [
        el for tag in MESSAGE_CONTAINERS for el in root.iter(tag)
    ]
    if not containers:
        raise ParseError("Missing ENVELOPE or TALLYMESSAGE (no TALLYMESSAGE under ENVELOPE)")

    for container in containers:
        for child in container:
            if isinstance(child.tag, str):
                doc.records.append(XmlRecord(child))

    logger.debug(f"Read {len(doc.records)} records from XML export")
    return doc


def read_json(data: bytes) -> ExportDocument:
    """
    Read a JSON export.

    Accepts {"ENVELOPE": {...}}, {"TALLYMESSAGE": [...]}, {"BODY": {...}}
    or an object holding record collections directly
    ({"LEDGER": [...], "VOUCHER": [...]}).
    """
    text = decode_export(data)
    if not text.strip():
        raise ParseError("Export file is empty")

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"Malformed JSON: {e}") from e

    if isinstance(payload, list):
        payload = {"TALLYMESSAGE": payload}
    if not isinstance(payload, dict):
        raise ParseError("Missing ENVELOPE or TALLYMESSAGE")

    root = JsonRecord("ROOT", payload)
    doc = ExportDocument(format="json")

    envelope = (root.children("ENVELOPE") or [root])[0]
    body = (envelope.children("BODY") or [envelope])[0]

    static_vars = next(iter(body.iter_descendants("STATICVARIABLES")), None)
    if static_vars is not None:
        doc.company_name = static_vars.text("SVCURRENTCOMPANY")

    containers: list[JsonRecord] = []
    for tag in MESSAGE_CONTAINERS:
        containers.extend(n for n in body.iter_descendants(tag) if isinstance(n, JsonRecord) and n.obj)

    direct = not containers
    if direct:
        # Direct collections: {"LEDGER": [...], "VOUCHERS": [...]}
        containers = [body]

    for container in containers:
        for key, value in container.obj.items():
            if key.startswith("@"):
                continue
            tag = _singular(_norm_key(key))
            if direct and tag not in KNOWN_RECORD_TAGS:
                continue
            items = value if isinstance(value, list) else [value]
            doc.records.extend(JsonRecord(tag, item) for item in items if isinstance(item, dict))

    if direct and not doc.records:
        raise ParseError("Missing ENVELOPE or TALLYMESSAGE")

    logger.debug(f"Read {len(doc.records)} records from JSON export")
    return doc


KNOWN_RECORD_TAGS = frozenset(
    {
        "COMPANY",
        "CURRENCY",
        "UNIT",
        "STOCKGROUP",
        "STOCKCATEGORY",
        "STOCKITEM",
        "GODOWN",
        "COSTCATEGORY",
        "COSTCENTRE",
        "GROUP",
        "LEDGER",
        "VOUCHERTYPE",
        "VOUCHER",
    }
)


def read_export(data: bytes, fmt: str) -> ExportDocument:
    fmt = fmt.lower().lstrip(".")
    if fmt == "xml":
        return read_xml(data)
    if fmt == "json":
        return read_json(data)
    raise ParseError(f"Unsupported export format: {fmt}")
