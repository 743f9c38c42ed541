"""
Base utilities for parsing Tally exports.

Provides common functions for:
- Encoding detection (UTF-16 LE/BE and UTF-8 byte order marks)
- XML sanitization
- Date parsing
- Amount and quantity parsing (Decimal, Tally sign convention)
- Boolean parsing
"""
from __future__ import annotations
import re
from datetime import datetime, date
from decimal import Decimal, InvalidOperation
from typing import Optional
from loguru import logger


_INVALID_CHAR_REF = re.compile(r"&#(0*(?:[0-8]|1[124-9]|2[0-9]|3[01]));")
_INVALID_HEX_CHAR_REF = re.compile(r"&#x0*([0-8bBcCeEfF]|1[0-9a-fA-F]);")
_BARE_AMPERSAND = re.compile(r"&(?!(amp|lt|gt|apos|quot|#\d+|#x[\da-fA-F]+);)")
_XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>")


def decode_export(data: bytes) -> str:
    """
    Decode raw export bytes to text.

    Tally writes UTF-16 LE with a BOM by default; hand-edited or
    converted files are usually UTF-8. Files without a BOM are read as
    UTF-8, falling back to cp1252 for legacy exports.
    """
    if data.startswith(b"\xff\xfe"):
        return data[2:].decode("utf-16-le", errors="replace")
    if data.startswith(b"\xfe\xff"):
        return data[2:].decode("utf-16-be", errors="replace")
    if data.startswith(b"\xef\xbb\xbf"):
        return data[3:].decode("utf-8", errors="replace")
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("Export is not valid UTF-8, decoding as cp1252")
        return data.decode("cp1252", errors="replace")


def sanitize_xml(xml_text: str) -> str:
    """
    Remove invalid XML characters and fix common issues.

    Tally produces XML with control-character references (``&#4;``),
    raw control characters and unescaped ampersands in names.
    The XML declaration is dropped because the text is re-encoded as
    UTF-8 before parsing, whatever the original declared.
    """
    if not xml_text:
        return xml_text

    xml_text = xml_text.replace("\x00", "")
    xml_text = _XML_DECLARATION.sub("", xml_text, count=1)

    # Character references for control chars other than tab, LF, CR
    xml_text = _INVALID_CHAR_REF.sub("", xml_text)
    xml_text = _INVALID_HEX_CHAR_REF.sub("", xml_text)

    # XML 1.0 only allows #x9 | #xA | #xD | [#x20-#xD7FF] | [#xE000-#xFFFD]
    xml_text = "".join(
        c for c in xml_text
        if c in "\t\n\r" or 0x20 <= ord(c) <= 0xD7FF or 0xE000 <= ord(c) <= 0xFFFD
    )

    return _BARE_AMPERSAND.sub("&amp;", xml_text)


def parse_tally_date(s: str | None) -> Optional[date]:
    """
    Parse Tally date string to Python date.

    Tally uses multiple date formats:
    - YYYYMMDD (most common)
    - YYYY-MM-DD
    - DD-MMM-YYYY (e.g., "01-Apr-2024")
    - DD/MM/YYYY, DD-MM-YYYY

    Returns None for empty or unparseable strings.
    """
    if not s:
        return None

    s = str(s).strip()
    if not s or s.lower() in ("null", "none"):
        return None

    formats = [
        "%Y%m%d",      # 20240401
        "%Y-%m-%d",    # 2024-04-01
        "%d-%b-%Y",    # 01-Apr-2024
        "%d-%b-%y",    # 1-Apr-24
        "%d/%m/%Y",    # 01/04/2024
        "%d-%m-%Y",    # 01-04-2024
    ]

    for fmt in formats:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue

    logger.warning(f"Could not parse date: {s}")
    return None


def parse_amount(s: str | None, default: Decimal | None = Decimal("0")) -> Optional[Decimal]:
    """
    Parse a Tally amount to a signed Decimal (negative = debit).

    Handles:
    - Comma separators (1,234.56)
    - Parentheses for negatives ((1234.56))
    - Currency symbols
    - Dr/Cr suffixes (Dr forces a debit, Cr a credit)
    - Forex expressions: "-$100.00 @ ₹ 83.00/$ = -₹ 8300.00" yields -8300.00
    """
    if s is None:
        return default

    s = str(s).strip()
    if not s or s.lower() in ("null", "none"):
        return default

    # Forex amounts carry the base-currency value after '='
    if "=" in s:
        s = s.rsplit("=", 1)[1].strip()

    side = None
    lowered = s.lower()
    if lowered.endswith("dr"):
        side = "dr"
        s = s[:-2]
    elif lowered.endswith("cr"):
        side = "cr"
        s = s[:-2]

    s = s.strip()
    is_negative = s.startswith("(") and s.endswith(")")
    if is_negative:
        s = s[1:-1]

    s = re.sub(r"[,₹$€£¥\s]|Rs\.?", "", s)
    if s.startswith("-"):
        is_negative = not is_negative
        s = s[1:]

    try:
        value = Decimal(s)
    except InvalidOperation:
        logger.warning(f"Could not parse amount: {s}")
        return default
    if not value.is_finite():
        logger.warning(f"Could not parse amount: {s}")
        return default

    if side == "dr":
        return -abs(value)
    if side == "cr":
        return abs(value)
    return -value if is_negative else value


def parse_quantity(s: str | None) -> tuple[Decimal, Optional[str]]:
    """
    Parse a Tally quantity such as ``"10 Nos"`` or ``"2.5 Kg"``.

    Returns (quantity, unit). Compound quantities ("1 Box 2 Nos") keep
    only the leading figure.
    """
    if not s:
        return Decimal("0"), None

    s = str(s).strip()
    match = re.match(r"^\s*(-?[\d,]*\.?\d+)\s*([^\d\s][^\s]*)?", s)
    if not match:
        logger.warning(f"Could not parse quantity: {s}")
        return Decimal("0"), None

    number = match.group(1).replace(",", "")
    unit = match.group(2)
    if unit and unit.startswith("="):
        unit = None
    return Decimal(number), unit


def parse_rate(s: str | None) -> Decimal:
    """Parse a rate like ``"450.00/Nos"``."""
    if not s:
        return Decimal("0")
    value = parse_amount(str(s).split("/", 1)[0])
    return abs(value) if value is not None else Decimal("0")


def parse_int(s: str | None, default: int = 0) -> int:
    """Parse Tally integer string."""
    if not s:
        return default

    s = str(s).strip().replace(",", "").replace(" ", "")
    if not s or s.lower() in ("null", "none"):
        return default

    try:
        return int(float(s))  # Handle "123.0" style
    except (ValueError, OverflowError):
        logger.warning(f"Could not parse int: {s}")
        return default


def parse_bool(s: str | None, default: bool = False) -> bool:
    """
    Parse Tally boolean string.

    Tally uses Yes/No, True/False and 1/0.
    """
    if s is None:
        return default

    s = str(s).strip().lower()
    if s in ("yes", "true", "1", "y"):
        return True
    elif s in ("no", "false", "0", "n", ""):
        return False

    return default


def parse_optional_bool(s: str | None) -> Optional[bool]:
    """Like parse_bool, but None when the flag is absent."""
    if s is None or not str(s).strip():
        return None
    return parse_bool(s)
