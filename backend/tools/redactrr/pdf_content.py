"""
Minimal PDF content stream interpreter.

Only as much of the content stream grammar as redaction needs:

- tokenize() turns a stream into an indexed list of ContentOperation
  (operands + operator, keeping the exact source bytes of each operation)
- serialize() writes a (filtered) operation list back to bytes
- TextStateMachine replays q/Q, cm, BT/ET, Tm, Td, TD, T*, TL, Tf, Tc, Tw,
  Tz, Ts and the text-showing operators, producing one TextRun (text plus
  page-space bounding box) per Tj, TJ, ' and "
- load_page_resources() collects the fonts (decoding + widths) and form
  XObjects a page refers to

Glyph widths come from the font's own /Widths or /W arrays when present,
then from the standard 14 font metrics, and only then from the
``glyph_width_factor`` heuristic (0.6 em per glyph).

Coordinates are PDF user space: points, origin bottom-left.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

import fitz

from config import runtime_config
from errors import StreamIntegrityError

logger = logging.getLogger(__name__)


IDENTITY = (1.0, 0.0, 0.0, 1.0, 0.0, 0.0)

TEXT_SHOWING_OPERATORS = frozenset({"Tj", "TJ", "'", '"'})

# Vertical glyph extent in text space, as a fraction of the font size
DESCENT = -0.2
ASCENT = 0.9

_WHITESPACE = frozenset(b" \t\r\n\x0c\x00")
_DELIMITERS = frozenset(b"()<>[]{}/%")
_NUMBER_RE = re.compile(rb"[+-]?(?:\d+\.?\d*|\.\d+)")
_INLINE_IMAGE_END_RE = re.compile(rb"[ \t\r\n\x0c\x00]EI(?=[ \t\r\n\x0c\x00]|$)")
_REF_RE = re.compile(r"(\d+)\s+\d+\s+R")
_NAMED_REF_RE = re.compile(r"/([^\s/<>\[\]()]+)\s+(\d+)\s+\d+\s+R")

_ESCAPES = {
    ord("n"): 0x0A,
    ord("r"): 0x0D,
    ord("t"): 0x09,
    ord("b"): 0x08,
    ord("f"): 0x0C,
    ord("("): 0x28,
    ord(")"): 0x29,
    ord("\\"): 0x5C,
}

# Standard 14 fonts with Latin metrics in fitz.get_text_length
_BASE14_TEXT_FONTS = {
    "helvetica": "helv",
    "helvetica-oblique": "heit",
    "helvetica-bold": "hebo",
    "helvetica-boldoblique": "hebi",
    "courier": "cour",
    "courier-oblique": "coit",
    "courier-bold": "cobo",
    "courier-boldoblique": "cobi",
    "times-roman": "tiro",
    "times-italic": "tiit",
    "times-bold": "tibo",
    "times-bolditalic": "tibi",
    # Common non-embedded aliases
    "arial": "helv",
    "arial,bold": "hebo",
    "arialmt": "helv",
    "arial-boldmt": "hebo",
    "timesnewroman": "tiro",
    "timesnewromanpsmt": "tiro",
    "couriernew": "cour",
    "couriernewpsmt": "cour",
}


# =============================================================================
# OPERANDS AND OPERATIONS
# =============================================================================


class PdfName(str):
    """A name operand, stored without the leading slash."""


class PdfKeyword(str):
    """A bare keyword inside an array or dictionary (e.g. the R of a reference)."""


@dataclass
class PdfString:
    """A string operand. ``data`` is the decoded byte content."""

    data: bytes
    hex: bool = False


@dataclass
class ContentOperation:
    """One tokenized operator with its operands.

    ``raw`` holds the exact source bytes, so reserialization never re-encodes
    operands it did not need to touch.
    """

    operator: str
    operands: List[Any]
    index: int
    raw: bytes = b""
    stream: int = 0

    @property
    def is_text_showing(self) -> bool:
        return self.operator in TEXT_SHOWING_OPERATORS


# =============================================================================
# TOKENIZER
# =============================================================================


def _decode_name(raw: bytes) -> str:
    """Resolve #xx escapes in a name token."""
    if b"#" not in raw:
        return raw.decode("latin-1")
    out = bytearray()
    i = 0
    while i < len(raw):
        if raw[i] == 0x23 and i + 2 < len(raw) and re.fullmatch(rb"[0-9A-Fa-f]{2}", raw[i + 1:i + 3]):
            out.append(int(raw[i + 1:i + 3], 16))
            i += 3
        else:
            out.append(raw[i])
            i += 1
    return out.decode("latin-1")


class _Parser:
    """Byte-level lexer/parser over one content stream (or one PDF object string)."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0
        self.length = len(data)

    def skip_whitespace(self) -> None:
        data, n = self.data, self.length
        while self.pos < n:
            c = data[self.pos]
            if c in _WHITESPACE:
                self.pos += 1
            elif c == 0x25:  # comment runs to end of line
                while self.pos < n and data[self.pos] not in (0x0A, 0x0D):
                    self.pos += 1
            else:
                break

    def _scan_regular(self, start: int) -> int:
        data, n = self.data, self.length
        end = start
        while end < n and data[end] not in _WHITESPACE and data[end] not in _DELIMITERS:
            end += 1
        return end

    def _malformed(self, message: str) -> StreamIntegrityError:
        return StreamIntegrityError(message, details=f"at byte {self.pos}", malformed=True)

    def read_token(self) -> Optional[Tuple[str, Any]]:
        """Next token as (kind, value), or None at end of data."""
        self.skip_whitespace()
        if self.pos >= self.length:
            return None

        data = self.data
        c = data[self.pos]

        if c == 0x28:  # (
            return "obj", PdfString(self._read_literal())
        if c == 0x3C:  # <
            if data[self.pos + 1:self.pos + 2] == b"<":
                self.pos += 2
                return "<<", None
            return "obj", PdfString(self._read_hex(), hex=True)
        if c == 0x3E:  # >
            if data[self.pos + 1:self.pos + 2] == b">":
                self.pos += 2
                return ">>", None
            raise self._malformed("Unexpected '>'")
        if c == 0x5B:  # [
            self.pos += 1
            return "[", None
        if c == 0x5D:  # ]
            self.pos += 1
            return "]", None
        if c in (0x7B, 0x7D):  # braces only appear in PostScript calculator functions
            self.pos += 1
            return "kw", chr(c)
        if c == 0x2F:  # /
            start = self.pos + 1
            end = self._scan_regular(start)
            self.pos = end
            return "obj", PdfName(_decode_name(data[start:end]))
        if c == 0x29:  # )
            raise self._malformed("Unbalanced ')'")

        start = self.pos
        end = self._scan_regular(start)
        self.pos = end
        token = data[start:end]
        if _NUMBER_RE.fullmatch(token):
            if b"." in token:
                return "obj", float(token)
            return "obj", int(token)
        return "kw", token.decode("latin-1")

    def _read_literal(self) -> bytes:
        data, n = self.data, self.length
        pos = self.pos + 1
        depth = 1
        out = bytearray()
        while pos < n:
            c = data[pos]
            if c == 0x5C:  # backslash
                pos += 1
                if pos >= n:
                    break
                e = data[pos]
                if e in _ESCAPES:
                    out.append(_ESCAPES[e])
                    pos += 1
                elif 0x30 <= e <= 0x37:
                    end = pos
                    while end < n and end - pos < 3 and 0x30 <= data[end] <= 0x37:
                        end += 1
                    out.append(int(data[pos:end], 8) & 0xFF)
                    pos = end
                elif e == 0x0D:  # line continuation
                    pos += 1
                    if pos < n and data[pos] == 0x0A:
                        pos += 1
                elif e == 0x0A:
                    pos += 1
                else:
                    out.append(e)
                    pos += 1
                continue
            if c == 0x28:
                depth += 1
            elif c == 0x29:
                depth -= 1
                if depth == 0:
                    self.pos = pos + 1
                    return bytes(out)
            out.append(c)
            pos += 1
        raise self._malformed("Unterminated string")

    def _read_hex(self) -> bytes:
        end = self.data.find(b">", self.pos + 1)
        if end < 0:
            raise self._malformed("Unterminated hex string")
        digits = re.sub(rb"[ \t\r\n\x0c\x00]", b"", self.data[self.pos + 1:end])
        if len(digits) % 2:
            digits += b"0"
        try:
            value = bytes.fromhex(digits.decode("ascii"))
        except ValueError:
            raise self._malformed("Invalid hex string")
        self.pos = end + 1
        return value

    def parse_value(self, token: Tuple[str, Any]) -> Any:
        """Build a full operand (recursing into arrays and dictionaries)."""
        kind, value = token
        if kind == "obj":
            return value
        if kind == "[":
            items = []
            while True:
                inner = self.read_token()
                if inner is None:
                    raise self._malformed("Unterminated array")
                if inner[0] == "]":
                    return items
                items.append(self.parse_value(inner))
        if kind == "<<":
            result = {}
            while True:
                key = self.read_token()
                if key is None:
                    raise self._malformed("Unterminated dictionary")
                if key[0] == ">>":
                    return result
                if not isinstance(key[1], PdfName):
                    raise self._malformed("Dictionary key is not a name")
                item = self.read_token()
                if item is None:
                    raise self._malformed("Dictionary key without value")
                result[str(key[1])] = self.parse_value(item)
        if kind == "kw":
            if value == "true":
                return True
            if value == "false":
                return False
            if value == "null":
                return None
            return PdfKeyword(value)
        raise self._malformed(f"Unexpected '{kind}'")

    def read_inline_image(self) -> Dict[str, Any]:
        """Consume an inline image after BI, up to and including EI."""
        params = {}
        while True:
            token = self.read_token()
            if token is None:
                raise self._malformed("Unterminated inline image")
            if token[0] == "kw" and token[1] == "ID":
                break
            value_token = self.read_token()
            if value_token is None:
                raise self._malformed("Inline image key without value")
            params[str(token[1])] = self.parse_value(value_token)

        # Exactly one whitespace byte separates ID from the image data
        self.pos += 1
        match = _INLINE_IMAGE_END_RE.search(self.data, self.pos)
        if match is None:
            raise self._malformed("Inline image without EI")
        self.pos = match.end()
        return params


def tokenize(data: bytes, stream: int = 0) -> List[ContentOperation]:
    """
    Tokenize a content stream into an indexed list of operations.

    Args:
        data: Decompressed content stream bytes
        stream: Index of the stream within the page (recorded on each op)

    Returns:
        Operations in stream order, ``index`` matching list position

    Raises:
        StreamIntegrityError: the stream is malformed (unterminated strings,
            arrays or inline images, or operands with no operator)
    """
    parser = _Parser(data)
    operations: List[ContentOperation] = []
    operands: List[Any] = []
    op_start: Optional[int] = None

    while True:
        parser.skip_whitespace()
        start = parser.pos
        token = parser.read_token()
        if token is None:
            break
        if op_start is None:
            op_start = start

        kind, value = token
        if kind == "kw" and value not in ("true", "false", "null"):
            if value == "BI":
                operands = [parser.read_inline_image()]
            operations.append(
                ContentOperation(
                    operator=value,
                    operands=operands,
                    index=len(operations),
                    raw=data[op_start:parser.pos],
                    stream=stream,
                )
            )
            operands = []
            op_start = None
        else:
            operands.append(parser.parse_value(token))

    if operands:
        raise StreamIntegrityError(
            "Content stream ends with operands but no operator",
            details=f"{len(operands)} dangling operand(s)",
            malformed=True,
        )
    return operations


def serialize(operations: List[ContentOperation]) -> bytes:
    """Write operations back to content stream bytes."""
    if not operations:
        return b""
    return b"\n".join(op.raw for op in operations) + b"\n"


def count_text_objects(operations: List[ContentOperation]) -> Tuple[int, int]:
    """Return (number of BT, number of ET)."""
    bt = sum(1 for op in operations if op.operator == "BT")
    et = sum(1 for op in operations if op.operator == "ET")
    return bt, et


def parse_object(text: str) -> Any:
    """Parse one PDF object from its string form (as returned by xref_get_key)."""
    parser = _Parser(text.encode("latin-1", errors="replace"))
    token = parser.read_token()
    if token is None:
        return None
    return parser.parse_value(token)


# =============================================================================
# MATRICES
# =============================================================================


def multiply(m1: tuple, m2: tuple) -> tuple:
    """Matrix product m1 x m2 in PDF row-vector convention."""
    a1, b1, c1, d1, e1, f1 = m1
    a2, b2, c2, d2, e2, f2 = m2
    return (
        a1 * a2 + b1 * c2,
        a1 * b2 + b1 * d2,
        c1 * a2 + d1 * c2,
        c1 * b2 + d1 * d2,
        e1 * a2 + f1 * c2 + e2,
        e1 * b2 + f1 * d2 + f2,
    )


def apply(m: tuple, x: float, y: float) -> Tuple[float, float]:
    a, b, c, d, e, f = m
    return (a * x + c * y + e, b * x + d * y + f)


def translation(tx: float, ty: float) -> tuple:
    return (1.0, 0.0, 0.0, 1.0, tx, ty)


# =============================================================================
# FONTS
# =============================================================================


@dataclass
class FontInfo:
    """Decoding and metrics for one font resource."""

    name: str
    base_font: str = ""
    subtype: str = "Type1"
    code_bytes: int = 1
    widths: Dict[int, float] = field(default_factory=dict)
    default_width: Optional[float] = None
    to_unicode: Dict[int, str] = field(default_factory=dict)

    def decode(self, data: bytes) -> List[Tuple[int, str]]:
        """Split string bytes into (code, unicode text) pairs."""
        step = self.code_bytes
        pairs = []
        for i in range(0, len(data) - step + 1, step):
            code = int.from_bytes(data[i:i + step], "big")
            text = self.to_unicode.get(code)
            if text is None:
                if step == 1:
                    text = bytes([code]).decode("cp1252", errors="replace")
                else:
                    text = "�"
            pairs.append((code, text))
        return pairs

    def width(self, code: int, width_factor: float) -> float:
        """Glyph advance in em units (text space units per unit font size)."""
        w = self.widths.get(code)
        if w is not None:
            return w
        if self.default_width is not None:
            return self.default_width
        return width_factor


def _strip_subset_prefix(base_font: str) -> str:
    """'ABCDEF+Arial' -> 'Arial'."""
    if len(base_font) > 7 and base_font[6] == "+" and base_font[:6].isupper():
        return base_font[7:]
    return base_font


@lru_cache(maxsize=32)
def _base14_widths(reserved_name: str) -> Dict[int, float]:
    """Per-code widths (em units) of a standard 14 font under WinAnsi encoding."""
    widths = {}
    for code in range(32, 256):
        char = bytes([code]).decode("cp1252", errors="replace")
        if char == "�":
            continue
        try:
            widths[code] = fitz.get_text_length(char, fontname=reserved_name, fontsize=1)
        except ValueError:
            return {}
    return widths


def _key(doc: "fitz.Document", xref: int, key: str) -> Tuple[str, str]:
    kind, value = doc.xref_get_key(xref, key)
    return kind, (value or "").strip()


def _resolve_text(doc: "fitz.Document", xref: int, key: str) -> Optional[str]:
    """Value of a key as a PDF object string, following one indirect reference."""
    kind, value = _key(doc, xref, key)
    if kind == "null" or not value:
        return None
    if kind == "xref":
        ref = _REF_RE.match(value)
        if ref:
            return doc.xref_object(int(ref.group(1)), compressed=True)
    return value


def _parse_cmap(data: bytes) -> Tuple[Dict[int, str], int]:
    """Parse a ToUnicode CMap into (code -> text, code byte width)."""
    text = data.decode("latin-1", errors="replace")
    mapping: Dict[int, str] = {}

    code_bytes = 1
    space = re.search(r"begincodespacerange\s*<([0-9A-Fa-f]+)>", text)
    if space:
        code_bytes = max(1, len(space.group(1)) // 2)

    def to_text(hex_str: str) -> str:
        raw = bytes.fromhex(hex_str if len(hex_str) % 2 == 0 else "0" + hex_str)
        if len(raw) % 2:
            raw = b"\x00" + raw
        return raw.decode("utf-16-be", errors="replace")

    for block in re.findall(r"beginbfchar(.*?)endbfchar", text, re.S):
        for src, dst in re.findall(r"<([0-9A-Fa-f]+)>\s*<([0-9A-Fa-f]*)>", block):
            mapping[int(src, 16)] = to_text(dst)

    for block in re.findall(r"beginbfrange(.*?)endbfrange", text, re.S):
        for lo, hi, rest in re.findall(r"<([0-9A-Fa-f]+)>\s*<([0-9A-Fa-f]+)>\s*(\[[^\]]*\]|<[0-9A-Fa-f]*>)", block):
            start, end = int(lo, 16), int(hi, 16)
            if end - start > 0xFFFF:
                continue
            if rest.startswith("["):
                targets = re.findall(r"<([0-9A-Fa-f]*)>", rest)
                for offset, dst in enumerate(targets[: end - start + 1]):
                    mapping[start + offset] = to_text(dst)
            else:
                base = rest.strip("<>")
                if not base:
                    continue
                base_value = int(base, 16)
                width = len(base)
                for offset in range(end - start + 1):
                    mapping[start + offset] = to_text(format(base_value + offset, f"0{width}X"))

    return mapping, code_bytes


def _simple_widths(doc: "fitz.Document", xref: int) -> Dict[int, float]:
    first_kind, first_value = _key(doc, xref, "FirstChar")
    widths_text = _resolve_text(doc, xref, "Widths")
    if first_kind == "null" or not widths_text:
        return {}
    try:
        first_char = int(float(first_value))
    except ValueError:
        return {}
    values = parse_object(widths_text)
    if not isinstance(values, list):
        return {}
    return {
        first_char + i: float(w) / 1000.0
        for i, w in enumerate(values)
        if isinstance(w, (int, float))
    }


def _cid_widths(doc: "fitz.Document", xref: int) -> Tuple[Dict[int, float], float]:
    """W array and DW of the descendant CIDFont of a Type0 font."""
    descendants = _resolve_text(doc, xref, "DescendantFonts")
    if not descendants:
        return {}, 1.0
    ref = _REF_RE.search(descendants)
    if not ref:
        return {}, 1.0
    cid_xref = int(ref.group(1))

    default_width = 1.0
    dw_kind, dw_value = _key(doc, cid_xref, "DW")
    if dw_kind != "null" and dw_value:
        try:
            default_width = float(dw_value) / 1000.0
        except ValueError:
            pass

    widths: Dict[int, float] = {}
    w_text = _resolve_text(doc, cid_xref, "W")
    items = parse_object(w_text) if w_text else None
    if not isinstance(items, list):
        return widths, default_width

    i = 0
    while i < len(items):
        first = items[i]
        if not isinstance(first, (int, float)) or i + 1 >= len(items):
            break
        nxt = items[i + 1]
        if isinstance(nxt, list):
            # c [w1 w2 ...]
            for j, w in enumerate(nxt):
                if isinstance(w, (int, float)):
                    widths[int(first) + j] = float(w) / 1000.0
            i += 2
        elif i + 2 < len(items) and isinstance(items[i + 2], (int, float)):
            # c_first c_last w
            for cid in range(int(first), int(nxt) + 1):
                widths[cid] = float(items[i + 2]) / 1000.0
            i += 3
        else:
            break
    return widths, default_width


def load_font(doc: "fitz.Document", xref: int, name: str) -> FontInfo:
    """Build FontInfo (decoding and widths) for the font object at xref."""
    subtype = _key(doc, xref, "Subtype")[1].lstrip("/") or "Type1"
    base_font = _key(doc, xref, "BaseFont")[1].lstrip("/")
    font = FontInfo(name=name, base_font=base_font, subtype=subtype)

    to_unicode = _key(doc, xref, "ToUnicode")
    if to_unicode[0] == "xref":
        ref = _REF_RE.match(to_unicode[1])
        if ref:
            font.to_unicode, code_bytes = _parse_cmap(doc.xref_stream(int(ref.group(1))) or b"")
            if subtype == "Type0":
                font.code_bytes = max(code_bytes, 2)

    if subtype == "Type0":
        font.code_bytes = 2
        font.widths, font.default_width = _cid_widths(doc, xref)
        return font

    font.widths = _simple_widths(doc, xref)
    if not font.widths:
        reserved = _BASE14_TEXT_FONTS.get(_strip_subset_prefix(base_font).lower())
        if reserved:
            font.widths = dict(_base14_widths(reserved))
    return font


# =============================================================================
# RESOURCES
# =============================================================================


@dataclass
class FormXObject:
    """A form XObject: its operations, matrix and own font resources."""

    name: str
    xref: int
    operations: List[ContentOperation]
    matrix: tuple = IDENTITY
    fonts: Dict[str, FontInfo] = field(default_factory=dict)
    forms: Dict[str, "FormXObject"] = field(default_factory=dict)


@dataclass
class PageResources:
    fonts: Dict[str, FontInfo] = field(default_factory=dict)
    forms: Dict[str, FormXObject] = field(default_factory=dict)


def _named_refs(doc: "fitz.Document", xref: int, key: str) -> Dict[str, int]:
    text = _resolve_text(doc, xref, key)
    if not text:
        return {}
    return {name: int(ref) for name, ref in _NAMED_REF_RE.findall(text)}


def _load_form(doc: "fitz.Document", xref: int, name: str, depth: int) -> Optional[FormXObject]:
    if _key(doc, xref, "Subtype")[1] != "/Form":
        return None
    try:
        operations = tokenize(doc.xref_stream(xref) or b"")
    except StreamIntegrityError as e:
        logger.warning(f"Skipping malformed form XObject {name} (xref {xref}): {e}")
        return None

    matrix = IDENTITY
    matrix_text = _resolve_text(doc, xref, "Matrix")
    if matrix_text:
        values = parse_object(matrix_text)
        if isinstance(values, list) and len(values) == 6 and all(isinstance(v, (int, float)) for v in values):
            matrix = tuple(float(v) for v in values)

    fonts = {
        font_name: load_font(doc, font_xref, font_name)
        for font_name, font_xref in _named_refs(doc, xref, "Resources/Font").items()
    }
    forms = {}
    if depth > 0:
        for child_name, child_xref in _named_refs(doc, xref, "Resources/XObject").items():
            if child_xref == xref:
                continue
            child = _load_form(doc, child_xref, child_name, depth - 1)
            if child is not None:
                forms[child_name] = child
    return FormXObject(name=name, xref=xref, operations=operations, matrix=matrix, fonts=fonts, forms=forms)


def load_page_resources(doc: "fitz.Document", page: "fitz.Page", include_forms: bool = True) -> PageResources:
    """
    Collect the fonts (and optionally form XObjects) a page's content uses.

    Must run on the thread that owns ``doc``; the returned objects are plain
    Python data and safe to hand to worker threads.
    """
    resources = PageResources()
    for entry in page.get_fonts():
        xref, name = entry[0], entry[4]
        if name and name not in resources.fonts:
            resources.fonts[name] = load_font(doc, xref, name)

    if include_forms:
        for entry in page.get_xobjects():
            xref, name, invoker = entry[0], entry[1], entry[2]
            if invoker != 0 or name in resources.forms:
                continue
            form = _load_form(doc, xref, name, depth=3)
            if form is not None:
                resources.forms[name] = form
    return resources


# =============================================================================
# TEXT STATE MACHINE
# =============================================================================


@dataclass
class GraphicsState:
    """The parts of the graphics state that affect text placement (saved by q/Q)."""

    ctm: tuple = IDENTITY
    font: Optional[str] = None
    font_size: float = 0.0
    char_spacing: float = 0.0
    word_spacing: float = 0.0
    h_scale: float = 1.0
    leading: float = 0.0
    rise: float = 0.0


@dataclass
class TextRun:
    """Text and page-space geometry of one text-showing operation."""

    op_index: int
    stream: int
    text: str
    x0: float
    y0: float
    x1: float
    y1: float
    start: Tuple[float, float]
    end: Tuple[float, float]
    size: float
    advance: float = 0.0
    font_size: float = 0.0
    h_scale: float = 1.0
    form: Optional[str] = None


def _numbers(operands: List[Any], count: int) -> Optional[List[float]]:
    """Last ``count`` operands as floats, or None if they are not all numbers."""
    if len(operands) < count:
        return None
    values = operands[-count:] if count else []
    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in values):
        return None
    return [float(v) for v in values]


class TextStateMachine:
    """
    Replays a page's operations and records a TextRun per text-showing op.

    The whole interpreter state lives on this object: the graphics state
    stack, the current text and text-line matrices and the fonts in scope.
    Operations are addressed by (stream, index), so callers can map runs
    back onto the operation list they came from.
    """

    def __init__(
        self,
        fonts: Dict[str, FontInfo],
        forms: Optional[Dict[str, FormXObject]] = None,
        width_factor: Optional[float] = None,
        ctm: tuple = IDENTITY,
        depth: int = 0,
    ):
        self.fonts = fonts
        self.forms = forms or {}
        self.width_factor = width_factor if width_factor is not None else runtime_config.glyph_width_factor
        self.gs = GraphicsState(ctm=ctm)
        self.stack: List[GraphicsState] = []
        self.tm = IDENTITY
        self.tlm = IDENTITY
        self.depth = depth
        self.runs: List[TextRun] = []
        self._form_name: Optional[str] = None

        self._handlers = {
            "q": self._op_save,
            "Q": self._op_restore,
            "cm": self._op_concat,
            "BT": self._op_begin_text,
            "ET": self._op_end_text,
            "Tm": self._op_text_matrix,
            "Td": self._op_move,
            "TD": self._op_move_set_leading,
            "T*": self._op_next_line,
            "TL": self._op_leading,
            "Tf": self._op_font,
            "Tc": self._op_char_spacing,
            "Tw": self._op_word_spacing,
            "Tz": self._op_h_scale,
            "Ts": self._op_rise,
            "Tj": self._op_show,
            "TJ": self._op_show_array,
            "'": self._op_quote,
            '"': self._op_double_quote,
            "Do": self._op_xobject,
        }

    def run(self, operations: List[ContentOperation]) -> List[TextRun]:
        for op in operations:
            self.step(op)
        return self.runs

    def step(self, op: ContentOperation) -> Optional[TextRun]:
        """Apply one operation; return its TextRun if it shows text."""
        handler = self._handlers.get(op.operator)
        if handler is None:
            return None
        return handler(op)

    # --- graphics state -----------------------------------------------------

    def _op_save(self, op):
        self.stack.append(replace(self.gs))

    def _op_restore(self, op):
        if self.stack:
            self.gs = self.stack.pop()

    def _op_concat(self, op):
        values = _numbers(op.operands, 6)
        if values:
            self.gs.ctm = multiply(tuple(values), self.gs.ctm)

    # --- text objects and positioning ---------------------------------------

    def _op_begin_text(self, op):
        self.tm = IDENTITY
        self.tlm = IDENTITY

    def _op_end_text(self, op):
        pass

    def _op_text_matrix(self, op):
        values = _numbers(op.operands, 6)
        if values:
            self.tm = self.tlm = tuple(values)

    def _move(self, tx: float, ty: float) -> None:
        self.tlm = multiply(translation(tx, ty), self.tlm)
        self.tm = self.tlm

    def _op_move(self, op):
        values = _numbers(op.operands, 2)
        if values:
            self._move(*values)

    def _op_move_set_leading(self, op):
        values = _numbers(op.operands, 2)
        if values:
            self.gs.leading = -values[1]
            self._move(*values)

    def _op_next_line(self, op=None):
        self._move(0.0, -self.gs.leading)

    def _op_leading(self, op):
        values = _numbers(op.operands, 1)
        if values:
            self.gs.leading = values[0]

    def _op_font(self, op):
        if len(op.operands) >= 2 and isinstance(op.operands[-2], PdfName):
            size = _numbers(op.operands, 1)
            self.gs.font = str(op.operands[-2])
            self.gs.font_size = size[0] if size else self.gs.font_size

    def _op_char_spacing(self, op):
        values = _numbers(op.operands, 1)
        if values:
            self.gs.char_spacing = values[0]

    def _op_word_spacing(self, op):
        values = _numbers(op.operands, 1)
        if values:
            self.gs.word_spacing = values[0]

    def _op_h_scale(self, op):
        values = _numbers(op.operands, 1)
        if values:
            self.gs.h_scale = values[0] / 100.0

    def _op_rise(self, op):
        values = _numbers(op.operands, 1)
        if values:
            self.gs.rise = values[0]

    # --- text showing -------------------------------------------------------

    def _op_show(self, op):
        if op.operands and isinstance(op.operands[-1], PdfString):
            return self._show(op, [op.operands[-1]])
        return None

    def _op_show_array(self, op):
        if op.operands and isinstance(op.operands[-1], list):
            return self._show(op, op.operands[-1])
        return None

    def _op_quote(self, op):
        self._op_next_line()
        return self._op_show(op)

    def _op_double_quote(self, op):
        if len(op.operands) >= 3:
            values = _numbers(op.operands[:-1], 2)
            if values:
                self.gs.word_spacing, self.gs.char_spacing = values
        self._op_next_line()
        return self._op_show(op)

    def _current_font(self) -> FontInfo:
        font = self.fonts.get(self.gs.font or "")
        if font is None:
            font = FontInfo(name=self.gs.font or "")
            if self.gs.font:
                self.fonts[self.gs.font] = font
        return font

    def _show(self, op: ContentOperation, items: List[Any]) -> TextRun:
        font = self._current_font()
        gs = self.gs
        fs = gs.font_size
        th = gs.h_scale

        advance = 0.0
        chars = []
        for item in items:
            if isinstance(item, PdfString):
                for code, text in font.decode(item.data):
                    tx = (font.width(code, self.width_factor) * fs + gs.char_spacing) * th
                    if code == 32 and font.code_bytes == 1:
                        tx += gs.word_spacing * th
                    advance += tx
                    chars.append(text)
            elif isinstance(item, (int, float)) and not isinstance(item, bool):
                advance -= item / 1000.0 * fs * th

        m = multiply(self.tm, gs.ctm)
        lo = gs.rise + DESCENT * fs
        hi = gs.rise + ASCENT * fs
        corners = [apply(m, px, py) for px in (0.0, advance) for py in (lo, hi)]
        xs = [c[0] for c in corners]
        ys = [c[1] for c in corners]

        # Effective font size in user space (length of the transformed em)
        scale_y = (m[2] ** 2 + m[3] ** 2) ** 0.5
        run = TextRun(
            op_index=op.index,
            stream=op.stream,
            text="".join(chars),
            x0=min(xs),
            y0=min(ys),
            x1=max(xs),
            y1=max(ys),
            start=apply(m, 0.0, gs.rise),
            end=apply(m, advance, gs.rise),
            size=abs(fs) * scale_y,
            advance=advance,
            font_size=fs,
            h_scale=th,
            form=self._form_name,
        )
        self.tm = multiply(translation(advance, 0.0), self.tm)
        self.runs.append(run)
        return run

    # --- form XObjects ------------------------------------------------------

    def _op_xobject(self, op):
        if not op.operands or not isinstance(op.operands[-1], PdfName):
            return None
        form = self.forms.get(str(op.operands[-1]))
        if form is None or self.depth >= 4:
            return None

        fonts = dict(self.fonts)
        fonts.update(form.fonts)
        child = TextStateMachine(
            fonts=fonts,
            forms=form.forms or self.forms,
            width_factor=self.width_factor,
            ctm=multiply(form.matrix, self.gs.ctm),
            depth=self.depth + 1,
        )
        child._form_name = self._form_name or form.name
        for run in child.run(form.operations):
            self.runs.append(run)
        return None


def glyph_free_replacement(op: ContentOperation, run: Optional[TextRun]) -> bytes:
    """
    Bytes that stand in for a dropped text-showing operation.

    The replacement paints no glyphs but leaves the text position exactly
    where the original operation would have: a numeric-only TJ for the
    horizontal advance, preceded by T* (and the Tw/Tc update of ") for the
    quote operators.
    """
    parts = []
    if op.operator == '"' and len(op.operands) >= 3:
        aw, ac = op.operands[-3], op.operands[-2]
        if isinstance(aw, (int, float)) and isinstance(ac, (int, float)):
            parts.append(f"{_fmt(aw)} Tw {_fmt(ac)} Tc")
    if op.operator in ("'", '"'):
        parts.append("T*")
    if run is not None and run.font_size and run.h_scale and abs(run.advance) > 1e-9:
        adjustment = -run.advance / (run.font_size * run.h_scale) * 1000.0
        parts.append(f"[{_fmt(adjustment)}] TJ")
    return " ".join(parts).encode("ascii")


def _fmt(value: float) -> str:
    text = f"{float(value):.4f}".rstrip("0").rstrip(".")
    return text if text not in ("", "-0") else "0"


# =============================================================================
# PAGE HELPERS
# =============================================================================


def read_page_streams(doc: "fitz.Document", page: "fitz.Page") -> List[Tuple[int, bytes]]:
    """(xref, decompressed bytes) of each content stream of a page, in order."""
    return [(xref, doc.xref_stream(xref) or b"") for xref in page.get_contents()]


def interpret_page(
    streams: List[List[ContentOperation]],
    resources: PageResources,
    width_factor: Optional[float] = None,
) -> List[TextRun]:
    """Replay all of a page's streams (one continuous state) and return its runs."""
    machine = TextStateMachine(fonts=dict(resources.fonts), forms=resources.forms, width_factor=width_factor)
    for operations in streams:
        machine.run(operations)
    return machine.runs
