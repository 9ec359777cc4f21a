"""Text extraction for Word 97-2003 (.doc) binary files.

The main document text lives in the WordDocument stream, scattered across
pieces described by the piece table (PlcPcd) inside the CLX structure of
the 0Table or 1Table stream. The FIB at the start of WordDocument says
which table stream is in use and where the CLX is.
"""
import io
import struct
from typing import List, Tuple

import olefile
import structlog

from docpilot.errors import CorruptDocument

logger = structlog.get_logger()

OLE_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
WORD_IDENT = 0xA5EC

# FIB flags (FibBase offset 0x0A)
F_ENCRYPTED = 0x0100
F_WHICH_TBL_STM = 0x0200

# Index of the fcClx/lcbClx pair in FibRgFcLcb97
CLX_PAIR_INDEX = 33
# Index of ccpText in FibRgLw97
CCP_TEXT_INDEX = 3

FIELD_BEGIN = "\x13"
FIELD_SEPARATOR = "\x14"
FIELD_END = "\x15"
PAGE_BREAK = "\x0c"


def _u16(buf: bytes, offset: int) -> int:
    return struct.unpack_from("<H", buf, offset)[0]


def _u32(buf: bytes, offset: int) -> int:
    return struct.unpack_from("<I", buf, offset)[0]


def read_fib(word_stream: bytes) -> Tuple[str, int, int, int]:
    """Read the parts of the FIB needed to locate the text.

    Returns:
        Tuple of (table_stream_name, fc_clx, lcb_clx, ccp_text)

    Raises:
        CorruptDocument: If the FIB is truncated, not a Word FIB, or encrypted
    """
    try:
        if _u16(word_stream, 0) != WORD_IDENT:
            raise CorruptDocument("WordDocument stream has no Word FIB signature")

        flags = _u16(word_stream, 0x0A)
        if flags & F_ENCRYPTED:
            raise CorruptDocument("Encrypted Word documents are not supported")
        table_name = "1Table" if flags & F_WHICH_TBL_STM else "0Table"

        pos = 32  # end of FibBase
        csw = _u16(word_stream, pos)
        pos += 2 + csw * 2
        cslw = _u16(word_stream, pos)
        rg_lw = pos + 2
        ccp_text = _u32(word_stream, rg_lw + CCP_TEXT_INDEX * 4)
        pos = rg_lw + cslw * 4
        cb_rg_fc_lcb = _u16(word_stream, pos)
        if cb_rg_fc_lcb <= CLX_PAIR_INDEX:
            raise CorruptDocument("FIB is too short to contain a piece table")
        pair = pos + 2 + CLX_PAIR_INDEX * 8
        fc_clx = _u32(word_stream, pair)
        lcb_clx = _u32(word_stream, pair + 4)
    except struct.error as e:
        raise CorruptDocument(f"Truncated FIB: {e}") from e

    return table_name, fc_clx, lcb_clx, ccp_text


def read_piece_table(clx: bytes) -> List[Tuple[int, int, int, bool]]:
    """Parse a CLX into pieces.

    Returns:
        List of (cp_start, cp_end, file_offset, compressed)
    """
    pos = 0
    try:
        # Skip any Prc (property modifier) records
        while pos < len(clx) and clx[pos] == 0x01:
            cb_grpprl = struct.unpack_from("<h", clx, pos + 1)[0]
            pos += 3 + cb_grpprl

        if pos >= len(clx) or clx[pos] != 0x02:
            raise CorruptDocument("CLX has no piece table")

        lcb = _u32(clx, pos + 1)
        plc = clx[pos + 5 : pos + 5 + lcb]
        if len(plc) != lcb or (lcb - 4) % 12:
            raise CorruptDocument("Piece table has an invalid length")

        count = (lcb - 4) // 12
        cps = struct.unpack_from(f"<{count + 1}I", plc, 0)
        pieces = []
        for i in range(count):
            fc_raw = _u32(plc, (count + 1) * 4 + i * 8 + 2)
            compressed = bool(fc_raw & 0x40000000)
            fc = fc_raw & 0x3FFFFFFF
            if compressed:
                fc //= 2
            pieces.append((cps[i], cps[i + 1], fc, compressed))
    except struct.error as e:
        raise CorruptDocument(f"Truncated piece table: {e}") from e

    return pieces


def decode_pieces(
    word_stream: bytes, pieces: List[Tuple[int, int, int, bool]], ccp_text: int
) -> str:
    """Decode the main-document characters described by the piece table.

    A piece pointing outside the stream is skipped with a warning rather
    than failing the whole document.
    """
    parts = []
    for index, (cp_start, cp_end, fc, compressed) in enumerate(pieces):
        if cp_start >= ccp_text:
            break
        cp_end = min(cp_end, ccp_text)
        count = cp_end - cp_start
        if count <= 0:
            continue

        width = 1 if compressed else 2
        raw = word_stream[fc : fc + count * width]
        if len(raw) != count * width:
            logger.warning(
                "word_piece_out_of_range",
                piece=index,
                offset=fc,
                expected_bytes=count * width,
            )
            continue

        if compressed:
            parts.append(raw.decode("cp1252", errors="replace"))
        else:
            parts.append(raw.decode("utf-16-le", errors="replace"))

    return "".join(parts)


def clean_text(raw: str) -> str:
    """Map Word control characters to plain text.

    Field codes are dropped and field results kept; paragraph marks and
    line breaks become newlines, cell marks become tabs. Page breaks are
    preserved so the caller can split pages.
    """
    out = []
    # One entry per open field: True while inside its code portion
    fields: List[bool] = []
    for ch in raw:
        if ch == FIELD_BEGIN:
            fields.append(True)
            continue
        if ch == FIELD_SEPARATOR:
            if fields:
                fields[-1] = False
            continue
        if ch == FIELD_END:
            if fields:
                fields.pop()
            continue
        if any(fields):
            continue

        if ch in ("\r", "\x0b"):
            out.append("\n")
        elif ch == "\x07":
            out.append("\t")
        elif ch == PAGE_BREAK or ch in ("\n", "\t"):
            out.append(ch)
        elif ord(ch) < 0x20:
            continue
        else:
            out.append(ch)

    return "".join(out)


def decode_document(word_stream: bytes, table_stream: bytes, ccp_text: int, fc_clx: int, lcb_clx: int) -> str:
    clx = table_stream[fc_clx : fc_clx + lcb_clx]
    if len(clx) != lcb_clx or lcb_clx == 0:
        raise CorruptDocument("CLX lies outside the table stream")
    pieces = read_piece_table(clx)
    return clean_text(decode_pieces(word_stream, pieces, ccp_text))


def split_pages(text: str) -> List[str]:
    """Split cleaned text into page-like sections on explicit page breaks."""
    return text.split(PAGE_BREAK)


def extract_pages(data: bytes) -> List[str]:
    """Extract the main text of a .doc file as a list of page sections.

    Raises:
        CorruptDocument: If the OLE container or Word structures are unreadable
    """
    try:
        ole = olefile.OleFileIO(io.BytesIO(data))
    except Exception as e:
        raise CorruptDocument(f"Unreadable OLE container: {e}") from e

    try:
        if not ole.exists("WordDocument"):
            raise CorruptDocument("OLE container has no WordDocument stream")
        word_stream = ole.openstream("WordDocument").read()
        table_name, fc_clx, lcb_clx, ccp_text = read_fib(word_stream)
        if not ole.exists(table_name):
            raise CorruptDocument(f"Missing table stream {table_name}")
        table_stream = ole.openstream(table_name).read()
    except OSError as e:
        raise CorruptDocument(f"Failed to read Word streams: {e}") from e
    finally:
        ole.close()

    text = decode_document(word_stream, table_stream, ccp_text, fc_clx, lcb_clx)
    return split_pages(text)
