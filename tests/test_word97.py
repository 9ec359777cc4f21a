"""Tests for the Word 97-2003 piece-table decoder.

No library writes .doc files, so these build the FIB and CLX structures
byte by byte.
"""
import struct

import pytest

from docpilot.errors import CorruptDocument
from docpilot.rag import word97

TEXT_OFFSET_COMPRESSED = 1024
TEXT_OFFSET_UNICODE = 2048


def build_fib(ccp_text: int, fc_clx: int, lcb_clx: int, table_one: bool = True, flags: int = 0) -> bytearray:
    fib = bytearray(154 + 93 * 8)
    struct.pack_into("<H", fib, 0, word97.WORD_IDENT)
    struct.pack_into("<H", fib, 0x0A, (word97.F_WHICH_TBL_STM if table_one else 0) | flags)
    struct.pack_into("<H", fib, 32, 14)  # csw
    struct.pack_into("<H", fib, 62, 22)  # cslw
    struct.pack_into("<I", fib, 64 + word97.CCP_TEXT_INDEX * 4, ccp_text)
    struct.pack_into("<H", fib, 152, 93)  # cbRgFcLcb
    struct.pack_into("<II", fib, 154 + word97.CLX_PAIR_INDEX * 8, fc_clx, lcb_clx)
    return fib


def build_clx(pieces, with_prc: bool = False) -> bytes:
    """pieces: list of (cp_start, cp_end, file_offset, compressed)."""
    cps = [p[0] for p in pieces] + [pieces[-1][1]]
    plc = struct.pack(f"<{len(cps)}I", *cps)
    for _, _, fc, compressed in pieces:
        raw = (fc * 2) | 0x40000000 if compressed else fc
        plc += struct.pack("<HIH", 0, raw, 0)
    clx = b""
    if with_prc:
        clx += b"\x01" + struct.pack("<h", 3) + b"\x00\x00\x00"
    return clx + b"\x02" + struct.pack("<I", len(plc)) + plc


def build_document(first: str, second: str):
    """Word stream with a cp1252 piece followed by a UTF-16 piece."""
    pieces = [
        (0, len(first), TEXT_OFFSET_COMPRESSED, True),
        (len(first), len(first) + len(second), TEXT_OFFSET_UNICODE, False),
    ]
    clx = build_clx(pieces)
    table = b"\x00" * 16 + clx
    ccp_text = len(first) + len(second)

    stream = build_fib(ccp_text, 16, len(clx))
    stream.extend(b"\x00" * (3000 - len(stream)))
    encoded_first = first.encode("cp1252")
    stream[TEXT_OFFSET_COMPRESSED : TEXT_OFFSET_COMPRESSED + len(encoded_first)] = encoded_first
    encoded_second = second.encode("utf-16-le")
    stream[TEXT_OFFSET_UNICODE : TEXT_OFFSET_UNICODE + len(encoded_second)] = encoded_second
    return bytes(stream), table, ccp_text


def test_read_fib_locates_clx():
    fib = build_fib(ccp_text=42, fc_clx=100, lcb_clx=28)

    assert word97.read_fib(bytes(fib)) == ("1Table", 100, 28, 42)
    assert word97.read_fib(bytes(build_fib(1, 2, 3, table_one=False)))[0] == "0Table"


def test_read_fib_rejects_bad_signature():
    fib = build_fib(1, 2, 3)
    fib[0:2] = b"\x00\x00"
    with pytest.raises(CorruptDocument):
        word97.read_fib(bytes(fib))


def test_read_fib_rejects_encrypted():
    with pytest.raises(CorruptDocument, match="Encrypted"):
        word97.read_fib(bytes(build_fib(1, 2, 3, flags=word97.F_ENCRYPTED)))


def test_read_fib_rejects_truncated_stream():
    with pytest.raises(CorruptDocument):
        word97.read_fib(bytes(build_fib(1, 2, 3))[:100])


def test_piece_table_parsing():
    pieces = [(0, 5, 1024, True), (5, 9, 4096, False)]

    assert word97.read_piece_table(build_clx(pieces)) == pieces
    assert word97.read_piece_table(build_clx(pieces, with_prc=True)) == pieces


def test_piece_table_missing():
    with pytest.raises(CorruptDocument):
        word97.read_piece_table(b"\x05\x00\x00")


def test_decode_mixed_encodings():
    stream, table, ccp_text = build_document("Caf\xe9 menu\r", "Unicode λ text")
    _, fc_clx, lcb_clx, ccp = word97.read_fib(stream)

    text = word97.decode_document(stream, table, ccp, fc_clx, lcb_clx)

    assert ccp == ccp_text
    assert text == "Caf\xe9 menu\nUnicode λ text"


def test_page_breaks_split_sections():
    stream, table, ccp_text = build_document("First page\x0c", "Second page")
    text = word97.decode_document(stream, table, ccp_text, 16, len(table) - 16)

    assert word97.split_pages(text) == ["First page", "Second page"]


def test_out_of_range_piece_is_skipped():
    pieces = [(0, 4, 0, True), (4, 8, 10_000, True)]
    assert word97.decode_pieces(b"good", pieces, 8) == "good"


def test_text_is_truncated_to_main_document():
    pieces = [(0, 10, 0, True)]
    assert word97.decode_pieces(b"main+notes", pieces, 4) == "main"


def test_clean_text_drops_field_codes():
    raw = 'See \x13 HYPERLINK "http://x" \x14the docs\x15 now\rCell\x07Cell\x07\x01'
    assert word97.clean_text(raw) == "See the docs now\nCell\tCell\t"


def test_clean_text_nested_fields():
    raw = "A\x13 IF \x13 PAGE \x145\x15 \x14kept\x15B"
    assert word97.clean_text(raw) == "AkeptB"


def test_clx_outside_table_stream():
    with pytest.raises(CorruptDocument):
        word97.decode_document(b"", b"\x00" * 4, 0, 10, 20)


def test_extract_pages_rejects_non_ole_bytes():
    with pytest.raises(CorruptDocument):
        word97.extract_pages(word97.OLE_MAGIC + b"\x00" * 64)
