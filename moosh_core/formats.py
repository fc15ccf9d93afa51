"""
Physical encodings of an encrypted bundle.

    json   the bundle object itself
    qr     ordered chunks of the compact bundle JSON, each with a short
           SHA-256 checksum, sized to fit one QR code
    paper  a printable HTML page embedding the pretty-printed bundle

``render`` produces the export wrapper, ``decode`` accepts any of the
three (or the bare bundle) and hands back the bundle dict.
"""

from __future__ import annotations

import hashlib
import html
import json
import logging
import re
from typing import Any, Mapping, Sequence

from moosh_core.backup import canonical_json
from moosh_core.errors import InvalidParameter, MissingChunk, StructuralError
from moosh_core.timestamps import epoch_ms, iso_timestamp

logger = logging.getLogger("moosh_formats")

FORMATS = ("json", "qr", "paper")
DEFAULT_CHUNK_SIZE = 2000
FILENAME_PREFIX = "moosh-wallet-export"

_DATA_DIV = re.compile(r'<div class="data">\s*([\s\S]*?)\s*</div>')


def checksum(data: str) -> str:
    """First 8 hex chars of SHA-256 over the UTF-8 bytes."""
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:8]


def _parse_json(text: str, what: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        raise StructuralError(f"Invalid {what}: not valid JSON") from None


# ===================================================================
#  QR chunks
# ===================================================================

def create_qr_chunks(data: str, size: int = DEFAULT_CHUNK_SIZE) -> list[dict]:
    """Split ``data`` into 1-based, checksummed chunks of at most ``size`` chars."""
    if size < 1:
        raise InvalidParameter("Chunk size must be positive")
    if not data:
        return [{"index": 1, "total": 1, "data": "", "checksum": checksum("")}]
    pieces = [data[i:i + size] for i in range(0, len(data), size)]
    total = len(pieces)
    return [
        {"index": i + 1, "total": total, "data": piece, "checksum": checksum(piece)}
        for i, piece in enumerate(pieces)
    ]


def reassemble_qr_chunks(chunks: Sequence[Any]) -> str:
    """
    Join scanned chunks back into the original string.

    Chunks may arrive in any order.  The caller's list is left untouched.
    """
    if isinstance(chunks, (str, bytes)) or not isinstance(chunks, Sequence) or not chunks:
        raise StructuralError("QR data must be a non-empty list of chunks")

    for chunk in chunks:
        if not isinstance(chunk, Mapping):
            raise StructuralError("Invalid QR chunk: expected an object")
        index, total = chunk.get("index"), chunk.get("total")
        for name, value in (("index", index), ("total", total)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise StructuralError(f"Invalid QR chunk: bad {name}")
        if not isinstance(chunk.get("data"), str):
            raise StructuralError("Invalid QR chunk: missing data")

    ordered = sorted(chunks, key=lambda c: c["index"])
    totals = {c["total"] for c in ordered}
    if len(totals) != 1:
        raise StructuralError("Invalid QR chunks: inconsistent total")
    total = totals.pop()

    seen = [c["index"] for c in ordered]
    if len(set(seen)) != len(seen):
        raise StructuralError("Invalid QR chunks: duplicate index")
    for expected in range(1, total + 1):
        if expected not in seen:
            raise MissingChunk(expected)
    if len(ordered) != total:
        raise StructuralError("Invalid QR chunks: more chunks than total")

    for chunk in ordered:
        expected_sum = chunk.get("checksum")
        if expected_sum is not None and checksum(chunk["data"]) != expected_sum:
            raise StructuralError(f"Checksum mismatch in chunk {chunk['index']}")

    return "".join(c["data"] for c in ordered)


def parse_qr_chunks(chunks: Sequence[Any]) -> Any:
    """Reassemble chunks and parse the bundle JSON they carry."""
    return _parse_json(reassemble_qr_chunks(chunks), "QR data")


# ===================================================================
#  Paper
# ===================================================================

_PAPER_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>MOOSH Wallet Paper Backup</title>
    <style>
        body {{ font-family: monospace; max-width: 800px; margin: 0 auto; padding: 20px; }}
        .header {{ text-align: center; border-bottom: 2px solid #000; padding-bottom: 20px; margin-bottom: 20px; }}
        .warning {{ background: #ffeb3b; padding: 10px; border: 2px solid #f44336; margin: 20px 0; font-weight: bold; }}
        .data {{ background: #f5f5f5; padding: 10px; word-break: break-all; white-space: pre-wrap; font-size: 10px; line-height: 1.5; }}
        .footer {{ margin-top: 20px; padding-top: 20px; border-top: 2px solid #000; text-align: center; }}
        @media print {{ .no-print {{ display: none; }} }}
    </style>
</head>
<body>
    <div class="header">
        <h1>MOOSH Wallet Paper Backup</h1>
        <p>Generated: {generated}</p>
        <p>Checksum: {checksum}</p>
    </div>

    <div class="warning">
        WARNING: This is an encrypted backup of your wallet.
        Store this paper in a secure location. Anyone with access
        to this paper and your password can access your funds.
    </div>

    <div class="data">
        {data}
    </div>

    <div class="footer">
        <p>MOOSH Wallet - Secure Bitcoin &amp; Spark Protocol Wallet</p>
        <p class="no-print">
            <button onclick="window.print()">Print This Backup</button>
        </p>
    </div>
</body>
</html>
"""


def create_printable_version(bundle: Any, now: float) -> str:
    """Printable HTML page; the checksum covers the pretty-printed bundle."""
    data = json.dumps(bundle, indent=2, ensure_ascii=False)
    return _PAPER_TEMPLATE.format(
        generated=iso_timestamp(now),
        checksum=checksum(data),
        data=html.escape(data, quote=False),
    )


def extract_from_paper_wallet(page: str) -> Any:
    """Pull the bundle back out of a printable page."""
    if not isinstance(page, str):
        raise StructuralError("Paper backup must be HTML text")
    match = _DATA_DIV.search(page)
    if match is None:
        raise StructuralError("Could not find wallet data in paper backup")
    return _parse_json(html.unescape(match.group(1)), "paper backup")


# ===================================================================
#  Render / decode
# ===================================================================

def render(bundle: Mapping[str, Any], fmt: str, now: float,
           chunk_size: int = DEFAULT_CHUNK_SIZE) -> dict:
    """Wrap an encrypted bundle in the requested export format."""
    stamp = epoch_ms(now)
    if fmt == "json":
        return {
            "format": "json",
            "content": bundle,
            "filename": f"{FILENAME_PREFIX}-{stamp}.json",
        }
    if fmt == "qr":
        chunks = create_qr_chunks(canonical_json(bundle), chunk_size)
        return {
            "format": "qr",
            "content": chunks,
            "totalChunks": len(chunks),
            "filename": f"{FILENAME_PREFIX}-{stamp}-qr.json",
        }
    if fmt == "paper":
        return {
            "format": "paper",
            "content": {
                "encrypted": bundle,
                "printable": create_printable_version(bundle, now),
            },
            "filename": f"{FILENAME_PREFIX}-{stamp}-paper.html",
        }
    raise InvalidParameter(f"Unsupported format: {fmt}")


def _looks_like_html(text: str) -> bool:
    head = text.lstrip()[:256].lower()
    return head.startswith("<") or 'class="data"' in text


def decode(content: Any) -> Any:
    """
    Recover the encrypted bundle from whatever the user supplied.

    Accepts a rendered export wrapper, a bare bundle dict, a JSON string of
    either, a list of QR chunks, or the text of a paper backup.
    """
    if isinstance(content, str):
        if _looks_like_html(content):
            return extract_from_paper_wallet(content)
        parsed = _parse_json(content, "backup")
        if isinstance(parsed, str):
            raise StructuralError("Invalid backup: unexpected JSON string")
        return decode(parsed)

    if isinstance(content, list):
        return parse_qr_chunks(content)

    if isinstance(content, Mapping):
        fmt = content.get("format")
        if fmt in FORMATS and "content" in content:
            inner = content["content"]
            if fmt == "json":
                return decode(inner)
            if fmt == "qr":
                if not isinstance(inner, list):
                    raise StructuralError("Invalid QR export: content must be a list")
                return parse_qr_chunks(inner)
            if isinstance(inner, Mapping) and isinstance(inner.get("encrypted"), Mapping):
                return inner["encrypted"]
            if isinstance(inner, Mapping) and isinstance(inner.get("printable"), str):
                return extract_from_paper_wallet(inner["printable"])
            if isinstance(inner, str):
                return extract_from_paper_wallet(inner)
            raise StructuralError("Invalid paper export")
        return dict(content)

    raise StructuralError(f"Unrecognised backup content: {type(content).__name__}")
