import math
import re
from typing import List, Optional

CHUNK_SIZE = 1000
CHUNK_OVERLAP = 200

_TITLE_LINE = re.compile(r"[A-Z][^.!?]*")
_HEADING_MARKS = re.compile(r"^#+\s*")


def chunk_text(text: str, chunk_size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> List[dict]:
    """Split text into overlapping chunks of roughly `chunk_size` characters.

    A chunk ends at the last paragraph break (blank line) or, failing that,
    the last sentence end before the size limit, as long as that break is
    past the chunk's midpoint. Returns [{"content", "index"}].

    The loop always advances and is capped at ceil(len / (size - overlap)) + 10
    iterations, so pathological input cannot spin.
    """
    chunks: List[dict] = []
    n = len(text)
    if n == 0:
        return chunks
    step = max(1, chunk_size - overlap)
    max_chunks = math.ceil(n / step) + 10
    start = 0
    iterations = 0

    while start < n and iterations < max_chunks:
        iterations += 1
        end = min(start + chunk_size, n)
        if end < n:
            para = text.rfind("\n\n", 0, end + 2)
            if para > start + chunk_size / 2:
                end = para + 2
            else:
                sentence = text.rfind(". ", 0, end + 2)
                if sentence > start + chunk_size / 2:
                    end = sentence + 2

        piece = text[start:end].strip()
        if piece:
            chunks.append({"content": piece, "index": len(chunks)})

        if end >= n:
            break
        next_start = end - overlap
        start = next_start if next_start > start else start + 1

    return chunks


def extract_section_heading(text: str) -> Optional[str]:
    """First line that looks like a heading: markdown '#', ALL CAPS, or a
    capitalised line without sentence punctuation."""
    for line in text.split("\n"):
        s = line.strip()
        if not s or len(s) >= 100:
            continue
        if s.startswith("#") or s.upper() == s or _TITLE_LINE.fullmatch(s):
            return _HEADING_MARKS.sub("", s)
    return None
