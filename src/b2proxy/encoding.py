"""B2 file name encoding.

B2 expects the ``X-Bz-File-Name`` header to be percent-encoded with its own
rules, documented at https://www.backblaze.com/b2/docs/string_encoding.html:
the UTF-8 bytes of the name are kept as-is when they are ASCII letters,
digits or one of the safe punctuation characters below, and written as
``%xx`` otherwise.
"""

SAFE_BYTES = frozenset(b"._-/~!$'()*;=:@")


def _is_safe(b: int) -> bool:
    return (
        b in SAFE_BYTES
        or 0x30 <= b <= 0x39  # 0-9
        or 0x41 <= b <= 0x5A  # A-Z
        or 0x61 <= b <= 0x7A  # a-z
    )


def encode_b2_path_component(raw: str) -> str:
    """Percent-encode a file name for the ``X-Bz-File-Name`` header.

    Escapes are always two lowercase hex digits, so ``\\t`` becomes ``%09``.

    Args:
        raw: The object key as text.

    Returns:
        The encoded header value.
    """
    return "".join(
        chr(b) if _is_safe(b) else f"%{b:02x}" for b in raw.encode("utf-8")
    )
