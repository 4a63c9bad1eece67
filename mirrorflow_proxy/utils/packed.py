# Adapted from the p.a.c.k.e.r unpacker of js-beautify:
# https://github.com/einars/js-beautify/blob/master/python/jsbeautifier/unpackers/packer.py
# by Einar Lielmanis <einar@beautifier.io>, written by Stefano Sanfilippo <a.little.coder@gmail.com>
#
# usage:
#
# if detect(some_string):
#     unpacked = unpack_packed(some_string)
#
"""Unpacker for Dean Edward's p.a.c.k.e.r"""

import logging
import re
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ"

JUICERS = [
    re.compile(r"}\('(.*?)', *(\d+|\[\]), *(\d+), *'(.*?)'\.split\('\|'\), *(\d+), *(.*?)\)\)", re.DOTALL),
    re.compile(r"}\('(.*?)', *(\d+|\[\]), *(\d+), *'(.*?)'\.split\('\|'\)", re.DOTALL),
]

ESCAPE_RE = re.compile(r"""\\([\\'"])""")

DEFAULT_MAX_PASSES = 10


class UnpackingError(Exception):
    """Badly packed source or general error. Argument is a
    meaningful description."""

    pass


def detect(source: str) -> bool:
    """Whether ``source`` contains a packer payload."""
    if not source:
        return False
    return any(juicer.search(source) for juicer in JUICERS)


def to_radix(number: int, radix: int) -> str:
    """Textual representation of ``number`` the way the packer's ``e`` helper writes it."""
    if number < radix:
        return ALPHABET[number]
    return to_radix(number // radix, radix) + ALPHABET[number % radix]


def unpack(source: str) -> str:
    """Unpacks one P.A.C.K.E.R. packed block."""
    payload, symtab, radix, count = _filterargs(source)

    if count != len(symtab):
        raise UnpackingError("Malformed p.a.c.k.e.r. symtab.")
    if not 2 <= radix <= len(ALPHABET):
        raise UnpackingError("Unknown p.a.c.k.e.r. encoding.")

    payload = ESCAPE_RE.sub(lambda m: m.group(1), payload)

    # highest index first so a short token never clobbers part of a longer one
    for index in range(count - 1, -1, -1):
        word = symtab[index]
        if not word:
            continue
        token = re.escape(to_radix(index, radix))
        payload = re.sub(rf"\b{token}\b", lambda _m, w=word: w, payload, flags=re.ASCII)
    return payload


def unpack_packed(source: str, max_passes: int = DEFAULT_MAX_PASSES) -> Optional[str]:
    """
    Decode ``source`` until no packer shape is left.

    Returns None when there is nothing to decode or the first pass fails. A failing
    later pass returns the output of the last good one.
    """
    if not detect(source):
        return None

    decoded = None
    current = source
    for _ in range(max_passes):
        try:
            current = unpack(current)
        except UnpackingError as e:
            logger.debug(f"Unpacking stopped: {e}")
            break
        decoded = current
        if not detect(current):
            break
    return decoded


def unpack_all(scripts: Iterable[str]) -> List[str]:
    """Decode every script that carries a packer payload."""
    outputs = []
    for script in scripts:
        decoded = unpack_packed(script)
        if decoded:
            outputs.append(decoded)
    return outputs


def _filterargs(source: str):
    """Juice from a source file the four args needed by decoder."""
    for juicer in JUICERS:
        args = juicer.search(source)
        if args:
            a = args.groups()
            radix = 62 if a[1] == "[]" else a[1]
            try:
                return a[0], a[3].split("|"), int(radix), int(a[2])
            except ValueError:
                raise UnpackingError("Corrupted p.a.c.k.e.r. data.")

    # could not find a satisfying regex
    raise UnpackingError("Could not make sense of p.a.c.k.e.r data (unexpected code structure)")
