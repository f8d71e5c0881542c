"""
Filename helpers for archive entries: cross-platform sanitizing and per-run unique names.
"""

import re

FALLBACK_NAME: str = 'Untitled'
MAX_NAME_LENGTH: int = 140
RESERVED_DEVICE_NAMES: frozenset[str] = frozenset(
    {'CON', 'PRN', 'AUX', 'NUL'}
    | {f'COM{i}' for i in range(1, 10)}
    | {f'LPT{i}' for i in range(1, 10)}
)

_FORBIDDEN_RE = re.compile(r'[<>:"/\\|?*\x00-\x1F]')
_WHITESPACE_RE = re.compile(r'\s+')
_TRAILING_DOTS_RE = re.compile(r'[. ]+$')


def sanitize_filename(name: object) -> str:
    """
    Makes a title safe to use as a filename on Windows, macOS and Linux.
    Forbidden and control characters become spaces, whitespace collapses, trailing dots/spaces go,
    reserved device names get an underscore prefix, and the result is capped at 140 characters.
    """
    s: str = str(name or '').strip()
    s = _FORBIDDEN_RE.sub(' ', s)
    s = _WHITESPACE_RE.sub(' ', s).strip()
    s = _TRAILING_DOTS_RE.sub('', s[:MAX_NAME_LENGTH].strip()) or FALLBACK_NAME
    if s.upper() in RESERVED_DEVICE_NAMES:
        s = f'_{s}'
    return s


class UniqueNameAllocator:
    """
    Hands out unique entry names within one run.
    - The first occurrence of a sanitized base keeps the bare name.
    - Later occurrences get ` (n)` before the extension, n being the occurrence number.
    - A candidate already handed out (eg a post literally titled "Intro (2)") is skipped.
    """

    def __init__(self, extension: str = '.md') -> None:
        self.extension: str = extension
        self._occurrences: dict[str, int] = {}
        self._used: set[str] = set()

    def allocate(self, title: object) -> str:
        base: str = sanitize_filename(title)
        n: int = self._occurrences.get(base, 0)
        candidate: str = f'{base}{self.extension}' if n == 0 else f'{base} ({n + 1}){self.extension}'
        while candidate in self._used:
            n += 1
            candidate = f'{base} ({n + 1}){self.extension}'
        self._occurrences[base] = n + 1
        self._used.add(candidate)
        return candidate
