"""Identifier conversions used by code generation and deployment.

Every helper is total: any string, including empty ones or ids made only
of separators, maps to a usable name.
"""

from __future__ import annotations

import keyword
import re

_SEPARATORS = re.compile(r'[^A-Za-z0-9]+')
_HUMP = re.compile(r'([a-z0-9])([A-Z])')


def _segments(value: str) -> list[str]:
    return [s for s in _SEPARATORS.split(value or '') if s]


def pascal_case(value: str) -> str:
    """``review_document-1`` -> ``ReviewDocument1``; leading digits get ``_``."""
    result = ''.join(s[0].upper() + s[1:] for s in _segments(value))
    if not result:
        return 'Unnamed'
    if result[0].isdigit():
        return f'_{result}'
    return result


def kebab_case(value: str) -> str:
    """``reviewDocument_step`` -> ``review-document-step``."""
    return '-'.join(s.lower() for s in _segments(_HUMP.sub(r'\1-\2', value or '')))


def snake_case(value: str) -> str:
    """Python module-safe name: ``Activity-Review`` -> ``activity_review``."""
    result = kebab_case(value).replace('-', '_')
    if not result:
        return 'unnamed'
    if result[0].isdigit():
        return f'n_{result}'
    return result


def package_safe(value: str) -> str:
    """Strip non-alphanumerics and lowercase, keeping the result importable."""
    result = re.sub(r'[^A-Za-z0-9]', '', value or '').lower()
    if not result:
        return 'process'
    if result[0].isdigit() or keyword.iskeyword(result):
        return f'wf{result}'
    return result


def dns_safe(value: str) -> str:
    """RFC 1123 label for images, releases and directories."""
    result = re.sub(r'[^a-z0-9-]', '-', (value or '').lower())
    result = re.sub(r'-+', '-', result).strip('-')
    return result[:63].rstrip('-') or 'workflow'


def file_safe(value: str, fallback: str = 'unnamed') -> str:
    """Single path segment: no separators, no leading dots."""
    return re.sub(r'[^A-Za-z0-9._-]', '-', value or '').strip('.-') or fallback
