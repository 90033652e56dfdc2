"""
Storage key layout for originals and derivatives.

Conventions:
    - Originals: originals/[{target_path}/]{identity}.{ext}
    - Derivatives: derivatives/{identity}/{preset}.{ext}

Every derivative of one identity shares the derivatives/{identity}/ prefix,
so a cascading delete can sweep the prefix for blobs the index lost track of.
Segments are sanitized to [A-Za-z0-9._-] to keep keys free of traversal.
"""
from __future__ import annotations

import re
import unicodedata

_SEGMENT_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _sanitize_segment(value: str, *, fallback: str = "x") -> str:
    value = value or ""
    normalized = unicodedata.normalize("NFKD", value)
    ascii_value = normalized.encode("ascii", "ignore").decode("ascii")
    sanitized = _SEGMENT_RE.sub("-", ascii_value).strip("-_.")
    return sanitized or fallback


def is_safe_segment(value: str) -> bool:
    """True when `value` is used verbatim as a key segment, so distinct values give distinct keys."""
    return bool(value) and _sanitize_segment(value, fallback="") == value


def _sanitize_target_path(target_path: str | None) -> str:
    if not target_path:
        return ""
    segments = [s for s in target_path.replace("\\", "/").split("/") if s and s not in (".", "..")]
    return "/".join(_sanitize_segment(s) for s in segments)


def make_original_key(*, identity: str, ext: str, target_path: str | None = None) -> str:
    ident = _sanitize_segment(identity, fallback="image")
    ext_norm = _sanitize_segment(ext.lower().lstrip("."), fallback="bin")
    target = _sanitize_target_path(target_path)
    prefix = f"originals/{target}/" if target else "originals/"
    return f"{prefix}{ident}.{ext_norm}"


def derivative_prefix(identity: str) -> str:
    return f"derivatives/{_sanitize_segment(identity, fallback='image')}/"


def make_derivative_key(*, identity: str, preset: str, ext: str) -> str:
    p = _sanitize_segment(preset, fallback="preset")
    ext_norm = _sanitize_segment(ext.lower().lstrip("."), fallback="bin")
    return f"{derivative_prefix(identity)}{p}.{ext_norm}"


__all__ = ["derivative_prefix", "is_safe_segment", "make_derivative_key", "make_original_key"]
