from __future__ import annotations

import re


INTERNAL_PART_CODE = "INTERNAL"

# VINs are 17 characters and never use I, O or Q.
_VIN_TOKEN_PATTERN = re.compile(r"(?<![A-Z0-9])[A-HJ-NPR-Z0-9]{17}(?![A-Z0-9])")


def _is_vin_shaped(token: str) -> bool:
    return any(char.isdigit() for char in token) and any(char.isalpha() for char in token)


def looks_vin_derived(raw: str | None) -> bool:
    normalized = str(raw or "").strip().upper()
    if not normalized:
        return False
    if "VIN" in normalized:
        return True
    return any(_is_vin_shaped(match.group(0)) for match in _VIN_TOKEN_PATTERN.finditer(normalized))


def safe_reference_code(raw: str | None) -> str | None:
    """Outbound part code: the fixed internal marker, never the caller's reference."""
    code = str(raw or "").strip()
    if not code or looks_vin_derived(code):
        return None
    return INTERNAL_PART_CODE
