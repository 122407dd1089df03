from __future__ import annotations

from .document_mapper import APPROVAL_TOKEN_PLACEHOLDER, map_event_to_document
from .pii_scrub import INTERNAL_PART_CODE, looks_vin_derived, safe_reference_code

__all__ = [
    "APPROVAL_TOKEN_PLACEHOLDER",
    "INTERNAL_PART_CODE",
    "map_event_to_document",
    "looks_vin_derived",
    "safe_reference_code",
]
