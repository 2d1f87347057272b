"""
Vendor & brand resolution for PO facts.

PO headers carry free-text vendor names ("Riches Furniture", "YC") and a
client column ("CB", "CB2", "CK"). The matching engine needs the canonical
vendor id and the canonical brand, and for MTO/SPO programs the collection
named in the program description ("MTO HOXTON FEB 2026" → "hoxton").

Usage:
    from merchops.services.vendor_resolver import VendorResolver

    resolver = VendorResolver.load()
    vendor_id = resolver.resolve("riches")
"""

import logging
import re

from sqlalchemy import select

from merchops.models import db
from merchops.models.purchasing import Vendor, VendorAlias

logger = logging.getLogger(__name__)

# Brand codes as they appear in imports → canonical brand
BRAND_ALIASES = {
    "CK": "C&K",
    "C & K": "C&K",
}

# Internal placeholder brand; never offered as a filter value.
EXCLUDED_BRANDS = {"CBH"}

# Checked in order, so "laura/tiff" wins over "laura".
KNOWN_MTO_COLLECTIONS = (
    "ambroise", "forte", "hoxton", "pm symmetric", "vera", "aviator",
    "lowe", "emile", "laura/tiff", "laura", "tiff", "blume", "soma", "edendale",
)

_MONTH_WORD = re.compile(
    r"\b(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec|january|february|march|"
    r"april|june|july|august|september|october|november|december)\b"
)
_YEAR_WORD = re.compile(r"\b(20\d{2})\b")
_AFTER_MTO = re.compile(r"mto[\s:_-]+([a-z\s/]+)")


def normalize_brand(brand: str | None) -> str | None:
    """Upper-case, trim and map brand aliases (CK → C&K). Blank → None."""
    if brand is None:
        return None
    value = str(brand).strip().upper()
    if not value:
        return None
    return BRAND_ALIASES.get(value, value)


def normalize_text(value: str | None) -> str:
    """Lower-case and collapse whitespace for description comparisons."""
    return " ".join(str(value or "").lower().split())


def extract_mto_collection(program_description: str | None) -> str | None:
    """Collection named by an MTO program description, or None.

    Known collections are tried first; otherwise the words following "MTO"
    are taken up to the first month name or year.
    """
    if not program_description:
        return None
    desc = program_description.lower()
    if "mto" not in desc:
        return None

    for collection in KNOWN_MTO_COLLECTIONS:
        if collection in desc:
            return collection

    match = _AFTER_MTO.search(desc)
    if not match:
        return None
    extracted = match.group(1).strip()
    for stop in (_MONTH_WORD, _YEAR_WORD):
        hit = stop.search(extracted)
        if hit and hit.start() > 0:
            extracted = extracted[:hit.start()].strip()
    extracted = extracted.rstrip(" ,").strip()
    return extracted or None


class VendorResolver:
    """Case-insensitive lookup of vendor name / code / alias → vendor id."""

    def __init__(self, lookup: dict[str, int]):
        self._lookup = lookup

    @classmethod
    def load(cls, session=None) -> "VendorResolver":
        sess = session if session is not None else db.session
        lookup: dict[str, int] = {}
        for vendor in sess.execute(select(Vendor)).scalars():
            lookup.setdefault(vendor.name.strip().lower(), vendor.id)
            if vendor.vendor_code:
                lookup.setdefault(vendor.vendor_code.strip().lower(), vendor.id)
        # Aliases never shadow a canonical name or code.
        for alias in sess.execute(select(VendorAlias)).scalars():
            lookup.setdefault(alias.alias.strip().lower(), alias.vendor_id)
        logger.debug("Vendor resolver loaded %d keys", len(lookup))
        return cls(lookup)

    def resolve(self, name: str | None) -> int | None:
        if not name:
            return None
        return self._lookup.get(str(name).strip().lower())

    def __len__(self):
        return len(self._lookup)
