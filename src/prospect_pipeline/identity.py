"""Identity resolution for leads.

Two records describe the same business when their normalized identifying
fields agree. Normalization is case folding plus whitespace collapsing; empty
fields are skipped so a missing phone never blocks a match.
"""

from typing import Dict

from .models import Lead

IDENTITY_FIELDS = ("name", "address", "phone", "website")
KEY_SEPARATOR = "|"


def normalize(value: object) -> str:
    """Case-fold and collapse whitespace; None becomes the empty string."""
    if value is None:
        return ""
    return " ".join(str(value).split()).casefold()


def identity_fields(lead: Lead) -> Dict[str, str]:
    """Return the non-empty normalized identifying fields of a lead, in order."""
    fields = {}
    for field_name in IDENTITY_FIELDS:
        value = normalize(getattr(lead, field_name))
        if value:
            fields[field_name] = value
    return fields


def identity_key(lead: Lead) -> str:
    """Deterministic key for a lead.

    Example:
        >>> identity_key(Lead(name=" Joe's Pizza ", phone="555-0100"))
        "name=joe's pizza|phone=555-0100"
    """
    return KEY_SEPARATOR.join(
        f"{name}={value}" for name, value in identity_fields(lead).items()
    )


def is_same_identity(a: Lead, b: Lead) -> bool:
    """Decide whether two leads describe the same business.

    Provider place ids are authoritative when both sides carry one. Otherwise
    the keys must be equal, or one side's fields must be a subset of the
    other's with every shared field agreeing. A subset match needs the name
    plus at least one more shared field, so a name-only record never merges
    into a richer one; two name-only records with the same name have equal
    keys and do merge.
    """
    if a.place_id and b.place_id:
        return a.place_id == b.place_id

    fields_a = identity_fields(a)
    fields_b = identity_fields(b)
    if fields_a == fields_b:
        return True

    shared = fields_a.keys() & fields_b.keys()
    if "name" not in shared or len(shared) < 2:
        return False
    if any(fields_a[name] != fields_b[name] for name in shared):
        return False
    return fields_a.keys() <= fields_b.keys() or fields_b.keys() <= fields_a.keys()
