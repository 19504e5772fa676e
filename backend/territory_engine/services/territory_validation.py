# Overview: Input validation and heuristics for territory definitions and assignments.

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Sequence

from ..errors import ValidationError

MIN_NAME_LENGTH = 3

# Sorted numeric gap above which two postal codes are treated as non-adjacent.
# Approximate: postal-code proximity is not geographic proximity.
CONTIGUITY_MAX_GAP = 100

# Soft cap on territories per rep before a load-balancing warning
REP_TERRITORY_WARNING_THRESHOLD = 10

POSTAL_CODE_RE = re.compile(r"^\d{5}(-\d{4})?$")

VALID_STATES = frozenset({
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA",
    "HI", "ID", "IL", "IN", "IA", "KS", "KY", "LA", "ME", "MD",
    "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH", "NJ",
    "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC",
    "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY",
    "DC",
})


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {"is_valid": self.is_valid, "errors": list(self.errors), "warnings": list(self.warnings)}


def is_valid_postal_code(code: str) -> bool:
    return bool(code) and bool(POSTAL_CODE_RE.match(code))


def normalize_postal_codes(codes: Optional[Iterable]) -> list[str]:
    """Strip, stringify and de-duplicate codes, keeping first-seen order."""
    if codes is None:
        return []
    if isinstance(codes, str):
        raise ValidationError("postal_codes must be a list of strings")
    seen: set[str] = set()
    normalized: list[str] = []
    for code in codes:
        value = str(code).strip()
        if value and value not in seen:
            seen.add(value)
            normalized.append(value)
    return normalized


def check_contiguity(postal_codes: Sequence[str]) -> bool:
    """
    Heuristic adjacency check: codes sorted numerically must not jump by
    more than CONTIGUITY_MAX_GAP.
    """
    if len(postal_codes) <= 1:
        return True
    numbers = sorted(int(code[:5]) for code in postal_codes if is_valid_postal_code(code))
    return all(b - a <= CONTIGUITY_MAX_GAP for a, b in zip(numbers, numbers[1:]))


def calculate_overlap(first: Iterable[str], second: Iterable[str]) -> float:
    """Shared codes as a percentage of the union of both sets."""
    a, b = set(first), set(second)
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union) * 100


def validate_territory(
    name: Optional[str],
    postal_codes: Sequence[str],
    state: Optional[str],
    *,
    find_conflicts: Optional[Callable[[Sequence[str]], list[dict]]] = None,
) -> ValidationResult:
    """
    Validate a territory definition before creation or update.

    Errors block the write; warnings are advisory (possible
    non-contiguity). find_conflicts, when given, is the registry's
    conflict query and turns every collision into an error.
    """
    result = ValidationResult()

    if not name or len(name.strip()) < MIN_NAME_LENGTH:
        result.errors.append(f"Territory name must be at least {MIN_NAME_LENGTH} characters long")

    if not state or state not in VALID_STATES:
        result.errors.append("Invalid state code")

    if not postal_codes:
        result.errors.append("Territory must have at least one postal code")
    else:
        invalid = [code for code in postal_codes if not is_valid_postal_code(code)]
        for code in invalid:
            result.errors.append(f"Invalid postal code format: {code}")

        if find_conflicts is not None and not invalid:
            for conflict in find_conflicts(postal_codes):
                result.errors.append(
                    f"Postal code {conflict['postal_code']} is already assigned to territory: "
                    f"{conflict['territory_name']}"
                )

        if not invalid and not check_contiguity(postal_codes):
            result.warnings.append(
                "Territory postal codes may not be contiguous. Consider splitting into multiple territories."
            )

    return result


def validate_assignment(
    territory_postal_codes: Sequence[str],
    rep_territories: Sequence[Sequence[str]],
    *,
    territory_is_protected: bool = False,
) -> ValidationResult:
    """
    Advisory checks before assigning a territory to a rep.

    rep_territories holds the postal-code lists of territories the rep
    already covers.
    """
    result = ValidationResult()

    if territory_is_protected:
        result.errors.append(
            "Territory is already protected and cannot be reassigned without admin approval"
        )

    if len(rep_territories) >= REP_TERRITORY_WARNING_THRESHOLD:
        result.warnings.append(
            f"Sales rep already manages {REP_TERRITORY_WARNING_THRESHOLD} or more territories. "
            "Consider load balancing."
        )

    if rep_territories:
        adjacent = any(
            calculate_overlap(codes, territory_postal_codes) > 0
            or check_contiguity(list(codes) + list(territory_postal_codes))
            for codes in rep_territories
        )
        if not adjacent:
            result.warnings.append(
                "This territory is not adjacent to the rep's existing territories. "
                "Consider assigning contiguous areas."
            )

    return result
