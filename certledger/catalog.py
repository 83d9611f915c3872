"""
Certification-type catalog.

A closed, versioned lookup of the certification types the ledger accepts.
The built-in presets cover the base, railroad, construction and
environmental categories; a JSON catalog can replace them through
CERTLEDGER_CATALOG_PATH.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from .config import load_json_cached
from .errors import ValidationError


@dataclass(frozen=True)
class CertificationType:
    type_id: str
    name: str
    category: str
    requires_expiration: bool = True
    issuing_authority: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type_id": self.type_id,
            "name": self.name,
            "category": self.category,
            "requires_expiration": self.requires_expiration,
            "issuing_authority": self.issuing_authority,
        }


class CertificationCatalog:
    """Immutable set of certification types under one version label."""

    def __init__(self, version: str, types: Iterable[CertificationType]):
        self.version = version
        self._types: Dict[str, CertificationType] = {}
        for t in types:
            if t.type_id in self._types:
                raise ValueError(f"Duplicate certification type: {t.type_id}")
            self._types[t.type_id] = t

    def __contains__(self, type_id: str) -> bool:
        return type_id in self._types

    def __len__(self) -> int:
        return len(self._types)

    def get(self, type_id: str) -> Optional[CertificationType]:
        return self._types.get(type_id)

    def require(self, type_id: str) -> CertificationType:
        """Return the type or raise ValidationError if it is not in the catalog."""
        t = self._types.get(type_id)
        if t is None:
            raise ValidationError(
                "type_id",
                f"unknown certification type '{type_id}' (catalog {self.version})"
            )
        return t

    def types(self, category: Optional[str] = None) -> List[CertificationType]:
        return [t for t in self._types.values() if category is None or t.category == category]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "types": [t.to_dict() for t in self._types.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CertificationCatalog":
        return cls(
            version=str(data["version"]),
            types=[
                CertificationType(
                    type_id=t["type_id"],
                    name=t.get("name", t["type_id"]),
                    category=t.get("category", "BASE"),
                    requires_expiration=bool(t.get("requires_expiration", True)),
                    issuing_authority=t.get("issuing_authority"),
                )
                for t in data.get("types", [])
            ],
        )


def load_catalog(path: str) -> CertificationCatalog:
    return CertificationCatalog.from_dict(load_json_cached(path))


def _presets(category: str, entries) -> List[CertificationType]:
    return [
        CertificationType(type_id=tid, name=name, category=category,
                          requires_expiration=expires, issuing_authority=authority)
        for tid, name, expires, authority in entries
    ]


BASE_PRESETS = _presets("BASE", [
    ("GOV-ID", "Government Issued ID", False, None),
    ("SAFETY-ORIENTATION", "Safety Orientation / New Hire Training", True, None),
    ("GENERAL-SAFETY", "General Safety Training", True, None),
    ("PPE", "PPE Training", True, None),
    ("DRUG-ALCOHOL-ACK", "Drug & Alcohol Policy Acknowledgement", False, None),
    ("MEDICAL-CLEARANCE", "Medical Clearance", True, None),
    ("CODE-OF-CONDUCT", "Code of Conduct Acknowledgement", False, None),
])

RAILROAD_PRESETS = _presets("RAILROAD_SAFETY", [
    ("ERAILSAFE", "eRailSafe", True, None),
    ("TRACK-SAFETY", "Track Safety Training", True, None),
    ("RWP", "Roadway Worker Protection (RWP)", True, None),
    ("RWIC", "RWIC Qualification", True, None),
])

CONSTRUCTION_PRESETS = _presets("CONSTRUCTION_SAFETY", [
    ("OSHA-10", "OSHA 10", False, "OSHA"),
    ("OSHA-30", "OSHA 30", False, "OSHA"),
    ("FALL-PROTECTION", "Fall Protection", True, None),
    ("CONFINED-SPACE", "Confined Space", True, None),
    ("LOTO", "LOTO", True, None),
    ("HOT-WORK", "Hot Work", True, None),
    ("FORKLIFT", "Forklift", True, None),
    ("CRANE-OPERATOR", "Crane Operator", True, None),
])

ENVIRONMENTAL_PRESETS = _presets("ENVIRONMENTAL_SAFETY", [
    ("HAZWOPER-40", "HAZWOPER 40-Hour", True, None),
    ("HAZWOPER-REFRESHER", "HAZWOPER Refresher", True, None),
    ("SPILL-RESPONSE", "Spill Response", True, None),
])

DEFAULT_CATALOG_VERSION = "presets-1"


def default_catalog() -> CertificationCatalog:
    return CertificationCatalog(
        DEFAULT_CATALOG_VERSION,
        BASE_PRESETS + RAILROAD_PRESETS + CONSTRUCTION_PRESETS + ENVIRONMENTAL_PRESETS,
    )


def effective_catalog(path: Optional[str] = None) -> CertificationCatalog:
    """The configured catalog, or the built-in presets when none is configured."""
    if path:
        return load_catalog(path)
    return default_catalog()
