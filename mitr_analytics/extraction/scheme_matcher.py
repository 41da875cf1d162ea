from abc import ABC, abstractmethod
from typing import Optional

INTEREST_LEVELS = ("mentioned", "inquired", "detailed")


def normalize_interest_level(value) -> str:
    level = str(value or "").strip().lower()
    return level if level in INTEREST_LEVELS else "mentioned"


class SchemeMatcher(ABC):
    """Maps free-text scheme names onto catalog entries."""

    @abstractmethod
    def match(self, candidate: str, schemes: list[dict]) -> Optional[dict]:
        """Return the catalog row for ``candidate`` or None."""

    def match_all(self, interests: list[dict], schemes: list[dict]) -> list[dict]:
        """Resolve extracted interests to ``{scheme_id, scheme_name, interest_level}``.

        Unmatched names are dropped. A scheme named twice keeps its strongest level.
        """
        matched: dict[str, dict] = {}
        for interest in interests or []:
            if not isinstance(interest, dict):
                continue
            name = str(interest.get("schemeName") or interest.get("scheme_name") or "").strip()
            if not name:
                continue
            scheme = self.match(name, schemes)
            if not scheme:
                continue
            scheme_id = str(scheme.get("id") or "")
            level = normalize_interest_level(interest.get("interestLevel") or interest.get("interest_level"))
            existing = matched.get(scheme_id)
            if existing and INTEREST_LEVELS.index(existing["interest_level"]) >= INTEREST_LEVELS.index(level):
                continue
            matched[scheme_id] = {
                "scheme_id": scheme_id,
                "scheme_name": str(scheme.get("scheme_name") or ""),
                "interest_level": level,
            }
        return list(matched.values())


class SubstringSchemeMatcher(SchemeMatcher):
    """Case-insensitive containment in either direction.

    "Mudra" matches "Pradhan Mantri Mudra Yojana" and "PMEGP scheme" matches
    "PMEGP". Short generic names can over-match.
    """

    def match(self, candidate: str, schemes: list[dict]) -> Optional[dict]:
        needle = candidate.strip().lower()
        if not needle:
            return None
        for scheme in schemes:
            name = str(scheme.get("scheme_name") or "").strip().lower()
            if not name:
                continue
            if needle in name or name in needle:
                return scheme
        return None


_default_matcher: SchemeMatcher = SubstringSchemeMatcher()


def get_scheme_matcher() -> SchemeMatcher:
    return _default_matcher


def set_scheme_matcher(matcher: SchemeMatcher):
    global _default_matcher
    _default_matcher = matcher
