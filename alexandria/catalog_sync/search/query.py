"""
Query construction for the full-text index.

Text query:
    AND over terms, each term an OR of its prefix match and of the index
    terms within the allowed edit distance:

        ("dune"* OR "dine" OR "june") AND ("herbert"* OR "hebert")

    The FTS table only covers title, authors and collection, so an unscoped
    match means "any of the three fields".

Access filter:
    The requester's own documents, plus the documents of each library
    shared to them, scoped per (owner, library) pair.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from ..model import ShareGrant


def normalize_terms(terms: Iterable[str]) -> list[str]:
    """Lower-case, strip and drop empty terms."""
    normalized = []
    for term in terms:
        value = (term or "").strip().lower()
        if value:
            normalized.append(value)
    return normalized


def quote(term: str) -> str:
    """Quote a term as an FTS5 string."""
    return '"' + term.replace('"', '""') + '"'


def fuzzy_variants(term: str, vocabulary: Sequence[str], fuzziness: int) -> list[str]:
    """Index terms within `fuzziness` edits of `term`, closest first."""
    if fuzziness <= 0 or not vocabulary:
        return []
    matches = process.extract(
        term,
        vocabulary,
        scorer=Levenshtein.distance,
        score_cutoff=fuzziness,
        limit=None,
    )
    return [choice for choice, _distance, _index in matches if choice != term]


def term_clause(term: str, vocabulary: Sequence[str], fuzziness: int) -> str:
    alternatives = [f"{quote(term)}*"]
    alternatives.extend(quote(v) for v in fuzzy_variants(term, vocabulary, fuzziness))
    return "(" + " OR ".join(alternatives) + ")"


def build_text_query(terms: Sequence[str], vocabulary: Sequence[str], fuzziness: int = 1) -> str:
    """Build the FTS5 match expression for normalized terms.

    Example:
        >>> build_text_query(["dune"], ["dune", "dine"], fuzziness=1)
        '("dune"* OR "dine")'
    """
    if not terms:
        raise ValueError("At least one term is required")
    return " AND ".join(term_clause(term, vocabulary, fuzziness) for term in terms)


@dataclass
class AccessFilter:
    """Documents visible to one requester.

    Attributes:
        requester_id: User running the search
        grants: Libraries shared to the requester
    """

    requester_id: str
    grants: list[ShareGrant] = field(default_factory=list)

    def to_sql(self, alias: str = "d") -> tuple[str, list[Any]]:
        """Render as a SQL condition over the documents table."""
        clauses = [f"{alias}.owner_id = ?"]
        params: list[Any] = [self.requester_id]
        for grant in self.grants:
            clauses.append(f"({alias}.owner_id = ? AND {alias}.library_id = ?)")
            params.extend([grant.owner_id, grant.library_id])
        return "(" + " OR ".join(clauses) + ")", params

    def allows(self, owner_id: str, library_id: str) -> bool:
        if owner_id == self.requester_id:
            return True
        return any(
            g.owner_id == owner_id and g.library_id == library_id for g in self.grants
        )
