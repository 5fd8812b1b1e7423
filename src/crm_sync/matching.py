"""crm_sync.matching

Identity keys and the SQL predicates built from them.

A row matches an entity when ANY available key matches:

  person:  name | linkedin_url | email
  company: name | linkedin_url
  job:     title AND company_name

Every comparison lower-cases BOTH sides in SQL (LOWER(col) = LOWER(value)),
so case folding is always Postgres's own and agrees with the stored rows
for non-ASCII text.  LinkedIn URLs also drop trailing slashes on both
sides, so 'https://linkedin.com/in/x/' and 'https://LinkedIn.com/in/x' are
the same key.  A job without a company name matches rows whose
company_name is NULL or empty.
"""

from __future__ import annotations

from crm_sync.models import (
    COMPANY,
    JOB,
    PERSON,
    CanonicalEntity,
    Job,
    MatchKeySet,
    Person,
)
from crm_sync.normalize import sql_literal, trim

_NAME_COLUMN = {PERSON: "name", COMPANY: "name", JOB: "title"}

_LINKEDIN_CLAUSE = "LOWER(RTRIM(linkedin_url, '/')) = LOWER(RTRIM(%s, '/'))"
_EMAIL_CLAUSE = "LOWER(email) = LOWER(%s)"


def build_keys(entity: CanonicalEntity) -> MatchKeySet:
    """Derive the match keys for an entity.

    name is always set (possibly ""); other keys only when the source
    field was non-blank.
    """
    if isinstance(entity, Job):
        return MatchKeySet(
            name=trim(entity.title) or "",
            company_name=trim(entity.company_name) or "",
        )
    if isinstance(entity, Person):
        return MatchKeySet(
            name=trim(entity.name) or "",
            linkedin_url=trim(entity.linkedin_url),
            email=trim(entity.email),
        )
    return MatchKeySet(
        name=trim(entity.name) or "",
        linkedin_url=trim(entity.linkedin_url),
    )


def _clauses(keys: MatchKeySet, entity_type: str) -> list[tuple[str, tuple[str, ...]]]:
    """Return (sql_fragment_with_placeholders, values) per available key."""
    name_col = _NAME_COLUMN[entity_type]
    if entity_type == JOB:
        return [(
            f"(LOWER({name_col}) = LOWER(%s)"
            f" AND COALESCE(LOWER(company_name), '') = LOWER(%s))",
            (keys.name, keys.company_name or ""),
        )]
    clauses = [(f"LOWER({name_col}) = LOWER(%s)", (keys.name,))]
    if keys.linkedin_url:
        clauses.append((_LINKEDIN_CLAUSE, (keys.linkedin_url,)))
    if entity_type == PERSON and keys.email:
        clauses.append((_EMAIL_CLAUSE, (keys.email,)))
    return clauses


def match_predicate(keys: MatchKeySet, entity_type: str) -> str:
    """OR of the key comparisons, rendered with inline literals."""
    parts = []
    for fragment, values in _clauses(keys, entity_type):
        pieces = fragment.split("%s")
        rendered = pieces[0]
        for value, tail in zip(values, pieces[1:]):
            rendered += sql_literal(value) + tail
        parts.append(rendered)
    return "(" + " OR ".join(parts) + ")"


def match_predicate_params(
    keys: MatchKeySet,
    entity_type: str,
) -> tuple[str, tuple[str, ...]]:
    """Same predicate with %s placeholders, for bound-parameter execution."""
    fragments: list[str] = []
    params: list[str] = []
    for fragment, values in _clauses(keys, entity_type):
        fragments.append(fragment)
        params.extend(values)
    return "(" + " OR ".join(fragments) + ")", tuple(params)
