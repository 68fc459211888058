"""Phase labels and the canonical <-> legacy alias table."""

from __future__ import annotations

from typing import Dict, Iterable, Tuple

DISCUSSION = "hivemoot:discussion"
VOTING = "hivemoot:voting"
EXTENDED_VOTING = "hivemoot:extended-voting"
READY_TO_IMPLEMENT = "hivemoot:ready-to-implement"
REJECTED = "hivemoot:rejected"
NEEDS_HUMAN = "hivemoot:needs-human"
INCONCLUSIVE = "hivemoot:inconclusive"
IMPLEMENTATION = "implementation"

LABEL_ALIASES: Dict[str, Tuple[str, ...]] = {
    DISCUSSION: ("phase:discussion",),
    VOTING: ("phase:voting",),
    EXTENDED_VOTING: ("inconclusive",),
    READY_TO_IMPLEMENT: ("phase:ready-to-implement",),
    REJECTED: ("rejected",),
    NEEDS_HUMAN: ("blocked:human-help-needed",),
    INCONCLUSIVE: (),
}

_LEGACY_TO_CANONICAL: Dict[str, str] = {
    legacy: canonical
    for canonical, legacies in LABEL_ALIASES.items()
    for legacy in legacies
}


def label_aliases(canonical: str) -> Tuple[str, ...]:
    return LABEL_ALIASES.get(canonical, ())


def label_query_names(canonical: str) -> Tuple[str, ...]:
    """Every spelling to list issues by: canonical first, then legacy."""
    return (canonical,) + label_aliases(canonical)


def canonical_label(name: str) -> str:
    if name in LABEL_ALIASES:
        return name
    return _LEGACY_TO_CANONICAL.get(name, name)


def is_label_match(actual: str, canonical: str) -> bool:
    if not actual:
        return False
    return canonical_label(actual) == canonical_label(canonical)


def has_label(names: Iterable[str], canonical: str) -> bool:
    return any(is_label_match(name, canonical) for name in names)
