"""Fetch planning: which vault items a BitwardenSecret needs."""

from typing import Optional, Set

from bitwarden_operator.schemas import BitwardenSecretSpec, ContentEntry, MissingBitwardenId


def resolve_bitwarden_id(entry: ContentEntry, spec: BitwardenSecretSpec) -> Optional[str]:
    """The entry's own item id, falling back to the spec-level default."""
    return entry.bitwarden_id or spec.bitwarden_id


def plan_fetch(spec: BitwardenSecretSpec) -> Set[str]:
    """
    Compute the deduplicated set of item ids to fetch.

    Entries carrying a literal ``kubernetesSecretValue`` never need a fetch.
    Callers must not depend on iteration order of the result.

    Raises:
        MissingBitwardenId: If an entry has neither an item id (own or
            default) nor a literal value.
    """
    to_fetch: Set[str] = set()
    for entry in spec.content:
        bitwarden_id = resolve_bitwarden_id(entry, spec)
        if entry.kubernetes_secret_value is not None:
            continue
        if bitwarden_id is None:
            raise MissingBitwardenId(entry.kubernetes_secret_key)
        to_fetch.add(bitwarden_id)
    return to_fetch
