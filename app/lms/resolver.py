"""Turns a human-supplied identifier into exactly one remote resource.

Strategy, identical for every resource kind:

1. purely numeric identifiers are tried as a direct get-by-id first and
   trusted as-is when the platform returns a record;
2. otherwise a free-text search bounded to `page_size` records;
3. if that yields nothing (or the platform rejects free-text search for
   the kind), an unfiltered listing filtered client-side;
4. candidates are ranked by `MatchTier` and the first candidate of the
   best tier wins.
"""
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

from app.core.observability import TraceManager
from app.lms.errors import AmbiguousMatch, RemoteError, ResourceNotFound
from app.lms.gateway import RemoteGateway
from app.lms.records import (
    MatchTier,
    ResolvedResource,
    ResourceKind,
    record_codes,
    record_description,
    record_id,
    record_name,
)

logger = logging.getLogger(__name__)

NUMERIC_ID = re.compile(r"[0-9]+")
MIN_PAGE_SIZE = 50


def rank(kind: ResourceKind, identifier: str, record: Mapping[str, Any]) -> MatchTier:
    """Tier at which `record` matches `identifier`; FALLBACK when none does."""
    needle = identifier.strip().casefold()
    name = (record_name(kind, record) or "").casefold()
    resource_id = (record_id(kind, record) or "").casefold()

    if needle == resource_id or (name and needle == name):
        return MatchTier.EXACT
    if any(needle == code.casefold() for code in record_codes(kind, record)):
        return MatchTier.CODE
    if name.startswith(needle):
        return MatchTier.PREFIX
    if needle in name:
        return MatchTier.CONTAINS
    return MatchTier.FALLBACK


def pick_best(
    kind: ResourceKind,
    identifier: str,
    candidates: Sequence[Mapping[str, Any]],
    allow_fallback: bool = True,
) -> Optional[ResolvedResource]:
    """
    Deterministic tie-break: lowest tier wins, candidate order breaks ties.
    Returns None for an empty candidate set, or when only the fallback
    tier applies and it is disabled.
    """
    best = None
    best_tier = None
    for record in candidates:
        if record_id(kind, record) is None:
            continue
        tier = rank(kind, identifier, record)
        if best_tier is None or tier < best_tier:
            best, best_tier = record, tier
            if tier is MatchTier.EXACT:
                break

    if best is None:
        return None
    if best_tier is MatchTier.FALLBACK and not allow_fallback:
        return None
    return ResolvedResource.from_record(kind, best, best_tier)


class ResourceResolver:
    def __init__(self, gateway: RemoteGateway, page_size: int = MIN_PAGE_SIZE, allow_fallback: bool = True):
        self.gateway = gateway
        self.page_size = max(page_size, MIN_PAGE_SIZE)
        self.allow_fallback = allow_fallback

    @TraceManager.span("resolve_resource", record_args=("kind", "identifier"))
    async def resolve(self, kind: ResourceKind, identifier: str) -> ResolvedResource:
        """
        Resolve `identifier` to one resource of `kind`.

        Raises:
            ValueError: blank identifier
            ResourceNotFound: no candidate matched
            RemoteError: both the search and the fallback listing failed
        """
        identifier = (identifier or "").strip()
        if not identifier:
            raise ValueError(f"{kind.label} identifier must not be blank")

        if NUMERIC_ID.fullmatch(identifier):
            direct = await self._direct_lookup(kind, identifier)
            if direct is not None:
                logger.info(f"Resolved {kind.value} '{identifier}' by direct id lookup")
                return direct

        candidates = await self._candidates(kind, identifier)
        resolved = pick_best(kind, identifier, candidates, self.allow_fallback)
        if resolved is None:
            logger.info(f"No {kind.value} matched '{identifier}' ({len(candidates)} candidate(s))")
            raise ResourceNotFound(kind, identifier)

        if resolved.annotation:
            TraceManager.warning(
                f"Low-confidence {kind.value} match",
                identifier=identifier,
                resolved_id=resolved.id,
                tier=resolved.tier.name,
            )
        logger.info(f"Resolved {kind.value} '{identifier}' -> {resolved.id} ({resolved.tier.name})")
        return resolved

    async def resolve_confident(self, kind: ResourceKind, identifier: str) -> ResolvedResource:
        """Like `resolve`, but raises AmbiguousMatch for contains/fallback matches."""
        resolved = await self.resolve(kind, identifier)
        if resolved.annotation:
            raise AmbiguousMatch(kind, identifier.strip(), resolved)
        return resolved

    async def search(self, kind: ResourceKind, text: str, limit: int = 10) -> List[ResolvedResource]:
        """Ranked candidates for display; never raises ResourceNotFound."""
        text = (text or "").strip()
        if not text:
            return []
        candidates = await self._candidates(kind, text)
        ranked = []
        for position, record in enumerate(candidates):
            if record_id(kind, record) is None:
                continue
            ranked.append((rank(kind, text, record), position, record))
        ranked.sort(key=lambda entry: (entry[0], entry[1]))
        return [ResolvedResource.from_record(kind, record, tier) for tier, _, record in ranked[:limit]]

    async def _direct_lookup(self, kind: ResourceKind, identifier: str) -> Optional[ResolvedResource]:
        result = await self.gateway.get(kind.schema.item_path(identifier))
        if isinstance(result, RemoteError):
            logger.info(f"Direct {kind.value} lookup for id {identifier} failed ({result.status_code}), searching instead")
            return None

        data = result.get("data") if isinstance(result, dict) else None
        if not isinstance(data, dict) or not data:
            return None

        record: Dict[str, Any] = dict(data)
        if record_id(kind, record) is None:
            record[kind.schema.id_fields[0]] = identifier
        return ResolvedResource.from_record(kind, record, MatchTier.DIRECT)

    async def _candidates(self, kind: ResourceKind, identifier: str) -> List[Dict[str, Any]]:
        path = kind.schema.list_path
        searched = await self.gateway.list_items(path, params={"search_text": identifier, "page_size": self.page_size})
        if not isinstance(searched, RemoteError) and searched:
            return searched

        if isinstance(searched, RemoteError):
            logger.info(f"Free-text {kind.value} search rejected ({searched.status_code}), scanning full listing")

        listed = await self.gateway.list_items(path, params={"page_size": self.page_size})
        if isinstance(listed, RemoteError):
            if isinstance(searched, RemoteError):
                raise listed
            return []

        needle = identifier.casefold()
        return [record for record in listed if needle in _haystack(kind, record)]


def _haystack(kind: ResourceKind, record: Mapping[str, Any]) -> str:
    """Name, description and code fields, casefolded."""
    parts = [record_name(kind, record) or "", record_description(kind, record), *record_codes(kind, record)]
    return " ".join(parts).casefold()
