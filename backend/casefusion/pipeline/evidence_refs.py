"""Maps the "Evidence N" labels used in prompts back to evidence ids."""
import logging
import re
from typing import Iterable, List, Sequence

from casefusion.models.digest import EvidenceDigest

logger = logging.getLogger(__name__)

_LABEL_RE = re.compile(r"^\s*evidence\s*#?\s*(\d+)\s*$", re.IGNORECASE)


def resolve_evidence_refs(refs: Iterable[str], digests: Sequence[EvidenceDigest]) -> List[str]:
    """Resolve model references to evidence ids, dropping unknown ones.

    A reference may be a prompt label ("Evidence 2") or an id that already
    belongs to the case. Order is kept and duplicates are removed.
    """
    ids = [d.evidence.id for d in digests]
    known = set(ids)
    resolved: List[str] = []
    for ref in refs or []:
        ref = str(ref)
        match = _LABEL_RE.match(ref)
        if match:
            index = int(match.group(1)) - 1
            evidence_id = ids[index] if 0 <= index < len(ids) else None
        else:
            evidence_id = ref if ref in known else None
        if evidence_id is None:
            logger.debug(f"Ignoring unknown evidence reference: {ref!r}")
            continue
        if evidence_id not in resolved:
            resolved.append(evidence_id)
    return resolved
