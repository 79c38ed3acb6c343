from dataclasses import dataclass, field
from typing import List

from casefusion.models.schemas import EvidenceItem


@dataclass
class EvidenceDigest:
    """An evidence item paired with the summary that is fed to fusion.

    ``fallback`` marks summaries substituted after processing and the retry
    both failed.
    """
    evidence: EvidenceItem
    summary: str
    tags: List[str] = field(default_factory=list)
    fallback: bool = False
