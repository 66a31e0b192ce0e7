"""
Bulk-save boundary for run results.

Results are converted to plain documents here and handed to a store in
chunks; a failing chunk is recorded and the remaining chunks still go out.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

import aiohttp

from school_proximity.config import MAX_CHUNK_SIZE, MIN_CHUNK_SIZE
from school_proximity.models import ProximityResult
from school_proximity.providers.base import ProviderError
from school_proximity.providers.utils import http_post_json

logger = logging.getLogger(__name__)


class ResultStore(Protocol):
    async def save_chunk(self, documents: List[Dict[str, Any]]) -> None:
        """Persist one chunk; raise on failure."""
        ...


class HttpResultStore:
    """POSTs ``{"documents": [...]}`` to a bulk endpoint."""

    def __init__(self, session: aiohttp.ClientSession, url: str, timeout: float = 30.0):
        if not url:
            raise ValueError("Result store URL is required")
        self.session = session
        self.url = url
        self.timeout = timeout

    async def save_chunk(self, documents: List[Dict[str, Any]]) -> None:
        await http_post_json(self.session, self.url, json_data={"documents": documents}, timeout=self.timeout)


@dataclass
class ChunkOutcome:
    index: int
    size: int
    success: bool
    error: Optional[str] = None


@dataclass
class SaveReport:
    saved: int = 0
    failed: int = 0
    chunks: List[ChunkOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "saved": self.saved,
            "failed": self.failed,
            "chunks": [c.__dict__ for c in self.chunks],
        }


async def save_results(store: ResultStore, results: Sequence[ProximityResult],
                       chunk_size: int = MAX_CHUNK_SIZE) -> SaveReport:
    """Save results in chunks of ``chunk_size`` (20..50) and report per chunk."""
    if not MIN_CHUNK_SIZE <= chunk_size <= MAX_CHUNK_SIZE:
        raise ValueError(f"chunk_size must be between {MIN_CHUNK_SIZE} and {MAX_CHUNK_SIZE}")

    report = SaveReport()
    documents = [r.to_document() for r in results]
    for index, start in enumerate(range(0, len(documents), chunk_size)):
        chunk = documents[start:start + chunk_size]
        try:
            await store.save_chunk(chunk)
        except ProviderError as e:
            logger.error("Saving chunk %d (%d documents) failed: %s", index, len(chunk), e)
            report.failed += len(chunk)
            report.chunks.append(ChunkOutcome(index, len(chunk), False, str(e)))
            continue
        report.saved += len(chunk)
        report.chunks.append(ChunkOutcome(index, len(chunk), True))

    logger.info("Saved %d/%d results in %d chunks", report.saved, len(documents), len(report.chunks))
    return report
