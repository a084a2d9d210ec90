"""
Clinical Data Store

In-memory key-value storage of ClinicalResource by (resourceType, id).
Not durable across restarts; a persistent backend would replace this class
behind the same put/get/query surface.

Query ordering is stable: lastUpdated descending, then id ascending, so
pagination never depends on dict iteration order.
"""
from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from app.utils import get_logger
from app.utils.exceptions import ResourceNotFoundError
from .resources import ClinicalResource

logger = get_logger(__name__)

ResourcePredicate = Callable[[ClinicalResource], bool]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _sort_key(resource: ClinicalResource):
    stamp = resource.last_updated or _EPOCH
    return (-stamp.timestamp(), resource.id)


class ClinicalDataStore:
    """
    Owns every ClinicalResource instance.

    ``lock`` is re-entrant and exposed so the resource service can hold it
    across a read-modify-write.
    """

    def __init__(self):
        self._resources: Dict[str, Dict[str, ClinicalResource]] = defaultdict(dict)
        self._open = False
        self.lock = threading.RLock()

    # ── Lifecycle ────────────────────────────────────────────────────────
    def init(self) -> None:
        with self.lock:
            self._resources.clear()
            self._open = True
        logger.info("ClinicalDataStore initialised")

    def shutdown(self) -> None:
        with self.lock:
            counts = self.counts()
            self._resources.clear()
            self._open = False
        logger.info(f"ClinicalDataStore shut down (dropped {sum(counts.values())} resources)")

    @property
    def is_open(self) -> bool:
        return self._open

    # ── Operations ───────────────────────────────────────────────────────
    def put(self, resource_type: str, resource_id: str, resource: ClinicalResource) -> ClinicalResource:
        """Insert or replace. Always succeeds."""
        with self.lock:
            self._resources[resource_type][resource_id] = resource
        return resource

    def get(self, resource_type: str, resource_id: str) -> ClinicalResource:
        """
        Return the stored record, tombstones included.

        Raises:
            ResourceNotFoundError: nothing was ever stored under this key.
        """
        with self.lock:
            resource = self._resources.get(resource_type, {}).get(resource_id)
        if resource is None:
            raise ResourceNotFoundError(resource_type, resource_id)
        return resource

    def contains(self, resource_type: str, resource_id: str, include_deleted: bool = False) -> bool:
        with self.lock:
            resource = self._resources.get(resource_type, {}).get(resource_id)
        if resource is None:
            return False
        return include_deleted or not resource.deleted

    def query(
        self,
        resource_type: str,
        predicate: Optional[ResourcePredicate] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[List[ClinicalResource], int]:
        """
        Linear-scan filter over live (non-deleted) resources.

        Returns:
            (page of matches, total number of matches before paging)
        """
        with self.lock:
            candidates = list(self._resources.get(resource_type, {}).values())

        matches = [
            r for r in candidates
            if not r.deleted and (predicate is None or predicate(r))
        ]
        matches.sort(key=_sort_key)
        total = len(matches)

        offset = max(offset, 0)
        end = None if limit is None else offset + max(limit, 0)
        return matches[offset:end], total

    def counts(self) -> Dict[str, int]:
        """Live resources per type."""
        with self.lock:
            return {
                rtype: sum(1 for r in bucket.values() if not r.deleted)
                for rtype, bucket in self._resources.items()
            }
