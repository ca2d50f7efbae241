"""
In-memory subscription registry.

Maps relay-minted subscription ids to the client connection and the original
request that created them. This is the source of truth for what must be
re-subscribed after the upstream connection comes back.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Subscription:
    id: int
    method: str
    params: List[Any]
    client: Any
    client_request_id: Any = None  # id the client used on its subscribe request
    upstream_id: Any = None  # subscription id assigned by the upstream, changes on every replay
    created_at: datetime = field(default_factory=datetime.utcnow)

    def request(self) -> dict:
        """The upstream request for this entry, tagged with its registry id."""
        return {
            "jsonrpc": "2.0",
            "id": self.id,
            "method": self.method,
            "params": self.params,
        }


class SubscriptionRegistry:
    def __init__(self):
        self._entries: Dict[int, Subscription] = {}
        self._next_id = 1

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, sub_id) -> bool:
        return sub_id in self._entries

    def register(self, method: str, params: List[Any], client: Any, client_request_id: Any = None) -> int:
        """
        Store a new subscription and return its id.

        Ids are monotonic and never reused for the lifetime of the registry.
        Identical method/params from different clients are separate entries.
        """
        sub_id = self.mint_id()
        self._entries[sub_id] = Subscription(
            id=sub_id,
            method=method,
            params=list(params or []),
            client=client,
            client_request_id=client_request_id,
        )
        logger.debug(f"Registered subscription {sub_id} ({method})")
        return sub_id

    def mint_id(self) -> int:
        """Take the next id without registering anything; used to tag forwarded requests."""
        sub_id = self._next_id
        self._next_id += 1
        return sub_id

    def remove(self, sub_id: int) -> None:
        self._entries.pop(sub_id, None)

    def remove_all_for(self, client: Any) -> List[int]:
        """Remove every entry owned by client; returns the removed ids."""
        removed = [sub_id for sub_id, sub in self._entries.items() if sub.client is client]
        for sub_id in removed:
            del self._entries[sub_id]
        if removed:
            logger.debug(f"Removed {len(removed)} subscriptions for closed client")
        return removed

    def lookup(self, sub_id: Any) -> Optional[Subscription]:
        try:
            return self._entries.get(sub_id)
        except TypeError:
            # unhashable id from a malformed reply
            return None

    def entries(self) -> Iterator[Subscription]:
        """Iterate over a snapshot of the entries in registration order."""
        return iter(list(self._entries.values()))

    def clients(self) -> List[Any]:
        """Distinct owning clients, in registration order."""
        seen: List[Any] = []
        for sub in self._entries.values():
            if not any(sub.client is c for c in seen):
                seen.append(sub.client)
        return seen

    def set_upstream_id(self, sub_id: int, upstream_id: Any) -> None:
        sub = self._entries.get(sub_id)
        if sub is not None:
            sub.upstream_id = upstream_id

    def find_by_upstream_id(self, client: Any, upstream_id: Any) -> Optional[Subscription]:
        """Find the entry owned by client whose upstream subscription id matches."""
        if upstream_id is None:
            return None
        for sub in self._entries.values():
            if sub.client is client and sub.upstream_id == upstream_id:
                return sub
        return None
