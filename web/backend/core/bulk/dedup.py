"""Process-lifetime index of natural keys already seen by handlers."""
import logging
from collections import OrderedDict
from typing import Hashable, Optional

logger = logging.getLogger(__name__)


class DeduplicationIndex:
    """Remembers keys (e.g. emails) across actions for the life of the process.

    Not persisted and not scoped per action. Each key remembers the owner
    that recorded it first (for the processor, the ``(action_id, entity_id)``
    pair), so the same work item asking again after a retry is not its own
    duplicate. With ``max_keys`` set, the oldest keys are evicted once the
    bound is reached; with ``None`` the index grows without limit.
    Concurrent callers are not synchronized, so a race can let a duplicate
    through; it never reports a first sighting as a duplicate.
    """

    def __init__(self, max_keys: Optional[int] = None):
        if max_keys is not None and max_keys < 1:
            raise ValueError("max_keys must be positive or None")
        self._max_keys = max_keys
        self._keys: "OrderedDict[str, Optional[Hashable]]" = OrderedDict()
        self._evicted = 0

    def is_duplicate(self, key: str, owner: Optional[Hashable] = None) -> bool:
        """Return True if ``key`` was recorded by someone else; otherwise record it.

        Without an owner every repeat sighting is a duplicate.
        """
        if key in self._keys:
            first = self._keys[key]
            return owner is None or first != owner
        self._keys[key] = owner
        if self._max_keys is not None and len(self._keys) > self._max_keys:
            self._keys.popitem(last=False)
            self._evicted += 1
            if self._evicted % 10000 == 1:
                logger.debug("Dedup index at bound %d, evicting oldest keys", self._max_keys)
        return False

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def clear(self) -> None:
        self._keys.clear()
        self._evicted = 0
