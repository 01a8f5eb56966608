import json
import logging
from typing import Optional

from litgrid.grid.state import Snapshot
from litgrid.utils.io import KeyValueStore, QuotaExceededError

logger = logging.getLogger(__name__)

STORAGE_KEY = "litgrid_data"


# Reads and writes whole-grid snapshots; never mutates the grid itself
class PersistenceAdapter:

    def __init__(self, store: KeyValueStore, key: str = STORAGE_KEY):
        self.store = store
        self.key = key

    # Missing or unreadable data both mean "no prior state"
    def load(self) -> Optional[Snapshot]:

        try:
            raw = self.store.get_item(self.key)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to load saved data: %s", exc)
            return None

        if raw is None:
            return None

        try:
            return Snapshot.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Ignoring corrupt saved data under %r: %s", self.key, exc)
            return None

    # Returns False when the store is full; the caller keeps its in-memory state
    def save(self, snapshot: Snapshot) -> bool:

        blob = json.dumps(snapshot.to_dict(), ensure_ascii=False)

        try:
            self.store.set_item(self.key, blob)
        except QuotaExceededError as exc:
            logger.warning("Snapshot not saved: %s", exc)
            return False

        return True

    def clear(self):
        self.store.remove_item(self.key)
