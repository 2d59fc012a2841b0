import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

PENDING = 'pending_anomalies'
POSITIONS = 'active_positions'
TRADES = 'trade_history'
LEADS = 'lead_history'

DEFAULT_FILES = {
    PENDING: 'pending-anomalies.json',
    POSITIONS: 'active-positions.json',
    TRADES: 'trade-history.json',
    LEADS: 'lead-history.json',
}


class PersistenceGateway:
    """Durable full-snapshot storage for the engine's collections, one JSON file each."""

    def __init__(self, data_dir: str, files: Optional[Dict[str, str]] = None, metrics=None):
        self.data_dir = Path(data_dir)
        self.files = dict(DEFAULT_FILES)
        if files:
            self.files.update({key: value for key, value in files.items() if value})
        self.metrics = metrics
        self.failures = 0

    def path_for(self, collection: str) -> Path:
        try:
            return self.data_dir / self.files[collection]
        except KeyError as exc:
            raise ValueError(f"Unknown collection '{collection}'") from exc

    def load(self, collection: str) -> List[Dict[str, Any]]:
        path = self.path_for(collection)
        if not path.exists():
            return []
        try:
            data = json.loads(path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as exc:
            logger.error("Could not read %s snapshot from %s: %s", collection, path, exc)
            return []
        if isinstance(data, dict):
            # keyed form, {symbol: record}
            records = []
            for symbol, record in data.items():
                if isinstance(record, dict):
                    records.append({'symbol': symbol, **record})
            return records
        if not isinstance(data, list):
            logger.warning("Ignoring %s snapshot with unexpected shape %s", collection, type(data).__name__)
            return []
        return [record for record in data if isinstance(record, dict)]

    def save(self, collection: str, records: List[Dict[str, Any]]) -> bool:
        path = self.path_for(collection)
        tmp_name = None
        try:
            payload = json.dumps(records, indent=2)
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=str(path.parent))
            with os.fdopen(fd, 'w', encoding='utf-8') as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
            return True
        except (OSError, TypeError, ValueError) as exc:
            self.failures += 1
            if self.metrics is not None:
                self.metrics.record_persistence_failure(collection)
            logger.error("Failed to persist %s snapshot to %s: %s", collection, path, exc)
            return False
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                try:
                    os.unlink(tmp_name)
                except OSError as exc:
                    logger.warning("Could not remove temporary file %s: %s", tmp_name, exc)

    def load_all(self) -> Dict[str, List[Dict[str, Any]]]:
        return {collection: self.load(collection) for collection in self.files}
