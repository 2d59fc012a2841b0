import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from strategy.models import PendingAnomaly


logger = logging.getLogger(__name__)


class AnomalyJournal:
    """Appends every watchlisted anomaly to a JSONL file per UTC day."""

    def __init__(self, log_dir: str):
        self.log_dir = Path(log_dir or 'logs/anomalies')

    def path_for(self, timestamp: float) -> Path:
        day = datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime('%Y-%m-%d')
        return self.log_dir / f'anomalies-{day}.jsonl'

    def record(self, anomaly: PendingAnomaly, status: str, timestamp: Optional[float] = None):
        timestamp = time.time() if timestamp is None else timestamp
        payload = {
            'timestamp': timestamp,
            'status': status,
            **anomaly.to_dict(),
        }
        self._write_entry(self.path_for(timestamp), payload)

    def read_day(self, timestamp: float) -> List[Dict]:
        path = self.path_for(timestamp)
        if not path.exists():
            return []
        entries = []
        for line in path.read_text(encoding='utf-8').splitlines():
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except ValueError:
                logger.warning("Skipping malformed journal line in %s", path)
        return entries

    def _write_entry(self, path: Path, payload: Dict):
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
        except OSError as exc:
            logger.error("Failed to append anomaly journal: %s", exc)
