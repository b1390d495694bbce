from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from app.schemas import Dataset
from app.services.payload_codec import PayloadFormatError, decode_payload, encode_payload

logger = logging.getLogger(__name__)


class LocalCache:
    """Device-scoped snapshot of the last known dataset under one namespaced key."""

    def __init__(self, directory: str | Path, key: str) -> None:
        self.directory = Path(directory)
        self.key = key

    @property
    def path(self) -> Path:
        return self.directory / f'{self.key}.json'

    def read(self) -> Dataset | None:
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding='utf-8'))
            return decode_payload(raw)
        except (OSError, json.JSONDecodeError, PayloadFormatError):
            logger.warning('Ignoring unreadable local cache at %s', self.path, exc_info=True)
            return None

    def write(self, dataset: Dataset) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        data = json.dumps(encode_payload(dataset), ensure_ascii=False)
        fd, tmp_name = tempfile.mkstemp(prefix=f'.{self.key}.', suffix='.tmp', dir=self.directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as handle:
                handle.write(data)
            os.replace(tmp_name, self.path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
