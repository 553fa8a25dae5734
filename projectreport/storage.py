from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import Settings, get_settings


_UNSAFE_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')


def exports_root(settings: Settings | None = None) -> Path:
    root = (settings or get_settings()).exports_dir()
    root.mkdir(parents=True, exist_ok=True)
    return root


def events_path(settings: Settings | None = None) -> Path:
    return exports_root(settings) / 'events.jsonl'


def safe_filename(name: str) -> str:
    token = _UNSAFE_FILENAME_CHARS.sub('', str(name or '')).strip().strip('.')
    if not token:
        raise ValueError(f'invalid filename: {name!r}')
    return token


def write_bytes_atomic(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + '.tmp')
    try:
        tmp.write_bytes(content)
        tmp.replace(path)
    finally:
        if tmp.exists():
            tmp.unlink()


def read_json(path: Path) -> dict[str, Any]:
    return json.loads(path.read_text(encoding='utf-8'))


def read_events(settings: Settings | None = None) -> list[dict[str, Any]]:
    path = events_path(settings)
    if not path.exists():
        return []
    rows = []
    for line in path.read_text(encoding='utf-8').splitlines():
        if line.strip():
            rows.append(json.loads(line))
    return rows


def append_event(event: str, *, settings: Settings | None = None, **extra: Any) -> None:
    now = datetime.now(timezone.utc).isoformat()
    row = {
        'ts': now,
        'event': event,
        **extra,
    }
    events_file = events_path(settings)
    events_file.parent.mkdir(parents=True, exist_ok=True)
    with events_file.open('a', encoding='utf-8') as f:
        f.write(json.dumps(row, ensure_ascii=False) + '\n')
