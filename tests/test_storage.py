from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from projectreport.storage import append_event, read_events, read_json, safe_filename, write_bytes_atomic

from support import make_settings


class StorageTests(unittest.TestCase):
    def test_safe_filename(self) -> None:
        self.assertEqual(safe_filename('Report: "A/B"?.pdf'), 'Report AB.pdf')
        with self.assertRaises(ValueError):
            safe_filename(' ... ')

    def test_write_bytes_atomic_leaves_no_temp_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            target = Path(tmp) / 'nested' / 'report.pdf'
            write_bytes_atomic(target, b'%PDF-1.4')
            self.assertEqual(target.read_bytes(), b'%PDF-1.4')
            self.assertEqual([p.name for p in target.parent.iterdir()], ['report.pdf'])

    def test_read_json(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / 'payload.json'
            path.write_text('{"format": "docx", "name": "Escola Ribeirinha"}', encoding='utf-8')
            self.assertEqual(read_json(path), {'format': 'docx', 'name': 'Escola Ribeirinha'})

    def test_events_round_trip(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            settings = make_settings(Path(tmp))
            self.assertEqual(read_events(settings), [])
            append_event('export_completed', settings=settings, kind='team', bytes=10)
            append_event('export_failed', settings=settings, error='boom')
            events = read_events(settings)
            self.assertEqual([row['event'] for row in events], ['export_completed', 'export_failed'])
            self.assertEqual(events[0]['kind'], 'team')
            self.assertIn('ts', events[1])
            self.assertTrue((settings.exports_dir() / 'events.jsonl').is_file())
