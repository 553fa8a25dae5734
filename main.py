from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from projectreport.config import get_settings
from projectreport.report.blocks import block_to_dict
from projectreport.report.exporter import export_report_sync, write_artifact
from projectreport.report.rich_content import parse_narrative
from projectreport.storage import read_events, read_json


def _print_json(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _read_input(path_arg: str) -> tuple[Path | None, str]:
    if path_arg == '-':
        return None, sys.stdin.read()
    path = Path(path_arg).expanduser().resolve()
    if not path.exists() or not path.is_file():
        return path, ''
    return path, path.read_text(encoding='utf-8')


def cmd_export(args: argparse.Namespace) -> int:
    settings = get_settings()
    input_path = Path(args.input).expanduser().resolve()
    if not input_path.exists() or not input_path.is_file():
        _print_json({'status': 'error', 'message': f'Payload not found: {input_path}'})
        return 2
    try:
        payload = read_json(input_path)
    except json.JSONDecodeError as exc:
        _print_json({'status': 'error', 'message': f'Payload is not valid JSON: {exc}'})
        return 2
    if args.format:
        payload['format'] = args.format

    result = export_report_sync(payload, settings=settings)
    if not result.ok:
        _print_json({'status': 'error', **result.summary()})
        return 1

    out_dir = Path(args.output_dir).expanduser() if args.output_dir else settings.exports_dir()
    path = write_artifact(result, out_dir)
    _print_json({'status': 'completed', 'path': str(path), **result.summary()})
    return 0


def cmd_parse(args: argparse.Namespace) -> int:
    path, text = _read_input(args.input)
    if path is not None and not text and not path.exists():
        _print_json({'status': 'error', 'message': f'Input not found: {path}'})
        return 2
    blocks = parse_narrative(text, markup_format='markdown' if args.markdown else 'html')
    _print_json({'blocks': [block_to_dict(block) for block in blocks]})
    return 0


def cmd_events(args: argparse.Namespace) -> int:
    rows = read_events(get_settings())
    limit = max(0, int(args.limit))
    _print_json({'events': rows[-limit:] if limit else []})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Project report export CLI')
    sub = parser.add_subparsers(dest='command', required=True)

    export = sub.add_parser('export', help='Render a report payload to PDF or DOCX')
    export.add_argument('--input', required=True, help='Path to the JSON export request')
    export.add_argument('--output-dir', required=False, help='Directory for the artifact (default: data dir)')
    export.add_argument('--format', choices=['pdf', 'docx'], required=False, help='Override the payload format')
    export.set_defaults(func=cmd_export)

    parse = sub.add_parser('parse', help='Parse a rich-text fragment into blocks')
    parse.add_argument('--input', required=True, help='Path to an HTML or Markdown file, or - for stdin')
    parse.add_argument('--markdown', action='store_true', help='Treat the input as Markdown')
    parse.set_defaults(func=cmd_parse)

    events = sub.add_parser('events', help='Show recent export events')
    events.add_argument('--limit', type=int, default=20)
    events.set_defaults(func=cmd_events)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(get_settings().log_level).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    return int(args.func(args))


if __name__ == '__main__':
    raise SystemExit(main())
