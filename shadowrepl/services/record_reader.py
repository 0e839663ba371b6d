"""
Reads decoded change records from JSON-lines files, directories or stdin
"""

import json
import os
import sys
from typing import Any, Iterable, Iterator, TextIO

import structlog


RECORD_FILE_EXTENSIONS = ('.json', '.jsonl', '.ndjson')

logger = structlog.get_logger()


def iter_record_files(path: str) -> Iterator[str]:
    """Files holding change records, directories walked in sorted order"""
    if os.path.isdir(path):
        for dirpath, dirnames, filenames in os.walk(path):
            dirnames.sort()
            for filename in sorted(filenames):
                if filename.endswith(RECORD_FILE_EXTENSIONS):
                    yield os.path.join(dirpath, filename)
    else:
        yield path


def iter_lines(stream: TextIO, source: str) -> Iterator[Any]:
    """Parse one JSON document per line; unparseable lines are yielded as text"""
    for line_number, line in enumerate(stream, 1):
        line = line.strip()
        if not line:
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("Unparseable change record", source=source, line=line_number, error=str(e))
            yield line


def read_records(paths: Iterable[str]) -> Iterator[Any]:
    """Yield raw change records from every path; ``-`` reads stdin"""
    for path in paths:
        if path == '-':
            yield from iter_lines(sys.stdin, 'stdin')
            continue
        for file_path in iter_record_files(path):
            logger.info("Reading change records", path=file_path)
            with open(file_path, 'r', encoding='utf-8') as f:
                yield from iter_lines(f, file_path)
