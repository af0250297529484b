import re
from dataclasses import dataclass


@dataclass(frozen=True)
class TransferStats:
    file_count: int = 0
    total_size: int = 0
    transferred_size: int = 0


FILE_COUNT_RE = re.compile(r'Number of files: ([\d,]+)')
TOTAL_SIZE_RE = re.compile(r'Total file size: ([\d,]+)')
TRANSFERRED_SIZE_RE = re.compile(r'Total transferred file size: ([\d,]+)')


def _parse_number(output: str, regex) -> int:
    match = regex.search(output or '')
    if not match:
        return 0
    try:
        return int(match.group(1).replace(',', ''))
    except ValueError:
        return 0


def parse_rsync_output(output: str) -> TransferStats:
    """Extract file count and byte totals from `rsync --stats` output; missing values are 0."""
    return TransferStats(
        file_count=_parse_number(output, FILE_COUNT_RE),
        total_size=_parse_number(output, TOTAL_SIZE_RE),
        transferred_size=_parse_number(output, TRANSFERRED_SIZE_RE),
    )
