"""
Unit tests for rsync output parsing (pullkeeper/backup/parser.py).
"""

from pullkeeper.backup.parser import TransferStats, parse_rsync_output


RSYNC_STATS_OUTPUT = """receiving incremental file list
./
index.html
assets/app.js

Number of files: 42 (reg: 40, dir: 2)
Number of created files: 3
Number of deleted files: 0
Number of regular files transferred: 3
Total file size: 1,024 bytes
Total transferred file size: 512 bytes
Literal data: 512 bytes
Matched data: 0 bytes
File list size: 0
Total bytes sent: 84
Total bytes received: 731

sent 84 bytes  received 731 bytes  1,630.00 bytes/sec
total size is 1,024  speedup is 1.26
"""


class TestParseRsyncOutput:
    """Test extraction of counters from rsync --stats output."""

    def test_parses_stats(self):
        """Thousands separators are removed."""
        stats = parse_rsync_output(RSYNC_STATS_OUTPUT)

        assert stats == TransferStats(file_count=42, total_size=1024, transferred_size=512)

    def test_large_numbers(self):
        output = (
            "Number of files: 1,234,567\n"
            "Total file size: 98,765,432,100 bytes\n"
            "Total transferred file size: 0 bytes\n"
        )

        stats = parse_rsync_output(output)

        assert stats.file_count == 1234567
        assert stats.total_size == 98765432100
        assert stats.transferred_size == 0

    def test_missing_values_are_zero(self):
        stats = parse_rsync_output("Number of files: 7\n")

        assert stats.file_count == 7
        assert stats.total_size == 0
        assert stats.transferred_size == 0

    def test_empty_or_garbage(self):
        assert parse_rsync_output('') == TransferStats()
        assert parse_rsync_output(None) == TransferStats()
        assert parse_rsync_output('rsync: connection unexpectedly closed') == TransferStats()

    def test_total_size_not_confused_with_transferred(self):
        """'Total transferred file size' must not satisfy the total size pattern first."""
        output = "Total transferred file size: 5 bytes\nTotal file size: 9 bytes\n"

        stats = parse_rsync_output(output)

        assert stats.total_size == 9
        assert stats.transferred_size == 5
