#!/usr/bin/env python3
"""
Verify that a sorted BAM matches the requested sort order.

This script checks that:
1. The @HD header declares the expected SO (sort order) tag
2. Records appear in coordinate or query-name order
"""

#=============================================================================
# Imports
#=============================================================================

# Standard library imports
import argparse
import logging
import re
import sys
from datetime import UTC, datetime
from pathlib import Path

# Third-party imports
import pysam

#=============================================================================
# Logging
#=============================================================================

class UTCFormatter(logging.Formatter):
    """Custom logging formatter that displays timestamps in UTC."""

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        """Format log timestamps in UTC timezone."""
        dt = datetime.fromtimestamp(record.created, UTC)
        return dt.strftime("%Y-%m-%d %H:%M:%S UTC")

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger()
handler = logging.StreamHandler()
formatter = UTCFormatter("[%(asctime)s] %(message)s")
handler.setFormatter(formatter)
logger.handlers.clear()
logger.addHandler(handler)

#=============================================================================
# Sort keys
#=============================================================================

def coordinate_key(read: pysam.AlignedSegment) -> tuple[int, int]:
    """
    Sort key for coordinate order; unplaced reads sort last.
    Args:
        read (pysam.AlignedSegment): Alignment record
    Returns:
        tuple[int, int]: (reference index, 0-based start)
    """
    if read.reference_id < 0:
        return (sys.maxsize, sys.maxsize)
    return (read.reference_id, read.reference_start)

def queryname_key(read: pysam.AlignedSegment) -> tuple:
    """
    Sort key for query-name order, comparing digit runs numerically as
    samtools sort -n does (read2 < read10).
    Args:
        read (pysam.AlignedSegment): Alignment record
    Returns:
        tuple: Alternating text and integer name components
    """
    parts = re.split(r"(\d+)", read.query_name or "")
    return tuple(int(part) if i % 2 else part for i, part in enumerate(parts))

SORT_KEYS = {
    "coordinate": coordinate_key,
    "queryname": queryname_key,
}

#=============================================================================
# Verification
#=============================================================================

def read_header_sort_order(bam_path: Path) -> str | None:
    """
    Read the SO tag from the @HD header line.
    Args:
        bam_path (Path): Path to BAM file
    Returns:
        str | None: Declared sort order, or None if absent
    """
    with pysam.AlignmentFile(str(bam_path), "rb", check_sq=False) as bam:
        return bam.header.to_dict().get("HD", {}).get("SO")

def find_first_unsorted_record(
    bam_path: Path,
    sort_order: str,
    max_records: int | None = None,
) -> int | None:
    """
    Find the first record that is out of order.
    Args:
        bam_path (Path): Path to BAM file
        sort_order (str): 'coordinate' or 'queryname'
        max_records (int | None): Stop after this many records
    Returns:
        int | None: 0-based index of the first out-of-order record, or None
    """
    key_func = SORT_KEYS[sort_order]
    previous = None
    with pysam.AlignmentFile(str(bam_path), "rb", check_sq=False) as bam:
        for index, read in enumerate(bam.fetch(until_eof=True)):
            if max_records is not None and index >= max_records:
                break
            key = key_func(read)
            if previous is not None and key < previous:
                return index
            previous = key
    return None

def verify_sorted_bam(
    bam_path: Path,
    sort_order: str,
    check_records: bool = True,
    max_records: int | None = None,
) -> list[str]:
    """
    Check a BAM's header and record order against a sort order.
    Args:
        bam_path (Path): Path to BAM file
        sort_order (str): 'coordinate' or 'queryname'
        check_records (bool): Whether to scan records as well as the header
        max_records (int | None): Record scan limit
    Returns:
        list[str]: Problems found (empty if the BAM is sorted)
    """
    if sort_order not in SORT_KEYS:
        raise ValueError(f"Invalid sort order: {sort_order}")
    if not bam_path.is_file():
        raise FileNotFoundError(f"BAM file not found: {bam_path}")
    problems = []
    declared = read_header_sort_order(bam_path)
    if declared != sort_order:
        problems.append(f"Header sort order is {declared!r}, expected {sort_order!r}")
    if check_records:
        index = find_first_unsorted_record(bam_path, sort_order, max_records)
        if index is not None:
            problems.append(f"Record {index} is out of {sort_order} order")
    return problems

#=============================================================================
# Main
#=============================================================================

def parse_arguments() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("bam", type=Path, help="Sorted BAM file to verify")
    parser.add_argument(
        "--sort-order",
        choices=sorted(SORT_KEYS),
        default="coordinate",
        help="Expected sort order (default: coordinate)",
    )
    parser.add_argument(
        "--header-only",
        action="store_true",
        help="Only check the @HD SO tag, not record order",
    )
    parser.add_argument(
        "--max-records",
        type=int,
        default=None,
        help="Stop scanning records after this many (default: scan all)",
    )
    return parser.parse_args()

def main() -> None:
    """Verify a sorted BAM and raise an error if it is not sorted."""
    args = parse_arguments()
    logger.info(f"Verifying {args.bam} ({args.sort_order} order)")
    problems = verify_sorted_bam(
        args.bam,
        args.sort_order,
        check_records=not args.header_only,
        max_records=args.max_records,
    )
    if problems:
        for problem in problems:
            logger.error(problem)
        raise ValueError(f"{args.bam} is not {args.sort_order}-sorted")
    logger.info(f"OK: {args.bam} is {args.sort_order}-sorted")

if __name__ == "__main__":
    main()
