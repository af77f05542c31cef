#!/usr/bin/env python3
"""
Bulk Bundle Allocator
Turns pasted or uploaded phone number lists into provisioning upload templates:
- Validates and auto-fixes numbers (missing leading zero, punctuation)
- Removes or flags duplicate entries
- Splits orders above the per-file capacity (1.5 TB) into several templates
- Zips split runs into one download
"""

import argparse
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from bundle_entries import (
    DEFAULT_CAPACITY_GB,
    Batch,
    IdentityMode,
    PhoneEntry,
    build_entries,
    format_data_total,
    pack_batches,
    parse_input_text,
    resolve_duplicates,
    split_problematic,
)
from upload_template import (
    DEFAULT_FILE_PREFIX,
    ExportFile,
    TemplateEncodingError,
    bundle_files,
    encode_batches,
)
from excel_reader import read_workbook_pairs

logger = logging.getLogger(__name__)


@dataclass
class RunStats:
    """Aggregate counts for one processing run"""
    kept: int = 0
    valid: int = 0
    invalid: int = 0
    duplicate: int = 0
    fixed: int = 0
    removed_duplicates: int = 0
    skipped: int = 0
    total_gb: Decimal = Decimal("0")

    @classmethod
    def from_entries(cls, entries: Sequence[PhoneEntry], removed_duplicates: int = 0,
                     skipped: int = 0) -> "RunStats":
        return cls(
            kept=len(entries),
            valid=sum(1 for entry in entries if entry.is_valid and not entry.is_duplicate),
            invalid=sum(1 for entry in entries if not entry.is_valid),
            duplicate=sum(1 for entry in entries if entry.is_duplicate),
            fixed=sum(1 for entry in entries if entry.was_fixed),
            removed_duplicates=removed_duplicates,
            skipped=skipped,
            total_gb=sum((entry.allocation_gb for entry in entries), Decimal("0")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kept": self.kept,
            "valid": self.valid,
            "invalid": self.invalid,
            "duplicate": self.duplicate,
            "fixed": self.fixed,
            "removedDuplicates": self.removed_duplicates,
            "skipped": self.skipped,
            "totalGB": float(self.total_gb),
            "totalDisplay": format_data_total(self.total_gb),
        }

    def summary_message(self) -> str:
        """One consolidated summary for the operator"""
        lines = [f"Total processed: {self.kept} entries",
                 f"Valid: {self.valid}",
                 f"Invalid: {self.invalid}",
                 f"Duplicates: {self.duplicate}"]
        if self.fixed:
            lines.append(f"Auto-fixed: {self.fixed}")
        if self.removed_duplicates:
            lines.append(f"Removed duplicates: {self.removed_duplicates}")
        if self.skipped:
            lines.append(f"Skipped lines: {self.skipped}")
        lines.append(f"Total Data: {format_data_total(self.total_gb)}")
        return "\n".join(lines)


@dataclass
class ProcessedInput:
    entries: List[PhoneEntry]
    stats: RunStats


@dataclass
class ExportResult:
    """Outcome of an export run: the files, or the reason there are none"""
    stats: RunStats
    files: List[ExportFile] = field(default_factory=list)
    download: Optional[ExportFile] = None
    batches: List[Batch] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.download is not None

    @property
    def was_split(self) -> bool:
        return len(self.files) > 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.ok,
            "error": self.error,
            "stats": self.stats.to_dict(),
            "files": [export_file.name for export_file in self.files],
            "download": self.download.name if self.download else None,
            "batchTotalsGB": [float(batch.total_gb) for batch in self.batches],
        }


class BundleAllocator:
    """Validation, duplicate handling, batching and template export for one run"""

    def __init__(
        self,
        capacity_gb: Decimal = DEFAULT_CAPACITY_GB,
        identity_mode: IdentityMode = IdentityMode.NUMBER_AND_ALLOCATION,
        sort_before_packing: bool = True,
        use_formulas: bool = True,
        file_prefix: str = DEFAULT_FILE_PREFIX,
    ):
        self.capacity_gb = Decimal(capacity_gb)
        if self.capacity_gb <= 0:
            raise ValueError(f"Capacity must be positive, got {capacity_gb}")
        self.identity_mode = IdentityMode.from_value(identity_mode)
        self.sort_before_packing = sort_before_packing
        self.use_formulas = use_formulas
        self.file_prefix = file_prefix

    def process_text(self, text: str) -> ProcessedInput:
        """Parse pasted text and validate every line"""
        pairs, skipped = parse_input_text(text)
        return self.process_pairs(pairs, skipped)

    def process_pairs(self, pairs: Iterable[Tuple[Any, Any]], skipped: int = 0) -> ProcessedInput:
        """Validate (raw_number, raw_allocation) pairs and resolve duplicates"""
        entries, bad_allocations = build_entries(pairs)
        skipped += bad_allocations
        logger.info(f"Parsed {len(entries)} entries ({skipped} lines skipped)")

        resolution = resolve_duplicates(entries, self.identity_mode)
        stats = RunStats.from_entries(resolution.kept, resolution.removed_count, skipped)
        if stats.fixed:
            logger.info(f"Auto-fixed {stats.fixed} phone numbers")
        if stats.invalid:
            logger.info(f"{stats.invalid} numbers could not be normalized")
        return ProcessedInput(entries=resolution.kept, stats=stats)

    def plan_batches(self, entries: Sequence[PhoneEntry]) -> List[Batch]:
        """
        Decide how entries are split across files.

        Orders within capacity stay in one batch in input order. Larger orders
        are packed, with invalid and duplicate entries riding in the last batch.
        """
        if not entries:
            return []

        total_gb = sum((entry.allocation_gb for entry in entries), Decimal("0"))
        if total_gb <= self.capacity_gb:
            batch = Batch()
            batch.extend(entries)
            return [batch]

        logger.info(f"Total {format_data_total(total_gb)} exceeds {self.capacity_gb} GB per file, splitting")
        valid, problematic = split_problematic(entries)
        return pack_batches(valid, problematic, self.capacity_gb, self.sort_before_packing)

    def export(
        self,
        entries: Sequence[PhoneEntry],
        generated_at: Optional[datetime] = None,
        skipped: int = 0,
        removed_duplicates: int = 0,
    ) -> ExportResult:
        """
        Produce the upload template(s) for the given entries.

        Args:
            entries: Validated entries, in input order
            generated_at: Run timestamp, defaults to now
            skipped: Lines skipped while parsing, carried into stats
            removed_duplicates: Duplicates removed earlier, carried into stats

        Returns:
            ExportResult; on failure no files are returned and error is set
        """
        stats = RunStats.from_entries(entries, removed_duplicates, skipped)
        if not entries:
            return ExportResult(stats=stats, error="No data to export")

        generated_at = generated_at or datetime.now()
        batches = self.plan_batches(entries)

        try:
            files = encode_batches(batches, generated_at, self.identity_mode,
                                   self.use_formulas, self.file_prefix)
            download = bundle_files(files, generated_at, self.file_prefix)
        except TemplateEncodingError as e:
            logger.error(f"Export failed: {e}")
            return ExportResult(stats=stats, batches=batches, error=str(e))

        logger.info(f"Exported {stats.kept} entries ({format_data_total(stats.total_gb)}) as {download.name}")
        return ExportResult(stats=stats, files=files, download=download, batches=batches)

    def run(self, text: str, generated_at: Optional[datetime] = None) -> ExportResult:
        """Parse, validate and export pasted text in one go"""
        processed = self.process_text(text)
        return self.export(processed.entries, generated_at,
                           skipped=processed.stats.skipped,
                           removed_duplicates=processed.stats.removed_duplicates)

    def merge_orders(self, orders: Sequence[Sequence[PhoneEntry]],
                     generated_at: Optional[datetime] = None) -> ExportResult:
        """Export several queued orders as one download, entries in queue order"""
        merged = [entry for order_entries in orders for entry in order_entries]
        logger.info(f"Merging {len(orders)} orders ({len(merged)} entries)")
        return self.export(merged, generated_at)


def read_input_file(path: Path) -> Tuple[List[Tuple[str, str]], int]:
    """Read (number, allocation) pairs from a .txt, .csv or .xlsx file"""
    if path.suffix.lower() == ".xlsx":
        logger.info(f"Loading workbook {path.name}")
        return read_workbook_pairs(str(path))
    return parse_input_text(path.read_text(encoding="utf-8-sig"))


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command line entry point"""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    parser = argparse.ArgumentParser(description="Build provisioning upload templates from a phone number list")
    parser.add_argument("input", help="Input .txt, .csv or .xlsx file with '<number> <allocation>GB' rows")
    parser.add_argument("--capacity-gb", type=Decimal, default=DEFAULT_CAPACITY_GB,
                        help="Maximum GB per upload file (default: 1536)")
    parser.add_argument("--identity-mode", default=IdentityMode.NUMBER_AND_ALLOCATION.value,
                        choices=[mode.value for mode in IdentityMode],
                        help="How duplicates are detected")
    parser.add_argument("--no-sort", action="store_true", help="Keep input order when splitting")
    parser.add_argument("--no-formulas", action="store_true", help="Write plain totals instead of formulas")
    parser.add_argument("--prefix", default=DEFAULT_FILE_PREFIX, help="Output file name prefix")
    parser.add_argument("--output-folder", default="output", help="Where to write the template(s)")
    args = parser.parse_args(argv)

    input_path = Path(args.input)
    if not input_path.exists():
        print(f"❌ Input file not found: {input_path}")
        return 1

    print("🚀 BULK BUNDLE ALLOCATOR")
    print("=" * 60)

    try:
        allocator = BundleAllocator(
            capacity_gb=args.capacity_gb,
            identity_mode=IdentityMode.from_value(args.identity_mode),
            sort_before_packing=not args.no_sort,
            use_formulas=not args.no_formulas,
            file_prefix=args.prefix,
        )
        pairs, skipped = read_input_file(input_path)
        processed = allocator.process_pairs(pairs, skipped)
        result = allocator.export(processed.entries,
                                  skipped=processed.stats.skipped,
                                  removed_duplicates=processed.stats.removed_duplicates)
    except Exception as e:
        logger.error(f"Error during processing: {e}", exc_info=True)
        print(f"❌ Error during processing: {e}")
        return 1

    if not result.ok:
        print(f"❌ Export failed: {result.error}")
        return 1

    output_folder = Path(args.output_folder)
    output_folder.mkdir(parents=True, exist_ok=True)
    output_path = output_folder / result.download.name
    output_path.write_bytes(result.download.content)

    print("✅ SUCCESS! Upload template created.")
    print(f"📊 Output file: {output_path}")
    if result.was_split:
        print(f"📦 Split into {len(result.files)} files (over {allocator.capacity_gb} GB per file)")
    print()
    print(result.stats.summary_message())
    return 0


if __name__ == "__main__":
    sys.exit(main())
