"""
Service layer wrapping BundleAllocator for web app use.
"""
import sys
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Any, Iterable, List, Optional, Sequence, Tuple
import logging

# Add parent directory to path to import the core modules
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

from bundle_allocator import BundleAllocator, ExportResult, ProcessedInput, RunStats
from bundle_entries import (
    DEFAULT_CAPACITY_GB,
    IdentityMode,
    normalize_number,
    PhoneEntry,
    parse_input_text,
    summarize_allocations,
)
from upload_template import DEFAULT_FILE_PREFIX

logger = logging.getLogger(__name__)

HISTORY_TYPE_ALLOCATOR = "bundle-allocator"
HISTORY_TYPE_CATEGORIZER = "bundle-categorizer"


class OrderRejected(Exception):
    """Order cannot be queued as submitted"""


class OrderNotFound(LookupError):
    """No order with the requested id"""


@dataclass
class OrderDownload:
    """Export of one or more queued orders"""
    result: ExportResult
    processed_ids: List[str] = field(default_factory=list)
    already_processed_ids: List[str] = field(default_factory=list)


def entry_to_row(entry: PhoneEntry) -> Dict[str, Any]:
    """Flatten an entry into the column names used by the orders tables"""
    return {
        "raw_number": entry.raw_number,
        "number": entry.number,
        "allocation_gb": entry.allocation_gb,
        "is_valid": entry.is_valid,
        "was_fixed": entry.was_fixed,
        "is_duplicate": entry.is_duplicate,
    }


def entry_from_row(row: Dict[str, Any]) -> PhoneEntry:
    return PhoneEntry(
        raw_number=row.get("raw_number") or row["number"],
        number=row["number"],
        allocation_gb=Decimal(str(row["allocation_gb"])),
        is_valid=bool(row["is_valid"]),
        was_fixed=bool(row.get("was_fixed")),
        is_duplicate=bool(row.get("is_duplicate")),
    )


def payload_number(item: Dict[str, Any]) -> str:
    """
    Pick the number to normalize from a client entry.

    ``rawNumber`` keeps its auto-fix flag when ``number`` is unchanged;
    an edited ``number`` replaces it.
    """
    raw_number = str(item.get("rawNumber") or "").strip()
    number = str(item.get("number") or "").strip()
    if not number:
        return raw_number
    if not raw_number or normalize_number(raw_number).number != number:
        return number
    return raw_number


def history_record(entries: Sequence[PhoneEntry], record_type: str) -> Dict[str, Any]:
    """Build the history row saved after a validation or export session"""
    stats = RunStats.from_entries(entries)
    return {
        "type": record_type,
        "entry_count": stats.kept,
        "valid_count": stats.valid,
        "invalid_count": stats.invalid,
        "duplicate_count": stats.duplicate,
        "total_gb": stats.total_gb,
        "entries": [entry.to_dict() for entry in entries],
    }


class OrderService:
    """Validation, export and order queue operations for the REST API"""

    def __init__(
        self,
        db,
        capacity_gb: Decimal = DEFAULT_CAPACITY_GB,
        file_prefix: str = DEFAULT_FILE_PREFIX,
        use_formulas: bool = True,
    ):
        self.db = db
        self.capacity_gb = capacity_gb
        self.file_prefix = file_prefix
        self.use_formulas = use_formulas

    def allocator(self, identity_mode: Optional[str] = None, sort_before_packing: bool = True) -> BundleAllocator:
        return BundleAllocator(
            capacity_gb=self.capacity_gb,
            identity_mode=IdentityMode.from_value(identity_mode),
            sort_before_packing=sort_before_packing,
            use_formulas=self.use_formulas,
            file_prefix=self.file_prefix,
        )

    def validate_pairs(
        self,
        pairs: Iterable[Tuple[Any, Any]],
        skipped: int = 0,
        identity_mode: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Validate raw (number, allocation) pairs.

        Returns:
            Dict with entries, stats and the consolidated summary message
        """
        processed = self.allocator(identity_mode).process_pairs(pairs, skipped)
        return {
            "entries": [entry.to_dict() for entry in processed.entries],
            "stats": processed.stats.to_dict(),
            "summary": processed.stats.summary_message(),
        }

    def validate_text(self, text: str, identity_mode: Optional[str] = None) -> Dict[str, Any]:
        pairs, skipped = parse_input_text(text)
        return self.validate_pairs(pairs, skipped, identity_mode)

    def categorize_text(self, text: str) -> Dict[str, Any]:
        """Validate pasted text and count entries per allocation size"""
        processed = self.allocator(IdentityMode.NUMBER_ONLY).process_text(text)
        if processed.entries:
            self.db.save_history(history_record(processed.entries, HISTORY_TYPE_CATEGORIZER))
        return {
            "entries": [entry.to_dict() for entry in processed.entries],
            "stats": processed.stats.to_dict(),
            "allocationSummary": summarize_allocations(processed.entries),
        }

    def entries_from_payload(
        self,
        items: Sequence[Dict[str, Any]],
        identity_mode: Optional[str] = None,
    ) -> ProcessedInput:
        """
        Rebuild entries from client-supplied JSON.

        Numbers are normalized again and duplicates re-resolved, so flags sent
        by the client are never trusted. A ``number`` that differs from what
        ``rawNumber`` normalizes to is an operator correction and wins. Rows
        with unusable allocations are counted in ``stats.skipped``.
        """
        if not isinstance(items, list):
            raise ValueError("entries must be a list")

        pairs = []
        for item in items:
            if not isinstance(item, dict):
                raise ValueError("Each entry must be an object")
            pairs.append((payload_number(item), item.get("allocationGB")))

        return self.allocator(identity_mode).process_pairs(pairs)

    def export_entries(
        self,
        entries: Sequence[PhoneEntry],
        identity_mode: Optional[str] = None,
        generated_at: Optional[datetime] = None,
        skipped: int = 0,
        removed_duplicates: int = 0,
    ) -> ExportResult:
        """Export entries to upload template(s) and record the session"""
        result = self.allocator(identity_mode).export(entries, generated_at, skipped, removed_duplicates)
        if result.ok:
            self.db.save_history(history_record(entries, HISTORY_TYPE_ALLOCATOR))
        return result

    def create_order(self, entries: Sequence[PhoneEntry], source: str = "web", skipped: int = 0) -> str:
        """Queue an order. Orders with invalid numbers or unusable allocations are refused."""
        if skipped:
            raise OrderRejected(
                f"{skipped} entry(ies) have a missing or non-positive allocation and cannot be ordered"
            )
        if not entries:
            raise OrderRejected("No entries to submit")

        invalid_count = sum(1 for entry in entries if not entry.is_valid)
        if invalid_count:
            raise OrderRejected(
                f"{invalid_count} invalid number(s) must be fixed before the order can be submitted"
            )

        return self.db.create_order([entry_to_row(entry) for entry in entries], source)

    def get_order(self, order_id: str) -> Dict[str, Any]:
        order = self.db.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order not found: {order_id}")
        return order

    def _mark_processed(self, order_ids: Sequence[str], download: OrderDownload) -> None:
        for order_id in order_ids:
            if self.db.mark_order_processed(order_id):
                download.processed_ids.append(order_id)
            else:
                download.already_processed_ids.append(order_id)

    def download_order(self, order_id: str, generated_at: Optional[datetime] = None) -> OrderDownload:
        """Export a single queued order and mark it processed"""
        order = self.get_order(order_id)
        entries = [entry_from_row(row) for row in order["entries"]]

        download = OrderDownload(result=self.allocator().export(entries, generated_at))
        if download.result.ok:
            self._mark_processed([order_id], download)
        return download

    def download_orders(self, order_ids: Sequence[str], generated_at: Optional[datetime] = None) -> OrderDownload:
        """
        Merge several queued orders into one download and mark each processed.

        Entries keep queue order; oversized merges are split without the
        largest-first sort.
        """
        if not order_ids:
            raise ValueError("No orders selected")

        orders = [self.get_order(order_id) for order_id in order_ids]
        order_entries = [[entry_from_row(row) for row in order["entries"]] for order in orders]

        allocator = self.allocator(sort_before_packing=False)
        download = OrderDownload(result=allocator.merge_orders(order_entries, generated_at))
        if download.result.ok:
            self._mark_processed(order_ids, download)
        return download
