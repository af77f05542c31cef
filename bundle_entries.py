"""
Phone entry model and the order batching primitives.

- Normalizes MSISDNs to the 10-digit local format (leading 0)
- Parses pasted "<number> <allocation>[GB]" lines
- Resolves duplicates by number or by number + allocation
- Packs entries into capacity-bounded batches for the upload template
"""
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

# 1.5 TB per upload file, expressed in GB
DEFAULT_CAPACITY_GB = Decimal("1536")
MB_PER_GB = 1024
# Above this many GB the human-readable totals switch to TB
TB_DISPLAY_THRESHOLD_GB = Decimal("1023")

MSISDN_PATTERN = re.compile(r"^0\d{9}$")
NON_DIGITS = re.compile(r"\D")
LINE_PATTERN = re.compile(
    r"^(?P<number>.+?)(?:[\s,;|]+|-)(?P<allocation>[+-]?\d+(?:\.\d+)?)\s*(?:gb)?$",
    re.IGNORECASE,
)


class IdentityMode(str, Enum):
    """Which fields make two entries the same request"""
    NUMBER_ONLY = "number_only"
    NUMBER_AND_ALLOCATION = "number_and_allocation"

    @classmethod
    def from_value(cls, value: Optional[str], default: Optional["IdentityMode"] = None) -> "IdentityMode":
        """Accept enum members, snake_case or camelCase names from API payloads"""
        if isinstance(value, cls):
            return value
        if not value:
            return default or cls.NUMBER_AND_ALLOCATION
        text = str(value).strip()
        if "_" not in text:
            text = re.sub(r"(?<!^)(?=[A-Z])", "_", text)
        normalized = text.lower()
        for mode in cls:
            if mode.value == normalized:
                return mode
        raise ValueError(f"Unknown identity mode: {value}")


@dataclass(frozen=True)
class NormalizedNumber:
    number: str
    is_valid: bool
    was_fixed: bool


@dataclass
class PhoneEntry:
    """One requested allocation line"""
    raw_number: str
    number: str
    allocation_gb: Decimal
    is_valid: bool
    was_fixed: bool = False
    is_duplicate: bool = False

    @property
    def allocation_mb(self) -> int:
        return to_megabytes(self.allocation_gb)

    @property
    def is_problematic(self) -> bool:
        return not self.is_valid or self.is_duplicate

    @property
    def status(self) -> str:
        if self.is_duplicate:
            return "Duplicate"
        return "Valid" if self.is_valid else "Invalid"

    def identity_key(self, mode: IdentityMode) -> Tuple:
        if mode == IdentityMode.NUMBER_ONLY:
            return (self.number,)
        return (self.number, self.allocation_gb)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rawNumber": self.raw_number,
            "number": self.number,
            "allocationGB": float(self.allocation_gb),
            "isValid": self.is_valid,
            "wasFixed": self.was_fixed,
            "isDuplicate": self.is_duplicate,
        }


@dataclass
class Batch:
    """Entries destined for a single upload template file"""
    entries: List[PhoneEntry] = field(default_factory=list)
    total_gb: Decimal = Decimal("0")

    def add(self, entry: PhoneEntry) -> None:
        self.entries.append(entry)
        self.total_gb += entry.allocation_gb

    def extend(self, entries: Iterable[PhoneEntry]) -> None:
        for entry in entries:
            self.add(entry)

    @property
    def total_mb(self) -> int:
        return sum(entry.allocation_mb for entry in self.entries)

    def __len__(self) -> int:
        return len(self.entries)


@dataclass
class DuplicateResolution:
    kept: List[PhoneEntry]
    duplicates: List[PhoneEntry]
    removed_count: int
    fixed_count: int


def to_megabytes(allocation_gb: Decimal) -> int:
    """GB -> whole MB, rounding halves up"""
    return int((Decimal(allocation_gb) * MB_PER_GB).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_data_total(total_gb: Decimal) -> str:
    """Human readable total: TB above 1023 GB, GB otherwise, two decimals"""
    total_gb = Decimal(total_gb)
    if total_gb > TB_DISPLAY_THRESHOLD_GB:
        return f"{total_gb / MB_PER_GB:.2f} TB"
    return f"{total_gb:.2f} GB"


def normalize_number(raw: Any) -> NormalizedNumber:
    """
    Normalize a raw phone number to the 10-digit local format.

    Non-digits are stripped; 9-digit numbers get a leading 0 and 10-digit
    numbers not starting with 0 have their first digit replaced by 0. Anything
    else is returned digits-only and marked invalid.

    Args:
        raw: Text as typed or uploaded

    Returns:
        NormalizedNumber with the corrected number and validity flags
    """
    if not isinstance(raw, str) or not raw.strip():
        return NormalizedNumber(number="", is_valid=False, was_fixed=False)

    text = raw.strip()
    digits = NON_DIGITS.sub("", text)
    was_fixed = digits != text

    if len(digits) == 10 and digits.startswith("0"):
        return NormalizedNumber(number=digits, is_valid=True, was_fixed=was_fixed)

    if len(digits) == 9:
        return NormalizedNumber(number="0" + digits, is_valid=True, was_fixed=True)

    if len(digits) == 10:
        return NormalizedNumber(number="0" + digits[1:], is_valid=True, was_fixed=True)

    return NormalizedNumber(number=digits, is_valid=False, was_fixed=was_fixed)


def is_valid_msisdn(number: str) -> bool:
    return bool(MSISDN_PATTERN.match(number or ""))


def parse_allocation(text: Any) -> Optional[Decimal]:
    """Parse an allocation like '5', '2.5GB' or '10 gb'. None unless strictly positive."""
    if text is None:
        return None
    cleaned = re.sub(r"\s*gb$", "", str(text).strip(), flags=re.IGNORECASE)
    if not cleaned:
        return None
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


def parse_line(line: str) -> Optional[Tuple[str, str]]:
    """Split one '<number> <allocation>[GB]' line into its raw parts"""
    match = LINE_PATTERN.match(line.strip())
    if not match:
        return None
    return match.group("number").strip(), match.group("allocation")


def parse_input_text(text: str) -> Tuple[List[Tuple[str, str]], int]:
    """
    Split pasted or uploaded text into (raw_number, raw_allocation) pairs.

    Blank lines are ignored. Lines that cannot be split are dropped and
    counted as skipped.

    Returns:
        Tuple of (pairs, skipped_count)
    """
    pairs = []
    skipped = 0
    for line in (text or "").splitlines():
        if not line.strip():
            continue
        parsed = parse_line(line)
        if parsed is None:
            skipped += 1
            logger.debug(f"Skipping unparseable line: {line!r}")
            continue
        pairs.append(parsed)
    return pairs, skipped


def build_entries(pairs: Iterable[Tuple[Any, Any]]) -> Tuple[List[PhoneEntry], int]:
    """
    Turn raw pairs into PhoneEntry objects.

    Pairs whose allocation is not a positive number never become entries and
    are counted as skipped. Invalid numbers are kept with is_valid=False.
    """
    entries = []
    skipped = 0
    for raw_number, raw_allocation in pairs:
        allocation = parse_allocation(raw_allocation)
        if allocation is None:
            skipped += 1
            continue
        raw_text = raw_number if isinstance(raw_number, str) else ("" if raw_number is None else str(raw_number))
        normalized = normalize_number(raw_text)
        entries.append(PhoneEntry(
            raw_number=raw_text,
            number=normalized.number,
            allocation_gb=allocation,
            is_valid=normalized.is_valid,
            was_fixed=normalized.was_fixed,
        ))
    return entries, skipped


def resolve_duplicates(entries: Sequence[PhoneEntry], identity_mode: IdentityMode) -> DuplicateResolution:
    """
    Collapse repeated entries under the identity key, first occurrence wins.

    NUMBER_ONLY keeps every entry and tags later repeats as duplicates for
    manual review. NUMBER_AND_ALLOCATION drops later repeats and counts them.
    The input entries are not modified.
    """
    identity_mode = IdentityMode.from_value(identity_mode)

    # First pass: find repeats
    seen = set()
    duplicate_positions = set()
    for position, entry in enumerate(entries):
        key = entry.identity_key(identity_mode)
        if key in seen:
            duplicate_positions.add(position)
        else:
            seen.add(key)

    # Second pass: keep or tag
    kept = []
    duplicates = []
    for position, entry in enumerate(entries):
        if position not in duplicate_positions:
            kept.append(replace(entry, is_duplicate=False))
            continue
        if identity_mode == IdentityMode.NUMBER_ONLY:
            flagged = replace(entry, is_duplicate=True)
            kept.append(flagged)
            duplicates.append(flagged)
        else:
            duplicates.append(entry)

    removed = 0 if identity_mode == IdentityMode.NUMBER_ONLY else len(duplicates)
    fixed = sum(1 for entry in kept if entry.was_fixed)

    if duplicates:
        action = "Flagged" if identity_mode == IdentityMode.NUMBER_ONLY else "Removed"
        logger.info(f"{action} {len(duplicates)} duplicates ({identity_mode.value}), {len(kept)} entries kept")

    return DuplicateResolution(kept=kept, duplicates=duplicates, removed_count=removed, fixed_count=fixed)


def split_problematic(entries: Iterable[PhoneEntry]) -> Tuple[List[PhoneEntry], List[PhoneEntry]]:
    """Separate clean entries from invalid/duplicate ones, preserving order"""
    valid = []
    problematic = []
    for entry in entries:
        (problematic if entry.is_problematic else valid).append(entry)
    return valid, problematic


def pack_batches(
    valid_entries: Sequence[PhoneEntry],
    problematic_entries: Sequence[PhoneEntry] = (),
    capacity_gb: Decimal = DEFAULT_CAPACITY_GB,
    sort_before_packing: bool = True,
) -> List[Batch]:
    """
    Group entries into batches of at most capacity_gb each.

    Valid entries are taken largest first (stable for equal sizes) unless
    sort_before_packing is off, in which case input order is kept. An entry
    larger than the capacity still gets a batch of its own. Problematic entries
    are appended to the last batch without a capacity check so nothing is ever
    dropped from the export.

    Args:
        valid_entries: Entries that are valid and not duplicates
        problematic_entries: Invalid or duplicate entries
        capacity_gb: Maximum total allocation per batch
        sort_before_packing: Sort valid entries by allocation descending first

    Returns:
        List of batches in output order
    """
    capacity_gb = Decimal(capacity_gb)
    if capacity_gb <= 0:
        raise ValueError(f"Capacity must be positive, got {capacity_gb}")

    ordered = list(valid_entries)
    if sort_before_packing:
        ordered = sorted(ordered, key=lambda entry: entry.allocation_gb, reverse=True)

    batches = []
    current = Batch()
    for entry in ordered:
        if len(current) and current.total_gb + entry.allocation_gb > capacity_gb:
            batches.append(current)
            current = Batch()
        if entry.allocation_gb > capacity_gb:
            logger.warning(f"Entry {entry.number} ({entry.allocation_gb} GB) exceeds capacity of {capacity_gb} GB")
        current.add(entry)

    if len(current):
        batches.append(current)

    if problematic_entries:
        if not batches:
            batches.append(Batch())
        batches[-1].extend(problematic_entries)
        if batches[-1].total_gb > capacity_gb:
            logger.warning(
                f"Last batch holds {batches[-1].total_gb} GB after appending "
                f"{len(problematic_entries)} problematic entries (capacity {capacity_gb} GB)"
            )

    logger.info(f"Packed {len(ordered)} valid + {len(problematic_entries)} problematic entries into {len(batches)} batches")
    return batches


def review_order(entries: Sequence[PhoneEntry], identity_mode: IdentityMode) -> List[PhoneEntry]:
    """
    Order rows for operator review: valid first, then invalid, then
    duplicates grouped by identity key. Relative order is kept within each group.
    """
    identity_mode = IdentityMode.from_value(identity_mode)
    valid = []
    invalid = []
    duplicate_groups: "OrderedDict[Tuple, List[PhoneEntry]]" = OrderedDict()
    for entry in entries:
        if entry.is_duplicate:
            duplicate_groups.setdefault(entry.identity_key(identity_mode), []).append(entry)
        elif not entry.is_valid:
            invalid.append(entry)
        else:
            valid.append(entry)

    grouped = [entry for group in duplicate_groups.values() for entry in group]
    return valid + invalid + grouped


def summarize_allocations(entries: Iterable[PhoneEntry]) -> List[Dict[str, Any]]:
    """Count entries per allocation bucket, smallest bucket first"""
    counts: Dict[Decimal, int] = {}
    for entry in entries:
        bucket = entry.allocation_gb.normalize()
        counts[bucket] = counts.get(bucket, 0) + 1

    return [
        {"allocation": f"{format(bucket, 'f')} GB", "allocationGB": float(bucket), "count": count}
        for bucket, count in sorted(counts.items())
    ]
