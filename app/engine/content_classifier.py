"""
Content Classifier - turn an arbitrary source row into (content, category).

Rows come from CSV uploads (flat string maps), JSON APIs (nested values,
numbers, booleans) or are bare strings. Classification never raises: every
non-empty row yields some content.

Content priority:
1. Well-known content fields, in a fixed order
2. Longest string field longer than the minimum length
3. A short well-known field (if that is all there is)
4. The whole row serialised as JSON

Category rule (first match wins):
1. "top" + "10" / "bottom" + "10" anywhere in the value
2. Exact positive/negative tokens ("top_10", "selected", "rejected", ...)
3. Numeric: >= 4 or in (0.8, 1] is top, <= 2 or in [0, 0.2) is bottom
4. Any field whose name contains "rating" or "score", same heuristics
"""

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from app.models.data_record import RecordCategory

logger = logging.getLogger(__name__)

CONTENT_FIELDS = (
    "feedback_content",
    "feedback",
    "prompt",
    "content",
    "body",
    "task_content",
    "text",
    "message",
    "instruction",
    "response",
)

RATING_FIELDS = (
    "prompt_quality_rating",
    "feedback_quality_rating",
    "quality_rating",
    "rating",
    "category",
    "label",
    "score",
    "avg_score",
)

EXTERNAL_ID_FIELDS = ("task_id", "id", "uuid", "record_id")

CREATED_AT_FIELDS = ("created_at", "createdAt", "timestamp", "date_created")
UPDATED_AT_FIELDS = ("updated_at", "updatedAt", "date_updated", "modified_at")

POSITIVE_TOKENS = frozenset({"top_10", "top10", "top", "selected", "better"})
NEGATIVE_TOKENS = frozenset({"bottom_10", "bottom10", "bottom", "rejected", "worse"})

DEFAULT_MIN_CONTENT_LENGTH = 10


@dataclass(frozen=True)
class ClassifiedRow:
    """Result of classifying one row."""
    content: str
    category: Optional[RecordCategory] = None


@dataclass(frozen=True)
class RowProvenance:
    """Optional provenance values lifted from a row."""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    created_by_id: Optional[str] = None
    created_by_name: Optional[str] = None
    created_by_email: Optional[str] = None


def _has_value(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return isinstance(value, (int, float))


def _first_present(row: Dict[str, Any], fields: Tuple[str, ...]) -> Any:
    for name in fields:
        value = row.get(name)
        if _has_value(value):
            return value
    return None


# =============================================================================
# CONTENT
# =============================================================================

def extract_content(row: Any, min_length: int = DEFAULT_MIN_CONTENT_LENGTH) -> str:
    """
    Extract the text content of a row.

    Args:
        row: Mapping of column -> value, or a bare string
        min_length: Below this a recognised field is only a fallback

    Returns:
        Non-empty content for any non-empty row
    """
    if isinstance(row, str):
        return row
    if not isinstance(row, dict):
        return json.dumps(row, default=str)

    recognised = None
    for name in CONTENT_FIELDS:
        value = row.get(name)
        if isinstance(value, str) and value.strip():
            recognised = value
            break

    if recognised is not None and len(recognised) >= min_length:
        return recognised

    longest = None
    for value in row.values():
        if isinstance(value, str) and len(value) > min_length:
            if longest is None or len(value) > len(longest):
                longest = value
    if longest is not None:
        return longest

    if recognised is not None:
        return recognised

    return json.dumps(row, sort_keys=True, default=str)


# =============================================================================
# CATEGORY
# =============================================================================

def _parse_number(value: Any) -> Optional[float]:
    """Return the value as a finite float, or None if it is not numeric."""
    if isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def categorize_value(value: Any) -> Optional[RecordCategory]:
    """Apply the textual and numeric rating heuristics to one value."""
    if not _has_value(value):
        return None

    raw = str(value).strip().lower()

    if "top" in raw and "10" in raw:
        return RecordCategory.TOP_10
    if "bottom" in raw and "10" in raw:
        return RecordCategory.BOTTOM_10
    if raw in POSITIVE_TOKENS:
        return RecordCategory.TOP_10
    if raw in NEGATIVE_TOKENS:
        return RecordCategory.BOTTOM_10

    number = _parse_number(value)
    if number is None:
        return None

    # top is checked first, so 1.0 is a perfect 0-1 score rather than a low 1-5 one
    if number >= 4 or 0.8 < number <= 1.0:
        return RecordCategory.TOP_10
    if number <= 2 or 0.0 <= number < 0.2:
        return RecordCategory.BOTTOM_10
    return None


def extract_category(row: Any) -> Optional[RecordCategory]:
    """
    Derive the quality label of a row, or None.

    The recognised rating fields are tried first; only if they yield nothing
    are other "*rating*" / "*score*" columns consulted.
    """
    if not isinstance(row, dict):
        return None

    category = categorize_value(_first_present(row, RATING_FIELDS))
    if category is not None:
        return category

    for key, value in row.items():
        lowered = str(key).lower()
        if "rating" in lowered or "score" in lowered:
            category = categorize_value(value)
            if category is not None:
                return category
    return None


def classify_row(row: Any, min_length: int = DEFAULT_MIN_CONTENT_LENGTH) -> ClassifiedRow:
    """Classify a raw row. Pure; never raises for dict or string rows."""
    return ClassifiedRow(
        content=extract_content(row, min_length=min_length),
        category=extract_category(row),
    )


# =============================================================================
# IDENTIFIER & PROVENANCE
# =============================================================================

def extract_external_id(row: Any) -> Optional[str]:
    """First present id-like field of the row as a string, else None."""
    if not isinstance(row, dict):
        return None
    value = _first_present(row, EXTERNAL_ID_FIELDS)
    if value is None:
        return None
    return str(value).strip()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a row timestamp; None if absent or not a valid date.

    Accepts ISO-8601 strings (including a trailing "Z") and epoch seconds
    or milliseconds. Naive values are taken as UTC.
    """
    if not _has_value(value):
        return None

    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if abs(value) > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if _has_value(value) else None


def extract_provenance(row: Any) -> RowProvenance:
    if not isinstance(row, dict):
        return RowProvenance()
    return RowProvenance(
        created_at=parse_timestamp(_first_present(row, CREATED_AT_FIELDS)),
        updated_at=parse_timestamp(_first_present(row, UPDATED_AT_FIELDS)),
        created_by_id=_optional_str(row.get("created_by_id")),
        created_by_name=_optional_str(row.get("created_by_name")),
        created_by_email=_optional_str(row.get("created_by_email")),
    )


def row_metadata(row: Any) -> Dict[str, Any]:
    """The verbatim source row as stored in a record's metadata."""
    if isinstance(row, dict):
        return dict(row)
    return {"value": row}


def matches_keywords(content: str, keywords) -> bool:
    """Case-insensitive substring match; an empty keyword list matches everything."""
    active = [k for k in (keywords or []) if k and k.strip()]
    if not active:
        return True
    lowered = content.lower()
    return any(k.strip().lower() in lowered for k in active)
