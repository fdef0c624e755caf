"""Title normalization and grouping of activity records."""

import re
from collections import defaultdict
from typing import Dict, Iterable, List

import structlog

from routine_engine.models.activity import ActivityRecord, Occurrence

logger = structlog.get_logger(__name__)

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")
_MIN_STEM = 3


def _fold_gerund(word: str) -> str:
    """Fold an -ing word toward its base form ("drinking" -> "drink").

    Repeats until the word no longer qualifies, so the result is a fixpoint.
    """
    while word.endswith("ing") and len(word) - 3 >= _MIN_STEM:
        word = word[:-3]
        # "running" -> "runn" -> "run"
        if len(word) > _MIN_STEM and word[-1] == word[-2] and word[-1] not in "aeioulsz":
            word = word[:-1]
    return word


def normalize_title(title: str) -> str:
    """Canonical grouping key for an activity title.

    "Drink water", "drinking water!" and " DRINK  water" all map to
    "drink water". Idempotent.
    """
    text = _PUNCTUATION.sub("", title.lower().strip())
    words = _WHITESPACE.split(text.strip())
    return " ".join(_fold_gerund(w) for w in words if w)


def group_activities(
    records: Iterable[ActivityRecord],
    min_occurrences: int = 5,
) -> Dict[str, List[Occurrence]]:
    """Partition records by normalized title.

    Each group is sorted ascending by timestamp. Records without a parseable
    timestamp are excluded; groups smaller than ``min_occurrences`` are
    dropped as insufficient evidence.
    """
    groups: Dict[str, List[Occurrence]] = defaultdict(list)
    skipped = 0

    for record in records:
        if record.occurred_at is None:
            skipped += 1
            logger.warning(
                "activity_timestamp_unparseable",
                source_id=record.source_id,
                type=record.type.value,
            )
            continue

        key = normalize_title(record.title)
        if not key:
            continue

        groups[key].append(
            Occurrence(
                occurred_at=record.occurred_at,
                source_id=record.source_id,
                type=record.type,
                title=record.title.strip(),
            )
        )

    result = {}
    for key, occurrences in groups.items():
        if len(occurrences) < min_occurrences:
            logger.debug("activity_group_insufficient", normalized_title=key, count=len(occurrences))
            continue
        result[key] = sorted(occurrences, key=lambda o: o.occurred_at)

    logger.debug(
        "activities_grouped",
        groups=len(groups),
        qualifying_groups=len(result),
        skipped_records=skipped,
    )
    return result
