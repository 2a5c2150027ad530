"""Task priority levels and issue-label mapping."""

CRITICAL = 100
HIGH = 80
MEDIUM_HIGH = 60
MEDIUM = 50
MEDIUM_LOW = 40
LOW = 30
VERY_LOW = 20
MINIMAL = 10
NONE = 0

DEFAULT = MEDIUM

PRIORITY_NAMES = {
    CRITICAL: "critical",
    HIGH: "high",
    MEDIUM_HIGH: "medium-high",
    MEDIUM: "medium",
    MEDIUM_LOW: "medium-low",
    LOW: "low",
    VERY_LOW: "very-low",
    MINIMAL: "minimal",
    NONE: "none",
}

LABEL_PRIORITIES = {
    "priority:critical": CRITICAL,
    "priority:high": HIGH,
    "priority:medium": MEDIUM,
    "priority:low": LOW,
    "critical": CRITICAL,
    "urgent": CRITICAL,
    "blocker": CRITICAL,
    "security": CRITICAL,
    "bug": HIGH,
    "high": HIGH,
    "hotfix": HIGH,
    "enhancement": MEDIUM_HIGH,
    "feature": MEDIUM_HIGH,
    "medium": MEDIUM,
    "refactor": MEDIUM_LOW,
    "low": LOW,
    "documentation": VERY_LOW,
    "docs": VERY_LOW,
    "chore": MINIMAL,
}


def priority_from_labels(labels: list[str] | None) -> int:
    """Return the highest priority matched by any label, or the default."""
    matched = [
        LABEL_PRIORITIES[label.lower().strip()]
        for label in labels or []
        if label.lower().strip() in LABEL_PRIORITIES
    ]
    return max(matched) if matched else DEFAULT


def priority_name(value: int) -> str:
    """Name of the highest level not above the given value."""
    for level in sorted(PRIORITY_NAMES, reverse=True):
        if value >= level:
            return PRIORITY_NAMES[level]
    return PRIORITY_NAMES[NONE]
