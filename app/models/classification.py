"""
Risk / Issue / Opportunity Tracker
Classification matrix - DoD 5×5 (MIL-STD-882 style).

Likelihood (1-5) × Consequence/Impact (1-5) → qualitative level + numeric rank.

The level and rank tables are curated independently and are NOT derived from
likelihood × consequence.  Ranks form a strict total order 1..25 (each value
used exactly once) and drive sort orders and chart bands, so the tables must
stay bit-compatible with the published matrix:

    rank          C=1  C=2  C=3  C=4  C=5
    L=1             1    3    5    9   12
    L=2             2    4   11   15   17
    L=3             6   10   14   19   21
    L=4             7   13   18   22   24
    L=5             8   16   20   23   25

Issues have already happened, so likelihood is pinned and only consequence
varies: ranks 8, 16, 20, 23, 25; levels low for C1-3, moderate for C4-5.
"""

from typing import NamedTuple

from app.core.exceptions import ValidationError

# ── Constants ────────────────────────────────────────────────────────────────

DIMENSION_MIN = 1
DIMENSION_MAX = 5

LEVELS = ("low", "moderate", "high")

# Likelihood stored on issues; their classification ignores it.
ISSUE_PINNED_LIKELIHOOD = 5

LIKELIHOOD_LABELS = ["Remote", "Unlikely", "Likely", "Highly Likely", "Near Certainty"]
CONSEQUENCE_LABELS = ["Minimal", "Minor", "Moderate", "Significant", "Severe"]


# ── Curated tables ───────────────────────────────────────────────────────────

LEVEL_MATRIX = {
    (1, 1): "low", (1, 2): "low", (1, 3): "low", (1, 4): "moderate", (1, 5): "moderate",
    (2, 1): "low", (2, 2): "low", (2, 3): "moderate", (2, 4): "moderate", (2, 5): "high",
    (3, 1): "low", (3, 2): "moderate", (3, 3): "moderate", (3, 4): "high", (3, 5): "high",
    (4, 1): "moderate", (4, 2): "moderate", (4, 3): "high", (4, 4): "high", (4, 5): "high",
    (5, 1): "moderate", (5, 2): "high", (5, 3): "high", (5, 4): "high", (5, 5): "high",
}

RANK_MATRIX = {
    (1, 1): 1, (1, 2): 3, (1, 3): 5, (1, 4): 9, (1, 5): 12,
    (2, 1): 2, (2, 2): 4, (2, 3): 11, (2, 4): 15, (2, 5): 17,
    (3, 1): 6, (3, 2): 10, (3, 3): 14, (3, 4): 19, (3, 5): 21,
    (4, 1): 7, (4, 2): 13, (4, 3): 18, (4, 4): 22, (4, 5): 24,
    (5, 1): 8, (5, 2): 16, (5, 3): 20, (5, 4): 23, (5, 5): 25,
}

ISSUE_LEVELS = {1: "low", 2: "low", 3: "low", 4: "moderate", 5: "moderate"}

ISSUE_RANKS = {1: 8, 2: 16, 3: 20, 4: 23, 5: 25}


class Classification(NamedTuple):
    level: str
    rank: int


def clamp_dimension(value) -> int:
    """Clamp an ordinal dimension value into [1, 5].

    Raises:
        ValidationError: If the value is missing or not numeric.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError("Dimension value is required", details={"value": repr(value)})
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError(
            f"Dimension value must be an integer, got {value!r}",
            details={"value": repr(value)},
        )
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            f"Dimension value must be an integer, got {value!r}",
            details={"value": repr(value)},
        ) from exc
    return max(DIMENSION_MIN, min(DIMENSION_MAX, number))


def classify(likelihood, consequence) -> Classification:
    """Classify a two-dimensional ordinal pair (clamped to [1, 5])."""
    key = (clamp_dimension(likelihood), clamp_dimension(consequence))
    return Classification(LEVEL_MATRIX[key], RANK_MATRIX[key])


def classify_issue(consequence) -> Classification:
    """Classify an issue, whose likelihood is certain."""
    c = clamp_dimension(consequence)
    return Classification(ISSUE_LEVELS[c], ISSUE_RANKS[c])


def matrix_cells() -> list[dict]:
    """Return all 25 matrix cells, highest rank first, for heat-map consumers."""
    cells = [
        {
            "likelihood": likelihood,
            "consequence": consequence,
            "level": LEVEL_MATRIX[(likelihood, consequence)],
            "rank": rank,
        }
        for (likelihood, consequence), rank in RANK_MATRIX.items()
    ]
    cells.sort(key=lambda c: c["rank"], reverse=True)
    return cells
