"""Classification matrix tables and helpers."""

import pytest

from app.core.exceptions import ValidationError
from app.models.classification import (
    ISSUE_RANKS,
    LEVEL_MATRIX,
    RANK_MATRIX,
    Classification,
    clamp_dimension,
    classify,
    classify_issue,
    matrix_cells,
)


class TestClassify:
    def test_known_cells(self):
        assert classify(2, 2) == Classification("low", 4)
        assert classify(1, 1) == Classification("low", 1)
        assert classify(5, 5) == Classification("high", 25)
        assert classify(3, 4) == Classification("high", 19)
        assert classify(4, 1) == Classification("moderate", 7)

    def test_out_of_range_is_clamped(self):
        assert classify(0, 9) == classify(1, 5)
        assert classify(-3, 0) == classify(1, 1)
        assert classify(7, 7) == classify(5, 5)

    def test_numeric_strings_accepted(self):
        assert classify("4", "2") == classify(4, 2)

    def test_non_numeric_rejected(self):
        with pytest.raises(ValidationError):
            classify("high", 2)
        with pytest.raises(ValidationError):
            classify(None, 2)
        with pytest.raises(ValidationError):
            classify(True, 2)


class TestMatrixProperties:
    def test_ranks_are_a_permutation(self):
        assert sorted(RANK_MATRIX.values()) == list(range(1, 26))

    def test_ranks_monotone_in_both_dimensions(self):
        for a in range(1, 6):
            for b in range(1, 6):
                if a < 5:
                    assert RANK_MATRIX[(a + 1, b)] > RANK_MATRIX[(a, b)]
                if b < 5:
                    assert RANK_MATRIX[(a, b + 1)] > RANK_MATRIX[(a, b)]

    def test_levels_cover_every_cell(self):
        assert set(LEVEL_MATRIX) == set(RANK_MATRIX)
        assert set(LEVEL_MATRIX.values()) == {"low", "moderate", "high"}

    def test_matrix_cells_sorted_by_rank_desc(self):
        cells = matrix_cells()
        assert len(cells) == 25
        assert cells[0] == {"likelihood": 5, "consequence": 5, "level": "high", "rank": 25}
        assert [c["rank"] for c in cells] == list(range(25, 0, -1))


class TestIssueClassification:
    def test_levels_and_ranks(self):
        assert [classify_issue(b).rank for b in range(1, 6)] == [8, 16, 20, 23, 25]
        assert [classify_issue(b).level for b in range(1, 6)] == [
            "low", "low", "low", "moderate", "moderate",
        ]

    def test_issue_ranks_match_certain_likelihood_row(self):
        for b, rank in ISSUE_RANKS.items():
            assert RANK_MATRIX[(5, b)] == rank

    def test_clamped(self):
        assert classify_issue(0) == classify_issue(1)
        assert classify_issue(12) == classify_issue(5)


def test_clamp_dimension_whole_floats():
    assert clamp_dimension(3.0) == 3
    assert clamp_dimension(8) == 5


@pytest.mark.parametrize("value", [4.7, 0.5, "4.5"])
def test_clamp_dimension_rejects_fractions(value):
    with pytest.raises(ValidationError):
        clamp_dimension(value)
