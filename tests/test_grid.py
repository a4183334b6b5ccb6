"""Tests for grid positions and the image-id <-> position map."""

from __future__ import annotations

import pytest

from gridsight.core.grid import MAX_ATLAS_IMAGES, GridPosition, PositionMap
from gridsight.errors import InputError, ValidationError


class TestGridPosition:
    def test_row_major_order(self) -> None:
        labels = [p.value for p in GridPosition.ordered()]
        assert labels == ["A1", "A2", "A3", "B1", "B2", "B3", "C1", "C2", "C3"]

    def test_row_column_index(self) -> None:
        assert (GridPosition.A1.row, GridPosition.A1.column) == (0, 0)
        assert (GridPosition.B3.row, GridPosition.B3.column) == (1, 2)
        assert GridPosition.C2.index == 7

    def test_offset(self) -> None:
        assert GridPosition.A1.offset(341) == (0, 0)
        assert GridPosition.B2.offset(341) == (341, 341)
        assert GridPosition.C3.offset(100) == (200, 200)

    def test_from_index_bounds(self) -> None:
        assert GridPosition.from_index(0) is GridPosition.A1
        assert GridPosition.from_index(8) is GridPosition.C3
        with pytest.raises(IndexError):
            GridPosition.from_index(9)

    @pytest.mark.parametrize(
        "label,expected",
        [("A1", GridPosition.A1), ("b2", GridPosition.B2), (" c3 ", GridPosition.C3)],
    )
    def test_parse_valid(self, label: str, expected: GridPosition) -> None:
        assert GridPosition.parse(label) is expected

    @pytest.mark.parametrize("label", ["D1", "A4", "", "A", "11"])
    def test_parse_invalid(self, label: str) -> None:
        assert GridPosition.parse(label) is None


class TestPositionMap:
    def test_assigns_in_input_order(self) -> None:
        pm = PositionMap.from_image_ids(["img-1", "img-2", "img-3"])

        assert pm.to_dict() == {"img-1": "A1", "img-2": "A2", "img-3": "A3"}
        assert list(pm) == ["img-1", "img-2", "img-3"]

    def test_nine_images_fill_grid(self) -> None:
        ids = [f"i{n}" for n in range(MAX_ATLAS_IMAGES)]
        pm = PositionMap.from_image_ids(ids)

        assert pm["i0"] is GridPosition.A1
        assert pm["i4"] is GridPosition.B2
        assert pm["i8"] is GridPosition.C3
        assert len(pm.occupied()) == 9

    def test_reverse_and_image_at(self) -> None:
        pm = PositionMap.from_image_ids(["a", "b"])

        assert pm.reverse[GridPosition.A2] == "b"
        assert pm.image_at("a1") == "a"
        assert pm.image_at(GridPosition.B1) is None
        assert pm.image_at("Z9") is None

    def test_positions_are_unique(self) -> None:
        pm = PositionMap.from_image_ids(list("abcdefg"))
        assert len(set(pm.values())) == len(pm)

    def test_rejects_empty(self) -> None:
        with pytest.raises(InputError):
            PositionMap.from_image_ids([])

    def test_rejects_more_than_nine(self) -> None:
        with pytest.raises(InputError) as exc_info:
            PositionMap.from_image_ids([str(n) for n in range(10)])
        assert "at most 9" in str(exc_info.value)

    def test_rejects_duplicate_ids(self) -> None:
        with pytest.raises(InputError):
            PositionMap.from_image_ids(["a", "a"])

    def test_rejects_shared_position(self) -> None:
        with pytest.raises(InputError):
            PositionMap({"a": GridPosition.A1, "b": GridPosition.A1})

    def test_input_error_is_validation_error(self) -> None:
        assert issubclass(InputError, ValidationError)
