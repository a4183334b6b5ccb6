"""Fixed 3x3 grid positions and the image-id <-> position mapping.

Positions are labelled row-major:

    A1 A2 A3
    B1 B2 B3
    C1 C2 C3

A PositionMap is built once per atlas, in input order, and is then used both
to render the prompt and to map the model's per-position answers back to the
originating image ids.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from enum import Enum
from types import MappingProxyType

from gridsight.errors import InputError

GRID_ROWS = 3
GRID_COLUMNS = 3
MAX_ATLAS_IMAGES = GRID_ROWS * GRID_COLUMNS


class GridPosition(str, Enum):
    """One of the nine fixed atlas cells, ordered by (row, column)."""

    A1 = "A1"
    A2 = "A2"
    A3 = "A3"
    B1 = "B1"
    B2 = "B2"
    B3 = "B3"
    C1 = "C1"
    C2 = "C2"
    C3 = "C3"

    @property
    def row(self) -> int:
        """Zero-based row index (A=0, B=1, C=2)."""
        return ord(self.value[0]) - ord("A")

    @property
    def column(self) -> int:
        """Zero-based column index (1=0, 2=1, 3=2)."""
        return int(self.value[1]) - 1

    @property
    def index(self) -> int:
        """Zero-based row-major index."""
        return self.row * GRID_COLUMNS + self.column

    def offset(self, cell_size: int) -> tuple[int, int]:
        """Pixel (left, top) of this cell for a given cell edge length."""
        return self.column * cell_size, self.row * cell_size

    @classmethod
    def ordered(cls) -> list["GridPosition"]:
        return sorted(cls, key=lambda p: p.index)

    @classmethod
    def from_index(cls, index: int) -> "GridPosition":
        if not 0 <= index < MAX_ATLAS_IMAGES:
            raise IndexError(f"Grid index out of range: {index}")
        return cls.ordered()[index]

    @classmethod
    def parse(cls, label: str) -> "GridPosition | None":
        """Parse a label such as ``"b2"`` or ``" A1 "``; None if not a cell."""
        try:
            return cls(label.strip().upper())
        except ValueError:
            return None


class PositionMap(Mapping[str, GridPosition]):
    """Immutable, injective mapping of image id -> grid position.

    Iteration yields image ids in input (= grid) order.

    Example:
        >>> pm = PositionMap.from_image_ids(["a", "b", "c"])
        >>> pm["b"]
        <GridPosition.A2: 'A2'>
        >>> pm.image_at(GridPosition.A3)
        'c'
    """

    __slots__ = ("_forward", "_reverse")

    def __init__(self, assignments: Mapping[str, GridPosition]) -> None:
        forward = dict(assignments)
        reverse: dict[GridPosition, str] = {}
        for image_id, position in forward.items():
            if position in reverse:
                raise InputError(
                    f"Position {position.value} assigned to both "
                    f"{reverse[position]!r} and {image_id!r}"
                )
            reverse[position] = image_id
        self._forward = MappingProxyType(forward)
        self._reverse = MappingProxyType(reverse)

    @classmethod
    def from_image_ids(cls, image_ids: Sequence[str]) -> "PositionMap":
        """Assign positions in input order: first id -> A1, ninth -> C3.

        Raises:
            InputError: If there are no ids, more than nine, or duplicates.
        """
        if not image_ids:
            raise InputError("Atlas generation requires at least one image", field="images")
        if len(image_ids) > MAX_ATLAS_IMAGES:
            raise InputError(
                f"Atlas generation supports at most {MAX_ATLAS_IMAGES} images, "
                f"got {len(image_ids)}",
                field="images",
            )
        if len(set(image_ids)) != len(image_ids):
            raise InputError("Image ids must be unique within an atlas", field="images")

        return cls({image_id: GridPosition.from_index(i) for i, image_id in enumerate(image_ids)})

    def __getitem__(self, image_id: str) -> GridPosition:
        return self._forward[image_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._forward)

    def __len__(self) -> int:
        return len(self._forward)

    def __repr__(self) -> str:
        pairs = ", ".join(f"{k}={v.value}" for k, v in self._forward.items())
        return f"PositionMap({pairs})"

    @property
    def reverse(self) -> Mapping[GridPosition, str]:
        """Read-only position -> image id view."""
        return self._reverse

    def image_at(self, position: GridPosition | str) -> str | None:
        """Image id occupying ``position``, or None if the cell is empty."""
        if isinstance(position, str) and not isinstance(position, GridPosition):
            parsed = GridPosition.parse(position)
            if parsed is None:
                return None
            position = parsed
        return self._reverse.get(position)

    def occupied(self) -> list[GridPosition]:
        """Occupied positions in grid order."""
        return sorted(self._reverse, key=lambda p: p.index)

    def to_dict(self) -> dict[str, str]:
        """Plain ``{image_id: "A1"}`` dict for serialization."""
        return {image_id: position.value for image_id, position in self._forward.items()}
