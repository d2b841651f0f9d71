"""
occupancy_grid.py

Read-only occupancy grid used as the single source of obstacle information
while a roadmap is built.

Cell values follow the usual map-server convention:
- -1        unknown
- 0..100    occupancy probability (percent)

A cell is free when 0 <= value < occupied_threshold. Unknown cells are never
free. The grid copies its data on construction and marks it read-only, so one
roadmap generation always sees a stable snapshot.

Coordinates:
- cell (col, row), row-major, row 0 is the lowest y
- world (x, y) = origin + (col, row) * resolution  (lower-left cell corner)
"""

from __future__ import annotations

import math
from enum import IntEnum
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np
from scipy.ndimage import maximum_filter


class CellState(IntEnum):
    UNKNOWN = -1
    FREE = 0
    OCCUPIED = 100


class InvalidGrid(ValueError):
    """Grid dimensions do not match the cell data, or the geometry is unusable."""


Point = Tuple[float, float]

# tolerance (in cells) for a coordinate lying on a cell border
_BORDER_EPS = 1e-9


class OccupancyGrid:
    def __init__(
        self,
        width: int,
        height: int,
        resolution: float,
        data: Iterable[int],
        origin: Sequence[float] = (0.0, 0.0),
        occupied_threshold: int = 50,
    ) -> None:
        """
        :param width: number of cells in X
        :param height: number of cells in Y
        :param resolution: meters per cell (> 0)
        :param data: row-major cell values, len == width * height
        :param origin: world (x, y) of the lower-left corner of cell (0, 0)
        :param occupied_threshold: values >= threshold count as occupied
        """
        try:
            width = int(width)
            height = int(height)
            resolution = float(resolution)
            ox, oy = (float(v) for v in origin)
        except (TypeError, ValueError) as e:
            raise InvalidGrid(f"Malformed grid geometry: {e}") from e

        if width <= 0 or height <= 0:
            raise InvalidGrid(f"Grid must have positive size, got width={width} height={height}")
        if not math.isfinite(resolution) or resolution <= 0:
            raise InvalidGrid(f"Grid resolution must be > 0, got {resolution}")
        if not (math.isfinite(ox) and math.isfinite(oy)):
            raise InvalidGrid(f"Grid origin must be finite, got {(ox, oy)}")

        try:
            raw = np.asarray(list(data) if not isinstance(data, np.ndarray) else data, dtype=float).ravel()
        except (TypeError, ValueError) as e:
            raise InvalidGrid(f"Grid data is not numeric: {e}") from e
        if raw.size != width * height:
            raise InvalidGrid(
                f"Grid data has {raw.size} cells, expected width*height = {width * height}"
            )
        if not np.all(np.isfinite(raw)):
            raise InvalidGrid("Grid data contains NaN or inf; encode unknown cells as -1")
        if np.any((raw < int(CellState.UNKNOWN)) | (raw > int(CellState.OCCUPIED))):
            raise InvalidGrid(
                f"Grid values must lie in [-1, 100], got min={raw.min():g} max={raw.max():g}"
            )

        cells = raw.astype(np.int16).reshape(height, width)
        cells.setflags(write=False)

        free = (cells >= 0) & (cells < int(occupied_threshold))
        free.setflags(write=False)

        self.width = width
        self.height = height
        self.resolution = resolution
        self.origin: Point = (ox, oy)
        self.occupied_threshold = int(occupied_threshold)
        self._cells = cells
        self._free = free

    # ------------------------------------------------------------------ #
    # Constructors
    # ------------------------------------------------------------------ #
    @classmethod
    def from_array(
        cls,
        cells: np.ndarray,
        resolution: float = 1.0,
        origin: Sequence[float] = (0.0, 0.0),
        occupied_threshold: int = 50,
    ) -> "OccupancyGrid":
        """Build from a (height, width) array of cell values, cells[row, col]."""
        arr = np.asarray(cells)
        if arr.ndim != 2:
            raise InvalidGrid(f"Expected 2D cell array, got shape={arr.shape}")
        h, w = arr.shape
        return cls(w, h, resolution, arr.ravel(), origin=origin, occupied_threshold=occupied_threshold)

    @classmethod
    def from_traversability(
        cls,
        traversability: np.ndarray,
        resolution: float = 1.0,
        origin: Sequence[float] = (0.0, 0.0),
        obstacle_threshold: float = 0.0,
    ) -> "OccupancyGrid":
        """
        Convert a traversability map trav[y, x] in [0..1] (walls == 0) to an
        occupancy grid. trav <= obstacle_threshold is occupied, NaN is unknown.
        """
        trav = np.asarray(traversability, dtype=float)
        if trav.ndim != 2:
            raise InvalidGrid(f"Expected 2D traversability map, got shape={trav.shape}")
        cells = np.where(
            np.isnan(trav),
            int(CellState.UNKNOWN),
            np.where(trav > obstacle_threshold, int(CellState.FREE), int(CellState.OCCUPIED)),
        )
        return cls.from_array(cells, resolution=resolution, origin=origin)

    # ------------------------------------------------------------------ #
    # Views
    # ------------------------------------------------------------------ #
    @property
    def shape(self) -> Tuple[int, int]:
        return self.height, self.width

    @property
    def cells(self) -> np.ndarray:
        """Read-only (height, width) array of raw cell values."""
        return self._cells

    @property
    def data(self) -> np.ndarray:
        """Read-only row-major cell values."""
        return self._cells.ravel()

    @property
    def free_mask(self) -> np.ndarray:
        return self._free

    @property
    def free_ratio(self) -> float:
        return float(np.mean(self._free))

    def free_cells(self) -> np.ndarray:
        """(M, 2) int array of free (col, row) indices in row-major order."""
        rows, cols = np.nonzero(self._free)
        return np.stack([cols, rows], axis=1)

    def state(self, col: int, row: int) -> CellState:
        v = int(self._cells[row, col])
        if v < 0:
            return CellState.UNKNOWN
        return CellState.FREE if v < self.occupied_threshold else CellState.OCCUPIED

    # ------------------------------------------------------------------ #
    # Transforms
    # ------------------------------------------------------------------ #
    def in_bounds(self, col: int, row: int) -> bool:
        return 0 <= col < self.width and 0 <= row < self.height

    def cell_of(self, x: float, y: float) -> Tuple[int, int]:
        col = int(math.floor((float(x) - self.origin[0]) / self.resolution))
        row = int(math.floor((float(y) - self.origin[1]) / self.resolution))
        return col, row

    def cell_center(self, col: int, row: int) -> Point:
        return (
            self.origin[0] + (int(col) + 0.5) * self.resolution,
            self.origin[1] + (int(row) + 0.5) * self.resolution,
        )

    def bounds(self) -> Tuple[float, float, float, float]:
        """(x_min, y_min, x_max, y_max) in world units."""
        ox, oy = self.origin
        return ox, oy, ox + self.width * self.resolution, oy + self.height * self.resolution

    # ------------------------------------------------------------------ #
    # Traversability queries
    # ------------------------------------------------------------------ #
    def is_free(self, point: Sequence[float]) -> bool:
        x, y = float(point[0]), float(point[1])
        if not (math.isfinite(x) and math.isfinite(y)):
            return False
        col, row = self.cell_of(x, y)
        if not self.in_bounds(col, row):
            return False
        return bool(self._free[row, col])

    def is_line_free(self, a: Sequence[float], b: Sequence[float]) -> bool:
        """
        True when every cell the closed segment a -> b touches is free and in
        bounds. Cells are walked exactly (supercover traversal): clipping the
        corner of an occupied cell blocks the segment, and so does passing
        through the shared corner of two diagonal obstacle cells.
        """
        ax, ay = float(a[0]), float(a[1])
        bx, by = float(b[0]), float(b[1])
        if not all(math.isfinite(v) for v in (ax, ay, bx, by)):
            return False
        if math.hypot(bx - ax, by - ay) <= 1e-9:
            return True

        cols, rows = self._segment_cells((ax, ay), (bx, by))
        inside = (cols >= 0) & (cols < self.width) & (rows >= 0) & (rows < self.height)
        if not np.all(inside):
            return False
        return bool(np.all(self._free[rows, cols]))

    def _segment_cells(self, a: Point, b: Point) -> Tuple[np.ndarray, np.ndarray]:
        """
        (cols, rows) of every cell touched by the segment a -> b, duplicates
        included. Points on a cell border belong to the cells on both sides.
        """
        x0 = (a[0] - self.origin[0]) / self.resolution
        y0 = (a[1] - self.origin[1]) / self.resolution
        x1 = (b[0] - self.origin[0]) / self.resolution
        y1 = (b[1] - self.origin[1]) / self.resolution

        # segment parameters where it crosses a vertical or horizontal grid line
        ts = [np.array([0.0, 1.0])]
        for p0, p1 in ((x0, x1), (y0, y1)):
            if p1 != p0:
                lines = np.arange(math.ceil(min(p0, p1)), math.floor(max(p0, p1)) + 1, dtype=float)
                ts.append((lines - p0) / (p1 - p0))
        t = np.unique(np.clip(np.concatenate(ts), 0.0, 1.0))

        col_lo, col_hi = _cells_either_side(x0 + t * (x1 - x0))
        row_lo, row_hi = _cells_either_side(y0 + t * (y1 - y0))
        cols = np.concatenate([col_lo, col_lo, col_hi, col_hi])
        rows = np.concatenate([row_lo, row_hi, row_lo, row_hi])
        return cols, rows

    # ------------------------------------------------------------------ #
    # Preprocessing
    # ------------------------------------------------------------------ #
    def inflated(self, cells: int) -> "OccupancyGrid":
        """
        New grid with occupied cells grown by `cells` in every direction
        (square footprint). Unknown cells are left as they are.
        """
        cells = int(cells)
        if cells <= 0:
            return self
        occ = (self._cells >= self.occupied_threshold).astype(np.uint8)
        grown = maximum_filter(occ, size=2 * cells + 1, mode="constant", cval=0) > 0
        out = np.where(grown & (self._cells >= 0), int(CellState.OCCUPIED), self._cells)
        return OccupancyGrid.from_array(
            out,
            resolution=self.resolution,
            origin=self.origin,
            occupied_threshold=self.occupied_threshold,
        )

    def __repr__(self) -> str:
        return (
            f"OccupancyGrid(width={self.width}, height={self.height}, "
            f"resolution={self.resolution}, origin={self.origin}, free_ratio={self.free_ratio:.3f})"
        )


def _cells_either_side(p: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Cell indices (lo, hi) containing each coordinate; lo == hi off a border."""
    hi = np.floor(p + _BORDER_EPS).astype(int)
    on_border = np.abs(p - np.round(p)) <= _BORDER_EPS
    return np.where(on_border, hi - 1, hi), hi
