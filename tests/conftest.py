import numpy as np
import pytest

from occupancy_grid import CellState, OccupancyGrid


def wall_cells(width: int, height: int, wall_col: int, gap_rows=()) -> np.ndarray:
    cells = np.zeros((height, width), dtype=int)
    cells[:, wall_col] = int(CellState.OCCUPIED)
    for r in gap_rows:
        cells[r, wall_col] = int(CellState.FREE)
    return cells


@pytest.fixture
def free_grid():
    """10x10 fully free grid, 1 m cells."""
    return OccupancyGrid(10, 10, 1.0, [0] * 100)


@pytest.fixture
def gap_grid():
    """11x5 grid, wall in column 5 with a single free cell at row 2."""
    return OccupancyGrid.from_array(wall_cells(11, 5, 5, gap_rows=(2,)))


@pytest.fixture
def closed_grid():
    """11x5 grid, unbroken wall in column 5."""
    return OccupancyGrid.from_array(wall_cells(11, 5, 5))
