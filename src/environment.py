"""
environment.py

Synthetic maps for roadmap experiments, configured via config/config.json.

Supports:
- Perlin-based open terrain ("perlin"): low-noise areas become obstacles
- Cave-like underground map using cellular automata ("cave")
- A room split by a straight wall with an optional gap ("wall")

Every generator yields a traversability map trav[y, x] in [0..1]
(walls == 0), which generate_occupancy_grid() turns into an OccupancyGrid.

No roadmap logic here - just map generation.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
from perlin_noise import PerlinNoise
from scipy.ndimage import convolve, label

from occupancy_grid import OccupancyGrid


_MOORE = np.array([[1, 1, 1], [1, 0, 1], [1, 1, 1]], dtype=np.int16)


class EnvironmentGenerator:
    def __init__(
        self,
        width: int = 100,
        height: int = 100,
        map_generator: str = "cave",
        resolution: float = 1.0,
        origin: Sequence[float] = (0.0, 0.0),
        perlin_scale: float = 30.0,
        perlin_octaves: int = 3,
        perlin_seed: int = 0,
        perlin_obstacle_level: float = 0.35,
        cave_fill_prob: float = 0.45,
        cave_birth_limit: int = 4,
        cave_death_limit: int = 3,
        cave_steps: int = 5,
        cave_min_traversability: float = 0.3,
        wall_gap: int = 1,
        wall_thickness: int = 1,
    ):
        """
        :param width:  number of cells in X
        :param height: number of cells in Y
        :param map_generator: "perlin", "cave" or "wall"
        :param resolution: meters per cell of the produced grid
        :param origin: world (x, y) of the grid's lower-left corner
        :param perlin_scale: scale factor for Perlin coordinates
        :param perlin_octaves: number of octaves for Perlin noise
        :param perlin_seed: random seed for Perlin noise and the cave automaton
        :param perlin_obstacle_level: perlin values below this become obstacles
        :param cave_fill_prob: initial probability of a cell being rock
        :param cave_birth_limit: empty cell -> rock if rock neighbours > birth_limit
        :param cave_death_limit: rock cell -> empty if rock neighbours < death_limit
        :param cave_steps: number of automaton steps
        :param cave_min_traversability: minimum traversability inside tunnels (0-1)
        :param wall_gap: gap height (cells) in the dividing wall, 0 = unbroken
        :param wall_thickness: wall thickness in cells
        """
        self.width = int(width)
        self.height = int(height)
        self.map_generator = map_generator.lower()
        self.resolution = float(resolution)
        self.origin = (float(origin[0]), float(origin[1]))

        self.perlin_scale = perlin_scale
        self.perlin_octaves = perlin_octaves
        self.perlin_seed = perlin_seed
        self.perlin_obstacle_level = perlin_obstacle_level

        self.cave_fill_prob = cave_fill_prob
        self.cave_birth_limit = cave_birth_limit
        self.cave_death_limit = cave_death_limit
        self.cave_steps = cave_steps
        self.cave_min_traversability = cave_min_traversability

        self.wall_gap = int(wall_gap)
        self.wall_thickness = int(wall_thickness)

        self.traversability: Optional[np.ndarray] = None

    # ------------------------------------------------------------------ #
    # 1) Public API
    # ------------------------------------------------------------------ #
    def generate_traversability_map(self) -> np.ndarray:
        """(height, width) array in [0, 1], obstacles exactly 0."""
        if self.map_generator == "perlin":
            trav = self._generate_perlin_map()
        elif self.map_generator == "cave":
            trav = self._generate_cave_map()
        elif self.map_generator == "wall":
            trav = self._generate_wall_map()
        else:
            raise ValueError("map_generator must be 'perlin', 'cave' or 'wall'")

        self.traversability = trav
        return trav

    def generate_occupancy_grid(self) -> OccupancyGrid:
        trav = self.generate_traversability_map()
        return OccupancyGrid.from_traversability(trav, resolution=self.resolution, origin=self.origin)

    # ------------------------------------------------------------------ #
    # 2) Perlin-based map
    # ------------------------------------------------------------------ #
    def _noise_field(self, seed: int) -> np.ndarray:
        noise = PerlinNoise(octaves=self.perlin_octaves, seed=seed)
        field = np.zeros((self.height, self.width), dtype=float)
        for y in range(self.height):
            for x in range(self.width):
                field[y, x] = noise([x / self.perlin_scale, y / self.perlin_scale])  # [-1, 1]
        return (field + 1.0) / 2.0

    def _generate_perlin_map(self) -> np.ndarray:
        field = self._noise_field(self.perlin_seed)
        return np.where(field < self.perlin_obstacle_level, 0.0, field)

    # ------------------------------------------------------------------ #
    # 3) Cave-based map (binary cave + gradient traversability)
    # ------------------------------------------------------------------ #
    def _generate_cave_map(self) -> np.ndarray:
        """
        Cellular-automaton cave, rock borders, only the largest open region
        kept. Rock -> 0.0, tunnels -> perlin gradient in [min_trav, 1.0].
        """
        rng = np.random.default_rng(self.perlin_seed)

        # 1 = rock, 0 = empty
        cave = (rng.random((self.height, self.width)) < self.cave_fill_prob).astype(np.int8)
        for _ in range(self.cave_steps):
            cave = self._cave_step(cave)

        cave = self._with_rock_border(cave)
        cave = self._keep_largest_region(cave)

        min_trav = float(np.clip(self.cave_min_traversability, 0.0, 1.0))
        noise_field = self._noise_field(self.perlin_seed + 1)
        return np.where(cave == 0, min_trav + (1.0 - min_trav) * noise_field, 0.0)

    def _cave_step(self, cave: np.ndarray) -> np.ndarray:
        # out-of-bounds neighbours count as rock
        rock_neighbors = convolve(cave.astype(np.int16), _MOORE, mode="constant", cval=1)
        stays_rock = (cave == 1) & (rock_neighbors >= self.cave_death_limit)
        becomes_rock = (cave == 0) & (rock_neighbors > self.cave_birth_limit)
        return (stays_rock | becomes_rock).astype(np.int8)

    @staticmethod
    def _with_rock_border(cave: np.ndarray) -> np.ndarray:
        cave = cave.copy()
        cave[0, :] = 1
        cave[-1, :] = 1
        cave[:, 0] = 1
        cave[:, -1] = 1
        return cave

    @staticmethod
    def _keep_largest_region(cave: np.ndarray) -> np.ndarray:
        """Fill every open region except the largest (4-connected) with rock."""
        labels, n = label(cave == 0)
        if n == 0:
            return cave
        sizes = np.bincount(labels.ravel())
        sizes[0] = 0
        return np.where(labels == int(np.argmax(sizes)), 0, 1).astype(np.int8)

    # ------------------------------------------------------------------ #
    # 4) Wall map
    # ------------------------------------------------------------------ #
    def _generate_wall_map(self) -> np.ndarray:
        """Open room with a vertical wall through the middle column(s)."""
        trav = np.ones((self.height, self.width), dtype=float)
        thickness = max(1, self.wall_thickness)
        x0 = (self.width - thickness) // 2
        trav[:, x0:x0 + thickness] = 0.0

        gap = max(0, min(self.wall_gap, self.height))
        if gap > 0:
            y0 = (self.height - gap) // 2
            trav[y0:y0 + gap, x0:x0 + thickness] = 1.0
        return trav
