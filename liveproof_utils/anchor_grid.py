"""
Liveproof -- Anchor Grid
========================
Anchor centers for the SCRFD feature pyramid.

Each stride level covers a (input_h / stride) x (input_w / stride) grid.
Every cell contributes ``num_anchors`` identical centers at
(x * stride, y * stride), row-major, anchors of one cell adjacent.
Grids are cached per (height, width, stride) in a bounded LRU.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Tuple

import numpy as np

GridKey = Tuple[int, int, int]


class AnchorGrid:
    def __init__(self, num_anchors: int = 1, max_entries: int = 100):
        if num_anchors < 1:
            raise ValueError(f"num_anchors must be >= 1, got {num_anchors}")
        self.num_anchors = num_anchors
        self.max_entries = max(1, int(max_entries))
        self._cache: "OrderedDict[GridKey, np.ndarray]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: GridKey) -> bool:
        return key in self._cache

    def centers(self, height: int, width: int, stride: int) -> np.ndarray:
        """Return a read-only (height * width * num_anchors, 2) float32 array."""
        key = (int(height), int(width), int(stride))
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            self.hits += 1
            return cached

        self.misses += 1
        grid = self._generate(*key)
        self._cache[key] = grid
        if len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)
        return grid

    def _generate(self, height: int, width: int, stride: int) -> np.ndarray:
        ys, xs = np.mgrid[:height, :width]
        centers = np.stack([xs, ys], axis=-1).reshape(-1, 2).astype(np.float32) * stride
        if self.num_anchors > 1:
            centers = np.repeat(centers, self.num_anchors, axis=0)
        centers.setflags(write=False)
        return centers

    def clear(self) -> None:
        self._cache.clear()
        self.hits = 0
        self.misses = 0
