"""
Voronoi partition of an equirectangular map.

Every point light of a LightingBasis is a site. A pixel belongs to the cell of
its nearest site (euclidean distance in pixel coordinates, no wraparound at the
left/right border). Cells are indexed by the insertion order of their site and
are never stored explicitly: the partition is a label map computed lazily with
a KD-tree and invalidated whenever a site is inserted.

Several cells can be lit by the same photograph of the reflectance field, the
`cell_groups` list maps each photograph to its cells.
"""
import logging
import cv2
import numpy as np
import torch
from scipy.spatial import cKDTree
from typing import List, Optional, Tuple

from .lighting_basis import LightingBasis
from ..utils.io import write_cell_groups, read_cell_groups, read_point_lights
from ..utils.transforms import normalize_weights_rgb

logger = logging.getLogger(__name__)

DEFAULT_WIDTH = 1024
DEFAULT_HEIGHT = 512
BAND_ROWS = 64  # Rows per band when querying the KD-tree
BOUNDARY_COLOR = (0, 255, 0)


class Voronoi:

    def __init__(self, width: int = DEFAULT_WIDTH, height: int = DEFAULT_HEIGHT):
        self.width = width
        self.height = height
        self.basis = LightingBasis()
        self.cell_groups: List[List[int]] = []

        self._tree: Optional[cKDTree] = None
        self._first_index: Optional[np.ndarray] = None  # KD-tree point -> first site with those coordinates
        self._label_map: Optional[np.ndarray] = None
        self._pixel_counts: Optional[np.ndarray] = None

    @property
    def number_of_cells(self) -> int:
        return self.basis.number_of_point_lights

    @property
    def sites(self) -> List[Tuple[int, int]]:
        return self.basis.point_light_positions

    def _invalidate(self):
        self._tree = None
        self._first_index = None
        self._label_map = None
        self._pixel_counts = None

    def in_domain(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    def set_environment_map_size(self, width: int, height: int):
        """Change the domain. The current sites no longer make sense and are removed."""
        self.width = width
        self.height = height
        self.clear()

    def clear(self):
        self.basis.clear()
        self.cell_groups = []
        self._invalidate()

    def add_point_light(self, position: Tuple[int, int]) -> bool:
        """
        Insert a site. Positions outside of the domain are ignored.

        :return: True if the site was inserted
        """
        x, y = int(position[0]), int(position[1])
        if not self.in_domain(x, y):
            logger.debug(f"Point light ({x}, {y}) is outside of the {self.width}x{self.height} domain, ignored")
            return False

        self.basis.add_point_light((x, y))
        self._invalidate()
        return True

    def add_area_light(self, corner_a: Tuple[int, int], corner_b: Tuple[int, int]):
        """Insert an area light, its centroid becomes a site without any bounds check."""
        self.basis.add_area_light(corner_a, corner_b)
        self._invalidate()

    def uniform_sample_area_lights(self, spacing: int) -> int:
        added = self.basis.uniform_sample(self.width, self.height, spacing)
        self._invalidate()
        return added

    def set_sites(self, positions: List[Tuple[int, int]], cell_groups: Optional[List[List[int]]] = None):
        """
        Bulk insertion of sites.

        Without `cell_groups` every new site is lit by its own photograph (identity mapping).
        With `cell_groups` (indices into `positions`) every group is rewritten to the cells the
        positions were inserted as, dropped positions are removed from their group.
        """
        inserted: List[Optional[int]] = []
        for position in positions:
            inserted.append(self.number_of_cells if self.add_point_light(position) else None)

        dropped = inserted.count(None)
        if dropped:
            logger.warning(f"{dropped} of {len(positions)} sites were outside of the domain and were dropped")

        if cell_groups is None:
            self.cell_groups.extend([[cell] for cell in inserted if cell is not None])
        else:
            unknown = []
            for cells in cell_groups:
                group = []
                for c in cells:
                    if not 0 <= c < len(inserted):
                        unknown.append(c)
                    elif inserted[c] is not None:
                        group.append(inserted[c])
                self.cell_groups.append(group)
            if unknown:
                logger.warning(f"Cell groups reference unknown positions {unknown}, ignored")

        self.validate_cell_groups()

    def add_photograph(self, positions: List[Tuple[int, int]]) -> List[int]:
        """
        Insert the sites lit by one more photograph and register them as its cells.

        :return: cells of the new photograph (sites outside of the domain are skipped)
        """
        cells = []
        for position in positions:
            if self.add_point_light(position):
                cells.append(self.number_of_cells - 1)

        if not cells:
            logger.warning(f"Photograph {self.number_of_photographs} has no site inside of the domain")
        self.cell_groups.append(cells)
        return cells

    def validate_cell_groups(self) -> bool:
        """
        Check that the cell groups partition the set of cells. Violations are logged, never raised.
        """
        n = self.number_of_cells
        seen = np.zeros(n, dtype=np.int64)
        out_of_range = []
        for cells in self.cell_groups:
            for cell in cells:
                if 0 <= cell < n:
                    seen[cell] += 1
                else:
                    out_of_range.append(cell)

        duplicated = np.flatnonzero(seen > 1).tolist()
        missing = np.flatnonzero(seen == 0).tolist()

        if out_of_range:
            logger.warning(f"Cell groups reference unknown cells {out_of_range}")
        if duplicated:
            logger.warning(f"Cells {duplicated} belong to several photographs, the last one is used")
        if missing:
            logger.warning(f"Cells {missing} are not lit by any photograph and will be skipped")

        return not (out_of_range or duplicated or missing)

    def _build_tree(self):
        positions = np.asarray(self.sites, dtype=np.float64).reshape(-1, 2)
        unique_positions, first_index = np.unique(positions, axis=0, return_index=True)
        self._tree = cKDTree(unique_positions)
        self._first_index = first_index.astype(np.int64)

    def nearest_sites(self, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
        """
        Vectorised nearest site lookup.

        Several sites may share the same coordinates, the first inserted one wins.

        :param xs: (...) columns
        :param ys: (...) rows
        :return: (...) cell index, -1 if there is no site
        """
        xs = np.asarray(xs)
        ys = np.asarray(ys)
        if self.number_of_cells == 0:
            return np.full(np.broadcast(xs, ys).shape, -1, dtype=np.int64)

        if self._tree is None:
            self._build_tree()

        points = np.stack(np.broadcast_arrays(xs, ys), axis=-1).reshape(-1, 2).astype(np.float64)
        _, idx = self._tree.query(points, k=1, workers=-1)
        return self._first_index[idx].reshape(np.broadcast(xs, ys).shape)

    def nearest_site(self, x: int, y: int) -> Optional[int]:
        """Index of the cell that contains the pixel (x, y), None if there is no site."""
        cell = int(self.nearest_sites(np.array([x]), np.array([y]))[0])
        return None if cell < 0 else cell

    def label_map(self) -> np.ndarray:
        """
        Cell index of every pixel, built band by band.

        :return: (H, W) int64, -1 everywhere if there is no site
        """
        if self._label_map is not None:
            return self._label_map

        H, W = self.height, self.width
        labels = np.full((H, W), -1, dtype=np.int64)

        if self.number_of_cells > 0:
            xs = np.arange(W)
            for y0 in range(0, H, BAND_ROWS):
                y1 = min(H, y0 + BAND_ROWS)
                xx, yy = np.meshgrid(xs, np.arange(y0, y1))
                labels[y0:y1] = self.nearest_sites(xx, yy)

        self._label_map = labels
        return labels

    def pixels_per_cell(self) -> np.ndarray:
        """Number of pixels of every cell, recomputed after any site insertion."""
        if self._pixel_counts is None:
            labels = self.label_map()
            n = self.number_of_cells
            if n == 0:
                self._pixel_counts = np.zeros(0, dtype=np.int64)
            else:
                self._pixel_counts = np.bincount(labels.ravel(), minlength=n)
        return self._pixel_counts

    def cell_to_photograph_map(self) -> np.ndarray:
        """
        Photograph lighting every cell.

        :return: (n_cells,) int64, -1 for cells without photograph
        """
        mapping = np.full(self.number_of_cells, -1, dtype=np.int64)
        for picture, cells in enumerate(self.cell_groups):
            for cell in cells:
                if 0 <= cell < self.number_of_cells:
                    mapping[cell] = picture
        return mapping

    def cell_to_photograph(self, cell: int) -> Optional[int]:
        if not 0 <= cell < self.number_of_cells:
            return None
        picture = int(self.cell_to_photograph_map()[cell])
        return None if picture < 0 else picture

    @property
    def number_of_photographs(self) -> int:
        return len(self.cell_groups)

    def cell_polygons(self) -> List[List[np.ndarray]]:
        """
        Boundary polygons of every cell.

        :return: for each cell a list of (M, 2) arrays of (x, y) vertices, empty for a zero-area cell
        """
        labels = self.label_map()
        polygons = []
        for cell in range(self.number_of_cells):
            cell_mask = (labels == cell).astype(np.uint8)
            contours, _ = cv2.findContours(cell_mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
            polygons.append([contour.reshape(-1, 2) for contour in contours])
        return polygons

    def save(self, basis_path: str, cell_groups_path: str):
        self.basis.save(basis_path)
        write_cell_groups(cell_groups_path, self.cell_groups)

    def load(self, basis_path: str, cell_groups_path: Optional[str] = None):
        """Replace the partition by the one stored in the given files."""
        positions = read_point_lights(basis_path)
        cell_groups = None if cell_groups_path is None else read_cell_groups(cell_groups_path)

        self.clear()
        self.set_sites(positions, cell_groups)
        logger.info(f"Loaded {self.number_of_cells} cells lit by {self.number_of_photographs} photographs")

    def paint_voronoi(self, image: torch.Tensor) -> torch.Tensor:
        """Draw the boundaries of the cells and their sites on top of an image."""
        canvas = np.ascontiguousarray(image.cpu().numpy().copy())
        color = BOUNDARY_COLOR if canvas.dtype == np.uint8 else tuple(c / 255.0 for c in BOUNDARY_COLOR)

        for contours in self.cell_polygons():
            cv2.polylines(canvas, [contour.reshape(-1, 1, 2).astype(np.int32) for contour in contours], True, color, 1)

        return self.basis.paint_point_lights(torch.from_numpy(canvas))

    def paint_voronoi_cells(self, rgb_weights: torch.Tensor) -> torch.Tensor:
        """
        Fill every cell with its normalised rgb weight.

        :param rgb_weights: (n_cells, 3)
        :return: (H, W, 3) float32
        """
        weights = normalize_weights_rgb(rgb_weights.float())
        peak = torch.max(weights)
        if peak > 0:
            weights = weights / peak
        return _fill(self.label_map(), weights)

    def paint_voronoi_cells_by_photograph(self, rgb_weights: torch.Tensor) -> torch.Tensor:
        """
        Fill every cell with the normalised rgb weight of its photograph.

        :param rgb_weights: (n_photographs, 3)
        :return: (H, W, 3) float32
        """
        weights = normalize_weights_rgb(rgb_weights.float())
        peak = torch.max(weights)
        if peak > 0:
            weights = weights / peak

        photographs = self.cell_to_photograph_map()
        labels = self.label_map()
        picture_labels = np.where(labels >= 0, photographs[np.clip(labels, 0, None)], -1) if len(photographs) else labels
        return _fill(picture_labels, weights)

    def paint_voronoi_intensity(self, intensities: torch.Tensor) -> torch.Tensor:
        """
        Fill every cell with its scalar intensity in gray levels.

        :param intensities: (n_cells,)
        :return: (H, W, 3) float32
        """
        intensities = intensities.float()
        peak = torch.max(intensities) if intensities.numel() else torch.tensor(0.0)
        if peak > 0:
            intensities = intensities / peak
        return _fill(self.label_map(), intensities.unsqueeze(-1).expand(-1, 3))


def _fill(labels: np.ndarray, values: torch.Tensor) -> torch.Tensor:
    """Image where every pixel takes the value of its label, black where the label is -1."""
    H, W = labels.shape
    image = torch.zeros((H, W, 3), dtype=torch.float32)
    valid = labels >= 0
    if values.numel() == 0 or not valid.any():
        return image

    flat_labels = torch.from_numpy(labels[valid])
    image[torch.from_numpy(valid)] = values[flat_labels]
    return image
