"""
Relighting of a reflectance field captured with a hand held light source.

The lights of every photograph are either given by the user or loaded from a
basis file and a cell grouping file. A photograph of the room with every light
off is removed from all photographs first.
"""
import logging
import torch
from typing import List, Optional, Sequence, Tuple

from ..core.light_identification import identify_lights_from_positions
from ..core.voronoi import Voronoi
from ..core.weights import compute_voronoi_weights_or, compute_voronoi_weights_gaussian_or
from ..datatypes import IdentificationMethod, RelightingConfig, WeightEstimate, WeightingKernel
from ..utils.transforms import normalize_weights_rgb, change_exposure, gamma_correction
from .base import composite, ray_trace_background, remove_dark_room

logger = logging.getLogger(__name__)


class FreeFormLightStage:

    def __init__(self, config: RelightingConfig, reflectance_field: torch.Tensor, object_mask: torch.Tensor,
                 dark_room: Optional[torch.Tensor] = None,
                 positions_per_photograph: Optional[Sequence[List[Tuple[int, int]]]] = None,
                 basis_path: Optional[str] = None,
                 cell_groups_path: Optional[str] = None):
        self.config = config
        self.raw_reflectance_field = reflectance_field
        self.object_mask = object_mask
        self.dark_room = dark_room
        self.positions_per_photograph = positions_per_photograph
        self.basis_path = basis_path
        self.cell_groups_path = cell_groups_path
        self.voronoi = Voronoi(config.env_map_width, config.env_map_height)

        self._reflectance_field: Optional[torch.Tensor] = None

    def prepare_basis(self):
        method = self.config.identification
        if method == IdentificationMethod.MANUAL:
            if self.positions_per_photograph is None:
                raise ValueError("Manual identification needs the light positions of every photograph")
            identify_lights_from_positions(self.voronoi, self.positions_per_photograph)
        elif method == IdentificationMethod.LOAD:
            if self.basis_path is None:
                raise ValueError("Loading a basis needs a basis file")
            self.voronoi.load(self.basis_path, self.cell_groups_path)
        else:
            raise ValueError(f"Identification {method.value} is not available for free form acquisitions")

        K = self.raw_reflectance_field.shape[0]
        if self.voronoi.number_of_photographs != K:
            raise ValueError(f"The basis describes {self.voronoi.number_of_photographs} photographs, the reflectance field has {K}")

    def load_reflectance_field(self) -> torch.Tensor:
        if self._reflectance_field is None:
            reflectance_field = self.raw_reflectance_field.float()
            if self.dark_room is not None:
                reflectance_field = remove_dark_room(reflectance_field, self.dark_room.float(), self.config.dark_room_exposure)
            self._reflectance_field = reflectance_field
        return self._reflectance_field

    def compute_weights(self, env_map: torch.Tensor, offset: float, offset_index: int) -> WeightEstimate:
        H, W = env_map.shape[:2]
        if (W, H) != (self.voronoi.width, self.voronoi.height):
            self.voronoi.set_environment_map_size(W, H)
        if self.voronoi.number_of_cells == 0:
            self.prepare_basis()

        if self.config.kernel == WeightingKernel.GAUSSIAN:
            variances_x, variances_y = self.config.gaussian_variances(self.voronoi.number_of_photographs)
            weights = compute_voronoi_weights_gaussian_or(self.voronoi, env_map, offset, variances_x, variances_y)
        else:
            weights = compute_voronoi_weights_or(self.voronoi, env_map, offset)

        if self.config.normalize_weights:
            weights = normalize_weights_rgb(weights)

        return WeightEstimate(weights=weights)

    def composite(self, weights: torch.Tensor, env_map: torch.Tensor, offset: float) -> torch.Tensor:
        image = composite(self.load_reflectance_field(), weights)
        # Background seen from the opposite side of the capture setup
        image = ray_trace_background(image, self.object_mask, env_map, offset + torch.pi)
        image = change_exposure(image, self.config.exposure)
        return gamma_correction(image, self.config.gamma)
