"""
Relighting of a reflectance field captured in a light stage.

Each photograph is lit by a single light of known direction. The directions
become the sites of the partition, one cell per photograph.
"""
import logging
import torch
from typing import Optional

from ..core.voronoi import Voronoi
from ..core.weights import compute_voronoi_weights_rgb, compute_voronoi_weights_gaussian
from ..datatypes import RelightingConfig, WeightEstimate, WeightingKernel
from ..utils.transforms import (cartesian_to_lat_long, normalize_weights_rgb, remove_gamma,
                                change_exposure, gamma_correction)
from .base import composite, ray_trace_background

logger = logging.getLogger(__name__)


class LightStageRelighting:

    def __init__(self, config: RelightingConfig, reflectance_field: torch.Tensor, object_mask: torch.Tensor,
                 light_directions: torch.Tensor, light_intensities: Optional[torch.Tensor] = None):
        """
        :param reflectance_field: (K, H, W, 3) gamma encoded photographs
        :param object_mask: (H, W) bool, True on the background
        :param light_directions: (K, 3) direction from each light towards the object
        :param light_intensities: optional (K, 3) rgb calibration of the lights
        """
        if light_directions.shape[0] != reflectance_field.shape[0]:
            raise ValueError(f"{reflectance_field.shape[0]} photographs but {light_directions.shape[0]} light directions")

        self.config = config
        self.raw_reflectance_field = reflectance_field
        self.object_mask = object_mask
        self.light_directions = light_directions
        self.light_intensities = light_intensities
        self.voronoi = Voronoi(config.env_map_width, config.env_map_height)

        self._reflectance_field: Optional[torch.Tensor] = None

    def prepare_basis(self):
        """One site per light, at the direction from the object towards the light."""
        H, W = self.voronoi.height, self.voronoi.width
        positions = cartesian_to_lat_long(-self.light_directions.float(), H, W)

        self.voronoi.clear()
        self.voronoi.set_sites([tuple(position) for position in positions.tolist()])
        logger.info(f"Light stage basis of {self.voronoi.number_of_cells} lights")

    def load_reflectance_field(self) -> torch.Tensor:
        if self._reflectance_field is None:
            self._reflectance_field = remove_gamma(self.raw_reflectance_field.float(), self.config.gamma)
        return self._reflectance_field

    def compute_weights(self, env_map: torch.Tensor, offset: float, offset_index: int) -> WeightEstimate:
        H, W = env_map.shape[:2]
        if (W, H) != (self.voronoi.width, self.voronoi.height):
            self.voronoi.set_environment_map_size(W, H)
        if self.voronoi.number_of_cells == 0:
            self.prepare_basis()

        if self.config.kernel == WeightingKernel.GAUSSIAN:
            variances_x, variances_y = self.config.gaussian_variances(self.voronoi.number_of_cells)
            weights = compute_voronoi_weights_gaussian(self.voronoi, env_map, offset, variances_x, variances_y,
                                                       light_intensities=self.light_intensities)
        else:
            weights = compute_voronoi_weights_rgb(self.voronoi, env_map, offset, light_intensities=self.light_intensities)

        if self.config.normalize_weights:
            weights = normalize_weights_rgb(weights)

        return WeightEstimate(weights=weights)

    def composite(self, weights: torch.Tensor, env_map: torch.Tensor, offset: float) -> torch.Tensor:
        image = composite(self.load_reflectance_field(), weights)
        image = ray_trace_background(image, self.object_mask, env_map, offset)
        image = change_exposure(image, self.config.exposure)
        return gamma_correction(image, self.config.gamma)
