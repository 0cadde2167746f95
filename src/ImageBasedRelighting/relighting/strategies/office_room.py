"""
Relighting of a reflectance field captured in a room under its own lights.

Each photograph was taken with one lighting condition of the room switched on
(a window, a ceiling light, ...), one of them possibly with every light off
(the indirect light photograph). The lights of a condition are identified in
an environment map of its direct light, or the condition is described by an
ownership mask. The weights can then be refined so that the weighted
conditions reproduce the energy of the target environment map.
"""
import logging
import numpy as np
import torch
from typing import List, Optional, Sequence, Tuple

from ..core.light_identification import (identify_lights_from_positions, identify_lights_inverse_cdf,
                                         identify_median_energy)
from ..core.optimisation import (Optimisation, OptimisationContext, ScalingFactorTable, apply_scaling_factors,
                                 prepare_residual_mask)
from ..core.voronoi import Voronoi
from ..core.weights import compute_weights_masks, compute_voronoi_weights_or, compute_voronoi_weights_gaussian_or
from ..datatypes import (IdentificationMethod, OptimisationMode, OptimisationState, RelightingConfig, WeightEstimate,
                         WeightingKernel)
from ..utils.transforms import normalize_weights_rgb, change_exposure
from .base import composite, ray_trace_background

logger = logging.getLogger(__name__)


class OfficeRoomRelighting:

    def __init__(self, config: RelightingConfig, reflectance_field: torch.Tensor, object_mask: torch.Tensor,
                 masks: Optional[torch.Tensor] = None,
                 lighting_conditions: Optional[Sequence[torch.Tensor]] = None,
                 residual_index: Optional[int] = None,
                 positions_per_photograph: Optional[Sequence[List[Tuple[int, int]]]] = None,
                 basis_path: Optional[str] = None,
                 cell_groups_path: Optional[str] = None,
                 photograph_scaling: Optional[torch.Tensor] = None,
                 scaling_table: Optional[ScalingFactorTable] = None):
        """
        :param reflectance_field: (K, H, W, 3) linear photographs
        :param object_mask: (H, W) bool, True on the background
        :param masks: (K, He, We) bool ownership masks of the conditions
        :param lighting_conditions: K environment maps (He, We, 3) of the direct light of every condition
        :param residual_index: index of the indirect light photograph, if any
        :param photograph_scaling: (K,) or (K, 3) exposure compensation of every photograph
        :param scaling_table: precomputed refinement factors
        """
        self.config = config
        self.raw_reflectance_field = reflectance_field
        self.object_mask = object_mask
        self.masks = masks
        self.lighting_conditions = lighting_conditions
        self.residual_index = residual_index
        self.positions_per_photograph = positions_per_photograph
        self.basis_path = basis_path
        self.cell_groups_path = cell_groups_path
        self.photograph_scaling = photograph_scaling
        self.scaling_table = scaling_table

        self.voronoi = Voronoi(config.env_map_width, config.env_map_height)
        self.starting_point: Optional[np.ndarray] = None
        self._reflectance_field: Optional[torch.Tensor] = None
        self._basis_ready = False

        if masks is not None and residual_index is not None and config.use_residual_mask:
            self.masks = self._with_residual_mask(masks, residual_index)

    @property
    def number_of_photographs(self) -> int:
        return self.raw_reflectance_field.shape[0]

    @staticmethod
    def _with_residual_mask(masks: torch.Tensor, residual_index: int) -> torch.Tensor:
        others = torch.cat([masks[:residual_index], masks[residual_index + 1:]], dim=0)
        prepared = masks.clone()
        prepared[residual_index] = prepare_residual_mask(others, masks[residual_index])
        logger.debug(f"Residual mask of photograph {residual_index} keeps {int(prepared[residual_index].sum())} pixels")
        return prepared

    def prepare_basis(self):
        method = self.config.identification
        if method == IdentificationMethod.MASKS:
            if self.masks is None:
                raise ValueError("Mask based weights need the ownership masks of every condition")
        elif method == IdentificationMethod.MANUAL:
            if self.positions_per_photograph is None:
                raise ValueError("Manual identification needs the light positions of every photograph")
            identify_lights_from_positions(self.voronoi, self.positions_per_photograph)
        elif method == IdentificationMethod.LOAD:
            if self.basis_path is None:
                raise ValueError("Loading a basis needs a basis file")
            self.voronoi.load(self.basis_path, self.cell_groups_path)
        elif method == IdentificationMethod.INVERSE_CDF:
            self._require_lighting_conditions()
            identify_lights_inverse_cdf(self.voronoi, self.lighting_conditions, self.config.inverse_cdf_samples,
                                        self.config.clusters_per_photograph)
        elif method == IdentificationMethod.MEDIAN_ENERGY:
            self._require_lighting_conditions()
            identify_median_energy(self.voronoi, self.lighting_conditions)

        if method != IdentificationMethod.MASKS and self.voronoi.number_of_photographs != self.number_of_photographs:
            raise ValueError(f"The basis describes {self.voronoi.number_of_photographs} photographs, "
                             f"the reflectance field has {self.number_of_photographs}")
        self._basis_ready = True

    def _require_lighting_conditions(self):
        if self.lighting_conditions is None or len(self.lighting_conditions) != self.number_of_photographs:
            raise ValueError("Automatic identification needs the environment map of every lighting condition")

    def load_reflectance_field(self) -> torch.Tensor:
        """
        Compensate the exposure of every photograph and remove the indirect light from the others.
        """
        if self._reflectance_field is None:
            reflectance_field = self.raw_reflectance_field.float().clone()

            if self.photograph_scaling is not None:
                scaling = self.photograph_scaling.float()
                scaling = scaling.reshape(-1, 1, 1, 1) if scaling.ndim == 1 else scaling.reshape(-1, 1, 1, 3)
                reflectance_field = reflectance_field * scaling

            if self.residual_index is not None:
                indirect = reflectance_field[self.residual_index].clone()
                for k in range(self.number_of_photographs):
                    if k != self.residual_index:
                        reflectance_field[k] = reflectance_field[k] - indirect

            self._reflectance_field = torch.clamp(reflectance_field, min=0.0)
        return self._reflectance_field

    def _integrate(self, env_map: torch.Tensor, offset: float) -> torch.Tensor:
        if self.config.identification == IdentificationMethod.MASKS:
            return compute_weights_masks(env_map, self.masks, offset)

        if self.config.kernel == WeightingKernel.GAUSSIAN:
            variances_x, variances_y = self.config.gaussian_variances(self.voronoi.number_of_photographs)
            return compute_voronoi_weights_gaussian_or(self.voronoi, env_map, offset, variances_x, variances_y)

        return compute_voronoi_weights_or(self.voronoi, env_map, offset)

    def _refine(self, weights: torch.Tensor, env_map: torch.Tensor, offset: float,
                offset_index: int) -> WeightEstimate:
        mode = self.config.optimisation
        if self.masks is None:
            raise ValueError("Refining the weights needs the ownership masks of every condition")

        if mode == OptimisationMode.ORIGINAL_SPACE and self.scaling_table is not None:
            factors = self.scaling_table.get(self.config.scene, self.config.room_type, offset_index)
            if factors is not None:
                logger.info(f"Using tabulated scaling factors for {self.config.scene}/{self.config.room_type}, offset {offset_index}")
                return WeightEstimate(weights=apply_scaling_factors(weights, factors),
                                      scaling_factors=torch.from_numpy(factors))

        context = OptimisationContext(env_map=env_map, masks=self.masks, offset=offset, rgb_weights=weights,
                                      scene=self.config.scene, room_type=self.config.room_type)
        optimisation = Optimisation(context, self.config.lower_bound, self.config.upper_bound,
                                    self.config.tolerance, self.config.history_size, self.config.max_iterations)

        if mode == OptimisationMode.ORIGINAL_SPACE:
            solution = optimisation.environment_map_optimisation(self.starting_point)
            # The next rotation starts from this solution
            self.starting_point = solution
        else:
            solution = optimisation.environment_map_pca_optimisation()

        return WeightEstimate(weights=optimisation.rgb_weights,
                              scaling_factors=torch.from_numpy(solution),
                              optimisation_state=optimisation.state,
                              residual=optimisation.residual)

    def compute_weights(self, env_map: torch.Tensor, offset: float, offset_index: int) -> WeightEstimate:
        H, W = env_map.shape[:2]
        if (W, H) != (self.voronoi.width, self.voronoi.height):
            self.voronoi.set_environment_map_size(W, H)
            self._basis_ready = False
        if not self._basis_ready:
            self.prepare_basis()

        weights = self._integrate(env_map, offset)

        estimate = WeightEstimate(weights=weights)
        if self.config.optimisation != OptimisationMode.NONE:
            estimate = self._refine(weights, env_map, offset, offset_index)
            if estimate.optimisation_state == OptimisationState.ABORTED:
                logger.warning(f"Refinement of offset {offset_index} stopped before convergence")

        if self.config.normalize_weights:
            estimate.weights = normalize_weights_rgb(estimate.weights)

        return estimate

    def composite(self, weights: torch.Tensor, env_map: torch.Tensor, offset: float) -> torch.Tensor:
        image = composite(self.load_reflectance_field(), weights)
        image = change_exposure(image, self.config.exposure)
        # Display gamma on the background only
        return ray_trace_background(image, self.object_mask, env_map, offset + torch.pi, gamma=self.config.gamma)
