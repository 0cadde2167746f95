"""
Weight integration over a Voronoi partition of an environment map.

The weight of a cell (or of a photograph, summing all of its cells) is the
radiance of the environment map integrated over the cell:

    w = sum_{(i, j) in cell} L(i, (j + j_offset) mod W) * sin(i * pi / H) * k(i, j)

where j_offset rotates the environment map around its vertical axis and k is
the weighting kernel (1 for POINT, an anisotropic gaussian centred on the site
of the cell for GAUSSIAN). The partition itself is never rotated.
"""
import logging
import torch
from typing import Optional, Sequence, Union

from ..datatypes import WeightingKernel
from ..utils.transforms import (solid_angle_weights, rotate_lat_long_map, gaussian_2d, normalize_weights_rgb,
                               pixel_grid)
from .voronoi import Voronoi, BAND_ROWS

logger = logging.getLogger(__name__)

DEFAULT_VARIANCE = 10.0

Variance = Union[float, Sequence[float], torch.Tensor]


def _as_variances(variance: Variance, n: int, device: torch.device) -> torch.Tensor:
    variances = torch.as_tensor(variance, dtype=torch.float32, device=device)
    if variances.ndim == 0:
        return variances.expand(n)
    if variances.shape[0] != n:
        raise ValueError(f"Expected {n} variances, got {variances.shape[0]}")
    return variances


def integrate_weights(voronoi: Voronoi,
                      env_map: torch.Tensor,
                      offset: float = 0.0,
                      kernel: WeightingKernel = WeightingKernel.POINT,
                      per_photograph: bool = False,
                      variance_x: Variance = DEFAULT_VARIANCE,
                      variance_y: Variance = DEFAULT_VARIANCE,
                      light_intensities: Optional[torch.Tensor] = None,
                      normalize: bool = False) -> torch.Tensor:
    """
    Integrate the radiance of an environment map over the cells of a partition.

    Pixels whose radiance contains a NaN are skipped. Cells without photograph
    are skipped when integrating per photograph.

    Args:
        voronoi: partition of the environment map domain
        env_map: (H, W, 3) linear rgb radiance, H and W must match the partition
        offset: rotation of the environment map in radians
        kernel: POINT or GAUSSIAN
        per_photograph: accumulate per photograph (cell_groups) instead of per cell
        variance_x, variance_y: gaussian variances, scalars or one per output row
        light_intensities: optional (n_cells, 3) rgb calibration of every cell
        normalize: apply normalize_weights_rgb to the result

    Returns:
        (N, 3) weights, N = number of cells or of photographs
    """
    H, W, C = env_map.shape
    if (W, H) != (voronoi.width, voronoi.height):
        raise ValueError(f"Environment map is {W}x{H} but the partition covers {voronoi.width}x{voronoi.height}")
    assert(C == 3), f'The number of channels C:{C} != 3'

    device = env_map.device
    n_cells = voronoi.number_of_cells
    n_out = voronoi.number_of_photographs if per_photograph else n_cells

    weights = torch.zeros((n_out, 3), dtype=torch.float32, device=device)
    if n_cells == 0 or n_out == 0:
        logger.warning("No cell to integrate over, returning empty weights")
        return weights

    if light_intensities is not None:
        light_intensities = light_intensities.to(device=device, dtype=torch.float32)
        if light_intensities.shape != (n_cells, 3):
            raise ValueError(f"Expected light intensities of shape {(n_cells, 3)}, got {tuple(light_intensities.shape)}")

    labels = torch.from_numpy(voronoi.label_map()).to(device)
    rotated = rotate_lat_long_map(env_map.float(), offset)
    sin_theta = solid_angle_weights(H, device=device).expand(H, W)

    targets_of_cell = torch.arange(n_cells, device=device)
    if per_photograph:
        targets_of_cell = torch.from_numpy(voronoi.cell_to_photograph_map()).to(device)

    if kernel == WeightingKernel.GAUSSIAN:
        sites = voronoi.basis.positions_tensor().to(device=device, dtype=torch.float32)
        variances_x = _as_variances(variance_x, n_out, device)
        variances_y = _as_variances(variance_y, n_out, device)
        grid = pixel_grid(H, W, device=device)

    partials = []
    for y0 in range(0, H, BAND_ROWS):
        y1 = min(H, y0 + BAND_ROWS)

        band_labels = labels[y0:y1]
        band_radiance = rotated[y0:y1]
        valid = (band_labels >= 0) & ~torch.isnan(band_radiance).any(dim=-1)

        cells = band_labels[valid]
        targets = targets_of_cell[cells]
        mapped = targets >= 0
        cells, targets = cells[mapped], targets[mapped]

        contribution = band_radiance[valid][mapped] * sin_theta[y0:y1][valid][mapped].unsqueeze(-1)

        if light_intensities is not None:
            contribution = contribution * light_intensities[cells]

        if kernel == WeightingKernel.GAUSSIAN:
            xs = grid[y0:y1, :, 0][valid][mapped]
            ys = grid[y0:y1, :, 1][valid][mapped]
            centres = sites[cells]
            g = gaussian_2d(xs, ys, centres[:, 0], centres[:, 1], variances_x[targets], variances_y[targets])
            contribution = contribution * g.unsqueeze(-1)

        partial = torch.zeros_like(weights)
        partial.index_add_(0, targets, contribution)
        partials.append(partial)

    weights = torch.stack(partials, dim=0).sum(dim=0)

    if normalize:
        weights = normalize_weights_rgb(weights)

    return weights


def compute_voronoi_weights_rgb(voronoi: Voronoi, env_map: torch.Tensor, offset: float = 0.0,
                                light_intensities: Optional[torch.Tensor] = None) -> torch.Tensor:
    """Rgb weight of every cell, (n_cells, 3)."""
    return integrate_weights(voronoi, env_map, offset, WeightingKernel.POINT, per_photograph=False,
                             light_intensities=light_intensities)


def compute_voronoi_weights_gaussian(voronoi: Voronoi, env_map: torch.Tensor, offset: float = 0.0,
                                     variance_x: Variance = DEFAULT_VARIANCE, variance_y: Variance = DEFAULT_VARIANCE,
                                     light_intensities: Optional[torch.Tensor] = None) -> torch.Tensor:
    """Rgb weight of every cell with pixels attenuated by a gaussian centred on the site, (n_cells, 3)."""
    return integrate_weights(voronoi, env_map, offset, WeightingKernel.GAUSSIAN, per_photograph=False,
                             variance_x=variance_x, variance_y=variance_y, light_intensities=light_intensities)


def compute_voronoi_weights_or(voronoi: Voronoi, env_map: torch.Tensor, offset: float = 0.0) -> torch.Tensor:
    """Rgb weight of every photograph, summed over its cells, (n_photographs, 3)."""
    return integrate_weights(voronoi, env_map, offset, WeightingKernel.POINT, per_photograph=True)


def compute_voronoi_weights_gaussian_or(voronoi: Voronoi, env_map: torch.Tensor, offset: float,
                                        variances_x: Variance, variances_y: Variance) -> torch.Tensor:
    """
    Rgb weight of every photograph with a gaussian kernel, one (variance_x, variance_y) per photograph.
    The gaussian of a pixel is centred on the site of its own cell.
    """
    return integrate_weights(voronoi, env_map, offset, WeightingKernel.GAUSSIAN, per_photograph=True,
                             variance_x=variances_x, variance_y=variances_y)


def compute_voronoi_intensity(voronoi: Voronoi, env_map: torch.Tensor, offset: float = 0.0,
                              light_intensities: Optional[torch.Tensor] = None) -> torch.Tensor:
    """Scalar weight of every cell: mean of the rgb weight, (n_cells,)."""
    return compute_voronoi_weights_rgb(voronoi, env_map, offset, light_intensities).mean(dim=-1)


def solid_angle_radiance(env_map: torch.Tensor, offset: float = 0.0) -> torch.Tensor:
    """
    Radiance of the rotated environment map multiplied by the solid angle of its row.
    Pixels containing a NaN are zeroed.

    :param env_map: (H, W, 3)
    :return: (H, W, 3)
    """
    H = env_map.shape[0]
    rotated = rotate_lat_long_map(env_map.float(), offset)
    weighted = rotated * solid_angle_weights(H, device=env_map.device).unsqueeze(-1)
    nan_pixels = torch.isnan(rotated).any(dim=-1, keepdim=True)
    return torch.where(nan_pixels, torch.zeros_like(weighted), weighted)


def compute_weights_masks(env_map: torch.Tensor, masks: torch.Tensor, offset: float = 0.0,
                          normalize: bool = False) -> torch.Tensor:
    """
    Rgb weight of every photograph integrated over its ownership mask.

    :param env_map: (H, W, 3)
    :param masks: (K, H, W) bool, True where the photograph owns the pixel
    :param offset: rotation of the environment map in radians
    :return: (K, 3)
    """
    if masks.shape[1:] != env_map.shape[:2]:
        raise ValueError(f"Masks of shape {tuple(masks.shape[1:])} do not match the environment map {tuple(env_map.shape[:2])}")

    weighted = solid_angle_radiance(env_map, offset)
    weights = torch.einsum('khw,hwc->kc', masks.to(weighted.device, torch.float32), weighted)

    if normalize:
        weights = normalize_weights_rgb(weights)

    return weights

