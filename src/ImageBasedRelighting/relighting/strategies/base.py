"""
Shared pieces of the relighting strategies.

A strategy prepares the photographs of a reflectance field, computes one rgb
weight per photograph for a rotation of the environment map and composites the
weighted photographs into the relit image. `relight` drives a strategy over
all the rotations of a run.
"""
import logging
import time
import torch
from tqdm import tqdm
from typing import List, Optional, Protocol, Sequence

from ..datatypes import RelightingResult, WeightEstimate
from ..utils.transforms import cartesian_to_spherical, spherical_to_pixel

logger = logging.getLogger(__name__)


class RelightingStrategy(Protocol):

    def load_reflectance_field(self) -> torch.Tensor:
        """Prepared photographs, (K, H, W, 3)."""
        ...

    def compute_weights(self, env_map: torch.Tensor, offset: float, offset_index: int) -> WeightEstimate:
        ...

    def composite(self, weights: torch.Tensor, env_map: torch.Tensor, offset: float) -> torch.Tensor:
        """Relit image ready for display, (H, W, 3)."""
        ...


def composite(reflectance_field: torch.Tensor, weights: torch.Tensor) -> torch.Tensor:
    """
    Linear combination of the photographs of a reflectance field.

    :param reflectance_field: (K, H, W, 3)
    :param weights: (K, 3)
    :return: (H, W, 3)
    """
    if reflectance_field.shape[0] != weights.shape[0]:
        raise ValueError(f"{reflectance_field.shape[0]} photographs but {weights.shape[0]} weights")
    return torch.einsum('khwc,kc->hwc', reflectance_field.float(), weights.to(reflectance_field.device).float())


def background_directions(H: int, W: int, device: torch.device = None) -> torch.Tensor:
    """
    Viewing direction of every pixel of a pinhole camera looking down -z with a 90 degree field of view.

    :return: (H, W, 3)
    """
    half_height = float(H // 2)
    half_width = float(W // 2)

    rows = torch.arange(H, device=device, dtype=torch.float32)
    columns = torch.arange(W, device=device, dtype=torch.float32)
    y, x = torch.meshgrid(-(rows - half_height) / half_height, (columns - half_width) / half_width, indexing="ij")
    z = -torch.ones_like(x)

    directions = torch.stack([x, y, z], dim=-1)
    return directions / torch.linalg.norm(directions, dim=-1, keepdim=True)


def ray_trace_background(image: torch.Tensor, object_mask: torch.Tensor, env_map: torch.Tensor, offset: float,
                         gamma: Optional[float] = None) -> torch.Tensor:
    """
    Replace the background of a relit image by the environment seen through the camera.

    :param image: (H, W, 3) relit image
    :param object_mask: (H, W) bool, True on the background
    :param env_map: (He, We, 3)
    :param offset: rotation of the environment map in radians
    :param gamma: if given, gamma applied to the background pixels only
    :return: (H, W, 3)
    """
    H, W = image.shape[:2]
    He, We = env_map.shape[:2]

    spherical = cartesian_to_spherical(background_directions(H, W, device=image.device))
    theta = spherical[..., 0]
    phi = torch.remainder(spherical[..., 1] + offset, 2.0 * torch.pi)
    pixels = spherical_to_pixel(torch.stack([theta, phi], dim=-1), He, We)

    background = env_map.to(image.device)[pixels[..., 1], pixels[..., 0]].float()
    if gamma is not None:
        background = torch.pow(torch.clamp(background, min=0.0), 1.0 / gamma)

    mask = object_mask.to(image.device).unsqueeze(-1)
    return torch.where(mask, background, image)


def remove_dark_room(reflectance_field: torch.Tensor, dark_room: torch.Tensor, exposure: float = -2.0) -> torch.Tensor:
    """
    Subtract the photograph taken with every light off, scaled by 2^exposure, from every photograph.

    :param reflectance_field: (K, H, W, 3)
    :param dark_room: (H, W, 3)
    :return: (K, H, W, 3) clamped at 0
    """
    return torch.clamp(reflectance_field - dark_room.unsqueeze(0) * (2.0 ** exposure), min=0.0)


def relight(strategy: RelightingStrategy, env_map: torch.Tensor, offsets: Sequence[float]) -> List[RelightingResult]:
    """
    Relight a reflectance field for every rotation of an environment map.
    """
    results = []
    for offset_index, offset in enumerate(tqdm(offsets, desc="Relighting")):
        start_time = time.time()
        estimate = strategy.compute_weights(env_map, offset, offset_index)
        weights_time = time.time() - start_time

        start_time = time.time()
        image = strategy.composite(estimate.weights, env_map, offset)
        composite_time = time.time() - start_time

        logger.info(f"Offset {offset_index} ({offset:.3f} rad): weights {weights_time:.2f}s, compositing {composite_time:.2f}s")

        results.append(RelightingResult(offset=offset,
                                        weights=estimate.weights,
                                        image=image,
                                        scaling_factors=estimate.scaling_factors,
                                        optimisation_state=estimate.optimisation_state,
                                        residual=estimate.residual))
    return results
