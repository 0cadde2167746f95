"""
Identification of the lighting basis of a reflectance field.

Each photograph of an office room reflectance field was captured under one
lighting condition, for which an hdr environment map of the direct light is
available. The lights of a condition are found in its map and inserted in the
Voronoi partition as the cells of that photograph.
"""
import logging
import cv2
import numpy as np
import torch
from typing import List, Sequence, Tuple, Union

from .voronoi import Voronoi
from ..utils.transforms import solid_angle_weights

logger = logging.getLogger(__name__)

KMEANS_ATTEMPTS = 5
KMEANS_MAX_ITERATIONS = 10000
KMEANS_EPSILON = 1e-4
SAMPLE_COLOR = (0.0, 1.0, 0.0)


def _intensity(env_map: torch.Tensor) -> np.ndarray:
    """Mean rgb of every pixel as float64, NaN pixels set to 0."""
    intensity = env_map.double().mean(dim=-1)
    return torch.nan_to_num(intensity, nan=0.0).cpu().numpy()


def compute_2d_distribution(env_map: torch.Tensor) -> Tuple[np.ndarray, np.ndarray]:
    """
    Probability distribution of the energy of an environment map.

    The pdf of a pixel is its mean rgb intensity times the solid angle weight
    of its row, normalised to sum to one. The cdf is its running sum in
    row-major order.

    :param env_map: (H, W, 3)
    :return: pdf (H, W), cdf (H * W,)
    """
    H = env_map.shape[0]
    sin_theta = solid_angle_weights(H).double().numpy()
    pdf = _intensity(env_map) * sin_theta

    total = pdf.sum()
    if total <= 0:
        raise ValueError("The environment map has no energy, its distribution is undefined")

    pdf = pdf / total
    cdf = np.cumsum(pdf.ravel())
    return pdf, cdf


def inverse_cdf_samples(env_map: torch.Tensor, n_samples: int) -> np.ndarray:
    """
    Deterministic importance sampling of an environment map.

    Sample k is the first pixel whose cdf exceeds k / n_samples, so bright
    pixels collect many samples.

    :return: (n_samples, 2) int64 (x, y) pixel coordinates
    """
    H, W = env_map.shape[:2]
    _, cdf = compute_2d_distribution(env_map)

    u = np.arange(n_samples, dtype=np.float64) / n_samples
    flat = np.clip(np.searchsorted(cdf, u, side="right"), 0, H * W - 1)

    ys, xs = np.divmod(flat, W)
    return np.stack([xs, ys], axis=-1).astype(np.int64)


def cluster_samples(samples: np.ndarray, n_clusters: int) -> np.ndarray:
    """
    k-means++ clustering of pixel samples.

    :param samples: (N, 2) (x, y)
    :return: (n_clusters, 2) int64 rounded centres
    """
    n_clusters = min(n_clusters, len(samples))
    criteria = (cv2.TERM_CRITERIA_MAX_ITER + cv2.TERM_CRITERIA_EPS, KMEANS_MAX_ITERATIONS, KMEANS_EPSILON)

    cv2.setRNGSeed(0)
    _, _, centres = cv2.kmeans(samples.astype(np.float32), n_clusters, None, criteria,
                               KMEANS_ATTEMPTS, cv2.KMEANS_PP_CENTERS)
    return np.rint(centres).astype(np.int64)


def identify_lights_inverse_cdf(voronoi: Voronoi,
                                lighting_conditions: Sequence[torch.Tensor],
                                n_samples: int,
                                clusters: Union[int, Sequence[int]] = 1) -> List[List[int]]:
    """
    Find the lights of every lighting condition by clustering inverse cdf samples of its map.

    Args:
        voronoi: partition receiving one photograph per condition
        lighting_conditions: environment map (H, W, 3) of the direct light of every photograph
        n_samples: number of inverse cdf samples per condition
        clusters: number of lights per condition, one value for all or one per condition

    Returns:
        The cells of every photograph
    """
    if isinstance(clusters, int):
        clusters = [clusters] * len(lighting_conditions)
    if len(clusters) != len(lighting_conditions):
        raise ValueError(f"Expected {len(lighting_conditions)} cluster counts, got {len(clusters)}")

    cell_groups = []
    for k, (condition, n_clusters) in enumerate(zip(lighting_conditions, clusters)):
        samples = inverse_cdf_samples(condition, n_samples)
        centres = cluster_samples(samples, n_clusters)
        cells = voronoi.add_photograph([tuple(centre) for centre in centres])
        logger.debug(f"Condition {k}: {len(cells)} lights at {centres.tolist()}")
        cell_groups.append(cells)

    logger.info(f"Inverse CDF identified {voronoi.number_of_cells} lights for {len(lighting_conditions)} conditions")
    return cell_groups


def median_energy_pixel(env_map: torch.Tensor) -> Tuple[int, int]:
    """
    First pixel in row-major order at which the running sum of intensity exceeds half of the total.

    :return: (x, y)
    """
    W = env_map.shape[1]
    running = np.cumsum(_intensity(env_map).ravel())
    total = running[-1]
    if total <= 0:
        raise ValueError("The environment map has no energy, its median is undefined")

    flat = int(np.argmax(running > total / 2.0))
    y, x = divmod(flat, W)
    return x, y


def identify_median_energy(voronoi: Voronoi, lighting_conditions: Sequence[torch.Tensor]) -> List[List[int]]:
    """One light per lighting condition, placed on its median energy pixel."""
    cell_groups = []
    for k, condition in enumerate(lighting_conditions):
        position = median_energy_pixel(condition)
        logger.debug(f"Condition {k}: median energy at {position}")
        cell_groups.append(voronoi.add_photograph([position]))
    return cell_groups


def identify_lights_from_positions(voronoi: Voronoi,
                                   positions_per_photograph: Sequence[Sequence[Tuple[int, int]]]) -> List[List[int]]:
    """Insert light positions chosen by the user, grouped by photograph."""
    return [voronoi.add_photograph(list(positions)) for positions in positions_per_photograph]


def paint_samples(image: torch.Tensor, samples: np.ndarray) -> torch.Tensor:
    """Colour the sampled pixels of a float image in green."""
    painted = image.clone()
    xs = torch.from_numpy(samples[:, 0])
    ys = torch.from_numpy(samples[:, 1])
    painted[ys, xs] = torch.tensor(SAMPLE_COLOR, dtype=painted.dtype)
    return painted
