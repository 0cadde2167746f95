"""
Refinement of the photograph weights by box constrained least squares.

Every photograph k of the reflectance field owns a set of pixels of the
environment map (its ownership mask). Its weight w_k is scaled by a factor v_k
chosen so that the weighted basis reproduces the energy of the rotated map:

    f(v) = sqrt( sum_k sum_{p in mask_k} (v_k * mean(w_k) - I(p))^2 )

with I(p) = mean_rgb(L(i, (j + j_offset) mod W)) * sin(i * pi / H) and v in
[lower_bound, upper_bound]^K. f is convex, SciPy's L-BFGS-B finds its minimum.

The PCA variant measures the same residual after projecting it onto the
principal components of the projection matrix M (M[p, k] = mean(w_k) for the
pixels owned by k).
"""
import json
import logging
import numpy as np
import torch
from dataclasses import dataclass
from pathlib import Path
from scipy.optimize import minimize
from typing import Callable, Dict, Optional, Tuple

from ..datatypes import OptimisationState
from ..utils.io import MissingResourceError
from ..utils.transforms import rotate_lat_long_map, solid_angle_weights

logger = logging.getLogger(__name__)

LOWER_BOUND = 0.0
UPPER_BOUND = 10.0
TOLERANCE = 1e-9
HISTORY_SIZE = 10
MAX_ITERATIONS = 15000
PCA_RELATIVE_TOLERANCE = 1e-6  # Singular values below this fraction of the largest one are dropped

Objective = Tuple[Callable[[np.ndarray], float], Callable[[np.ndarray], np.ndarray]]


@dataclass(frozen=True, eq=False)
class OptimisationContext:
    """Everything the objective needs, captured once per refinement."""
    env_map: torch.Tensor  # (H, W, 3) linear rgb
    masks: torch.Tensor  # (K, H, W) bool ownership masks
    offset: float  # Rotation of the environment map in radians
    rgb_weights: torch.Tensor  # (K, 3) weights before refinement
    scene: str = "scene"
    room_type: str = "office"

    def __post_init__(self):
        K = self.masks.shape[0]
        if self.rgb_weights.shape != (K, 3):
            raise ValueError(f"Expected weights of shape {(K, 3)} for {K} masks, got {tuple(self.rgb_weights.shape)}")
        if self.masks.shape[1:] != self.env_map.shape[:2]:
            raise ValueError(f"Masks of shape {tuple(self.masks.shape[1:])} do not match the environment map {tuple(self.env_map.shape[:2])}")

    @property
    def number_of_lighting_conditions(self) -> int:
        return self.masks.shape[0]

    def target_intensity(self) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Intensity I(p) of every pixel of the rotated environment map.

        :return: intensity (H, W) float64 with NaN pixels set to 0, valid (H, W) bool
        """
        H = self.env_map.shape[0]
        rotated = rotate_lat_long_map(self.env_map.double(), self.offset)
        valid = ~torch.isnan(rotated).any(dim=-1)
        sin_theta = solid_angle_weights(H, device=rotated.device).double()
        intensity = rotated.mean(dim=-1) * sin_theta
        return torch.where(valid, intensity, torch.zeros_like(intensity)), valid

    def weight_intensities(self) -> np.ndarray:
        """Mean of the rgb weight of every photograph, (K,)."""
        return self.rgb_weights.double().mean(dim=-1).cpu().numpy()


def make_objective(context: OptimisationContext) -> Objective:
    """
    Objective and gradient in the original space.

    The sum over the pixels of a mask only depends on the number of owned pixels,
    the sum of their intensities and the sum of their squared intensities, so
    these are reduced once and the closures are O(K).
    """
    intensity, valid = context.target_intensity()
    masks = context.masks.to(intensity.device) & valid.unsqueeze(0)
    masks_d = masks.double()

    counts = masks_d.sum(dim=(1, 2)).cpu().numpy()
    sums = torch.einsum('khw,hw->k', masks_d, intensity).cpu().numpy()
    squares = torch.einsum('khw,hw->k', masks_d, intensity * intensity).cpu().numpy()
    m = context.weight_intensities()

    def squared_residual(v: np.ndarray) -> float:
        terms = counts * (v * m) ** 2 - 2.0 * v * m * sums + squares
        return max(float(np.sum(terms)), 0.0)

    def objective(v: np.ndarray) -> float:
        return float(np.sqrt(squared_residual(v)))

    def gradient(v: np.ndarray) -> np.ndarray:
        f = objective(v)
        if f == 0.0:
            return np.zeros_like(v)
        return (counts * v * m * m - m * sums) / f

    return objective, gradient


def pca_basis(projection_matrix: torch.Tensor, relative_tolerance: float = PCA_RELATIVE_TOLERANCE) -> torch.Tensor:
    """
    Principal components of a (P, K) matrix whose columns are the samples.

    :return: (r, P) components, one per row, r <= K
    """
    mean = projection_matrix.mean(dim=1, keepdim=True)
    centred = projection_matrix - mean
    U, S, _ = torch.linalg.svd(centred, full_matrices=False)

    if S.numel() == 0 or S[0] == 0:
        return torch.zeros((0, projection_matrix.shape[0]), dtype=projection_matrix.dtype, device=projection_matrix.device)

    keep = S > relative_tolerance * S[0]
    return U[:, keep].T


def make_pca_objective(context: OptimisationContext) -> Objective:
    """
    Objective and gradient in the space spanned by the principal components of the projection matrix.

    The mean subtracted by the projection cancels in the difference, so the
    residual is E (M v - I) where E holds the principal components.
    """
    intensity, _ = context.target_intensity()
    P = intensity.numel()
    K = context.number_of_lighting_conditions

    m = torch.from_numpy(context.weight_intensities()).to(intensity.device)
    projection_matrix = context.masks.to(intensity.device).reshape(K, P).T.double() * m.unsqueeze(0)  # (P, K)

    components = pca_basis(projection_matrix)
    logger.debug(f"PCA kept {components.shape[0]} of {K} components")

    A = (components @ projection_matrix).cpu().numpy()  # (r, K)
    b = (components @ intensity.reshape(P)).cpu().numpy()  # (r,)

    def objective(v: np.ndarray) -> float:
        return float(np.linalg.norm(A @ v - b))

    def gradient(v: np.ndarray) -> np.ndarray:
        residual = A @ v - b
        f = float(np.linalg.norm(residual))
        if f == 0.0:
            return np.zeros_like(v)
        return A.T @ residual / f

    return objective, gradient


class Optimisation:
    """
    Box constrained refinement of the weights of the photographs of a reflectance field.
    """

    def __init__(self, context: OptimisationContext,
                 lower_bound: float = LOWER_BOUND,
                 upper_bound: float = UPPER_BOUND,
                 tolerance: float = TOLERANCE,
                 history_size: int = HISTORY_SIZE,
                 max_iterations: int = MAX_ITERATIONS):
        self.context = context
        self.lower_bound = lower_bound
        self.upper_bound = upper_bound
        self.tolerance = tolerance
        self.history_size = history_size
        self.max_iterations = max_iterations

        self.rgb_weights = context.rgb_weights.clone()
        self.state = OptimisationState.IDLE
        self.solution: Optional[np.ndarray] = None
        self.residual: Optional[float] = None

    def _starting_point(self, starting_point) -> np.ndarray:
        K = self.context.number_of_lighting_conditions
        if starting_point is None:
            return np.ones(K, dtype=np.float64)

        x0 = np.asarray(starting_point, dtype=np.float64).reshape(-1)
        if x0.shape[0] != K:
            raise ValueError(f"Expected a starting point with {K} values, got {x0.shape[0]}")
        return np.clip(x0, self.lower_bound, self.upper_bound)

    def _solve(self, objective_and_gradient: Objective, starting_point, label: str) -> np.ndarray:
        objective, gradient = objective_and_gradient
        x0 = self._starting_point(starting_point)
        K = x0.shape[0]

        self.state = OptimisationState.OPTIMISING
        logger.info(f"Starting optimisation in {label} for {K} lighting conditions")
        logger.debug(f"Starting point {x0}")

        result = minimize(objective, x0, jac=gradient, method="L-BFGS-B",
                          bounds=[(self.lower_bound, self.upper_bound)] * K,
                          options={"maxcor": self.history_size, "ftol": self.tolerance,
                                   "gtol": 1e-12, "maxiter": self.max_iterations})

        solution = np.clip(result.x, self.lower_bound, self.upper_bound)
        self.solution = solution
        self.residual = float(objective(solution))

        if result.success:
            self.state = OptimisationState.CONVERGED
            logger.info(f"Optimisation converged after {result.nit} iterations, residual {self.residual:.6g}")
        else:
            self.state = OptimisationState.ABORTED
            logger.warning(f"Optimisation did not converge ({result.message}), applying the best solution found")

        logger.debug(f"Solution {solution}")

        self.rgb_weights = self.rgb_weights * torch.from_numpy(solution).to(self.rgb_weights).unsqueeze(-1)
        return solution

    def environment_map_optimisation(self, starting_point=None) -> np.ndarray:
        """
        Refine the weights in the original space.

        :param starting_point: (K,) initial factors, ones by default
        :return: (K,) factors applied to the weights
        """
        return self._solve(make_objective(self.context), starting_point, "original space")

    def environment_map_pca_optimisation(self, starting_point=None) -> np.ndarray:
        """
        Refine the weights in PCA space.

        :param starting_point: (K,) initial factors, ones by default
        :return: (K,) factors applied to the weights
        """
        return self._solve(make_pca_objective(self.context), starting_point, "PCA space")


def prepare_residual_mask(condition_masks: torch.Tensor, residual_mask: torch.Tensor) -> torch.Tensor:
    """
    Restrict the mask of the indirect light photograph to the pixels no other condition owns.

    :param condition_masks: (K, H, W) bool masks of the other lighting conditions
    :param residual_mask: (H, W) bool mask of the indirect light photograph
    :return: (H, W) bool
    """
    if condition_masks.shape[0] == 0:
        return residual_mask.clone()
    return residual_mask & ~condition_masks.any(dim=0)


class ScalingFactorTable:
    """
    Precomputed refinement factors, keyed by (scene, room type, offset index).

    Stored as JSON: {"<scene>": {"<room_type>": {"<offset_index>": [v_0, ..., v_K-1]}}}
    """

    def __init__(self, entries: Optional[Dict[str, Dict[str, Dict[str, list]]]] = None):
        self.entries = entries or {}

    @classmethod
    def load(cls, path: str) -> "ScalingFactorTable":
        path = Path(path)
        if not path.is_file():
            raise MissingResourceError(f"Cannot open the scaling factor table {path}")
        with open(path, "r") as f:
            entries = json.load(f)
        logger.info(f"Loaded scaling factors for {len(entries)} scenes from {path}")
        return cls(entries)

    def save(self, path: str):
        with open(path, "w") as f:
            json.dump(self.entries, f, indent=2)

    def get(self, scene: str, room_type: str, offset_index: int) -> Optional[np.ndarray]:
        factors = self.entries.get(scene, {}).get(room_type, {}).get(str(offset_index))
        if factors is None:
            return None
        return np.asarray(factors, dtype=np.float64)

    def set(self, scene: str, room_type: str, offset_index: int, factors):
        self.entries.setdefault(scene, {}).setdefault(room_type, {})[str(offset_index)] = [float(v) for v in factors]

    def __contains__(self, key) -> bool:
        scene, room_type, offset_index = key
        return self.get(scene, room_type, offset_index) is not None


def apply_scaling_factors(rgb_weights: torch.Tensor, factors) -> torch.Tensor:
    """Scale the weight of every photograph by its factor, (K, 3) * (K,)."""
    factors = torch.as_tensor(np.asarray(factors), dtype=rgb_weights.dtype, device=rgb_weights.device)
    if factors.shape[0] != rgb_weights.shape[0]:
        raise ValueError(f"Expected {rgb_weights.shape[0]} scaling factors, got {factors.shape[0]}")
    return rgb_weights * factors.unsqueeze(-1)
