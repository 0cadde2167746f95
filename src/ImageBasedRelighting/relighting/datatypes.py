"""
Common data types for image based relighting.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Tuple, Optional, List
import torch


class IdentificationMethod(Enum):
    """How the lighting basis of a reflectance field is found."""
    MANUAL = "manual"                # Positions given per photograph
    LOAD = "load"                    # Basis and cell grouping read from files
    INVERSE_CDF = "inverse_cdf"      # Samples of the lighting condition clustered with k-means
    MEDIAN_ENERGY = "median_energy"  # One light per photograph at its median energy pixel
    MASKS = "masks"                  # No partition, weights integrated over ownership masks


class WeightingKernel(Enum):
    """Kernel applied to every pixel of a cell while integrating weights."""
    POINT = "point"
    GAUSSIAN = "gaussian"


class OptimisationMode(Enum):
    NONE = "none"
    ORIGINAL_SPACE = "original_space"
    PCA_SPACE = "pca_space"


class OptimisationState(Enum):
    IDLE = "idle"
    OPTIMISING = "optimising"
    CONVERGED = "converged"
    ABORTED = "aborted"


class RelightingStrategyName(Enum):
    LIGHT_STAGE = "light_stage"
    FREE_FORM = "free_form"
    OFFICE_ROOM = "office_room"


@dataclass(frozen=True)
class AreaLight:
    """An axis aligned rectangle of the environment map domain."""
    upper_left: Tuple[int, int]  # (x, y)
    bottom_right: Tuple[int, int]  # (x, y)

    @property
    def width(self) -> int:
        return self.bottom_right[0] - self.upper_left[0]

    @property
    def height(self) -> int:
        return self.bottom_right[1] - self.upper_left[1]

    @property
    def centroid(self) -> Tuple[int, int]:
        return (round((self.upper_left[0] + self.bottom_right[0]) / 2),
                round((self.upper_left[1] + self.bottom_right[1]) / 2))


@dataclass
class RelightingConfig:
    """Parameters of a relighting run."""
    strategy: RelightingStrategyName = RelightingStrategyName.LIGHT_STAGE
    env_map_width: int = 1024
    env_map_height: int = 512

    # Weights
    kernel: WeightingKernel = WeightingKernel.POINT
    gaussian_variance_x: float = 10.0  # Per-cell gaussian kernel
    gaussian_variance_y: float = 10.0
    free_form_gaussian_variance_x: float = 300.0
    free_form_gaussian_variance_y: float = 300.0
    photograph_variances: Optional[List[Tuple[float, float]]] = None  # (x, y) per photograph, overrides the above
    normalize_weights: bool = True

    # Lighting basis
    identification: IdentificationMethod = IdentificationMethod.MANUAL
    area_light_spacing: int = 25
    inverse_cdf_samples: int = 1000
    clusters_per_photograph: int = 1

    # Refinement
    optimisation: OptimisationMode = OptimisationMode.NONE
    lower_bound: float = 0.0
    upper_bound: float = 10.0
    tolerance: float = 1e-9
    max_iterations: int = 15000
    history_size: int = 10
    use_residual_mask: bool = False

    # Rotations and display
    number_of_offsets: int = 1
    exposure: float = 0.0
    gamma: float = 2.2
    dark_room_exposure: float = -2.0

    scene: str = "scene"
    room_type: str = "office"

    def offsets(self) -> List[float]:
        """Rotations 2*pi*l/n around the vertical axis, l = 0..n-1."""
        n = max(1, self.number_of_offsets)
        return [2.0 * torch.pi * l / n for l in range(n)]

    def gaussian_variances(self, number_of_photographs: int) -> Tuple[List[float], List[float]]:
        """
        Variances along x and y of the gaussian kernel of every photograph.
        """
        if self.photograph_variances is not None:
            if len(self.photograph_variances) != number_of_photographs:
                raise ValueError(f"Expected {number_of_photographs} photograph variances, "
                                 f"got {len(self.photograph_variances)}")
            return ([float(x) for x, _ in self.photograph_variances],
                    [float(y) for _, y in self.photograph_variances])

        if self.strategy == RelightingStrategyName.FREE_FORM:
            x, y = self.free_form_gaussian_variance_x, self.free_form_gaussian_variance_y
        else:
            x, y = self.gaussian_variance_x, self.gaussian_variance_y
        return [x] * number_of_photographs, [y] * number_of_photographs

    def to_dict(self) -> dict:
        result = {}
        for key, value in self.__dict__.items():
            result[key] = value.value if isinstance(value, Enum) else value
        return result


@dataclass
class RelightingResult:
    """Relit image and the weights used to build it for one rotation of the environment map."""
    offset: float
    weights: torch.Tensor  # (K, 3) weight of every photograph
    image: torch.Tensor  # (H, W, 3) relit image
    scaling_factors: Optional[torch.Tensor] = None  # (K,) refinement factors if any
    optimisation_state: OptimisationState = OptimisationState.IDLE
    residual: Optional[float] = None  # Objective at the solution

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'offset': self.offset,
            'weights': self.weights.cpu().tolist(),
            'scaling_factors': None if self.scaling_factors is None else self.scaling_factors.cpu().tolist(),
            'optimisation_state': self.optimisation_state.value,
            'residual': self.residual,
        }


@dataclass
class WeightEstimate:
    """Weights of the photographs for one rotation, before compositing."""
    weights: torch.Tensor  # (K, 3)
    scaling_factors: Optional[torch.Tensor] = None  # (K,)
    optimisation_state: OptimisationState = OptimisationState.IDLE
    residual: Optional[float] = None
