import numpy as np
import torch
from einops import repeat


def solid_angle_weights(H: int, device: torch.device = None) -> torch.Tensor:
    """
    Solid angle weighting of every row of an equirectangular map.

    Row i covers the colatitude theta = i*pi/H, so its contribution is scaled by sin(theta).
    The first row sits on the north pole and contributes nothing.

    :param H: height
    :param device: torch device to place the result tensor on
    :return: sin_theta: (H, 1)
    """
    rows = torch.arange(H, device=device, dtype=torch.float32)
    sin_theta = torch.clamp(torch.sin(rows * torch.pi / H), min=0.0)  # Avoid tiny negatives at the south pole
    return sin_theta.unsqueeze(-1)


def column_offset(offset: float, W: int) -> int:
    """
    Convert a rotation angle around the vertical axis into a whole number of columns.

    :param offset: rotation in radians, any value (wrapped to [0, 2pi))
    :param W: width
    :return: j_offset in [0, W)
    """
    wrapped = float(np.mod(offset, 2.0 * np.pi))
    return int(np.floor(wrapped * W / (2.0 * np.pi))) % W


def rotate_lat_long_map(env_map: torch.Tensor, offset: float) -> torch.Tensor:
    """
    Rotate an equirectangular map around its vertical axis.

    Pixel (i, j) of the result holds the value found at (i, (j + j_offset) mod W) of the input.

    :param env_map: (H, W, C)
    :param offset: rotation in radians
    :return: rotated map (H, W, C)
    """
    W = env_map.shape[1]
    j_offset = column_offset(offset, W)
    if j_offset == 0:
        return env_map
    return torch.roll(env_map, shifts=-j_offset, dims=1)


def pixel_grid(H: int, W: int, device: torch.device = None) -> torch.Tensor:
    """
    Map of size (H, W, 2) holding the (x, y) = (column, row) coordinate of every pixel.

    :params H: height
    :params W: width
    :return grid: (H, W, 2) float32
    """
    xs = torch.arange(W, device=device, dtype=torch.float32)
    ys = torch.arange(H, device=device, dtype=torch.float32)

    x_map = repeat(xs, "w -> h w", h=H)
    y_map = repeat(ys, "h -> h w", w=W)

    return torch.stack([x_map, y_map], dim=-1)


def cartesian_to_spherical(cartesian_coordinates: torch.Tensor) -> torch.Tensor:
    """
    Convert from cartesian coordinates to (theta, phi) with a y-up convention.

    theta is the colatitude measured from +y in [0, pi].
    phi is the azimuth atan2(x, z) wrapped to [0, 2pi).

    :params cartesian_coordinates (..., 3), not necessarily normalised
    :returns spherical_coordinates (..., 2)
    """
    x, y, z = cartesian_coordinates[..., 0], cartesian_coordinates[..., 1], cartesian_coordinates[..., 2]
    radial_length = torch.sqrt(torch.sum(cartesian_coordinates**2, dim=-1))

    theta = torch.arccos(torch.clamp(y / radial_length, -1.0, 1.0))
    phi = torch.remainder(torch.arctan2(x, z), 2.0 * torch.pi)

    return torch.stack([theta, phi], dim=-1)


def spherical_to_pixel(spherical_coordinates: torch.Tensor, H: int, W: int) -> torch.Tensor:
    """
    Convert (theta, phi) into integer (x, y) pixel coordinates of an equirectangular map.

    :params spherical_coordinates (..., 2)
    :params H: height
    :params W: width
    :returns pixel_coordinates (..., 2) as (column, row)
    """
    theta, phi = spherical_coordinates[..., 0], spherical_coordinates[..., 1]

    x = torch.floor(W * phi / (2.0 * torch.pi)).to(torch.int64).clamp(0, W - 1)
    y = torch.floor(H * theta / torch.pi).to(torch.int64).clamp(0, H - 1)

    return torch.stack([x, y], dim=-1)


def cartesian_to_lat_long(cartesian_coordinates: torch.Tensor, H: int, W: int) -> torch.Tensor:
    """
    Convert from cartesian directions to pixel coordinates of an equirectangular map.

    :params cartesian_coordinates (..., 3)
    :params H: height
    :params W: width
    :returns pixel_coordinates (..., 2)
    """
    spherical_coordinates = cartesian_to_spherical(cartesian_coordinates)
    return spherical_to_pixel(spherical_coordinates, H, W)


def gaussian_2d(x, y, mean_x, mean_y, variance_x, variance_y):
    """Unnormalised anisotropic 2D gaussian. Works on floats, numpy arrays or tensors."""
    dx = x - mean_x
    dy = y - mean_y
    exponent = -(dx * dx) / (2.0 * variance_x) - (dy * dy) / (2.0 * variance_y)
    if isinstance(exponent, torch.Tensor):
        return torch.exp(exponent)
    return np.exp(exponent)


def normalize_weights_rgb(rgb_weights: torch.Tensor) -> torch.Tensor:
    """
    Divide every weight by the largest of the three channel sums.

    Using one divisor for all channels keeps the colour balance of the weights.
    A set of weights that sums to zero is returned unchanged.

    :param rgb_weights: (N, 3)
    :return: normalised weights (N, 3)
    """
    if rgb_weights.numel() == 0:
        return rgb_weights.clone()

    channel_sums = rgb_weights.sum(dim=0)
    divisor = torch.max(channel_sums)
    if divisor == 0:
        return rgb_weights.clone()

    return rgb_weights / divisor


def reorientate_rectangle(corner_a: tuple[int, int], corner_b: tuple[int, int]) -> tuple[tuple[int, int], tuple[int, int]]:
    """
    Return the (upper_left, bottom_right) corners of the rectangle spanned by two opposite corners.
    """
    upper_left = (min(corner_a[0], corner_b[0]), min(corner_a[1], corner_b[1]))
    bottom_right = (max(corner_a[0], corner_b[0]), max(corner_a[1], corner_b[1]))
    return upper_left, bottom_right


def change_exposure(image: torch.Tensor, exposure: float) -> torch.Tensor:
    """Scale an hdr image by 2^exposure (exposure in stops)."""
    if exposure == 0.0:
        return image
    return image * (2.0 ** exposure)


def gamma_correction(image: torch.Tensor, gamma: float = 2.2) -> torch.Tensor:
    """Apply a display gamma, values below zero are clamped first."""
    return torch.pow(torch.clamp(image, min=0.0), 1.0 / gamma)


def remove_gamma(image: torch.Tensor, gamma: float = 2.2) -> torch.Tensor:
    """Linearise a gamma encoded image."""
    return torch.pow(torch.clamp(image, min=0.0), gamma)
