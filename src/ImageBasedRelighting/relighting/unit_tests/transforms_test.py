import numpy as np
import pytest
import torch

from ImageBasedRelighting.relighting.utils.transforms import (
    solid_angle_weights, column_offset, rotate_lat_long_map, cartesian_to_lat_long, gaussian_2d,
    normalize_weights_rgb, reorientate_rectangle, change_exposure, gamma_correction, remove_gamma, pixel_grid)


def test_solid_angle_weights_sum():
    """The solid angle weights of all rows add up to about 2H/pi, whatever the width."""
    for H in (64, 256, 512):
        sin_theta = solid_angle_weights(H)
        assert sin_theta.shape == (H, 1)
        assert sin_theta[0, 0] == 0.0
        assert float(sin_theta.sum()) == pytest.approx(2.0 * H / np.pi, rel=1e-3)

    print("✓ Solid angle weights sum to 2H/pi")


def test_solid_angle_weights_symmetry():
    sin_theta = solid_angle_weights(32).squeeze(-1)
    # Row i and row H - i are at the same distance from the equator
    assert torch.allclose(sin_theta[1:16], torch.flip(sin_theta[17:], dims=[0]), atol=1e-6)


def test_column_offset_wraps():
    W = 1024
    assert column_offset(0.0, W) == 0
    assert column_offset(2.0 * np.pi, W) == 0
    assert column_offset(np.pi, W) == 512


def test_rotate_lat_long_map_reads_shifted_columns():
    H, W = 4, 8
    env_map = torch.arange(W, dtype=torch.float32).reshape(1, W, 1).expand(H, W, 3).clone()

    rotated = rotate_lat_long_map(env_map, np.pi / 2.0)  # 2 columns
    expected = torch.tensor([(j + 2) % W for j in range(W)], dtype=torch.float32)
    assert torch.equal(rotated[0, :, 0], expected)

    assert torch.equal(rotate_lat_long_map(env_map, 0.0), env_map)
    assert torch.equal(rotate_lat_long_map(env_map, 2.0 * np.pi), env_map)


def test_cartesian_to_lat_long():
    H, W = 512, 1024
    directions = torch.tensor([[0.0, 0.0, 1.0],    # phi = 0, horizon
                               [1.0, 0.0, 0.0],    # phi = pi/2, horizon
                               [0.0, 1.0, 0.0],    # north pole
                               [0.0, -1.0, 0.0]])  # south pole
    pixels = cartesian_to_lat_long(directions, H, W)

    assert pixels[0, 0] == 0
    assert abs(int(pixels[0, 1]) - H // 2) <= 1
    assert abs(int(pixels[1, 0]) - W // 4) <= 1
    assert pixels[2, 1] == 0
    assert pixels[3, 1] == H - 1
    assert torch.all((pixels[:, 0] >= 0) & (pixels[:, 0] < W))


def test_cartesian_to_lat_long_ignores_length():
    directions = torch.tensor([[0.3, -0.2, 0.5]])
    assert torch.equal(cartesian_to_lat_long(directions, 64, 128), cartesian_to_lat_long(directions * 7.0, 64, 128))


def test_gaussian_2d():
    assert gaussian_2d(3.0, 4.0, 3.0, 4.0, 10.0, 10.0) == pytest.approx(1.0)
    assert gaussian_2d(3.0 + np.sqrt(20.0), 4.0, 3.0, 4.0, 10.0, 10.0) == pytest.approx(np.exp(-1.0))

    values = gaussian_2d(torch.tensor([0.0, 1.0]), torch.tensor([0.0, 0.0]), 0.0, 0.0, 1.0, 1.0)
    assert isinstance(values, torch.Tensor)
    assert torch.allclose(values, torch.tensor([1.0, np.exp(-0.5)], dtype=torch.float32))


def test_normalize_weights_rgb():
    weights = torch.tensor([[1.0, 2.0, 3.0],
                            [3.0, 2.0, 1.0],
                            [0.0, 4.0, 0.0]])
    normalized = normalize_weights_rgb(weights)

    # Channel sums are (4, 8, 4), every value is divided by 8
    assert torch.allclose(normalized, weights / 8.0)
    assert float(normalized.sum(dim=0).max()) == pytest.approx(1.0)


def test_normalize_weights_rgb_zero_is_noop():
    weights = torch.zeros((3, 3))
    assert torch.equal(normalize_weights_rgb(weights), weights)
    assert normalize_weights_rgb(torch.zeros((0, 3))).shape == (0, 3)


def test_reorientate_rectangle():
    assert reorientate_rectangle((300, 100), (100, 400)) == ((100, 100), (300, 400))
    assert reorientate_rectangle((100, 400), (300, 100)) == ((100, 100), (300, 400))
    assert reorientate_rectangle((5, 5), (5, 5)) == ((5, 5), (5, 5))


def test_exposure_and_gamma():
    image = torch.tensor([[[0.25, 0.5, 1.0]]])
    assert torch.allclose(change_exposure(image, 1.0), image * 2.0)
    assert torch.equal(change_exposure(image, 0.0), image)
    assert torch.allclose(remove_gamma(gamma_correction(image, 2.2), 2.2), image, atol=1e-6)
    assert torch.all(gamma_correction(torch.tensor([-1.0]), 2.2) == 0.0)


def test_pixel_grid():
    grid = pixel_grid(3, 5)
    assert grid.shape == (3, 5, 2)
    assert grid[2, 4, 0] == 4.0
    assert grid[2, 4, 1] == 2.0
