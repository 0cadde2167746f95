import numpy as np
import pytest
import torch

from ImageBasedRelighting.relighting.core.voronoi import Voronoi
from ImageBasedRelighting.relighting.core.weights import (
    integrate_weights, compute_voronoi_weights_rgb, compute_voronoi_weights_gaussian, compute_voronoi_weights_or,
    compute_voronoi_weights_gaussian_or, compute_voronoi_intensity, compute_weights_masks, solid_angle_radiance)
from ImageBasedRelighting.relighting.utils.transforms import solid_angle_weights


def constant_map(H: int, W: int, value: float = 1.0) -> torch.Tensor:
    return torch.full((H, W, 3), value, dtype=torch.float32)


def half_bright_map(H: int, W: int) -> torch.Tensor:
    env_map = torch.zeros((H, W, 3), dtype=torch.float32)
    env_map[:, :W // 2] = 1.0
    return env_map


def test_constant_map_weights():
    voronoi = Voronoi(1024, 512)
    voronoi.set_sites([(100, 50), (500, 256), (900, 400)])
    env_map = constant_map(512, 1024)

    weights = compute_voronoi_weights_rgb(voronoi, env_map)
    assert weights.shape == (3, 3)
    # Every pixel of a row has the same solid angle
    total = 1024 * float(solid_angle_weights(512).sum())
    assert float(weights[:, 0].sum()) == pytest.approx(total, rel=1e-4)

    normalized = integrate_weights(voronoi, env_map, normalize=True)
    assert float(normalized.sum(dim=0).max()) == pytest.approx(1.0, rel=1e-5)
    assert torch.all(normalized >= 0.0)


@pytest.mark.parametrize("W, site", [(64, (10, 20)), (256, (200, 5))])
def test_single_site_weight_depends_only_on_the_rows(W, site):
    H = 64
    voronoi = Voronoi(W, H)
    voronoi.set_sites([site])

    weights = compute_voronoi_weights_rgb(voronoi, constant_map(H, W))
    # sum of sin(i*pi/H) over the rows tends to 2H/pi
    assert torch.allclose(weights / W, torch.full((1, 3), 2.0 * H / np.pi), rtol=1e-3)


def test_full_rotation_is_identity():
    torch.manual_seed(0)
    voronoi = Voronoi(128, 64)
    voronoi.set_sites([(10, 10), (64, 32), (120, 50)])
    env_map = torch.rand((64, 128, 3))

    assert torch.allclose(compute_voronoi_weights_rgb(voronoi, env_map, 0.0),
                          compute_voronoi_weights_rgb(voronoi, env_map, 2.0 * np.pi))


def test_half_turn_swaps_the_energy():
    voronoi = Voronoi(1024, 512)
    voronoi.set_sites([(256, 256), (767, 256)])
    env_map = half_bright_map(512, 1024)

    weights = compute_voronoi_weights_rgb(voronoi, env_map, 0.0)
    assert float(weights[0, 0]) > 0.0
    assert float(weights[1, 0]) == 0.0

    rotated = compute_voronoi_weights_rgb(voronoi, env_map, np.pi)
    assert float(rotated[0, 0]) == 0.0
    assert torch.allclose(rotated[1], weights[0])


def test_nan_pixels_are_skipped():
    voronoi = Voronoi(64, 32)
    voronoi.set_sites([(10, 10), (50, 20)])

    with_nan = constant_map(32, 64)
    with_nan[16, 5, 0] = float("nan")
    with_zero = constant_map(32, 64)
    with_zero[16, 5] = 0.0

    weights = compute_voronoi_weights_rgb(voronoi, with_nan)
    assert not torch.isnan(weights).any()
    assert torch.allclose(weights, compute_voronoi_weights_rgb(voronoi, with_zero))


def test_per_photograph_weights_sum_their_cells():
    torch.manual_seed(1)
    voronoi = Voronoi(128, 64)
    voronoi.set_sites([(10, 10), (64, 32), (120, 50)], cell_groups=[[0, 2], [1]])
    env_map = torch.rand((64, 128, 3))

    per_cell = compute_voronoi_weights_rgb(voronoi, env_map, 1.0)
    per_photograph = compute_voronoi_weights_or(voronoi, env_map, 1.0)

    assert per_photograph.shape == (2, 3)
    assert torch.allclose(per_photograph[0], per_cell[0] + per_cell[2], rtol=1e-5)
    assert torch.allclose(per_photograph[1], per_cell[1], rtol=1e-5)


def test_cells_without_photograph_are_skipped():
    voronoi = Voronoi(64, 32)
    voronoi.set_sites([(10, 10), (50, 20)], cell_groups=[[1]])
    env_map = constant_map(32, 64)

    per_cell = compute_voronoi_weights_rgb(voronoi, env_map)
    per_photograph = compute_voronoi_weights_or(voronoi, env_map)
    assert torch.allclose(per_photograph[0], per_cell[1])


def test_gaussian_kernel_attenuates_the_weights():
    torch.manual_seed(2)
    voronoi = Voronoi(128, 64)
    voronoi.set_sites([(20, 20), (100, 40)])
    env_map = torch.rand((64, 128, 3))

    point = compute_voronoi_weights_rgb(voronoi, env_map)
    gaussian = compute_voronoi_weights_gaussian(voronoi, env_map, 0.0, 10.0, 10.0)
    assert torch.all(gaussian <= point)
    assert torch.all(gaussian > 0.0)

    wide = compute_voronoi_weights_gaussian(voronoi, env_map, 0.0, 1e9, 1e9)
    assert torch.allclose(wide, point, rtol=1e-4)


def test_gaussian_kernel_is_one_on_the_site():
    voronoi = Voronoi(64, 32)
    voronoi.set_sites([(20, 10)])
    env_map = torch.zeros((32, 64, 3))
    env_map[10, 20] = torch.tensor([1.0, 2.0, 3.0])

    assert torch.allclose(compute_voronoi_weights_gaussian(voronoi, env_map, 0.0, 5.0, 5.0),
                          compute_voronoi_weights_rgb(voronoi, env_map))


def test_gaussian_per_photograph_variances():
    torch.manual_seed(3)
    voronoi = Voronoi(128, 64)
    voronoi.set_sites([(20, 20), (100, 40), (60, 10)], cell_groups=[[0, 2], [1]])
    env_map = torch.rand((64, 128, 3))

    weights = compute_voronoi_weights_gaussian_or(voronoi, env_map, 0.0, [300.0, 10.0], [300.0, 10.0])
    assert weights.shape == (2, 3)
    # Every channel is attenuated the same way
    assert torch.all(weights <= compute_voronoi_weights_or(voronoi, env_map))

    with pytest.raises(ValueError):
        compute_voronoi_weights_gaussian_or(voronoi, env_map, 0.0, [300.0], [300.0])


def test_light_intensities():
    voronoi = Voronoi(64, 32)
    voronoi.set_sites([(10, 10), (50, 20)])
    env_map = constant_map(32, 64)

    weights = compute_voronoi_weights_rgb(voronoi, env_map)
    calibration = torch.tensor([[2.0, 1.0, 1.0], [1.0, 1.0, 0.5]])
    calibrated = compute_voronoi_weights_rgb(voronoi, env_map, light_intensities=calibration)
    assert torch.allclose(calibrated, weights * calibration)

    with pytest.raises(ValueError):
        compute_voronoi_weights_rgb(voronoi, env_map, light_intensities=torch.ones((3, 3)))


def test_voronoi_intensity():
    torch.manual_seed(4)
    voronoi = Voronoi(64, 32)
    voronoi.set_sites([(10, 10), (50, 20)])
    env_map = torch.rand((32, 64, 3))

    intensity = compute_voronoi_intensity(voronoi, env_map)
    assert intensity.shape == (2,)
    assert torch.allclose(intensity, compute_voronoi_weights_rgb(voronoi, env_map).mean(dim=-1))


def test_size_mismatch_and_empty_partition():
    voronoi = Voronoi(64, 32)
    with pytest.raises(ValueError):
        compute_voronoi_weights_rgb(voronoi, constant_map(16, 32))

    assert compute_voronoi_weights_rgb(voronoi, constant_map(32, 64)).shape == (0, 3)


def test_mask_weights_match_the_partition():
    torch.manual_seed(5)
    voronoi = Voronoi(128, 64)
    voronoi.set_sites([(10, 10), (64, 32), (120, 50)])
    env_map = torch.rand((64, 128, 3))

    labels = torch.from_numpy(voronoi.label_map())
    masks = torch.stack([labels == k for k in range(3)], dim=0)

    offset = np.pi / 3.0
    assert torch.allclose(compute_weights_masks(env_map, masks, offset),
                          compute_voronoi_weights_rgb(voronoi, env_map, offset), rtol=1e-4)

    normalized = compute_weights_masks(env_map, masks, offset, normalize=True)
    assert float(normalized.sum(dim=0).max()) == pytest.approx(1.0, rel=1e-5)

    with pytest.raises(ValueError):
        compute_weights_masks(env_map, masks[:, :32], offset)


def test_solid_angle_radiance():
    env_map = constant_map(32, 64)
    env_map[5, 7, 1] = float("nan")

    weighted = solid_angle_radiance(env_map)
    assert torch.all(weighted[5, 7] == 0.0)
    assert torch.all(weighted[0] == 0.0)
    assert float(weighted[16, 0, 0]) == pytest.approx(1.0)
