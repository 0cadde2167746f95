import numpy as np
import pytest
import torch

from ImageBasedRelighting.relighting.core.light_identification import (
    compute_2d_distribution, inverse_cdf_samples, cluster_samples, identify_lights_inverse_cdf,
    median_energy_pixel, identify_median_energy, identify_lights_from_positions, paint_samples)
from ImageBasedRelighting.relighting.core.voronoi import Voronoi

H, W = 32, 64


def bright_pixels_map(*positions) -> torch.Tensor:
    env_map = torch.zeros((H, W, 3), dtype=torch.float32)
    for x, y in positions:
        env_map[y, x] = 100.0
    return env_map


def test_distribution():
    torch.manual_seed(0)
    env_map = torch.rand((H, W, 3))

    pdf, cdf = compute_2d_distribution(env_map)
    assert pdf.shape == (H, W)
    assert cdf.shape == (H * W,)
    assert pdf.sum() == pytest.approx(1.0)
    assert cdf[-1] == pytest.approx(1.0)
    # The first row has no solid angle
    assert np.all(pdf[0] == 0.0)
    assert np.all(np.diff(cdf) >= 0.0)


def test_distribution_ignores_nan_pixels():
    env_map = bright_pixels_map((40, 10))
    env_map[20, 20, 1] = float("nan")

    pdf, _ = compute_2d_distribution(env_map)
    assert pdf[10, 40] == pytest.approx(1.0)


def test_empty_map_raises():
    with pytest.raises(ValueError):
        compute_2d_distribution(torch.zeros((H, W, 3)))
    with pytest.raises(ValueError):
        median_energy_pixel(torch.zeros((H, W, 3)))


def test_inverse_cdf_samples_single_light():
    samples = inverse_cdf_samples(bright_pixels_map((40, 10)), 100)

    assert samples.shape == (100, 2)
    assert np.all(samples[:, 0] == 40)
    assert np.all(samples[:, 1] == 10)


def test_inverse_cdf_samples_follow_the_energy():
    samples = inverse_cdf_samples(bright_pixels_map((10, 16), (50, 16)), 100)

    assert np.sum(samples[:, 0] == 10) == 50
    assert np.sum(samples[:, 0] == 50) == 50


def test_cluster_samples():
    samples = np.array([[10, 16]] * 20 + [[50, 16]] * 20)

    centres = cluster_samples(samples, 2)
    assert sorted(map(tuple, centres.tolist())) == [(10, 16), (50, 16)]

    # Never more clusters than samples
    assert cluster_samples(np.array([[3, 4]]), 5).tolist() == [[3, 4]]


def test_identify_lights_inverse_cdf():
    voronoi = Voronoi(W, H)
    conditions = [bright_pixels_map((40, 10)), bright_pixels_map((10, 16), (50, 16))]

    cell_groups = identify_lights_inverse_cdf(voronoi, conditions, 200, clusters=[1, 2])

    assert cell_groups == [[0], [1, 2]]
    assert voronoi.cell_groups == cell_groups
    assert voronoi.sites[0] == (40, 10)
    assert sorted(voronoi.sites[1:]) == [(10, 16), (50, 16)]

    with pytest.raises(ValueError):
        identify_lights_inverse_cdf(voronoi, conditions, 200, clusters=[1])


def test_median_energy_pixel():
    assert median_energy_pixel(bright_pixels_map((40, 10))) == (40, 10)
    # Half of 16 equal pixels is reached at the first pixel of the third row
    assert median_energy_pixel(torch.ones((4, 4, 3))) == (0, 2)


def test_identify_median_energy():
    voronoi = Voronoi(W, H)
    cell_groups = identify_median_energy(voronoi, [bright_pixels_map((40, 10)), bright_pixels_map((5, 30))])

    assert cell_groups == [[0], [1]]
    assert voronoi.sites == [(40, 10), (5, 30)]


def test_identify_lights_from_positions():
    voronoi = Voronoi(W, H)
    cell_groups = identify_lights_from_positions(voronoi, [[(1, 1), (2, 2)], [(100, 1)], [(3, 3)]])

    assert cell_groups == [[0, 1], [], [2]]
    assert voronoi.number_of_photographs == 3


def test_paint_samples():
    image = torch.zeros((H, W, 3))
    painted = paint_samples(image, np.array([[40, 10], [0, 0]]))

    assert torch.equal(painted[10, 40], torch.tensor([0.0, 1.0, 0.0]))
    assert torch.equal(painted[0, 0], torch.tensor([0.0, 1.0, 0.0]))
    assert float(painted.sum()) == 2.0
    assert float(image.sum()) == 0.0
