import torch

from ImageBasedRelighting.relighting.core.lighting_basis import LightingBasis


def test_area_light_is_reoriented_and_adds_its_centroid():
    basis = LightingBasis()
    area_light = basis.add_area_light((300, 100), (100, 400))

    assert area_light.upper_left == (100, 100)
    assert area_light.bottom_right == (300, 400)
    assert area_light.width == 200
    assert area_light.height == 300
    assert basis.point_light_positions == [(200, 250)]
    assert basis.number_of_area_lights == 1


def test_uniform_sample_grid():
    """A 200x300 rectangle sampled every 25 pixels gives an 8x12 grid."""
    basis = LightingBasis()
    basis.add_area_light((100, 100), (300, 400))

    added = basis.uniform_sample(1024, 512, spacing=25)

    assert added == 96
    assert basis.number_of_point_lights == 97  # centroid + grid
    assert basis.are_area_lights_sampled
    assert basis.point_light_positions[1] == (112, 112)
    assert basis.point_light_positions[-1] == (287, 387)
    for x, y in basis.point_light_positions[1:]:
        assert 100 <= x < 300
        assert 100 <= y < 400


def test_uniform_sample_skips_points_outside_of_the_domain():
    basis = LightingBasis()
    basis.add_area_light((0, 0), (100, 100))

    added = basis.uniform_sample(60, 60, spacing=25)

    # 4x4 grid at 12, 37, 62, 87, only 12 and 37 fit in 60 pixels
    assert added == 4


def test_uniform_sample_small_rectangle_adds_its_centroid():
    basis = LightingBasis()
    basis.add_area_light((10, 10), (20, 20))

    assert basis.uniform_sample(1024, 512, spacing=25) == 1
    assert basis.point_light_positions == [(15, 15), (15, 15)]


def test_point_lights_keep_insertion_order():
    basis = LightingBasis()
    basis.add_point_lights([(5, 6), (1, 2)])
    basis.add_area_light((0, 0), (10, 10))
    basis.add_point_light((7.0, 8.0))

    assert basis.point_light_positions == [(5, 6), (1, 2), (5, 5), (7, 8)]
    assert basis.positions_tensor().shape == (4, 2)
    assert basis.positions_tensor().dtype == torch.int64


def test_clear():
    basis = LightingBasis()
    basis.add_area_light((0, 0), (100, 100))
    basis.uniform_sample(1024, 512)
    basis.clear()

    assert basis.number_of_point_lights == 0
    assert basis.number_of_area_lights == 0
    assert not basis.are_area_lights_sampled
    assert basis.positions_tensor().shape == (0, 2)


def test_save_and_load(tmp_path):
    path = tmp_path / "basis.txt"
    basis = LightingBasis()
    basis.add_point_lights([(10, 20), (30, 40), (1023, 511)])
    basis.save(str(path))

    assert path.read_text().splitlines()[1] == "1: 30 40"

    loaded = LightingBasis()
    loaded.load(str(path))
    assert loaded.point_light_positions == basis.point_light_positions


def test_paint_point_and_area_lights():
    image = torch.zeros((64, 128, 3), dtype=torch.float32)
    basis = LightingBasis()
    basis.add_area_light((20, 10), (60, 40))

    painted = basis.paint_point_lights(image)
    assert torch.allclose(painted[25, 40], torch.tensor([1.0, 0.0, 0.0]))
    assert torch.all(image == 0.0)

    outlined = basis.paint_area_lights(image)
    assert torch.allclose(outlined[10, 40], torch.tensor([0.0, 0.0, 1.0]))
    assert torch.all(outlined[25, 40] == 0.0)
