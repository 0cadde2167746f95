"""
Lighting basis of a reflectance field.

A basis is an ordered registry of point lights (integer pixel positions of an
equirectangular map) and of area lights (axis aligned rectangles). Every area
light also registers its centroid as a point light, so the index of a point
light is its insertion order whatever the way it was added.
"""
import logging
import cv2
import numpy as np
import torch
from typing import List, Tuple

from ..datatypes import AreaLight
from ..utils.transforms import reorientate_rectangle
from ..utils.io import write_point_lights, read_point_lights

logger = logging.getLogger(__name__)

DEFAULT_SPACING = 25  # Pixels between two samples of a uniformly sampled area light
POINT_LIGHT_COLOR = (255, 0, 0)
AREA_LIGHT_COLOR = (0, 0, 255)


class LightingBasis:

    def __init__(self):
        self.point_light_positions: List[Tuple[int, int]] = []
        self.area_light_rectangles: List[AreaLight] = []
        self.are_area_lights_sampled = False

    @property
    def number_of_point_lights(self) -> int:
        return len(self.point_light_positions)

    @property
    def number_of_area_lights(self) -> int:
        return len(self.area_light_rectangles)

    def add_point_light(self, position: Tuple[int, int]):
        self.point_light_positions.append((int(position[0]), int(position[1])))

    def add_point_lights(self, positions: List[Tuple[int, int]]):
        for position in positions:
            self.add_point_light(position)

    def add_area_light(self, corner_a: Tuple[int, int], corner_b: Tuple[int, int]) -> AreaLight:
        """
        Register the rectangle spanned by two opposite corners and its centroid as a point light.
        """
        upper_left, bottom_right = reorientate_rectangle(corner_a, corner_b)
        area_light = AreaLight(upper_left=upper_left, bottom_right=bottom_right)

        self.area_light_rectangles.append(area_light)
        self.add_point_light(area_light.centroid)
        return area_light

    def add_area_lights(self, corners: List[Tuple[Tuple[int, int], Tuple[int, int]]]):
        for corner_a, corner_b in corners:
            self.add_area_light(corner_a, corner_b)

    def uniform_sample(self, width: int, height: int, spacing: int = DEFAULT_SPACING) -> int:
        """
        Replace every area light by a regular grid of point lights.

        A rectangle larger than `spacing` in both directions is divided into
        (w // spacing) x (h // spacing) tiles and a point light is added at the
        centre of each tile. Smaller rectangles add their centroid instead.
        Points outside [0, width) x [0, height) are skipped.

        Args:
            width: width of the environment map
            height: height of the environment map
            spacing: distance in pixels between two samples

        Returns:
            Number of point lights added
        """
        before = self.number_of_point_lights

        for area_light in self.area_light_rectangles:
            w, h = area_light.width, area_light.height

            if w > spacing and h > spacing:
                nx, ny = w // spacing, h // spacing
                step_x, step_y = w // nx, h // ny
                start_x = area_light.upper_left[0] + step_x // 2
                start_y = area_light.upper_left[1] + step_y // 2

                for iy in range(ny):
                    for ix in range(nx):
                        px = start_x + ix * step_x
                        py = start_y + iy * step_y
                        if 0 <= px < width and 0 <= py < height:
                            self.add_point_light((px, py))
            else:
                self.add_point_light(area_light.centroid)

        self.are_area_lights_sampled = True
        added = self.number_of_point_lights - before
        logger.debug(f"Uniform sampling of {self.number_of_area_lights} area lights added {added} point lights")
        return added

    def clear(self):
        self.point_light_positions = []
        self.area_light_rectangles = []
        self.are_area_lights_sampled = False

    def save(self, path: str):
        """Write the point light positions as `<index>: <x> <y>` lines."""
        write_point_lights(path, self.point_light_positions)
        logger.info(f"Saved {self.number_of_point_lights} point lights to {path}")

    def load(self, path: str):
        """Append the point lights stored in `path` in file order."""
        positions = read_point_lights(path)
        self.add_point_lights(positions)
        logger.info(f"Loaded {len(positions)} point lights from {path}")

    def positions_tensor(self) -> torch.Tensor:
        """(N, 2) int64 tensor of (x, y) point light positions."""
        return torch.tensor(self.point_light_positions, dtype=torch.int64).reshape(-1, 2)

    def paint_point_lights(self, image: torch.Tensor, radius: int = 4) -> torch.Tensor:
        """
        Draw every point light as a filled circle.

        :param image: (H, W, 3) rgb
        :return: copy of the image with the lights drawn
        """
        canvas, color = _canvas(image, POINT_LIGHT_COLOR)
        for x, y in self.point_light_positions:
            cv2.circle(canvas, (int(x), int(y)), radius, color, thickness=-1)
        return torch.from_numpy(canvas)

    def paint_area_lights(self, image: torch.Tensor, thickness: int = 3) -> torch.Tensor:
        """
        Draw the outline of every area light.

        :param image: (H, W, 3) rgb
        :return: copy of the image with the rectangles drawn
        """
        canvas, color = _canvas(image, AREA_LIGHT_COLOR)
        for area_light in self.area_light_rectangles:
            cv2.rectangle(canvas, area_light.upper_left, area_light.bottom_right, color, thickness=thickness)
        return torch.from_numpy(canvas)


def _canvas(image: torch.Tensor, color_8bit: Tuple[int, int, int]) -> Tuple[np.ndarray, Tuple]:
    """Contiguous numpy copy of an image and the drawing colour in its value range."""
    canvas = np.ascontiguousarray(image.cpu().numpy().copy())
    if canvas.dtype == np.uint8:
        return canvas, color_8bit
    return canvas, tuple(float(c) / 255.0 for c in color_8bit)
