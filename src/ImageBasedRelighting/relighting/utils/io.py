import os

os.environ['OPENCV_IO_ENABLE_OPENEXR'] = '1'

import logging
import cv2
import torch
import numpy as np
from pathlib import Path

logger = logging.getLogger(__name__)


class MissingResourceError(FileNotFoundError):
    """An image or text file required by an operation is missing or unreadable."""


def _imread_rgb(path: str) -> np.ndarray:
    image = cv2.imread(str(path), cv2.IMREAD_ANYCOLOR | cv2.IMREAD_ANYDEPTH)
    if image is None:
        raise MissingResourceError(f"Could not read image file: {path}")

    if image.ndim == 2:
        image = cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)
    elif image.shape[2] == 4:
        image = cv2.cvtColor(image, cv2.COLOR_BGRA2RGB)
    else:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

    return image


def read_environment_map(path: str) -> torch.Tensor:
    """
    Read an hdr environment map (.exr, .hdr, .pfm) as linear rgb.

    :param path: path to the environment map
    :return image: (H, W, 3) float32
    """
    image_rgb = _imread_rgb(path)

    H, W, C = image_rgb.shape
    assert(C == 3), f'The number of channels C:{C} != 3 which is not possible...'
    logger.debug(f"Loaded environment map {Path(path).name} with shape {image_rgb.shape}")

    return torch.from_numpy(np.ascontiguousarray(image_rgb.astype(np.float32)))


def read_image(path: str) -> torch.Tensor:
    """
    Read any image as float32 rgb. 8 and 16 bit images are scaled to [0, 1].

    :param path: path to the image
    :return image: (H, W, 3)
    """
    image_rgb = _imread_rgb(path)

    if image_rgb.dtype == np.uint8:
        image_rgb = image_rgb.astype(np.float32) / 255.0
    elif image_rgb.dtype == np.uint16:
        image_rgb = image_rgb.astype(np.float32) / 65535.0
    else:
        image_rgb = image_rgb.astype(np.float32)

    return torch.from_numpy(np.ascontiguousarray(image_rgb))


def reflectance_field_paths(folder: str, prefix: str, extension: str, n_images: int) -> list[Path]:
    """
    Paths of a reflectance field stored as <prefix>0000<extension>, <prefix>0001<extension>, ...
    """
    return [Path(folder) / f"{prefix}{i:04d}{extension}" for i in range(n_images)]


def read_reflectance_field(paths: list[str]) -> torch.Tensor:
    """
    Read in list of photographs of the same object under different lighting conditions.

    : return images: (K, H, W, 3)
    """
    images = [read_image(path) for path in paths]

    shapes = {tuple(image.shape) for image in images}
    if len(shapes) > 1:
        raise ValueError(f"All photographs of a reflectance field must share one shape, got {shapes}")

    return torch.stack(images, dim=0)


def read_ownership_masks(paths: list[str]) -> torch.Tensor:
    """
    Read the ownership masks of a set of photographs.
    A pixel belongs to a photograph when it is black in its mask (all channels < 127).

    :param paths: one mask per photograph
    :return masks: (K, H, W) bool
    """
    masks = []
    for path in paths:
        image = cv2.imread(str(path), cv2.IMREAD_COLOR)
        if image is None:
            raise MissingResourceError(f"Could not read mask file: {path}")
        masks.append(torch.from_numpy(np.all(image < 127, axis=-1)))

    return torch.stack(masks, dim=0)


def read_object_mask(path: str) -> torch.Tensor:
    """
    Read the object mask of a reflectance field. White (> 0.5) marks the background.

    :return mask: (H, W) bool, True on the background
    """
    image = read_image(path)
    return image[..., 0] > 0.5


def write_exr(image: torch.Tensor, exr_path: str):
    """
    Write an image to an exr file.

    :param image: (H, W, 3)
    :param exr_path: path to write the exr file to
    """
    cv2.imwrite(str(exr_path), cv2.cvtColor(image.cpu().numpy().astype(np.float32), cv2.COLOR_RGB2BGR))


def write_png(image: torch.Tensor, png_path: str, gamma: float = 2.2, exposure: float = 0.0):
    """
    Write a tensor image to PNG for display.

    :param image: (H, W, 3) tensor
    :param png_path: path to write the PNG file to
    :param gamma: gamma correction value (default 2.2, 1.0 disables it)
    :param exposure: exposure adjustment in stops (default 0.0)
    """
    image_np = image.cpu().numpy()

    if exposure != 0.0:
        image_np = image_np * (2.0 ** exposure)

    image_np = np.clip(image_np, 0.0, 1.0)
    image_np = np.power(image_np, 1.0 / gamma)

    image_8bit = (image_np * 255).astype(np.uint8)
    cv2.imwrite(str(png_path), cv2.cvtColor(image_8bit, cv2.COLOR_RGB2BGR))


def _read_tokens(path: str) -> list[str]:
    path = Path(path)
    if not path.is_file():
        raise MissingResourceError(f"Cannot open the file {path}")
    with open(path, "r") as f:
        return f.read().split()


def read_indexed_triples(path: str) -> list[list[float]]:
    """
    Read a text file of lines `<index> <a> <b> <c>` (light intensities, light directions).
    The leading index is ignored, the lines are kept in file order.

    :return: list of [a, b, c]
    """
    tokens = _read_tokens(path)
    if len(tokens) % 4 != 0:
        raise ValueError(f"{path} does not contain groups of 4 values")

    return [[float(value) for value in tokens[i + 1:i + 4]] for i in range(0, len(tokens), 4)]


def read_light_intensities(path: str) -> torch.Tensor:
    """
    Per-light rgb calibration of a light stage.

    :return: (N, 3) float32
    """
    return torch.tensor(read_indexed_triples(path), dtype=torch.float32).reshape(-1, 3)


def read_light_directions(path: str) -> torch.Tensor:
    """
    Cartesian direction of every light of a light stage.

    :return: (N, 3) float32
    """
    return torch.tensor(read_indexed_triples(path), dtype=torch.float32).reshape(-1, 3)


def write_point_lights(path: str, positions: list[tuple[int, int]]):
    """Write point light positions as `<index>: <x> <y>` lines."""
    with open(path, "w") as f:
        for i, (x, y) in enumerate(positions):
            f.write(f"{i}: {x} {y}\n")


def read_point_lights(path: str) -> list[tuple[int, int]]:
    """Read point light positions written by write_point_lights."""
    tokens = _read_tokens(path)
    if len(tokens) % 3 != 0:
        raise ValueError(f"{path} does not contain `<index>: <x> <y>` lines")

    return [(int(tokens[i + 1]), int(tokens[i + 2])) for i in range(0, len(tokens), 3)]


def write_cell_groups(path: str, cell_groups: list[list[int]]):
    """Write the cells of every photograph as `<count> <c0> ... <c_{count-1}>` lines."""
    with open(path, "w") as f:
        for cells in cell_groups:
            f.write(" ".join(str(value) for value in [len(cells), *cells]) + "\n")


def read_cell_groups(path: str) -> list[list[int]]:
    """Read a cell grouping written by write_cell_groups."""
    values = [int(token) for token in _read_tokens(path)]

    cell_groups = []
    i = 0
    while i < len(values):
        count = values[i]
        cells = values[i + 1:i + 1 + count]
        if len(cells) != count:
            raise ValueError(f"{path} is truncated: expected {count} cells, found {len(cells)}")
        cell_groups.append(cells)
        i += 1 + count

    return cell_groups
