import argparse
import json
import logging
import time
from pathlib import Path

from coolname import generate_slug

from .core.optimisation import ScalingFactorTable
from .datatypes import (IdentificationMethod, OptimisationMode, RelightingConfig, RelightingStrategyName,
                        WeightingKernel)
from .strategies.base import relight
from .strategies.free_form import FreeFormLightStage
from .strategies.light_stage import LightStageRelighting
from .strategies.office_room import OfficeRoomRelighting
from .utils.io import (read_environment_map, read_image, read_light_directions, read_light_intensities,
                       read_object_mask, read_ownership_masks, read_reflectance_field, reflectance_field_paths,
                       write_exr, write_png)
from .utils.transforms import gamma_correction

OUTPUT_DIR = "tmp/experiments"

logger = logging.getLogger(__name__)

# python -m ImageBasedRelighting.relighting.run_relighting --strategy light_stage --env_map "environment_maps/grace_latlong.pfm" --images_folder images/light_stage --prefix plant_left_ --extension .png --n_images 253 --object_mask images/light_stage/plant_mask.png --light_directions light_directions.txt


def build_strategy(args, config: RelightingConfig):
    if args.images:
        image_paths = args.images
    else:
        image_paths = reflectance_field_paths(args.images_folder, args.prefix, args.extension, args.n_images)

    reflectance_field = read_reflectance_field(image_paths)
    object_mask = read_object_mask(args.object_mask)
    logger.info(f"Loaded {reflectance_field.shape[0]} photographs of shape {tuple(reflectance_field.shape[1:3])}")

    positions = None
    if args.positions:
        with open(args.positions, "r") as f:
            positions = [[tuple(position) for position in photograph] for photograph in json.load(f)]

    if config.strategy == RelightingStrategyName.LIGHT_STAGE:
        light_intensities = read_light_intensities(args.light_intensities) if args.light_intensities else None
        return LightStageRelighting(config, reflectance_field, object_mask,
                                    read_light_directions(args.light_directions), light_intensities)

    if config.strategy == RelightingStrategyName.FREE_FORM:
        dark_room = read_image(args.dark_room) if args.dark_room else None
        return FreeFormLightStage(config, reflectance_field, object_mask, dark_room,
                                  positions_per_photograph=positions,
                                  basis_path=args.basis, cell_groups_path=args.cell_groups)

    masks = read_ownership_masks(args.masks) if args.masks else None
    lighting_conditions = [read_environment_map(path) for path in args.lighting_conditions] if args.lighting_conditions else None
    scaling_table = ScalingFactorTable.load(args.scaling_table) if args.scaling_table else None
    return OfficeRoomRelighting(config, reflectance_field, object_mask,
                                masks=masks,
                                lighting_conditions=lighting_conditions,
                                residual_index=args.residual_index,
                                positions_per_photograph=positions,
                                basis_path=args.basis, cell_groups_path=args.cell_groups,
                                scaling_table=scaling_table)


if __name__ == "__main__":
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),  # Output to console
        ]
    )

    parser = argparse.ArgumentParser(description="Relight a reflectance field with an hdr environment map")
    parser.add_argument("--strategy", type=str, choices=[s.value for s in RelightingStrategyName], required=True)
    parser.add_argument("--env_map", type=str, required=True, help="Equirectangular hdr environment map (.pfm, .hdr, .exr)")

    images_group = parser.add_mutually_exclusive_group(required=True)
    images_group.add_argument("--images", type=str, nargs='+', help="Photographs of the reflectance field, in order")
    images_group.add_argument("--images_folder", type=str, help="Folder containing <prefix>0000<extension>, ...")
    parser.add_argument("--prefix", type=str, default="")
    parser.add_argument("--extension", type=str, default=".png")
    parser.add_argument("--n_images", type=int, help="Number of photographs in --images_folder")
    parser.add_argument("--object_mask", type=str, required=True, help="White on the background")

    parser.add_argument("--light_directions", type=str, help="Light stage directions, `<index> <x> <y> <z>` lines")
    parser.add_argument("--light_intensities", type=str, help="Light stage calibration, `<index> <r> <g> <b>` lines")
    parser.add_argument("--dark_room", type=str, help="Photograph with every light off (free form)")
    parser.add_argument("--basis", type=str, help="Point lights, `<index>: <x> <y>` lines")
    parser.add_argument("--cell_groups", type=str, help="Cells of every photograph, `<count> <c0> ...` lines")
    parser.add_argument("--positions", type=str, help="JSON list of [x, y] light positions per photograph")
    parser.add_argument("--masks", type=str, nargs='+', help="Ownership mask of every photograph (office room)")
    parser.add_argument("--lighting_conditions", type=str, nargs='+', help="Direct light map of every photograph (office room)")
    parser.add_argument("--residual_index", type=int, help="Index of the indirect light photograph (office room)")
    parser.add_argument("--residual_mask", action="store_true", help="Restrict the indirect light mask to unowned pixels")
    parser.add_argument("--scaling_table", type=str, help="JSON table of precomputed refinement factors")

    parser.add_argument("--identification", type=str, choices=[m.value for m in IdentificationMethod], default=IdentificationMethod.MANUAL.value)
    parser.add_argument("--kernel", type=str, choices=[k.value for k in WeightingKernel], default=WeightingKernel.POINT.value)
    parser.add_argument("--variance_x", type=float, help="Gaussian kernel variance along x (defaults to 10, 300 for free form)")
    parser.add_argument("--variance_y", type=float, help="Gaussian kernel variance along y (defaults to 10, 300 for free form)")
    parser.add_argument("--photograph_variances", type=str, help="JSON list of [variance_x, variance_y] per photograph")
    parser.add_argument("--optimisation", type=str, choices=[m.value for m in OptimisationMode], default=OptimisationMode.NONE.value)
    parser.add_argument("--n_samples", type=int, default=1000, help="Inverse CDF samples per lighting condition")
    parser.add_argument("--clusters", type=int, default=1, help="Lights per lighting condition (inverse CDF)")
    parser.add_argument("--n_offsets", type=int, default=1, help="Number of rotations of the environment map")
    parser.add_argument("--exposure", type=float, default=0.0)
    parser.add_argument("--scene", type=str, default=None, help="Scene name used by the scaling table (defaults to the map name)")
    parser.add_argument("--room_type", type=str, default="office")
    parser.add_argument("--output_dir", type=str, default=OUTPUT_DIR)
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose (DEBUG) logging")
    args = parser.parse_args()

    if args.images_folder and args.n_images is None:
        parser.error("--images_folder requires --n_images")
    if args.strategy == RelightingStrategyName.LIGHT_STAGE.value and not args.light_directions:
        parser.error("the light stage strategy requires --light_directions")
    if not Path(args.env_map).is_file():
        parser.error(f"environment map {args.env_map} does not exist")
    if args.photograph_variances and not Path(args.photograph_variances).is_file():
        parser.error(f"photograph variances {args.photograph_variances} do not exist")

    # Set logging level based on verbose flag
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        print("Debug logging enabled")

    experiment_name = generate_slug(2)
    output_dir = Path(args.output_dir) / experiment_name
    output_dir.mkdir(parents=True, exist_ok=True)
    print(f"Output directory: {output_dir}")

    env_map_path = Path(args.env_map)
    env_map = read_environment_map(env_map_path)
    H, W = env_map.shape[:2]
    logger.info(f"Loaded {env_map_path.name} with shape {tuple(env_map.shape)}")

    config = RelightingConfig(strategy=RelightingStrategyName(args.strategy),
                              env_map_width=W,
                              env_map_height=H,
                              kernel=WeightingKernel(args.kernel),
                              identification=IdentificationMethod(args.identification),
                              inverse_cdf_samples=args.n_samples,
                              clusters_per_photograph=args.clusters,
                              optimisation=OptimisationMode(args.optimisation),
                              use_residual_mask=args.residual_mask,
                              number_of_offsets=args.n_offsets,
                              exposure=args.exposure,
                              scene=args.scene or env_map_path.stem,
                              room_type=args.room_type)
    if args.variance_x is not None:
        config.gaussian_variance_x = config.free_form_gaussian_variance_x = args.variance_x
    if args.variance_y is not None:
        config.gaussian_variance_y = config.free_form_gaussian_variance_y = args.variance_y
    if args.photograph_variances:
        with open(args.photograph_variances, "r") as f:
            config.photograph_variances = [tuple(variances) for variances in json.load(f)]

    start_time = time.time()
    strategy = build_strategy(args, config)
    strategy.load_reflectance_field()
    loading_time = time.time() - start_time
    logger.info(f"Reflectance field prepared in {loading_time:.2f} seconds.")

    start_time = time.time()
    results = relight(strategy, env_map, config.offsets())
    relighting_time = time.time() - start_time
    logger.info(f"Relighting complete in {relighting_time:.2f} seconds.")

    display_env_map = gamma_correction(env_map, config.gamma)
    for l, result in enumerate(results):
        stem = f"{config.strategy.value}_{env_map_path.stem}_offset{l}"
        write_png(result.image, output_dir / f"{stem}.png", gamma=1.0)
        write_exr(result.image, output_dir / f"{stem}.exr")

        voronoi = getattr(strategy, "voronoi", None)
        if voronoi is not None and voronoi.number_of_cells > 0:
            write_png(voronoi.paint_voronoi(display_env_map), output_dir / f"{stem}_voronoi.png", gamma=1.0)
            write_png(voronoi.paint_voronoi_cells_by_photograph(result.weights), output_dir / f"{stem}_weights.png", gamma=1.0)

    with open(output_dir / f"{env_map_path.stem}.json", "w") as f:
        json.dump({"config": config.to_dict(), "results": [result.to_dict() for result in results]}, f, indent=2)

    # Log timing summary
    total_time = loading_time + relighting_time
    logger.info(f"Timing Summary for {env_map_path.stem}:")
    logger.info(f"  Loading:    {loading_time:.2f}s")
    logger.info(f"  Relighting: {relighting_time:.2f}s")
    logger.info(f"  Total time: {total_time:.2f}s")
    logger.info("-" * 50)
