import logging
import time
from pathlib import Path

import typer

from config import StructureConfig
from frustum import select_pairs
from outliers import remove_outliers_by_angle
from scene_io import ReconExporter, load_matches, load_regions, load_scene, save_scene
from structure import estimate_structure

app = typer.Typer()

VERBOSE_LEVELS = {
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}


def setup_logging(verbose_level: str = "info") -> None:
    logging.basicConfig(
        level=VERBOSE_LEVELS[verbose_level],
        format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


@app.command()
def main(
    scene_path: Path = typer.Option(..., "--input", "-i", help="Scene file (JSON) or COLMAP sparse model directory"),
    features_dir: Path = typer.Option(
        ..., "--features-dir", "-f", help="Directory containing the extracted features (*.feat/*.desc or *.npz)"
    ),
    output: Path = typer.Option(..., "--output", "-o", help="Output scene file (JSON) or point cloud (.ply)"),
    describer_types: str = typer.Option("sift", "--describer-types", "-d", help="Comma-separated describer types"),
    matches_dir: Path | None = typer.Option(
        None,
        "--matches-dir",
        "-m",
        help="Directory containing precomputed matches; frustum intersection selects pairs when omitted",
    ),
    geometric_model: str = typer.Option(
        "f",
        "--geometric-model",
        "-g",
        help="Matches geometric model: 'f' fundamental, 'e' essential, 'h' homography",
    ),
    matcher_type: str = typer.Option("bf", "--matcher", help="Descriptor search backend: 'bf' or 'torch'"),
    min_angle: float = typer.Option(
        2.0, "--min-angle", help="Minimum parallax angle (deg) for triangulation and outlier rejection", min=0.0
    ),
    refine: bool = typer.Option(False, "--refine/--no-refine", help="Refine triangulated points with pyceres"),
    num_workers: int | None = typer.Option(None, "--num-workers", "-j", help="Worker threads (default: CPU count)"),
    verbose_level: str = typer.Option(
        "info", "--verbose-level", "-v", help="Verbosity level (fatal, error, warning, info, debug, trace)"
    ),
):
    """Compute the structure of a scene from its known camera poses."""

    # Validate inputs
    if verbose_level not in VERBOSE_LEVELS:
        typer.echo(f"Error: unknown verbose level '{verbose_level}'", err=True)
        raise typer.Exit(code=1)
    if geometric_model not in ("f", "e", "h"):
        typer.echo(f"Error: geometric_model must be 'f', 'e' or 'h', got '{geometric_model}'", err=True)
        raise typer.Exit(code=1)
    if matcher_type not in ("bf", "torch"):
        typer.echo(f"Error: matcher_type must be 'bf' or 'torch', got '{matcher_type}'", err=True)
        raise typer.Exit(code=1)
    setup_logging(verbose_level)

    config = StructureConfig(
        describer_types=tuple(d.strip() for d in describer_types.split(",") if d.strip()),
        geometric_model=geometric_model,  # type: ignore
        matcher_type=matcher_type,  # type: ignore
        min_triangulation_angle=min_angle,
        outlier_angle=min_angle,
        refine_points=refine,
    )
    if num_workers is not None:
        config.num_workers = num_workers

    # Load inputs: any failure here is fatal and nothing is written
    try:
        scene = load_scene(scene_path)
        regions = load_regions(features_dir, scene.valid_views(), config.describer_types)
        matches = None
        if matches_dir is not None:
            matches = load_matches(scene.views.keys(), matches_dir, config.describer_types, geometric_model)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    # Pair selection: geometry guided (frustums) or putative matches guided
    pairs = select_pairs(scene, matches, config)

    start = time.perf_counter()
    # Clear previous 3D landmarks
    scene.clear_structure()

    # Match, filter, triangulate; descriptors are unloaded before triangulation
    estimate_structure(scene, pairs, regions, config)

    remove_outliers_by_angle(scene, config.outlier_angle)

    typer.echo(f"Structure estimation took (s): {time.perf_counter() - start:.3f}")
    typer.echo(f"#landmark found: {len(scene.landmarks)}")

    try:
        exporter = ReconExporter(scene)
        if output.suffix.lower() == ".ply":
            exporter.save_ply(output)
        else:
            exporter.save_ply(output.with_suffix(".ply"))
            save_scene(scene, output)
    except OSError as e:
        typer.echo(f"Error while saving the scene: {e}", err=True)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
