"""Public high-level Python API for common conversion workflows.

The functions here chain the lower-level pieces: read a ``.msi`` model,
optionally move it, and write the CASTEP seed files next to a round-trip
``.msi`` copy.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Sequence

from .config import Config, load_config_from_file
from .io_handler import file_exists, read_msi, write_seed_files, write_xsd_script
from .logging_utils import configure_logging, level_from_string
from .structure import Model
from .transform import align_lattice_vector, rotate_degrees, translate

logger = logging.getLogger(__name__)


def _apply_logging_level(config: Config) -> None:
    """Configure the package logger from ``general.logging_level``."""
    logging_level = level_from_string(config.general.get("logging_level", "INFO"))
    configure_logging(logging_level, "castep_model")


def load_model(input_file: str, config: Config | None = None, policy: str | None = None) -> Model:
    """Read a ``.msi`` file into a :class:`Model`.

    Args:
        input_file (str): Path to the ``.msi`` file.
        config (Config, optional): Configuration; loaded from the default file if None.
        policy (str, optional): ``"drop"`` or ``"preserve"`` for unrecognized constructs.

    Returns:
        Model: The parsed model.

    Raises:
        ValueError: If the input file does not exist.

    """
    if not file_exists(input_file):
        raise ValueError(f"Input file {input_file} does not exist.")
    if config is None:
        config = load_config_from_file()
    return read_msi(input_file, policy=policy, config=config)


def apply_transforms(
    model: Model,
    translation: Sequence[float] | None = None,
    rotation: tuple[Sequence[float], float] | None = None,
    align_axis: tuple[int, Sequence[float]] | None = None,
) -> Model:
    """Apply the optional edits of a conversion in a fixed order.

    Args:
        model (Model): Model edited in place.
        translation: Offset added to every atom.
        rotation: ``(axis, angle_in_degrees)`` about the origin; the lattice
            rotates with the atoms.
        align_axis: ``(lattice_vector_index, target_axis)``, e.g. ``(0, (1, 0, 0))``
            to put ``a`` along ``x``.

    Returns:
        Model: The same model.

    """
    if align_axis is not None:
        index, target = align_axis
        align_lattice_vector(model, index, target)
    if rotation is not None:
        axis, angle = rotation
        rotate_degrees(model, axis, angle, rotate_lattice=True)
    if translation is not None:
        translate(model, translation)
    return model


def convert_msi_to_seed(
    input_file: str,
    output_dir: str | None = None,
    seed_name: str | None = None,
    task: str | None = None,
    translation: Sequence[float] | None = None,
    rotation: tuple[Sequence[float], float] | None = None,
    align_axis: tuple[int, Sequence[float]] | None = None,
    include_script: bool = False,
    config: Config | None = None,
) -> list[str]:
    """Convert one ``.msi`` file into a set of CASTEP seed files.

    Args:
        input_file (str): Path of the ``.msi`` model to convert.
        output_dir (str, optional): Directory for the outputs. Defaults to the
            directory of ``input_file``.
        seed_name (str, optional): Seed stem. Defaults to the input file stem.
        task (str, optional): ``"GeometryOptimization"`` or ``"BandStructure"``.
            Defaults to ``config.castep.task``.
        translation, rotation, align_axis: Optional edits, see :func:`apply_transforms`.
        include_script (bool): Also write ``msi_to_xsd.pl`` for this seed.
        config (Config, optional): Configuration; loaded from the default file if None.

    Returns:
        list[str]: Paths of the files written.

    Raises:
        ValueError: If the input file does not exist.
        ParseError: If the model cannot be parsed.
        ExportError: If an output cannot be rendered or written.

    """
    if config is None:
        config = load_config_from_file()
    _apply_logging_level(config)
    model = load_model(input_file, config=config)
    apply_transforms(model, translation=translation, rotation=rotation, align_axis=align_axis)

    if seed_name is None:
        seed_name = os.path.splitext(os.path.basename(input_file))[0]
    if output_dir is None:
        output_dir = os.path.dirname(os.path.abspath(input_file))
    return write_seed_files(
        model, output_dir, seed_name, task=task, config=config, include_script=include_script
    )


def convert_msi_files(
    input_files: Iterable[str],
    output_dir: str,
    task: str | None = None,
    config: Config | None = None,
) -> list[str]:
    """Convert several ``.msi`` files into seeds in ``output_dir``.

    One ``msi_to_xsd.pl`` script covering every converted seed is written
    into ``output_dir`` as well.

    Returns:
        list[str]: Paths of all files written, the script last.

    """
    if config is None:
        config = load_config_from_file()
    _apply_logging_level(config)
    written: list[str] = []
    stems: list[str] = []
    for input_file in input_files:
        stem = os.path.splitext(os.path.basename(input_file))[0]
        written.extend(convert_msi_to_seed(input_file, output_dir, stem, task=task, config=config))
        stems.append(stem)
    if stems:
        written.append(write_xsd_script(stems, os.path.join(output_dir, "msi_to_xsd.pl")))
    logger.info("Converted %d models into %s", len(stems), output_dir)
    return written
