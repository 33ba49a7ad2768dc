"""File-level input/output for castep_model.

Reading turns a ``.msi`` file into a :class:`Model`; writing takes the texts
produced by :mod:`castep_model.exporters` and puts them on disk. Operating
system failures while writing are reported as :class:`ExportError`.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping

from .config import Config
from .decorators import time_it
from .errors import ExportError
from .exporters import MsiExporter, XsdScriptExporter, export_model, render_xsd_script
from .msi_parser import parse_msi
from .structure import Model

logger = logging.getLogger(__name__)


def file_exists(file_path: str) -> bool:
    """Return ``True`` if ``file_path`` is an existing regular file."""
    return os.path.isfile(file_path)


def read_msi(file_path: str, policy: str | None = None, config: Config | None = None) -> Model:
    """Read a Materials Studio ``.msi`` file and return a :class:`Model`.

    Parameters
    ----------
    file_path:
        Path to the ``.msi`` file.
    policy:
        Handling of unrecognized constructs, ``"drop"`` or ``"preserve"``.
        Defaults to ``config.parser.unknown_constructs``.
    config:
        Optional :class:`Config`.

    Returns
    -------
    Model
        The parsed model.

    Raises
    ------
    FileNotFoundError
        If the file does not exist.
    ParseError
        If the document is malformed.
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"File {file_path} not found")
    # newline="" keeps "\r\n" intact; the tokenizer handles both endings
    with open(file_path, encoding="utf-8", newline="") as infile:
        text = infile.read()
    model = parse_msi(text, policy=policy, config=config)
    logger.debug("Read %d atoms from %s", len(model), file_path)
    return model


def write_text(file_path: str, text: str) -> str:
    """Write ``text`` to ``file_path``, raising :class:`ExportError` on OS failures."""
    try:
        with open(file_path, "w", encoding="utf-8", newline="\n") as fh:
            fh.write(text)
    except OSError as exc:
        raise ExportError(f"Could not write {file_path}: {exc}") from exc
    logger.info("Wrote %s", file_path)
    return file_path


def write_outputs(outputs: Mapping[str, str], directory: str) -> list[str]:
    """Write every ``{file name: text}`` entry into ``directory``.

    The directory is created if needed. Returns the written paths in order.
    """
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as exc:
        raise ExportError(f"Could not create output directory {directory}: {exc}") from exc
    return [write_text(os.path.join(directory, name), text) for name, text in outputs.items()]


def save_msi_file(model: Model, file_path: str, config: Config | None = None) -> str:
    """Save ``model`` as a ``.msi`` document readable by :func:`read_msi`."""
    return write_text(file_path, MsiExporter(config).render(model))


@time_it
def write_seed_files(
    model: Model,
    directory: str,
    seed_name: str,
    task: str | None = None,
    config: Config | None = None,
    include_script: bool = False,
) -> list[str]:
    """Write the CASTEP seed files for ``model``.

    For ``GeometryOptimization`` these are ``<seed>.cell``, ``<seed>.param``,
    ``<seed>.kptaux``, ``<seed>_DOS.kptaux``, ``<seed>.trjaux`` and
    ``<seed>.msi``; ``BandStructure`` gives the ``_DOS`` cell, param and
    kptaux files. With ``include_script`` the ``msi_to_xsd.pl`` script for
    this seed is added.

    Nothing is written if rendering fails.
    """
    outputs = export_model(model, seed_name, task=task, config=config)
    if include_script:
        outputs[XsdScriptExporter.SCRIPT_NAME] = render_xsd_script([seed_name])
    return write_outputs(outputs, directory)


def write_xsd_script(stems: Iterable[str], file_path: str) -> str:
    """Write the Materials Studio ``.msi`` to ``.xsd`` conversion script."""
    return write_text(file_path, render_xsd_script(stems))
