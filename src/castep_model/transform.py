"""Geometry transformations applied in place to a :class:`Model`.

Each operation computes the new coordinates for all atoms in one vectorized
step, checks the result and only then writes it back. If anything fails the
model is left exactly as it was.
"""

from __future__ import annotations

import logging
import math

import numpy as np

from .errors import GeometryError
from .geometry import Vector3, alignment_rotation, as_vector, rotation_matrix
from .structure import LatticeVectors, Model

logger = logging.getLogger(__name__)


def _commit(model: Model, coords: np.ndarray, lattice: np.ndarray | None = None) -> None:
    if not np.all(np.isfinite(coords)):
        raise GeometryError("Transformation produced non-finite coordinates")
    new_lattice = None
    if lattice is not None:
        if not np.all(np.isfinite(lattice)):
            raise GeometryError("Transformation produced non-finite lattice vectors")
        new_lattice = LatticeVectors.from_array(lattice)
    model.replace_coordinates(coords)
    if new_lattice is not None:
        model.set_lattice(new_lattice)


def translate(model: Model, offset: Vector3) -> Model:
    """Add ``offset`` to every atom coordinate. The lattice is not moved.

    Returns the same model to allow chaining.
    """
    shift = as_vector(offset, "offset")
    _commit(model, model.cartesian_coordinates() + shift)
    logger.debug("Translated %d atoms by %s", len(model), shift.tolist())
    return model


def rotate(
    model: Model,
    axis: Vector3,
    angle: float,
    pivot: Vector3 = (0.0, 0.0, 0.0),
    rotate_lattice: bool = False,
) -> Model:
    """Rotate every atom by ``angle`` radians about ``axis`` through ``pivot``.

    Parameters
    ----------
    model:
        Model to modify in place.
    axis:
        Rotation axis; normalized internally.
    angle:
        Rotation angle in radians, right-handed about ``axis``.
    pivot:
        Point the axis passes through.
    rotate_lattice:
        Also rotate the lattice vectors (about the origin; they are directions,
        so the pivot does not apply) when the model has a lattice.

    Raises
    ------
    DegenerateAxisError
        If ``axis`` has magnitude below ``1e-9``.
    GeometryError
        If the inputs or the result are not finite.
    """
    matrix = rotation_matrix(axis, float(angle))
    centre = as_vector(pivot, "pivot")
    coords = (model.cartesian_coordinates() - centre) @ matrix.T + centre
    lattice = None
    if rotate_lattice and model.lattice is not None:
        lattice = model.lattice.as_array() @ matrix.T
    _commit(model, coords, lattice)
    logger.debug("Rotated %d atoms by %.6f rad", len(model), angle)
    return model


def rotate_degrees(
    model: Model,
    axis: Vector3,
    angle: float,
    pivot: Vector3 = (0.0, 0.0, 0.0),
    rotate_lattice: bool = False,
) -> Model:
    """Same as :func:`rotate` with ``angle`` in degrees."""
    return rotate(model, axis, math.radians(angle), pivot=pivot, rotate_lattice=rotate_lattice)


def align_lattice_vector(model: Model, index: int, target_axis: Vector3) -> Model:
    """Rotate atoms and lattice so that lattice vector ``index`` points along ``target_axis``.

    CASTEP cells conventionally have ``a`` along ``x`` (``index=0``); Materials
    Studio puts ``b`` along ``y`` (``index=1``). Atoms rotate about the origin
    together with the lattice, so fractional coordinates do not change.
    """
    if model.lattice is None:
        raise GeometryError("Model has no lattice vectors to align")
    if index not in (0, 1, 2):
        raise GeometryError(f"Lattice vector index must be 0, 1 or 2, got {index}")
    matrix = alignment_rotation(model.lattice.vectors[index], target_axis)
    coords = model.cartesian_coordinates() @ matrix.T
    lattice = model.lattice.as_array() @ matrix.T
    _commit(model, coords, lattice)
    logger.debug("Aligned lattice vector %d with %s", index, list(target_axis))
    return model


def center_at(model: Model, point: Vector3 = (0.0, 0.0, 0.0)) -> Model:
    """Translate the model so that the centroid of its atoms sits at ``point``."""
    if len(model) == 0:
        return model
    target = as_vector(point, "point")
    centroid = model.cartesian_coordinates().mean(axis=0)
    return translate(model, target - centroid)
