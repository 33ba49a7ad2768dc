"""Numeric kernel: vectors, 3x3 matrices and rotation math.

All helpers accept anything :func:`numpy.asarray` understands and return
``numpy`` arrays of ``float64``.
"""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np

from .errors import DegenerateAxisError, GeometryError

AXIS_TOLERANCE = 1e-9
DETERMINANT_TOLERANCE = 1e-12

Vector3 = Sequence[float]


def as_vector(value: Vector3, name: str = "vector") -> np.ndarray:
    """Convert ``value`` to a finite length-3 float array.

    Raises
    ------
    GeometryError
        If the value does not have three components or holds NaN/inf.
    """
    try:
        vec = np.asarray(value, dtype=float).reshape(-1)
    except (TypeError, ValueError) as exc:
        raise GeometryError(f"{name} must be three real numbers, got {value!r}") from exc
    if vec.shape != (3,):
        raise GeometryError(f"{name} must have exactly three components, got {vec.shape[0]}")
    if not np.all(np.isfinite(vec)):
        raise GeometryError(f"{name} must be finite, got {value!r}")
    return vec


def as_matrix(value) -> np.ndarray:
    """Convert ``value`` to a 3x3 float array (rows are vectors)."""
    mat = np.asarray(value, dtype=float)
    if mat.shape != (3, 3):
        raise GeometryError(f"Expected a 3x3 matrix, got shape {mat.shape}")
    return mat


def normalize(vector: Vector3, tolerance: float = AXIS_TOLERANCE) -> np.ndarray:
    """Return the unit vector along ``vector``.

    Raises
    ------
    DegenerateAxisError
        If the magnitude of ``vector`` is below ``tolerance``.
    """
    vec = as_vector(vector, "axis")
    norm = float(np.linalg.norm(vec))
    if norm < tolerance:
        raise DegenerateAxisError(
            f"Axis {tuple(vec.tolist())} has magnitude {norm:.3e} below tolerance {tolerance:g}"
        )
    return vec / norm


def rotation_matrix(axis: Vector3, angle: float) -> np.ndarray:
    """Build the Rodrigues rotation matrix for ``angle`` radians about ``axis``.

    ``R = I + sin(t) K + (1 - cos(t)) K^2`` with ``K`` the cross-product
    matrix of the normalized axis. Column vectors are rotated as ``R @ v``;
    row-stacked coordinates as ``coords @ R.T``.
    """
    if not math.isfinite(angle):
        raise GeometryError(f"Rotation angle must be finite, got {angle!r}")
    kx, ky, kz = normalize(axis)
    k = np.array(
        [
            [0.0, -kz, ky],
            [kz, 0.0, -kx],
            [-ky, kx, 0.0],
        ]
    )
    return np.eye(3) + math.sin(angle) * k + (1.0 - math.cos(angle)) * (k @ k)


def angle_between(u: Vector3, v: Vector3) -> float:
    """Angle between two vectors in radians, clipped for round-off."""
    a = normalize(u)
    b = normalize(v)
    return float(np.arccos(np.clip(np.dot(a, b), -1.0, 1.0)))


def perpendicular(vector: Vector3) -> np.ndarray:
    """Return some unit vector perpendicular to ``vector``."""
    vec = normalize(vector)
    trial = np.eye(3)[int(np.argmin(np.abs(vec)))]
    return normalize(np.cross(vec, trial))


def alignment_rotation(source: Vector3, target: Vector3) -> np.ndarray:
    """Rotation matrix that turns the direction of ``source`` onto ``target``."""
    src = normalize(source)
    dst = normalize(target)
    angle = angle_between(src, dst)
    if angle < AXIS_TOLERANCE:
        return np.eye(3)
    if math.pi - angle < AXIS_TOLERANCE:
        return rotation_matrix(perpendicular(src), math.pi)
    return rotation_matrix(np.cross(src, dst), angle)


def determinant(matrix) -> float:
    return float(np.linalg.det(as_matrix(matrix)))


def is_degenerate(matrix, tolerance: float = DETERMINANT_TOLERANCE) -> bool:
    """``True`` if the rows of ``matrix`` are (nearly) linearly dependent."""
    return abs(determinant(matrix)) < tolerance
