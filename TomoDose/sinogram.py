"""
Leaf sinogram decoding and re-encoding.

The archive stores leaf motion as (open, close) tau pairs, projection-major
and leaf-minor. The dose engine expects the transposed, leaf-major layout.
This module converts between the two:

- bin_leaf_events(): pair stream -> dense (leaf x projection) open-time grid
- active_window(): first/last projection with non-trivial leaf opening
- expand_sinogram(): trimmed grid -> full projection width (zero-filled)
- encode_delivery_stream(): full grid -> leaf-major (open, close) stream

Projection indices exposed to callers are one-based; arrays are zero-based.
"""

import logging
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

import numpy as np

from .errors import BinaryFormatError, EmptyDeliveryError, SinogramIndexError

logger = logging.getLogger(__name__)

# Size of the leaf bank (rows of every sinogram)
N_LEAF_POSITIONS = 64

# A projection is active when any leaf is open for more than this fraction
ACTIVITY_THRESHOLD = 0.01

OUT_OF_RANGE_POLICIES = ("reject", "clamp", "drop")


@dataclass(frozen=True)
class ActiveWindow:
    """Inclusive, one-based range of active projections."""
    start: int
    stop: int

    @property
    def length(self) -> int:
        return self.stop - self.start + 1

    def as_slice(self) -> slice:
        return slice(self.start - 1, self.stop)


@dataclass(frozen=True)
class LeafSinogram:
    """Trimmed leaf open-time grid.

    Attributes
    ----------
    data : np.ndarray
        Fractional open times, shape (64, window.length), read-only
    window : ActiveWindow
        Columns of the full grid kept in ``data``
    number_of_projections : int
        Width of the untrimmed grid
    lower_leaf_index : int
        First active leaf row (zero-based)
    number_of_leaves : int
        Number of active leaf rows
    """
    data: np.ndarray
    window: ActiveWindow
    number_of_projections: int
    lower_leaf_index: int
    number_of_leaves: int

    @property
    def leaf_rows(self) -> range:
        return range(self.lower_leaf_index, self.lower_leaf_index + self.number_of_leaves)

    def expand(self) -> np.ndarray:
        """Full-width grid, zero outside the active window."""
        return expand_sinogram(self.data, self.window, self.number_of_projections)


def projection_index(open_tau, close_tau):
    """One-based projection column of an (open, close) pair: floor(midpoint) + 1."""
    return np.floor((np.asarray(open_tau) + np.asarray(close_tau)) / 2.0).astype(np.int64) + 1


def bin_leaf_events(
    values: np.ndarray,
    number_of_leaves: int,
    number_of_projections: int,
    lower_leaf_index: int,
    out_of_range: str = "reject"
) -> np.ndarray:
    """
    Bin a projection-major (open, close) stream into a dense open-time grid.

    Parameters
    ----------
    values : np.ndarray
        Flat array of number_of_projections * number_of_leaves * 2 values
    number_of_leaves : int
        Leaf pairs per projection
    number_of_projections : int
        Number of projections (grid width)
    lower_leaf_index : int
        Row of the first leaf pair in each projection
    out_of_range : str
        What to do with a pair whose midpoint column falls outside
        [1, number_of_projections]: 'reject' raises SinogramIndexError,
        'clamp' moves it to the nearest edge column, 'drop' ignores it.

    Returns
    -------
    np.ndarray
        Open times (close - open), shape (64, number_of_projections)

    Notes
    -----
    Pairs are placed by midpoint, not by read position. When two pairs of
    the same leaf land in one column, the later pair wins.
    """
    if out_of_range not in OUT_OF_RANGE_POLICIES:
        raise ValueError(f"out_of_range must be one of {OUT_OF_RANGE_POLICIES}, got '{out_of_range}'")
    if lower_leaf_index < 0 or lower_leaf_index + number_of_leaves > N_LEAF_POSITIONS:
        raise SinogramIndexError(
            f"Leaf range {lower_leaf_index}..{lower_leaf_index + number_of_leaves - 1} "
            f"outside the {N_LEAF_POSITIONS}-leaf bank"
        )

    values = np.asarray(values, dtype=np.float64)
    expected = number_of_projections * number_of_leaves * 2
    if values.size != expected:
        raise BinaryFormatError(
            f"Leaf event stream has {values.size} values, expected {expected} "
            f"({number_of_projections} projections x {number_of_leaves} leaves x 2)"
        )

    pairs = values.reshape(number_of_projections, number_of_leaves, 2)
    open_tau = pairs[:, :, 0]
    close_tau = pairs[:, :, 1]

    columns = projection_index(open_tau, close_tau) - 1
    rows = np.broadcast_to(
        lower_leaf_index + np.arange(number_of_leaves), columns.shape
    )
    open_time = close_tau - open_tau

    outside = (columns < 0) | (columns >= number_of_projections)
    if np.any(outside):
        n_outside = int(np.sum(outside))
        if out_of_range == "reject":
            proj, leaf = np.argwhere(outside)[0]
            raise SinogramIndexError(
                f"{n_outside} leaf event pairs fall outside projections 1..{number_of_projections} "
                f"(first: projection {proj + 1}, leaf {leaf}, open={open_tau[proj, leaf]:g}, "
                f"close={close_tau[proj, leaf]:g})"
            )
        elif out_of_range == "clamp":
            warnings.warn(f"{n_outside} leaf event pairs clamped to projections 1..{number_of_projections}")
            columns = np.clip(columns, 0, number_of_projections - 1)
        else:
            warnings.warn(f"{n_outside} leaf event pairs outside projections 1..{number_of_projections} dropped")
            keep = ~outside
            rows, columns, open_time = rows[keep], columns[keep], open_time[keep]

    sinogram = np.zeros((N_LEAF_POSITIONS, number_of_projections), dtype=np.float64)
    # Fancy assignment keeps the last value on duplicate indices (read order)
    sinogram[rows.ravel(), columns.ravel()] = open_time.ravel()
    return sinogram


def active_window(sinogram: np.ndarray, threshold: float = ACTIVITY_THRESHOLD) -> ActiveWindow:
    """
    Find the first and last projection whose maximum leaf open time exceeds threshold.

    Raises
    ------
    EmptyDeliveryError
        If no projection is active.
    """
    if sinogram.ndim != 2 or sinogram.shape[1] == 0:
        raise EmptyDeliveryError(f"Sinogram has no projections (shape {sinogram.shape})")

    active = np.flatnonzero(np.max(sinogram, axis=0) > threshold)
    if active.size == 0:
        raise EmptyDeliveryError(
            f"No projection has a leaf open time above {threshold:g}; nothing is delivered"
        )
    return ActiveWindow(int(active[0]) + 1, int(active[-1]) + 1)


def expand_sinogram(trimmed: np.ndarray, window: ActiveWindow, number_of_projections: int) -> np.ndarray:
    """Zero-fill a trimmed sinogram back to number_of_projections columns."""
    if window.start < 1 or window.stop > number_of_projections or window.start > window.stop:
        raise ValueError(f"Window {window} invalid for {number_of_projections} projections")
    if trimmed.shape[1] != window.length:
        raise ValueError(
            f"Trimmed sinogram has {trimmed.shape[1]} columns, window {window} needs {window.length}"
        )
    full = np.zeros((trimmed.shape[0], number_of_projections), dtype=np.float64)
    full[:, window.as_slice()] = trimmed
    return full


def encode_delivery_stream(full_sinogram: np.ndarray, lower_leaf_index: int, number_of_leaves: int) -> np.ndarray:
    """
    Re-encode a full-width sinogram as a leaf-major (open, close) stream.

    For every active leaf and every projection j (one-based) the pair
    (j - 0.5 - s/2, j - 0.5 + s/2) is emitted, centering the open time s
    on the projection.

    Returns
    -------
    np.ndarray
        Flat float64 array of number_of_leaves * number_of_projections * 2 values
    """
    leaves = full_sinogram[lower_leaf_index:lower_leaf_index + number_of_leaves, :]
    centers = np.arange(1, full_sinogram.shape[1] + 1) - 0.5
    half = leaves / 2.0
    pairs = np.stack((centers - half, centers + half), axis=-1)
    return pairs.ravel()


def write_delivery_stream(path, sinogram: LeafSinogram) -> int:
    """Write plan.img (little-endian float64). Returns the number of values written."""
    stream = encode_delivery_stream(sinogram.expand(), sinogram.lower_leaf_index, sinogram.number_of_leaves)
    stream.astype("<f8").tofile(str(path))
    return stream.size


def decode(
    blob_path,
    number_of_leaves: int,
    number_of_projections: int,
    lower_leaf_index: int,
    byteorder: str = "<",
    out_of_range: str = "reject",
    threshold: float = ACTIVITY_THRESHOLD
) -> Tuple[LeafSinogram, ActiveWindow]:
    """
    Read a leaf-motion blob and return the trimmed sinogram and its active window.

    Parameters
    ----------
    blob_path : str or Path
        Binary file of float64 (open, close) pairs, projection-major
    number_of_leaves, number_of_projections, lower_leaf_index : int
        Plan delivery geometry
    byteorder : str
        '<' (little-endian) or '>' (big-endian)
    out_of_range : str
        Policy for pairs bucketed outside the grid, see bin_leaf_events()
    threshold : float
        Activity threshold used for trimming
    """
    blob_path = Path(blob_path)
    if byteorder not in ("<", ">"):
        raise ValueError(f"byteorder must be '<' or '>', got '{byteorder}'")
    if not blob_path.is_file():
        raise BinaryFormatError(f"Leaf sinogram file not found: {blob_path}")

    logger.info("Loading delivery plan binary data from %s", blob_path)
    nbytes = blob_path.stat().st_size
    if nbytes % 8:
        raise BinaryFormatError(
            f"Leaf sinogram {blob_path} is {nbytes} bytes, not a whole number of float64 values"
        )
    values = np.fromfile(str(blob_path), dtype=byteorder + "f8")

    full = bin_leaf_events(values, number_of_leaves, number_of_projections,
                           lower_leaf_index, out_of_range=out_of_range)
    window = active_window(full, threshold=threshold)

    trimmed = full[:, window.as_slice()].copy()
    trimmed.setflags(write=False)
    logger.info(
        "Sinogram decoded: %d leaves x %d projections, active projections %d-%d",
        number_of_leaves, number_of_projections, window.start, window.stop
    )

    sinogram = LeafSinogram(
        data=trimmed,
        window=window,
        number_of_projections=number_of_projections,
        lower_leaf_index=lower_leaf_index,
        number_of_leaves=number_of_leaves,
    )
    return sinogram, window
