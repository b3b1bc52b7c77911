"""
Grid geometry utilities for the dose grid and result reconstruction.

Key functions:
- GridInfo: dose grid geometry (corner start, widths, dimensions in cm)
- validate_downsample(): check a downsample factor against an image grid
- upsample_slices(): nearest-neighbour upsampling of axial dose slices
- read_dose_result(): load the engine's float32 dose grid
"""

import logging
import os

import numpy as np
from typing import Tuple

from .errors import BinaryFormatError, InvalidDownsampleError

logger = logging.getLogger(__name__)


class GridInfo:
    """
    Dose grid geometry.

    Attributes
    ----------
    start : np.ndarray
        Corner of the first voxel [x, y, z] in cm
    width : np.ndarray
        Voxel widths [x, y, z] in cm
    dimensions : np.ndarray
        Size in voxels [nx, ny, nz]

    Notes
    -----
    - Arrays on this grid are stored (z, y, x)
    - Only the transverse (x, y) axes are ever downsampled
    """

    def __init__(self, start, width, dimensions):
        self.start = np.array(start, dtype=np.float64)
        self.width = np.array(width, dtype=np.float64)
        self.dimensions = np.array(dimensions, dtype=np.int64)

        if self.start.shape != (3,) or self.width.shape != (3,) or self.dimensions.shape != (3,):
            raise ValueError("start, width and dimensions must have 3 elements [x, y, z]")
        if np.any(self.width <= 0):
            raise ValueError(f"width must be > 0, got {self.width}")
        if np.any(self.dimensions <= 0):
            raise ValueError(f"dimensions must be > 0, got {self.dimensions}")

    @classmethod
    def from_image(cls, image) -> 'GridInfo':
        """Grid of an ImageVolume, referenced by voxel corner."""
        return cls(image.corner_start, image.width, image.dimensions)

    def downsampled(self, factor: int) -> 'GridInfo':
        """Grid with the transverse resolution divided by factor."""
        validate_downsample(self.dimensions, factor)
        dims = self.dimensions.copy()
        dims[:2] //= factor
        width = self.width.copy()
        width[:2] *= factor
        return GridInfo(self.start, width, dims)

    @property
    def shape(self) -> Tuple[int, int, int]:
        """Array shape (nz, ny, nx)."""
        return tuple(int(v) for v in self.dimensions[::-1])

    @property
    def n_voxels(self) -> int:
        return int(np.prod(self.dimensions))

    def __repr__(self) -> str:
        return (
            f"GridInfo(start={self.start.tolist()}, width={self.width.tolist()}, "
            f"dimensions={self.dimensions.tolist()})"
        )


def validate_downsample(dimensions, factor: int) -> None:
    """
    Check that factor evenly divides both transverse dimensions.

    Raises
    ------
    InvalidDownsampleError
    """
    if int(factor) != factor or factor < 1:
        raise InvalidDownsampleError(f"The downsample factor must be a positive integer, got {factor}")
    nx, ny = int(dimensions[0]), int(dimensions[1])
    if nx % factor != 0 or ny % factor != 0:
        raise InvalidDownsampleError(
            f"The downsample factor {factor} is not an even divisor of the image dimensions ({nx} x {ny})"
        )


def upsample_slices(low: np.ndarray, factor: int, out_shape: Tuple[int, int, int]) -> np.ndarray:
    """
    Upsample a (nz, ny/d, nx/d) dose array to out_shape by nearest neighbour.

    Each low resolution cell becomes a factor x factor block of identical
    value in its axial slice. Rows and columns of out_shape not covered by
    the blocks are filled by replicating the outermost covered row/column.

    Parameters
    ----------
    low : np.ndarray
        Low resolution dose, shape (nz, my, mx)
    factor : int
        Downsample factor used for the calculation
    out_shape : tuple
        Native shape (nz, ny, nx)

    Returns
    -------
    np.ndarray
        Upsampled dose, shape out_shape
    """
    if factor == 1:
        return low.copy()
    if low.shape[0] != out_shape[0]:
        raise ValueError(f"Slice count mismatch: {low.shape[0]} vs {out_shape[0]}")

    block = np.repeat(np.repeat(low, factor, axis=1), factor, axis=2)
    block = block[:, :out_shape[1], :out_shape[2]]

    pad_y = out_shape[1] - block.shape[1]
    pad_x = out_shape[2] - block.shape[2]
    if pad_y or pad_x:
        block = np.pad(block, ((0, 0), (0, pad_y), (0, pad_x)), mode="edge")
    return block


def read_dose_result(path, grid: GridInfo) -> np.ndarray:
    """
    Read the engine's dose image (little-endian float32, x fastest).

    Returns
    -------
    np.ndarray
        Dose on grid, shape (nz, ny, nx)

    Raises
    ------
    BinaryFormatError
        If the file is missing or its size does not match the grid.
    """
    try:
        nbytes = os.path.getsize(path)
    except OSError as err:
        raise BinaryFormatError(f"Cannot read dose image {path}: {err}") from err
    if nbytes != 4 * grid.n_voxels:
        raise BinaryFormatError(
            f"Dose image {path} is {nbytes} bytes, expected {grid.n_voxels} float32 values for {grid}"
        )
    values = np.fromfile(str(path), dtype="<f4")
    return values.reshape(grid.shape).astype(np.float32)
