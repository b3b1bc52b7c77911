"""
Density calibration curve (IVDT) - CT number to density conversion.

The dose engine receives the curve verbatim in ct.header; conversion is
provided for inspection of the image before a calculation.
"""

import numpy as np
import pandas as pd
import os
import warnings


class DensityCalibration:
    """
    CT number to density calibration curve with validation.

    Attributes:
        name: Human-readable name (e.g., "TomoHD_MVCT")
        ct_numbers: Array of CT numbers (must be strictly increasing)
        densities: Array of corresponding density values [g/cc]
    """

    def __init__(self, name, ct_numbers, densities):
        self.name = name
        self.ct_numbers = np.array(ct_numbers, dtype=np.float64)
        self.densities = np.array(densities, dtype=np.float64)

        self._validate()

    def _validate(self):
        """Validate calibration curve integrity."""
        if self.ct_numbers.ndim != 1 or self.ct_numbers.shape != self.densities.shape:
            raise ValueError(f"DensityCalibration '{self.name}': CT numbers and densities must have "
                             f"the same length ({self.ct_numbers.shape} vs {self.densities.shape})")

        if len(self.ct_numbers) < 2:
            raise ValueError(f"DensityCalibration '{self.name}': at least 2 points required")

        if not np.all(np.diff(self.ct_numbers) > 0):
            raise ValueError(f"DensityCalibration '{self.name}': CT numbers must be strictly increasing")

        if np.any(self.densities < 0):
            raise ValueError(f"DensityCalibration '{self.name}': negative density found")

        if np.any(self.densities > 10.0):
            warnings.warn(f"DensityCalibration '{self.name}': density > 10 g/cc found. "
                          "Check that the curve is correct.")

    def convert(self, ct_values):
        """
        Convert CT numbers to density [g/cc], clamping outside the curve.

        Args:
            ct_values: Array-like of CT numbers

        Returns:
            Array of density values [g/cc], same shape as input
        """
        ct_values = np.asarray(ct_values, dtype=np.float64)
        density = np.interp(ct_values.ravel(), self.ct_numbers, self.densities)
        return density.reshape(ct_values.shape).astype(np.float32)

    def header_lines(self):
        """Return the ct.header calibration lines (without newlines)."""
        return [
            "calibration.ctNums=" + " ".join("%i" % v for v in self.ct_numbers),
            "calibration.densVals=" + " ".join("%G" % v for v in self.densities),
        ]

    @classmethod
    def from_csv(cls, csv_path, name=None):
        """
        Load calibration from CSV file.

        Expected columns: 'CT' and 'Density'.

        Args:
            csv_path: Path to CSV file
            name: Calibration name (default: filename without extension)

        Returns:
            DensityCalibration instance
        """
        if not os.path.exists(csv_path):
            raise FileNotFoundError(f"Density calibration CSV not found: {csv_path}")

        df = pd.read_csv(csv_path)

        for col in ('CT', 'Density'):
            if col not in df.columns:
                raise ValueError(f"CSV must contain column '{col}'. Found: {df.columns.tolist()}")

        if name is None:
            name = os.path.splitext(os.path.basename(csv_path))[0]

        return cls(name, df['CT'].values, df['Density'].values)

    def __repr__(self):
        return (f"DensityCalibration(name='{self.name}', points={len(self.ct_numbers)}, "
                f"CT=[{self.ct_numbers[0]:.0f}, {self.ct_numbers[-1]:.0f}])")
