"""
Uniform 8-bit scalar quantization.

One global [min, max] range, recorded by calibrate(), maps every component
linearly onto 0..255. Values outside the calibrated range are clipped.
"""

import logging
from typing import Dict, Iterable, Optional

import numpy as np
import numpy.typing as npt

from tieredann.errors import BuildRequiredError, EmptyVectorError

logger = logging.getLogger(__name__)

Vector = npt.NDArray[np.float32]
Codes = npt.NDArray[np.uint8]

LEVELS = 255


class VectorQuantizer:
    """Compresses float32 vectors to uint8 codes (4x smaller)."""

    compression_ratio = 4

    def __init__(self, min_value: Optional[float] = None, max_value: Optional[float] = None) -> None:
        self.min_value = min_value
        self.max_value = max_value

    @property
    def is_calibrated(self) -> bool:
        return self.min_value is not None and self.max_value is not None

    def calibrate(self, vectors: Iterable[Vector]) -> None:
        """
        Record the global component range of a vector collection.

        Raises:
            EmptyVectorError: If there is nothing to calibrate on
        """
        lows = []
        highs = []
        for vector in vectors:
            array = np.asarray(vector, dtype=np.float32)
            if array.size == 0:
                continue
            lows.append(float(array.min()))
            highs.append(float(array.max()))

        if not lows:
            raise EmptyVectorError("Cannot calibrate quantizer on no vectors")

        self.min_value = min(lows)
        self.max_value = max(highs)
        logger.debug("Quantizer calibrated to [%f, %f]", self.min_value, self.max_value)

    def _require_calibration(self) -> None:
        if not self.is_calibrated:
            raise BuildRequiredError("Quantizer must be calibrated before use")

    def compress(self, vector: Vector) -> Codes:
        """Map a vector to uint8 codes, clipping to the calibrated range."""
        self._require_calibration()
        value_range = self.max_value - self.min_value
        if value_range == 0.0:
            return np.zeros(len(vector), dtype=np.uint8)

        array = np.asarray(vector, dtype=np.float32)
        scaled = (array - self.min_value) / value_range * LEVELS
        return np.clip(np.rint(scaled), 0, LEVELS).astype(np.uint8)

    def decompress(self, codes: Codes) -> Vector:
        """Map codes back to float32; a zero range decodes everything to min."""
        self._require_calibration()
        value_range = self.max_value - self.min_value
        codes = np.asarray(codes, dtype=np.float32)
        return (self.min_value + codes / LEVELS * value_range).astype(np.float32)

    def max_error(self) -> float:
        """Largest reconstruction error for an in-range component."""
        self._require_calibration()
        return (self.max_value - self.min_value) / LEVELS / 2.0

    def to_dict(self) -> Dict[str, float]:
        self._require_calibration()
        return {"min": self.min_value, "max": self.max_value}

    @classmethod
    def from_dict(cls, data: Dict[str, float]) -> "VectorQuantizer":
        return cls(float(data["min"]), float(data["max"]))
