"""Tests for uint8 scalar quantization."""

import numpy as np
import pytest

from tieredann.errors import BuildRequiredError, EmptyVectorError
from tieredann.router.quantizer import VectorQuantizer


def test_calibrate_records_global_range():
    quantizer = VectorQuantizer()
    quantizer.calibrate([np.array([0.0, 0.5]), np.array([-1.0, 2.0])])

    assert quantizer.is_calibrated
    assert quantizer.min_value == -1.0
    assert quantizer.max_value == 2.0


def test_calibrate_on_nothing_fails():
    with pytest.raises(EmptyVectorError):
        VectorQuantizer().calibrate([])


def test_uncalibrated_use_fails():
    quantizer = VectorQuantizer()
    with pytest.raises(BuildRequiredError):
        quantizer.compress(np.zeros(2))
    with pytest.raises(BuildRequiredError):
        quantizer.decompress(np.zeros(2, dtype=np.uint8))


def test_endpoints_map_to_code_extremes():
    quantizer = VectorQuantizer(-1.0, 1.0)
    codes = quantizer.compress(np.array([-1.0, 1.0, 0.0], dtype=np.float32))

    assert codes.dtype == np.uint8
    assert codes[0] == 0
    assert codes[1] == 255


def test_reconstruction_error_is_bounded():
    rng = np.random.default_rng(0)
    vectors = rng.uniform(-3.0, 3.0, size=(50, 8)).astype(np.float32)
    quantizer = VectorQuantizer()
    quantizer.calibrate(vectors)

    for vector in vectors:
        restored = quantizer.decompress(quantizer.compress(vector))
        assert np.max(np.abs(restored - vector)) <= quantizer.max_error() + 1e-6


def test_out_of_range_values_are_clipped():
    quantizer = VectorQuantizer(0.0, 1.0)
    codes = quantizer.compress(np.array([-5.0, 5.0], dtype=np.float32))
    assert codes.tolist() == [0, 255]


def test_zero_range():
    quantizer = VectorQuantizer(0.5, 0.5)
    codes = quantizer.compress(np.array([0.5, 0.5], dtype=np.float32))

    assert codes.tolist() == [0, 0]
    assert quantizer.decompress(codes).tolist() == [0.5, 0.5]


def test_dict_round_trip():
    quantizer = VectorQuantizer(-0.25, 0.75)
    restored = VectorQuantizer.from_dict(quantizer.to_dict())

    assert restored.min_value == -0.25
    assert restored.max_value == 0.75
    assert VectorQuantizer.compression_ratio == 4
