"""
Tests for the grain overlay.
"""

import numpy as np
import pytest

from noise import NoiseStage, apply_noise, noise_field
from pixels import ConfigurationError


@pytest.mark.parametrize("opacity,scale", [(0.05, 0.0), (0.3, 1.0), (1.0, 5.0), (4.0, 20.0)])
def test_noise_stays_in_range(random_buffer, opacity, scale):
    out = apply_noise(random_buffer, opacity, scale, np.random.default_rng(3))
    assert out.data.dtype == np.uint8
    assert out.data.min() >= 0 and out.data.max() <= 255
    np.testing.assert_array_equal(out.data[..., 3], random_buffer.data[..., 3])


def test_strong_noise_saturates_channels(grey_buffer):
    out = apply_noise(grey_buffer, 4.0, 20.0, np.random.default_rng(3)).data[..., :3]
    assert (out == 0).any() and (out == 255).any()


def test_zero_opacity_is_identity(random_buffer):
    assert apply_noise(random_buffer, 0.0, 1.0, np.random.default_rng(0)) == random_buffer


def test_same_seed_same_grain(grey_buffer):
    a = apply_noise(grey_buffer, 0.2, 1.0, np.random.default_rng(42))
    b = apply_noise(grey_buffer, 0.2, 1.0, np.random.default_rng(42))
    c = apply_noise(grey_buffer, 0.2, 1.0, np.random.default_rng(43))
    assert a == b
    assert a != c


def test_grain_is_grey(grey_buffer):
    out = apply_noise(grey_buffer, 0.2, 1.0, np.random.default_rng(5)).data
    np.testing.assert_array_equal(out[..., 0], out[..., 1])
    np.testing.assert_array_equal(out[..., 1], out[..., 2])


def test_field_range_without_random_term():
    field = noise_field(64, 32, 0.0, np.random.default_rng(1))
    assert field.shape == (32, 64)
    assert field.min() >= -32.0
    assert field.max() <= 255.0 + 32.0


def test_scale_widens_the_field():
    narrow = noise_field(64, 64, 0.0, np.random.default_rng(1))
    wide = noise_field(64, 64, 3.0, np.random.default_rng(1))
    assert wide.std() > 2 * narrow.std()


@pytest.mark.parametrize("opacity,scale", [(-0.1, 1.0), (0.1, -1.0), (float("nan"), 1.0)])
def test_bad_parameters_are_rejected(random_buffer, opacity, scale):
    with pytest.raises(ConfigurationError):
        apply_noise(random_buffer, opacity, scale, np.random.default_rng(0))


def test_stage_uses_injected_generator(grey_buffer):
    a = NoiseStage(rng=np.random.default_rng(9)).generate(grey_buffer, opacity=0.1)
    b = NoiseStage(seed=9).generate(grey_buffer, opacity=0.1)
    assert a == b


@pytest.mark.parametrize("extras", [{"opacity": -0.2}, {"opacity": 0.1, "scale": float("inf")}, {"opacity": "x"}])
def test_stage_rejects_bad_extras(grey_buffer, extras):
    with pytest.raises(ConfigurationError):
        NoiseStage(seed=1).generate(grey_buffer, **extras)
