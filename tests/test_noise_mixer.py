"""Tests for audio.noise_mixer."""
import numpy as np
import pytest

from talkloop.audio.noise_mixer import (
    INT16_MAX,
    NoiseMixer,
    NoiseProfile,
    NoiseType,
    generate_ambient_loop,
)


def pcm(*samples: int) -> bytes:
    return np.array(samples, dtype="<i2").tobytes()


class TestNoiseProfile:
    """Test NoiseProfile level clamping."""

    def test_defaults(self):
        profile = NoiseProfile()
        assert profile.type == NoiseType.NONE
        assert profile.level == 0.0

    def test_level_clamped_on_construction(self):
        assert NoiseProfile(type=NoiseType.OFFICE, level=150).level == 100.0
        assert NoiseProfile(type=NoiseType.OFFICE, level=-10).level == 0.0

    def test_level_clamped_on_assignment(self):
        profile = NoiseProfile(type=NoiseType.CAR, level=20)
        profile.level = 250
        assert profile.level == 100.0
        profile.level = -1
        assert profile.level == 0.0

    def test_type_from_string(self):
        assert NoiseProfile(type="coffeeshop").type == NoiseType.COFFEESHOP


class TestAmbientLoop:
    """Test procedural ambience generation."""

    @pytest.mark.parametrize("noise_type", [t for t in NoiseType if t != NoiseType.NONE])
    def test_generates_int16_in_range(self, noise_type):
        loop = generate_ambient_loop(noise_type, 16000, seed=1)
        assert loop.dtype == np.int16
        assert loop.shape == (16000,)
        assert np.any(loop != 0)

    def test_none_is_silent(self):
        loop = generate_ambient_loop(NoiseType.NONE, 100)
        assert not np.any(loop)

    def test_seed_is_deterministic(self):
        a = generate_ambient_loop(NoiseType.OFFICE, 1000, seed=7)
        b = generate_ambient_loop(NoiseType.OFFICE, 1000, seed=7)
        assert np.array_equal(a, b)

    def test_car_engine_dominates(self):
        # Engine rumble is a deterministic sine with amplitude 0.1
        loop = generate_ambient_loop(NoiseType.CAR, 2000, seed=3)
        assert np.max(np.abs(loop)) <= int(0.13 * INT16_MAX)
        assert np.max(np.abs(loop)) >= int(0.07 * INT16_MAX)


class TestNoiseMixer:
    """Test NoiseMixer mixing and hot swapping."""

    def test_none_returns_input_unchanged(self):
        mixer = NoiseMixer(NoiseProfile(type=NoiseType.NONE, level=80))
        audio = pcm(1, -2, 300, -32768)
        assert mixer.mix_audio(audio) == audio
        assert mixer.ambient_loop is None

    def test_level_zero_returns_input_unchanged(self):
        mixer = NoiseMixer(NoiseProfile(type=NoiseType.OFFICE, level=0), seed=1)
        audio = pcm(5, 6, 7, 8)
        assert mixer.mix_audio(audio) == audio
        assert mixer.cursor == 0

    def test_full_level_is_the_loop_at_cursor(self):
        mixer = NoiseMixer(NoiseProfile(type=NoiseType.CALLCENTER, level=100), seed=2)
        loop = mixer.ambient_loop
        silence = bytes(8)

        first = mixer.mix_audio(silence)
        assert first == loop[:4].astype("<i2").tobytes()

        second = mixer.mix_audio(pcm(1000, -1000, 5, 5))
        assert second == loop[4:8].astype("<i2").tobytes()
        assert mixer.cursor == 8

    def test_mix_formula(self):
        mixer = NoiseMixer(NoiseProfile(type=NoiseType.HOME, level=25), seed=4)
        loop = mixer.ambient_loop.astype(np.float64)
        samples = np.array([10000, -10000, 32767], dtype=np.float64)

        mixed = np.frombuffer(mixer.mix_audio(samples.astype("<i2").tobytes()), dtype="<i2")
        expected = np.clip(np.round(samples * 0.75 + loop[:3] * 0.25), -32768, 32767)
        assert np.array_equal(mixed, expected.astype(np.int16))

    def test_cursor_wraps_around_loop(self):
        mixer = NoiseMixer(
            NoiseProfile(type=NoiseType.OUTDOOR, level=100), sample_rate=10, loop_seconds=0.5, seed=5
        )
        loop = mixer.ambient_loop
        assert loop.shape == (5,)

        mixed = np.frombuffer(mixer.mix_audio(bytes(14)), dtype="<i2")
        assert np.array_equal(mixed, np.concatenate([loop, loop[:2]]))
        assert mixer.cursor == 2

    def test_odd_trailing_byte_passes_through(self):
        mixer = NoiseMixer(NoiseProfile(type=NoiseType.OFFICE, level=50), seed=6)
        audio = pcm(100, 200) + b"\x7f"
        mixed = mixer.mix_audio(audio)
        assert len(mixed) == len(audio)
        assert mixed[-1:] == b"\x7f"
        assert mixer.cursor == 2

    def test_update_level_keeps_cursor(self):
        mixer = NoiseMixer(NoiseProfile(type=NoiseType.OFFICE, level=50), seed=8)
        mixer.mix_audio(bytes(20))
        loop_before = mixer.ambient_loop

        mixer.update_config(level=70)

        assert mixer.cursor == 10
        assert mixer.get_config().level == 70
        assert np.array_equal(mixer.ambient_loop, loop_before)

    def test_update_type_resets_cursor(self):
        mixer = NoiseMixer(NoiseProfile(type=NoiseType.OFFICE, level=50), seed=8)
        mixer.mix_audio(bytes(20))

        mixer.update_config(noise_type=NoiseType.CAR)

        assert mixer.cursor == 0
        assert mixer.get_config().type == NoiseType.CAR
        assert mixer.ambient_loop is not None

    def test_update_to_none_disables_mixing(self):
        mixer = NoiseMixer(NoiseProfile(type=NoiseType.OFFICE, level=50), seed=8)
        mixer.update_config(noise_type="none")
        audio = pcm(1, 2, 3)
        assert mixer.mix_audio(audio) == audio

    def test_update_clamps_level(self):
        mixer = NoiseMixer(NoiseProfile(type=NoiseType.OFFICE, level=50))
        mixer.update_config(level=500)
        assert mixer.get_config().level == 100.0

    def test_get_config_is_a_copy(self):
        mixer = NoiseMixer(NoiseProfile(type=NoiseType.OFFICE, level=50))
        mixer.get_config().level = 10
        assert mixer.get_config().level == 50

    def test_reset_rewinds_cursor(self):
        mixer = NoiseMixer(NoiseProfile(type=NoiseType.HOME, level=100), seed=9)
        first = mixer.mix_audio(bytes(6))
        mixer.reset()
        assert mixer.cursor == 0
        assert mixer.mix_audio(bytes(6)) == first
