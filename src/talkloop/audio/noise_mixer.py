"""Ambient background noise mixing for synthesized speech.

Blends a procedurally generated, looping ambience under the assistant's
voice so calls sound like they come from a real room. Audio is 16-bit
little-endian mono PCM throughout.
"""
from enum import Enum
from typing import Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, field_validator

from ..logging_config import setup_logger

logger = setup_logger("talkloop.noise_mixer")

INT16_MIN = -32768
INT16_MAX = 32767
_PCM_DTYPE = np.dtype("<i2")


class NoiseType(str, Enum):
    """Ambient environments."""
    NONE = "none"
    OFFICE = "office"
    CALLCENTER = "callcenter"
    COFFEESHOP = "coffeeshop"
    OUTDOOR = "outdoor"
    HOME = "home"
    CAR = "car"


class NoiseProfile(BaseModel):
    """Ambient noise selection.

    Attributes:
        type: Ambient environment (``none`` disables mixing)
        level: Mix level in percent, clamped to [0, 100]
    """

    model_config = ConfigDict(validate_assignment=True)

    type: NoiseType = NoiseType.NONE
    level: float = 0.0

    @field_validator("level", mode="before")
    @classmethod
    def clamp_level(cls, value: float) -> float:
        """Clamp level into [0, 100] instead of rejecting it."""
        return max(0.0, min(100.0, float(value)))


def generate_ambient_loop(
    noise_type: NoiseType,
    num_samples: int,
    sample_rate: int = 16000,
    seed: Optional[int] = None
) -> np.ndarray:
    """Generate a looping int16 ambience waveform for a noise type."""
    rng = np.random.default_rng(seed)
    index = np.arange(num_samples, dtype=np.float64)

    def floor(amplitude: float) -> np.ndarray:
        return (rng.random(num_samples) - 0.5) * amplitude

    def bursts(probability: float, amplitude: float) -> np.ndarray:
        mask = rng.random(num_samples) < probability
        return np.where(mask, (rng.random(num_samples) - 0.5) * amplitude, 0.0)

    if noise_type == NoiseType.OFFICE:
        # Fluorescent hum plus the odd keyboard click
        hum = np.sin(2 * np.pi * 60.0 * index / sample_rate) * 0.02
        samples = floor(0.1) + hum + bursts(0.001, 0.3)
    elif noise_type == NoiseType.CALLCENTER:
        samples = floor(0.15) + bursts(0.002, 0.4)
    elif noise_type == NoiseType.COFFEESHOP:
        samples = floor(0.12) + bursts(0.0015, 0.35)
    elif noise_type == NoiseType.OUTDOOR:
        samples = floor(0.08) + np.sin(index / 100.0) * 0.05
    elif noise_type == NoiseType.HOME:
        samples = floor(0.08) + bursts(0.0005, 0.2)
    elif noise_type == NoiseType.CAR:
        samples = np.sin(index / 50.0) * 0.1 + floor(0.05)
    else:
        samples = np.zeros(num_samples)

    return np.clip(samples * INT16_MAX, INT16_MIN, INT16_MAX).astype(np.int16)


class NoiseMixer:
    """Mixes looping ambient noise into outgoing PCM audio.

    The loop read cursor persists across ``mix_audio`` calls so the
    ambience continues seamlessly from one chunk to the next.
    """

    def __init__(
        self,
        profile: Optional[NoiseProfile] = None,
        sample_rate: int = 16000,
        loop_seconds: float = 10.0,
        seed: Optional[int] = None
    ):
        self._profile = (profile or NoiseProfile()).model_copy()
        self.sample_rate = sample_rate
        self.loop_seconds = loop_seconds
        self._seed = seed
        self._loop: Optional[np.ndarray] = None
        self._cursor = 0

        if self._profile.type != NoiseType.NONE:
            self._generate_loop()

        logger.info(
            f"Noise mixer initialized: {self._profile.type.value} at {self._profile.level:g}%"
        )

    def _generate_loop(self) -> None:
        num_samples = max(1, int(self.sample_rate * self.loop_seconds))
        self._loop = generate_ambient_loop(
            self._profile.type, num_samples, self.sample_rate, self._seed
        )
        logger.debug(
            f"Generated {self.loop_seconds:g}s of synthetic {self._profile.type.value} noise"
        )

    @property
    def cursor(self) -> int:
        """Sample index of the next loop sample to be mixed."""
        return self._cursor

    @property
    def ambient_loop(self) -> Optional[np.ndarray]:
        """Copy of the current ambience loop, or None when disabled."""
        return None if self._loop is None else self._loop.copy()

    def mix_audio(self, audio: bytes) -> bytes:
        """Blend ambience into a chunk of int16 PCM audio."""
        level = self._profile.level
        if self._profile.type == NoiseType.NONE or level == 0 or self._loop is None:
            return audio

        usable = len(audio) - (len(audio) % 2)
        if usable != len(audio):
            logger.warning(f"Odd-length audio chunk ({len(audio)} bytes), passing last byte through")

        samples = np.frombuffer(audio[:usable], dtype=_PCM_DTYPE).astype(np.float64)
        num_samples = samples.shape[0]
        if num_samples == 0:
            return audio

        ratio = level / 100.0
        loop_len = self._loop.shape[0]
        ambient = self._loop[(self._cursor + np.arange(num_samples)) % loop_len]

        mixed = np.round(samples * (1.0 - ratio) + ambient * ratio)
        mixed = np.clip(mixed, INT16_MIN, INT16_MAX).astype(_PCM_DTYPE)

        self._cursor = (self._cursor + num_samples) % loop_len

        return mixed.tobytes() + audio[usable:]

    def update_config(
        self,
        noise_type: Optional[NoiseType] = None,
        level: Optional[float] = None
    ) -> None:
        """Hot-swap noise type and/or level mid-call.

        Changing the type rewinds the cursor and regenerates the loop;
        a level-only change keeps the cursor where it is.
        """
        if noise_type is not None:
            noise_type = NoiseType(noise_type)
            if noise_type != self._profile.type:
                self._profile.type = noise_type
                self._cursor = 0
                self._loop = None
                if noise_type != NoiseType.NONE:
                    self._generate_loop()

        if level is not None:
            self._profile.level = level

        logger.info(
            f"Background noise updated: {self._profile.type.value} at {self._profile.level:g}%"
        )

    def get_config(self) -> NoiseProfile:
        """Return the current noise profile."""
        return self._profile.model_copy()

    def reset(self) -> None:
        """Rewind the loop cursor."""
        self._cursor = 0
