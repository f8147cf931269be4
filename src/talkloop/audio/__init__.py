"""Outgoing audio processing."""
from .noise_mixer import NoiseMixer, NoiseProfile, NoiseType, generate_ambient_loop

__all__ = [
    "NoiseMixer",
    "NoiseProfile",
    "NoiseType",
    "generate_ambient_loop",
]
