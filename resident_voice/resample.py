"""
Sample conditioning for captured audio: downmix and rate conversion

Windowed-sinc polyphase resampling via scipy.signal, with a linear
interpolation fallback so a resampling problem never fails a capture.
"""

import logging
import math

import numpy as np
from scipy.signal import firwin, resample_poly

logger = logging.getLogger(__name__)

TARGET_SAMPLE_RATE = 16000
RATE_TOLERANCE_HZ = 1000
BLOCK_SIZE = 1024


def downmix_to_mono(samples: np.ndarray, channels: int) -> np.ndarray:
    """
    Average interleaved stereo frames into mono

    A trailing unpaired sample is kept as-is. Input with any other channel
    count is returned unchanged.
    """
    samples = np.asarray(samples, dtype=np.float32).reshape(-1)
    if channels != 2:
        return samples

    paired = len(samples) - len(samples) % 2
    mono = (samples[0:paired:2] + samples[1:paired:2]) / 2.0
    if paired < len(samples):
        mono = np.concatenate([mono, samples[paired:]])
    return mono.astype(np.float32)


class SincResampler:
    """
    Kaiser-windowed sinc resampler

    The lowpass kernel comes from ``scipy.signal.firwin`` and is applied by
    polyphase filtering (``resample_poly``). Input is treated as blocks of
    ``block_size`` samples with the final partial block zero-padded, and the
    result is trimmed to ``floor(len * target_rate / source_rate)`` samples.
    """

    def __init__(
        self,
        source_rate: int,
        target_rate: int,
        block_size: int = BLOCK_SIZE,
        half_width: int = 16,
        cutoff: float = 0.95,
        beta: float = 8.6,
    ):
        if source_rate <= 0 or target_rate <= 0:
            raise ValueError(f"Invalid sample rates: {source_rate} -> {target_rate}")
        if block_size <= 0 or half_width <= 0:
            raise ValueError("block_size and half_width must be positive")
        if not 0.0 < cutoff <= 1.0:
            raise ValueError(f"cutoff must be in (0, 1], got {cutoff}")

        self.source_rate = source_rate
        self.target_rate = target_rate
        self.block_size = block_size

        divisor = math.gcd(source_rate, target_rate)
        self.up = target_rate // divisor
        self.down = source_rate // divisor

        # Lowpass at the narrower Nyquist of the upsampled stream
        max_rate = max(self.up, self.down)
        self.taps = firwin(
            2 * half_width * max_rate + 1,
            cutoff / max_rate,
            window=("kaiser", beta),
        )

    def output_length(self, n_samples: int) -> int:
        return (n_samples * self.target_rate) // self.source_rate

    def process(self, samples: np.ndarray) -> np.ndarray:
        """Resample a complete mono signal"""
        samples = np.asarray(samples, dtype=np.float64)
        if samples.ndim != 1:
            raise ValueError("SincResampler expects mono samples")

        expected = self.output_length(len(samples))
        if expected == 0:
            return np.zeros(0, dtype=np.float32)

        n_blocks = -(-len(samples) // self.block_size)
        padded = np.zeros(n_blocks * self.block_size, dtype=np.float64)
        padded[:len(samples)] = samples

        resampled = resample_poly(padded, self.up, self.down, window=self.taps)
        return resampled[:expected].astype(np.float32)


def resample_linear(samples: np.ndarray, ratio: float) -> np.ndarray:
    """
    Linear interpolation resampling

    Args:
        samples: Mono input samples
        ratio: source_rate / target_rate

    Returns:
        int(len(samples) / ratio) samples, each a fractional-index weighted
        average of its two nearest inputs
    """
    samples = np.asarray(samples, dtype=np.float32)
    output_len = int(len(samples) / ratio)
    if output_len <= 0 or len(samples) == 0:
        return np.zeros(0, dtype=np.float32)
    positions = np.arange(output_len, dtype=np.float64) * ratio
    return np.interp(positions, np.arange(len(samples)), samples).astype(np.float32)


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """High-quality resampling with linear fallback"""
    ratio = source_rate / target_rate if target_rate else 1.0

    try:
        resampler = SincResampler(source_rate, target_rate)
    except ValueError as e:
        logger.warning(f"Resampler init failed: {e}, using linear fallback")
        return resample_linear(samples, ratio)

    try:
        return resampler.process(samples)
    except Exception as e:
        logger.warning(f"Resample error: {e}, using linear fallback")
        return resample_linear(samples, ratio)


def finalize_samples(
    samples: np.ndarray,
    source_rate: int,
    target_rate: int = TARGET_SAMPLE_RATE,
) -> np.ndarray:
    """
    Bring mono samples to the target rate

    Resampling only happens when the rates differ by more than 1kHz.
    Empty input is returned as an empty array; callers decide whether that
    is an error.
    """
    samples = np.asarray(samples, dtype=np.float32)
    if len(samples) == 0:
        logger.warning("No audio captured - check microphone permissions")
        return np.zeros(0, dtype=np.float32)

    if abs(source_rate - target_rate) > RATE_TOLERANCE_HZ:
        logger.info(f"Resampling {source_rate}Hz -> {target_rate}Hz")
        samples = resample(samples, source_rate, target_rate)

    logger.info(f"Final audio: {len(samples)} samples ({len(samples) / target_rate:.2f}s)")
    return samples
