"""
Log-mel spectrogram features for the Whisper encoder
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict

import numpy as np
from transformers import WhisperFeatureExtractor

from resident_voice.errors import TranscriptionFailure

logger = logging.getLogger(__name__)

N_FRAMES = 3000  # 30s window at hop 160


class MelStatus(Enum):
    INVALID_INPUT = "invalid_input"
    PROCESSING = "processing"
    BUFFER_SIZE = "buffer_size"


class MelError(TranscriptionFailure):
    """Mel extraction failed"""

    def __init__(self, status: MelStatus, message: str):
        super().__init__(f"{message} (status: {status.value})")
        self.status = status


@dataclass(frozen=True)
class MelConfig:
    n_mels: int = 128
    sample_rate: int = 16000
    n_fft: int = 400
    hop_length: int = 160

    @property
    def n_samples(self) -> int:
        return N_FRAMES * self.hop_length


class MelFeatureProvider:
    """
    Computes (n_mels, 3000) log-mel features for one 30s window

    One feature extractor is built and cached per mel configuration.
    """

    def __init__(self, sample_rate: int = 16000, n_fft: int = 400, hop_length: int = 160):
        self.sample_rate = sample_rate
        self.n_fft = n_fft
        self.hop_length = hop_length
        self._extractors: Dict[MelConfig, WhisperFeatureExtractor] = {}
        self._lock = threading.Lock()

    def config_for(self, n_mels: int) -> MelConfig:
        return MelConfig(
            n_mels=n_mels,
            sample_rate=self.sample_rate,
            n_fft=self.n_fft,
            hop_length=self.hop_length,
        )

    def compute(self, samples: np.ndarray, n_mels: int) -> np.ndarray:
        """
        Compute log-mel features

        Args:
            samples: Mono float samples; padded or truncated to 30s
            n_mels: Number of mel bins the model expects (80 or 128)

        Returns:
            float32 array of shape (n_mels, 3000)

        Raises:
            MelError: With INVALID_INPUT, PROCESSING or BUFFER_SIZE status
        """
        if n_mels <= 0:
            raise MelError(MelStatus.INVALID_INPUT, f"n_mels must be positive, got {n_mels}")

        samples = np.asarray(samples, dtype=np.float32)
        if samples.ndim != 1:
            raise MelError(MelStatus.INVALID_INPUT, f"expected mono samples, got shape {samples.shape}")
        if len(samples) == 0:
            raise MelError(MelStatus.INVALID_INPUT, "no samples")
        if not np.all(np.isfinite(samples)):
            raise MelError(MelStatus.INVALID_INPUT, "samples contain NaN or infinity")

        config = self.config_for(n_mels)
        extractor = self._extractor(config)

        try:
            features = extractor(
                samples,
                sampling_rate=config.sample_rate,
                padding="max_length",
                max_length=config.n_samples,
                truncation=True,
                return_tensors="np",
            )["input_features"]
        except Exception as e:
            raise MelError(MelStatus.PROCESSING, f"mel computation failed: {e}") from e

        features = np.asarray(features, dtype=np.float32)
        if features.ndim == 3:
            features = features[0]
        if features.shape != (n_mels, N_FRAMES):
            raise MelError(
                MelStatus.BUFFER_SIZE,
                f"unexpected mel shape {features.shape}, expected {(n_mels, N_FRAMES)}",
            )
        return features

    def _extractor(self, config: MelConfig) -> WhisperFeatureExtractor:
        with self._lock:
            extractor = self._extractors.get(config)
            if extractor is None:
                logger.debug(f"Creating feature extractor for {config.n_mels} mel bins")
                extractor = WhisperFeatureExtractor(
                    feature_size=config.n_mels,
                    sampling_rate=config.sample_rate,
                    hop_length=config.hop_length,
                    chunk_length=config.n_samples // config.sample_rate,
                    n_fft=config.n_fft,
                )
                self._extractors[config] = extractor
            return extractor
