"""
Inference backends for Whisper-family models

The decoding engine only talks to the ``WhisperBackend`` interface: one
encoder pass per 30s window, one decoder step per generated token, and a
final projection to vocabulary logits.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence, Tuple

import numpy as np
import torch

logger = logging.getLogger(__name__)


class WeightFormat(Enum):
    FULL_PRECISION = "full_precision"
    QUANTIZED = "quantized"


@dataclass(frozen=True)
class SpecialTokens:
    sot: int
    eot: int
    transcribe: int
    no_timestamps: int
    language: int


@dataclass(frozen=True)
class DecodingConfig:
    """What the decode loop needs to know about the model"""
    vocab_size: int
    num_mel_bins: int
    special_tokens: SpecialTokens


class WhisperBackend(ABC):
    """Encoder/decoder forward passes over one loaded model"""

    @abstractmethod
    def encoder_forward(self, mel: np.ndarray) -> Any:
        """
        Run the encoder over one window

        Args:
            mel: (n_mels, 3000) log-mel features

        Returns:
            Opaque audio features, passed back to decoder_forward
        """

    @abstractmethod
    def decoder_forward(self, tokens: Sequence[int], audio_features: Any, flush: bool) -> Any:
        """
        Run the decoder over the token sequence

        Args:
            tokens: Full token sequence so far
            audio_features: Output of encoder_forward for this window
            flush: Discard the decoder cache before this step

        Returns:
            Hidden state of the last position
        """

    @abstractmethod
    def final_linear(self, hidden: Any) -> np.ndarray:
        """Project a hidden state to (vocab_size,) float32 logits"""


class TorchWhisperBackend(WhisperBackend):
    """
    Backend over a transformers WhisperForConditionalGeneration

    Keeps the decoder key/value cache between steps of one decode; only the
    tokens appended since the previous step are fed through the decoder.
    """

    def __init__(self, model, device: torch.device, dtype: torch.dtype):
        self.device = device
        self.dtype = dtype
        self.model = model.to(device=device, dtype=dtype)
        self.model.eval()

        self._cache = None
        self._cached_len = 0

    def encoder_forward(self, mel: np.ndarray) -> torch.Tensor:
        features = torch.from_numpy(np.ascontiguousarray(mel, dtype=np.float32))
        features = features.unsqueeze(0).to(device=self.device, dtype=self.dtype)
        with torch.inference_mode():
            return self.model.model.encoder(input_features=features).last_hidden_state

    def decoder_forward(self, tokens: Sequence[int], audio_features: torch.Tensor, flush: bool) -> torch.Tensor:
        if flush or self._cache is None or self._cached_len >= len(tokens):
            self._cache = None
            self._cached_len = 0

        new_tokens = list(tokens[self._cached_len:])
        input_ids = torch.tensor([new_tokens], dtype=torch.long, device=self.device)

        with torch.inference_mode():
            outputs = self.model.model.decoder(
                input_ids=input_ids,
                encoder_hidden_states=audio_features,
                past_key_values=self._cache,
                use_cache=True,
                return_dict=True,
            )

        self._cache = outputs.past_key_values
        self._cached_len = len(tokens)
        return outputs.last_hidden_state[:, -1, :]

    def final_linear(self, hidden: torch.Tensor) -> np.ndarray:
        with torch.inference_mode():
            logits = self.model.proj_out(hidden)
        return logits[0].float().cpu().numpy()


@dataclass
class ModelHandle:
    """
    A loaded model, immutable after load

    The only mutable state is the decoder cache inside ``backend``.
    """
    name: str
    format: WeightFormat
    backend: WhisperBackend
    tokenizer: Any
    config: DecodingConfig
    english_only: bool = False
    gpu_enabled: bool = False
    gpu_name: str = "CPU"


def select_device() -> Tuple[torch.device, torch.dtype, str]:
    """
    Pick the inference device

    Returns:
        (device, weight dtype, human-readable accelerator name)
    """
    if torch.cuda.is_available():
        name = torch.cuda.get_device_name(0)
        logger.info(f"CUDA device initialized successfully ({name})")
        return torch.device("cuda", 0), torch.float16, name

    mps = getattr(torch.backends, "mps", None)
    if mps is not None and mps.is_available():
        logger.info("Using Apple Metal (MPS) device")
        return torch.device("mps"), torch.float32, "Apple Metal"

    logger.warning("No GPU available, running on CPU (transcription will be slow)")
    return torch.device("cpu"), torch.float32, "CPU"
