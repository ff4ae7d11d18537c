"""
Greedy Whisper decoding with temperature fallback

Audio longer than one 30s window is split into overlapping windows, each
decoded independently and joined with single spaces.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from resident_voice.backend import ModelHandle
from resident_voice.errors import TranscriptionFailure
from resident_voice.mel import MelFeatureProvider

logger = logging.getLogger(__name__)

# Temperature fallback ladder and acceptance thresholds
TEMPERATURES = (0.0, 0.2, 0.4, 0.6, 0.8, 1.0)
COMPRESSION_RATIO_THRESHOLD = 2.4
LOGPROB_THRESHOLD = -1.0

MAX_DECODER_POSITIONS = 448
# Long prompts make the decoder loop on itself
MAX_PROMPT_TOKENS = 50
MAX_REPEATS = 3
BLANK_TOKEN = 220

SAMPLE_RATE = 16000
CHUNK_LENGTH_SECS = 30
CHUNK_OVERLAP_SECS = 5
N_SAMPLES = CHUNK_LENGTH_SECS * SAMPLE_RATE


@dataclass
class DecodeResult:
    """Output of a single decode attempt"""
    text: str
    avg_logprob: float
    compression_ratio: float
    tokens: List[int] = field(default_factory=list)

    @property
    def quality_ok(self) -> bool:
        return (
            self.compression_ratio <= COMPRESSION_RATIO_THRESHOLD
            and self.avg_logprob >= LOGPROB_THRESHOLD
        )


def plan_chunks(
    n_samples: int,
    chunk_samples: int = N_SAMPLES,
    overlap_samples: int = CHUNK_OVERLAP_SECS * SAMPLE_RATE,
) -> List[Tuple[int, int]]:
    """
    Partition audio into overlapping decode windows

    Audio that fits in one window is a single window. Otherwise windows
    advance by ``chunk_samples - overlap_samples``; once the next full
    window would run past the end, the remainder becomes a final window
    only if it is longer than the overlap.

    Returns:
        List of (start, end) sample offsets
    """
    if n_samples <= 0:
        return []
    if n_samples <= chunk_samples:
        return [(0, n_samples)]

    stride = chunk_samples - overlap_samples
    windows = []
    offset = 0
    while offset < n_samples:
        windows.append((offset, min(offset + chunk_samples, n_samples)))
        offset += stride

        if offset + chunk_samples > n_samples and offset < n_samples:
            if n_samples - offset > overlap_samples:
                windows.append((offset, n_samples))
            break
    return windows


def _softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - np.max(logits)
    exp = np.exp(shifted)
    return exp / np.sum(exp)


class DecodingEngine:
    """
    Turns 16kHz mono samples into text

    Not thread-safe: the daemon serializes all calls behind one lock.
    """

    def __init__(
        self,
        handle: ModelHandle,
        prompt: Optional[str] = None,
        mel_provider: Optional[MelFeatureProvider] = None,
    ):
        """
        Initialize engine

        Args:
            handle: Loaded model
            prompt: Optional vocabulary prompt to bias transcription
            mel_provider: Feature extractor (default: MelFeatureProvider())
        """
        self.handle = handle
        self.prompt = prompt
        self.mel = mel_provider or MelFeatureProvider()
        self._prompt_tokens = self._encode_prompt()
        self._suppress_masks: Dict[int, np.ndarray] = {}

    @property
    def prompt_tokens(self) -> List[int]:
        return list(self._prompt_tokens)

    def _encode_prompt(self) -> List[int]:
        if not self.prompt:
            return []

        tokens = list(self.handle.tokenizer.encode(self.prompt))
        if len(tokens) > MAX_PROMPT_TOKENS:
            logger.warning(
                f"Initial prompt has {len(tokens)} tokens, truncating to "
                f"{MAX_PROMPT_TOKENS} (prompt length: {len(self.prompt)} chars)"
            )
            return tokens[:MAX_PROMPT_TOKENS]

        logger.debug(f"Using {len(tokens)} prompt tokens")
        return tokens

    def initial_tokens(self) -> List[int]:
        """
        Decoder prefix for every window

        Multilingual: <|sot|><|lang|><|transcribe|><|notimestamps|>[prompt]
        English-only: <|sot|><|notimestamps|>[prompt]
        """
        special = self.handle.config.special_tokens
        if self.handle.english_only:
            tokens = [special.sot, special.no_timestamps]
        else:
            tokens = [special.sot, special.language, special.transcribe, special.no_timestamps]
        return tokens + self._prompt_tokens

    def suppress_mask(self, vocab_size: int) -> np.ndarray:
        """Additive logit mask: blank token and every timestamp token"""
        mask = self._suppress_masks.get(vocab_size)
        if mask is None:
            mask = np.zeros(vocab_size, dtype=np.float64)
            if BLANK_TOKEN < vocab_size:
                mask[BLANK_TOKEN] = -np.inf
            mask[self.handle.config.special_tokens.no_timestamps + 1:] = -np.inf
            self._suppress_masks[vocab_size] = mask
        return mask

    def decode_at_temperature(self, audio_features, temperature: float) -> DecodeResult:
        """Run one greedy decode over encoder features"""
        backend = self.handle.backend
        eot = self.handle.config.special_tokens.eot

        tokens = self.initial_tokens()
        max_new_tokens = max(0, MAX_DECODER_POSITIONS - len(tokens))

        result_tokens: List[int] = []
        sum_logprob = 0.0
        logprob_count = 0
        last_token = None
        repeat_count = 0

        for step in range(max_new_tokens):
            hidden = backend.decoder_forward(tokens, audio_features, step == 0)
            logits = np.asarray(backend.final_linear(hidden), dtype=np.float64).reshape(-1)

            logits = logits + self.suppress_mask(len(logits))
            if temperature > 0:
                logits = logits / temperature

            probs = _softmax(logits)
            next_token = int(np.argmax(logits))

            prob = float(probs[next_token])
            if prob > 0:
                sum_logprob += math.log(prob)
                logprob_count += 1

            if next_token == eot:
                logger.debug(f"EOT at step {step}")
                break

            if next_token == last_token:
                repeat_count += 1
                if repeat_count >= MAX_REPEATS:
                    logger.warning(
                        f"Token {next_token} repeated {repeat_count} times, breaking loop "
                        f"({len(result_tokens)} tokens generated)"
                    )
                    break
            else:
                repeat_count = 0

            last_token = next_token
            tokens.append(next_token)
            result_tokens.append(next_token)

        text = self.handle.tokenizer.decode(result_tokens).strip()

        avg_logprob = sum_logprob / logprob_count if logprob_count else 0.0
        compression_ratio = len(result_tokens) / len(text) if text else 0.0
        logger.debug(
            f"Decoded {len(result_tokens)} tokens at temp {temperature}: "
            f"avg_logprob={avg_logprob:.3f}, compression={compression_ratio:.3f}"
        )
        return DecodeResult(text, avg_logprob, compression_ratio, result_tokens)

    def decode_with_fallback(self, audio_features) -> str:
        """
        Decode with rising temperature until quality thresholds are met

        The last temperature is accepted unconditionally.

        Raises:
            TranscriptionFailure: If every temperature raised
        """
        for i, temperature in enumerate(TEMPERATURES):
            is_last = i == len(TEMPERATURES) - 1
            try:
                result = self.decode_at_temperature(audio_features, temperature)
            except Exception as e:
                logger.warning(f"Decoding failed at temp {temperature}: {e}")
                continue

            if is_last or result.quality_ok:
                logger.debug(f"Accepted {len(result.tokens)} tokens at temp {temperature}")
                return result.text

            logger.debug(
                f"Quality check failed at temp {temperature} "
                f"(logprob={result.avg_logprob:.3f}, compression={result.compression_ratio:.3f}), "
                f"trying next"
            )

        raise TranscriptionFailure("All temperature fallbacks failed")

    def transcribe_chunk(self, samples: np.ndarray) -> str:
        """Transcribe at most one 30s window"""
        samples = np.asarray(samples, dtype=np.float32)
        if len(samples) == 0:
            return ""

        window = np.zeros(N_SAMPLES, dtype=np.float32)
        n = min(len(samples), N_SAMPLES)
        window[:n] = samples[:n]

        mel = self.mel.compute(window, self.handle.config.num_mel_bins)
        try:
            audio_features = self.handle.backend.encoder_forward(mel)
        except Exception as e:
            raise TranscriptionFailure(f"Encoder forward failed: {e}") from e
        return self.decode_with_fallback(audio_features)

    def transcribe(self, samples: np.ndarray) -> str:
        """
        Transcribe 16kHz mono audio of any length

        Returns:
            Transcript, or "" for empty input / no speech
        """
        samples = np.asarray(samples, dtype=np.float32)
        if len(samples) == 0:
            return ""

        duration = len(samples) / SAMPLE_RATE
        logger.info(
            f"Transcribing {len(samples)} samples ({duration:.2f}s) "
            f"[prompt={bool(self._prompt_tokens)}]"
        )

        windows = plan_chunks(len(samples))
        if len(windows) == 1:
            return self.transcribe_chunk(samples)

        logger.debug(
            f"Splitting {duration:.1f}s audio into {len(windows)} windows of "
            f"{CHUNK_LENGTH_SECS}s with {CHUNK_OVERLAP_SECS}s overlap"
        )
        results = []
        for index, (start, end) in enumerate(windows, start=1):
            try:
                text = self.transcribe_chunk(samples[start:end])
            except Exception as e:
                logger.warning(f"Chunk {index} failed: {e}")
                continue
            if text:
                results.append(text)

        final_text = " ".join(results)
        logger.debug(f"Long-form transcription: {len(results)} chunks, {len(final_text)} chars")
        return final_text
