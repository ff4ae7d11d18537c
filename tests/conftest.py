"""Shared fakes: no audio hardware, no model downloads."""

import sys
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np
import pytest


def _ensure_repo_on_path() -> None:
    """Allow tests to import the package without installing it."""
    repo_root = Path(__file__).resolve().parents[1]
    path_str = str(repo_root)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


_ensure_repo_on_path()

from resident_voice.backend import (  # noqa: E402
    DecodingConfig,
    ModelHandle,
    SpecialTokens,
    WeightFormat,
    WhisperBackend,
)
from resident_voice.config import Config  # noqa: E402
from resident_voice.mel import MelError, MelStatus  # noqa: E402

# Token layout of the fake vocabulary: 0..255 are words, then control
# tokens, then timestamp tokens up to VOCAB_SIZE.
EOT = 256
SOT = 257
LANG_EN = 258
TRANSCRIBE = 259
NO_TIMESTAMPS = 260
VOCAB_SIZE = 270
N_MELS = 80

SPECIAL_TOKENS = SpecialTokens(
    sot=SOT,
    eot=EOT,
    transcribe=TRANSCRIBE,
    no_timestamps=NO_TIMESTAMPS,
    language=LANG_EN,
)


class FakeTokenizer:
    """Word ``wN`` is token N"""

    _special = {
        "<|endoftext|>": EOT,
        "<|startoftranscript|>": SOT,
        "<|en|>": LANG_EN,
        "<|transcribe|>": TRANSCRIBE,
        "<|notimestamps|>": NO_TIMESTAMPS,
    }

    def encode(self, text: str) -> List[int]:
        return [i % EOT for i, _ in enumerate(text.split())]

    def decode(self, ids: Sequence[int]) -> str:
        return " ".join(f"w{i}" for i in ids if i < EOT)

    def token_to_id(self, token: str) -> Optional[int]:
        return self._special.get(token)


class ScriptedBackend(WhisperBackend):
    """
    Emits a fixed token sequence per decode attempt

    A decode attempt starts at every flushed decoder step. Attempt ``n``
    follows ``scripts[n]`` (the last script repeats); once a script runs
    out the backend emits end-of-text. ``confidences[n]`` is the logit
    margin of the chosen token: high means probability close to 1.
    """

    def __init__(
        self,
        scripts: Sequence[Sequence[int]] = ((EOT,),),
        confidences: Sequence[float] = (30.0,),
        fail_attempts: Sequence[int] = (),
    ):
        self.scripts = [list(script) for script in scripts]
        self.confidences = list(confidences)
        self.fail_attempts = set(fail_attempts)
        self.encoder_calls = 0
        self.decoder_calls = []
        self.attempt = -1
        self._step = 0

    def encoder_forward(self, mel):
        self.encoder_calls += 1
        return ("features", self.encoder_calls)

    def decoder_forward(self, tokens, audio_features, flush):
        if flush:
            self.attempt += 1
            self._step = 0
        if self.attempt in self.fail_attempts:
            raise RuntimeError(f"decoder failed on attempt {self.attempt}")

        self.decoder_calls.append((list(tokens), flush))
        script = self.scripts[min(self.attempt, len(self.scripts) - 1)]
        token = script[self._step] if self._step < len(script) else EOT
        self._step += 1
        confidence = self.confidences[min(self.attempt, len(self.confidences) - 1)]
        return token, confidence

    def final_linear(self, hidden):
        token, confidence = hidden
        logits = np.zeros(VOCAB_SIZE, dtype=np.float32)
        logits[token] = confidence
        return logits


class FakeMel:
    """Records the windows it is given"""

    def __init__(self, fail_on_calls: Sequence[int] = ()):
        self.calls = []
        self.fail_on_calls = set(fail_on_calls)

    def compute(self, samples, n_mels):
        self.calls.append(np.asarray(samples).copy())
        if len(self.calls) in self.fail_on_calls:
            raise MelError(MelStatus.PROCESSING, "scripted failure")
        return np.zeros((n_mels, 3000), dtype=np.float32)


def make_handle(backend: WhisperBackend, english_only: bool = False, name: str = "fake/whisper") -> ModelHandle:
    return ModelHandle(
        name=name,
        format=WeightFormat.FULL_PRECISION,
        backend=backend,
        tokenizer=FakeTokenizer(),
        config=DecodingConfig(
            vocab_size=VOCAB_SIZE,
            num_mel_bins=N_MELS,
            special_tokens=SPECIAL_TOKENS,
        ),
        english_only=english_only,
        gpu_enabled=False,
        gpu_name="CPU",
    )


class FakeEngine:
    """Stands in for DecodingEngine inside the daemon"""

    def __init__(self, text: str = "hello world", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.calls = []
        self.handle = make_handle(ScriptedBackend(), name="fake/whisper")

    def transcribe(self, samples):
        self.calls.append(np.asarray(samples))
        if self.error is not None:
            raise self.error
        return self.text


def waiting_capture(samples: Optional[np.ndarray] = None):
    """Capture function that records until stopped"""
    if samples is None:
        samples = np.full(1600, 0.1, dtype=np.float32)

    def capture(token, max_duration):
        token.wait(max_duration)
        return samples

    return capture


@pytest.fixture
def config(tmp_path):
    cfg = Config()
    cfg.server.state_dir = str(tmp_path / "state")
    cfg.audio.audio_clips_path = str(tmp_path / "clips")
    return cfg
