"""
Model loading

Resolves a model identifier to config, tokenizer and weights, in order:

1. Local quantized file (``*.gguf`` / ``*.bin``, or a directory holding
   ``model.gguf``)
2. Local directory with ``model.safetensors``, ``config.json`` and
   ``tokenizer.json``
3. Hugging Face repository id (``model.gguf`` preferred, else
   ``model.safetensors``)

Every failure surfaces as ModelLoadFailure.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import gguf
import numpy as np
import torch
from huggingface_hub import hf_hub_download
from huggingface_hub.errors import EntryNotFoundError
from safetensors.torch import load_file
from tokenizers import Tokenizer
from transformers import WhisperConfig, WhisperForConditionalGeneration

from resident_voice.backend import (
    DecodingConfig,
    ModelHandle,
    SpecialTokens,
    TorchWhisperBackend,
    WeightFormat,
    select_device,
)
from resident_voice.errors import ModelLoadFailure

logger = logging.getLogger(__name__)

# config/tokenizer source for quantized files that ship without them
REFERENCE_REPO = "openai/whisper-large-v3-turbo"

CONFIG_FILE = "config.json"
TOKENIZER_FILE = "tokenizer.json"
SAFETENSORS_FILE = "model.safetensors"
GGUF_FILE = "model.gguf"
QUANTIZED_SUFFIXES = (".gguf", ".bin")

# Parameters that may legitimately be absent from a checkpoint
OPTIONAL_WEIGHTS = {"proj_out.weight", "model.encoder.embed_positions.weight"}


class WhisperTokenizer:
    """Thin wrapper over a ``tokenizers`` tokenizer"""

    def __init__(self, tokenizer: Tokenizer):
        self._tokenizer = tokenizer

    @classmethod
    def from_file(cls, path: Path) -> "WhisperTokenizer":
        return cls(Tokenizer.from_file(str(path)))

    def encode(self, text: str) -> List[int]:
        return self._tokenizer.encode(text, add_special_tokens=False).ids

    def decode(self, ids: Sequence[int]) -> str:
        return self._tokenizer.decode(list(ids), skip_special_tokens=True)

    def token_to_id(self, token: str) -> Optional[int]:
        return self._tokenizer.token_to_id(token)


@dataclass
class ModelFiles:
    config_path: Path
    tokenizer_path: Path
    weights_path: Path
    format: WeightFormat


def is_english_only(model_id: str) -> bool:
    """English-only checkpoints use the short <|sot|><|notimestamps|> prefix"""
    return ".en" in model_id or model_id.endswith("-en")


def is_valid_gguf(path: Path) -> bool:
    """Check the 4-byte GGUF magic header"""
    try:
        with open(path, "rb") as f:
            magic = f.read(4)
    except OSError:
        return False
    return len(magic) == 4 and int.from_bytes(magic, "little") == gguf.GGUF_MAGIC


def resolve_model_files(model_id: str) -> ModelFiles:
    """
    Locate config, tokenizer and weights for a model identifier

    Raises:
        ModelLoadFailure: If a required file is missing or invalid
    """
    path = Path(model_id).expanduser()

    if path.exists():
        if path.is_file() and path.suffix in QUANTIZED_SUFFIXES:
            return _resolve_quantized(path, sibling_dir=path.parent)
        if path.is_dir() and (path / GGUF_FILE).exists():
            return _resolve_quantized(path / GGUF_FILE, sibling_dir=path)
        if path.is_dir():
            return _resolve_local_dir(path)
        raise ModelLoadFailure(f"Unsupported model file: {path} (expected .gguf/.bin or a directory)")

    return _resolve_remote(model_id)


def _resolve_quantized(gguf_path: Path, sibling_dir: Path) -> ModelFiles:
    logger.info("Detected quantized model (GGUF format)")
    if not is_valid_gguf(gguf_path):
        raise ModelLoadFailure(
            f"Invalid or corrupted GGUF file: {gguf_path}. "
            f"File may be a different format (GGML, safetensors) or corrupted."
        )

    config_path = sibling_dir / CONFIG_FILE
    tokenizer_path = sibling_dir / TOKENIZER_FILE
    if config_path.exists() and tokenizer_path.exists():
        logger.info("Using local config and tokenizer")
    else:
        logger.warning(
            f"Config/tokenizer not found next to {gguf_path.name} - falling back to "
            f"{REFERENCE_REPO}. If your GGUF model is not based on it, transcription may fail."
        )
        config_path = _download(REFERENCE_REPO, CONFIG_FILE)
        tokenizer_path = _download(REFERENCE_REPO, TOKENIZER_FILE)

    return ModelFiles(config_path, tokenizer_path, gguf_path, WeightFormat.QUANTIZED)


def _resolve_local_dir(path: Path) -> ModelFiles:
    logger.info(f"Loading local safetensors model from {path}")
    files = {
        "Config": path / CONFIG_FILE,
        "Tokenizer": path / TOKENIZER_FILE,
        "Model weights": path / SAFETENSORS_FILE,
    }
    for label, file_path in files.items():
        if not file_path.exists():
            raise ModelLoadFailure(f"{label} not found: {file_path}")

    return ModelFiles(
        files["Config"],
        files["Tokenizer"],
        files["Model weights"],
        WeightFormat.FULL_PRECISION,
    )


def _resolve_remote(repo_id: str) -> ModelFiles:
    logger.info(f"Downloading model from Hugging Face: {repo_id}")
    config_path = _download(repo_id, CONFIG_FILE)
    tokenizer_path = _download(repo_id, TOKENIZER_FILE)

    try:
        weights_path = Path(hf_hub_download(repo_id, GGUF_FILE))
        logger.info("Found GGUF model, loading quantized variant")
        return ModelFiles(config_path, tokenizer_path, weights_path, WeightFormat.QUANTIZED)
    except EntryNotFoundError:
        logger.info("Loading safetensors model (full precision)")

    weights_path = _download(repo_id, SAFETENSORS_FILE)
    return ModelFiles(config_path, tokenizer_path, weights_path, WeightFormat.FULL_PRECISION)


def _download(repo_id: str, filename: str) -> Path:
    try:
        return Path(hf_hub_download(repo_id, filename))
    except Exception as e:
        raise ModelLoadFailure(f"Failed to fetch {filename} from {repo_id}: {e}") from e


def resolve_special_tokens(tokenizer: WhisperTokenizer, language: str) -> SpecialTokens:
    """
    Look up the control tokens the decode loop needs

    Raises:
        ModelLoadFailure: If any token is missing from the vocabulary
    """
    names = {
        "sot": "<|startoftranscript|>",
        "eot": "<|endoftext|>",
        "transcribe": "<|transcribe|>",
        "no_timestamps": "<|notimestamps|>",
        "language": f"<|{language}|>",
    }
    ids = {}
    for field_name, token in names.items():
        token_id = tokenizer.token_to_id(token)
        if token_id is None:
            raise ModelLoadFailure(f"Special token not found in tokenizer: {token}")
        ids[field_name] = token_id
    return SpecialTokens(**ids)


def read_gguf_state_dict(path: Path, expected: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
    """
    Dequantize GGUF tensors into a float32 state dict

    Tensor names follow the Hugging Face layout, with or without the
    leading ``model.`` prefix.
    """
    reader = gguf.GGUFReader(str(path))
    state_dict = {}
    for tensor in reader.tensors:
        name = tensor.name
        if name not in expected and f"model.{name}" in expected:
            name = f"model.{name}"
        if name not in expected:
            logger.debug(f"Skipping unknown GGUF tensor: {tensor.name}")
            continue

        values = gguf.quants.dequantize(tensor.data, tensor.tensor_type)
        values = np.asarray(values, dtype=np.float32)
        target_shape = tuple(expected[name].shape)
        if values.size != int(np.prod(target_shape)):
            raise ModelLoadFailure(
                f"GGUF tensor {tensor.name} has {values.size} values, "
                f"expected shape {target_shape}"
            )
        state_dict[name] = torch.from_numpy(values.reshape(target_shape).copy())
    return state_dict


def build_model(files: ModelFiles) -> WhisperForConditionalGeneration:
    config = WhisperConfig.from_json_file(str(files.config_path))
    model = WhisperForConditionalGeneration(config)

    if files.format == WeightFormat.QUANTIZED:
        state_dict = read_gguf_state_dict(files.weights_path, model.state_dict())
    else:
        state_dict = load_file(str(files.weights_path))

    missing, unexpected = model.load_state_dict(state_dict, strict=False)
    required_missing = sorted(set(missing) - OPTIONAL_WEIGHTS)
    if required_missing:
        preview = ", ".join(required_missing[:5])
        raise ModelLoadFailure(
            f"Checkpoint {files.weights_path.name} is missing {len(required_missing)} weights ({preview})"
        )
    if unexpected:
        logger.debug(f"Ignoring {len(unexpected)} unexpected weights")

    model.tie_weights()
    return model


def load_model(model_id: str, language: str = "en") -> ModelHandle:
    """
    Load a Whisper-family model for decoding

    Args:
        model_id: GGUF file, local model directory, or Hugging Face repo id
        language: Language code for the <|lang|> token

    Returns:
        ModelHandle ready for the decoding engine

    Raises:
        ModelLoadFailure: On any failure
    """
    try:
        files = resolve_model_files(model_id)
        tokenizer = WhisperTokenizer.from_file(files.tokenizer_path)
        special_tokens = resolve_special_tokens(tokenizer, language)
        model = build_model(files)
        device, dtype, gpu_name = select_device()
        backend = TorchWhisperBackend(model, device, dtype)
    except ModelLoadFailure:
        raise
    except Exception as e:
        raise ModelLoadFailure(f"Failed to load model {model_id}: {e}") from e

    english_only = is_english_only(model_id)
    if english_only:
        logger.info("Detected English-only model - using simplified token sequence")

    config = DecodingConfig(
        vocab_size=model.config.vocab_size,
        num_mel_bins=model.config.num_mel_bins,
        special_tokens=special_tokens,
    )
    logger.info(f"Model loaded successfully (num_mel_bins={config.num_mel_bins})")

    return ModelHandle(
        name=model_id,
        format=files.format,
        backend=backend,
        tokenizer=tokenizer,
        config=config,
        english_only=english_only,
        gpu_enabled=device.type != "cpu",
        gpu_name=gpu_name,
    )
