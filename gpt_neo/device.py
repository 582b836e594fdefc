"""
Device and precision selection for inference.

The model and the decoding loop never branch on hardware. Scripts resolve
a device and a weight dtype here once, move the model, and everything else
follows the tensors.

  device   "auto" → CUDA, then Apple MPS, then CPU
  dtype    "auto" → bfloat16 on CUDA GPUs that support it (Ampere+),
                    float16 on older CUDA GPUs, float32 elsewhere

Attention scores are computed in float32 whatever the weight dtype, so half
precision weights shift logits slightly but never overflow the -1e4 mask.

Long generations are bounded by the KV cache rather than the weights:
estimate_kv_cache_mb tells how much a batch will need.
"""

from typing import Optional

import torch

from gpt_neo.config import GPTNeoConfig


DTYPES = {
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
    "float32": torch.float32,
}


def get_device(requested: str = "auto") -> torch.device:
    """
    Resolve a device string. "auto" picks the best available backend.

    Any other value ("cpu", "cuda", "cuda:1", "mps") is passed to
    torch.device unchanged.
    """
    if requested != "auto":
        return torch.device(requested)
    if torch.cuda.is_available():
        return torch.device("cuda")
    if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


def get_dtype(requested: str, device: torch.device) -> torch.dtype:
    """
    Resolve a dtype string to the weight dtype to use on `device`.

    Args:
        requested: "auto" or one of DTYPES.
        device: The target device.

    Raises:
        ValueError: Unknown dtype name.
    """
    if requested == "auto":
        if device.type != "cuda":
            return torch.float32
        return torch.bfloat16 if torch.cuda.is_bf16_supported() else torch.float16

    if requested not in DTYPES:
        raise ValueError(
            f"Unknown dtype '{requested}'. "
            f"Choose from: {list(DTYPES)} or 'auto'"
        )
    return DTYPES[requested]


def estimate_kv_cache_mb(
    config: GPTNeoConfig,
    batch_size: int,
    seq_len: int,
    dtype: torch.dtype = torch.float32,
) -> float:
    """
    Memory held by a full KV cache, in MB.

    Every layer keeps one key and one value tensor of shape
    (batch, num_heads, seq_len, head_dim), i.e. hidden_size values per token.
    Local layers keep the full history too (the window is applied by the
    mask, not by truncating the cache).

      2 × num_layers × batch × seq_len × hidden_size × bytes

    GPT-Neo 125M in float32: 72 KB per token, 144 MB for 2048 tokens.
    """
    bytes_per_value = torch.empty((), dtype=dtype).element_size()
    n_values = 2 * config.num_layers * batch_size * seq_len * config.hidden_size
    return n_values * bytes_per_value / 1024**2


def device_info(device: torch.device) -> str:
    """One-paragraph description of `device`, printed before generation."""
    lines = [f"Device: {device}  (PyTorch {torch.__version__})"]

    if device.type == "cuda":
        props = torch.cuda.get_device_properties(device)
        lines.append(
            f"  {props.name}, {props.total_memory / 1024**3:.1f} GB, "
            f"compute {props.major}.{props.minor}, CUDA {torch.version.cuda}"
        )
        lines.append(f"  bfloat16: {torch.cuda.is_bf16_supported()}")
    elif device.type == "mps":
        lines.append("  Metal Performance Shaders (Apple Silicon)")
    else:
        lines.append("  CPU (no GPU acceleration)")

    return "\n".join(lines)


def get_memory_usage(device: Optional[torch.device]) -> dict:
    """
    Allocator statistics in MB: 'allocated_mb', 'reserved_mb', 'peak_mb'.

    Only CUDA exposes them; other devices report zeros.
    """
    if device is None or device.type != "cuda":
        return {"allocated_mb": 0.0, "reserved_mb": 0.0, "peak_mb": 0.0}
    return {
        "allocated_mb": torch.cuda.memory_allocated(device) / 1024**2,
        "reserved_mb": torch.cuda.memory_reserved(device) / 1024**2,
        "peak_mb": torch.cuda.max_memory_allocated(device) / 1024**2,
    }
