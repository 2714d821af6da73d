"""
Memory estimates for GGUF model files.

The quantization type comes from the file name, the model size from the
file's content-length (or an estimate from its header), and the KV cache
from the header's dimensions and the requested context size. Sizes are
decimal megabytes.
"""
import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional

import requests

from hf_proxy.gguf import GGUFModelParams, read_model_params

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_SIZE = 4096
HEAD_TIMEOUT = 20
MB = 1000 * 1000

_executor = ThreadPoolExecutor(max_workers=4)


@dataclass(frozen=True)
class QuantizationInfo:
    type: str
    description: str
    priority: int = 9999


@dataclass
class MemoryUsage:
    model_size_mb: int = 0
    kv_cache_mb: int = 0
    total_required_mb: int = 0
    display_string: str = ""
    has_estimate: bool = False
    is_loading: bool = False
    future: Optional[Future] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict:
        return {
            "modelSizeMB": self.model_size_mb,
            "kvCacheMB": self.kv_cache_mb,
            "totalRequiredMB": self.total_required_mb,
            "displayString": self.display_string,
            "hasEstimate": self.has_estimate,
            "isLoading": self.is_loading,
        }


# ---- quantization ---- #

# (needle, type, description), checked in order; the first hit wins and its
# position is the priority. Unsloth dynamic ("ud-") variants come first.
_UD_QUANTS = [
    ("iq1_s", "UD-IQ1_S", "1-bit UD, ultra compact"),
    ("iq1_m", "UD-IQ1_M", "1-bit UD, medium variant"),
    ("iq2_xxs", "UD-IQ2_XXS", "2-bit UD, ultra small"),
    ("iq2_m", "UD-IQ2_M", "2-bit UD, balanced"),
    ("iq3_xxs", "UD-IQ3_XXS", "3-bit UD, very small"),
    ("q2_k_xl", "UD-Q2_K_XL", "2-bit UD K-quant, very compact"),
    ("q3_k_xl", "UD-Q3_K_XL", "3-bit UD K-quant, compact"),
    ("q4_k_xl", "UD-Q4_K_XL", "4-bit UD K-quant, good quality"),
    ("q5_k_xl", "UD-Q5_K_XL", "5-bit UD K-quant, high quality"),
    ("q6_k_xl", "UD-Q6_K_XL", "6-bit UD K-quant, very high quality"),
    ("q8_k_xl", "UD-Q8_K_XL", "8-bit UD K-quant, maximum quality"),
]

_QUANTS = [
    ("q8_k_xl", "Q8_K_XL", "8-bit K-quant, maximum quality"),
    ("q6_k_xl", "Q6_K_XL", "6-bit K-quant, very high quality"),
    ("q5_k_xl", "Q5_K_XL", "5-bit K-quant, high quality"),
    ("q4_k_xl", "Q4_K_XL", "4-bit K-quant, good quality"),
    ("q3_k_xl", "Q3_K_XL", "3-bit K-quant, compact"),
    ("q2_k_xl", "Q2_K_XL", "2-bit K-quant, very compact"),
    ("q8_0", "Q8_0", "8-bit quant, excellent quality"),
    ("q6_k", "Q6_K", "6-bit quant, high quality"),
    ("q5_k_m", "Q5_K_M", "5-bit quant medium, balanced"),
    ("q5_k_s", "Q5_K_S", "5-bit quant small, compact"),
    ("q5_0", "Q5_0", "5-bit quant, legacy"),
    ("iq4_nl", "IQ4_NL", "4-bit improved, very efficient"),
    ("iq4_xs", "IQ4_XS", "4-bit improved, ultra compact"),
    ("q4_k_m", "Q4_K_M", "4-bit quant medium, recommended"),
    ("q4_k_l", "Q4_K_L", "4-bit quant large, better quality"),
    ("q4_k_s", "Q4_K_S", "4-bit quant small, very compact"),
    ("q4_1", "Q4_1", "4-bit quant v1, improved legacy"),
    ("q4_0", "Q4_0", "4-bit quant, legacy"),
    ("iq3_xxs", "IQ3_XXS", "3-bit improved, maximum compression"),
    ("q3_k_l", "Q3_K_L", "3-bit quant large, experimental"),
    ("q3_k_m", "Q3_K_M", "3-bit quant medium, very small"),
    ("q3_k_s", "Q3_K_S", "3-bit quant small, ultra compact"),
    ("iq2_xxs", "IQ2_XXS", "2-bit improved, extreme compression"),
    ("iq2_m", "IQ2_M", "2-bit improved, balanced"),
    ("q2_k_l", "Q2_K_L", "2-bit quant large, better quality"),
    ("q2_k", "Q2_K", "2-bit quant, extremely small"),
    ("iq1_s", "IQ1_S", "1-bit improved, experimental"),
    ("iq1_m", "IQ1_M", "1-bit improved medium, experimental"),
    ("f16", "F16", "16-bit float, highest quality"),
    ("f32", "F32", "32-bit float, original precision"),
]

UNKNOWN_QUANT = QuantizationInfo("Unknown", "Unknown quantization type", len(_UD_QUANTS) + len(_QUANTS) + 1)

# bits per weight
QUANT_BITS = {
    "F32": 32.0, "F16": 16.0, "Q8_0": 8.5, "Q8_K_XL": 8.5,
    "Q6_K": 6.5, "Q6_K_XL": 6.5, "Q5_K_M": 5.5, "Q5_K_S": 5.1,
    "Q5_K_XL": 5.5, "Q5_0": 5.5, "Q4_K_M": 4.5, "Q4_K_L": 4.6,
    "Q4_K_S": 4.1, "Q4_K_XL": 4.5, "Q4_0": 4.5, "Q4_1": 4.5,
    "IQ4_NL": 4.2, "IQ4_XS": 4.0, "Q3_K_L": 3.4, "Q3_K_M": 3.3,
    "Q3_K_S": 3.2, "Q3_K_XL": 3.4, "IQ3_XXS": 3.1, "Q2_K": 2.6,
    "Q2_K_L": 2.8, "Q2_K_XL": 2.6, "IQ2_XXS": 2.1, "IQ2_M": 2.4,
    "IQ1_S": 1.6, "IQ1_M": 1.8,
    "UD-Q8_K_XL": 8.5, "UD-Q6_K_XL": 6.5, "UD-Q5_K_XL": 5.5,
    "UD-Q4_K_XL": 4.5, "UD-Q3_K_XL": 3.4, "UD-Q2_K_XL": 2.6,
    "UD-IQ3_XXS": 3.1, "UD-IQ2_XXS": 2.1, "UD-IQ2_M": 2.4,
    "UD-IQ1_S": 1.6, "UD-IQ1_M": 1.8,
}
DEFAULT_BITS = 16.0


def detect_quantization(filename: str) -> QuantizationInfo:
    """Guess the quantization type from a file name such as ``foo.Q4_K_M.gguf``."""
    s = filename.lower()
    if "ud-" in s:
        for priority, (needle, qtype, desc) in enumerate(_UD_QUANTS, start=1):
            if needle in s:
                return QuantizationInfo(qtype, desc, priority)
    for priority, (needle, qtype, desc) in enumerate(_QUANTS, start=len(_UD_QUANTS) + 1):
        if needle in s:
            return QuantizationInfo(qtype, desc, priority)
    return UNKNOWN_QUANT


@dataclass
class ModelFile:
    filename: str
    model_id: str = ""
    quant: QuantizationInfo = UNKNOWN_QUANT
    download_url: Optional[str] = None
    memory_usage: MemoryUsage = field(default_factory=MemoryUsage)

    @classmethod
    def from_url(cls, url: str, model_id: str = ""):
        filename = url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
        return cls(filename, model_id, detect_quantization(filename), url)

    def display_name(self) -> str:
        name = self.model_id.rsplit("/", 1)[-1].lower().replace("_", "-")
        return f"{name}:{self.quant.type}"

    def display_name_with_memory(self) -> str:
        base = self.display_name()
        if self.memory_usage.is_loading:
            return base + " [Memory: calculating...]"
        if self.memory_usage.has_estimate:
            return base + f" [Memory: {self.memory_usage.display_string}]"
        return base

    def update_display_if_ready(self) -> bool:
        return update_async_memory_usage(self.memory_usage)


def sort_by_priority(model_files: List[ModelFile]):
    model_files.sort(key=lambda mf: mf.quant.priority)


# ---- sizes ---- #

def estimate_model_size(params: GGUFModelParams, quant_type: str) -> int:
    # rough parameter count: hidden * layers * heads * 1000
    approx_params = params.hidden_size * params.hidden_layers * params.attention_heads * 1000
    bits = QUANT_BITS.get(quant_type, DEFAULT_BITS)
    return int(approx_params * bits / 8 / MB)


def format_memory_size(size_mb: int) -> str:
    if size_mb >= 1000:
        return f"{size_mb / 1000:.1f} GB"
    return f"{size_mb} MB"


def get_actual_file_size_from_url(url: str, session: Optional[requests.Session] = None) -> int:
    """Content-length of ``url`` from a HEAD request, or 0 when unknown."""
    http = session or requests
    try:
        resp = http.head(url, allow_redirects=True, timeout=HEAD_TIMEOUT)
    except requests.RequestException as e:
        logger.warning(f"HEAD {url} failed: {e}")
        return 0
    if not resp.ok:
        logger.warning(f"HEAD {url} -> {resp.status_code}")
        return 0
    try:
        length = int(resp.headers.get("content-length", "0"))
    except ValueError:
        return 0
    return max(length, 0)


def calculate_memory_usage(model_file: ModelFile, context_size: int = DEFAULT_CONTEXT_SIZE,
                           session: Optional[requests.Session] = None) -> MemoryUsage:
    """
    Model size plus KV cache (4 * hidden * layers * context bytes).

    The result has ``has_estimate`` unset when neither the file size nor the
    GGUF header could be obtained.
    """
    usage = MemoryUsage()
    source = model_file.download_url or model_file.filename
    if not source:
        return usage

    if model_file.download_url:
        file_bytes = get_actual_file_size_from_url(model_file.download_url, session)
    else:
        try:
            file_bytes = os.path.getsize(model_file.filename)
        except OSError:
            file_bytes = 0

    params = read_model_params(source, session=session)

    if file_bytes:
        usage.model_size_mb = file_bytes // MB
    elif params is not None:
        usage.model_size_mb = estimate_model_size(params, model_file.quant.type)
    else:
        return usage

    if params is None:
        return usage

    kv_bytes = 4 * params.hidden_size * params.hidden_layers * context_size
    usage.kv_cache_mb = kv_bytes // MB
    usage.total_required_mb = usage.model_size_mb + usage.kv_cache_mb
    usage.display_string = (
        f"{format_memory_size(usage.total_required_mb)}"
        f" (Model: {format_memory_size(usage.model_size_mb)}"
        f" + KV: {format_memory_size(usage.kv_cache_mb)})"
    )
    usage.has_estimate = True
    return usage


# ---- background calculation ---- #

def calculate_memory_usage_async(model_file: ModelFile,
                                 context_size: int = DEFAULT_CONTEXT_SIZE) -> MemoryUsage:
    usage = MemoryUsage(is_loading=True)
    usage.future = _executor.submit(calculate_memory_usage, model_file, context_size)
    return usage


def update_async_memory_usage(usage: MemoryUsage) -> bool:
    """Copy a finished background result into ``usage``; True if it changed."""
    if not usage.is_loading or usage.future is None or not usage.future.done():
        return False
    try:
        result = usage.future.result()
    except Exception as e:
        logger.warning(f"memory calculation failed: {e}")
        result = MemoryUsage()
    usage.model_size_mb = result.model_size_mb
    usage.kv_cache_mb = result.kv_cache_mb
    usage.total_required_mb = result.total_required_mb
    usage.display_string = result.display_string
    usage.has_estimate = result.has_estimate
    usage.is_loading = False
    usage.future = None
    return True


def update_all_async_memory_usage(model_files: List[ModelFile]) -> bool:
    changed = False
    for mf in model_files:
        changed |= update_async_memory_usage(mf.memory_usage)
    return changed
