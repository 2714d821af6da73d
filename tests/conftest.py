import struct
from unittest.mock import patch

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from hf_proxy.app import app
from hf_proxy.gguf import GGUFType, SCALAR_FORMATS


class FakeRaw:
    def __init__(self, chunks):
        self.chunks = chunks
        self.stream_args = None

    def stream(self, amt, decode_content=None):
        self.stream_args = (amt, decode_content)
        yield from self.chunks

    def read(self, amt=None, decode_content=None):
        data = b"".join(self.chunks)
        return data if amt is None else data[:amt]


class FakeUpstream:
    """Just enough of requests.Response for the forwarder."""

    def __init__(self, status_code=200, headers=None, chunks=(b"",)):
        self.status_code = status_code
        self.headers = CaseInsensitiveDict(headers or {})
        self.raw = FakeRaw(list(chunks))
        self.closed = False

    @property
    def ok(self):
        return self.status_code < 400

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} error")

    def close(self):
        self.closed = True


class FakeHubSession:
    """Serves one file over Range GETs and HEAD, like the hub's file endpoints."""

    def __init__(self, data=b"", content_length=None, honour_range=True, status_code=200):
        self.data = data
        self.content_length = len(data) if content_length is None else content_length
        self.honour_range = honour_range
        self.status_code = status_code
        self.ranges = []
        self.closed = False

    def get(self, url, headers=None, stream=False, timeout=None):
        if self.status_code >= 400:
            return FakeUpstream(self.status_code)
        rng = (headers or {}).get("Range")
        self.ranges.append(rng)
        if rng and self.honour_range:
            start, end = rng[len("bytes="):].split("-")
            body = self.data[int(start):int(end) + 1]
            return FakeUpstream(206, {"Content-Length": str(len(body))}, [body])
        return FakeUpstream(200, {"Content-Length": str(len(self.data))}, [self.data])

    def head(self, url, allow_redirects=False, timeout=None):
        if self.status_code >= 400:
            return FakeUpstream(self.status_code)
        headers = {}
        if self.content_length:
            headers["Content-Length"] = str(self.content_length)
        return FakeUpstream(200, headers)

    def close(self):
        self.closed = True


def _gguf_string(s, count_fmt):
    raw = s.encode("utf-8")
    return struct.pack(count_fmt, len(raw)) + raw


def _gguf_value(value_type, value, count_fmt):
    if value_type in SCALAR_FORMATS:
        return struct.pack(SCALAR_FORMATS[value_type], value)
    if value_type == GGUFType.STRING:
        return _gguf_string(value, count_fmt)
    elem_type, items = value
    out = struct.pack("<I", elem_type) + struct.pack(count_fmt, len(items))
    for item in items:
        out += _gguf_value(elem_type, item, count_fmt)
    return out


def build_gguf(kvs, version=3, tensor_count=0):
    """GGUF header bytes for ``kvs``, a list of (key, GGUFType, value)."""
    count_fmt = "<I" if version == 1 else "<Q"
    out = b"GGUF" + struct.pack("<I", version)
    out += struct.pack(count_fmt, tensor_count) + struct.pack(count_fmt, len(kvs))
    for key, value_type, value in kvs:
        out += _gguf_string(key, count_fmt) + struct.pack("<I", value_type)
        out += _gguf_value(value_type, value, count_fmt)
    return out


LLAMA_KVS = [
    ("general.architecture", GGUFType.STRING, "llama"),
    ("general.name", GGUFType.STRING, "Llama 3 8B"),
    ("tokenizer.ggml.tokens", GGUFType.ARRAY, (GGUFType.STRING, ["<s>", "</s>", "hello"] * 50)),
    ("tokenizer.ggml.scores", GGUFType.ARRAY, (GGUFType.FLOAT32, [0.5] * 100)),
    ("llama.rope.freq_base", GGUFType.FLOAT32, 500000.0),
    ("tokenizer.ggml.add_bos_token", GGUFType.BOOL, True),
    ("llama.context_length", GGUFType.UINT32, 8192),
    ("llama.embedding_length", GGUFType.UINT32, 4096),
    ("llama.block_count", GGUFType.UINT32, 32),
    ("llama.attention.head_count", GGUFType.UINT32, 32),
    ("llama.attention.head_count_kv", GGUFType.UINT32, 8),
    ("general.file_type", GGUFType.UINT32, 15),
]


@pytest.fixture
def llama_gguf():
    return build_gguf(LLAMA_KVS)


@pytest.fixture
def client():
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c


@pytest.fixture
def upstream():
    """Patch requests.request; tests set .return_value or .side_effect."""
    with patch("hf_proxy.forwarder.requests.request") as mocked:
        mocked.return_value = FakeUpstream()
        yield mocked
