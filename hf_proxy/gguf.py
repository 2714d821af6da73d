"""
Minimal GGUF header reader.

Only the key/value metadata section is parsed, and only the four values the
memory estimate needs are kept. Remote files are read with HTTP Range
requests, so a multi-gigabyte model costs a few hundred kilobytes of traffic.
"""
import logging
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

import requests

logger = logging.getLogger(__name__)

GGUF_MAGIC = b"GGUF"
URL_CHUNK_SIZE = 256 * 1024
URL_TIMEOUT = 20


class GGUFError(Exception):
    pass


class GGUFType(IntEnum):
    UINT8 = 0
    INT8 = 1
    UINT16 = 2
    INT16 = 3
    UINT32 = 4
    INT32 = 5
    FLOAT32 = 6
    BOOL = 7
    STRING = 8
    ARRAY = 9
    UINT64 = 10
    INT64 = 11
    FLOAT64 = 12


# struct format per fixed-size type
SCALAR_FORMATS = {
    GGUFType.UINT8: "<B",
    GGUFType.INT8: "<b",
    GGUFType.UINT16: "<H",
    GGUFType.INT16: "<h",
    GGUFType.UINT32: "<I",
    GGUFType.INT32: "<i",
    GGUFType.FLOAT32: "<f",
    GGUFType.BOOL: "<?",
    GGUFType.UINT64: "<Q",
    GGUFType.INT64: "<q",
    GGUFType.FLOAT64: "<d",
}


@dataclass
class GGUFModelParams:
    hidden_size: int = 0       # <arch>.embedding_length
    attention_heads: int = 0   # <arch>.attention.head_count
    hidden_layers: int = 0     # <arch>.block_count
    kv_heads: int = 0          # <arch>.attention.head_count_kv, else head_count


# ---- data sources ---- #

class FileSource:
    def __init__(self, path):
        self.f = open(path, "rb")

    def read(self, size: int) -> bytes:
        data = self.f.read(size)
        if len(data) != size:
            raise GGUFError(f"unexpected end of file at offset {self.tell()}")
        return data

    def seek(self, position: int):
        self.f.seek(position)

    def tell(self) -> int:
        return self.f.tell()

    def close(self):
        self.f.close()


class UrlSource:
    """Sequential reader over a remote file, fetched in Range-sized windows."""

    def __init__(self, url: str, session: Optional[requests.Session] = None,
                 chunk_size: int = URL_CHUNK_SIZE):
        self.url = url
        self.session = session or requests.Session()
        self._owns_session = session is None
        self.chunk_size = chunk_size
        self.buffer = b""
        self.buffer_start = 0
        self.position = 0

    def _fill(self, position: int, size: int):
        end = position + max(size, self.chunk_size) - 1
        resp = self.session.get(
            self.url,
            headers={"Range": f"bytes={position}-{end}"},
            stream=True,
            timeout=URL_TIMEOUT,
        )
        try:
            resp.raise_for_status()
            if resp.status_code != 206 and position > 0:
                raise GGUFError(f"server ignored Range request for {self.url}")
            # a 200 answer is the whole file; keep just the window
            data = resp.raw.read(end - position + 1, decode_content=True)
        finally:
            resp.close()
        self.buffer = data
        self.buffer_start = position

    def read(self, size: int) -> bytes:
        offset = self.position - self.buffer_start
        if offset < 0 or offset + size > len(self.buffer):
            self._fill(self.position, size)
            offset = 0
        data = self.buffer[offset:offset + size]
        if len(data) != size:
            raise GGUFError(f"unexpected end of data at offset {self.position}")
        self.position += size
        return data

    def seek(self, position: int):
        self.position = position

    def tell(self) -> int:
        return self.position

    def close(self):
        if self._owns_session:
            self.session.close()


def is_url(path: str) -> bool:
    return path.startswith("http://") or path.startswith("https://")


# ---- parsing ---- #

class GGUFMetadataReader:
    def __init__(self, source):
        self.source = source
        self.version = 0

    def _unpack(self, fmt: str):
        return struct.unpack(fmt, self.source.read(struct.calcsize(fmt)))[0]

    def _read_count(self) -> int:
        # version 1 used 32-bit lengths and counts
        return self._unpack("<I" if self.version == 1 else "<Q")

    def read_string(self) -> str:
        return self.source.read(self._read_count()).decode("utf-8", errors="replace")

    def read_type(self) -> GGUFType:
        raw = self._unpack("<I")
        try:
            return GGUFType(raw)
        except ValueError:
            raise GGUFError(f"unknown metadata type {raw}") from None

    def read_value(self, value_type: GGUFType):
        if value_type in SCALAR_FORMATS:
            return self._unpack(SCALAR_FORMATS[value_type])
        if value_type == GGUFType.STRING:
            return self.read_string()
        self.skip_value(value_type)
        return None

    def skip_value(self, value_type: GGUFType):
        if value_type in SCALAR_FORMATS:
            self._skip(struct.calcsize(SCALAR_FORMATS[value_type]))
        elif value_type == GGUFType.STRING:
            self._skip(self._read_count())
        elif value_type == GGUFType.ARRAY:
            self.skip_array(self.read_type())

    def skip_array(self, elem_type: GGUFType):
        count = self._read_count()
        if elem_type in SCALAR_FORMATS:
            self._skip(count * struct.calcsize(SCALAR_FORMATS[elem_type]))
            return
        for _ in range(count):
            self.skip_value(elem_type)

    def _skip(self, size: int):
        self.source.seek(self.source.tell() + size)

    def read_header(self) -> int:
        if self.source.read(4) != GGUF_MAGIC:
            raise GGUFError("not a GGUF file")
        self.version = self._unpack("<I")
        if self.version not in (1, 2, 3):
            raise GGUFError(f"unsupported GGUF version {self.version}")
        self._read_count()  # tensor count
        return self._read_count()

    def read_model_params(self, verbose: bool = False) -> GGUFModelParams:
        kv_count = self.read_header()
        params = GGUFModelParams()
        head_count_kv = None

        for _ in range(kv_count):
            key = self.read_string()
            value_type = self.read_type()

            if key.endswith(".embedding_length"):
                params.hidden_size = int(self.read_value(value_type) or 0)
            elif key.endswith(".block_count"):
                params.hidden_layers = int(self.read_value(value_type) or 0)
            elif key.endswith(".attention.head_count"):
                params.attention_heads = int(self.read_value(value_type) or 0)
            elif key.endswith(".attention.head_count_kv"):
                head_count_kv = int(self.read_value(value_type) or 0)
            else:
                self.skip_value(value_type)
                continue

            if verbose:
                logger.info(f"gguf: {key} ({value_type.name})")

            if params.hidden_size and params.hidden_layers and params.attention_heads \
                    and head_count_kv is not None:
                break

        params.kv_heads = head_count_kv or params.attention_heads
        return params


def read_model_params(path: str, verbose: bool = False,
                      session: Optional[requests.Session] = None) -> Optional[GGUFModelParams]:
    """
    Read model dimensions from a local GGUF file or an http(s) URL.

    Returns None when the file can't be fetched or isn't GGUF, or when the
    header lacks embedding_length or block_count.
    """
    try:
        source = UrlSource(path, session) if is_url(path) else FileSource(path)
    except OSError as e:
        logger.warning(f"gguf: cannot open {path}: {e}")
        return None

    try:
        params = GGUFMetadataReader(source).read_model_params(verbose)
    except (GGUFError, struct.error, OSError, ValueError, requests.RequestException) as e:
        logger.warning(f"gguf: failed to read {path}: {e}")
        return None
    finally:
        source.close()

    if not params.hidden_size or not params.hidden_layers:
        logger.warning(f"gguf: {path} has no embedding_length/block_count")
        return None
    return params
