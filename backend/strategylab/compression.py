"""
Artifact Compression
gzip + base64 for JSON payloads stored by the service layer.
"""
import base64
import gzip
import json
from typing import Any


def compress_json(text: str) -> str:
    """UTF-8 encode, gzip, base64 encode"""
    if not text:
        return ""
    return base64.b64encode(gzip.compress(text.encode('utf-8'))).decode('ascii')


def decompress_json(payload: str) -> str:
    if not payload:
        return ""
    return gzip.decompress(base64.b64decode(payload)).decode('utf-8')


def pack(obj: Any) -> str:
    """Serialize a JSON-compatible object into a compressed artifact"""
    return compress_json(json.dumps(obj, ensure_ascii=False, separators=(',', ':')))


def unpack(payload: str) -> Any:
    text = decompress_json(payload)
    return json.loads(text) if text else None
