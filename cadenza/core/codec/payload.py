# cadenza/core/codec/payload.py
"""
Content-type aware decoding of message bodies.

The runtime hands ``work`` the decoded value, not the raw bytes, whenever
the content type is one of the structured formats below.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Optional

import msgpack
import yaml

from cadenza.core.logging import get_logger

logger = get_logger('codec')

MSGPACK = 'application/x-msgpack'
JSON = 'application/json'
YAML = 'application/x-yaml'


class PayloadError(Exception):
    """
    Raised when a body cannot be decoded as its declared content type.
    """

    pass


def _load_msgpack(payload: bytes) -> Any:
    return msgpack.unpackb(payload, raw=False)


def _load_json(payload: bytes) -> Any:
    return json.loads(payload)


def _load_yaml(payload: bytes) -> Any:
    return yaml.safe_load(payload)


_DECODERS: dict[str, Callable[[bytes], Any]] = {
    MSGPACK: _load_msgpack,
    JSON: _load_json,
    'text/javascript': _load_json,
    YAML: _load_yaml,
    'text/x-yaml': _load_yaml,
}

_ENCODERS: dict[str, Callable[[Any], bytes]] = {
    MSGPACK: lambda value: msgpack.packb(value, use_bin_type=True),
    JSON: lambda value: json.dumps(value).encode('utf-8'),
    'text/javascript': lambda value: json.dumps(value).encode('utf-8'),
    YAML: lambda value: yaml.safe_dump(value).encode('utf-8'),
    'text/x-yaml': lambda value: yaml.safe_dump(value).encode('utf-8'),
}


def _media_type(content_type: Optional[str]) -> str:
    # 'application/json; charset=utf-8' -> 'application/json'
    return (content_type or '').split(';', 1)[0].strip().lower()


def preprocess_payload(payload: bytes, content_type: Optional[str]) -> Any:
    """
    Decode ``payload`` according to ``content_type``.

    Unknown or missing content types return the raw bytes unchanged.
    """
    media_type = _media_type(content_type)
    logger.debug(f'Got a {len(payload) / 1024.0:.2f}K {media_type or "untyped"} payload')

    decoder = _DECODERS.get(media_type)
    if decoder is None:
        return payload
    try:
        return decoder(payload)
    except (ValueError, msgpack.UnpackException, yaml.YAMLError) as exc:
        raise PayloadError(f'Cannot decode {media_type} payload: {exc}') from exc


def encode_payload(value: Any, content_type: str) -> bytes:
    """Inverse of preprocess_payload for producers; bytes pass through untouched."""
    if isinstance(value, bytes):
        return value
    encoder = _ENCODERS.get(_media_type(content_type))
    if encoder is None:
        if isinstance(value, str):
            return value.encode('utf-8')
        raise PayloadError(f'No encoder for content type {content_type!r}')
    return encoder(value)
