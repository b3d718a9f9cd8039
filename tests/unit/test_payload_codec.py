"""Unit tests for content-type aware payload decoding."""

from __future__ import annotations

import msgpack
import pytest
import yaml

from cadenza.core.codec.payload import (
    JSON,
    MSGPACK,
    YAML,
    PayloadError,
    encode_payload,
    preprocess_payload,
)

pytestmark = pytest.mark.unit


class TestPreprocessPayload:
    def test_json_body_becomes_mapping(self) -> None:
        decoded = preprocess_payload(b'{"key":"abc"}', 'application/json')
        assert decoded == {'key': 'abc'}

    def test_javascript_content_type_is_json(self) -> None:
        assert preprocess_payload(b'[1, 2, 3]', 'text/javascript') == [1, 2, 3]

    def test_content_type_parameters_ignored(self) -> None:
        decoded = preprocess_payload(b'{"a": 1}', 'Application/JSON; charset=utf-8')
        assert decoded == {'a': 1}

    def test_msgpack(self) -> None:
        body = msgpack.packb({'id': 7, 'tags': ['x', 'y']}, use_bin_type=True)
        assert preprocess_payload(body, MSGPACK) == {'id': 7, 'tags': ['x', 'y']}

    @pytest.mark.parametrize('content_type', [YAML, 'text/x-yaml'])
    def test_yaml(self, content_type: str) -> None:
        body = yaml.safe_dump({'name': 'audit', 'count': 3}).encode('utf-8')
        assert preprocess_payload(body, content_type) == {'name': 'audit', 'count': 3}

    def test_yaml_uses_safe_loader(self) -> None:
        body = b'!!python/object/apply:os.getcwd []'
        with pytest.raises(PayloadError):
            preprocess_payload(body, YAML)

    @pytest.mark.parametrize('content_type', ['text/plain', 'application/octet-stream', '', None])
    def test_unknown_types_pass_raw_bytes(self, content_type: str | None) -> None:
        body = b'\x00raw\xff'
        assert preprocess_payload(body, content_type) is body

    def test_malformed_json_raises_payload_error(self) -> None:
        with pytest.raises(PayloadError, match='application/json'):
            preprocess_payload(b'{not json', JSON)

    def test_malformed_msgpack_raises_payload_error(self) -> None:
        with pytest.raises(PayloadError):
            preprocess_payload(b'\xc1', MSGPACK)


class TestEncodePayload:
    def test_json(self) -> None:
        assert encode_payload({'key': 'abc'}, JSON) == b'{"key": "abc"}'

    def test_bytes_pass_through(self) -> None:
        assert encode_payload(b'raw', JSON) == b'raw'

    def test_text_for_unknown_type(self) -> None:
        assert encode_payload('hello', 'text/plain') == b'hello'

    def test_structured_value_for_unknown_type_rejected(self) -> None:
        with pytest.raises(PayloadError):
            encode_payload({'a': 1}, 'text/plain')

    def test_msgpack_decodes_back(self) -> None:
        body = encode_payload({'id': 1}, MSGPACK)
        assert msgpack.unpackb(body, raw=False) == {'id': 1}
