import pytest

from shared.messaging.encoder import MAX_FRAME_BYTES, DecodeError, decode, encode


class TestEncode:
    def test_compact_output(self):
        assert encode({"type": "ping", "timestamp": 1}) == '{"type":"ping","timestamp":1}'

    def test_non_ascii_kept_verbatim(self):
        assert encode({"content": "héllo"}) == '{"content":"héllo"}'


class TestDecode:
    def test_decodes_object(self):
        assert decode('{"type":"ping"}') == {"type": "ping"}

    def test_accepts_bytes(self):
        assert decode(b'{"type":"ping"}') == {"type": "ping"}

    @pytest.mark.parametrize("raw", ["not json", "{", "", '{"a":}'])
    def test_invalid_json_raises(self, raw):
        with pytest.raises(DecodeError, match="invalid JSON"):
            decode(raw)

    @pytest.mark.parametrize("raw", ["[]", '"text"', "42", "null"])
    def test_non_object_raises(self, raw):
        with pytest.raises(DecodeError, match="expected object"):
            decode(raw)

    def test_oversized_frame_raises(self):
        raw = '{"content":"' + "x" * MAX_FRAME_BYTES + '"}'
        with pytest.raises(DecodeError, match="frame too large"):
            decode(raw)

    def test_size_counted_in_utf8_bytes(self):
        # 2000 two-byte characters exceed 3000 bytes
        raw = '{"content":"' + "é" * 2000 + '"}'
        with pytest.raises(DecodeError, match="frame too large"):
            decode(raw, max_bytes=3000)

    def test_invalid_utf8_bytes_raise(self):
        with pytest.raises(DecodeError):
            decode(b"\xff\xfe")
