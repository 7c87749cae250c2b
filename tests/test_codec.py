"""Tests for pairing codes and direct-channel framing helpers."""
from __future__ import annotations

import pytest

from pinq.core.errors import DecodeError
from pinq.schemas.transfer import MetadataFrame, TransferKind
from pinq.services import codec
from pinq.services.codes import CODE_ALPHABET, CODE_LENGTH, generate_code, is_valid_code, normalize_code


def test_generated_codes_use_unambiguous_alphabet():
    codes = {generate_code() for _ in range(200)}

    assert all(len(code) == CODE_LENGTH for code in codes)
    assert all(is_valid_code(code) for code in codes)
    assert len(codes) > 190
    for ambiguous in "01ILOV":
        assert ambiguous not in CODE_ALPHABET


def test_normalize_code():
    assert normalize_code("  ab3d5f\n") == "AB3D5F"
    assert normalize_code(None) == ""
    assert not is_valid_code("AB0D5F")
    assert not is_valid_code("AB3D5")


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("PINQ:EOF", codec.MarkerKind.END),
        (b"PINQ:EOF", codec.MarkerKind.DATA),
        ("EOF", codec.MarkerKind.END),
        ("PINQ:ACK", codec.MarkerKind.ACK),
        (b"ACK", codec.MarkerKind.DATA),
        ("ACK", codec.MarkerKind.ACK),
        ("eof", codec.MarkerKind.DATA),
        (b"EOF\n", codec.MarkerKind.DATA),
        (b"\x00" * 16384, codec.MarkerKind.DATA),
    ],
)
def test_classify_marker(message, expected):
    assert codec.classify_marker(message) is expected


def test_binary_markers_only_count_when_frames_are_untyped():
    assert codec.classify_marker(b"PINQ:EOF", binary_is_data=False) is codec.MarkerKind.END
    assert codec.classify_marker(b"ACK", binary_is_data=False) is codec.MarkerKind.ACK
    assert codec.classify_marker(b"EOF\n", binary_is_data=False) is codec.MarkerKind.DATA


def test_metadata_uses_wire_field_names():
    frame = MetadataFrame(type=TransferKind.FILE, filename="photo.jpg", size=2048, mime_type="image/jpeg")

    encoded = codec.encode_metadata(frame)

    assert b'"mimeType":"image/jpeg"' in encoded
    assert codec.decode_metadata(encoded) == frame
    assert codec.decode_metadata(encoded.decode()) == frame


def test_text_metadata_omits_file_fields():
    assert codec.encode_metadata(MetadataFrame(type=TransferKind.TEXT)) == b'{"type":"text"}'


@pytest.mark.parametrize(
    "message",
    [
        "{not json",
        "[1, 2]",
        '{"type": "folder"}',
        '{"type": "file", "size": -1}',
        b"\xff\xfe{",
    ],
)
def test_decode_metadata_rejects_malformed_frames(message):
    with pytest.raises(DecodeError):
        codec.decode_metadata(message)


def test_decode_metadata_ignores_unknown_fields():
    frame = codec.decode_metadata('{"type": "text", "checksum": "abc"}')

    assert frame.type is TransferKind.TEXT
    assert frame.filename is None


def test_looks_like_metadata():
    assert codec.looks_like_metadata(' {"type": "text"}')
    assert codec.looks_like_metadata(b"{")
    assert not codec.looks_like_metadata(b"\x89PNG")


def test_iter_chunks_splits_exactly():
    data = bytes(range(256)) * 160  # 40 KiB

    chunks = list(codec.iter_chunks(data, 16 * 1024))

    assert [len(chunk) for chunk in chunks] == [16384, 16384, 8192]
    assert b"".join(chunks) == data
    assert codec.count_chunks(len(data)) == 3
    assert codec.count_chunks(10 * 1024 * 1024) == 640
    assert codec.count_chunks(0) == 0
    assert list(codec.iter_chunks(b"")) == []


def test_iter_chunks_rejects_bad_size():
    with pytest.raises(ValueError):
        list(codec.iter_chunks(b"abc", 0))
