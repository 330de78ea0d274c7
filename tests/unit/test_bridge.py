# tests/unit/test_bridge.py

import io
import math
import struct

import pytest
import numpy as np

from rastercube.bridge import ExternalProcess, decode_frame, encode_frame, read_frame, write_frame
from rastercube.bridge.protocol import HEADER, MAGIC
from rastercube.exceptions import ConfigurationError, ExternalProcessError, FramingError

def _chunk(dtype="float64"):
    return np.arange(2 * 3 * 4 * 5, dtype=dtype).reshape(2, 3, 4, 5)

# Protocol

def test_header_layout():
    data = _chunk()
    frame = encode_frame(data, nodata=-1.0)
    assert HEADER.size == 40
    assert len(frame) == 40 + data.nbytes
    magic, version, tag, reserved, nb, nt, ny, nx, nodata, length = HEADER.unpack(frame[:40])
    assert magic == MAGIC
    assert version == 1
    assert tag == 7
    assert reserved == 0
    assert (nb, nt, ny, nx) == (2, 3, 4, 5)
    assert nodata == -1.0
    assert length == data.nbytes
    assert frame[40:] == data.tobytes(order="C")

@pytest.mark.parametrize("dtype", ["uint8", "int16", "uint16", "int32", "uint32", "float32", "float64"])
def test_decode_preserves_dtype(dtype):
    data = _chunk(dtype)
    decoded, nodata = decode_frame(encode_frame(data, nodata=0))
    assert decoded.dtype == np.dtype(dtype)
    np.testing.assert_array_equal(decoded, data)
    assert nodata == 0

def test_nan_nodata_survives():
    _, nodata = decode_frame(encode_frame(_chunk()))
    assert math.isnan(nodata)

def test_stream_helpers():
    stream = io.BytesIO()
    write_frame(stream, _chunk("float32"), nodata=-9999)
    stream.seek(0)
    data, nodata = read_frame(stream, expected_shape=(2, 3, 4, 5))
    assert data.shape == (2, 3, 4, 5)
    assert nodata == -9999

def test_rejects_truncated_header():
    with pytest.raises(FramingError, match="header"):
        decode_frame(b"RCUB\x01")

def test_rejects_bad_magic():
    frame = bytearray(encode_frame(_chunk()))
    frame[:4] = b"XXXX"
    with pytest.raises(FramingError, match="magic"):
        decode_frame(bytes(frame))

def test_rejects_unknown_dtype_tag():
    frame = bytearray(encode_frame(_chunk()))
    frame[5] = 42
    with pytest.raises(FramingError, match="tag"):
        decode_frame(bytes(frame))

def test_rejects_band_count_inconsistent_with_payload():
    data = _chunk()
    header = HEADER.pack(MAGIC, 1, 7, 0, 3, 3, 4, 5, 0.0, data.nbytes)
    with pytest.raises(FramingError, match="payload"):
        decode_frame(header + data.tobytes())

def test_rejects_truncated_payload_and_trailing_bytes():
    frame = encode_frame(_chunk())
    with pytest.raises(FramingError, match="Truncated"):
        decode_frame(frame[:-8])
    with pytest.raises(FramingError, match="trailing"):
        decode_frame(frame + b"\x00")
    with pytest.raises(FramingError, match="Truncated"):
        read_frame(io.BytesIO(frame[:-8]))

def test_rejects_unexpected_shape():
    frame = encode_frame(_chunk())
    decode_frame(frame, expected_shape=(None, 3, 4, 5))
    with pytest.raises(FramingError, match="axis 'y'"):
        decode_frame(frame, expected_shape=(None, 3, 5, 5))

def test_framing_error_is_external_process_error():
    assert issubclass(FramingError, ExternalProcessError)

# Process

IDENTITY_WORKER = """
    import sys
    data = sys.stdin.buffer.read()
    sys.stdout.buffer.write(data)
"""

def test_external_process_round_trip(worker_factory):
    process = ExternalProcess(worker_factory("identity.py", IDENTITY_WORKER), timeout=60)
    data = _chunk()
    result, nodata = process.run(data, -1.0, expected_shape=(None, 3, 4, 5))
    np.testing.assert_array_equal(result, data)
    assert nodata == -1.0

def test_external_process_passes_context(worker_factory):
    source = """
        import os, struct, sys
        import numpy as np
        sys.stdin.buffer.read()
        value = float(os.environ["RASTERCUBE_CHUNK_ID"])
        data = np.full((1, 1, 1, 1), value)
        header = struct.pack("=4sBBHIIIIdQ", b"RCUB", 1, 7, 0, 1, 1, 1, 1, 0.0, data.nbytes)
        sys.stdout.buffer.write(header + data.tobytes())
    """
    process = ExternalProcess(worker_factory("context.py", source), timeout=60)
    result, _ = process.run(_chunk(), 0.0, context={"RASTERCUBE_CHUNK_ID": 17})
    assert result[0, 0, 0, 0] == 17.0

def test_external_process_non_zero_exit_includes_stderr(worker_factory):
    source = """
        import sys
        sys.stdin.buffer.read()
        sys.stderr.write("worker exploded\\n")
        sys.exit(3)
    """
    process = ExternalProcess(worker_factory("crash.py", source), timeout=60)
    with pytest.raises(ExternalProcessError) as exc:
        process.run(_chunk(), 0.0)
    assert exc.value.returncode == 3
    assert "worker exploded" in exc.value.stderr
    assert "worker exploded" in str(exc.value)

def test_external_process_malformed_output(worker_factory):
    source = """
        import sys
        sys.stdin.buffer.read()
        sys.stdout.buffer.write(b"not a frame")
    """
    process = ExternalProcess(worker_factory("garbage.py", source), timeout=60)
    with pytest.raises(FramingError) as exc:
        process.run(_chunk(), 0.0)
    assert exc.value.returncode == 0

def test_external_process_timeout(worker_factory):
    source = """
        import time
        time.sleep(30)
    """
    process = ExternalProcess(worker_factory("sleepy.py", source), timeout=0.5)
    with pytest.raises(ExternalProcessError, match="timed out"):
        process.run(_chunk(), 0.0)

def test_external_process_missing_executable():
    process = ExternalProcess(["definitely-not-a-real-worker-binary"])
    with pytest.raises(ExternalProcessError, match="Failed to start"):
        process.run(_chunk(), 0.0)

def test_external_process_validates_arguments():
    with pytest.raises(ConfigurationError):
        ExternalProcess([])
    with pytest.raises(ConfigurationError):
        ExternalProcess("cat", timeout=0)
    assert ExternalProcess("python -c 'print(1)'").command == ["python", "-c", "print(1)"]
