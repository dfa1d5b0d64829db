import base64
import hashlib
import hmac

import pytest

from payflow.services.signature_service import compute_signature, verify_signature

PAYLOAD = b'{"event_type":"transfers#state-change","data":{"resource":{"id":1}}}'
SECRET = "whsec_test"


def test_compute_signature_matches_hmac_hex():
    expected = hmac.new(SECRET.encode(), PAYLOAD, hashlib.sha256).hexdigest()
    assert compute_signature(PAYLOAD, SECRET) == expected


def test_compute_signature_base64():
    expected = base64.b64encode(hmac.new(SECRET.encode(), PAYLOAD, hashlib.sha256).digest()).decode()
    assert compute_signature(PAYLOAD, SECRET, encoding="base64") == expected


def test_compute_signature_rejects_unknown_algorithm():
    with pytest.raises(ValueError):
        compute_signature(PAYLOAD, SECRET, algorithm="md5")


@pytest.mark.parametrize("encoding", ["hex", "base64"])
def test_valid_signature_is_accepted(encoding):
    signature = compute_signature(PAYLOAD, SECRET, encoding=encoding)
    assert verify_signature(PAYLOAD, signature, SECRET, encoding=encoding)


def test_hex_signature_is_case_insensitive():
    signature = compute_signature(PAYLOAD, SECRET).upper()
    assert verify_signature(PAYLOAD, signature, SECRET)


def test_tampered_payload_is_rejected():
    signature = compute_signature(PAYLOAD, SECRET)
    assert not verify_signature(PAYLOAD.replace(b"1", b"2"), signature, SECRET)


def test_reserialized_payload_is_rejected():
    signature = compute_signature(PAYLOAD, SECRET)
    assert not verify_signature(PAYLOAD.replace(b":", b": "), signature, SECRET)


def test_wrong_secret_is_rejected():
    signature = compute_signature(PAYLOAD, "other-secret")
    assert not verify_signature(PAYLOAD, signature, SECRET)


@pytest.mark.parametrize(
    "header,secret,algorithm,encoding",
    [
        (None, SECRET, "sha256", "hex"),
        ("", SECRET, "sha256", "hex"),
        ("abc", "", "sha256", "hex"),
        ("abc", SECRET, "md5", "hex"),
        ("sigénature", SECRET, "sha256", "hex"),
        ("not base64!!", SECRET, "sha256", "base64"),
    ],
)
def test_malformed_input_returns_false(header, secret, algorithm, encoding):
    assert verify_signature(PAYLOAD, header, secret, algorithm, encoding) is False
