import hashlib

from pipeline import signer


def test_known_vector():
    expected = hashlib.sha256(b"100xs").hexdigest()
    assert signer.sign({"order_id": "x", "amount": 100}, "s") == expected


def test_signature_is_lowercase_hex():
    sig = signer.sign({"order_id": "x", "amount": 100}, "s")
    assert len(sig) == 64
    assert sig == sig.lower()
    int(sig, 16)


def test_key_order_does_not_matter():
    a = signer.sign({"order_id": "x", "amount": 100, "shop_id": 7}, "s")
    b = signer.sign({"shop_id": 7, "amount": 100, "order_id": "x"}, "s")
    assert a == b


def test_signature_and_metadata_are_excluded():
    base = {"order_id": "x", "amount": 100}
    noisy = {**base, "signature": "whatever", "metadata": {"k": "v"}}
    assert signer.sign(noisy, "s") == signer.sign(base, "s")


def test_payload_password_is_replaced_by_secret():
    assert signer.sign({"a": "1", "password": "attacker"}, "s") == signer.sign({"a": "1"}, "s")


def test_value_rendering():
    assert signer.canonical_string({"a": None, "b": "1"}, "s") == "1s"
    assert signer.canonical_string({"flag": True}, "s") == "trues"
    assert signer.canonical_string({"amount": 100.0}, "s") == "100s"
    assert signer.canonical_string({"amount": 1.5}, "s") == "1.5s"


def test_float_rendering_matches_gateway_number_format():
    cases = {
        1e-7: "1e-7",
        1.5e-7: "1.5e-7",
        1e-6: "0.000001",
        0.1: "0.1",
        -2.5: "-2.5",
        123456789.0: "123456789",
        1e21: "1e+21",
        1.5e22: "1.5e+22",
        0.0: "0",
    }
    for value, rendered in cases.items():
        assert signer.coerce_value(value) == rendered


def test_secret_changes_signature():
    payload = {"order_id": "x", "amount": 100}
    assert signer.sign(payload, "s") != signer.sign(payload, "t")


def test_verify_accepts_valid_signature():
    payload = {"order_id": "x", "status": "success"}
    payload["signature"] = signer.sign(payload, "s")
    assert signer.verify(payload, payload["signature"], "s")


def test_verify_rejects_tampering():
    payload = {"order_id": "x", "status": "failed"}
    payload["signature"] = signer.sign(payload, "s")
    payload["status"] = "success"
    assert not signer.verify(payload, payload["signature"], "s")


def test_verify_rejects_missing_or_odd_signatures():
    payload = {"order_id": "x"}
    assert not signer.verify(payload, None, "s")
    assert not signer.verify(payload, "", "s")
    assert not signer.verify(payload, 12345, "s")
    assert not signer.verify(payload, "подпись", "s")
