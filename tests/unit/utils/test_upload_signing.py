import time
from urllib.parse import parse_qs, urlparse

from src.utils.upload_signing import sign_object_url, verify_object_signature


def test_sign_object_url_round_trip():
    signed = sign_object_url("abc-report.pdf", base_path="/v1/objects", expires_in=120)
    parsed = urlparse(signed.url)
    params = parse_qs(parsed.query)
    exp = int(params["exp"][0])
    sig = params["sig"][0]

    assert parsed.path == "/v1/objects/abc-report.pdf"
    assert verify_object_signature("abc-report.pdf", exp=exp, sig=sig)
    assert not verify_object_signature("other-key.pdf", exp=exp, sig=sig)


def test_default_ttl_is_one_hour():
    before = int(time.time())
    signed = sign_object_url("k", base_path="/v1/objects")
    exp = int(parse_qs(urlparse(signed.url).query)["exp"][0])
    assert before + 3600 <= exp <= int(time.time()) + 3600


def test_verify_object_signature_rejects_expired():
    expired = int(time.time()) - 5
    assert not verify_object_signature("k", exp=expired, sig="deadbeef")


def test_signature_depends_on_secret(monkeypatch):
    monkeypatch.setenv("OBJECT_SIGNING_SECRET", "first")
    signed = sign_object_url("k", base_path="/v1/objects", expires_in=120)
    params = parse_qs(urlparse(signed.url).query)

    monkeypatch.setenv("OBJECT_SIGNING_SECRET", "second")

    assert not verify_object_signature("k", exp=int(params["exp"][0]), sig=params["sig"][0])
