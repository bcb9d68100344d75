from __future__ import annotations

from starlette.requests import Request

from vaultops.apps.api.response import envelope, get_request_id, is_enveloped


def _request(headers: dict[str, str] | None = None) -> Request:
    raw = [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()]
    return Request({"type": "http", "method": "GET", "path": "/v1/jobs", "headers": raw, "query_string": b""})


def test_envelope_wraps_plain_payloads() -> None:
    wrapped = envelope({"job_id": "j1"}, "req-1")
    assert wrapped == {"data": {"job_id": "j1"}, "meta": {"request_id": "req-1", "api_version": "v1"}}


def test_envelope_leaves_wrapped_and_empty_bodies_alone() -> None:
    already = {"data": [], "meta": {"request_id": "req-0", "api_version": "v1"}}
    assert is_enveloped(already)
    assert envelope(already, "req-1") is already
    assert envelope(None, "req-1") is None
    # A payload that merely has a "data" key is still wrapped.
    assert not is_enveloped({"data": 1, "meta": {"api_version": "v0"}})


def test_request_id_prefers_header_then_sticks() -> None:
    request = _request({"X-Request-Id": "req-42"})
    assert get_request_id(request) == "req-42"
    assert request.state.request_id == "req-42"

    anonymous = _request()
    minted = get_request_id(anonymous)
    assert minted
    assert get_request_id(anonymous) == minted
