"""Tests for rate key derivation."""

from types import SimpleNamespace

import pytest
from starlette.requests import Request

from admission.core.identity import (
    CallerIdentity,
    RequestDescriptor,
    caller_identity_from,
    client_address,
    derive_address_key,
    derive_key,
)


def _descriptor(headers=None, remote="127.0.0.1", identity=None) -> RequestDescriptor:
    return RequestDescriptor(
        method="GET",
        path="/api/tasks",
        headers=headers or {},
        remote_address=remote,
        identity=identity,
    )


class TestDeriveKey:
    def test_authenticated_caller_uses_user_key(self) -> None:
        desc = _descriptor(identity=CallerIdentity("user123"))
        assert derive_key(desc) == "user:user123"

    def test_identity_wins_over_forwarded_header(self) -> None:
        desc = _descriptor(
            headers={"X-Forwarded-For": "203.0.113.9"},
            identity=CallerIdentity("42"),
        )
        assert derive_key(desc) == "user:42"

    def test_anonymous_caller_uses_remote_address(self) -> None:
        assert derive_key(_descriptor(remote="192.168.1.1")) == "ip:192.168.1.1"

    def test_leftmost_forwarded_entry_is_trimmed(self) -> None:
        desc = _descriptor(headers={"X-Forwarded-For": "192.168.1.1, 10.0.0.1"})
        assert derive_key(desc) == "ip:192.168.1.1"

    def test_header_lookup_is_case_insensitive(self) -> None:
        desc = _descriptor(headers={"x-forwarded-for": "  10.0.0.1  "})
        assert derive_key(desc) == "ip:10.0.0.1"

    def test_empty_segments_are_skipped(self) -> None:
        desc = _descriptor(headers={"X-Forwarded-For": " , ,10.0.0.7, 10.0.0.8"})
        assert derive_key(desc) == "ip:10.0.0.7"

    @pytest.mark.parametrize("header", ["", " ", ",,", " , "])
    def test_blank_header_falls_back_to_remote_address(self, header: str) -> None:
        desc = _descriptor(headers={"X-Forwarded-For": header}, remote="172.16.0.3")
        assert derive_key(desc) == "ip:172.16.0.3"

    def test_garbage_address_is_used_verbatim(self) -> None:
        desc = _descriptor(headers={"X-Forwarded-For": "not-an-ip, 10.0.0.1"})
        assert derive_key(desc) == "ip:not-an-ip"

    def test_missing_remote_address(self) -> None:
        assert derive_key(_descriptor(remote=None)) == "ip:unknown"

    def test_custom_forwarded_header(self) -> None:
        desc = _descriptor(headers={"X-Real-IP": "198.51.100.2"})
        assert derive_key(desc, forwarded_header="X-Real-IP") == "ip:198.51.100.2"

    def test_derivation_is_deterministic(self) -> None:
        desc = _descriptor(headers={"X-Forwarded-For": "10.0.0.1, 10.0.0.2"})
        assert derive_key(desc) == derive_key(desc)

    def test_address_key_ignores_identity(self) -> None:
        desc = _descriptor(
            headers={"X-Forwarded-For": "10.0.0.1"},
            identity=CallerIdentity("42"),
        )
        assert derive_address_key(desc) == "ip:10.0.0.1"
        assert client_address(desc) == "10.0.0.1"


class TestCallerIdentity:
    def test_object_with_id(self) -> None:
        assert caller_identity_from(SimpleNamespace(id=7)) == CallerIdentity("7")

    def test_mapping_with_id(self) -> None:
        assert caller_identity_from({"id": "abc", "email": "a@b.c"}) == CallerIdentity("abc")

    @pytest.mark.parametrize("user", [None, {}, {"id": ""}, {"id": None}, SimpleNamespace(name="x")])
    def test_missing_id_is_anonymous(self, user) -> None:
        assert caller_identity_from(user) is None


class TestRequestDescriptor:
    def test_from_request_reads_state_user_and_client(self) -> None:
        scope = {
            "type": "http",
            "method": "post",
            "path": "/auth/login",
            "headers": [(b"x-forwarded-for", b"10.1.1.1, 10.2.2.2")],
            "client": ("127.0.0.1", 5000),
            "query_string": b"",
            "state": {"user": {"id": "u-1"}},
        }
        desc = RequestDescriptor.from_request(Request(scope))

        assert desc.method == "POST"
        assert desc.path == "/auth/login"
        assert desc.remote_address == "127.0.0.1"
        assert desc.identity == CallerIdentity("u-1")
        assert desc.header("X-Forwarded-For") == "10.1.1.1, 10.2.2.2"

    def test_from_request_without_client_or_user(self) -> None:
        scope = {"type": "http", "method": "GET", "path": "/", "headers": [], "query_string": b""}
        desc = RequestDescriptor.from_request(Request(scope))

        assert desc.remote_address is None
        assert desc.identity is None
        assert derive_key(desc) == "ip:unknown"

    def test_descriptor_is_immutable(self) -> None:
        desc = _descriptor()
        with pytest.raises(AttributeError):
            desc.path = "/other"  # type: ignore[misc]
        with pytest.raises(TypeError):
            desc.headers["x"] = "y"  # type: ignore[index]
