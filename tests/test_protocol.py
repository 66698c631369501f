"""Tests for clearing-node frame builders and the inbound frame parser."""

from __future__ import annotations

import pytest

from nitro_aura_core.protocol import (
    AUTH_REQUEST,
    AUTH_VERIFY,
    Allowance,
    ErrorFrame,
    NotificationFrame,
    ResponseFrame,
    build_auth_request,
    build_auth_verify,
    build_ping,
    build_request,
    frame_method,
    parse_frame,
    signing_payload,
)

ADDRESS = "0x1111111111111111111111111111111111111111"


class TestBuildRequest:
    """Tests for outbound request envelopes."""

    def test_envelope_shape(self):
        """Test the req array carries id, method, params and timestamp."""
        frame = build_request(7, "get_config", [{"a": 1}], timestamp_ms=1234)
        assert frame == {"req": [7, "get_config", [{"a": 1}], 1234], "sig": []}

    def test_timestamp_defaults_to_now(self):
        """Test a missing timestamp is filled with epoch milliseconds."""
        frame = build_request(1, "ping", [])
        assert isinstance(frame["req"][3], int)
        assert frame["req"][3] > 1_600_000_000_000

    def test_signatures_are_listed(self):
        """Test signatures are copied into the sig array."""
        frame = build_request(1, "ping", [], signatures=("0xab",), timestamp_ms=0)
        assert frame["sig"] == ["0xab"]

    def test_signing_payload_is_req_array(self):
        """Test only the req array is signed."""
        frame = build_request(3, "ping", [], timestamp_ms=5)
        assert signing_payload(frame) == [3, "ping", [], 5]


class TestAuthFrames:
    """Tests for the handshake frame builders."""

    def test_auth_request(self):
        """Test auth_request lists identity, session key and allowances."""
        frame = build_auth_request(
            1,
            address=ADDRESS,
            session_key=ADDRESS,
            app_name="Nitro Aura",
            allowances=[Allowance("usdc", "100000000000")],
            timestamp_ms=10,
        )
        assert frame["req"] == [
            1,
            AUTH_REQUEST,
            [
                {
                    "address": ADDRESS,
                    "session_key": ADDRESS,
                    "app_name": "Nitro Aura",
                    "allowances": [{"asset": "usdc", "amount": "100000000000"}],
                }
            ],
            10,
        ]
        assert frame["sig"] == []

    def test_auth_request_requires_address(self):
        """Test an empty address is rejected."""
        with pytest.raises(ValueError, match="address"):
            build_auth_request(
                1, address="", session_key=ADDRESS, app_name="x", allowances=()
            )

    def test_auth_verify_is_signed(self):
        """Test auth_verify echoes the challenge and carries the signature."""
        frame = build_auth_verify(
            2, address=ADDRESS, challenge="abc", signature="0xsig", timestamp_ms=11
        )
        assert frame == {
            "req": [2, AUTH_VERIFY, [{"address": ADDRESS, "challenge": "abc"}], 11],
            "sig": ["0xsig"],
        }

    def test_ping(self):
        """Test ping frames carry empty params."""
        frame = build_ping(9, timestamp_ms=1)
        assert frame == {"req": [9, "ping", [], 1], "sig": []}


class TestParseFrame:
    """Tests for inbound frame classification."""

    def test_response_frame(self):
        """Test res arrays become ResponseFrame."""
        message = {"res": [1, "get_config", {"ok": True}, 99], "sig": []}
        frame = parse_frame(message)

        assert isinstance(frame, ResponseFrame)
        assert frame.request_id == 1
        assert frame.method == "get_config"
        assert frame.payload == {"ok": True}
        assert frame.timestamp == 99
        assert frame.raw is message

    def test_response_without_timestamp(self):
        """Test a three-item res array is accepted."""
        frame = parse_frame({"res": [1, "ping", []]})
        assert isinstance(frame, ResponseFrame)
        assert frame.timestamp is None

    def test_error_frame(self):
        """Test err arrays become ErrorFrame."""
        frame = parse_frame({"err": [2, 404, "not found", 0]})

        assert isinstance(frame, ErrorFrame)
        assert frame.request_id == 2
        assert frame.code == 404
        assert frame.message == "not found"

    def test_notification_by_type(self):
        """Test tagged messages become notifications."""
        frame = parse_frame({"type": "channel_created", "channel": {}})
        assert isinstance(frame, NotificationFrame)
        assert frame.tag == "channel_created"

    def test_notification_by_method(self):
        """Test the method key is used as a tag when type is absent."""
        frame = parse_frame({"method": "bu", "params": []})
        assert frame.tag == "bu"

    def test_untagged_notification(self):
        """Test untagged objects are still notifications."""
        frame = parse_frame({"hello": "world"})
        assert isinstance(frame, NotificationFrame)
        assert frame.tag is None

    @pytest.mark.parametrize(
        "message",
        [
            [1, 2, 3],
            "text",
            {"res": "nope"},
            {"res": [1, "ping"]},
            {"res": [1, 2, 3]},
            {"err": [1]},
        ],
    )
    def test_malformed_frames_raise(self, message):
        """Test malformed frames are rejected with ValueError."""
        with pytest.raises(ValueError):
            parse_frame(message)

    def test_frame_method(self):
        """Test frame_method reports the method or tag."""
        assert frame_method(parse_frame({"res": [1, "ping", []]})) == "ping"
        assert frame_method(parse_frame({"type": "bu"})) == "bu"
        assert frame_method(parse_frame({"err": [1, 1, "x"]})) is None
