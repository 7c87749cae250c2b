"""Tests for the broker websocket endpoint."""
from __future__ import annotations

from fastapi.testclient import TestClient

from pinq.main import create_app


def test_pairing_flow_over_websocket():
    with TestClient(create_app()) as client:
        with client.websocket_connect("/ws") as ws_a:
            greeting_a = ws_a.receive_json()
            assert greeting_a["type"] == "connected"
            a_id = greeting_a["connectionId"]

            ws_a.send_json({"type": "join-room", "code": " abc234 ", "role": "creator"})
            assert ws_a.receive_json() == {"type": "room-joined", "code": "ABC234", "peers": []}

            with client.websocket_connect("/ws") as ws_b:
                b_id = ws_b.receive_json()["connectionId"]
                ws_b.send_json({"type": "join-room", "code": "ABC234", "role": "guest"})
                assert ws_b.receive_json() == {"type": "room-joined", "code": "ABC234", "peers": [a_id]}

                notice = ws_a.receive_json()
                assert notice == {"type": "peer-joined", "peerId": b_id, "code": "ABC234"}

                ws_b.send_json({"type": "signal", "code": "abc234", "signal": {"type": "offer", "sdp": "v=0"}})
                forwarded = ws_a.receive_json()
                assert forwarded["type"] == "signal"
                assert forwarded["from"] == b_id
                assert forwarded["signal"] == {"type": "offer", "sdp": "v=0"}

            left = ws_a.receive_json()
            assert left == {"type": "peer-disconnected", "peerId": b_id, "code": "ABC234"}


def test_guest_join_unknown_room():
    with TestClient(create_app()) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "join-room", "code": "ZZZ999", "role": "guest"})
            assert ws.receive_json() == {"type": "room-not-found", "code": "ZZZ999"}


def test_unrecognised_role_joins_as_guest():
    with TestClient(create_app()) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "join-room", "code": "ZZZ999", "role": "admin"})
            assert ws.receive_json()["type"] == "room-not-found"


def test_third_connection_gets_room_full():
    with TestClient(create_app()) as client:
        with client.websocket_connect("/ws") as ws_a, client.websocket_connect("/ws") as ws_b, client.websocket_connect("/ws") as ws_c:
            for ws in (ws_a, ws_b, ws_c):
                ws.receive_json()
            ws_a.send_json({"type": "join-room", "code": "ABC234", "role": "creator"})
            ws_a.receive_json()
            ws_b.send_json({"type": "join-room", "code": "ABC234"})
            ws_b.receive_json()

            ws_c.send_json({"type": "join-room", "code": "ABC234", "role": "creator"})
            assert ws_c.receive_json() == {"type": "room-full", "code": "ABC234"}


def test_bad_frames_get_error_replies():
    with TestClient(create_app()) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()

            ws.send_text("{not json")
            assert ws.receive_json() == {"type": "error", "message": "Malformed JSON"}

            ws.send_json({"type": "dance"})
            assert ws.receive_json() == {"type": "error", "message": "Unknown event: dance"}

            ws.send_json({"type": "join-room", "code": ""})
            assert ws.receive_json() == {"type": "error", "message": "Invalid room code"}

            ws.send_json({"type": "signal", "code": "NOPE22", "signal": {}})
            assert ws.receive_json() == {"type": "room-not-found", "code": "NOPE22"}
