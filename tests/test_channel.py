import time

import pytest
from fastapi import WebSocketDisconnect

from conftest import auth, create_request, wait_for
from identity import ROLE_GUEST, ROLE_SUPPORT, Identity


def ws_url(token: str) -> str:
    return f"/ws?token={token}"


def test_missing_token_is_rejected_with_policy_violation(client) -> None:
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws"):
            pass
    assert exc.value.code == 1008


def test_expired_token_is_rejected_before_any_join(client, app, identity_service, guest) -> None:
    stale, _ = identity_service.issue_token(guest["user"]["id"], ROLE_GUEST, now=time.time() - 2 * 24 * 3600)
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(ws_url(stale)) as ws:
            ws.send_json({"type": "join_request", "data": "anything"})
    assert exc.value.code == 1008
    assert len(app.state.hub.sessions) == 0
    assert app.state.hub.rooms.room_count() == 0


def test_token_accepted_from_header_and_subprotocol(client, app, support_token) -> None:
    with client.websocket_connect("/ws", headers=auth(support_token)):
        wait_for(lambda: len(app.state.hub.sessions) == 1)
    with client.websocket_connect("/ws", subprotocols=["bearer", support_token]) as ws:
        assert ws.accepted_subprotocol == "bearer"
        wait_for(lambda: len(app.state.hub.sessions) == 1)
    wait_for(lambda: len(app.state.hub.sessions) == 0)


def test_joined_member_receives_new_message(client, app, guest_token, support_token) -> None:
    request = create_request(client, guest_token)
    hub = app.state.hub
    with client.websocket_connect(ws_url(support_token)) as ws:
        ws.send_json({"type": "join_request", "data": request["id"]})
        wait_for(lambda: hub.rooms.member_count(request["id"]) == 1)

        res = client.post(f"/api/requests/{request['id']}/messages", json={"content": "  hello  "},
                          headers=auth(guest_token))
        assert res.status_code == 201
        frame = ws.receive_json()
        assert frame["type"] == "new_message"
        assert frame["data"]["id"] == res.json()["message"]["id"]
        assert frame["data"]["content"] == "hello"

    wait_for(lambda: hub.rooms.member_count(request["id"]) == 0)
    wait_for(lambda: len(hub.sessions) == 0)


def test_broadcast_events_reach_every_session(client, app, guest_token, support_token, mentor_token) -> None:
    with client.websocket_connect(ws_url(support_token)) as agent_ws, \
            client.websocket_connect(ws_url(mentor_token)) as mentor_ws:
        wait_for(lambda: len(app.state.hub.sessions) == 2)
        request = create_request(client, guest_token)
        for ws in (agent_ws, mentor_ws):
            frame = ws.receive_json()
            assert frame["type"] == "new_request"
            assert frame["data"]["id"] == request["id"]


def test_guest_cannot_join_someone_elses_request(client, app, guest_token) -> None:
    request = create_request(client, guest_token)
    intruder = client.post("/api/auth/guest", json={"name": "Mallory"}).json()
    hub = app.state.hub
    with client.websocket_connect(ws_url(intruder["token"])) as ws:
        ws.send_json({"type": "join_request", "data": request["id"]})
        ws.send_json({"type": "join_request", "data": "missing-request"})
        # a join of its own request proves the earlier frames were processed
        own = create_request(client, intruder["token"])
        ws.receive_json()
        ws.send_json({"type": "join_request", "data": own["id"]})
        wait_for(lambda: hub.rooms.member_count(own["id"]) == 1)
        assert hub.rooms.member_count(request["id"]) == 0
        assert hub.rooms.member_count("missing-request") == 0


def test_typing_is_relayed_to_other_members_only(client, app, guest_token, support_token) -> None:
    request = create_request(client, guest_token)
    room = request["id"]
    hub = app.state.hub
    with client.websocket_connect(ws_url(guest_token)) as guest_ws, \
            client.websocket_connect(ws_url(support_token)) as agent_ws:
        guest_ws.send_json({"type": "join_request", "data": room})
        agent_ws.send_json({"type": "join_request", "data": room})
        wait_for(lambda: hub.rooms.member_count(room) == 2)

        agent_ws.send_json({"type": "typing", "data": {"request_id": room, "is_typing": True}})
        frame = guest_ws.receive_json()
        assert frame["type"] == "user_typing"
        assert frame["data"] == {"user_id": "user-sarah", "request_id": room, "is_typing": True}

        agent_ws.send_json({"type": "typing", "data": {"request_id": room, "is_typing": False}})
        assert guest_ws.receive_json()["data"]["is_typing"] is False

        # the sender's next frame is the message, not its own typing signal
        client.post(f"/api/requests/{room}/messages", json={"content": "on it"}, headers=auth(support_token))
        assert agent_ws.receive_json()["type"] == "new_message"
        assert guest_ws.receive_json()["type"] == "new_message"


def test_typing_outside_joined_room_is_dropped(client, app, guest_token, support_token) -> None:
    request = create_request(client, guest_token)
    room = request["id"]
    hub = app.state.hub
    with client.websocket_connect(ws_url(guest_token)) as guest_ws, \
            client.websocket_connect(ws_url(support_token)) as agent_ws:
        guest_ws.send_json({"type": "join_request", "data": room})
        wait_for(lambda: hub.rooms.member_count(room) == 1)
        # agent never joined, so its typing goes nowhere
        agent_ws.send_json({"type": "typing", "data": {"request_id": room, "is_typing": True}})
        agent_ws.send_json({"type": "join_request", "data": room})
        wait_for(lambda: hub.rooms.member_count(room) == 2)
        client.post(f"/api/requests/{room}/messages", json={"content": "hi"}, headers=auth(guest_token))
        assert guest_ws.receive_json()["type"] == "new_message"


def test_malformed_frames_do_not_close_the_connection(client, app, guest_token, support_token) -> None:
    request = create_request(client, guest_token)
    hub = app.state.hub
    with client.websocket_connect(ws_url(support_token)) as ws:
        ws.send_text("not json")
        ws.send_json({"type": "unknown", "data": 1})
        ws.send_json({"type": "typing", "data": {"is_typing": "maybe"}})
        ws.send_json({"type": "join_request", "data": request["id"]})
        wait_for(lambda: hub.rooms.member_count(request["id"]) == 1)
        assert len(hub.sessions) == 1


def test_leave_request_stops_room_delivery(client, app, guest_token, support_token) -> None:
    first = create_request(client, guest_token)
    second = create_request(client, guest_token)
    hub = app.state.hub
    with client.websocket_connect(ws_url(support_token)) as ws:
        ws.send_json({"type": "join_request", "data": first["id"]})
        ws.send_json({"type": "join_request", "data": second["id"]})
        wait_for(lambda: hub.rooms.member_count(second["id"]) == 1)
        ws.send_json({"type": "leave_request", "data": first["id"]})
        wait_for(lambda: hub.rooms.member_count(first["id"]) == 0)

        client.post(f"/api/requests/{first['id']}/messages", json={"content": "one"}, headers=auth(guest_token))
        client.post(f"/api/requests/{second['id']}/messages", json={"content": "two"}, headers=auth(guest_token))
        frame = ws.receive_json()
        assert frame["data"]["request_id"] == second["id"]


def test_health_reports_live_connections(client, app, support_token) -> None:
    assert client.get("/health").json() == {
        "status": "ok", "store": "memory", "bus": "local", "connections": 0, "rooms": 0,
    }
    with client.websocket_connect(ws_url(support_token)):
        wait_for(lambda: client.get("/health").json()["connections"] == 1)



def test_join_policy_follows_the_stored_role(client, app, guest_token, mentor_token) -> None:
    request = create_request(client, guest_token)
    nina = client.post("/api/users", json={
        "username": "nina", "password": "pw123", "name": "Nina", "role": "SUPPORT",
    }, headers=auth(mentor_token)).json()
    nina_token = client.post("/api/auth/login", json={"username": "nina", "password": "pw123"}).json()["token"]
    hub = app.state.hub
    with client.websocket_connect(ws_url(nina_token)) as ws:
        ws.send_json({"type": "join_request", "data": request["id"]})
        wait_for(lambda: hub.rooms.member_count(request["id"]) == 1)
        ws.send_json({"type": "leave_request", "data": request["id"]})
        wait_for(lambda: hub.rooms.member_count(request["id"]) == 0)

        client.patch(f"/api/users/{nina['id']}", json={"role": "GUEST"}, headers=auth(mentor_token))
        ws.send_json({"type": "join_request", "data": request["id"]})
        own = create_request(client, nina_token)
        ws.receive_json()
        ws.send_json({"type": "join_request", "data": own["id"]})
        wait_for(lambda: hub.rooms.member_count(own["id"]) == 1)
        assert hub.rooms.member_count(request["id"]) == 0


def test_join_policy_refuses_deleted_users(client, app, guest_token, mentor_token) -> None:
    request = create_request(client, guest_token)
    policy = app.state.hub.join_policy
    assert policy(Identity(user_id="user-sarah", role=ROLE_SUPPORT), request["id"]) is True
    client.delete("/api/users/user-sarah", headers=auth(mentor_token))
    assert policy(Identity(user_id="user-sarah", role=ROLE_SUPPORT), request["id"]) is False
