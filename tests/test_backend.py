import fakeredis
import pytest

from backend import MemoryBackend, RedisBackend, get_backend
from errors import Conflict, NotFound, ValidationFailure
from identity import ROLE_GUEST, ROLE_MENTOR, ROLE_SUPPORT


@pytest.fixture(params=["memory", "redis"])
def store(request):
    if request.param == "memory":
        return MemoryBackend()
    return RedisBackend(fakeredis.FakeRedis(decode_responses=True))


@pytest.fixture
def guest(store):
    return store.create_user("alice", "hash", "Alice", ROLE_GUEST)


@pytest.fixture
def agent(store):
    return store.create_user("sarah", "hash", "Sarah", ROLE_SUPPORT, user_id="user-sarah")


def open_request(store, guest, **overrides):
    fields = dict(email="a@example.com", issue="Broken", description="It broke", category="bug")
    fields.update(overrides)
    return store.create_request(guest["id"], **fields)


def test_user_rows_hide_password_hash(store, guest) -> None:
    assert "password_hash" not in guest
    assert store.get_user(guest["id"])["username"] == "alice"
    credentials = store.get_user_credentials("alice")
    assert credentials["password_hash"] == "hash"
    assert store.get_user_credentials("nobody") is None


def test_duplicate_username_conflicts(store, guest) -> None:
    with pytest.raises(Conflict):
        store.create_user("alice", "hash", "Other Alice", ROLE_GUEST)


def test_invalid_role_rejected(store) -> None:
    with pytest.raises(ValidationFailure):
        store.create_user("bob", "hash", "Bob", "ADMIN")


def test_create_request_defaults(store, guest) -> None:
    request = open_request(store, guest)
    assert request["status"] == "PENDING"
    assert request["priority"] == "MEDIUM"
    assert request["assigned_agent"] is None
    assert request["resolved_at"] is None
    assert request["guest"] == {"id": guest["id"], "username": "alice", "name": "Alice", "role": ROLE_GUEST}


def test_create_request_requires_existing_user(store) -> None:
    with pytest.raises(NotFound):
        store.create_request("missing", "a@example.com", "x", "y", "z")


def test_create_request_rejects_unknown_priority(store, guest) -> None:
    with pytest.raises(ValidationFailure):
        open_request(store, guest, priority="WHENEVER")


def test_list_requests_newest_first_with_filters(store, guest) -> None:
    first = open_request(store, guest, priority="LOW")
    second = open_request(store, guest, priority="HIGH")
    third = open_request(store, guest, priority="HIGH")
    assert [r["id"] for r in store.list_requests()] == [third["id"], second["id"], first["id"]]
    assert [r["id"] for r in store.list_requests(priority="LOW")] == [first["id"]]
    store.update_request(second["id"], {"status": "IN_PROGRESS"})
    assert [r["id"] for r in store.list_requests(status="IN_PROGRESS")] == [second["id"]]


def test_list_requests_carries_last_message(store, guest, agent) -> None:
    request = open_request(store, guest)
    assert store.list_requests()[0]["last_message"] is None
    store.create_message(request["id"], guest["id"], "first")
    last = store.create_message(request["id"], agent["id"], "second")
    listed = store.list_requests()[0]["last_message"]
    assert listed["id"] == last["id"]
    assert listed["sender"]["name"] == "Sarah"


def test_update_request_resolution_and_validation(store, guest, agent) -> None:
    request = open_request(store, guest)
    updated = store.update_request(request["id"], {"status": "RESOLVED", "assigned_agent": agent["id"]})
    assert updated["status"] == "RESOLVED"
    assert updated["assigned_agent"] == agent["id"]
    assert updated["resolved_at"] is not None
    assert updated["updated_at"] >= request["updated_at"]
    assert store.get_request(request["id"])["assigned_agent"] == agent["id"]

    with pytest.raises(ValidationFailure):
        store.update_request(request["id"], {"status": "DONE"})
    with pytest.raises(NotFound):
        store.update_request(request["id"], {"assigned_agent": "nobody"})
    with pytest.raises(NotFound):
        store.update_request("missing", {"status": "CLOSED"})


def test_messages_ascending_and_mark_read(store, guest, agent) -> None:
    request = open_request(store, guest)
    ids = [store.create_message(request["id"], sender, text)["id"]
           for sender, text in ((guest["id"], "a"), (agent["id"], "b"), (guest["id"], "c"))]
    messages = store.list_messages(request["id"])
    assert [m["id"] for m in messages] == ids
    assert [m["content"] for m in messages] == ["a", "b", "c"]
    assert all(m["read"] is False for m in messages)

    assert store.mark_messages_read(request["id"]) == 3
    assert store.mark_messages_read(request["id"]) == 0
    assert store.get_message(ids[0])["read"] is True

    with_messages = store.get_request(request["id"], with_messages=True)
    assert [m["id"] for m in with_messages["messages"]] == ids


def test_create_message_referential_integrity(store, guest) -> None:
    request = open_request(store, guest)
    with pytest.raises(NotFound):
        store.create_message("missing", guest["id"], "hi")
    with pytest.raises(NotFound):
        store.create_message(request["id"], "missing", "hi")


def test_delete_request_cascades_messages(store, guest) -> None:
    request = open_request(store, guest)
    message = store.create_message(request["id"], guest["id"], "hello")
    store.delete_request(request["id"])
    assert store.get_request(request["id"]) is None
    assert store.get_message(message["id"]) is None
    assert store.list_messages(request["id"]) == []
    assert store.list_requests() == []
    with pytest.raises(NotFound):
        store.delete_request(request["id"])


def test_delete_all_requests(store, guest) -> None:
    requests = [open_request(store, guest) for _ in range(3)]
    store.create_message(requests[0]["id"], guest["id"], "hello")
    assert store.delete_all_requests() == 3
    assert store.list_requests() == []
    assert store.list_messages(requests[0]["id"]) == []
    # the guest owns nothing anymore
    store.delete_user(guest["id"])


def test_delete_user_with_requests_conflicts(store, guest) -> None:
    open_request(store, guest)
    with pytest.raises(Conflict):
        store.delete_user(guest["id"])


def test_delete_user_with_messages_or_assignments_conflicts(store, guest, agent) -> None:
    request = open_request(store, guest)
    store.create_message(request["id"], agent["id"], "on it")
    with pytest.raises(Conflict):
        store.delete_user(agent["id"])

    mike = store.create_user("mike", "hash", "Mike", ROLE_SUPPORT)
    store.update_request(request["id"], {"assigned_agent": mike["id"]})
    with pytest.raises(Conflict):
        store.delete_user(mike["id"])

    # reassigning releases the previous agent
    store.update_request(request["id"], {"assigned_agent": agent["id"]})
    store.delete_user(mike["id"])
    assert store.get_user(mike["id"]) is None

    store.delete_request(request["id"])
    store.delete_user(agent["id"])
    store.delete_user(guest["id"])
    assert store.count_users() == 0


def test_assigned_agent_must_be_staff(store, guest, agent) -> None:
    request = open_request(store, guest)
    with pytest.raises(ValidationFailure):
        store.update_request(request["id"], {"assigned_agent": guest["id"]})
    assert store.get_request(request["id"])["assigned_agent"] is None
    mentor = store.create_user("emma", "hash", "Emma", ROLE_MENTOR)
    assert store.update_request(request["id"], {"assigned_agent": mentor["id"]})["assigned_agent"] == mentor["id"]


def test_delete_user_releases_username(store, agent) -> None:
    store.delete_user(agent["id"])
    assert store.get_user(agent["id"]) is None
    assert store.count_users() == 0
    store.create_user("sarah", "hash", "New Sarah", ROLE_SUPPORT)


def test_update_user(store, agent) -> None:
    updated = store.update_user(agent["id"], name="Sarah W.", password_hash="new")
    assert updated["name"] == "Sarah W."
    assert store.get_user_credentials("sarah")["password_hash"] == "new"
    with pytest.raises(ValidationFailure):
        store.update_user(agent["id"], role="ADMIN")
    with pytest.raises(NotFound):
        store.update_user("missing", name="x")


def test_get_backend_rejects_unknown_kind() -> None:
    assert isinstance(get_backend("memory"), MemoryBackend)
    with pytest.raises(ValueError):
        get_backend("sqlite")
